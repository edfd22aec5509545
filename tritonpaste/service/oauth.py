from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

import httpx

from tritonpaste.config import Settings
from tritonpaste.logging import get_logger
from tritonpaste.service.errors import ServiceUnavailableError, UpstreamError

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": " ".join(
            [
                "https://www.googleapis.com/auth/userinfo.email",
                "https://www.googleapis.com/auth/userinfo.profile",
            ]
        ),
    },
}

logger = get_logger(__name__)


class OAuthClient:
    """Authorization-code exchange against a single OAuth provider.

    The only thing this service needs from the provider is the stable subject
    id (``id`` in Google's userinfo payload); profile fields are ignored.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        provider: str = "google",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Unsupported OAuth provider: {provider}")
        self.provider = provider
        self.endpoints = OAUTH_PROVIDERS[provider]
        self.client_id = settings.oauth_google_client_id
        self.client_secret = settings.oauth_google_client_secret
        self.redirect_uri = settings.oauth_redirect_uri
        self.timeout = settings.oauth_timeout_seconds
        self._transport = transport
        self.logger = logger

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _require_configured(self) -> None:
        if not self.configured:
            self.logger.warning("oauth_not_configured", provider=self.provider)
            raise ServiceUnavailableError(
                f"OAuth provider {self.provider} is not configured"
            )

    def authorization_url(self, state: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.endpoints["scope"],
            "state": state,
            "access_type": "offline",
        }
        return f"{self.endpoints['auth_url']}?{urlencode(params)}"

    async def exchange(self, code: str) -> str:
        """Trade an authorization code for the provider's subject id.

        Raises:
            UpstreamError: on transport failure, a non-2xx answer, a body that
                is not JSON, or a payload missing ``access_token`` / ``id``.
        """
        self._require_configured()
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    self.endpoints["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=self.provider)
                    raise UpstreamError("oauth provider returned no access token")

                userinfo_response = await client.get(
                    self.endpoints["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=self.provider,
                status_code=exc.response.status_code,
                url=str(exc.request.url),
            )
            raise UpstreamError(
                f"oauth provider answered {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            self.logger.error(
                "oauth_exchange_failed", provider=self.provider, error=str(exc)
            )
            raise UpstreamError(f"oauth provider unreachable: {exc}") from exc
        except ValueError as exc:
            self.logger.error(
                "oauth_response_parse_error", provider=self.provider, error=str(exc)
            )
            raise UpstreamError("oauth provider returned invalid JSON") from exc

        subject = userinfo.get("id") if isinstance(userinfo, dict) else None
        if subject is None or subject == "":
            self.logger.error("oauth_identity_missing_uid", provider=self.provider)
            raise UpstreamError("oauth userinfo has no subject id")
        self.logger.info("oauth_exchange_success", provider=self.provider)
        return str(subject)
