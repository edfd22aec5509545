from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from tritonpaste.api.deps import get_identity, require_user
from tritonpaste.api.schemas import (
    AnonymousLookupRequest,
    AnonymousSessionResponse,
    CurrentUserResponse,
    Envelope,
    OAuthIdRequest,
)
from tritonpaste.logging import get_logger
from tritonpaste.service.auth import Identity, UserIdentity, run_store_call
from tritonpaste.service.runtime import get_runtime

logger = get_logger(__name__)

# Every route below authenticates first; a bad bearer header is a 401 even on
# routes that work anonymously.
router = APIRouter(
    prefix="/v1/auth", tags=["auth"], dependencies=[Depends(get_identity)]
)


def _frontend_redirect(base_url: str, token: str) -> str:
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode({'token': token})}"


@router.get("/login/oauth")
async def oauth_login():
    """Send the browser to the provider's consent page with a fresh state."""

    runtime = get_runtime()
    url = await runtime.auth.start_oauth()
    return RedirectResponse(url, status_code=307)


@router.get("/callback/oauth")
async def oauth_callback(
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
):
    """Exchange the provider code, open a session and hand the token to the frontend."""

    runtime = get_runtime()
    user, token = await runtime.auth.complete_oauth(code, state)
    logger.info("oauth_login_completed", user_id=user.id)
    return RedirectResponse(
        _frontend_redirect(runtime.settings.frontend_callback_url, token.plaintext),
        status_code=307,
    )


@router.post(
    "/register/oauth", response_model=Envelope, response_model_exclude_none=True
)
async def register_oauth_user(body: OAuthIdRequest):
    runtime = get_runtime()
    await run_store_call(runtime.auth.register_oauth, body.oauth_id)
    return Envelope(message="OAuth user successfully registered")


@router.post("/get/oauth", response_model=Envelope, response_model_exclude_none=True)
async def get_oauth_user(body: OAuthIdRequest):
    runtime = get_runtime()
    user = await run_store_call(runtime.auth.lookup_oauth, body.oauth_id)
    return Envelope(message="OAuth user successfully retrieved", data=user.id)


@router.post(
    "/register/anonymous", response_model=Envelope, response_model_exclude_none=True
)
async def register_anonymous_user():
    runtime = get_runtime()
    user, token = await run_store_call(runtime.auth.register_anonymous)
    return Envelope(
        message="Anonymous user successfully registered",
        data=AnonymousSessionResponse(
            user_id=user.id, token=token.plaintext, expiry=token.expiry
        ),
    )


@router.post(
    "/get/anonymous", response_model=Envelope, response_model_exclude_none=True
)
async def get_anonymous_user(body: AnonymousLookupRequest):
    runtime = get_runtime()
    user = await run_store_call(runtime.auth.lookup_anonymous, str(body.user_id))
    return Envelope(message="Anonymous user successfully retrieved", data=user.id)


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True)
async def logout(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await run_store_call(runtime.auth.logout, identity)
    return Envelope(message="Successfully logged out")


@router.get("/me", response_model=Envelope, response_model_exclude_none=True)
async def current_user(identity: UserIdentity = Depends(require_user)):
    user = identity.user
    return Envelope(
        message="User successfully retrieved",
        data=CurrentUserResponse(
            user_id=user.id, auth_type=user.auth_type.value, oauth_id=user.oauth_id
        ),
    )
