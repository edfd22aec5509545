from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound on provider subject ids; Google's are 21 digits
MAX_OAUTH_ID_LENGTH = 255


class ErrorBody(BaseModel):
    code: int = Field(..., description="HTTP status code of the response")
    type: str = Field(..., description="Stable machine-readable error type")
    message: str


class ErrorEnvelope(BaseModel):
    """Body of every non-2xx JSON response."""

    error: ErrorBody


class Envelope(BaseModel):
    """Body of every successful JSON response.

    ``data`` is left out of the serialized body when there is nothing to
    return; routes declare ``response_model_exclude_none=True`` for that.
    """

    success: bool = True
    message: str
    data: Optional[Any] = None
    status_code: int = 200


class OAuthIdRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    oauth_id: str = Field(..., min_length=1, max_length=MAX_OAUTH_ID_LENGTH)

    @field_validator("oauth_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("oauth_id must not be blank")
        return value


class AnonymousLookupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: UUID


class AnonymousSessionResponse(BaseModel):
    user_id: str
    token: str
    expiry: datetime


class CurrentUserResponse(BaseModel):
    user_id: str
    auth_type: str
    oauth_id: Optional[str] = None
