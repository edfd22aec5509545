from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header

from tritonpaste.service.auth import Identity, UserIdentity
from tritonpaste.service.errors import AuthenticationError
from tritonpaste.service.runtime import get_runtime


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Authenticate the request once; FastAPI caches the result per request."""

    return await get_runtime().auth.authenticate(authorization)


async def require_user(identity: Identity = Depends(get_identity)) -> UserIdentity:
    if not isinstance(identity, UserIdentity):
        raise AuthenticationError("You are not logged in")
    return identity
