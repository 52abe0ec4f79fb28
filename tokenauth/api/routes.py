from __future__ import annotations

from fastapi import APIRouter, Depends

from tokenauth.api.middleware import current_identity, require_login
from tokenauth.api.schemas import Envelope, HealthResponse, LogoutResponse, UserResponse
from tokenauth.service.errors import AuthenticationError
from tokenauth.service.identity import Identity
from tokenauth.service.runtime import get_runtime

router = APIRouter()


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    runtime = get_runtime()
    return Envelope(status="ok", data=HealthResponse(store=runtime.store_type))


@router.get("/v1/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(require_login)):
    """Return the logged-in user.

    Raises:
        401: If the request carries no valid token, or the user row is gone
    """
    user = await identity.user()
    if user is None:
        raise AuthenticationError("not logged in")
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/v1/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(identity: Identity = Depends(current_identity)):
    """Revoke the current login session and clear the token cookie.

    Safe to call when already logged out.
    """
    await identity.logout()
    return Envelope(status="ok", data=LogoutResponse())
