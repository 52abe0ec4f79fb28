"""Binds the auth core to HTTP: token cookie in, Identity on the request, cookie out."""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from tokenauth.api.error_handling import error_response
from tokenauth.logging import get_logger
from tokenauth.service.auth import AuthService
from tokenauth.service.errors import AuthenticationError, ServerError
from tokenauth.service.identity import DeleteToken, Identity, SetToken, TokenResponse
from tokenauth.storage.errors import StoreError

logger = get_logger(__name__)


def extract_token(request: Request, cookie_name: str) -> Optional[str]:
    """Read the bearer token from the named cookie, else an Authorization header."""
    value = request.cookies.get(cookie_name)
    if value:
        return value
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def apply_token_response(
    response: Response, instruction: Optional[TokenResponse], auth: AuthService
) -> None:
    settings = auth.settings
    if isinstance(instruction, SetToken):
        # Cookie outlives the bearer token so the client can present it for renewal
        response.set_cookie(
            settings.cookie_name,
            instruction.value,
            max_age=int(settings.refresh_token_lifetime.total_seconds()),
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            path="/",
        )
    elif isinstance(instruction, DeleteToken):
        response.delete_cookie(
            settings.cookie_name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


class IdentityMiddleware(BaseHTTPMiddleware):
    """Resolve the request identity before the handler and apply its cookie after."""

    def __init__(self, app: ASGIApp, get_auth: Callable[[], AuthService]) -> None:
        super().__init__(app)
        self._get_auth = get_auth

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        auth = self._get_auth()
        token_str = extract_token(request, auth.settings.cookie_name)
        try:
            identity = await auth.get_identity(token_str)
        except StoreError as exc:
            # Unknown login state: fail the request, leave the client's cookie alone
            logger.error(
                "identity_resolution_failed",
                path=request.url.path,
                method=request.method,
                message=exc.message,
            )
            return error_response(500, "could not verify login state", code="server_error")
        request.state.identity = identity

        try:
            response = await call_next(request)
        except Exception as exc:
            # A renewal may already be committed; the 500 must still carry the new cookie
            logger.exception(
                "unhandled_exception",
                exc_info=exc,
                path=request.url.path,
                method=request.method,
                error_type=type(exc).__name__,
            )
            response = error_response(500, "internal server error", code="server_error")

        instruction = await identity.to_response()
        apply_token_response(response, instruction, auth)
        if instruction is not None:
            logger.debug(
                "identity_cookie_applied",
                action="set" if isinstance(instruction, SetToken) else "delete",
                state=identity.state.value,
            )
        return response


def current_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise ServerError("identity middleware is not installed")
    return identity


async def require_login(request: Request) -> Identity:
    identity = current_identity(request)
    if not await identity.is_login():
        raise AuthenticationError("not logged in")
    return identity
