from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol, Union

from tokenauth.logging import get_logger
from tokenauth.service.token import Token, generate_nonce_and_hash
from tokenauth.storage.errors import StoreError
from tokenauth.storage.models import RefreshToken, User

if TYPE_CHECKING:
    from tokenauth.service.auth import AuthService

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, user_id: int, device: str, token_hash: str) -> RefreshToken: ...

    def find_refresh_token(self, token_id: int) -> Optional[RefreshToken]: ...

    def renew_refresh_token(
        self, token_id: int, token_hash: str, *, previous_hash: Optional[str] = None
    ) -> Optional[datetime]: ...

    def revoke_refresh_token(self, token_id: int) -> None: ...

    def revoke_user_refresh_tokens(self, user_id: int) -> int: ...


class AuthStore(UserStore, RefreshTokenStore, Protocol):
    """Everything the auth core needs from persistence."""


class IdentityState(str, Enum):
    """How the request's bearer token was resolved.

    ``login`` moves an identity to AUTHENTICATED and ``logout`` to ANONYMOUS.
    """

    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    RENEWED = "renewed"


@dataclass(frozen=True)
class SetToken:
    value: str
    expires_at: datetime


@dataclass(frozen=True)
class DeleteToken:
    pass


TokenResponse = Union[SetToken, DeleteToken]


class Identity:
    """Request-scoped login state.

    One lock guards the token, user and pending response together so that
    sub-tasks sharing the identity never observe a half-applied login/logout.
    """

    def __init__(
        self,
        service: "AuthService",
        state: IdentityState,
        *,
        token: Optional[Token] = None,
        response: Optional[TokenResponse] = None,
    ) -> None:
        self._service = service
        self.state = state
        self._token = token
        self._user: Optional[User] = None
        self._response = response
        self._lock = asyncio.Lock()

    async def is_login(self) -> bool:
        async with self._lock:
            return self._token is not None

    async def user_id(self) -> Optional[int]:
        async with self._lock:
            return self._token.user_id if self._token else None

    async def user(self) -> Optional[User]:
        """Fetch the logged-in user once and remember it.

        A store failure is logged and reported as ``None``; it is not cached,
        so a later call retries the lookup.
        """
        async with self._lock:
            if self._user is not None:
                return self._user
            if self._token is None:
                return None
            user_id = self._token.user_id
            try:
                user = await self._service.run_blocking(self._service.store.get_user, user_id)
            except StoreError as exc:
                logger.warning("identity_user_lookup_failed", user_id=user_id, error=exc.message)
                return None
            self._user = user
            return user

    async def login(self, user: User, device: str = "") -> None:
        """Open a new login session for ``user`` and schedule the token cookie.

        Every call creates a new refresh-token record; earlier sessions of the
        same user stay valid.
        """
        service = self._service
        nonce, nonce_hash = await service.run_blocking(generate_nonce_and_hash, service.hasher)
        record = await service.run_blocking(
            service.store.create_refresh_token, user.id, device, nonce_hash
        )
        token = Token(
            nonce=nonce,
            user_id=user.id,
            refresh_token_id=record.id,
            issued_at=int(record.issued_at.timestamp()),
        )
        value, expires_at = service.codec.encode(token)
        async with self._lock:
            self._token = token
            self._user = user
            self._response = SetToken(value, expires_at)
            self.state = IdentityState.AUTHENTICATED
        logger.info("identity_login", user_id=user.id, refresh_token_id=record.id, device=device)

    async def logout(self) -> None:
        """Revoke the current session, if any, and schedule cookie removal."""
        async with self._lock:
            token = self._token
            if token is not None:
                await self._service.run_blocking(
                    self._service.store.revoke_refresh_token, token.refresh_token_id
                )
                logger.info(
                    "identity_logout",
                    user_id=token.user_id,
                    refresh_token_id=token.refresh_token_id,
                )
            self._token = None
            self._user = None
            self._response = DeleteToken()
            self.state = IdentityState.ANONYMOUS

    async def peek_response(self) -> Optional[TokenResponse]:
        async with self._lock:
            return self._response

    async def to_response(self) -> Optional[TokenResponse]:
        """Hand the pending cookie instruction to the transport layer, once."""
        async with self._lock:
            response, self._response = self._response, None
            return response
