from __future__ import annotations

import asyncio
import functools
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Optional, TypeVar

from tokenauth.config import Settings
from tokenauth.logging import get_logger
from tokenauth.service.errors import DecodeError, NonceMismatch
from tokenauth.service.identity import (
    AuthStore,
    DeleteToken,
    Identity,
    IdentityState,
    SetToken,
)
from tokenauth.service.token import (
    NonceHasher,
    Token,
    TokenCodec,
    generate_nonce_and_hash,
)
from tokenauth.storage.models import RefreshToken

logger = get_logger(__name__)

T = TypeVar("T")


class AuthService:
    """Resolves bearer tokens into request identities.

    Unexpired tokens are trusted on their AEAD seal alone. Expired tokens are
    checked against their refresh-token record and, when the nonce still
    verifies, rotated in place. Only store failures raise; every other outcome
    is an Identity.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        # Raises ConfigError for a bad key before any request is served
        self.codec = TokenCodec(settings.cipher_key_bytes, settings.token_lifetime)
        self.hasher = NonceHasher(
            time_cost=settings.nonce_hash_time_cost,
            memory_cost=settings.nonce_hash_memory_cost,
        )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.blocking_pool_workers,
            thread_name_prefix="tokenauth-blocking",
        )
        self.logger = logger

    async def run_blocking(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a hashing or store call on the offload pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    async def get_identity(self, token_str: Optional[str]) -> Identity:
        """Build the Identity for an inbound token string.

        Raises:
            StoreError: the refresh-token store could not be consulted.
        """
        if not token_str:
            return Identity(self, IdentityState.ANONYMOUS)
        try:
            token = self.codec.decode(token_str)
        except DecodeError as exc:
            self.logger.info("identity_token_invalid", reason=str(exc))
            return self._invalid()
        if not self.codec.is_expired(token):
            return Identity(self, IdentityState.AUTHENTICATED, token=token)
        return await self._renew(token)

    async def revoke_all(self, user_id: int) -> int:
        """Sign a user out of every device."""
        return await self.run_blocking(self.store.revoke_user_refresh_tokens, user_id)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def _invalid(self) -> Identity:
        return Identity(self, IdentityState.ANONYMOUS, response=DeleteToken())

    async def _renew(self, token: Token) -> Identity:
        record = await self.run_blocking(self.store.find_refresh_token, token.refresh_token_id)
        if record is None:
            self.logger.info(
                "refresh_token_not_found", refresh_token_id=token.refresh_token_id
            )
            return self._invalid()
        if not record.is_active(self.settings.refresh_token_lifetime):
            self.logger.info(
                "refresh_token_expired",
                refresh_token_id=record.id,
                user_id=record.user_id,
            )
            return self._invalid()
        try:
            await self._verify(token, record)
        except NonceMismatch as exc:
            self.logger.warning(
                "refresh_token_nonce_mismatch",
                refresh_token_id=record.id,
                user_id=token.user_id,
                reason=str(exc),
            )
            return self._invalid()

        nonce, nonce_hash = await self.run_blocking(generate_nonce_and_hash, self.hasher)
        issued_at = await self.run_blocking(
            self.store.renew_refresh_token,
            record.id,
            nonce_hash,
            previous_hash=record.hash,
        )
        if issued_at is None:
            return await self._after_lost_renewal(token)

        renewed = replace(token, nonce=nonce, issued_at=int(issued_at.timestamp()))
        value, expires_at = self.codec.encode(renewed)
        self.logger.info(
            "identity_renewed", user_id=renewed.user_id, refresh_token_id=record.id
        )
        return Identity(
            self,
            IdentityState.RENEWED,
            token=renewed,
            response=SetToken(value, expires_at),
        )

    async def _verify(self, token: Token, record: RefreshToken) -> None:
        if record.user_id != token.user_id:
            raise NonceMismatch("refresh token belongs to another user")
        verified = await self.run_blocking(self.hasher.verify, token.nonce, record.hash)
        if not verified:
            raise NonceMismatch("nonce does not match refresh token hash")

    async def _after_lost_renewal(self, token: Token) -> Identity:
        # The compare-and-swap failed: either another request rotated this
        # lineage a moment ago, or the record was revoked in between.
        current = await self.run_blocking(self.store.find_refresh_token, token.refresh_token_id)
        if current is None:
            self.logger.info(
                "refresh_token_revoked_during_renewal",
                refresh_token_id=token.refresh_token_id,
            )
            return self._invalid()
        self.logger.info(
            "refresh_token_renew_conflict",
            refresh_token_id=token.refresh_token_id,
            user_id=token.user_id,
        )
        return Identity(self, IdentityState.AUTHENTICATED, token=token)


__all__ = ["AuthService"]
