from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from tokenauth.logging import get_logger
from tokenauth.storage.errors import ConstraintViolation
from tokenauth.storage.models import RefreshToken, User, utcnow


class MemoryStore:
    """In-memory user and refresh-token store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.refresh_tokens: Dict[int, RefreshToken] = {}
        self._user_id_seq = itertools.count(1)
        self._token_id_seq = itertools.count(1)
        # RLock for all data operations; renew relies on it for compare-and-swap
        self._data_lock = threading.RLock()

    # users
    def create_user(self, username: str, name: str = "", avatar: str = "") -> User:
        with self._data_lock:
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"username": username})
            now = utcnow()
            user = User(
                id=next(self._user_id_seq),
                username=username,
                name=name,
                avatar=avatar,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return replace(user)
            return None

    # refresh tokens
    def create_refresh_token(self, user_id: int, device: str, token_hash: str) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshToken(
                id=next(self._token_id_seq),
                user_id=user_id,
                device=device,
                hash=token_hash,
                issued_at=utcnow(),
            )
            self.refresh_tokens[record.id] = record
            return replace(record)

    def find_refresh_token(self, token_id: int) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.deleted_at is not None:
                return None
            return replace(record)

    def renew_refresh_token(
        self, token_id: int, token_hash: str, *, previous_hash: Optional[str] = None
    ) -> Optional[datetime]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.deleted_at is not None:
                return None
            if previous_hash is not None and record.hash != previous_hash:
                return None
            record.hash = token_hash
            record.issued_at = utcnow()
            return record.issued_at

    def revoke_refresh_token(self, token_id: int) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is not None and record.deleted_at is None:
                record.deleted_at = utcnow()

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.deleted_at is None:
                    record.deleted_at = now
                    revoked += 1
            if revoked:
                self.logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
            return revoked
