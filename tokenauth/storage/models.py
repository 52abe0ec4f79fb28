from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    name: str = ""
    avatar: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    """One login session (device). ``hash`` is the Argon2 hash of the live nonce."""

    id: int
    user_id: int
    hash: str
    device: str = ""
    issued_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def is_active(self, lifetime: timedelta, now: Optional[datetime] = None) -> bool:
        if self.deleted_at is not None:
            return False
        current = now or utcnow()
        return current - self.issued_at <= lifetime
