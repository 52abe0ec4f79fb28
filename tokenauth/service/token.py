"""Bearer token codec.

A token is ``nonce || AES-256-GCM-SIV(user_id, refresh_token_id, issued_at)``
rendered as unpadded URL-safe base64. The nonce doubles as the refresh-token
secret: the server keeps only an Argon2 hash of it on the refresh-token record,
so an expired token can be renewed only while its nonce still verifies against
that record.
"""

from __future__ import annotations

import base64
import binascii
import secrets
import struct
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCMSIV

from tokenauth.service.errors import ConfigError, DecodeError

KEY_LENGTH = 32
NONCE_LENGTH = 12
PAYLOAD_LENGTH = 24
TAG_LENGTH = 16

# Argon2 needs at least 8 KiB of memory per lane
HASH_PARALLELISM = 4
MIN_HASH_MEMORY_COST = 8 * HASH_PARALLELISM

# user_id, refresh_token_id, issued_at as big-endian signed 64-bit integers
_PAYLOAD = struct.Struct(">qqq")


@dataclass(frozen=True)
class Token:
    nonce: bytes
    user_id: int
    refresh_token_id: int
    issued_at: int


def load_cipher_key(encoded: str) -> bytes:
    """Decode a base64 cipher key, requiring exactly ``KEY_LENGTH`` bytes."""
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise ConfigError("cipher key must be base64 encoded") from exc
    if len(key) != KEY_LENGTH:
        raise ConfigError(f"cipher key length should be {KEY_LENGTH} bytes, got {len(key)}")
    return key


def _encode_text(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_text(text: str) -> bytes:
    try:
        raw = text.encode("ascii")
    except UnicodeEncodeError as exc:
        raise DecodeError("token contains non-ascii characters") from exc
    try:
        data = base64.b64decode(raw + b"=" * (-len(raw) % 4), altchars=b"-_", validate=True)
    except binascii.Error as exc:
        raise DecodeError("token is not valid base64") from exc
    # Reject alternate spellings of the same bytes (stray '+', '/', set padding bits)
    if _encode_text(data) != text:
        raise DecodeError("token is not canonically encoded")
    return data


class TokenCodec:
    """Seals and opens bearer tokens with a fixed 32 byte key."""

    def __init__(self, cipher_key: bytes, token_lifetime: timedelta) -> None:
        if len(cipher_key) != KEY_LENGTH:
            raise ConfigError(f"cipher key length should be {KEY_LENGTH} bytes")
        self._aead = AESGCMSIV(cipher_key)
        self.token_lifetime = token_lifetime

    def encode(self, token: Token) -> Tuple[str, datetime]:
        """Return the token string and its advisory expiry.

        ``issued_at`` must be representable as a datetime (years 1..9999),
        otherwise ValueError is raised.
        """
        if len(token.nonce) != NONCE_LENGTH:
            raise ValueError(f"token nonce must be {NONCE_LENGTH} bytes")
        try:
            expires_at = datetime.fromtimestamp(token.issued_at, tz=timezone.utc) + self.token_lifetime
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"token issued_at out of range: {token.issued_at}") from exc
        plain = _PAYLOAD.pack(token.user_id, token.refresh_token_id, token.issued_at)
        sealed = self._aead.encrypt(token.nonce, plain, None)
        return _encode_text(token.nonce + sealed), expires_at

    def decode(self, text: str) -> Token:
        data = _decode_text(text)
        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            raise DecodeError("invalid data length")
        nonce, sealed = data[:NONCE_LENGTH], data[NONCE_LENGTH:]
        try:
            plain = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise DecodeError("token failed authentication") from exc
        if len(plain) != PAYLOAD_LENGTH:
            raise DecodeError("invalid token length")
        user_id, refresh_token_id, issued_at = _PAYLOAD.unpack(plain)
        return Token(
            nonce=nonce,
            user_id=user_id,
            refresh_token_id=refresh_token_id,
            issued_at=issued_at,
        )

    def is_expired(self, token: Token, now: Optional[int] = None) -> bool:
        current = int(time.time()) if now is None else now
        return token.issued_at + int(self.token_lifetime.total_seconds()) < current


class NonceHasher:
    """Argon2id hashing of token nonces."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 64 * 1024) -> None:
        if memory_cost < MIN_HASH_MEMORY_COST:
            raise ConfigError(f"nonce hash memory cost must be at least {MIN_HASH_MEMORY_COST} KiB")
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=HASH_PARALLELISM,
            type=Type.ID,
        )

    def hash(self, nonce: bytes) -> str:
        return self._hasher.hash(nonce)

    def verify(self, nonce: bytes, nonce_hash: str) -> bool:
        try:
            return self._hasher.verify(nonce_hash, nonce)
        except (InvalidHash, VerificationError):
            return False


def generate_nonce() -> bytes:
    # NUL-free so the nonce stays usable with C-string based hashers (bcrypt)
    while True:
        nonce = secrets.token_bytes(NONCE_LENGTH)
        if 0 not in nonce:
            return nonce


def generate_nonce_and_hash(hasher: NonceHasher) -> Tuple[bytes, str]:
    """Draw a fresh nonce and its hash. Slow: run it off the event loop."""
    nonce = generate_nonce()
    return nonce, hasher.hash(nonce)


__all__ = [
    "KEY_LENGTH",
    "NONCE_LENGTH",
    "PAYLOAD_LENGTH",
    "MIN_HASH_MEMORY_COST",
    "Token",
    "TokenCodec",
    "NonceHasher",
    "generate_nonce",
    "generate_nonce_and_hash",
    "load_cipher_key",
]
