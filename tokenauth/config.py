from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenauth.service.token import MIN_HASH_MEMORY_COST, load_cipher_key


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token authentication service."""

    cipher_key: str = env_field(
        ...,
        "CIPHER_KEY",
        description="Base64 encoded 32 byte AES-256-GCM-SIV key for bearer tokens",
    )
    token_lifetime_seconds: int = env_field(
        60 * 60,
        "TOKEN_LIFETIME_SECONDS",
        description="Bearer tokens younger than this are accepted without a store lookup",
    )
    refresh_token_lifetime_days: int = env_field(
        30,
        "REFRESH_TOKEN_LIFETIME_DAYS",
        description="Refresh-token records older than this no longer renew; also the cookie max-age",
    )
    cookie_name: str = env_field("token", "TOKEN_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "TOKEN_COOKIE_SECURE")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokenauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    blocking_pool_workers: int = env_field(
        4,
        "BLOCKING_POOL_WORKERS",
        description="Threads used for nonce hashing and store calls",
    )
    nonce_hash_time_cost: int = env_field(3, "NONCE_HASH_TIME_COST")
    nonce_hash_memory_cost: int = env_field(
        64 * 1024, "NONCE_HASH_MEMORY_COST", description="Argon2 memory cost in KiB"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cipher_key")
    @classmethod
    def _validate_cipher_key(cls, value: str) -> str:
        # Raises ConfigError on bad base64 or wrong length
        load_cipher_key(value)
        return value

    @field_validator(
        "token_lifetime_seconds",
        "refresh_token_lifetime_days",
        "blocking_pool_workers",
        "nonce_hash_time_cost",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("nonce_hash_memory_cost")
    @classmethod
    def _ensure_hash_memory(cls, value: int) -> int:
        if value < MIN_HASH_MEMORY_COST:
            raise ValueError(f"must be at least {MIN_HASH_MEMORY_COST} KiB")
        return value

    @property
    def cipher_key_bytes(self) -> bytes:
        return load_cipher_key(self.cipher_key)

    @property
    def token_lifetime(self) -> timedelta:
        return timedelta(seconds=self.token_lifetime_seconds)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(days=self.refresh_token_lifetime_days)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
