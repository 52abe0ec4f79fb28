from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenauth.logging import get_logger
from tokenauth.storage.errors import ConstraintViolation, StoreError
from tokenauth.storage.models import RefreshToken, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id SERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        avatar TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_token (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES app_user (id),
        device TEXT NOT NULL DEFAULT '',
        hash TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_token_active_user_idx
        ON user_token (user_id) WHERE deleted_at IS NULL
    """,
)


def _row_to_user(row: dict) -> User:
    return User(
        id=int(row["id"]),
        username=row["username"],
        name=row.get("name") or "",
        avatar=row.get("avatar") or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_refresh_token(row: dict) -> RefreshToken:
    return RefreshToken(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        device=row.get("device") or "",
        hash=row["hash"],
        issued_at=row["issued_at"],
        deleted_at=row.get("deleted_at"),
    )


class PostgresStore:
    """Postgres-backed user and refresh-token store.

    Every method is blocking; the auth service runs them on its offload pool.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation):
            raise
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_store_error", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreError("database unavailable", {"error_type": type(exc).__name__}) from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``user_token`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, username: str, name: str = "", avatar: str = "") -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, name, avatar)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (username, name, avatar),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"username": username})
        return _row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return _row_to_user(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        if not row:
            return None
        return _row_to_user(row)

    # refresh tokens
    def create_refresh_token(self, user_id: int, device: str, token_hash: str) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_token (user_id, device, hash)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, device, token_hash),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return _row_to_refresh_token(row)

    def find_refresh_token(self, token_id: int) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_token WHERE id = %s AND deleted_at IS NULL",
                (token_id,),
            ).fetchone()
        if not row:
            return None
        return _row_to_refresh_token(row)

    def renew_refresh_token(
        self, token_id: int, token_hash: str, *, previous_hash: Optional[str] = None
    ) -> Optional[datetime]:
        # Single UPDATE: the row lock makes the hash comparison a compare-and-swap
        query = (
            "UPDATE user_token SET hash = %s, issued_at = now() "
            "WHERE id = %s AND deleted_at IS NULL"
        )
        params: tuple = (token_hash, token_id)
        if previous_hash is not None:
            query += " AND hash = %s"
            params += (previous_hash,)
        query += " RETURNING issued_at"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return row["issued_at"]

    def revoke_refresh_token(self, token_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_token SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL",
                (token_id,),
            )

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_token SET deleted_at = now() WHERE user_id = %s AND deleted_at IS NULL",
                (user_id,),
            )
            revoked = result.rowcount
        if revoked:
            self.logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked
