from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import datetime
from typing import Callable, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    RefreshTokenRecord,
    User,
    as_utc,
    utcnow,
)

REQUIRED_TABLES = ("app_user", "refresh_token", "revoked_access_token")


class PostgresStore:
    """Postgres-backed users and refresh tokens.

    ``refresh_token`` is keyed by ``user_id`` so the single-record-per-user
    policy is enforced by the primary key; writes are upserts.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._clock = clock
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate connectivity failures into ``StoreUnavailable``."""
        try:
            yield
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable("postgres", operation, exc) from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the tables this store relies on are missing."""

        with self._guard("verify_schema"), self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_name = ANY(%s)",
                (list(REQUIRED_TABLES),),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in REQUIRED_TABLES if name not in present]
        if missing:
            raise RuntimeError(
                "Missing required tables: "
                + ", ".join(missing)
                + "; apply the schema migrations before starting"
            )

    @staticmethod
    def _user_from_row(row: dict, *, with_password: bool = False) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash") if with_password else None,
            created_at=as_utc(row.get("created_at") or utcnow()),
        )

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        user = User.new(email, password_hash)
        try:
            with self._guard("create_user"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user.id, user.email, user.password_hash, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user.without_password()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._guard("get_user"), self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, created_at FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._guard("get_user_by_email"), self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, created_at FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email_with_password(self, email: str) -> Optional[User]:
        with self._guard("get_user_by_email_with_password"), self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, password_hash, created_at FROM app_user WHERE email = %s",
                (email,),
            ).fetchone()
        return self._user_from_row(row, with_password=True) if row else None

    # refresh tokens
    def put_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord(
            user_id=user_id,
            token_hash=token_hash,
            expires_at=as_utc(expires_at),
            created_at=self._clock(),
        )
        try:
            with self._guard("put_refresh_token"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET token_hash = EXCLUDED.token_hash,
                        expires_at = EXCLUDED.expires_at,
                        created_at = EXCLUDED.created_at
                    """,
                    (record.user_id, record.token_hash, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return record

    def get_refresh_token(self, user_id: str) -> Optional[RefreshTokenRecord]:
        with self._guard("get_refresh_token"), self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, token_hash, expires_at, created_at FROM refresh_token WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return RefreshTokenRecord(
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=as_utc(row["expires_at"]),
            created_at=as_utc(row["created_at"]),
        )

    def replace_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        token_hash: str,
        expires_at: datetime,
        deadline: Optional[float] = None,
    ) -> bool:
        """Swap the digest if it still equals ``expected_hash``.

        With a ``deadline`` the UPDATE runs under a transaction-local
        ``statement_timeout`` covering the remaining time, so a cancelled
        statement rolls back instead of committing after the caller gave up.
        """
        with self._guard("replace_refresh_token"), self._connect() as conn:
            if deadline is not None:
                remaining_ms = int((deadline - time.monotonic()) * 1000)
                if remaining_ms <= 0:
                    raise StoreUnavailable(
                        "postgres", "replace_refresh_token", TimeoutError("deadline passed")
                    )
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)", (f"{remaining_ms}ms",)
                )
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET token_hash = %s, expires_at = %s, created_at = %s
                WHERE user_id = %s AND token_hash = %s
                """,
                (token_hash, as_utc(expires_at), self._clock(), user_id, expected_hash),
            )
            return cur.rowcount == 1

    def delete_refresh_token(self, user_id: str) -> None:
        with self._guard("delete_refresh_token"), self._connect() as conn:
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._guard("purge_expired_refresh_tokens"), self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or self._clock(),)
            )
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()


class PostgresRevocationStore:
    """Relational denylist; ``expires_at`` is checked on read and ``sweep``
    deletes rows whose tokens have expired."""

    def __init__(
        self, store: PostgresStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._store = store
        self._clock = clock

    def _add(self, token_id: str, user_id: str, expires_at: datetime) -> None:
        with self._store._guard("revocation_add"), self._store._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_access_token (token_id, user_id, expires_at, revoked_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (token_id) DO NOTHING
                """,
                (token_id, user_id, expires_at, self._clock()),
            )

    def _contains(self, token_id: str, now: datetime) -> bool:
        with self._store._guard("revocation_contains"), self._store._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_access_token WHERE token_id = %s AND expires_at > %s",
                (token_id, now),
            ).fetchone()
        return row is not None

    async def add(self, token_id: str, user_id: str, expires_at: datetime) -> bool:
        expires_at = as_utc(expires_at)
        if expires_at <= self._clock():
            return False
        await asyncio.to_thread(self._add, token_id, user_id, expires_at)
        return True

    async def contains(self, token_id: str) -> bool:
        return await asyncio.to_thread(self._contains, token_id, self._clock())

    def sweep(self) -> int:
        with self._store._guard("revocation_sweep"), self._store._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_access_token WHERE expires_at <= %s", (self._clock(),)
            )
            return cur.rowcount
