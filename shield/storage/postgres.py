from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from shield.logging import get_logger
from shield.storage.errors import ConstraintViolation, StoreError
from shield.storage.models import Session, User

_INFRASTRUCTURE_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout)

REQUIRED_TABLES = ("app_user", "user_auth_credential", "auth_session")


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        role=row.get("role", "user"),
        tenant_id=row.get("tenant_id", "public"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        is_active=row.get("is_active", True),
    )


def _session_from_row(row: dict) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStore:
    """Postgres-backed store; one pooled connection per transaction scope."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
        logger: Any = None,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = logger or get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection(timeout=self.timeout_seconds)

    @contextmanager
    def transaction(self) -> Iterator["PostgresTransaction"]:
        """Run the body inside one database transaction.

        Commit on normal exit, rollback on any exception. Connection,
        pool and timeout failures surface as ``StoreError``.
        """
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (str(int(self.timeout_seconds * 1000)),),
                )
                yield PostgresTransaction(conn)
        except _INFRASTRUCTURE_ERRORS as exc:
            self.logger.error(
                "postgres_transaction_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(
                "database transaction failed", {"error_type": type(exc).__name__}
            ) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self.transaction() as tx:
            missing = [table for table in REQUIRED_TABLES if not tx.table_exists(table)]
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self.transaction() as tx:
            tx.conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # provisioning
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        tenant_id: str = "public",
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            role=role,
            tenant_id=tenant_id,
            is_active=is_active,
        )
        try:
            with self.transaction() as tx:
                row = tx.conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, tenant_id, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user.id, user.email, role, tenant_id, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self.transaction() as tx:
                tx.conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )


class PostgresTransaction:
    """Operations available inside ``PostgresStore.transaction()``."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def table_exists(self, table: str) -> bool:
        row = self.conn.execute(
            "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
        ).fetchone()
        return bool(row and row.get("oid"))

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM app_user WHERE id = %s", (user_id,)
        ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
        ).fetchone()
        return _user_from_row(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        row = self.conn.execute(
            "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(self, user_id: str) -> Session:
        sess = Session.new(user_id)
        try:
            self.conn.execute(
                """
                INSERT INTO auth_session (id, user_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                """,
                (sess.id, sess.user_id, sess.created_at, sess.updated_at),
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.conn.execute(
            "SELECT * FROM auth_session WHERE id = %s", (session_id,)
        ).fetchone()
        return _session_from_row(row) if row else None

    def touch_session(self, session_id: str) -> Optional[Session]:
        # updated_at never moves backwards, even on a coarse clock
        row = self.conn.execute(
            """
            UPDATE auth_session
            SET updated_at = GREATEST(clock_timestamp(), updated_at + interval '1 microsecond')
            WHERE id = %s
            RETURNING *
            """,
            (session_id,),
        ).fetchone()
        return _session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> Optional[Session]:
        row = self.conn.execute(
            "DELETE FROM auth_session WHERE id = %s RETURNING *", (session_id,)
        ).fetchone()
        return _session_from_row(row) if row else None
