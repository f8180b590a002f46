from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import (
    append_device,
    normalize_email,
    parse_json_list,
    safe_row_value,
)
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'suspended')),
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_failed_login_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_activity_at TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        profile_image TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        devices JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        is_valid BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT,
        device_fingerprint TEXT,
        invalidated_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)


class PostgresStore:
    """Postgres-backed user and session store.

    Concurrency relies on single statements: session invalidation is an
    ``UPDATE ... WHERE is_valid`` and the failed-login counter is advanced
    inside one ``UPDATE ... RETURNING``. Connection checkout and statements
    are bounded by ``timeout_seconds``; exceeding it, or losing the server,
    raises :class:`StorageUnavailable`.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        pool: Any = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.warning(
                "postgres_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageUnavailable("database unavailable", operation=operation) from exc

    def _ensure_schema(self) -> None:
        """Create the user and session tables and their indexes if missing."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row["name"],
            role=safe_row_value(row, "role", "user"),
            status=safe_row_value(row, "status", "active"),
            failed_login_count=safe_row_value(row, "failed_login_count", 0) or 0,
            lock_until=safe_row_value(row, "lock_until"),
            last_failed_login_at=safe_row_value(row, "last_failed_login_at"),
            last_login_at=safe_row_value(row, "last_login_at"),
            last_activity_at=safe_row_value(row, "last_activity_at"),
            password_changed_at=safe_row_value(row, "password_changed_at"),
            profile_image=safe_row_value(row, "profile_image"),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            devices=parse_json_list(safe_row_value(row, "devices")),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            is_valid=bool(row["is_valid"]),
            created_at=row["created_at"],
            last_activity_at=safe_row_value(row, "last_activity_at") or row["created_at"],
            expires_at=row["expires_at"],
            user_agent=safe_row_value(row, "user_agent"),
            ip_addr=safe_row_value(row, "ip_addr"),
            device_fingerprint=safe_row_value(row, "device_fingerprint"),
            invalidated_at=safe_row_value(row, "invalidated_at"),
            version=safe_row_value(row, "version", 1) or 1,
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = "user",
        status: str = "active",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, role, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalize_email(email), password_hash, name, role, status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(
        self, user_id: str, password_hash: str, *, now: datetime, password_changed: bool = True
    ) -> bool:
        # A rehash with new parameters keeps the original change timestamp
        with self._connect("set_password_hash") as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s,
                    password_changed_at = CASE WHEN %s THEN %s ELSE password_changed_at END,
                    updated_at = %s
                WHERE id = %s
                """,
                (password_hash, password_changed, now, now, user_id),
            )
            return result.rowcount > 0

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        window: timedelta,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[User]:
        params = {
            "user_id": user_id,
            "now": now,
            "window_start": now - window,
            "max_attempts": max_attempts,
            "lock_until": now + lock_duration,
        }
        with self._connect("record_login_failure") as conn:
            row = conn.execute(
                """
                WITH next AS (
                    SELECT id,
                           CASE
                               WHEN last_failed_login_at IS NULL
                                    OR last_failed_login_at < %(window_start)s THEN 1
                               ELSE failed_login_count + 1
                           END AS attempts
                    FROM app_user
                    WHERE id = %(user_id)s
                      AND (lock_until IS NULL OR lock_until <= %(now)s)
                    FOR UPDATE
                )
                UPDATE app_user AS u
                SET failed_login_count = CASE
                        WHEN next.attempts >= %(max_attempts)s THEN 0
                        ELSE next.attempts
                    END,
                    lock_until = CASE
                        WHEN next.attempts >= %(max_attempts)s THEN %(lock_until)s
                        ELSE u.lock_until
                    END,
                    last_failed_login_at = %(now)s,
                    updated_at = %(now)s
                FROM next
                WHERE u.id = next.id
                RETURNING u.*
                """,
                params,
            ).fetchone()
            if not row:
                # missing user, or already locked: nothing to count
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login_success(
        self, user_id: str, *, now: datetime, device: Optional[Dict[str, Any]] = None
    ) -> Optional[User]:
        with self._connect("record_login_success") as conn:
            current = conn.execute(
                "SELECT devices FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not current:
                return None
            devices = append_device(parse_json_list(current.get("devices")), device)
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = 0,
                    lock_until = NULL,
                    last_failed_login_at = NULL,
                    last_login_at = %s,
                    last_activity_at = %s,
                    devices = %s::jsonb,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, json.dumps(devices), now, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image: Optional[str] = None,
        now: datetime,
    ) -> Optional[User]:
        with self._connect("update_user_profile") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name),
                    profile_image = COALESCE(%s, profile_image),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (name, profile_image, now, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_status(self, user_id: str, status: str, *, now: datetime) -> Optional[User]:
        with self._connect("set_user_status") as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = %s WHERE id = %s RETURNING *",
                (status, now, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_role(self, user_id: str, role: str, *, now: datetime) -> Optional[User]:
        with self._connect("set_user_role") as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
                (role, now, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect("delete_user") as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, is_valid, created_at, last_activity_at, expires_at,
                        user_agent, ip_addr, device_fingerprint, version
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.is_valid,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.user_agent,
                        session.ip_addr,
                        session.device_fingerprint,
                        session.version,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, *, now: datetime) -> bool:
        with self._connect("touch_session") as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET last_activity_at = %s
                WHERE id = %s AND is_valid AND expires_at > %s
                """,
                (now, session_id, now),
            )
            return result.rowcount > 0

    def invalidate_session(self, session_id: str, user_id: str, *, now: datetime) -> bool:
        with self._connect("invalidate_session") as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET is_valid = FALSE, invalidated_at = %s, version = version + 1
                WHERE id = %s AND user_id = %s AND is_valid
                """,
                (now, session_id, user_id),
            )
            return result.rowcount > 0

    def invalidate_user_sessions(
        self,
        user_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
    ) -> List[str]:
        clauses = ["user_id = %s", "is_valid"]
        params: List[Any] = [now, user_id]
        if except_session_id:
            clauses.append("id <> %s")
            params.append(except_session_id)
        if created_before is not None:
            clauses.append("created_at <= %s")
            params.append(created_before)
        query = (
            "UPDATE auth_session "
            "SET is_valid = FALSE, invalidated_at = %s, version = version + 1 "
            f"WHERE {' AND '.join(clauses)} RETURNING id"
        )
        with self._connect("invalidate_user_sessions") as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect("delete_user_sessions") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def list_user_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]:
        with self._connect("list_user_sessions") as conn:
            if active_at is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM auth_session
                    WHERE user_id = %s AND is_valid AND expires_at > %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, active_at),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def purge_expired_sessions(self, *, now: datetime) -> int:
        with self._connect("purge_expired_sessions") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            )
            purged = result.rowcount
        if purged:
            self.logger.info("expired_sessions_purged", count=purged)
        return purged
