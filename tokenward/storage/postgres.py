from __future__ import annotations

import uuid
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.storage.common import (
    STALE_SESSION_AGE,
    session_from_row,
    user_from_row,
)
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import Session, User

_CLEANUP_PREDICATE = """
    expires_at < now()
    OR (expires_at IS NULL AND created_at < now() - make_interval(days => %s))
"""


class PostgresStore:
    """Postgres-backed user directory and durable session store."""

    REQUIRED_TABLES = ("app_user", "user_auth_credential", "auth_session")

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        statement_timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=statement_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_seconds * 1000)}",
            },
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply the SQL files in migrations/ first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self, email: str, full_name: str = "", *, is_active: bool = True
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, full_name, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return user_from_row(row)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
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

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_refresh_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, user_agent, ip_address, is_valid, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.user_agent,
                        session.ip_address,
                        session.is_valid,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already recorded", {"field": "refresh_token"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            )
        return session

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s",
                (refresh_token,),
            ).fetchone()
        if not row:
            return None
        return session_from_row(row)

    def get_sessions_by_user(
        self, user_id: str, *, valid_only: bool = False
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        if valid_only:
            query += " AND is_valid = TRUE"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [session_from_row(row) for row in rows]

    def get_session_by_id_and_user(
        self, session_id: str, user_id: str
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s AND user_id = %s",
                (session_id, user_id),
            ).fetchone()
        if not row:
            return None
        return session_from_row(row)

    def invalidate_by_refresh_token(self, refresh_token: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET is_valid = FALSE WHERE refresh_token = %s AND is_valid = TRUE",
                (refresh_token,),
            )
            return result.rowcount

    def invalidate_by_session_and_user(self, session_id: str, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET is_valid = FALSE WHERE id = %s AND user_id = %s AND is_valid = TRUE",
                (session_id, user_id),
            )
            return result.rowcount

    def invalidate_all_by_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET is_valid = FALSE WHERE user_id = %s AND is_valid = TRUE",
                (user_id,),
            )
            return result.rowcount

    def count_expired(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT count(*) AS n FROM auth_session WHERE {_CLEANUP_PREDICATE}",
                (STALE_SESSION_AGE.days,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def cleanup_expired(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                f"DELETE FROM auth_session WHERE {_CLEANUP_PREDICATE}",
                (STALE_SESSION_AGE.days,),
            )
            removed = result.rowcount
        self.logger.info("expired_sessions_removed", count=removed)
        return removed
