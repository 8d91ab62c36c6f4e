from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import Session, User

_UNIQUE_FIELDS = {
    "app_user_email_key": "email",
    "app_user_identity_provider_id_key": "identity_provider_id",
    "auth_session_refresh_token_hash_key": "refresh_token_hash",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        password_hash TEXT,
        identity_provider_id TEXT UNIQUE,
        avatar_url TEXT,
        token_version INTEGER NOT NULL DEFAULT 1,
        reset_challenge_hash TEXT,
        reset_challenge_expires_at TIMESTAMPTZ,
        reset_challenge_last_sent_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        CONSTRAINT app_user_login_method CHECK (
            password_hash IS NOT NULL OR identity_provider_id IS NOT NULL
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        token_version_snapshot INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
)


class PostgresStore:
    """Postgres-backed user and session store.

    Every session or user mutation is a single statement keyed by a primary
    or unique column, so per-row atomicity is all that is relied on.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StorageUnavailable(
                "database connection timed out", backend="postgres"
            ) from exc
        except errors.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StorageUnavailable("database unavailable", backend="postgres") from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``auth_session`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        field = _UNIQUE_FIELDS.get(constraint or "", "email")
        message = {
            "email": "email already exists",
            "identity_provider_id": "identity already linked",
            "refresh_token_hash": "refresh token already bound",
        }[field]
        return ConstraintViolation(message, {"field": field})

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row["display_name"],
            password_hash=row.get("password_hash"),
            identity_provider_id=row.get("identity_provider_id"),
            avatar_url=row.get("avatar_url"),
            token_version=int(row.get("token_version") or 1),
            reset_challenge_hash=row.get("reset_challenge_hash"),
            reset_challenge_expires_at=row.get("reset_challenge_expires_at"),
            reset_challenge_last_sent_at=row.get("reset_challenge_last_sent_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            token_version_snapshot=int(row["token_version_snapshot"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    # users
    def create_user(
        self,
        email: str,
        display_name: str,
        *,
        password_hash: Optional[str] = None,
        identity_provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        if not password_hash and not identity_provider_id:
            raise ConstraintViolation(
                "user requires a password or identity provider",
                {"field": "password_hash"},
            )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, password_hash, identity_provider_id, avatar_url)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        display_name,
                        password_hash,
                        identity_provider_id,
                        avatar_url,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return self._row_to_user(row)

    def _fetch_user(self, clause: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {clause} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_provider(self, identity_provider_id: str) -> Optional[User]:
        return self._fetch_user("identity_provider_id", identity_provider_id)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (password_hash, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET display_name = COALESCE(%s, display_name),
                    avatar_url = COALESCE(%s, avatar_url),
                    updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (display_name, avatar_url, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def bump_token_version(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    def set_reset_challenge(
        self,
        user_id: str,
        code_hash: str,
        expires_at: datetime,
        last_sent_at: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET reset_challenge_hash = %s,
                    reset_challenge_expires_at = %s,
                    reset_challenge_last_sent_at = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (code_hash, expires_at, last_sent_at, user_id),
            )

    def clear_reset_challenge(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET reset_challenge_hash = NULL,
                    reset_challenge_expires_at = NULL,
                    reset_challenge_last_sent_at = NULL,
                    updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def consume_reset_challenge(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET reset_challenge_hash = NULL,
                    reset_challenge_expires_at = NULL,
                    reset_challenge_last_sent_at = NULL,
                    updated_at = now()
                WHERE id = %s AND reset_challenge_hash = %s
                RETURNING id
                """,
                (user_id, code_hash),
            ).fetchone()
        return row is not None

    def record_login(
        self, user_id: str, *, avatar_url: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET last_login_at = now(),
                    avatar_url = COALESCE(avatar_url, %s),
                    updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (avatar_url, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, token_version_snapshot, created_at, expires_at, last_used_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.token_version_snapshot,
                        session.created_at,
                        session.expires_at,
                        session.last_used_at,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return session

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        refresh_token_hash: str,
        *,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Optional[Session]:
        """Rebind a session to a new refresh hash. Last write wins."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session
                    SET refresh_token_hash = %s,
                        expires_at = %s,
                        last_used_at = now(),
                        user_agent = COALESCE(%s, user_agent),
                        ip_addr = COALESCE(%s, ip_addr)
                    WHERE id = %s RETURNING *
                    """,
                    (refresh_token_hash, expires_at, user_agent, ip_addr, session_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return self._row_to_session(row) if row else None

    def delete_session_by_refresh_hash(self, refresh_token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            )
            return result.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
