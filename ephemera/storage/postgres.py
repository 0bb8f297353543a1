from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from ephemera.logging import get_logger
from ephemera.storage.errors import ConstraintViolation, StoreUnavailable
from ephemera.storage.models import (
    BeginPasswordResetCommand,
    ConfirmVerificationCommand,
    CreateUserCommand,
    IssueVerificationCodeCommand,
    RevokeAllCommand,
    RevokeAllResult,
    SessionRecord,
    SetDisplayName,
    SetPasswordCommand,
    SetProfilePicture,
    SetUsername,
    UpdateProfileCommand,
    User,
    utcnow,
)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    "CREATE EXTENSION IF NOT EXISTS citext",
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email CITEXT NOT NULL UNIQUE,
        username CITEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        token_version INTEGER NOT NULL DEFAULT 0,
        profile_pic_url TEXT,
        verify_token TEXT,
        verify_token_issued_at TIMESTAMPTZ,
        reset_password_token TEXT UNIQUE,
        reset_password_token_issued_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        ip_addr INET,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_open_by_user ON auth_session (user_id) WHERE revoked_at IS NULL",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_at ON auth_session (expires_at)",
)

REQUIRED_TABLES = ("app_user", "user_credential", "auth_session")

_USER_COLUMNS = (
    "id, email, username, display_name, verified, token_version, profile_pic_url, "
    "verify_token, verify_token_issued_at, reset_password_token, "
    "reset_password_token_issued_at, created_at, updated_at"
)
_SESSION_COLUMNS = (
    "id, user_id, refresh_token_hash, user_agent, ip_addr, created_at, expires_at, revoked_at"
)


class PostgresStore:
    """psycopg-backed store for users, credentials and session rows.

    Every method borrows one pooled connection; the pool commits when the
    ``with`` block exits cleanly and rolls back otherwise.
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
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            display_name=row["display_name"],
            verified=bool(row.get("verified", False)),
            token_version=int(row.get("token_version") or 0),
            profile_pic_url=row.get("profile_pic_url"),
            verify_token=row.get("verify_token"),
            verify_token_issued_at=row.get("verify_token_issued_at"),
            reset_password_token=row.get("reset_password_token"),
            reset_password_token_issued_at=row.get("reset_password_token_issued_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> SessionRecord:
        ip_val = row.get("ip_addr")
        return SessionRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=str(ip_val) if ip_val is not None else None,
            revoked_at=row.get("revoked_at"),
        )

    # users
    def create_user(self, command: CreateUserCommand) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, username, display_name, verify_token, verify_token_issued_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        command.email.lower(),
                        command.username.lower(),
                        command.display_name,
                        command.verify_token,
                        command.verify_token_issued_at,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (row["id"], command.password_hash, command.password_algo),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            return self._fetch_user("id", user_id)
        except errors.InvalidTextRepresentation:
            # not a UUID, so no such user
            return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_user("reset_password_token", token)

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def set_password(self, command: SetPasswordCommand) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (command.user_id, command.password_hash, command.password_algo),
                )
                if command.clear_reset_token:
                    conn.execute(
                        """
                        UPDATE app_user
                        SET reset_password_token = NULL,
                            reset_password_token_issued_at = NULL,
                            updated_at = now()
                        WHERE id = %s
                        """,
                        (command.user_id,),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": command.user_id}
            )

    def _update_user(self, assignments: str, params: tuple, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def issue_verification_code(self, command: IssueVerificationCodeCommand) -> Optional[User]:
        return self._update_user(
            "verify_token = %s, verify_token_issued_at = %s",
            (command.code, command.issued_at),
            command.user_id,
        )

    def confirm_verification(self, command: ConfirmVerificationCommand) -> Optional[User]:
        return self._update_user(
            "verified = TRUE, verify_token = NULL, verify_token_issued_at = NULL",
            (),
            command.user_id,
        )

    def begin_password_reset(self, command: BeginPasswordResetCommand) -> Optional[User]:
        return self._update_user(
            "reset_password_token = %s, reset_password_token_issued_at = %s",
            (command.token, command.issued_at),
            command.user_id,
        )

    def update_profile(self, command: UpdateProfileCommand) -> Optional[User]:
        assignments: list[str] = []
        params: list[Any] = []
        for change in command.changes:
            if isinstance(change, SetDisplayName):
                assignments.append("display_name = %s")
                params.append(change.display_name)
            elif isinstance(change, SetUsername):
                assignments.append("username = %s")
                params.append(change.username.lower())
            elif isinstance(change, SetProfilePicture):
                assignments.append("profile_pic_url = %s")
                params.append(change.profile_pic_url or None)
        if not assignments:
            return self.get_user(command.user_id)
        try:
            return self._update_user(", ".join(assignments), tuple(params), command.user_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def insert_session(self, record: SessionRecord) -> SessionRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, user_agent, ip_addr, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.refresh_token_hash,
                        record.user_agent,
                        record.ip_addr,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already recorded", {"field": "refresh_token_hash"}
            )
        return record

    def find_active_session(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE refresh_token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (refresh_token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def consume_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (now, session_id),
            )
            return result.rowcount == 1

    def revoke_session_by_hash(self, refresh_token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE refresh_token_hash = %s AND revoked_at IS NULL
                """,
                (now, refresh_token_hash),
            )
            return result.rowcount > 0

    def revoke_all_sessions(self, command: RevokeAllCommand, now: datetime) -> RevokeAllResult:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE app_user SET token_version = token_version + 1, updated_at = %s
                WHERE id = %s
                RETURNING token_version
                """,
                (now, command.user_id),
            ).fetchone()
            if not row:
                return RevokeAllResult(command.user_id, token_version=0, sessions_revoked=0)
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, command.user_id),
            )
            revoked = result.rowcount
        self.logger.info(
            "postgres_sessions_revoked",
            user_id=command.user_id,
            reason=command.reason.value,
            count=revoked,
        )
        return RevokeAllResult(command.user_id, int(row["token_version"]), revoked)

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def list_expired_sessions(self, cutoff: datetime, limit: int = 1000) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE expires_at < %s ORDER BY expires_at LIMIT %s
                """,
                (cutoff, limit),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def delete_expired_sessions(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (cutoff,)
            )
            return result.rowcount
