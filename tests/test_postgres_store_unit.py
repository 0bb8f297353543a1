import contextlib
import uuid
from datetime import timedelta

import pytest
from psycopg import errors

from ephemera.logging import get_logger
from ephemera.storage.errors import ConstraintViolation
from ephemera.storage.models import (
    CreateUserCommand,
    RevocationReason,
    RevokeAllCommand,
    SessionRecord,
    SetProfilePicture,
    SetUsername,
    UpdateProfileCommand,
    utcnow,
)
from ephemera.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, script):
        self.script = script
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def transaction(self):
        return contextlib.nullcontext()

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        outcome = self.script.pop(0) if self.script else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedPool:
    """Hands out one connection whose execute() replays scripted results."""

    def __init__(self, *script):
        self.conn = FakeConnection(list(script))

    def connection(self):
        return self.conn

    @property
    def executed(self):
        return self.conn.executed


def _store(*script) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = ScriptedPool(*script)
    store.logger = get_logger("tests.postgres")
    return store


def _user_row(**overrides):
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "email": "ada@example.com",
        "username": "ada",
        "display_name": "Ada",
        "verified": False,
        "token_version": 0,
        "profile_pic_url": None,
        "verify_token": None,
        "verify_token_issued_at": None,
        "reset_password_token": None,
        "reset_password_token_issued_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestConsumeSession:
    def test_conditional_update_wins_once(self):
        store = _store(FakeResult(rowcount=1))
        assert store.consume_session("s1", utcnow()) is True
        sql, params = store.pool.executed[0]
        assert "revoked_at IS NULL" in sql
        assert params[1] == "s1"

    def test_lost_race_reports_false(self):
        store = _store(FakeResult(rowcount=0))
        assert store.consume_session("s1", utcnow()) is False


class TestRevokeAll:
    def test_bumps_version_and_revokes_open_rows(self):
        store = _store(FakeResult(row={"token_version": 4}), FakeResult(rowcount=2))
        result = store.revoke_all_sessions(
            RevokeAllCommand("u1", RevocationReason.LOGOUT_EVERYWHERE), utcnow()
        )
        assert result.token_version == 4
        assert result.sessions_revoked == 2
        bump_sql, _ = store.pool.executed[0]
        revoke_sql, _ = store.pool.executed[1]
        assert "token_version = token_version + 1" in bump_sql
        assert "RETURNING token_version" in bump_sql
        assert "revoked_at IS NULL" in revoke_sql

    def test_unknown_user_touches_nothing(self):
        store = _store(FakeResult(row=None))
        result = store.revoke_all_sessions(
            RevokeAllCommand("ghost", RevocationReason.ACCOUNT_DELETED), utcnow()
        )
        assert result.sessions_revoked == 0
        assert len(store.pool.executed) == 1


class TestConstraintMapping:
    def test_duplicate_username_maps_to_field(self):
        store = _store(
            errors.UniqueViolation('duplicate key value violates unique constraint "app_user_username_key"')
        )
        command = CreateUserCommand(
            email="ada@example.com",
            username="ada",
            display_name="Ada",
            password_hash="h",
            password_algo="argon2id",
        )
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user(command)
        assert excinfo.value.detail == {"field": "username"}

    def test_duplicate_refresh_digest(self):
        store = _store(errors.UniqueViolation("refresh_token_hash"))
        record = SessionRecord.new("u1", "digest", ttl_minutes=10)
        with pytest.raises(ConstraintViolation):
            store.insert_session(record)

    def test_session_for_missing_user(self):
        store = _store(errors.ForeignKeyViolation("auth_session_user_id_fkey"))
        record = SessionRecord.new("u1", "digest", ttl_minutes=10)
        with pytest.raises(ConstraintViolation) as excinfo:
            store.insert_session(record)
        assert excinfo.value.detail == {"user_id": "u1"}

    def test_profile_username_clash(self):
        store = _store(errors.UniqueViolation("username"))
        with pytest.raises(ConstraintViolation):
            store.update_profile(UpdateProfileCommand("u1", (SetUsername("taken"),)))


class TestRowMapping:
    def test_create_user_lowercases_and_returns_model(self):
        row = _user_row(email="ada@example.com")
        store = _store(FakeResult(row=row), FakeResult(rowcount=1))
        command = CreateUserCommand(
            email="Ada@Example.com",
            username="Ada",
            display_name="Ada",
            password_hash="h",
            password_algo="argon2id",
        )
        user = store.create_user(command)
        assert user.id == str(row["id"])
        _, params = store.pool.executed[0]
        assert params[1] == "ada@example.com"
        assert params[2] == "ada"

    def test_session_rows_stringify_inet(self):
        import ipaddress

        now = utcnow()
        row = {
            "id": uuid.uuid4(),
            "user_id": uuid.uuid4(),
            "refresh_token_hash": "digest",
            "user_agent": "pytest",
            "ip_addr": ipaddress.ip_address("10.0.0.1"),
            "created_at": now,
            "expires_at": now + timedelta(days=1),
            "revoked_at": None,
        }
        store = _store(FakeResult(row=row))
        record = store.find_active_session("digest", now)
        assert record.ip_addr == "10.0.0.1"
        assert record.is_active(now)
        sql, _ = store.pool.executed[0]
        assert "expires_at > %s" in sql

    def test_invalid_uuid_is_unknown_user(self):
        store = _store(errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
        assert store.get_user("not-a-uuid") is None

    def test_empty_profile_update_reads_current_row(self):
        row = _user_row()
        store = _store(FakeResult(row=row))
        user = store.update_profile(UpdateProfileCommand(str(row["id"])))
        assert user.username == "ada"
        sql, _ = store.pool.executed[0]
        assert sql.startswith("SELECT")

    def test_clearing_picture_writes_null(self):
        row = _user_row()
        store = _store(FakeResult(row=row))
        store.update_profile(UpdateProfileCommand(str(row["id"]), (SetProfilePicture(None),)))
        sql, params = store.pool.executed[0]
        assert "profile_pic_url = %s" in sql
        assert "display_name" not in sql.split("RETURNING")[0]
        assert params[0] is None
