from datetime import timedelta

import pytest

from ephemera.storage.errors import ConstraintViolation
from ephemera.storage.memory import MemoryStore
from ephemera.storage.models import (
    BeginPasswordResetCommand,
    CreateUserCommand,
    RevocationReason,
    RevokeAllCommand,
    SessionRecord,
    SetDisplayName,
    SetPasswordCommand,
    SetUsername,
    UpdateProfileCommand,
    utcnow,
)


def _create(store, email="persist@example.com", username="persist"):
    return store.create_user(
        CreateUserCommand(
            email=email,
            username=username,
            display_name="Persist",
            password_hash="hash",
            password_algo="argon2id",
        )
    )


def _session(store, user_id, digest, *, ttl_minutes=60, now=None):
    return store.insert_session(
        SessionRecord.new(user_id, digest, ttl_minutes=ttl_minutes, now=now)
    )


def test_memory_store_persists_users_and_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _create(store)
    session = _session(store, user.id, "digest-1")
    store.revoke_all_sessions(RevokeAllCommand(user.id, RevocationReason.PASSWORD_CHANGED), utcnow())

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user
    assert reloaded_user.token_version == 1
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    (reloaded_session,) = reloaded.list_user_sessions(user.id)
    assert reloaded_session.id == session.id
    assert reloaded_session.revoked_at is not None
    assert reloaded.find_active_session("digest-1", utcnow()) is None


def test_corrupt_snapshot_is_an_error(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")
    with pytest.raises(RuntimeError):
        MemoryStore(fs_root=str(tmp_path))


def test_email_and_username_are_unique_case_insensitively(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    _create(store)
    with pytest.raises(ConstraintViolation) as email_exc:
        _create(store, email="PERSIST@example.com", username="other")
    assert email_exc.value.detail == {"field": "email"}
    with pytest.raises(ConstraintViolation) as name_exc:
        _create(store, email="other@example.com", username="PERSIST")
    assert name_exc.value.detail == {"field": "username"}


def test_insert_session_requires_user_and_unique_digest(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    _session(store, user.id, "digest-1")
    with pytest.raises(ConstraintViolation):
        _session(store, user.id, "digest-1")
    with pytest.raises(ConstraintViolation):
        _session(store, "missing-user", "digest-2")


def test_consume_session_only_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    session = _session(store, user.id, "digest-1")
    now = utcnow()
    assert store.find_active_session("digest-1", now).id == session.id
    assert store.consume_session(session.id, now) is True
    assert store.consume_session(session.id, now) is False
    assert store.find_active_session("digest-1", now) is None
    assert store.revoke_session_by_hash("digest-1", now) is False
    assert store.revoke_session_by_hash("unknown", now) is False


def test_find_active_session_ignores_expired(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    _session(store, user.id, "digest-1", ttl_minutes=1)
    assert store.find_active_session("digest-1", utcnow() + timedelta(minutes=2)) is None


def test_revoke_all_bumps_version_and_closes_open_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    other = _create(store, email="other@example.com", username="other")
    first = _session(store, user.id, "digest-1")
    _session(store, user.id, "digest-2")
    _session(store, other.id, "digest-3")
    store.consume_session(first.id, utcnow())

    result = store.revoke_all_sessions(
        RevokeAllCommand(user.id, RevocationReason.LOGOUT_EVERYWHERE), utcnow()
    )

    assert result.token_version == 1
    assert result.sessions_revoked == 1
    assert store.find_active_session("digest-3", utcnow()) is not None
    assert store.get_user(other.id).token_version == 0


def test_revoke_all_for_unknown_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    result = store.revoke_all_sessions(
        RevokeAllCommand("ghost", RevocationReason.ACCOUNT_DELETED), utcnow()
    )
    assert (result.token_version, result.sessions_revoked) == (0, 0)


def test_expired_session_purge_respects_cutoff(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    long_ago = utcnow() - timedelta(days=30)
    old = _session(store, user.id, "old", ttl_minutes=60, now=long_ago)
    recent = _session(store, user.id, "recent", ttl_minutes=60, now=utcnow() - timedelta(days=2))
    _session(store, user.id, "live")

    cutoff = utcnow() - timedelta(days=14)
    assert [s.id for s in store.list_expired_sessions(cutoff)] == [old.id]
    assert store.delete_expired_sessions(cutoff) == 1
    remaining = {s.id for s in store.list_user_sessions(user.id)}
    assert old.id not in remaining
    assert recent.id in remaining


def test_delete_user_cascades(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    _session(store, user.id, "digest-1")
    assert store.delete_user(user.id) is True
    assert store.get_user(user.id) is None
    assert store.get_password_record(user.id) is None
    assert store.list_user_sessions(user.id) == []
    assert store.delete_user(user.id) is False


def test_password_reset_token_lifecycle(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    store.begin_password_reset(BeginPasswordResetCommand(user.id, "reset-token", utcnow()))
    assert store.get_user_by_reset_token("reset-token").id == user.id

    store.set_password(
        SetPasswordCommand(user.id, "new-hash", "argon2id", clear_reset_token=True)
    )
    assert store.get_user_by_reset_token("reset-token") is None
    assert store.get_password_record(user.id) == ("new-hash", "argon2id")


def test_update_profile_username_conflict(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = _create(store)
    _create(store, email="other@example.com", username="taken")
    with pytest.raises(ConstraintViolation):
        store.update_profile(
            UpdateProfileCommand(user.id, (SetDisplayName("Renamed"), SetUsername("Taken")))
        )
    # the rejected command wrote nothing
    assert store.get_user(user.id).display_name != "Renamed"
    updated = store.update_profile(UpdateProfileCommand(user.id, (SetDisplayName("New Name"),)))
    assert updated.display_name == "New Name"
    assert updated.username == "persist"
