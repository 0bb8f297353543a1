from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ephemera.logging import get_logger
from ephemera.storage.errors import ConstraintViolation
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
    UserCredential,
    utcnow,
)


class MemoryStore:
    """In-process store for development and tests.

    Every read and write holds one re-entrant lock, so the conditional
    session update and the version bump are atomic with respect to other
    threads. State is snapshotted to JSON under ``fs_root/state`` after each
    mutation and reloaded on construction.
    """

    def __init__(self, fs_root: str = "/tmp/ephemera", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self._session_by_hash: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> bool:
        return True

    # users
    def create_user(self, command: CreateUserCommand) -> User:
        email = command.email.lower()
        username = command.username.lower()
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                display_name=command.display_name,
                created_at=now,
                updated_at=now,
                verify_token=command.verify_token,
                verify_token_issued_at=command.verify_token_issued_at,
            )
            self.users[user.id] = user
            self.credentials[user.id] = UserCredential(
                user_id=user.id,
                password_hash=command.password_hash,
                password_algo=command.password_algo,
            )
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == needle), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        needle = username.lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == needle), None)
            return replace(user) if user else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_password_token == token), None
            )
            return replace(user) if user else None

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return (cred.password_hash, cred.password_algo) if cred else None

    def set_password(self, command: SetPasswordCommand) -> None:
        with self._data_lock:
            user = self.users.get(command.user_id)
            if user is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": command.user_id}
                )
            now = utcnow()
            self.credentials[user.id] = UserCredential(
                user_id=user.id,
                password_hash=command.password_hash,
                password_algo=command.password_algo,
                updated_at=now,
            )
            if command.clear_reset_token:
                user.reset_password_token = None
                user.reset_password_token_issued_at = None
            user.updated_at = now
            self._persist_state()

    def issue_verification_code(self, command: IssueVerificationCodeCommand) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(command.user_id)
            if user is None:
                return None
            user.verify_token = command.code
            user.verify_token_issued_at = command.issued_at
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def confirm_verification(self, command: ConfirmVerificationCommand) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(command.user_id)
            if user is None:
                return None
            user.verified = True
            user.verify_token = None
            user.verify_token_issued_at = None
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def begin_password_reset(self, command: BeginPasswordResetCommand) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(command.user_id)
            if user is None:
                return None
            user.reset_password_token = command.token
            user.reset_password_token_issued_at = command.issued_at
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_profile(self, command: UpdateProfileCommand) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(command.user_id)
            if user is None:
                return None
            for change in command.changes:
                if isinstance(change, SetUsername) and any(
                    u.username == change.username.lower() and u.id != user.id
                    for u in self.users.values()
                ):
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            for change in command.changes:
                if isinstance(change, SetUsername):
                    user.username = change.username.lower()
                elif isinstance(change, SetDisplayName):
                    user.display_name = change.display_name
                elif isinstance(change, SetProfilePicture):
                    user.profile_pic_url = change.profile_pic_url or None
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            # sessions cascade with the user row
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
                    self._session_by_hash.pop(sess.refresh_token_hash, None)
            self._persist_state()
            return True

    # sessions
    def insert_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if record.refresh_token_hash in self._session_by_hash:
                raise ConstraintViolation(
                    "refresh token already recorded", {"field": "refresh_token_hash"}
                )
            self.sessions[record.id] = replace(record)
            self._session_by_hash[record.refresh_token_hash] = record.id
            self._persist_state()
            return record

    def find_active_session(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[SessionRecord]:
        with self._data_lock:
            sess_id = self._session_by_hash.get(refresh_token_hash)
            sess = self.sessions.get(sess_id) if sess_id else None
            if sess is None or not sess.is_active(now):
                return None
            return replace(sess)

    def consume_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked_at is not None:
                return False
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_session_by_hash(self, refresh_token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            sess_id = self._session_by_hash.get(refresh_token_hash)
            if not sess_id:
                return False
            return self.consume_session(sess_id, now)

    def revoke_all_sessions(self, command: RevokeAllCommand, now: datetime) -> RevokeAllResult:
        with self._data_lock:
            user = self.users.get(command.user_id)
            if user is None:
                return RevokeAllResult(command.user_id, token_version=0, sessions_revoked=0)
            user.token_version += 1
            user.updated_at = now
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id == user.id and sess.revoked_at is None:
                    sess.revoked_at = now
                    revoked += 1
            self._persist_state()
            return RevokeAllResult(user.id, user.token_version, revoked)

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            results = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
            return sorted(results, key=lambda s: s.created_at)

    def list_expired_sessions(self, cutoff: datetime, limit: int = 1000) -> List[SessionRecord]:
        with self._data_lock:
            stale = [replace(s) for s in self.sessions.values() if s.expires_at < cutoff]
            return sorted(stale, key=lambda s: s.expires_at)[:limit]

    def delete_expired_sessions(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [s for s in self.sessions.values() if s.expires_at < cutoff]
            for sess in stale:
                self.sessions.pop(sess.id, None)
                self._session_by_hash.pop(sess.refresh_token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": cred.user_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "updated_at": self._serialize_datetime(cred.updated_at),
                }
                for cred in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"unreadable in-memory state at {path}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: UserCredential(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                updated_at=self._deserialize_datetime(entry.get("updated_at")) or utcnow(),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._session_by_hash = {
            s.refresh_token_hash: s.id for s in self.sessions.values()
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "display_name": user.display_name,
            "verified": user.verified,
            "token_version": user.token_version,
            "profile_pic_url": user.profile_pic_url,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "verify_token": user.verify_token,
            "verify_token_issued_at": self._serialize_datetime(user.verify_token_issued_at),
            "reset_password_token": user.reset_password_token,
            "reset_password_token_issued_at": self._serialize_datetime(
                user.reset_password_token_issued_at
            ),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            display_name=data.get("display_name") or data["username"],
            verified=bool(data.get("verified", False)),
            token_version=int(data.get("token_version", 0)),
            profile_pic_url=data.get("profile_pic_url"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            verify_token=data.get("verify_token"),
            verify_token_issued_at=self._deserialize_datetime(data.get("verify_token_issued_at")),
            reset_password_token=data.get("reset_password_token"),
            reset_password_token_issued_at=self._deserialize_datetime(
                data.get("reset_password_token_issued_at")
            ),
        )

    def _serialize_session(self, session: SessionRecord) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "revoked_at": self._serialize_datetime(session.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> SessionRecord:
        return SessionRecord(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
