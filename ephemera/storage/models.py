from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    display_name: str
    verified: bool = False
    # Generation counter; every access token embeds the value current at issuance
    token_version: int = 0
    profile_pic_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    verify_token: Optional[str] = None
    verify_token_issued_at: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_token_issued_at: Optional[datetime] = None


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DeviceMeta:
    """Client details recorded on a session row."""

    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


@dataclass
class SessionRecord:
    """Server-side anchor of one refresh token.

    Only ``revoked_at`` ever changes after insertion.
    """

    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        *,
        ttl_minutes: int,
        device: DeviceMeta | None = None,
        now: datetime | None = None,
    ) -> "SessionRecord":
        created = now or utcnow()
        device = device or DeviceMeta()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            user_agent=device.user_agent,
            ip_addr=device.ip_addr,
        )

    def is_active(self, now: datetime | None = None) -> bool:
        return self.revoked_at is None and self.expires_at > (now or utcnow())


class RevocationReason(str, Enum):
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET = "password_reset"
    LOGOUT_EVERYWHERE = "logout_everywhere"
    ACCOUNT_DELETED = "account_deleted"


# Explicit mutation commands. Each one names the fields it touches; stores
# apply them as a single write.


@dataclass(frozen=True)
class CreateUserCommand:
    email: str
    username: str
    display_name: str
    password_hash: str
    password_algo: str
    verify_token: Optional[str] = None
    verify_token_issued_at: Optional[datetime] = None


@dataclass(frozen=True)
class SetPasswordCommand:
    user_id: str
    password_hash: str
    password_algo: str
    clear_reset_token: bool = False


@dataclass(frozen=True)
class IssueVerificationCodeCommand:
    user_id: str
    code: str
    issued_at: datetime


@dataclass(frozen=True)
class ConfirmVerificationCommand:
    user_id: str


@dataclass(frozen=True)
class BeginPasswordResetCommand:
    user_id: str
    token: str
    issued_at: datetime


@dataclass(frozen=True)
class SetDisplayName:
    display_name: str


@dataclass(frozen=True)
class SetUsername:
    username: str


@dataclass(frozen=True)
class SetProfilePicture:
    # None clears the picture
    profile_pic_url: Optional[str]


ProfileChange = Union[SetDisplayName, SetUsername, SetProfilePicture]


@dataclass(frozen=True)
class UpdateProfileCommand:
    """Profile edits applied together as one write.

    Each change is its own type, so a field is written exactly when a change
    for it is listed. At most one change per field.
    """

    user_id: str
    changes: Tuple[ProfileChange, ...] = ()

    def __post_init__(self) -> None:
        kinds = [type(change) for change in self.changes]
        if len(kinds) != len(set(kinds)):
            raise ValueError("at most one change per profile field")


@dataclass(frozen=True)
class RevokeAllCommand:
    user_id: str
    reason: RevocationReason


@dataclass(frozen=True)
class RevokeAllResult:
    user_id: str
    token_version: int
    sessions_revoked: int
