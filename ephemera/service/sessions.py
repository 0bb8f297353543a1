from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, Union

from ephemera.logging import get_logger
from ephemera.service.failures import AuthFailure
from ephemera.service.passwords import CredentialVerifier
from ephemera.service.tokens import TokenCodec, refresh_token_digest
from ephemera.storage.errors import ConstraintViolation
from ephemera.storage.models import (
    DeviceMeta,
    RevocationReason,
    RevokeAllCommand,
    RevokeAllResult,
    SessionRecord,
    User,
    utcnow,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    """Durable session rows keyed by refresh-token digest."""

    def insert_session(self, record: SessionRecord) -> SessionRecord: ...

    def find_active_session(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[SessionRecord]: ...

    def consume_session(self, session_id: str, now: datetime) -> bool:
        """Set revoked_at only where it is still NULL; True when a row changed."""
        ...

    def revoke_session_by_hash(self, refresh_token_hash: str, now: datetime) -> bool: ...

    def revoke_all_sessions(self, command: RevokeAllCommand, now: datetime) -> RevokeAllResult:
        """Increment token_version and revoke every open session, as one unit."""
        ...

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]: ...

    def list_expired_sessions(self, cutoff: datetime, limit: int = 1000) -> List[SessionRecord]: ...

    def delete_expired_sessions(self, cutoff: datetime) -> int: ...


class UserRecordStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...


class AuthStore(SessionStore, UserRecordStore, Protocol):
    pass


@dataclass(frozen=True)
class IssuedCredentials:
    user: User
    session_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


RevocationListener = Callable[[RevokeAllResult, RevocationReason], Awaitable[None]]


def _from_epoch(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class SessionLifecycleManager:
    """Issues, rotates and revokes credential pairs.

    The access token is stateless and anchored to ``User.token_version``;
    the refresh token is anchored to a ``SessionRecord`` row. Bumping the
    version and revoking the rows happen together in ``revoke_all``.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        verifier: CredentialVerifier,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.verifier = verifier
        self._clock = clock
        self._revocation_listeners: list[RevocationListener] = []

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        self._revocation_listeners.append(listener)

    async def issue(
        self, user: User, device: DeviceMeta | None = None
    ) -> Union[IssuedCredentials, AuthFailure]:
        # The caller's copy may predate a concurrent revoke_all; re-read the version
        current = self.store.get_user(user.id)
        if current is None:
            return AuthFailure.USER_NOT_FOUND
        access_claims = self.codec.access_claims(
            current.id, current.verified, current.token_version
        )
        refresh_claims = self.codec.refresh_claims(current.id)
        access_token = self.codec.sign_access(access_claims)
        refresh_token = self.codec.sign_refresh(refresh_claims)
        record = SessionRecord.new(
            current.id,
            refresh_token_digest(refresh_token),
            ttl_minutes=int(self.codec.refresh_ttl.total_seconds() // 60),
            device=device,
            now=self._clock(),
        )
        try:
            self.store.insert_session(record)
        except ConstraintViolation as exc:
            # user deleted between the read and the insert
            logger.warning("session_insert_rejected", user_id=current.id, error=exc.message)
            return AuthFailure.USER_NOT_FOUND
        logger.info("session_issued", user_id=current.id, session_id=record.id)
        return IssuedCredentials(
            user=current,
            session_id=record.id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=_from_epoch(access_claims.exp),
            refresh_expires_at=record.expires_at,
        )

    async def redeem(
        self, refresh_token: str, device: DeviceMeta | None = None
    ) -> Union[IssuedCredentials, AuthFailure]:
        """Exchange a refresh token for a fresh pair, consuming it.

        A rotated token still carries a valid signature, so the session table
        is always consulted; signature checks alone never authorise a refresh.
        """
        claims = self.codec.verify_refresh(refresh_token)
        if isinstance(claims, AuthFailure):
            logger.info("refresh_rejected", reason=claims.value)
            return claims
        now = self._clock()
        session = self.store.find_active_session(refresh_token_digest(refresh_token), now)
        if session is None:
            logger.info("refresh_rejected", reason=AuthFailure.SESSION_NOT_FOUND_OR_REVOKED.value)
            return AuthFailure.SESSION_NOT_FOUND_OR_REVOKED
        user = self.store.get_user(session.user_id)
        if user is None:
            logger.warning("refresh_rejected", reason=AuthFailure.USER_NOT_FOUND.value)
            return AuthFailure.USER_NOT_FOUND
        if not self.store.consume_session(session.id, now):
            # a concurrent redeem or revoke won the race
            logger.warning(
                "refresh_lost_race", user_id=user.id, session_id=session.id
            )
            return AuthFailure.SESSION_NOT_FOUND_OR_REVOKED
        return await self.issue(user, device or DeviceMeta(session.user_agent, session.ip_addr))

    async def revoke_one(self, refresh_token: str) -> None:
        if not refresh_token:
            return
        revoked = self.store.revoke_session_by_hash(
            refresh_token_digest(refresh_token), self._clock()
        )
        logger.info("session_revoked", revoked=revoked)

    async def revoke_all(
        self, user_id: str, reason: RevocationReason = RevocationReason.LOGOUT_EVERYWHERE
    ) -> RevokeAllResult:
        result = self.store.revoke_all_sessions(
            RevokeAllCommand(user_id=user_id, reason=reason), self._clock()
        )
        logger.info(
            "sessions_revoked_all",
            user_id=user_id,
            reason=reason.value,
            token_version=result.token_version,
            sessions_revoked=result.sessions_revoked,
        )
        for listener in list(self._revocation_listeners):
            try:
                await listener(result, reason)
            except Exception as exc:
                # revocation is already durable; listeners only push notifications
                logger.warning(
                    "revocation_listener_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return result

    async def login(
        self, identifier: str, password: str, device: DeviceMeta | None = None
    ) -> Union[IssuedCredentials, AuthFailure]:
        user = self._find_by_identifier(identifier)
        record = self.store.get_password_record(user.id) if user else None
        if user is None or not self.verifier.verify_record(password, record):
            # unknown account and wrong password look the same to the caller
            logger.info("login_failed", reason=AuthFailure.CREDENTIAL_MISMATCH.value)
            return AuthFailure.CREDENTIAL_MISMATCH
        return await self.issue(user, device)

    async def signup(
        self, user: User, device: DeviceMeta | None = None
    ) -> Union[IssuedCredentials, AuthFailure]:
        return await self.issue(user, device)

    async def refresh(
        self, refresh_token: str, device: DeviceMeta | None = None
    ) -> Union[IssuedCredentials, AuthFailure]:
        return await self.redeem(refresh_token, device)

    async def logout(self, refresh_token: str) -> None:
        await self.revoke_one(refresh_token)

    async def logout_everywhere(self, user_id: str) -> None:
        await self.revoke_all(user_id, RevocationReason.LOGOUT_EVERYWHERE)

    async def on_password_changed(
        self, user_id: str, reason: RevocationReason = RevocationReason.PASSWORD_CHANGED
    ) -> None:
        await self.revoke_all(user_id, reason)

    def _find_by_identifier(self, identifier: str) -> Optional[User]:
        ident = (identifier or "").strip()
        if not ident:
            return None
        if "@" in ident:
            return self.store.get_user_by_email(ident.lower())
        return self.store.get_user_by_username(ident.lower())
