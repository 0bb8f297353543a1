from __future__ import annotations

import asyncio
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Sequence

from ephemera.logging import get_logger
from ephemera.service.email import EmailService
from ephemera.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from ephemera.service.failures import AuthFailure
from ephemera.service.passwords import CredentialVerifier
from ephemera.service.sessions import IssuedCredentials, SessionLifecycleManager
from ephemera.storage.errors import ConstraintViolation
from ephemera.storage.models import (
    BeginPasswordResetCommand,
    ConfirmVerificationCommand,
    CreateUserCommand,
    DeviceMeta,
    IssueVerificationCodeCommand,
    ProfileChange,
    RevocationReason,
    SetPasswordCommand,
    SetUsername,
    UpdateProfileCommand,
    User,
    utcnow,
)

logger = get_logger(__name__)

NOT_FOUND_MESSAGE = "This account does not exist."


class AccountStore(Protocol):
    def create_user(self, command: CreateUserCommand) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_password(self, command: SetPasswordCommand) -> None: ...

    def issue_verification_code(self, command: IssueVerificationCodeCommand) -> Optional[User]: ...

    def confirm_verification(self, command: ConfirmVerificationCommand) -> Optional[User]: ...

    def begin_password_reset(self, command: BeginPasswordResetCommand) -> Optional[User]: ...

    def update_profile(self, command: UpdateProfileCommand) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...


def generate_verification_code() -> str:
    return f"{secrets.randbelow(10**6):06d}"


def generate_reset_token() -> str:
    return secrets.token_hex(32)


class AccountService:
    """Account flows layered on the session lifecycle.

    Every flow that changes a password ends in ``on_password_changed`` so all
    earlier access and refresh tokens stop working.
    """

    def __init__(
        self,
        store: AccountStore,
        lifecycle: SessionLifecycleManager,
        verifier: CredentialVerifier,
        email: EmailService,
        *,
        verification_ttl: timedelta = timedelta(minutes=15),
        reset_ttl: timedelta = timedelta(minutes=60),
        allow_signup: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.verifier = verifier
        self.email = email
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.allow_signup = allow_signup
        self._clock = clock

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)
        return user

    @staticmethod
    def _issued_or_raise(outcome) -> IssuedCredentials:
        if isinstance(outcome, AuthFailure):
            raise NotFoundError(NOT_FOUND_MESSAGE, detail={"reason": outcome.value})
        return outcome

    def _expired(self, issued_at: Optional[datetime], ttl: timedelta) -> bool:
        return issued_at is None or self._clock() - issued_at > ttl

    def _ttl_minutes(self, ttl: timedelta) -> int:
        return int(ttl.total_seconds() // 60)

    async def register(
        self,
        *,
        email: str,
        username: str,
        display_name: str,
        password: str,
        device: DeviceMeta | None = None,
    ) -> IssuedCredentials:
        if not self.allow_signup:
            raise ForbiddenError("Signups are disabled.")
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("Email already in use.", detail={"field": "email"})
        if self.store.get_user_by_username(username) is not None:
            raise ConflictError("Username already taken.", detail={"field": "username"})
        password_hash, algo = self.verifier.hash_with_algo(password)
        code = generate_verification_code()
        try:
            user = self.store.create_user(
                CreateUserCommand(
                    email=email,
                    username=username,
                    display_name=display_name,
                    password_hash=password_hash,
                    password_algo=algo,
                    verify_token=code,
                    verify_token_issued_at=self._clock(),
                )
            )
        except ConstraintViolation as exc:
            raise ConflictError("Account already exists.", detail=exc.detail) from exc
        logger.info("account_registered", user_id=user.id)
        await asyncio.to_thread(
            self.email.send_verification_code,
            user.email,
            code,
            self._ttl_minutes(self.verification_ttl),
        )
        return self._issued_or_raise(await self.lifecycle.signup(user, device))

    async def confirm_email(
        self, user_id: str, code: str, device: DeviceMeta | None = None
    ) -> IssuedCredentials:
        user = self._require_user(user_id)
        if not user.verify_token:
            raise ValidationError("No verification token set.")
        if not hmac.compare_digest(user.verify_token, (code or "").strip()):
            logger.info("email_verification_mismatch", user_id=user.id)
            raise ValidationError("The verification token is incorrect.")
        if self._expired(user.verify_token_issued_at, self.verification_ttl):
            raise ValidationError(
                "The verification token is expired. You need to request a new one."
            )
        confirmed = self.store.confirm_verification(ConfirmVerificationCommand(user.id))
        if confirmed is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)
        logger.info("email_verified", user_id=user.id)
        # new pair so the access token carries verified=true
        return self._issued_or_raise(await self.lifecycle.issue(confirmed, device))

    async def resend_verification_code(self, user_id: str) -> None:
        user = self._require_user(user_id)
        if user.verified:
            raise ValidationError("This account is already verified.")
        code = generate_verification_code()
        self.store.issue_verification_code(
            IssueVerificationCodeCommand(user_id=user.id, code=code, issued_at=self._clock())
        )
        await asyncio.to_thread(
            self.email.send_verification_code,
            user.email,
            code,
            self._ttl_minutes(self.verification_ttl),
        )

    async def request_password_reset(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None:
            # same response either way; nothing is sent
            logger.info("password_reset_unknown_email")
            return
        token = generate_reset_token()
        self.store.begin_password_reset(
            BeginPasswordResetCommand(user_id=user.id, token=token, issued_at=self._clock())
        )
        logger.info("password_reset_requested", user_id=user.id)
        await asyncio.to_thread(
            self.email.send_password_reset,
            user.email,
            token,
            self._ttl_minutes(self.reset_ttl),
        )

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        if not token:
            raise ValidationError("No reset token set.")
        user = self.store.get_user_by_reset_token(token)
        if user is None or not user.reset_password_token:
            raise ValidationError("Reset token is incorrect.")
        if not hmac.compare_digest(user.reset_password_token, token):
            raise ValidationError("Reset token is incorrect.")
        if self._expired(user.reset_password_token_issued_at, self.reset_ttl):
            raise ValidationError("This reset token is expired.")
        password_hash, algo = self.verifier.hash_with_algo(new_password)
        self.store.set_password(
            SetPasswordCommand(
                user_id=user.id,
                password_hash=password_hash,
                password_algo=algo,
                clear_reset_token=True,
            )
        )
        await self.lifecycle.on_password_changed(user.id, RevocationReason.PASSWORD_RESET)
        logger.info("password_reset_completed", user_id=user.id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        device: DeviceMeta | None = None,
    ) -> IssuedCredentials:
        user = self._require_user(user_id)
        record = self.store.get_password_record(user.id)
        if not self.verifier.verify_record(current_password, record):
            raise AuthenticationError("Password is incorrect.")
        password_hash, algo = self.verifier.hash_with_algo(new_password)
        self.store.set_password(
            SetPasswordCommand(user_id=user.id, password_hash=password_hash, password_algo=algo)
        )
        await self.lifecycle.on_password_changed(user.id)
        logger.info("password_changed", user_id=user.id)
        return self._issued_or_raise(await self.lifecycle.issue(user, device))

    async def update_profile(self, user_id: str, changes: Sequence[ProfileChange]) -> User:
        self._require_user(user_id)
        for change in changes:
            if isinstance(change, SetUsername):
                existing = self.store.get_user_by_username(change.username)
                if existing is not None and existing.id != user_id:
                    raise ConflictError("Username already taken.", detail={"field": "username"})
        try:
            command = UpdateProfileCommand(user_id, tuple(changes))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        try:
            updated = self.store.update_profile(command)
        except ConstraintViolation as exc:
            raise ConflictError("Username already taken.", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)
        return updated

    async def delete_account(self, user_id: str) -> None:
        self._require_user(user_id)
        await self.lifecycle.revoke_all(user_id, RevocationReason.ACCOUNT_DELETED)
        self.store.delete_user(user_id)
        logger.info("account_deleted", user_id=user_id)
