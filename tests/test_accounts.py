"""Tests for AccountService: signup, email confirmation, resets and profile edits."""

from datetime import datetime, timedelta, timezone

import pytest

from ephemera.service.accounts import AccountService
from ephemera.service.email import EmailService
from ephemera.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from ephemera.service.identity import IdentityResolver
from ephemera.service.sessions import SessionLifecycleManager
from ephemera.service.tokens import TokenCodec
from ephemera.storage.memory import MemoryStore
from ephemera.storage.models import SetDisplayName, SetProfilePicture, SetUsername

PASSWORD = "TestPassword123!"
NEW_PASSWORD = "AnotherPassword456!"


class RecordingEmail(EmailService):
    """Captures outgoing codes and reset tokens instead of sending mail."""

    def __init__(self):
        super().__init__()
        self.codes: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_verification_code(self, to_email, code, ttl_minutes):
        self.codes.append((to_email, code))
        return True

    def send_password_reset(self, to_email, token, ttl_minutes):
        self.resets.append((to_email, token))
        return True


class MutableClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def codec():
    return TokenCodec("accounts-test-secret", issuer="ephemera", audience="ephemera-clients")


@pytest.fixture
def lifecycle(store, codec, fast_verifier):
    return SessionLifecycleManager(store, codec, fast_verifier)


@pytest.fixture
def resolver(store, codec):
    return IdentityResolver(store, codec)


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def accounts(store, lifecycle, fast_verifier, mailer, clock):
    return AccountService(store, lifecycle, fast_verifier, mailer, clock=clock)


async def _register(accounts, email="ada@example.com", username="ada"):
    return await accounts.register(
        email=email, username=username, display_name="Ada", password=PASSWORD
    )


class TestRegister:
    async def test_register_issues_unverified_pair(self, accounts, resolver, mailer):
        """Signup returns credentials and mails a six digit code."""
        issued = await _register(accounts)
        identity = await resolver.resolve(issued.access_token)
        assert identity.user_id == issued.user.id
        assert identity.verified is False
        assert len(mailer.codes) == 1
        to_email, code = mailer.codes[0]
        assert to_email == "ada@example.com"
        assert len(code) == 6 and code.isdigit()

    async def test_duplicate_email(self, accounts):
        await _register(accounts)
        with pytest.raises(ConflictError) as excinfo:
            await _register(accounts, username="other")
        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_username(self, accounts):
        await _register(accounts)
        with pytest.raises(ConflictError) as excinfo:
            await _register(accounts, email="other@example.com")
        assert excinfo.value.detail == {"field": "username"}

    async def test_signup_disabled(self, store, lifecycle, fast_verifier, mailer):
        closed = AccountService(store, lifecycle, fast_verifier, mailer, allow_signup=False)
        with pytest.raises(ForbiddenError):
            await _register(closed)


class TestConfirmEmail:
    async def test_confirm_marks_verified_and_reissues(self, accounts, resolver, mailer, store):
        issued = await _register(accounts)
        code = mailer.codes[-1][1]
        confirmed = await accounts.confirm_email(issued.user.id, code)
        identity = await resolver.resolve(confirmed.access_token)
        assert identity.verified is True
        user = store.get_user(issued.user.id)
        assert user.verified is True
        assert user.verify_token is None

    async def test_wrong_code(self, accounts, mailer):
        issued = await _register(accounts)
        code = mailer.codes[-1][1]
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(ValidationError, match="incorrect"):
            await accounts.confirm_email(issued.user.id, wrong)

    async def test_expired_code(self, accounts, mailer, clock):
        issued = await _register(accounts)
        code = mailer.codes[-1][1]
        clock.advance(minutes=16)
        with pytest.raises(ValidationError, match="expired"):
            await accounts.confirm_email(issued.user.id, code)

    async def test_confirm_twice_has_no_code(self, accounts, mailer):
        issued = await _register(accounts)
        code = mailer.codes[-1][1]
        await accounts.confirm_email(issued.user.id, code)
        with pytest.raises(ValidationError, match="No verification token"):
            await accounts.confirm_email(issued.user.id, code)

    async def test_resend_replaces_code(self, accounts, mailer, clock):
        issued = await _register(accounts)
        clock.advance(minutes=20)
        await accounts.resend_verification_code(issued.user.id)
        second = mailer.codes[-1][1]
        assert len(mailer.codes) == 2
        confirmed = await accounts.confirm_email(issued.user.id, second)
        assert confirmed.user.verified is True

    async def test_resend_after_verification(self, accounts, mailer):
        issued = await _register(accounts)
        await accounts.confirm_email(issued.user.id, mailer.codes[-1][1])
        with pytest.raises(ValidationError, match="already verified"):
            await accounts.resend_verification_code(issued.user.id)


class TestPasswordReset:
    async def test_reset_revokes_every_session(self, accounts, lifecycle, resolver, mailer):
        """Completing a reset invalidates earlier access and refresh tokens."""
        issued = await _register(accounts)
        await accounts.request_password_reset("ada@example.com")
        token = mailer.resets[-1][1]
        await accounts.complete_password_reset(token, NEW_PASSWORD)

        assert await resolver.resolve(issued.access_token) is None
        outcome = await lifecycle.redeem(issued.refresh_token)
        assert outcome.public_reason == "revoked"
        relogin = await lifecycle.login("ada", NEW_PASSWORD)
        assert relogin.user.id == issued.user.id

    async def test_reset_token_single_use(self, accounts, mailer):
        await _register(accounts)
        await accounts.request_password_reset("ada@example.com")
        token = mailer.resets[-1][1]
        await accounts.complete_password_reset(token, NEW_PASSWORD)
        with pytest.raises(ValidationError, match="incorrect"):
            await accounts.complete_password_reset(token, PASSWORD)

    async def test_expired_reset_token(self, accounts, mailer, clock):
        await _register(accounts)
        await accounts.request_password_reset("ada@example.com")
        token = mailer.resets[-1][1]
        clock.advance(minutes=61)
        with pytest.raises(ValidationError, match="expired"):
            await accounts.complete_password_reset(token, NEW_PASSWORD)

    async def test_unknown_email_is_silent(self, accounts, mailer):
        await accounts.request_password_reset("nobody@example.com")
        assert mailer.resets == []

    async def test_empty_token(self, accounts):
        with pytest.raises(ValidationError, match="No reset token"):
            await accounts.complete_password_reset("", NEW_PASSWORD)


class TestChangePassword:
    async def test_change_keeps_caller_signed_in(self, accounts, lifecycle, resolver):
        issued = await _register(accounts)
        other = await lifecycle.login("ada@example.com", PASSWORD)
        fresh = await accounts.change_password(issued.user.id, PASSWORD, NEW_PASSWORD)

        assert await resolver.resolve(fresh.access_token) is not None
        assert await resolver.resolve(issued.access_token) is None
        assert await resolver.resolve(other.access_token) is None
        assert (await lifecycle.redeem(other.refresh_token)).public_reason == "revoked"

    async def test_wrong_current_password(self, accounts):
        issued = await _register(accounts)
        with pytest.raises(AuthenticationError):
            await accounts.change_password(issued.user.id, "WrongPassword1!", NEW_PASSWORD)


class TestProfile:
    async def test_update_profile(self, accounts):
        issued = await _register(accounts)
        user = await accounts.update_profile(
            issued.user.id,
            [SetDisplayName("Countess"), SetProfilePicture("https://img.example/a.png")],
        )
        assert user.display_name == "Countess"
        assert user.profile_pic_url == "https://img.example/a.png"
        assert user.username == "ada"

    async def test_unlisted_fields_untouched_and_picture_cleared(self, accounts):
        issued = await _register(accounts)
        await accounts.update_profile(issued.user.id, [SetProfilePicture("https://img.example/a.png")])
        user = await accounts.update_profile(issued.user.id, [SetDisplayName("Countess")])
        assert user.profile_pic_url == "https://img.example/a.png"
        user = await accounts.update_profile(issued.user.id, [SetProfilePicture(None)])
        assert user.profile_pic_url is None
        assert user.display_name == "Countess"

    async def test_two_changes_to_one_field_rejected(self, accounts):
        issued = await _register(accounts)
        with pytest.raises(ValidationError):
            await accounts.update_profile(
                issued.user.id, [SetDisplayName("a"), SetDisplayName("b")]
            )

    async def test_username_clash(self, accounts):
        await _register(accounts)
        second = await _register(accounts, email="grace@example.com", username="grace")
        with pytest.raises(ConflictError):
            await accounts.update_profile(second.user.id, [SetUsername("ada")])

    async def test_unknown_user(self, accounts):
        with pytest.raises(NotFoundError):
            await accounts.update_profile("missing", [SetDisplayName("x")])


class TestDeleteAccount:
    async def test_delete_revokes_and_removes(self, accounts, lifecycle, resolver, store):
        issued = await _register(accounts)
        await accounts.delete_account(issued.user.id)
        assert store.get_user(issued.user.id) is None
        assert await resolver.resolve(issued.access_token) is None
        assert (await lifecycle.redeem(issued.refresh_token)).public_reason == "revoked"

    async def test_delete_unknown(self, accounts):
        with pytest.raises(NotFoundError):
            await accounts.delete_account("missing")
