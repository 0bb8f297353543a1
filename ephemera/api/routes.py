from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from ephemera.api.schemas import (
    ConfirmEmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetComplete,
    PasswordResetRequest,
    RefreshRequest,
    SessionInfo,
    SignupRequest,
    TokenResponse,
    UpdateProfileRequest,
    UserProfile,
)
from ephemera.logging import get_logger
from ephemera.service.errors import AuthenticationError, RateLimitedError, SessionExpiredError
from ephemera.service.failures import AuthFailure
from ephemera.service.identity import ResolvedIdentity
from ephemera.service.runtime import check_rate_limit, get_runtime
from ephemera.service.sessions import IssuedCredentials
from ephemera.storage.models import (
    DeviceMeta,
    ProfileChange,
    SetDisplayName,
    SetProfilePicture,
    SetUsername,
    User,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

NOT_AUTHORIZED = "Not Authorized."
NOT_VERIFIED = "Not Verified."
NOT_FOUND = "This account does not exist."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError("rate limit exceeded", retry_after=reset_seconds)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device(request: Request) -> DeviceMeta:
    user_agent = request.headers.get("user-agent")
    return DeviceMeta(
        user_agent=user_agent[:512] if user_agent else None, ip_addr=_client_ip(request)
    )


def _profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        username=user.username,
        display_name=user.display_name,
        verified=user.verified,
        profile_pic_url=user.profile_pic_url,
        created_at=user.created_at,
    )


def _token_response(issued: IssuedCredentials) -> TokenResponse:
    return TokenResponse(
        user_id=issued.user.id,
        session_id=issued.session_id,
        verified=issued.user.verified,
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        access_expires_at=issued.access_expires_at,
        refresh_expires_at=issued.refresh_expires_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> ResolvedIdentity:
    runtime = get_runtime()
    identity = await runtime.identity.resolve_authorization(authorization)
    if identity is None:
        raise _http_error("unauthorized", NOT_AUTHORIZED, status_code=401)
    return identity


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[ResolvedIdentity]:
    if not authorization:
        return None
    return await get_runtime().identity.resolve_authorization(authorization)


async def require_verified(
    identity: ResolvedIdentity = Depends(get_user),
) -> ResolvedIdentity:
    if not identity.verified:
        raise _http_error("forbidden", NOT_VERIFIED, status_code=403)
    return identity


def _load_user(runtime, identity: ResolvedIdentity) -> User:
    user = runtime.store.get_user(identity.user_id)
    if user is None:
        raise _http_error("not_found", NOT_FOUND, status_code=404)
    return user


@router.get("/auth/ping", response_model=Envelope, tags=["auth"])
async def ping(identity: ResolvedIdentity = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_profile(_load_user(runtime, identity)))


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account and return the first credential pair.

    A 6-digit verification code is emailed; the issued access token carries
    ``verified=false`` until the code is confirmed.

    Raises:
        403: If signup is disabled in settings
        409: If the email or username is taken
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    issued = await runtime.accounts.register(
        email=body.email,
        username=body.username,
        display_name=body.display_name or body.username,
        password=body.password,
        device=_device(request),
    )
    return Envelope(status="ok", data=_token_response(issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or username and password.

    Raises:
        401: If the account is unknown or the password is wrong
        429: If rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    outcome = await runtime.sessions.login(body.identifier, body.password, _device(request))
    if isinstance(outcome, AuthFailure):
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return Envelope(status="ok", data=_token_response(outcome))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request) or 'unknown'}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    outcome = await runtime.sessions.refresh(body.refresh_token, _device(request))
    if outcome is AuthFailure.EXPIRED:
        raise SessionExpiredError("invalid refresh", detail={"reason": outcome.public_reason})
    if isinstance(outcome, AuthFailure):
        raise AuthenticationError("invalid refresh", detail={"reason": outcome.public_reason})
    return Envelope(status="ok", data=_token_response(outcome))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    identity: Optional[ResolvedIdentity] = Depends(get_optional_user),
):
    # Unknown or already revoked tokens still answer ok
    if body.refresh_token:
        await get_runtime().sessions.logout(body.refresh_token)
    logger.info("logout", user_id=identity.user_id if identity else None)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-everywhere", response_model=Envelope, tags=["auth"])
async def logout_everywhere(identity: ResolvedIdentity = Depends(get_user)):
    """Revoke every session of the caller and close their sockets."""
    runtime = get_runtime()
    await runtime.sessions.logout_everywhere(identity.user_id)
    return Envelope(status="ok", data={"message": "all sessions revoked"})


@router.post("/auth/confirm-email", response_model=Envelope, tags=["auth"])
async def confirm_email(
    body: ConfirmEmailRequest,
    request: Request,
    response: Response,
    identity: ResolvedIdentity = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"confirm:{identity.user_id}",
        runtime.settings.confirm_rate_limit_per_minute,
        60,
        response=response,
    )
    issued = await runtime.accounts.confirm_email(identity.user_id, body.code, _device(request))
    return Envelope(status="ok", data=_token_response(issued))


@router.post("/auth/resend-verification-code", response_model=Envelope, tags=["auth"])
async def resend_verification_code(
    response: Response, identity: ResolvedIdentity = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-resend:{identity.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.accounts.resend_verification_code(identity.user_id)
    return Envelope(status="ok", data={"message": "verification code sent"})


@router.post("/auth/request-new-password", response_model=Envelope, tags=["auth"])
async def request_new_password(body: PasswordResetRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.accounts.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the account exists, a reset link has been sent"},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetComplete):
    runtime = get_runtime()
    await runtime.accounts.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    identity: ResolvedIdentity = Depends(get_user),
):
    """Change the password; every other session of the user is revoked."""
    runtime = get_runtime()
    issued = await runtime.accounts.change_password(
        identity.user_id, body.current_password, body.new_password, _device(request)
    )
    return Envelope(status="ok", data=_token_response(issued))


def _profile_changes(body: UpdateProfileRequest) -> list[ProfileChange]:
    """Changes for the fields the client sent; an explicit null clears the picture."""
    sent = body.model_fields_set
    changes: list[ProfileChange] = []
    if "display_name" in sent and body.display_name is not None:
        changes.append(SetDisplayName(body.display_name))
    if "username" in sent and body.username is not None:
        changes.append(SetUsername(body.username))
    if "profile_pic_url" in sent:
        changes.append(SetProfilePicture(body.profile_pic_url))
    return changes


@router.put("/auth/update-profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: UpdateProfileRequest, identity: ResolvedIdentity = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.accounts.update_profile(identity.user_id, _profile_changes(body))
    return Envelope(status="ok", data=_profile(user))


@router.delete("/auth/delete-account", response_model=Envelope, tags=["auth"])
async def delete_account(identity: ResolvedIdentity = Depends(get_user)):
    await get_runtime().accounts.delete_account(identity.user_id)
    return Envelope(status="ok", data={"message": "account deleted"})


@router.get("/me", response_model=Envelope, tags=["users"])
async def me(identity: ResolvedIdentity = Depends(get_user)):
    runtime = get_runtime()
    user = _load_user(runtime, identity)
    profile = _profile(user).model_dump(mode="json")
    sessions = runtime.store.list_user_sessions(user.id)
    profile["active_sessions"] = sum(1 for s in sessions if s.is_active())
    return Envelope(status="ok", data=profile)


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(identity: ResolvedIdentity = Depends(require_verified)):
    runtime = get_runtime()
    sessions = [
        SessionInfo(
            id=s.id,
            created_at=s.created_at,
            expires_at=s.expires_at,
            user_agent=s.user_agent,
            ip_addr=s.ip_addr,
            active=s.is_active(),
        )
        for s in runtime.store.list_user_sessions(identity.user_id)
    ]
    return Envelope(status="ok", data={"items": sessions})
