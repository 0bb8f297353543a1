from __future__ import annotations

from enum import Enum


class AuthFailure(str, Enum):
    """Why a credential was rejected.

    Validation paths return one of these instead of raising. ``resolve``
    collapses all of them into ``None``; ``redeem`` and ``login`` surface the
    kind so callers can tell an expired token from a forged one.
    """

    EXPIRED = "expired"
    MALFORMED_OR_BAD_SIGNATURE = "malformed_or_bad_signature"
    NOT_YET_VALID = "not_yet_valid"
    TOKEN_VERSION_MISMATCH = "token_version_mismatch"
    SESSION_NOT_FOUND_OR_REVOKED = "session_not_found_or_revoked"
    USER_NOT_FOUND = "user_not_found"
    CREDENTIAL_MISMATCH = "credential_mismatch"

    @property
    def public_reason(self) -> str:
        """Reason reported to clients of the refresh endpoint.

        A missing user is reported as ``revoked`` so the endpoint does not
        reveal whether an account exists.
        """
        if self is AuthFailure.EXPIRED:
            return "expired"
        if self in (
            AuthFailure.SESSION_NOT_FOUND_OR_REVOKED,
            AuthFailure.USER_NOT_FOUND,
            AuthFailure.TOKEN_VERSION_MISMATCH,
        ):
            return "revoked"
        return "invalid"


__all__ = ["AuthFailure"]
