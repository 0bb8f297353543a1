from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from ephemera.logging import get_logger
from ephemera.service.failures import AuthFailure
from ephemera.service.sessions import UserRecordStore
from ephemera.service.tokens import TokenCodec

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str
    verified: bool


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityResolver:
    """Turns a bearer access token into an identity, or nothing.

    Runs on every HTTP request and every authenticated socket event. It does
    one point read of the user row and never writes.
    """

    def __init__(self, store: UserRecordStore, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    async def inspect(self, token: Optional[str]) -> Union[ResolvedIdentity, AuthFailure]:
        if not token:
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        claims = self.codec.verify_access(token)
        if isinstance(claims, AuthFailure):
            return claims
        user = self.store.get_user(claims.user_id)
        if user is None:
            return AuthFailure.USER_NOT_FOUND
        if user.token_version != claims.token_version:
            return AuthFailure.TOKEN_VERSION_MISMATCH
        return ResolvedIdentity(user_id=user.id, verified=claims.verified)

    async def resolve(self, token: Optional[str]) -> Optional[ResolvedIdentity]:
        outcome = await self.inspect(token)
        if isinstance(outcome, AuthFailure):
            if token:
                logger.debug("access_token_rejected", reason=outcome.value)
            return None
        return outcome

    async def resolve_authorization(
        self, authorization: Optional[str]
    ) -> Optional[ResolvedIdentity]:
        return await self.resolve(extract_bearer(authorization))
