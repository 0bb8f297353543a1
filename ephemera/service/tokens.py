from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Union

from ephemera.logging import get_logger
from ephemera.service.failures import AuthFailure

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    verified: bool
    token_version: int
    exp: int
    iat: Optional[int] = None
    jti: Optional[str] = None


@dataclass(frozen=True)
class RefreshClaims:
    """Refresh tokens carry no token_version; they die with their session row."""

    user_id: str
    exp: int
    iat: Optional[int] = None
    jti: Optional[str] = None


class TokenCodec:
    """HS256 signing and verification of access and refresh tokens.

    Pure and stateless apart from the secret bound at construction and the
    clock. All signature and time checks live here; nothing in this class
    touches storage.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        nbf_leeway_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.nbf_leeway_seconds = nbf_leeway_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def access_claims(self, user_id: str, verified: bool, token_version: int) -> AccessClaims:
        issued = self.now()
        return AccessClaims(
            user_id=user_id,
            verified=verified,
            token_version=token_version,
            exp=issued + int(self.access_ttl.total_seconds()),
            iat=issued,
            jti=str(uuid.uuid4()),
        )

    def refresh_claims(self, user_id: str) -> RefreshClaims:
        issued = self.now()
        return RefreshClaims(
            user_id=user_id,
            exp=issued + int(self.refresh_ttl.total_seconds()),
            iat=issued,
            jti=str(uuid.uuid4()),
        )

    def sign_access(self, claims: AccessClaims) -> str:
        payload = self._base_payload(ACCESS, claims.user_id, claims.exp, claims.iat, claims.jti)
        payload["verified"] = bool(claims.verified)
        payload["ver"] = int(claims.token_version)
        return self._encode(payload)

    def sign_refresh(self, claims: RefreshClaims) -> str:
        return self._encode(
            self._base_payload(REFRESH, claims.user_id, claims.exp, claims.iat, claims.jti)
        )

    def verify_access(self, token: str) -> Union[AccessClaims, AuthFailure]:
        payload = self._decode(token, ACCESS)
        if isinstance(payload, AuthFailure):
            return payload
        verified = payload.get("verified")
        version = payload.get("ver")
        if not isinstance(verified, bool) or not isinstance(version, int) or isinstance(version, bool):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        return AccessClaims(
            user_id=payload["sub"],
            verified=verified,
            token_version=version,
            exp=int(payload["exp"]),
            iat=payload.get("iat"),
            jti=payload.get("jti"),
        )

    def verify_refresh(self, token: str) -> Union[RefreshClaims, AuthFailure]:
        payload = self._decode(token, REFRESH)
        if isinstance(payload, AuthFailure):
            return payload
        return RefreshClaims(
            user_id=payload["sub"],
            exp=int(payload["exp"]),
            iat=payload.get("iat"),
            jti=payload.get("jti"),
        )

    def _base_payload(
        self,
        token_type: str,
        user_id: str,
        exp: int,
        iat: Optional[int],
        jti: Optional[str],
    ) -> dict[str, Any]:
        issued = iat if iat is not None else self.now()
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "typ": token_type,
            "iat": issued,
            "nbf": issued,
            "exp": int(exp),
        }
        if jti:
            payload["jti"] = jti
        return payload

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, expected_type: str) -> Union[dict[str, Any], AuthFailure]:
        if not token or not isinstance(token, str):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        # Only HS256 is accepted; "none" and asymmetric algs are rejected outright
        if not isinstance(header, dict):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        if not isinstance(payload, dict):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE

        if payload.get("iss") != self.issuer:
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        if payload.get("typ") != expected_type:
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE

        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", payload.get("iat", 0)))
        except (KeyError, TypeError, ValueError):
            return AuthFailure.MALFORMED_OR_BAD_SIGNATURE
        now = self._clock()
        if exp_ts <= now:
            return AuthFailure.EXPIRED
        if nbf_ts > now + self.nbf_leeway_seconds:
            return AuthFailure.NOT_YET_VALID
        return payload


def refresh_token_digest(refresh_token: str) -> str:
    """One-way digest stored in place of the raw refresh token."""
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()
