from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shield.config import Settings
from shield.logging import get_logger

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}
_IDENTITY_FIELDS = ("sub", "sid")
_PROFILE_FIELDS = ("email", "role", "tenant_id")


class TokenError(Exception):
    """Base class for codec failures.

    ``session_id`` is only set when the token proved authentic before
    failing, so callers may act on it.
    """

    def __init__(self, message: str, *, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class SigningFailure(TokenError):
    pass


@dataclass
class AccessClaims:
    email: str
    user_id: str
    role: str
    session_id: str
    tenant_id: str = "public"
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None
    jti: Optional[str] = None


class TokenCodec:
    """Signs and verifies HS256 access and refresh tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
        logger: Any = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock
        self.logger = logger or get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            **kwargs,
        )

    # access tokens
    def sign_access(self, claims: AccessClaims) -> str:
        # Profile claims may be empty strings; identity claims may not
        if not claims.user_id or not claims.session_id:
            raise SigningFailure("access token requires user and session ids")
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.user_id,
            "sid": claims.session_id,
            "email": claims.email,
            "role": claims.role,
            "tenant_id": claims.tenant_id,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        return self._encode(payload)

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, ACCESS_TOKEN_TYPE)
        missing = [
            name
            for name in _IDENTITY_FIELDS
            if not payload.get(name) or not isinstance(payload[name], str)
        ]
        missing += [
            name for name in _PROFILE_FIELDS if not isinstance(payload.get(name), str)
        ]
        if missing:
            raise MalformedToken(f"access token missing claims: {', '.join(missing)}")
        self._check_expiry(payload)
        return AccessClaims(
            email=payload["email"],
            user_id=payload["sub"],
            role=payload["role"],
            session_id=payload["sid"],
            tenant_id=payload["tenant_id"],
            issued_at=payload.get("iat"),
            expires_at=payload["exp"],
            jti=payload.get("jti"),
        )

    # refresh tokens
    def sign_refresh(self, session_id: str) -> str:
        if not session_id:
            raise SigningFailure("refresh token requires a session id")
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sid": session_id,
            "token_type": REFRESH_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
        }
        return self._encode(payload)

    def verify_refresh(self, token: str) -> str:
        payload = self._decode(token, REFRESH_TOKEN_TYPE)
        if not payload.get("sid"):
            raise MalformedToken("refresh token missing session id")
        self._check_expiry(payload)
        return payload["sid"]

    # wire format
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        try:
            header_enc = self._encode_segment(
                json.dumps(_HEADER, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
        except (TypeError, ValueError) as exc:
            self.logger.error("token_sign_failed", error=str(exc))
            raise SigningFailure(f"cannot serialize claims: {exc}") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        """Verify signature and envelope; expiry is left to the caller."""
        if not token or not isinstance(token, str):
            raise MalformedToken("token is empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedToken("token must have three segments")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedToken("token header is not valid JSON")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignature("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignature("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedToken("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedToken("token payload must be an object")
        if payload.get("iss") != self.issuer:
            raise InvalidSignature("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignature("token audience mismatch")
        if payload.get("token_type") != expected_type:
            raise MalformedToken(f"expected {expected_type} token")
        return payload

    def _check_expiry(self, payload: dict[str, Any]) -> None:
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise MalformedToken("token has no usable expiry")
        # No grace period
        if exp_ts <= self._clock():
            raise ExpiredToken("token expired", session_id=payload.get("sid"))
