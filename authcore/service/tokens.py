from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
)
from authcore.storage.models import Session, User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken
    token_type: str = "bearer"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    token_type: str
    expires_at: datetime
    issued_at: Optional[datetime]
    jti: Optional[str]
    email: Optional[str] = None
    role: Optional[str] = None


class TokenIssuer:
    """Signs and verifies HS256 tokens bound to a session.

    Verification is pure: no store or cache access, no shared mutable state.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Only excuses an issuer clock running ahead; expiry is exact
        self._clock_skew_leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def _now(self) -> datetime:
        return self._clock()

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

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(
        self, token_type: str, user: User, session: Session, ttl: timedelta, extra: dict
    ) -> IssuedToken:
        now = self._now()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "token_type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            **extra,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            jti=jti,
        )

    def issue_access(
        self, user: User, session: Session, ttl: Optional[timedelta] = None
    ) -> IssuedToken:
        return self._issue(
            ACCESS,
            user,
            session,
            ttl if ttl is not None else timedelta(minutes=self.settings.access_token_ttl_minutes),
            {"email": user.email, "role": user.role},
        )

    def issue_refresh(
        self, user: User, session: Session, ttl: Optional[timedelta] = None
    ) -> IssuedToken:
        return self._issue(
            REFRESH,
            user,
            session,
            ttl if ttl is not None else timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            {},
        )

    def issue_pair(self, user: User, session: Session) -> TokenPair:
        return TokenPair(
            access=self.issue_access(user, session),
            refresh=self.issue_refresh(user, session),
        )

    def verify(self, token: str, expected_type: Optional[str] = None) -> TokenClaims:
        """Verify signature, issuer, audience, type and expiry.

        Raises:
            TokenMalformedError: not three base64url JSON segments
            TokenInvalidError: bad signature, algorithm, issuer, audience or type
            TokenExpiredError: ``exp`` is at or before now, with no leeway
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformedError()
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise TokenMalformedError()
        if not isinstance(header, dict):
            raise TokenMalformedError()
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise TokenMalformedError()
        if not isinstance(payload, dict):
            raise TokenMalformedError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError()

        token_type = payload.get("token_type")
        if token_type not in (ACCESS, REFRESH):
            raise TokenInvalidError()
        if expected_type and token_type != expected_type:
            raise TokenInvalidError("unexpected token type")

        user_id, session_id = payload.get("sub"), payload.get("sid")
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            raise TokenMalformedError()
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise TokenMalformedError()
        now = self._now()
        if expires_at <= now:
            raise TokenExpiredError()

        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            issued_at = None
        if issued_at is not None and issued_at > now + self._clock_skew_leeway:
            raise TokenInvalidError("token issued in the future")
        return TokenClaims(
            user_id=user_id,
            session_id=session_id,
            token_type=token_type,
            expires_at=expires_at,
            issued_at=issued_at,
            jti=payload.get("jti"),
            email=payload.get("email"),
            role=payload.get("role"),
        )
