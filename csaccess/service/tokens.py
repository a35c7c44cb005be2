from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from csaccess.config import Settings
from csaccess.logging import get_logger

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "email", "role", "iat", "exp")


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True)
class IdentityClaims:
    """Identity carried inside a bearer token."""

    user_id: str
    email: str
    role: str
    issued_at: int = 0
    expires_at: int = 0

    @property
    def issued_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.issued_at, tz=timezone.utc)

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class TokenVerification:
    status: TokenStatus
    claims: Optional[IdentityClaims] = None

    @property
    def valid(self) -> bool:
        return self.status is TokenStatus.VALID


class TokenService:
    """Signs and verifies compact HS256 bearer tokens.

    The service holds no state beyond its settings; verification classifies
    every input as valid, expired or invalid and never raises.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._secret = (settings.jwt_secret or "").encode()

    def now(self) -> int:
        return math.floor(self._clock())

    def issue(self, claims: IdentityClaims, ttl: Union[timedelta, int]) -> str:
        token, _ = self.issue_with_claims(claims, ttl)
        return token

    def issue_with_claims(
        self, claims: IdentityClaims, ttl: Union[timedelta, int]
    ) -> tuple[str, IdentityClaims]:
        """Issue a token and return it with the claims as embedded (iat/exp filled in)."""
        ttl_seconds = int(ttl.total_seconds()) if isinstance(ttl, timedelta) else int(ttl)
        issued_at = self.now()
        embedded = IdentityClaims(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            issued_at=issued_at,
            expires_at=issued_at + ttl_seconds,
        )
        payload = {
            "sub": embedded.user_id,
            "email": embedded.email,
            "role": embedded.role,
            "iat": embedded.issued_at,
            "exp": embedded.expires_at,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return self._encode_jwt(payload), embedded

    def verify(self, token: Optional[str]) -> TokenVerification:
        if not token or not isinstance(token, str):
            return TokenVerification(TokenStatus.INVALID)
        payload = self._decode_jwt(token)
        if payload is None:
            return TokenVerification(TokenStatus.INVALID)
        claims = self._claims_from_payload(payload)
        if claims is None:
            return TokenVerification(TokenStatus.INVALID)
        leeway = self.settings.token_clock_skew_seconds
        if self._clock() >= claims.expires_at + leeway:
            return TokenVerification(TokenStatus.EXPIRED, claims)
        return TokenVerification(TokenStatus.VALID, claims)

    @staticmethod
    def hash_token(token: str) -> str:
        """Ledger key for a token; the token itself is never stored."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def _claims_from_payload(self, payload: Any) -> Optional[IdentityClaims]:
        if not isinstance(payload, dict):
            return None
        if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
            logger.warning("jwt_missing_claims", present=sorted(payload.keys()))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (TypeError, ValueError):
            return None
        return IdentityClaims(
            user_id=str(payload["sub"]),
            email=str(payload["email"]),
            role=str(payload["role"]),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
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

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so "none" or RS/HS confusion cannot verify
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            return json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None


__all__ = ["IdentityClaims", "TokenService", "TokenStatus", "TokenVerification"]
