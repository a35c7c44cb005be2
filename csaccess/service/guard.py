from __future__ import annotations

from typing import Optional

from csaccess.logging import get_logger
from csaccess.service.errors import (
    AuthenticationError,
    ForbiddenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from csaccess.service.tokens import IdentityClaims, TokenService, TokenStatus

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the credential from an ``Authorization: Bearer`` header, if any."""
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


class AccessGuard:
    """Request-time gate turning a bearer header into identity claims.

    In mandatory mode every failure raises a service error; in optional mode
    failures degrade to an anonymous caller (``None``).
    """

    def __init__(self, tokens: TokenService, store=None, *, enforce_revocation: bool = True) -> None:
        self.tokens = tokens
        self.store = store
        self.enforce_revocation = enforce_revocation and store is not None

    async def authenticate(
        self, authorization: Optional[str], *, mandatory: bool = True
    ) -> Optional[IdentityClaims]:
        token = extract_bearer_token(authorization)
        if token is None:
            if mandatory:
                raise AuthenticationError("Access token required")
            return None

        result = self.tokens.verify(token)
        if result.status is TokenStatus.EXPIRED:
            logger.info("access_token_expired", user_id=result.claims.user_id)
            if mandatory:
                raise TokenExpiredError("Token expired")
            return None
        if result.status is TokenStatus.INVALID:
            logger.warning("access_token_invalid")
            if mandatory:
                raise TokenInvalidError("Invalid token")
            return None

        if self.enforce_revocation and not await self._session_live(token):
            logger.info("access_token_revoked", user_id=result.claims.user_id)
            if mandatory:
                raise TokenRevokedError("Session revoked")
            return None
        return result.claims

    async def _session_live(self, token: str) -> bool:
        records = await self.store.find_sessions_by_token_hash(self.tokens.hash_token(token))
        return any(not record.revoked for record in records)

    @staticmethod
    def require_role(identity: Optional[IdentityClaims], role: str) -> IdentityClaims:
        """Allow ``role`` itself or the admin role; anything else is forbidden."""
        if identity is None:
            raise AuthenticationError("Authentication required")
        if identity.role != role and identity.role != ADMIN_ROLE:
            logger.info(
                "role_check_denied",
                user_id=identity.user_id,
                role=identity.role,
                required=role,
            )
            raise ForbiddenError("Insufficient permissions")
        return identity


__all__ = ["AccessGuard", "ADMIN_ROLE", "extract_bearer_token"]
