from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    role: str = "user"
    email_verified: bool = False
    is_active: bool = True
    profile_image_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @classmethod
    def new(cls, email: str, name: str, password_hash: str, *, role: str = "user") -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            role=role,
            created_at=now,
            updated_at=now,
        )

    def public(self) -> Dict[str, Any]:
        """Projection safe to hand to clients; never includes the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "profile_image_url": self.profile_image_url,
            "email_verified": self.email_verified,
            "created_at": self.created_at,
            "last_login": self.last_login,
        }


@dataclass
class SessionRecord:
    """Ledger entry for one issued bearer token. Holds the token hash, not the token."""

    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        issued_at: datetime,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "SessionRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=issued_at,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


__all__ = ["User", "SessionRecord", "utcnow"]
