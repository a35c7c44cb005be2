from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from csaccess.config import Settings
from csaccess.logging import email_digest, get_logger
from csaccess.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from csaccess.service.tokens import IdentityClaims, TokenService
from csaccess.service.validation import (
    normalize_email,
    validate_name,
    validate_password,
    validate_profile_image_url,
)
from csaccess.storage.errors import ConstraintViolation
from csaccess.storage.models import SessionRecord, User

logger = get_logger(__name__)

ROLES = ("user", "admin")
DUPLICATE_EMAIL_MESSAGE = "User already exists with this email address"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class AuthStore(Protocol):
    async def find_by_email(self, email: str) -> Optional[User]: ...

    async def find_by_id(self, user_id: str) -> Optional[User]: ...

    async def insert_user(self, user: User) -> User: ...

    async def update_last_login(self, user_id: str, when: datetime) -> None: ...

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
    ) -> Optional[User]: ...

    async def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    async def set_role(self, user_id: str, role: str) -> Optional[User]: ...

    async def set_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    async def list_users(self, limit: int = 100) -> List[User]: ...

    async def insert_session(self, record: SessionRecord) -> SessionRecord: ...

    async def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    async def find_sessions_by_token_hash(self, token_hash: str) -> List[SessionRecord]: ...

    async def revoke_sessions_by_token_hash(
        self, token_hash: str, when: Optional[datetime] = None
    ) -> int: ...

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]: ...


@dataclass
class AuthResult:
    user: Dict[str, Any]
    token: str
    session: SessionRecord


class AuthService:
    """Registration, login and account management on top of a store and a token service."""

    def __init__(self, store: AuthStore, tokens: TokenService, settings: Settings) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(days=self.settings.session_ttl_days)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.tokens.now(), tz=timezone.utc)

    # -- passwords --------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable")
            return False

    def _burn_verification(self, password: str) -> None:
        """Run one verification against a throwaway hash so unknown emails cost the same."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("csaccess-timing-equalizer")
        self.verify_password(self._dummy_hash, password)

    # -- registration / login ---------------------------------------------

    async def register(
        self,
        email: str,
        name: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = await self.create_user(email, name, password)
        result = await self._start_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("user_registered", user_id=user.id)
        return result

    async def create_user(
        self, email: str, name: str, password: str, *, role: str = "user"
    ) -> User:
        """Validate and insert an account without issuing a token."""
        errors: Dict[str, str] = {}
        normalized_email = self._collect(errors, "email", normalize_email, email)
        clean_name = self._collect(errors, "name", validate_name, name)
        self._collect(errors, "password", validate_password, password)
        if role not in ROLES:
            errors["role"] = f"must be one of {', '.join(ROLES)}"
        if errors:
            raise ValidationError("Validation failed", detail={"fields": errors})

        if await self.store.find_by_email(normalized_email):
            self.logger.info(
                "registration_conflict", email_hash=email_digest(normalized_email)
            )
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE)

        user = User.new(
            normalized_email, clean_name, self.hash_password(password), role=role
        )
        try:
            return await self.store.insert_user(user)
        except ConstraintViolation as exc:
            if exc.kind != "unique":
                raise
            self.logger.info(
                "registration_race_conflict", email_hash=email_digest(normalized_email)
            )
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE) from exc

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        errors: Dict[str, str] = {}
        normalized_email = self._collect(errors, "email", normalize_email, email)
        if not isinstance(password, str) or not password:
            errors["password"] = "password is required"
        if errors:
            raise ValidationError("Validation failed", detail={"fields": errors})

        user = await self.store.find_by_email(normalized_email)
        if not user or not user.is_active:
            self._burn_verification(password)
            self.logger.info(
                "login_failed",
                reason="unknown_or_inactive",
                email_hash=email_digest(normalized_email),
            )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not self.verify_password(user.password_hash, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if self._pwd_hasher.check_needs_rehash(user.password_hash):
            user.password_hash = self.hash_password(password)
            await self.store.update_password_hash(user.id, user.password_hash)
            self.logger.info("password_rehashed", user_id=user.id)

        result = await self._start_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("user_logged_in", user_id=user.id)
        return result

    async def _start_session(
        self,
        user: User,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> AuthResult:
        token, claims = self.tokens.issue_with_claims(
            IdentityClaims(user_id=user.id, email=user.email, role=user.role),
            self.session_ttl,
        )
        record = SessionRecord.new(
            user.id,
            self.tokens.hash_token(token),
            issued_at=claims.issued_at_datetime,
            expires_at=claims.expires_at_datetime,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        record = await self.store.insert_session(record)
        now = claims.issued_at_datetime
        await self.store.update_last_login(user.id, now)
        user.last_login = now
        return AuthResult(user=user.public(), token=token, session=record)

    async def logout(self, token: str) -> int:
        """Revoke every live ledger entry for ``token``; returns how many were revoked."""
        revoked = await self.store.revoke_sessions_by_token_hash(
            self.tokens.hash_token(token), self._now()
        )
        self.logger.info("user_logged_out", revoked=revoked)
        return revoked

    # -- profile ----------------------------------------------------------

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        user = await self.store.find_by_id(user_id)
        if not user or not user.is_active:
            raise NotFoundError("User not found")
        return user.public()

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        errors: Dict[str, str] = {}
        clean_name = (
            self._collect(errors, "name", validate_name, name) if name is not None else None
        )
        clean_url = self._collect(
            errors, "profile_image_url", validate_profile_image_url, profile_image_url
        )
        if errors:
            raise ValidationError("Validation failed", detail={"fields": errors})
        if clean_name is None and clean_url is None:
            raise ValidationError("No valid fields to update")
        user = await self.store.update_profile(
            user_id, name=clean_name, profile_image_url=clean_url
        )
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("profile_updated", user_id=user_id)
        return user.public()

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        return await self.store.list_user_sessions(user_id)

    # -- administration ---------------------------------------------------

    async def list_users(self, limit: int = 100) -> List[Dict[str, Any]]:
        users = await self.store.list_users(limit=max(1, min(limit, 500)))
        return [
            {**user.public(), "is_active": user.is_active} for user in users
        ]

    async def set_role(self, user_id: str, role: str) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError(
                "Invalid role", detail={"fields": {"role": f"must be one of {', '.join(ROLES)}"}}
            )
        user = await self.store.set_role(user_id, role)
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_role_changed", user_id=user_id, role=role)
        return user.public()

    async def deactivate_user(self, user_id: str) -> Dict[str, Any]:
        user = await self.store.set_active(user_id, False)
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_deactivated", user_id=user_id)
        return {**user.public(), "is_active": user.is_active}

    @staticmethod
    def _collect(errors: Dict[str, str], field: str, validator, value):
        try:
            return validator(value)
        except ValueError as exc:
            errors[field] = str(exc)
            return None


__all__ = ["AuthResult", "AuthService", "AuthStore", "ROLES"]
