from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from csaccess.logging import get_logger
from csaccess.storage.errors import ConstraintViolation
from csaccess.storage.models import SessionRecord, User, utcnow


class MemoryStore:
    """In-process credential store and session ledger for development and tests.

    When ``state_dir`` is given, every write is snapshotted to
    ``<state_dir>/memory_store.json`` and reloaded on construction.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    users=len(self.users),
                    sessions=len(self.sessions),
                )

    # -- credential store -------------------------------------------------

    async def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    async def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def insert_user(self, user: User) -> User:
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, kind="unique"
                )
            self.users[user.id] = user
            self._persist_state()
            return user

    async def update_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = when
            self._persist_state()

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if profile_image_url is not None:
                user.profile_image_url = profile_image_url
            user.updated_at = utcnow()
            self._persist_state()
            return user

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()

    async def set_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            self._persist_state()
            return user

    async def set_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return user

    async def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(
                self.users.values(), key=lambda u: u.created_at, reverse=True
            )[:limit]

    # -- session ledger ---------------------------------------------------

    async def insert_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": record.user_id},
                    kind="foreign_key",
                )
            self.sessions[record.id] = record
            self._persist_state()
            return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self.sessions.get(session_id)

    async def find_sessions_by_token_hash(self, token_hash: str) -> List[SessionRecord]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.token_hash == token_hash]

    async def revoke_sessions_by_token_hash(
        self, token_hash: str, when: Optional[datetime] = None
    ) -> int:
        revoked_at = when or utcnow()
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.token_hash == token_hash and sess.revoked_at is None:
                    sess.revoked_at = revoked_at
                    count += 1
            if count:
                self._persist_state()
            return count

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            return sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
                reverse=True,
            )

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role,
            "email_verified": user.email_verified,
            "is_active": user.is_active,
            "profile_image_url": user.profile_image_url,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login": self._serialize_datetime(user.last_login),
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        created_at = self._deserialize_datetime(data["created_at"])
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data["password_hash"],
            role=data.get("role", "user"),
            email_verified=data.get("email_verified", False),
            is_active=data.get("is_active", True),
            profile_image_url=data.get("profile_image_url"),
            created_at=created_at,
            updated_at=self._deserialize_datetime(data.get("updated_at")) or created_at,
            last_login=self._deserialize_datetime(data.get("last_login")),
        )

    def _serialize_session(self, sess: SessionRecord) -> Dict[str, Any]:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "token_hash": sess.token_hash,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "ip_address": sess.ip_address,
            "user_agent": sess.user_agent,
            "revoked_at": self._serialize_datetime(sess.revoked_at),
        }

    def _deserialize_session(self, data: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )


__all__ = ["MemoryStore"]
