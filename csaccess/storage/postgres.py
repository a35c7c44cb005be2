from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from csaccess.logging import get_logger
from csaccess.storage.errors import ConstraintViolation
from csaccess.storage.models import SessionRecord, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        profile_image_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_session_token_hash ON user_session (token_hash)",
    "CREATE INDEX IF NOT EXISTS idx_user_session_user_id ON user_session (user_id)",
)


class PostgresStore:
    """Postgres-backed credential store and session ledger.

    The pool is created closed; call :meth:`open` from the application
    lifespan before serving requests.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        await self._ensure_schema()
        self.logger.info("postgres_store_opened", min_size=self.pool.min_size)

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def _ensure_schema(self) -> None:
        """Create the user and session tables if they are missing."""

        async with self._connect() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)

    async def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()

    async def _fetch_all(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchall()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        created_at = row.get("created_at") or utcnow()
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name", ""),
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            email_verified=bool(row.get("email_verified", False)),
            is_active=bool(row.get("is_active", True)),
            profile_image_url=row.get("profile_image_url"),
            created_at=created_at,
            updated_at=row.get("updated_at") or created_at,
            last_login=row.get("last_login"),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            revoked_at=row.get("revoked_at"),
        )

    # users
    async def find_by_email(self, email: str) -> Optional[User]:
        row = await self._fetch_one("SELECT * FROM app_user WHERE email = %s", (email,))
        return self._row_to_user(row) if row else None

    async def find_by_id(self, user_id: str) -> Optional[User]:
        row = await self._fetch_one("SELECT * FROM app_user WHERE id = %s", (user_id,))
        return self._row_to_user(row) if row else None

    async def insert_user(self, user: User) -> User:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, name, password_hash, role, email_verified,
                        is_active, profile_image_url, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.password_hash,
                        user.role,
                        user.email_verified,
                        user.is_active,
                        user.profile_image_url,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, kind="unique"
            )
        return user

    async def update_last_login(self, user_id: str, when: datetime) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s", (when, user_id)
            )

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image_url: Optional[str] = None,
    ) -> Optional[User]:
        row = await self._fetch_one(
            """
            UPDATE app_user
               SET name = COALESCE(%s, name),
                   profile_image_url = COALESCE(%s, profile_image_url),
                   updated_at = now()
             WHERE id = %s
            RETURNING *
            """,
            (name, profile_image_url, user_id),
        )
        return self._row_to_user(row) if row else None

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    async def set_role(self, user_id: str, role: str) -> Optional[User]:
        row = await self._fetch_one(
            "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
            (role, user_id),
        )
        return self._row_to_user(row) if row else None

    async def set_active(self, user_id: str, is_active: bool) -> Optional[User]:
        row = await self._fetch_one(
            "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
            (is_active, user_id),
        )
        return self._row_to_user(row) if row else None

    async def list_users(self, limit: int = 100) -> List[User]:
        rows = await self._fetch_all(
            "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
        )
        return [self._row_to_user(row) for row in rows]

    # sessions
    async def insert_session(self, record: SessionRecord) -> SessionRecord:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO user_session (
                        id, user_id, token_hash, created_at, expires_at,
                        ip_address, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_hash,
                        record.created_at,
                        record.expires_at,
                        record.ip_address,
                        record.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session user missing", {"user_id": record.user_id}, kind="foreign_key"
            )
        return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        row = await self._fetch_one(
            "SELECT * FROM user_session WHERE id = %s", (session_id,)
        )
        return self._row_to_session(row) if row else None

    async def find_sessions_by_token_hash(self, token_hash: str) -> List[SessionRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM user_session WHERE token_hash = %s", (token_hash,)
        )
        return [self._row_to_session(row) for row in rows]

    async def revoke_sessions_by_token_hash(
        self, token_hash: str, when: Optional[datetime] = None
    ) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE user_session SET revoked_at = %s
                 WHERE token_hash = %s AND revoked_at IS NULL
                """,
                (when or utcnow(), token_hash),
            )
            return cur.rowcount

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM user_session WHERE user_id = %s ORDER BY created_at DESC",
            (user_id,),
        )
        return [self._row_to_session(row) for row in rows]


__all__ = ["PostgresStore"]
