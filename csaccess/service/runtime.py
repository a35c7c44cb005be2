from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from csaccess.config import Environment, get_settings, reset_settings_cache
from csaccess.logging import get_logger
from csaccess.service.auth import AuthService
from csaccess.service.guard import AccessGuard
from csaccess.service.tokens import TokenService
from csaccess.storage.memory import MemoryStore
from csaccess.storage.postgres import PostgresStore

logger = get_logger(__name__)

RATE_LIMIT_PRUNE_INTERVAL_SECONDS = 300


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:secret@db/csaccess -> postgresql://app:***@db/csaccess
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        try:
            self.store = (
                MemoryStore(state_dir=self.settings.state_dir)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.tokens = TokenService(self.settings)
        self.auth = AuthService(self.store, self.tokens, self.settings)
        self.guard = AccessGuard(
            self.tokens,
            self.store,
            enforce_revocation=self.settings.enforce_session_revocation,
        )
        # key -> (tokens left, last refill, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._rate_limit_pruned_at = datetime.now(timezone.utc)

        logger.info(
            "runtime_initialized",
            session_ttl_days=self.settings.session_ttl_days,
            enforce_session_revocation=self.settings.enforce_session_revocation,
        )

    async def open(self) -> None:
        """Open backing connections; a no-op for the memory store."""
        opener = getattr(self.store, "open", None)
        if opener is not None:
            await opener()

    async def close(self) -> None:
        closer = getattr(self.store, "close", None)
        if closer is not None:
            await closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed with ENVIRONMENT=test")
        runtime = Runtime()
        return runtime


def _prune_full_buckets(runtime: Runtime, now: datetime) -> None:
    """Drop buckets that have refilled completely.

    Caller must hold ``runtime._local_rate_limit_lock``.
    """
    if (now - runtime._rate_limit_pruned_at).total_seconds() < RATE_LIMIT_PRUNE_INTERVAL_SECONDS:
        return
    runtime._rate_limit_pruned_at = now
    stale = [
        key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now
    ]
    for key in stale:
        del runtime._local_rate_limits[key]
    if stale:
        logger.debug("rate_limit_buckets_pruned", count=len(stale))


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """In-process token bucket keyed by ``key``.

    Args:
        runtime: Runtime instance holding the bucket state
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        _prune_full_buckets(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = ["Runtime", "check_rate_limit", "get_runtime", "reset_runtime_for_tests"]
