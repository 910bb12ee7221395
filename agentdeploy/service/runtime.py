from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from agentdeploy.config import get_settings, reset_settings_cache
from agentdeploy.logging import get_logger
from agentdeploy.service.errors import ServiceUnavailableError
from agentdeploy.service.events import EventBus
from agentdeploy.service.link import MessagingLinkAdapter, load_link_adapter
from agentdeploy.service.pairing import (
    PairingDeps,
    PairingOutcome,
    PairingTimings,
    run_pairing_session,
)
from agentdeploy.service.provisioner import Provisioner, build_provisioner
from agentdeploy.service.reaper import Reaper
from agentdeploy.service.session_flow import SessionFlowManager
from agentdeploy.storage.memory import MemoryStore
from agentdeploy.storage.models import PairingSession, utcnow
from agentdeploy.storage.postgres import PostgresStore
from agentdeploy.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        *,
        link_adapter: Optional[MessagingLinkAdapter] = None,
        provisioner: Optional[Provisioner] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            provisioner=self.settings.provisioner.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.auth_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.auth_root)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under TEST_MODE where each test owns its event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per process.",
                mode=fallback_mode,
            )

        self.link_adapter = link_adapter
        if self.link_adapter is None and self.settings.link_adapter:
            self.link_adapter = load_link_adapter(self.settings.link_adapter)

        self.events = EventBus()
        self.pairing_timings = PairingTimings()
        self.provisioner = provisioner or build_provisioner(self.settings, self.store)
        self.flows = SessionFlowManager(
            self.store,
            self.events,
            self._run_pairing_worker,
            self.provisioner,
            auth_root=self.settings.auth_root,
        )
        self.reaper = Reaper(
            self.store,
            self.provisioner,
            self.events,
            self.settings.tmp_auth_root,
            interval=self.settings.reaper_interval_seconds,
            max_age=self.settings.reaper_max_age_seconds,
            session_retention=self.settings.session_retention_seconds,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            link_adapter=self.settings.link_adapter if self.link_adapter else None,
            provisioner=type(self.provisioner).__name__,
        )

    async def _run_pairing_worker(self, session: PairingSession) -> PairingOutcome:
        if self.link_adapter is None:
            raise ServiceUnavailableError("no messaging link adapter configured")
        deps = PairingDeps(
            store=self.store,
            events=self.events,
            session_ttl=float(self.settings.session_ttl_seconds),
            link_adapter=self.link_adapter,
            on_profile_data_ready=self._profile_data_ready,
            timings=self.pairing_timings,
        )
        return await run_pairing_session(session, deps)

    def _profile_data_ready(self, user_id: str) -> None:
        logger.info("profile_data_ready", user_id=user_id)

    def create_pairing_session(self) -> PairingSession:
        """Persist a new session, prepare its working directory and start its flow."""
        if self.link_adapter is None:
            raise ServiceUnavailableError(
                "pairing is unavailable", detail={"reason": "link_adapter_not_configured"}
            )
        session = PairingSession.new(
            str(self.settings.tmp_auth_root), self.settings.session_ttl_seconds
        )
        Path(session.work_dir).mkdir(parents=True, exist_ok=True)
        self.store.create_pairing_session(session)
        self.flows.start(session.id)
        logger.info("pairing_session_created", session_id=session.id, expires_at=session.expires_at.isoformat())
        return session

    async def close(self) -> None:
        await self.reaper.stop()
        await self.flows.shutdown()
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**overrides)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token bucket check returning ``(allowed, remaining, reset_seconds)``.

    Uses Redis when configured so limits hold across processes, otherwise a
    per-process bucket.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    return allowed, remaining, reset_seconds
