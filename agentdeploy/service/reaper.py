"""Periodic cleanup of pairing sessions, working directories and runtimes.

Each sweep:
- purges pairing sessions whose expiry is older than the retention window,
  along with their event snapshots
- removes per-session working directories left in the temp root
- asks the provisioner to reap orphaned or long-failed runtimes
- reprovisions runtimes whose fingerprint no longer matches the current one
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from agentdeploy.logging import get_logger
from agentdeploy.service.fs import sweep_stale_dirs
from agentdeploy.storage.models import utcnow

if TYPE_CHECKING:
    from agentdeploy.service.events import EventBus
    from agentdeploy.service.provisioner import Provisioner
    from agentdeploy.storage.common import PersistentStore

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 600
DEFAULT_MAX_AGE_SECONDS = 6 * 60 * 60
DEFAULT_SESSION_RETENTION_SECONDS = 24 * 60 * 60
MAX_BACKOFF_SECONDS = 1800


@dataclass
class SweepResult:
    sessions_purged: List[str] = field(default_factory=list)
    dirs_removed: List[str] = field(default_factory=list)
    runtimes_removed: List[str] = field(default_factory=list)
    runtimes_stopped: List[str] = field(default_factory=list)
    runtimes_reprovisioned: List[str] = field(default_factory=list)
    errors: int = 0


class Reaper:
    def __init__(
        self,
        store: "PersistentStore",
        provisioner: "Provisioner",
        events: "EventBus",
        tmp_root: Path,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        max_age: int = DEFAULT_MAX_AGE_SECONDS,
        session_retention: int = DEFAULT_SESSION_RETENTION_SECONDS,
    ) -> None:
        self.store = store
        self.provisioner = provisioner
        self.events = events
        self.tmp_root = Path(tmp_root)
        self.interval = interval
        self.max_age = max_age
        self.session_retention = session_retention
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("reaper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reaper_started", interval=self.interval, max_age=self.max_age)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reaper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                result = await self.sweep()
                consecutive_errors = consecutive_errors + 1 if result.errors else 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "reaper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            if consecutive_errors > 3:
                backoff = min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3)))
                logger.warning("reaper_backoff", backoff_seconds=backoff, consecutive_errors=consecutive_errors)
                await asyncio.sleep(backoff)
                continue
            await asyncio.sleep(self.interval)

    async def sweep(self) -> SweepResult:
        result = SweepResult()

        cutoff = utcnow() - timedelta(seconds=self.session_retention)
        try:
            purged = await asyncio.to_thread(self.store.delete_expired_pairing_sessions, cutoff)
            for session_id in purged:
                self.events.discard(session_id)
            result.sessions_purged = list(purged)
        except Exception as exc:
            result.errors += 1
            logger.warning("reaper_session_purge_failed", error=str(exc))

        try:
            result.dirs_removed = await asyncio.to_thread(sweep_stale_dirs, self.tmp_root, self.max_age)
        except Exception as exc:
            result.errors += 1
            logger.warning("reaper_tmp_sweep_failed", error=str(exc))

        try:
            report = await self.provisioner.reap(self.max_age)
            result.runtimes_removed = list(report.orphans_removed)
            result.runtimes_stopped = list(report.stale_stopped)
        except Exception as exc:
            result.errors += 1
            logger.warning("reaper_runtime_reap_failed", error=str(exc))

        try:
            rollout = await self.provisioner.rollout()
            result.runtimes_reprovisioned = list(rollout.reprovisioned)
        except Exception as exc:
            result.errors += 1
            logger.warning("reaper_rollout_failed", error=str(exc))

        if (
            result.sessions_purged
            or result.dirs_removed
            or result.runtimes_removed
            or result.runtimes_stopped
            or result.runtimes_reprovisioned
        ):
            logger.info(
                "reaper_sweep_complete",
                sessions_purged=len(result.sessions_purged),
                dirs_removed=len(result.dirs_removed),
                runtimes_removed=len(result.runtimes_removed),
                runtimes_stopped=len(result.runtimes_stopped),
                runtimes_reprovisioned=len(result.runtimes_reprovisioned),
            )
        return result
