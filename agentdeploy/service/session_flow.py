"""Hand-off from a linked pairing session to runtime provisioning."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional

from agentdeploy.logging import bind_session_context, get_logger, sanitize_error_message
from agentdeploy.service.errors import NotFoundError, ProvisionFailure
from agentdeploy.service.events import ErrorEvent, EventBus, StatusEvent
from agentdeploy.service.fs import copy_link_state, user_dir
from agentdeploy.service.pairing import PairingOutcome
from agentdeploy.service.provisioner import ProvisionOptions, ProvisionResult, Provisioner
from agentdeploy.storage.common import PersistentStore
from agentdeploy.storage.models import PairingSession, SessionErrorCode, SessionState

logger = get_logger(__name__)

MSG_DEPLOYING = "Provisioning your agent..."
MSG_READY = "Your agent is live."
MSG_PROVISION_FAILED = "Provisioning failed. Please retry."

WorkerFactory = Callable[[PairingSession], Awaitable[PairingOutcome]]


class SessionFlowManager:
    """Runs at most one pairing-then-provisioning task per session id."""

    def __init__(
        self,
        store: PersistentStore,
        events: EventBus,
        worker_factory: WorkerFactory,
        provisioner: Provisioner,
        *,
        auth_root: str,
        model_tier: Optional[str] = None,
    ) -> None:
        self.store = store
        self.events = events
        self.worker_factory = worker_factory
        self.provisioner = provisioner
        self.auth_root = auth_root
        self.model_tier = model_tier
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_active(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return bool(task and not task.done())

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def start(self, session_id: str) -> Optional[asyncio.Task]:
        """Start the flow for ``session_id``; returns None when one is already running."""
        if self.is_active(session_id):
            return None
        task = asyncio.ensure_future(self._run(session_id))
        self._tasks[session_id] = task

        def _forget(finished: asyncio.Task) -> None:
            if self._tasks.get(session_id) is finished:
                del self._tasks[session_id]

        task.add_done_callback(_forget)
        return task

    async def _run(self, session_id: str) -> None:
        bind_session_context(session_id)
        log = logger.bind(session_id=session_id)
        session = self.store.get_pairing_session(session_id)
        if not session:
            log.warning("session_flow_missing_session")
            return
        outcome = await self.worker_factory(session)
        log.info("pairing_finished", outcome=outcome.value)
        linked = self.store.get_pairing_session(session_id)
        if not linked or linked.state != SessionState.LINKED or not linked.user_id or not linked.identity:
            return
        try:
            await self._deploy(linked)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error(
                "session_provision_failed",
                user_id=linked.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._fail(session_id, exc)

    async def _deploy(self, session: PairingSession) -> None:
        self.store.update_pairing_session(session.id, state=SessionState.DEPLOYING)
        self.events.emit(session.id, StatusEvent(state=SessionState.DEPLOYING, message=MSG_DEPLOYING))
        await asyncio.to_thread(copy_link_state, session.work_dir, self.auth_root, session.user_id)
        result = await self._provision(session.user_id, session.identity)
        if not result.healthy:
            raise ProvisionFailure("runtime container failed to start")
        self.store.update_pairing_session(session.id, state=SessionState.READY)
        self.events.emit(session.id, StatusEvent(state=SessionState.READY, message=MSG_READY))
        logger.info("session_ready", session_id=session.id, user_id=session.user_id)

    async def _provision(self, user_id: str, identity: str) -> ProvisionResult:
        target = user_dir(self.auth_root, user_id)
        return await self.provisioner.provision(
            user_id, str(target), identity, ProvisionOptions(model_tier=self.model_tier)
        )

    def _fail(self, session_id: str, exc: Exception) -> None:
        try:
            current = self.store.get_pairing_session(session_id)
            if current is None or current.state.is_terminal:
                return
            self.store.update_pairing_session(
                session_id,
                state=SessionState.ERROR,
                error_code=SessionErrorCode.PROVISION_FAILED,
                error_message=sanitize_error_message(str(exc) or type(exc).__name__),
            )
        except Exception as store_exc:
            logger.error(
                "session_failure_persist_failed",
                session_id=session_id,
                error_code=SessionErrorCode.DATABASE_ERROR.value,
                error=str(store_exc),
            )
        self.events.emit(
            session_id,
            ErrorEvent(code=SessionErrorCode.PROVISION_FAILED, message=MSG_PROVISION_FAILED),
        )

    async def reprovision(self, user_id: str) -> ProvisionResult:
        """Replace the runtime of an existing user, reusing its stored link state."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        result = await self._provision(user.id, user.identity)
        logger.info("reprovision_complete", user_id=user_id, healthy=result.healthy)
        return result

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("session_flows_cancelled", count=len(tasks))
