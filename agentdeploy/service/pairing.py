"""Pairing session worker.

Drives one pairing session from ``waiting`` to ``linked`` (or to ``expired`` /
``error``) against a :class:`MessagingLinkAdapter`. Two paths can end a run:
the expiry timer and the connection flow. Whichever claims the
:class:`CompletionFlag` first performs the terminal action; the other backs off.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Set

from agentdeploy.logging import get_logger
from agentdeploy.service.errors import LinkFailure
from agentdeploy.service.events import ErrorEvent, EventBus, QrEvent, SessionEvent, StatusEvent
from agentdeploy.service.link import (
    LinkConnection,
    MessagingLinkAdapter,
    SyncCapture,
    disconnect_status,
    format_link_error,
)
from agentdeploy.storage.common import PersistentStore
from agentdeploy.storage.models import PairingSession, SessionErrorCode, SessionState

logger = get_logger(__name__)

MAX_CONNECT_ATTEMPTS = 3
RETRYABLE_DISCONNECT_CODES = frozenset({408, 410, 428, 440, 500, 515})

MSG_WAITING = "Waiting for QR scan."
MSG_RECONNECTING = "Reconnecting..."
MSG_LINKED = "Messaging account linked."
MSG_EXPIRED_PERSISTED = "QR session expired."
MSG_EXPIRED_EVENT = "QR session expired. Please refresh the QR code."
MSG_LOGIN_FAILED_EVENT = "Login failed. Please retry."
MSG_IDENTITY_MISSING = "Account linked but identity was not persisted."


class PairingOutcome(str, Enum):
    LINKED = "linked"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass
class PairingTimings:
    """Delays and bounds for one pairing run, in seconds."""

    reconnect_delay: float = 1.0
    creds_retry_delay: float = 0.5
    capture_timeout: float = 90.0
    capture_settle_delay: float = 0.1
    identity_poll_attempts: int = 5
    identity_poll_delay: float = 0.3


@dataclass
class PairingDeps:
    store: PersistentStore
    events: EventBus
    session_ttl: float
    link_adapter: MessagingLinkAdapter
    on_profile_data_ready: Optional[Callable[[str], Any]] = None
    timings: PairingTimings = field(default_factory=PairingTimings)
    max_attempts: int = MAX_CONNECT_ATTEMPTS


class CompletionFlag:
    """Single-assignment flag arbitrating the expiry path and the connection path.

    ``try_complete`` is the only way to set it and runs without suspending, so
    within one event loop exactly one caller ever sees ``True``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.claimed_by: Optional[str] = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def try_complete(self, claimant: str) -> bool:
        if self._event.is_set():
            return False
        self.claimed_by = claimant
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class _Completed(Exception):
    """The other path claimed completion while this one was suspended."""


def is_retryable_disconnect(exc: BaseException) -> bool:
    return disconnect_status(exc) in RETRYABLE_DISCONNECT_CODES


class PairingSessionWorker:
    def __init__(self, session: PairingSession, deps: PairingDeps) -> None:
        self.session = session
        self.deps = deps
        self.completion = CompletionFlag()
        self.capture = SyncCapture()
        self.user_id: Optional[str] = None
        self.identity: Optional[str] = None
        self.attempts = 0
        self._creds_retry_used = False
        self._connection: Optional[LinkConnection] = None
        self._expiry_task: Optional[asyncio.Task] = None
        self._capture_ready = asyncio.Event()
        self._background: Set[asyncio.Task] = set()
        self._log = logger.bind(session_id=session.id)

    # -- event helpers ----------------------------------------------------

    def _emit(self, event: SessionEvent) -> None:
        """Emit unless the run already completed; terminal events bypass this."""
        if self.completion.is_set:
            return
        self.deps.events.emit(self.session.id, event)

    def _on_pairing_code(self, code: str) -> None:
        self._emit(QrEvent(code=code, expires_at=self.session.expires_at))

    # -- sync capture -----------------------------------------------------

    def _check_capture(self) -> None:
        if self.capture.has_data:
            self._capture_ready.set()

    def _schedule_capture_check(self) -> None:
        loop = asyncio.get_running_loop()
        loop.call_later(self.deps.timings.capture_settle_delay, self._check_capture)

    def _bind_capture(self, connection: LinkConnection) -> None:
        def on_history(contacts: List[Any], chats: List[Any], messages: List[Any]) -> None:
            self.capture.on_history(contacts, chats, messages)
            self._log.info(
                "pairing_history_received",
                contacts=len(self.capture.contacts),
                chats=len(self.capture.chats),
                messages=len(self.capture.messages),
            )
            self._schedule_capture_check()

        def on_chats(chats: List[Any]) -> None:
            self.capture.on_chats(chats)
            self._schedule_capture_check()

        def on_contacts(contacts: List[Any]) -> None:
            self.capture.on_contacts(contacts)
            self._schedule_capture_check()

        connection.on_history(on_history)
        connection.on_chats(on_chats)
        connection.on_contacts(on_contacts)

    async def _hold_for_capture(self) -> None:
        self._check_capture()
        waiter = asyncio.ensure_future(self._capture_ready.wait())
        stopper = asyncio.ensure_future(self.completion.wait())
        try:
            await asyncio.wait(
                {waiter, stopper},
                timeout=self.deps.timings.capture_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            stopper.cancel()
        self._log.info(
            "pairing_capture_finished",
            early=self._capture_ready.is_set(),
            contacts=len(self.capture.contacts),
            chats=len(self.capture.chats),
            messages=len(self.capture.messages),
        )

    # -- connection helpers -----------------------------------------------

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as exc:
            self._log.debug("pairing_connection_close_failed", error=str(exc))

    async def _wait_for_open(self, connection: LinkConnection) -> None:
        opener = asyncio.ensure_future(self.deps.link_adapter.wait_for_open(connection))
        stopper = asyncio.ensure_future(self.completion.wait())
        try:
            done, _ = await asyncio.wait({opener, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if opener in done:
            opener.result()
            return
        opener.cancel()
        raise _Completed()

    def _link_from_work_dir(self) -> bool:
        """Adopt an identity already written to the working directory.

        Persists ``linked`` and emits the status once per identity. Returns False
        when no identity is on disk or the run already completed.
        """
        if self.completion.is_set:
            return False
        identity = self.deps.link_adapter.read_persisted_identity(self.session.work_dir)
        if not identity:
            return False
        if identity == self.identity and self.user_id:
            return True
        user = self.deps.store.get_or_create_user_by_identity(identity)
        self.deps.store.update_pairing_session(
            self.session.id,
            state=SessionState.LINKED,
            identity=identity,
            user_id=user.id,
        )
        self.identity = identity
        self.user_id = user.id
        self._log.info("pairing_linked", user_id=user.id)
        self._emit(StatusEvent(state=SessionState.LINKED, message=MSG_LINKED))
        return True

    # -- expiry -----------------------------------------------------------

    async def _expire_after(self, ttl: float) -> None:
        await asyncio.sleep(ttl)
        if not self.completion.try_complete("expiry"):
            return
        self._log.info("pairing_session_expired", ttl_seconds=ttl)
        await self._close_connection()
        self._persist_terminal(
            SessionState.EXPIRED, SessionErrorCode.SESSION_EXPIRED, MSG_EXPIRED_PERSISTED
        )
        self.deps.events.emit(
            self.session.id,
            ErrorEvent(code=SessionErrorCode.SESSION_EXPIRED, message=MSG_EXPIRED_EVENT),
        )

    def _persist_terminal(
        self, state: SessionState, code: SessionErrorCode, message: str
    ) -> None:
        try:
            self.deps.store.update_pairing_session(
                self.session.id, state=state, error_code=code, error_message=message
            )
        except Exception as exc:
            self._log.error(
                "pairing_terminal_persist_failed",
                state=state.value,
                error_code=SessionErrorCode.DATABASE_ERROR.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # -- profile data -----------------------------------------------------

    def _record_profile_data(self) -> None:
        """Store captured sync data without blocking or failing the pairing run."""
        if not self.user_id:
            return
        user_id = self.user_id
        profile = self.capture.to_profile(user_id)
        task = asyncio.ensure_future(
            asyncio.to_thread(self.deps.store.upsert_profile_data, profile)
        )
        self._background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                self._log.warning(
                    "pairing_profile_persist_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        task.add_done_callback(_done)

        callback = self.deps.on_profile_data_ready
        if callback is None:
            return
        try:
            result = callback(user_id)
            if inspect.isawaitable(result):
                follow_up = asyncio.ensure_future(result)
                self._background.add(follow_up)
                follow_up.add_done_callback(self._background.discard)
        except Exception as exc:
            self._log.warning("pairing_profile_callback_failed", user_id=user_id, error=str(exc))

    # -- main flow --------------------------------------------------------

    async def _connect(self) -> bool:
        """Open the link, retrying transient disconnects.

        Returns True once a connection is open, False when the run already
        reached its outcome (disk identity on the last attempt, or completion
        claimed elsewhere).
        """
        max_attempts = self.deps.max_attempts
        timings = self.deps.timings
        for attempt in range(1, max_attempts + 1):
            if self.completion.is_set:
                return False
            self.attempts = attempt
            connected = False
            self._connection = await self.deps.link_adapter.open(
                self.session.work_dir, self._on_pairing_code
            )
            self._bind_capture(self._connection)
            try:
                await self._wait_for_open(self._connection)
                connected = True
                self._log.info("pairing_connection_open", attempt=attempt)
                return True
            except _Completed:
                return False
            except Exception as exc:
                if self.completion.is_set:
                    return False
                status = disconnect_status(exc)
                self._log.warning(
                    "pairing_attempt_failed",
                    attempt=attempt,
                    status_code=status,
                    error=format_link_error(exc),
                )
                if self._link_from_work_dir():
                    # One extra open to capture sync data, then the link stands as is
                    if attempt < max_attempts and not self._creds_retry_used:
                        self._creds_retry_used = True
                        self._log.info("pairing_creds_on_disk_retrying", attempt=attempt)
                        await asyncio.sleep(timings.creds_retry_delay)
                        continue
                    if self.completion.try_complete("connect"):
                        self._record_profile_data()
                    return False
                if attempt < max_attempts and is_retryable_disconnect(exc):
                    self._emit(StatusEvent(state=SessionState.WAITING, message=MSG_RECONNECTING))
                    await asyncio.sleep(timings.reconnect_delay)
                    continue
                raise LinkFailure(format_link_error(exc), status_code=status) from exc
            finally:
                if not connected:
                    await self._close_connection()
        raise LinkFailure("connection attempts exhausted")

    async def _confirm_identity(self) -> None:
        timings = self.deps.timings
        for poll in range(timings.identity_poll_attempts):
            if self._link_from_work_dir():
                return
            if self.completion.is_set:
                raise _Completed()
            if poll + 1 < timings.identity_poll_attempts:
                await asyncio.sleep(timings.identity_poll_delay)
        raise LinkFailure(MSG_IDENTITY_MISSING)

    async def run(self) -> PairingOutcome:
        self._emit(StatusEvent(state=SessionState.WAITING, message=MSG_WAITING))
        self._expiry_task = asyncio.ensure_future(self._expire_after(self.deps.session_ttl))
        try:
            if await self._connect():
                self.capture.display_name = getattr(self._connection, "display_name", None)
                await self._hold_for_capture()
                await self._close_connection()
                await self._confirm_identity()
                if not self.completion.try_complete("connect"):
                    return PairingOutcome.EXPIRED
                self._record_profile_data()
            return self._outcome()
        except _Completed:
            return self._outcome()
        except Exception as exc:
            return self._fail(exc)
        finally:
            await self._finish_expiry_timer()
            await self._close_connection()

    def _outcome(self) -> PairingOutcome:
        if self.completion.claimed_by == "expiry":
            return PairingOutcome.EXPIRED
        if self.user_id:
            return PairingOutcome.LINKED
        return PairingOutcome.FAILED

    def _fail(self, exc: Exception) -> PairingOutcome:
        if self.completion.is_set:
            return self._outcome()
        try:
            recovered = self._link_from_work_dir()
        except Exception as link_exc:
            self._log.error("pairing_identity_recheck_failed", error=str(link_exc))
            recovered = False
        if recovered:
            self.completion.try_complete("connect")
            self._record_profile_data()
            return PairingOutcome.LINKED
        if not self.completion.try_complete("failure"):
            return self._outcome()
        message = format_link_error(exc)
        self._log.error(
            "pairing_login_failed",
            attempts=self.attempts,
            error_type=type(exc).__name__,
            error=message,
        )
        self._persist_terminal(SessionState.ERROR, SessionErrorCode.LOGIN_FAILED, message)
        self.deps.events.emit(
            self.session.id,
            ErrorEvent(code=SessionErrorCode.LOGIN_FAILED, message=MSG_LOGIN_FAILED_EVENT),
        )
        return PairingOutcome.FAILED

    async def _finish_expiry_timer(self) -> None:
        task = self._expiry_task
        if task is None or task.done():
            return
        if self.completion.claimed_by == "expiry":
            # Let the expiry path finish persisting its terminal state.
            await asyncio.shield(task)
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def run_pairing_session(session: PairingSession, deps: PairingDeps) -> PairingOutcome:
    return await PairingSessionWorker(session, deps).run()
