"""In-process publish/subscribe for pairing session progress.

Each session id keeps a last-known snapshot so an observer attaching late sees
the current state immediately instead of the individual events it missed.
Nothing here is persisted; the store remains the source of truth.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, ClassVar, Dict, List, Optional, Tuple, Union

from agentdeploy.logging import get_logger
from agentdeploy.storage.models import SessionErrorCode, SessionState

logger = get_logger(__name__)


@dataclass(frozen=True)
class QrEvent:
    code: str
    expires_at: datetime
    image: Optional[str] = None
    kind: ClassVar[str] = "qr"

    def to_payload(self) -> dict:
        payload = {"code": self.code, "expiresAt": self.expires_at.isoformat()}
        if self.image:
            payload["image"] = self.image
        return payload


@dataclass(frozen=True)
class StatusEvent:
    state: SessionState
    message: str
    kind: ClassVar[str] = "status"

    def to_payload(self) -> dict:
        return {"state": SessionState(self.state).value, "message": self.message}


@dataclass(frozen=True)
class ErrorEvent:
    code: SessionErrorCode
    message: str
    kind: ClassVar[str] = "error"

    def to_payload(self) -> dict:
        return {"code": SessionErrorCode(self.code).value, "message": self.message}


SessionEvent = Union[QrEvent, StatusEvent, ErrorEvent]


@dataclass
class SessionSnapshot:
    state: SessionState = SessionState.WAITING
    message: Optional[str] = None
    qr: Optional[str] = None
    qr_expires_at: Optional[datetime] = None
    qr_image: Optional[str] = None
    error: Optional[ErrorEvent] = None
    updated_at: Optional[datetime] = field(default=None, compare=False)

    def replay_events(self) -> List[SessionEvent]:
        """Events that recreate this snapshot for a fresh observer: status, qr, error."""
        events: List[SessionEvent] = [
            StatusEvent(state=self.state, message=self.message or "")
        ]
        if self.qr and self.qr_expires_at:
            events.append(QrEvent(code=self.qr, expires_at=self.qr_expires_at, image=self.qr_image))
        if self.error:
            events.append(self.error)
        return events


Listener = Callable[[SessionEvent, SessionSnapshot], None]
Unsubscribe = Callable[[], None]


def _apply(snapshot: SessionSnapshot, event: SessionEvent) -> SessionSnapshot:
    if isinstance(event, QrEvent):
        return replace(
            snapshot, qr=event.code, qr_expires_at=event.expires_at, qr_image=event.image
        )
    if isinstance(event, StatusEvent):
        state = SessionState(event.state)
        error = None if state == SessionState.READY else snapshot.error
        return replace(snapshot, state=state, message=event.message, error=error)
    if isinstance(event, ErrorEvent):
        return replace(
            snapshot, state=SessionState.ERROR, message=event.message, error=event
        )
    raise TypeError(f"unsupported session event: {type(event).__name__}")


class EventBus:
    """Keyed publish/subscribe with per-key snapshot retention."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, SessionSnapshot] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def emit(self, session_id: str, event: SessionEvent) -> SessionSnapshot:
        """Fold ``event`` into the snapshot, then notify current subscribers."""
        with self._lock:
            current = self._snapshots.get(session_id) or SessionSnapshot()
            updated = _apply(current, event)
            self._snapshots[session_id] = updated
            listeners = list(self._listeners.get(session_id, ()))
        for listener in listeners:
            try:
                listener(event, replace(updated))
            except Exception as exc:
                logger.warning(
                    "event_listener_failed",
                    session_id=session_id,
                    event_kind=event.kind,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return replace(updated)

    def subscribe(self, session_id: str, listener: Listener) -> Unsubscribe:
        with self._lock:
            self._listeners.setdefault(session_id, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(session_id)
                if not listeners:
                    return
                try:
                    listeners.remove(listener)
                except ValueError:
                    return
                if not listeners:
                    del self._listeners[session_id]

        return unsubscribe

    def snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        with self._lock:
            current = self._snapshots.get(session_id)
            return replace(current) if current else None

    def discard(self, session_id: str) -> None:
        """Forget the snapshot for a purged session; live subscribers stay attached."""
        with self._lock:
            self._snapshots.pop(session_id, None)

    def listener_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(session_id, ()))

    def subscribe_queue(
        self, session_id: str, *, maxsize: int = 100
    ) -> Tuple["asyncio.Queue[Tuple[SessionEvent, SessionSnapshot]]", Unsubscribe]:
        """Subscribe through an ``asyncio.Queue`` bound to the running loop.

        Events emitted from another thread are handed over with
        ``call_soon_threadsafe``. When the queue is full the oldest entry is
        dropped so a stalled observer cannot grow memory without bound.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def _put(item: Tuple[SessionEvent, SessionSnapshot]) -> None:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(item)

        def _listener(event: SessionEvent, snapshot: SessionSnapshot) -> None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                _put((event, snapshot))
            else:
                loop.call_soon_threadsafe(_put, (event, snapshot))

        return queue, self.subscribe(session_id, _listener)
