import asyncio
import json
import time
from pathlib import Path

import pytest

from agentdeploy.service.events import ErrorEvent, EventBus, QrEvent, StatusEvent
from agentdeploy.service.link import LinkDisconnected, read_identity_from_creds
from agentdeploy.service.pairing import (
    MSG_LINKED,
    MSG_RECONNECTING,
    MSG_WAITING,
    CompletionFlag,
    PairingDeps,
    PairingOutcome,
    PairingTimings,
    is_retryable_disconnect,
    run_pairing_session,
)
from agentdeploy.storage.memory import MemoryStore
from agentdeploy.storage.models import PairingSession, SessionErrorCode, SessionState

FAST_TIMINGS = PairingTimings(
    reconnect_delay=0.01,
    creds_retry_delay=0.01,
    capture_timeout=0.2,
    capture_settle_delay=0.01,
    identity_poll_attempts=3,
    identity_poll_delay=0.01,
)

HANG = "hang"
OPEN = "open"


def _write_creds(work_dir: str, jid: str = "15551234567:3@s.whatsapp.net") -> None:
    Path(work_dir, "creds.json").write_text(json.dumps({"me": {"id": jid}}))


class FakeConnection:
    def __init__(self, display_name=None):
        self.display_name = display_name
        self.history_cb = None
        self.chats_cb = None
        self.contacts_cb = None
        self.closed = False

    def on_history(self, callback):
        self.history_cb = callback

    def on_chats(self, callback):
        self.chats_cb = callback

    def on_contacts(self, callback):
        self.contacts_cb = callback

    async def close(self):
        self.closed = True


class FakeLinkAdapter:
    """Scripted adapter: one outcome per ``wait_for_open`` call.

    An outcome is ``OPEN`` (link succeeds and credentials land on disk),
    ``HANG`` (never opens) or an exception instance to raise.
    """

    def __init__(self, outcomes, *, creds_before_failure=False, history=None, open_error=None):
        self.outcomes = list(outcomes)
        self.creds_before_failure = creds_before_failure
        self.history = history
        self.open_error = open_error
        self.connections = []
        self.pairing_callbacks = []

    async def open(self, work_dir, on_pairing_code):
        if self.open_error is not None:
            if self.creds_before_failure:
                _write_creds(work_dir)
            raise self.open_error
        connection = FakeConnection(display_name="Ada")
        connection.work_dir = work_dir
        self.connections.append(connection)
        self.pairing_callbacks.append(on_pairing_code)
        on_pairing_code(f"qr-{len(self.connections)}")
        return connection

    async def wait_for_open(self, connection):
        outcome = self.outcomes.pop(0) if self.outcomes else HANG
        if outcome == HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            if self.creds_before_failure:
                _write_creds(connection.work_dir)
            raise outcome
        _write_creds(connection.work_dir)
        if self.history is not None:
            connection.history_cb(*self.history)

    def read_persisted_identity(self, work_dir):
        return read_identity_from_creds(work_dir)


def _setup(tmp_path, adapter, *, ttl=5.0, on_profile_data_ready=None, timings=FAST_TIMINGS):
    store = MemoryStore(str(tmp_path), persist=False)
    events = EventBus()
    session = PairingSession.new(str(tmp_path / "tmp"), ttl_seconds=600)
    Path(session.work_dir).mkdir(parents=True)
    store.create_pairing_session(session)
    seen = []
    events.subscribe(session.id, lambda event, snap: seen.append(event))
    deps = PairingDeps(
        store=store,
        events=events,
        session_ttl=ttl,
        link_adapter=adapter,
        on_profile_data_ready=on_profile_data_ready,
        timings=timings,
    )
    return store, events, session, deps, seen


def _status_messages(seen):
    return [event.message for event in seen if isinstance(event, StatusEvent)]


async def test_session_expires_when_nobody_scans(tmp_path):
    adapter = FakeLinkAdapter([HANG])
    store, events, session, deps, seen = _setup(tmp_path, adapter, ttl=1.0)

    started = time.monotonic()
    outcome = await run_pairing_session(session, deps)
    elapsed = time.monotonic() - started

    assert outcome == PairingOutcome.EXPIRED
    assert 0.95 <= elapsed < 1.5
    stored = store.get_pairing_session(session.id)
    assert stored.state == SessionState.EXPIRED
    assert stored.error_code == SessionErrorCode.SESSION_EXPIRED
    errors = [event for event in seen if isinstance(event, ErrorEvent)]
    assert [error.code for error in errors] == [SessionErrorCode.SESSION_EXPIRED]
    assert adapter.connections[0].closed


async def test_transient_disconnects_retry_then_link(tmp_path):
    adapter = FakeLinkAdapter([LinkDisconnected(500), LinkDisconnected(500), OPEN])
    store, events, session, deps, seen = _setup(tmp_path, adapter)

    outcome = await run_pairing_session(session, deps)

    assert outcome == PairingOutcome.LINKED
    assert len(adapter.connections) == 3
    assert _status_messages(seen) == [MSG_WAITING, MSG_RECONNECTING, MSG_RECONNECTING, MSG_LINKED]
    stored = store.get_pairing_session(session.id)
    assert stored.state == SessionState.LINKED
    assert stored.identity == "+15551234567"
    assert stored.user_id == store.get_or_create_user_by_identity("+15551234567").id
    assert all(connection.closed for connection in adapter.connections)


async def test_connect_attempts_are_bounded(tmp_path):
    adapter = FakeLinkAdapter([LinkDisconnected(515)] * 5)
    store, events, session, deps, seen = _setup(tmp_path, adapter)

    outcome = await run_pairing_session(session, deps)

    assert outcome == PairingOutcome.FAILED
    assert len(adapter.connections) == 3
    stored = store.get_pairing_session(session.id)
    assert stored.state == SessionState.ERROR
    assert stored.error_code == SessionErrorCode.LOGIN_FAILED
    assert [event.code for event in seen if isinstance(event, ErrorEvent)] == [
        SessionErrorCode.LOGIN_FAILED
    ]


async def test_non_retryable_disconnect_fails_immediately(tmp_path):
    adapter = FakeLinkAdapter([LinkDisconnected(401, "logged out"), OPEN])
    store, events, session, deps, seen = _setup(tmp_path, adapter)

    outcome = await run_pairing_session(session, deps)

    assert outcome == PairingOutcome.FAILED
    assert len(adapter.connections) == 1
    assert MSG_RECONNECTING not in _status_messages(seen)
    assert "status=401" in store.get_pairing_session(session.id).error_message


async def test_credentials_on_disk_after_failure_allow_one_more_open(tmp_path):
    ready = []
    adapter = FakeLinkAdapter([LinkDisconnected(515)] * 3, creds_before_failure=True)
    store, events, session, deps, seen = _setup(tmp_path, adapter, on_profile_data_ready=ready.append)

    outcome = await run_pairing_session(session, deps)
    await asyncio.sleep(0.05)

    assert outcome == PairingOutcome.LINKED
    # The first failure finds credentials; a single follow-up open is allowed
    assert len(adapter.connections) == 2
    user_id = store.get_pairing_session(session.id).user_id
    assert ready == [user_id]
    assert store.get_profile_data(user_id) is not None
    assert store.get_pairing_session(session.id).state == SessionState.LINKED
    # Linked status is emitted once per identity
    assert _status_messages(seen).count(MSG_LINKED) == 1
    assert not [event for event in seen if isinstance(event, ErrorEvent)]


async def test_open_error_with_credentials_on_disk_still_links(tmp_path):
    adapter = FakeLinkAdapter([], creds_before_failure=True, open_error=OSError("socket reset"))
    store, events, session, deps, seen = _setup(tmp_path, adapter)

    outcome = await run_pairing_session(session, deps)

    assert outcome == PairingOutcome.LINKED
    assert store.get_pairing_session(session.id).state == SessionState.LINKED


async def test_no_events_after_expiry(tmp_path):
    adapter = FakeLinkAdapter([HANG])
    store, events, session, deps, seen = _setup(tmp_path, adapter, ttl=0.05)

    outcome = await run_pairing_session(session, deps)
    count = len(seen)
    # A late pairing code from the library is dropped
    adapter.pairing_callbacks[0]("late-code")

    assert outcome == PairingOutcome.EXPIRED
    assert len(seen) == count
    assert events.snapshot(session.id).qr == "qr-1"


async def test_expiry_during_capture_wins_over_link(tmp_path):
    slow_capture = PairingTimings(
        reconnect_delay=0.01,
        creds_retry_delay=0.01,
        capture_timeout=5.0,
        capture_settle_delay=0.01,
        identity_poll_attempts=3,
        identity_poll_delay=0.01,
    )
    adapter = FakeLinkAdapter([OPEN])
    store, events, session, deps, seen = _setup(tmp_path, adapter, ttl=0.2, timings=slow_capture)

    started = time.monotonic()
    outcome = await run_pairing_session(session, deps)

    assert outcome == PairingOutcome.EXPIRED
    assert time.monotonic() - started < 2.0
    stored = store.get_pairing_session(session.id)
    assert stored.state == SessionState.EXPIRED
    assert MSG_LINKED not in _status_messages(seen)


async def test_history_ends_capture_early_and_profile_data_is_stored(tmp_path):
    ready = []
    history = ([{"id": "c1"}], [{"id": "chat1"}], [{"id": "m1"}])
    adapter = FakeLinkAdapter([OPEN], history=history)
    slow_capture = PairingTimings(
        reconnect_delay=0.01,
        creds_retry_delay=0.01,
        capture_timeout=5.0,
        capture_settle_delay=0.01,
        identity_poll_attempts=3,
        identity_poll_delay=0.01,
    )
    store, events, session, deps, seen = _setup(
        tmp_path, adapter, on_profile_data_ready=ready.append, timings=slow_capture
    )

    started = time.monotonic()
    outcome = await run_pairing_session(session, deps)

    assert outcome == PairingOutcome.LINKED
    assert time.monotonic() - started < 2.0
    user_id = store.get_pairing_session(session.id).user_id
    assert ready == [user_id]

    profile = None
    for _ in range(50):
        profile = store.get_profile_data(user_id)
        if profile is not None:
            break
        await asyncio.sleep(0.02)
    assert profile is not None
    assert profile.display_name == "Ada"
    assert profile.contacts == [{"id": "c1"}]
    assert profile.messages == [{"id": "m1"}]


async def test_qr_codes_carry_session_expiry(tmp_path):
    adapter = FakeLinkAdapter([LinkDisconnected(408), OPEN])
    store, events, session, deps, seen = _setup(tmp_path, adapter)

    await run_pairing_session(session, deps)

    codes = [event for event in seen if isinstance(event, QrEvent)]
    assert [event.code for event in codes] == ["qr-1", "qr-2"]
    assert all(event.expires_at == session.expires_at for event in codes)


async def test_completion_flag_is_single_assignment():
    flag = CompletionFlag()
    assert flag.try_complete("expiry") is True
    assert flag.try_complete("connect") is False
    assert flag.claimed_by == "expiry"
    await asyncio.wait_for(flag.wait(), timeout=1)


@pytest.mark.parametrize("status,retryable", [(500, True), (515, True), (428, True), (401, False), (None, False)])
def test_retryable_disconnect_codes(status, retryable):
    assert is_retryable_disconnect(LinkDisconnected(status)) is retryable
