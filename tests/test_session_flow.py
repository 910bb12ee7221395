import asyncio
from pathlib import Path

import pytest

from agentdeploy.service.errors import NotFoundError
from agentdeploy.service.events import ErrorEvent, EventBus, StatusEvent
from agentdeploy.service.fs import LINK_STATE_DIRNAME
from agentdeploy.service.pairing import PairingOutcome
from agentdeploy.service.provisioner import NoopProvisioner, ProvisionResult
from agentdeploy.service.session_flow import (
    MSG_DEPLOYING,
    MSG_PROVISION_FAILED,
    MSG_READY,
    SessionFlowManager,
)
from agentdeploy.storage.memory import MemoryStore
from agentdeploy.storage.models import (
    InstanceStatus,
    PairingSession,
    SessionErrorCode,
    SessionState,
)


def _linking_worker(store, identity="+15550001"):
    async def worker(session):
        Path(session.work_dir, "creds.json").write_text("{}")
        user = store.get_or_create_user_by_identity(identity)
        store.update_pairing_session(
            session.id, state=SessionState.LINKED, identity=identity, user_id=user.id
        )
        return PairingOutcome.LINKED

    return worker


class UnhealthyProvisioner(NoopProvisioner):
    async def provision(self, user_id, work_dir, identity, options=None):
        result = await super().provision(user_id, work_dir, identity, options)
        self.store.update_instance_status(result.instance.id, InstanceStatus.ERROR)
        return ProvisionResult(instance=result.instance, healthy=False)


def _setup(tmp_path, worker_factory=None, provisioner=None):
    store = MemoryStore(str(tmp_path / "store"), persist=False)
    events = EventBus()
    auth_root = tmp_path / "auth"
    session = PairingSession.new(str(auth_root / "tmp"), ttl_seconds=600)
    Path(session.work_dir).mkdir(parents=True)
    store.create_pairing_session(session)
    manager = SessionFlowManager(
        store,
        events,
        worker_factory or _linking_worker(store),
        provisioner or NoopProvisioner(store, "rt-"),
        auth_root=str(auth_root),
    )
    seen = []
    events.subscribe(session.id, lambda event, snap: seen.append(event))
    return store, events, manager, session, seen


async def test_linked_session_is_deployed_and_ready(tmp_path):
    store, events, manager, session, seen = _setup(tmp_path)

    await manager.start(session.id)

    stored = store.get_pairing_session(session.id)
    assert stored.state == SessionState.READY
    assert [event.message for event in seen if isinstance(event, StatusEvent)] == [MSG_DEPLOYING, MSG_READY]
    link_state = tmp_path / "auth" / stored.user_id / LINK_STATE_DIRNAME
    assert (link_state / "creds.json").exists()
    instance = store.get_instance_by_user_id(stored.user_id)
    assert instance.status == InstanceStatus.RUNNING
    assert instance.work_dir == str((tmp_path / "auth" / stored.user_id).resolve())


async def test_unhealthy_provision_fails_session(tmp_path):
    store, events, manager, session, seen = _setup(tmp_path)
    manager.provisioner = UnhealthyProvisioner(store, "rt-")

    await manager.start(session.id)

    stored = store.get_pairing_session(session.id)
    assert stored.state == SessionState.ERROR
    assert stored.error_code == SessionErrorCode.PROVISION_FAILED
    errors = [event for event in seen if isinstance(event, ErrorEvent)]
    assert [(e.code, e.message) for e in errors] == [(SessionErrorCode.PROVISION_FAILED, MSG_PROVISION_FAILED)]


async def test_unlinked_outcome_skips_provisioning(tmp_path):
    async def expiring_worker(session):
        return PairingOutcome.EXPIRED

    store, events, manager, session, seen = _setup(tmp_path, worker_factory=expiring_worker)

    await manager.start(session.id)

    assert store.list_instances() == []
    assert seen == []


async def test_start_runs_one_flow_per_session(tmp_path):
    gate = asyncio.Event()
    calls = []

    async def waiting_worker(session):
        calls.append(session.id)
        await gate.wait()
        return PairingOutcome.EXPIRED

    store, events, manager, session, seen = _setup(tmp_path, worker_factory=waiting_worker)

    first = manager.start(session.id)
    second = manager.start(session.id)
    await asyncio.sleep(0)

    assert first is not None
    assert second is None
    assert manager.is_active(session.id)
    assert manager.active_count == 1
    gate.set()
    await first
    assert not manager.is_active(session.id)
    assert calls == [session.id]


async def test_shutdown_cancels_active_flows(tmp_path):
    async def hanging_worker(session):
        await asyncio.Event().wait()

    store, events, manager, session, seen = _setup(tmp_path, worker_factory=hanging_worker)
    task = manager.start(session.id)
    await asyncio.sleep(0)

    await manager.shutdown()

    assert task.cancelled()
    assert manager.active_count == 0


async def test_reprovision_existing_user(tmp_path):
    store, events, manager, session, seen = _setup(tmp_path)
    await manager.start(session.id)
    user_id = store.get_pairing_session(session.id).user_id
    first_instance = store.get_instance_by_user_id(user_id)

    result = await manager.reprovision(user_id)

    assert result.healthy
    assert result.instance.id == first_instance.id
    assert len(store.list_instances()) == 1


async def test_reprovision_unknown_user(tmp_path):
    store, events, manager, session, seen = _setup(tmp_path)

    with pytest.raises(NotFoundError):
        await manager.reprovision("user_missing")
