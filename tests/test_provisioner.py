import asyncio
import json
from datetime import timedelta
from pathlib import Path

from agentdeploy.service.container_runtime import (
    ContainerRuntimeError,
    ResourceInfo,
    ResourceNotFound,
    ResourceState,
)
from agentdeploy.service.fs import OwnershipPolicy
from agentdeploy.service.provisioner import (
    GATEWAY_ROLE,
    LABEL_ROLE,
    LABEL_USER,
    NoopProvisioner,
    ProvisionerOptions,
    ProvisioningEngine,
    ProvisionOptions,
    map_resource_state,
)
from agentdeploy.service import runtime_policy
from agentdeploy.storage.memory import MemoryStore
from agentdeploy.storage.models import InstanceStatus, RuntimeFingerprint, utcnow


class FakeContainer:
    def __init__(self, resource_id, spec=None, *, name=None, labels=None):
        self.id = resource_id
        self.spec = spec
        self.name = name or spec.name
        self.labels = dict(labels if labels is not None else spec.labels)
        self.running = False
        self.exit_code = 0
        self.restarts = 0


class FakeContainerRuntime:
    """In-memory stand-in for the container runtime.

    ``script`` maps a container name to the sequence of ``running`` values its
    inspections return; once exhausted the last value repeats.
    """

    def __init__(self):
        self.containers = {}
        self.removed = []
        self.created = []
        self.script = {}
        self.fail_list = False
        self.fail_create = False
        self._counter = 0

    async def verify_connection(self):
        return None

    def add(self, name, *, user_id=None, running=True, labels=None):
        self._counter += 1
        if labels is None:
            labels = {LABEL_ROLE: GATEWAY_ROLE}
            if user_id:
                labels[LABEL_USER] = user_id
        container = FakeContainer(f"c{self._counter:04d}", name=name, labels=labels)
        container.running = running
        self.containers[container.id] = container
        return container

    async def create(self, spec):
        if self.fail_create:
            raise ContainerRuntimeError("image not found")
        if any(c.name == spec.name for c in self.containers.values()):
            raise ContainerRuntimeError(f"name {spec.name} already in use")
        self._counter += 1
        container = FakeContainer(f"c{self._counter:04d}", spec)
        self.containers[container.id] = container
        self.created.append(container)
        return ResourceInfo(id=container.id, name=container.name, labels=container.labels, status="created")

    async def start(self, resource_id):
        self._get(resource_id).running = True

    def _get(self, resource_id):
        try:
            return self.containers[resource_id]
        except KeyError:
            raise ResourceNotFound(resource_id)

    async def inspect(self, resource_id):
        container = self._get(resource_id)
        script = self.script.get(container.name)
        if script:
            container.running = script.pop(0) if len(script) > 1 else script[0]
            if not container.running:
                container.exit_code = 1
        return ResourceState(
            running=container.running,
            exit_code=container.exit_code,
            status="running" if container.running else "exited",
        )

    async def remove(self, resource_id):
        if self.containers.pop(resource_id, None) is not None:
            self.removed.append(resource_id)

    async def restart(self, resource_id):
        container = self._get(resource_id)
        container.restarts += 1
        container.running = True

    async def list_by_label(self, key, value):
        if self.fail_list:
            raise ContainerRuntimeError("daemon unavailable")
        return [
            ResourceInfo(
                id=c.id,
                name=c.name,
                labels=dict(c.labels),
                status="running" if c.running else "exited",
            )
            for c in self.containers.values()
            if c.labels.get(key) == value
        ]

    async def find_by_name(self, name):
        for c in self.containers.values():
            if c.name == name:
                return ResourceInfo(id=c.id, name=c.name, labels=dict(c.labels), status="running" if c.running else "exited")
        return None


def _engine(tmp_path, runtime=None, **overrides):
    store = MemoryStore(str(tmp_path / "store"), persist=False)
    runtime = runtime or FakeContainerRuntime()
    options = ProvisionerOptions(
        image="agent-runtime:test",
        container_prefix="rt-",
        auth_root=str(tmp_path / "auth"),
        health_poll_interval=0,
        **overrides,
    )
    return ProvisioningEngine(store, runtime, options), store, runtime


def _work_dir(tmp_path, user_id="u1"):
    path = tmp_path / "auth" / user_id
    path.mkdir(parents=True, exist_ok=True)
    return str(path)


async def test_provision_twice_replaces_live_resource(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    work_dir = _work_dir(tmp_path)

    first = await engine.provision("u1", work_dir, "+15550001")
    second = await engine.provision("u1", work_dir, "+15550001")

    assert first.healthy and second.healthy
    first_id = runtime.created[0].id
    second_id = runtime.created[1].id
    assert first_id in runtime.removed
    assert list(runtime.containers) == [second_id]
    instances = store.list_instances()
    assert len(instances) == 1
    assert instances[0].status == InstanceStatus.RUNNING
    assert instances[0].resource_id == second_id
    assert instances[0].resource_name == "rt-u1"


async def test_provision_writes_runtime_files_and_spec(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    work_dir = _work_dir(tmp_path)

    result = await engine.provision("u1", work_dir, "+15550001", ProvisionOptions(model_tier="fast"))

    config = json.loads((Path(work_dir) / runtime_policy.CONFIG_FILENAME).read_text())
    assert config["channels"]["messaging"]["allowFrom"] == ["+15550001"]
    assert config["gateway"]["auth"]["token"] == result.instance.access_token
    assert config["agents"]["defaults"]["model"]["primary"] == runtime_policy.resolve_primary_model("fast")
    assert (Path(work_dir) / runtime_policy.PLUGIN_MANIFEST_FILENAME).exists()

    spec = runtime.created[0].spec
    assert spec.name == "rt-u1"
    assert spec.labels == {LABEL_ROLE: GATEWAY_ROLE, LABEL_USER: "u1"}
    assert spec.mounts[0].type == "bind"
    assert spec.mounts[0].source == str(Path(work_dir).resolve())
    assert f"AGENT_GATEWAY_TOKEN={result.instance.access_token}" in spec.env
    assert result.instance.fingerprint == engine.runtime_fingerprint()


async def test_provision_uses_volume_subpath_when_configured(tmp_path):
    engine, store, runtime = _engine(tmp_path, auth_volume="agent-auth")

    await engine.provision("u1", _work_dir(tmp_path), "+15550001")

    mount = runtime.created[0].spec.mounts[0]
    assert mount.type == "volume"
    assert mount.source == "agent-auth"
    assert mount.subpath == "u1"
    assert mount.target == runtime_policy.RUNTIME_ROOT_DIR


async def test_provision_unhealthy_marks_error(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    runtime.script["rt-u1"] = [True, False]

    result = await engine.provision("u1", _work_dir(tmp_path), "+15550001")

    assert result.healthy is False
    instance = store.get_instance_by_user_id("u1")
    assert instance.status == InstanceStatus.ERROR
    assert instance.resource_id == runtime.created[0].id


async def test_provision_needs_consecutive_running_checks(tmp_path):
    engine, store, runtime = _engine(tmp_path, health_poll_max_attempts=2)

    result = await engine.provision("u1", _work_dir(tmp_path), "+15550001")

    assert result.healthy is False
    assert store.get_instance_by_user_id("u1").status == InstanceStatus.ERROR


async def test_provision_create_failure_marks_error_and_raises(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    runtime.fail_create = True

    try:
        await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    except ContainerRuntimeError:
        pass
    else:
        raise AssertionError("provision should propagate the runtime failure")

    assert store.get_instance_by_user_id("u1").status == InstanceStatus.ERROR


async def test_reconcile_marks_missing_resource_stopped(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    # Removed out of band
    runtime.containers.clear()

    report = await engine.reconcile()

    instance = store.get_instance_by_user_id("u1")
    assert instance.status == InstanceStatus.STOPPED
    assert instance.resource_id is None
    assert instance.reconciled_at is not None
    assert report.updated == [instance.id]


async def test_reconcile_adopts_live_state_and_removes_orphans(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    instance = store.get_instance_by_user_id("u1")
    store.update_instance_status(instance.id, InstanceStatus.ERROR)
    orphan = runtime.add("rt-ghost", user_id="ghost")
    unlabeled = runtime.add("rt-unknown", labels={LABEL_ROLE: GATEWAY_ROLE})

    report = await engine.reconcile()

    assert store.get_instance_by_user_id("u1").status == InstanceStatus.RUNNING
    assert set(report.orphans_removed) == {orphan.id, unlabeled.id}
    assert report.resources == 3


async def test_reconcile_keeps_deterministic_name_among_duplicates(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    canonical = runtime.created[0].id
    duplicate = runtime.add("rt-u1-old", user_id="u1")

    report = await engine.reconcile()

    assert report.orphans_removed == [duplicate.id]
    assert canonical in runtime.containers


async def test_reconcile_ignores_labeled_container_under_other_name(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    runtime.containers.clear()
    manual = runtime.add("manual-u1", user_id="u1", running=True)

    report = await engine.reconcile()

    assert store.get_instance_by_user_id("u1").status == InstanceStatus.STOPPED
    assert await engine.inspect_status("u1") == InstanceStatus.STOPPED
    assert report.orphans_removed == [manual.id]
    assert manual.id not in runtime.containers


async def test_reconcile_swallows_runtime_errors(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    runtime.fail_list = True

    report = await engine.reconcile()

    assert report.resources == 0
    assert store.get_instance_by_user_id("u1").status == InstanceStatus.RUNNING


async def test_inspect_status_tracks_live_state(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    container = runtime.created[0]

    container.running = False
    container.exit_code = 137
    assert await engine.inspect_status("u1") == InstanceStatus.ERROR
    assert store.get_instance_by_user_id("u1").status == InstanceStatus.ERROR

    runtime.containers.clear()
    assert await engine.inspect_status("u1") == InstanceStatus.STOPPED
    assert await engine.inspect_status("nobody") is None


async def test_deprovision_is_idempotent(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")

    assert await engine.deprovision("u1") is True
    assert await engine.deprovision("u1") is True
    assert runtime.containers == {}
    assert store.get_instance_by_user_id("u1").status == InstanceStatus.STOPPED


async def test_restart_requires_live_resource(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    assert await engine.restart("u1") is False

    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    assert await engine.restart("u1") is True
    assert runtime.created[0].restarts == 1


async def test_reap_removes_unknown_and_stops_stale(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    runtime.script["rt-u2"] = [False]
    await engine.provision("u2", _work_dir(tmp_path, "u2"), "+15550002")
    stale = store.get_instance_by_user_id("u2")
    stale.updated_at = utcnow() - timedelta(hours=7)
    orphan = runtime.add("rt-ghost", user_id="ghost")
    # A provision in flight has no persisted resource id yet
    in_flight = runtime.created[0]
    store.create_or_replace_instance_for_user("u1", _work_dir(tmp_path), resource_name="rt-u1")

    report = await engine.reap(6 * 60 * 60)

    assert report.orphans_removed == [orphan.id]
    assert report.stale_stopped == [stale.id]
    assert in_flight.id in runtime.containers
    assert store.get_instance_by_user_id("u2").status == InstanceStatus.STOPPED


async def test_reap_records_exit_then_stops_after_max_age(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    container = runtime.created[0]
    container.running = False
    container.exit_code = 1
    instance = store.get_instance_by_user_id("u1")
    instance.updated_at = utcnow() - timedelta(hours=7)

    first = await engine.reap(6 * 60 * 60)

    # The exit is recorded now, so the runtime is not yet past its max age
    assert first.stale_stopped == []
    assert store.get_instance_by_user_id("u1").status == InstanceStatus.ERROR
    assert container.id in runtime.containers

    instance.updated_at = utcnow() - timedelta(hours=7)
    second = await engine.reap(6 * 60 * 60)

    assert second.stale_stopped == [instance.id]
    assert store.get_instance_by_user_id("u1").status == InstanceStatus.STOPPED
    assert container.id not in runtime.containers


async def test_reap_leaves_running_runtime_alone(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    await engine.provision("u1", _work_dir(tmp_path), "+15550001")
    instance = store.get_instance_by_user_id("u1")
    store.update_instance_status(instance.id, InstanceStatus.ERROR)
    instance.updated_at = utcnow() - timedelta(hours=7)

    report = await engine.reap(6 * 60 * 60)

    assert report.stale_stopped == []
    assert runtime.created[0].id in runtime.containers


async def test_ownership_applied_for_shared_volume(tmp_path):
    calls = []
    ownership = OwnershipPolicy(
        uid=1000,
        gid=1000,
        shared_volume=True,
        current_uid=lambda: 0,
        current_gid=lambda: 0,
        chown=lambda path, uid, gid: calls.append((path, uid, gid)),
    )
    store = MemoryStore(str(tmp_path / "store"), persist=False)
    runtime = FakeContainerRuntime()
    options = ProvisionerOptions(
        image="agent-runtime:test",
        container_prefix="rt-",
        auth_root=str(tmp_path / "auth"),
        auth_volume="agent-auth",
        health_poll_interval=0,
    )
    engine = ProvisioningEngine(store, runtime, options, ownership=ownership)
    work_dir = _work_dir(tmp_path)

    await engine.provision("u1", work_dir, "+15550001")

    chowned = {Path(path).name for path, _, _ in calls}
    assert {"u1", runtime_policy.CONFIG_FILENAME, runtime_policy.PLUGIN_MANIFEST_FILENAME} <= chowned
    assert all(uid == 1000 and gid == 1000 for _, uid, gid in calls)


def test_map_resource_state():
    assert map_resource_state(ResourceState(running=True)) == InstanceStatus.RUNNING
    assert map_resource_state(ResourceState(running=False, exit_code=0)) == InstanceStatus.STOPPED
    assert map_resource_state(ResourceState(running=False, exit_code=1)) == InstanceStatus.ERROR


async def test_noop_provisioner_keeps_running_invariant(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    provisioner = NoopProvisioner(store, "rt-")

    result = await provisioner.provision("u1", str(tmp_path / "u1"), "+15550001")

    assert result.healthy
    assert result.instance.status == InstanceStatus.RUNNING
    assert result.instance.resource_id == "rt-u1"
    assert await provisioner.deprovision("u1") is True
    assert store.get_instance_by_user_id("u1").resource_id is None
    report = await provisioner.reconcile()
    assert report.instances == 1


def _stale(store, user_id):
    instance = store.get_instance_by_user_id(user_id)
    instance.fingerprint = RuntimeFingerprint(
        config_version="0", plugin_version="0", policy_version="0", image_ref="agent-runtime:old"
    )
    return instance


async def test_rollout_reprovisions_stale_runtimes(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    stale_user = store.get_or_create_user_by_identity("+15550001")
    current_user = store.get_or_create_user_by_identity("+15550002")
    await engine.provision(stale_user.id, _work_dir(tmp_path, stale_user.id), stale_user.identity)
    await engine.provision(current_user.id, _work_dir(tmp_path, current_user.id), current_user.identity)
    _stale(store, stale_user.id)

    report = await engine.rollout()

    assert report.reprovisioned == [stale_user.id]
    assert len(runtime.created) == 3
    refreshed = store.get_instance_by_user_id(stale_user.id)
    assert refreshed.fingerprint == engine.runtime_fingerprint()
    assert refreshed.status == InstanceStatus.RUNNING
    assert (await engine.rollout()).reprovisioned == []


async def test_rollout_skips_stopped_and_unknown_users(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    user = store.get_or_create_user_by_identity("+15550001")
    await engine.provision(user.id, _work_dir(tmp_path, user.id), user.identity)
    await engine.provision("orphan", _work_dir(tmp_path, "orphan"), "+15550009")
    _stale(store, user.id)
    _stale(store, "orphan")
    await engine.deprovision(user.id)

    report = await engine.rollout()

    assert report.reprovisioned == []
    assert len(runtime.created) == 2


async def test_rollout_never_runs_twice_at_once(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    user = store.get_or_create_user_by_identity("+15550001")
    await engine.provision(user.id, _work_dir(tmp_path, user.id), user.identity)
    _stale(store, user.id)

    first, second = await asyncio.gather(engine.rollout(), engine.rollout())

    assert first.reprovisioned == [user.id]
    assert second.skipped is True
    assert second.reprovisioned == []
    assert len(runtime.created) == 2


async def test_rollout_failure_is_reported_not_raised(tmp_path):
    engine, store, runtime = _engine(tmp_path)
    user = store.get_or_create_user_by_identity("+15550001")
    await engine.provision(user.id, _work_dir(tmp_path, user.id), user.identity)
    _stale(store, user.id)
    runtime.fail_create = True

    report = await engine.rollout()

    assert report.failed == [user.id]
    assert store.get_instance_by_user_id(user.id).status == InstanceStatus.ERROR
