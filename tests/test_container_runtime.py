import pytest
from docker.errors import APIError, NotFound

from agentdeploy.service.container_runtime import (
    ContainerRuntimeError,
    ContainerSpec,
    DockerRuntimeAdapter,
    MountSpec,
    ResourceNotFound,
)


class FakeDockerContainer:
    def __init__(self, container_id, name, labels=None, status="created"):
        self.id = container_id
        self.name = name
        self.labels = labels or {}
        self.status = status
        self.attrs = {
            "State": {"Running": status == "running", "ExitCode": 0, "Status": status},
            "NetworkSettings": {"Networks": {"bridge": {"IPAddress": "172.17.0.5"}}},
        }
        self.actions = []

    def start(self):
        self.actions.append("start")

    def remove(self, force=False):
        self.actions.append(("remove", force))

    def restart(self, timeout=None):
        self.actions.append(("restart", timeout))


class FakeContainers:
    def __init__(self):
        self.by_key = {}
        self.create_calls = []
        self.list_calls = []

    def create(self, image, **kwargs):
        self.create_calls.append((image, kwargs))
        container = FakeDockerContainer("abc123def456789", kwargs["name"], kwargs.get("labels"))
        self.by_key[container.id] = container
        self.by_key[container.name] = container
        return container

    def get(self, key):
        if key not in self.by_key:
            raise NotFound(f"No such container: {key}")
        return self.by_key[key]

    def list(self, all=False, filters=None):
        self.list_calls.append((all, filters))
        seen = {id(c): c for c in self.by_key.values()}
        return list(seen.values())


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers()
        self.ping_error = None

    def ping(self):
        if self.ping_error:
            raise self.ping_error
        return True


def _spec(**overrides):
    values = dict(
        name="rt-u1",
        image="agent-runtime:test",
        env=["A=1"],
        labels={"agentdeploy.role": "gateway"},
        mounts=[MountSpec(target="/data/auth", source="auth-vol", type="volume", subpath="u1")],
        network="agents",
        shm_size=512,
        memory=1024,
    )
    values.update(overrides)
    return ContainerSpec(**values)


async def test_create_translates_spec_to_docker_kwargs():
    client = FakeDockerClient()
    adapter = DockerRuntimeAdapter(client)

    info = await adapter.create(_spec())

    image, kwargs = client.containers.create_calls[0]
    assert image == "agent-runtime:test"
    assert kwargs["name"] == "rt-u1"
    assert kwargs["environment"] == ["A=1"]
    assert kwargs["restart_policy"] == {"Name": "unless-stopped"}
    assert kwargs["network"] == "agents"
    assert kwargs["shm_size"] == 512
    assert kwargs["mem_limit"] == 1024
    mount = kwargs["mounts"][0]
    assert mount["Type"] == "volume"
    assert mount["VolumeOptions"]["Subpath"] == "u1"
    assert info.name == "rt-u1"
    assert info.labels == {"agentdeploy.role": "gateway"}


async def test_inspect_reads_state_and_ip():
    client = FakeDockerClient()
    adapter = DockerRuntimeAdapter(client)
    info = await adapter.create(_spec())
    container = client.containers.get(info.id)
    container.attrs["State"] = {"Running": False, "ExitCode": 137, "Status": "exited"}

    state = await adapter.inspect(info.id)

    assert state.running is False
    assert state.exit_code == 137
    assert state.status == "exited"
    assert state.ip == "172.17.0.5"


async def test_missing_container_maps_to_not_found():
    adapter = DockerRuntimeAdapter(FakeDockerClient())

    with pytest.raises(ResourceNotFound):
        await adapter.inspect("nope")
    assert await adapter.find_by_name("nope") is None
    # Removing something already gone is not an error
    await adapter.remove("nope")


async def test_remove_forces_and_restart_uses_timeout():
    client = FakeDockerClient()
    adapter = DockerRuntimeAdapter(client, stop_timeout=7)
    info = await adapter.create(_spec())

    await adapter.restart(info.id)
    await adapter.remove(info.id)

    assert client.containers.get(info.id).actions == [("restart", 7), ("remove", True)]


async def test_list_by_label_filters():
    client = FakeDockerClient()
    adapter = DockerRuntimeAdapter(client)
    await adapter.create(_spec())

    resources = await adapter.list_by_label("agentdeploy.role", "gateway")

    assert [r.name for r in resources] == ["rt-u1"]
    assert client.containers.list_calls == [(True, {"label": "agentdeploy.role=gateway"})]


async def test_daemon_errors_become_runtime_errors():
    client = FakeDockerClient()
    client.ping_error = APIError("daemon unavailable")
    adapter = DockerRuntimeAdapter(client)

    with pytest.raises(ContainerRuntimeError):
        await adapter.verify_connection()
