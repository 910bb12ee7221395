"""Container runtime seam used by the provisioning engine.

``ContainerRuntimeAdapter`` is the narrow surface the engine needs; the Docker
implementation wraps the blocking ``docker`` SDK in ``asyncio.to_thread`` so
no call stalls the event loop.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

import docker
from docker.errors import DockerException, NotFound
from docker.types import Mount

from agentdeploy.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ContainerRuntimeError(Exception):
    """The container runtime rejected or failed a request."""


class ResourceNotFound(ContainerRuntimeError):
    """No live resource with the given id or name."""


@dataclass
class MountSpec:
    target: str
    source: str
    type: str = "bind"
    subpath: Optional[str] = None


@dataclass
class ContainerSpec:
    name: str
    image: str
    command: Optional[List[str]] = None
    env: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    mounts: List[MountSpec] = field(default_factory=list)
    network: Optional[str] = None
    restart_policy: str = "unless-stopped"
    shm_size: Optional[int] = None
    memory: Optional[int] = None


@dataclass
class ResourceInfo:
    id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    status: str = "unknown"

    @property
    def running(self) -> bool:
        return self.status == "running"


@dataclass
class ResourceState:
    running: bool
    exit_code: int = 0
    status: str = "unknown"
    ip: Optional[str] = None


class ContainerRuntimeAdapter(Protocol):
    async def verify_connection(self) -> None: ...

    async def create(self, spec: ContainerSpec) -> ResourceInfo: ...

    async def start(self, resource_id: str) -> None: ...

    async def inspect(self, resource_id: str) -> ResourceState: ...

    async def remove(self, resource_id: str) -> None: ...

    async def restart(self, resource_id: str) -> None: ...

    async def list_by_label(self, key: str, value: str) -> List[ResourceInfo]: ...

    async def find_by_name(self, name: str) -> Optional[ResourceInfo]: ...


def _container_info(container: Any) -> ResourceInfo:
    return ResourceInfo(
        id=container.id,
        name=(container.name or "").lstrip("/"),
        labels=dict(container.labels or {}),
        status=container.status or "unknown",
    )


def _container_state(attrs: Dict[str, Any]) -> ResourceState:
    state = attrs.get("State") or {}
    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    ip = next(
        (entry.get("IPAddress") for entry in networks.values() if entry and entry.get("IPAddress")),
        None,
    )
    return ResourceState(
        running=bool(state.get("Running")),
        exit_code=int(state.get("ExitCode") or 0),
        status=state.get("Status") or "unknown",
        ip=ip,
    )


def _docker_mount(spec: MountSpec) -> Mount:
    mount = Mount(target=spec.target, source=spec.source, type=spec.type)
    if spec.type == "volume" and spec.subpath:
        mount.setdefault("VolumeOptions", {})["Subpath"] = spec.subpath
    return mount


class DockerRuntimeAdapter:
    """``ContainerRuntimeAdapter`` backed by the local Docker daemon."""

    def __init__(self, client: Any = None, *, stop_timeout: int = 5) -> None:
        self._client = client
        self._client_lock = threading.Lock()
        self.stop_timeout = stop_timeout

    @property
    def client(self) -> Any:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = docker.from_env()
        return self._client

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except NotFound as exc:
            raise ResourceNotFound(str(exc)) from exc
        except (DockerException, OSError) as exc:
            logger.warning("container_runtime_call_failed", operation=operation, error=str(exc))
            raise ContainerRuntimeError(f"{operation} failed: {exc}") from exc

    async def verify_connection(self) -> None:
        await self._call("ping", lambda: self.client.ping())

    async def create(self, spec: ContainerSpec) -> ResourceInfo:
        def _create() -> ResourceInfo:
            kwargs: Dict[str, Any] = {
                "name": spec.name,
                "command": spec.command,
                "environment": list(spec.env),
                "labels": dict(spec.labels),
                "mounts": [_docker_mount(mount) for mount in spec.mounts],
                "restart_policy": {"Name": spec.restart_policy},
                "detach": True,
            }
            if spec.shm_size:
                kwargs["shm_size"] = spec.shm_size
            if spec.memory:
                kwargs["mem_limit"] = spec.memory
                kwargs["memswap_limit"] = -1
            if spec.network:
                kwargs["network"] = spec.network
            container = self.client.containers.create(spec.image, **kwargs)
            return _container_info(container)

        info = await self._call("create", _create)
        logger.info("container_created", name=spec.name, container_id=info.id[:12])
        return info

    async def start(self, resource_id: str) -> None:
        await self._call("start", lambda: self.client.containers.get(resource_id).start())

    async def inspect(self, resource_id: str) -> ResourceState:
        def _inspect() -> ResourceState:
            container = self.client.containers.get(resource_id)
            return _container_state(container.attrs)

        return await self._call("inspect", _inspect)

    async def remove(self, resource_id: str) -> None:
        try:
            await self._call(
                "remove", lambda: self.client.containers.get(resource_id).remove(force=True)
            )
        except ResourceNotFound:
            return

    async def restart(self, resource_id: str) -> None:
        await self._call(
            "restart",
            lambda: self.client.containers.get(resource_id).restart(timeout=self.stop_timeout),
        )

    async def list_by_label(self, key: str, value: str) -> List[ResourceInfo]:
        def _list() -> List[ResourceInfo]:
            containers = self.client.containers.list(all=True, filters={"label": f"{key}={value}"})
            return [_container_info(container) for container in containers]

        return await self._call("list", _list)

    async def find_by_name(self, name: str) -> Optional[ResourceInfo]:
        def _find() -> Optional[ResourceInfo]:
            container = self.client.containers.get(name)
            info = _container_info(container)
            return info if info.name == name else None

        try:
            return await self._call("find", _find)
        except ResourceNotFound:
            return None
