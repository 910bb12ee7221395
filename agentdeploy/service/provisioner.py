"""Per-user runtime provisioning.

Every operation is idempotent. Only :meth:`ProvisioningEngine.provision`
reports a health verdict to its caller; every other container runtime failure
is logged and leaves the persisted status as it was, to be corrected by the
next ``inspect_status``, ``reconcile`` or ``reap``.
"""

from __future__ import annotations

import asyncio
import json
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from agentdeploy.config import ProvisionerKind, Settings
from agentdeploy.logging import get_logger
from agentdeploy.service import runtime_policy
from agentdeploy.service.container_runtime import (
    ContainerRuntimeAdapter,
    ContainerRuntimeError,
    ContainerSpec,
    DockerRuntimeAdapter,
    MountSpec,
    ResourceInfo,
    ResourceState,
)
from agentdeploy.service.fs import OwnershipPolicy, safe_join
from agentdeploy.storage.common import PersistentStore
from agentdeploy.storage.models import (
    InstanceStatus,
    RuntimeFingerprint,
    RuntimeInstance,
    utcnow,
)

logger = get_logger(__name__)

LABEL_ROLE = "agentdeploy.role"
LABEL_USER = "agentdeploy.user"
GATEWAY_ROLE = "gateway"

HEALTH_POLL_INTERVAL = 1.0
HEALTH_POLL_MAX_ATTEMPTS = 10
HEALTH_REQUIRED_CONSECUTIVE = 3

SHM_SIZE_BYTES = 512 * 1024 * 1024
MEMORY_LIMIT_BYTES = 4 * 1024 * 1024 * 1024


@dataclass
class ProvisionerOptions:
    image: str
    container_prefix: str
    auth_root: str
    network: Optional[str] = None
    auth_volume: Optional[str] = None
    gateway_uid: int = 1000
    gateway_gid: int = 1000
    base_url: Optional[str] = None
    port: int = 8080
    command: Optional[List[str]] = None
    health_poll_interval: float = HEALTH_POLL_INTERVAL
    health_poll_max_attempts: int = HEALTH_POLL_MAX_ATTEMPTS
    health_required_consecutive: int = HEALTH_REQUIRED_CONSECUTIVE

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProvisionerOptions":
        return cls(
            image=settings.docker_image,
            container_prefix=settings.docker_container_prefix,
            auth_root=settings.auth_root,
            network=settings.docker_network,
            auth_volume=settings.docker_auth_volume,
            gateway_uid=settings.docker_gateway_uid,
            gateway_gid=settings.docker_gateway_gid,
            base_url=settings.base_url,
            port=settings.port,
        )


@dataclass
class ProvisionOptions:
    model_tier: Optional[str] = None


@dataclass
class ProvisionResult:
    instance: RuntimeInstance
    healthy: bool


@dataclass
class ReconcileReport:
    instances: int = 0
    resources: int = 0
    updated: List[str] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)


@dataclass
class ReapReport:
    orphans_removed: List[str] = field(default_factory=list)
    stale_stopped: List[str] = field(default_factory=list)


@dataclass
class RolloutReport:
    reprovisioned: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False


class Provisioner(Protocol):
    async def provision(
        self,
        user_id: str,
        work_dir: str,
        identity: str,
        options: Optional[ProvisionOptions] = None,
    ) -> ProvisionResult: ...

    async def deprovision(self, user_id: str) -> bool: ...

    async def inspect_status(self, user_id: str) -> Optional[InstanceStatus]: ...

    async def restart(self, user_id: str) -> bool: ...

    async def reconcile(self) -> ReconcileReport: ...

    async def reap(self, max_age_seconds: int) -> ReapReport: ...

    async def rollout(self) -> RolloutReport: ...

    def runtime_fingerprint(self) -> RuntimeFingerprint: ...


def map_resource_state(state: ResourceState) -> InstanceStatus:
    if state.running:
        return InstanceStatus.RUNNING
    if state.exit_code != 0:
        return InstanceStatus.ERROR
    return InstanceStatus.STOPPED


class ProvisioningEngine:
    """Creates, health-checks, reconciles, reaps and rolls out per-user runtime containers."""

    def __init__(
        self,
        store: PersistentStore,
        runtime: ContainerRuntimeAdapter,
        options: ProvisionerOptions,
        ownership: Optional[OwnershipPolicy] = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.options = options
        self.ownership = ownership or OwnershipPolicy(
            uid=options.gateway_uid,
            gid=options.gateway_gid,
            shared_volume=bool(options.auth_volume),
        )
        self._rollout_lock = asyncio.Lock()

    # -- naming and specs -------------------------------------------------

    def resource_name(self, user_id: str) -> str:
        return f"{self.options.container_prefix}{user_id}"

    def runtime_fingerprint(self) -> RuntimeFingerprint:
        return runtime_policy.runtime_fingerprint(self.options.image)

    def _mounts(self, user_id: str) -> List[MountSpec]:
        if self.options.auth_volume:
            return [
                MountSpec(
                    type="volume",
                    source=self.options.auth_volume,
                    target=runtime_policy.RUNTIME_ROOT_DIR,
                    subpath=user_id,
                )
            ]
        host_dir = safe_join(Path(self.options.auth_root), user_id)
        return [MountSpec(type="bind", source=str(host_dir), target=runtime_policy.RUNTIME_ROOT_DIR)]

    def _container_spec(self, user_id: str, access_token: str) -> ContainerSpec:
        config_path = f"{runtime_policy.RUNTIME_ROOT_DIR}/{runtime_policy.CONFIG_FILENAME}"
        env = [
            f"AGENT_CONFIG_PATH={config_path}",
            f"AGENT_GATEWAY_TOKEN={access_token}",
            *runtime_policy.provider_env(),
        ]
        return ContainerSpec(
            name=self.resource_name(user_id),
            image=self.options.image,
            command=self.options.command,
            env=env,
            labels={LABEL_ROLE: GATEWAY_ROLE, LABEL_USER: user_id},
            mounts=self._mounts(user_id),
            network=self.options.network,
            shm_size=SHM_SIZE_BYTES,
            memory=MEMORY_LIMIT_BYTES,
        )

    def _write_runtime_files(
        self, work_dir: str, identity: str, access_token: str, model_tier: Optional[str]
    ) -> None:
        target = Path(work_dir)
        target.mkdir(parents=True, exist_ok=True)
        config = runtime_policy.build_gateway_config(
            identity,
            access_token,
            model_tier=model_tier,
            allowed_origins=runtime_policy.control_ui_origins(self.options.base_url, self.options.port),
        )
        (target / runtime_policy.CONFIG_FILENAME).write_text(
            json.dumps(config, indent=2), encoding="utf-8"
        )
        (target / runtime_policy.PLUGIN_MANIFEST_FILENAME).write_text(
            json.dumps(runtime_policy.build_plugin_manifest(), indent=2), encoding="utf-8"
        )

    # -- helpers ----------------------------------------------------------

    async def _remove_by_name(self, name: str) -> Optional[str]:
        info = await self.runtime.find_by_name(name)
        if info is None:
            return None
        await self.runtime.remove(info.id)
        logger.info("runtime_container_removed", name=name, container_id=info.id[:12])
        return info.id

    async def _wait_for_healthy(self, resource_id: str) -> bool:
        consecutive = 0
        for attempt in range(1, self.options.health_poll_max_attempts + 1):
            await asyncio.sleep(self.options.health_poll_interval)
            try:
                state = await self.runtime.inspect(resource_id)
            except ContainerRuntimeError as exc:
                logger.warning(
                    "provision_health_failed", container_id=resource_id[:12], attempt=attempt, error=str(exc)
                )
                return False
            if not state.running:
                logger.warning(
                    "provision_health_failed",
                    container_id=resource_id[:12],
                    attempt=attempt,
                    status=state.status,
                    exit_code=state.exit_code,
                )
                return False
            consecutive += 1
            if consecutive >= self.options.health_required_consecutive:
                return True
        return False

    # -- operations -------------------------------------------------------

    async def provision(
        self,
        user_id: str,
        work_dir: str,
        identity: str,
        options: Optional[ProvisionOptions] = None,
    ) -> ProvisionResult:
        options = options or ProvisionOptions()
        name = self.resource_name(user_id)
        access_token = secrets.token_hex(24)
        instance = self.store.create_or_replace_instance_for_user(
            user_id,
            work_dir,
            resource_name=name,
            access_token=access_token,
            fingerprint=self.runtime_fingerprint(),
        )
        log = logger.bind(user_id=user_id, instance_id=instance.id, resource_name=name)
        log.info("provision_started", model_tier=options.model_tier or runtime_policy.DEFAULT_MODEL_TIER)
        try:
            await asyncio.to_thread(
                self._write_runtime_files, work_dir, identity, access_token, options.model_tier
            )
            await asyncio.to_thread(self.ownership.apply, Path(work_dir))
            await self._remove_by_name(name)
            created = await self.runtime.create(self._container_spec(user_id, access_token))
            await self.runtime.start(created.id)
        except Exception:
            self.store.update_instance_status(instance.id, InstanceStatus.ERROR)
            log.error("provision_failed", exc_info=True)
            raise

        healthy = await self._wait_for_healthy(created.id)
        status = InstanceStatus.RUNNING if healthy else InstanceStatus.ERROR
        updated = self.store.update_instance_status(instance.id, status, created.id)
        log.info("provision_complete", healthy=healthy, container_id=created.id[:12])
        return ProvisionResult(instance=updated or instance, healthy=healthy)

    async def deprovision(self, user_id: str) -> bool:
        name = self.resource_name(user_id)
        try:
            await self._remove_by_name(name)
        except ContainerRuntimeError as exc:
            logger.warning("deprovision_failed", user_id=user_id, error=str(exc))
            return False
        instance = self.store.get_instance_by_user_id(user_id)
        if instance:
            self.store.update_instance_status(instance.id, InstanceStatus.STOPPED, None)
        logger.info("deprovision_complete", user_id=user_id)
        return True

    async def inspect_status(self, user_id: str) -> Optional[InstanceStatus]:
        instance = self.store.get_instance_by_user_id(user_id)
        if not instance:
            return None
        current, current_resource = instance.status, instance.resource_id
        try:
            info = await self.runtime.find_by_name(self.resource_name(user_id))
            if info is None:
                if current != InstanceStatus.STOPPED:
                    self.store.update_instance_status(instance.id, InstanceStatus.STOPPED, None)
                return InstanceStatus.STOPPED
            state = await self.runtime.inspect(info.id)
        except ContainerRuntimeError as exc:
            logger.warning("inspect_status_failed", user_id=user_id, error=str(exc))
            return current
        status = map_resource_state(state)
        self._apply_observed(instance.id, current, current_resource, status, info.id)
        return status

    def _apply_observed(
        self,
        instance_id: str,
        current: InstanceStatus,
        current_resource: Optional[str],
        status: InstanceStatus,
        resource_id: str,
    ) -> bool:
        drifted = status != InstanceStatus.STOPPED and current_resource != resource_id
        if status == current and not drifted:
            return False
        self.store.update_instance_status(instance_id, status, resource_id)
        return True

    async def restart(self, user_id: str) -> bool:
        try:
            info = await self.runtime.find_by_name(self.resource_name(user_id))
            if info is None:
                return False
            await self.runtime.restart(info.id)
        except ContainerRuntimeError as exc:
            logger.warning("restart_failed", user_id=user_id, error=str(exc))
            return False
        logger.info("runtime_restarted", user_id=user_id, container_id=info.id[:12])
        return True

    async def _observe(self, resource: ResourceInfo) -> InstanceStatus:
        try:
            return map_resource_state(await self.runtime.inspect(resource.id))
        except ContainerRuntimeError:
            return InstanceStatus.RUNNING if resource.running else InstanceStatus.STOPPED

    async def reconcile(self) -> ReconcileReport:
        """Bring persisted instance status in line with the live containers."""
        report = ReconcileReport()
        try:
            resources = await self.runtime.list_by_label(LABEL_ROLE, GATEWAY_ROLE)
        except ContainerRuntimeError as exc:
            logger.warning("reconcile_list_failed", error=str(exc))
            return report
        report.resources = len(resources)

        # Only the deterministic name binds a container to its user; anything
        # else carrying the label is an orphan
        by_user: Dict[str, ResourceInfo] = {}
        unmatched: List[ResourceInfo] = []
        for resource in resources:
            user_id = resource.labels.get(LABEL_USER)
            if user_id and user_id not in by_user and resource.name == self.resource_name(user_id):
                by_user[user_id] = resource
            else:
                unmatched.append(resource)

        instances = self.store.list_instances()
        report.instances = len(instances)
        for instance in instances:
            resource = by_user.pop(instance.user_id, None)
            current, current_resource = instance.status, instance.resource_id
            try:
                if resource is None:
                    if current != InstanceStatus.STOPPED:
                        self.store.update_instance_status(instance.id, InstanceStatus.STOPPED, None)
                        report.updated.append(instance.id)
                else:
                    status = await self._observe(resource)
                    if self._apply_observed(instance.id, current, current_resource, status, resource.id):
                        report.updated.append(instance.id)
                self.store.mark_instance_reconciled(instance.id)
            except Exception as exc:
                logger.error(
                    "reconcile_instance_failed", instance_id=instance.id, error_type=type(exc).__name__, error=str(exc)
                )

        unmatched.extend(by_user.values())
        for orphan in unmatched:
            try:
                await self.runtime.remove(orphan.id)
                report.orphans_removed.append(orphan.id)
            except ContainerRuntimeError as exc:
                logger.warning("reconcile_orphan_remove_failed", container_id=orphan.id[:12], error=str(exc))

        logger.info(
            "reconcile_complete",
            instances=report.instances,
            resources=report.resources,
            updated=len(report.updated),
            orphans_removed=len(report.orphans_removed),
        )
        return report

    async def reap(self, max_age_seconds: int) -> ReapReport:
        """Remove unknown containers and stop runtimes stuck non-running too long.

        A labeled container is kept while its id is persisted or while it
        carries the deterministic name of a known user, which covers a
        provision still polling health. A runtime persisted as running whose
        container has exited gets the observed status recorded first, so its
        age counts from the sweep that saw it stop.
        """
        report = ReapReport()
        instances = self.store.list_instances()
        known_ids = {i.resource_id for i in instances if i.resource_id}
        known_names = {self.resource_name(i.user_id) for i in instances}
        try:
            resources = await self.runtime.list_by_label(LABEL_ROLE, GATEWAY_ROLE)
        except ContainerRuntimeError as exc:
            logger.warning("reap_list_failed", error=str(exc))
            return report
        by_name: Dict[str, ResourceInfo] = {}
        for resource in resources:
            if resource.id in known_ids or resource.name in known_names:
                by_name[resource.name] = resource
                continue
            try:
                await self.runtime.remove(resource.id)
                report.orphans_removed.append(resource.id)
            except ContainerRuntimeError as exc:
                logger.warning("reap_remove_failed", container_id=resource.id[:12], error=str(exc))

        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        for instance in instances:
            name = instance.resource_name or self.resource_name(instance.user_id)
            resource = by_name.get(name)
            if resource is not None and resource.running:
                continue
            if instance.status == InstanceStatus.RUNNING:
                observed = await self._observe(resource) if resource is not None else InstanceStatus.STOPPED
                if observed != InstanceStatus.RUNNING:
                    self.store.update_instance_status(
                        instance.id, observed, resource.id if resource is not None else None
                    )
                    logger.info(
                        "reap_runtime_exited",
                        instance_id=instance.id,
                        user_id=instance.user_id,
                        status=observed.value,
                    )
                continue
            if instance.status == InstanceStatus.STOPPED and resource is None:
                continue
            if instance.updated_at >= cutoff:
                continue
            try:
                await self._remove_by_name(name)
            except ContainerRuntimeError as exc:
                logger.warning("reap_stale_remove_failed", instance_id=instance.id, error=str(exc))
                continue
            self.store.update_instance_status(instance.id, InstanceStatus.STOPPED, None)
            report.stale_stopped.append(instance.id)

        if report.orphans_removed or report.stale_stopped:
            logger.info(
                "reap_complete",
                orphans_removed=len(report.orphans_removed),
                stale_stopped=len(report.stale_stopped),
            )
        return report

    async def rollout(self) -> RolloutReport:
        """Reprovision every live runtime whose fingerprint is out of date.

        Runs at startup and on the reaper interval; a call made while a
        rollout is in progress returns at once with ``skipped`` set.
        """
        report = RolloutReport()
        if self._rollout_lock.locked():
            report.skipped = True
            return report
        async with self._rollout_lock:
            for instance in self.store.list_instances():
                if instance.status == InstanceStatus.STOPPED:
                    continue
                if not runtime_policy.is_stale(instance.fingerprint, self.options.image):
                    continue
                user = self.store.get_user(instance.user_id)
                if user is None or not user.identity:
                    continue
                logger.info(
                    "rollout_reprovision",
                    user_id=instance.user_id,
                    image_ref=instance.fingerprint.image_ref,
                    config_version=instance.fingerprint.config_version,
                )
                try:
                    await self.provision(instance.user_id, instance.work_dir, user.identity)
                    report.reprovisioned.append(instance.user_id)
                except Exception as exc:
                    report.failed.append(instance.user_id)
                    logger.warning(
                        "rollout_failed", user_id=instance.user_id, error_type=type(exc).__name__, error=str(exc)
                    )
        if report.reprovisioned or report.failed:
            logger.info("rollout_complete", reprovisioned=len(report.reprovisioned), failed=len(report.failed))
        return report


class NoopProvisioner:
    """Records instances as running without creating containers."""

    def __init__(self, store: PersistentStore, container_prefix: str = "agentdeploy-rt-") -> None:
        self.store = store
        self.container_prefix = container_prefix

    def resource_name(self, user_id: str) -> str:
        return f"{self.container_prefix}{user_id}"

    def runtime_fingerprint(self) -> RuntimeFingerprint:
        return runtime_policy.runtime_fingerprint("noop")

    async def provision(
        self,
        user_id: str,
        work_dir: str,
        identity: str,
        options: Optional[ProvisionOptions] = None,
    ) -> ProvisionResult:
        name = self.resource_name(user_id)
        instance = self.store.create_or_replace_instance_for_user(
            user_id,
            work_dir,
            resource_name=name,
            access_token=secrets.token_hex(24),
            fingerprint=self.runtime_fingerprint(),
        )
        running = self.store.update_instance_status(instance.id, InstanceStatus.RUNNING, name)
        return ProvisionResult(instance=running or instance, healthy=True)

    async def deprovision(self, user_id: str) -> bool:
        instance = self.store.get_instance_by_user_id(user_id)
        if instance:
            self.store.update_instance_status(instance.id, InstanceStatus.STOPPED, None)
        return True

    async def inspect_status(self, user_id: str) -> Optional[InstanceStatus]:
        instance = self.store.get_instance_by_user_id(user_id)
        return instance.status if instance else None

    async def restart(self, user_id: str) -> bool:
        instance = self.store.get_instance_by_user_id(user_id)
        return bool(instance and instance.status == InstanceStatus.RUNNING)

    async def reconcile(self) -> ReconcileReport:
        instances = self.store.list_instances()
        for instance in instances:
            self.store.mark_instance_reconciled(instance.id)
        return ReconcileReport(instances=len(instances))

    async def reap(self, max_age_seconds: int) -> ReapReport:
        return ReapReport()

    async def rollout(self) -> RolloutReport:
        return RolloutReport()


def build_provisioner(settings: Settings, store: PersistentStore) -> Provisioner:
    if settings.provisioner == ProvisionerKind.DOCKER:
        return ProvisioningEngine(store, DockerRuntimeAdapter(), ProvisionerOptions.from_settings(settings))
    return NoopProvisioner(store, settings.docker_container_prefix)
