from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentdeploy.api.error_handling import register_exception_handlers
from agentdeploy.api.routes import router
from agentdeploy.config import get_settings
from agentdeploy.logging import get_logger, set_correlation_id
from agentdeploy.service.container_runtime import ContainerRuntimeError
from agentdeploy.service.provisioner import ProvisioningEngine
from agentdeploy.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Reconcile persisted instances, roll out stale runtimes and start the reaper."""
    runtime = get_runtime()
    if runtime.settings.reconcile_on_startup:
        try:
            report = await runtime.provisioner.reconcile()
            logger.info(
                "startup_reconcile_complete",
                instances=report.instances,
                updated=len(report.updated),
                orphans_removed=len(report.orphans_removed),
            )
        except Exception as exc:
            logger.error("startup_reconcile_failed", error_type=type(exc).__name__, error=str(exc))
    try:
        rollout = await runtime.provisioner.rollout()
        logger.info("startup_rollout_complete", reprovisioned=len(rollout.reprovisioned), failed=len(rollout.failed))
    except Exception as exc:
        logger.error("startup_rollout_failed", error_type=type(exc).__name__, error=str(exc))
    try:
        await runtime.reaper.start()
    except Exception as exc:
        logger.error("startup_reaper_failed", error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="agentdeploy", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [_settings.base_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh id) into log context and the response."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, cache, filesystem and container runtime health with build info."""
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    overall_healthy = overall_healthy and db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    auth_root = Path(runtime.settings.auth_root)

    def _fs_probe() -> None:
        auth_root.mkdir(parents=True, exist_ok=True)
        health_file = auth_root / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    overall_healthy = overall_healthy and fs_ok

    if isinstance(runtime.provisioner, ProvisioningEngine):
        try:
            await asyncio.wait_for(
                runtime.provisioner.runtime.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            runtime_ok = True
        except (asyncio.TimeoutError, ContainerRuntimeError) as exc:
            logger.error("health_check_container_runtime_failed", error=str(exc) or type(exc).__name__)
            runtime_ok = False
        checks["container_runtime"] = {"status": "healthy" if runtime_ok else "unhealthy"}
        overall_healthy = overall_healthy and runtime_ok
    else:
        checks["container_runtime"] = {"status": "not_configured"}

    checks["pairing"] = {"link_adapter": runtime.link_adapter is not None}
    checks["sessions"] = {"active_flows": runtime.flows.active_count}
    checks["reaper"] = {"running": runtime.reaper.running}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


register_exception_handlers(app)
app.include_router(router)
