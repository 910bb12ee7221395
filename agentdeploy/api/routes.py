from __future__ import annotations

import asyncio
import json
import secrets
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import StreamingResponse

from agentdeploy.api.schemas import (
    Envelope,
    InstanceListResponse,
    InstanceResponse,
    PairingSessionCreated,
    PairingSessionResponse,
    ProvisionActionResponse,
    ReconcileResponse,
    UserStatusResponse,
)
from agentdeploy.logging import get_logger
from agentdeploy.service.errors import AuthenticationError, ForbiddenError, NotFoundError, RateLimitedError
from agentdeploy.service.events import ErrorEvent, SessionEvent, SessionSnapshot, StatusEvent
from agentdeploy.service.pairing import (
    MSG_EXPIRED_EVENT,
    MSG_EXPIRED_PERSISTED,
    MSG_LINKED,
    MSG_LOGIN_FAILED_EVENT,
    MSG_WAITING,
)
from agentdeploy.service.runtime import check_rate_limit, get_runtime
from agentdeploy.service.runtime_policy import is_stale
from agentdeploy.service.session_flow import MSG_DEPLOYING, MSG_PROVISION_FAILED, MSG_READY
from agentdeploy.storage.models import (
    PairingSession,
    RuntimeInstance,
    SessionErrorCode,
    SessionState,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SSE_KEEPALIVE_SECONDS = 15.0

_PERSISTED_STATE_MESSAGES = {
    SessionState.WAITING: MSG_WAITING,
    SessionState.LINKED: MSG_LINKED,
    SessionState.DEPLOYING: MSG_DEPLOYING,
    SessionState.READY: MSG_READY,
    SessionState.EXPIRED: MSG_EXPIRED_PERSISTED,
}

_ERROR_EVENT_MESSAGES = {
    SessionErrorCode.SESSION_EXPIRED: MSG_EXPIRED_EVENT,
    SessionErrorCode.LOGIN_FAILED: MSG_LOGIN_FAILED_EVENT,
    SessionErrorCode.PROVISION_FAILED: MSG_PROVISION_FAILED,
}


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise 429 when ``key`` has exhausted its bucket; otherwise stamp headers on ``response``."""
    allowed, remaining, reset_seconds = await check_rate_limit(runtime, key, limit, window_seconds)
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        headers = info.headers()
        headers["Retry-After"] = str(max(1, reset_seconds))
        raise RateLimitedError("rate limit exceeded", headers=headers)

    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_admin_principal(authorization: Optional[str] = Header(None)) -> str:
    """Accept ``Authorization: Bearer <ADMIN_TOKEN>``; returns the principal label."""
    runtime = get_runtime()
    expected = runtime.settings.admin_token
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("missing bearer token")
    token = authorization[len("bearer "):].strip()
    if not expected or not secrets.compare_digest(token.encode(), expected.encode()):
        raise ForbiddenError("admin access required")
    return "admin"


def _get_session_or_404(runtime, session_id: str) -> PairingSession:
    session = runtime.store.get_pairing_session(session_id)
    if not session:
        raise NotFoundError("pairing session not found", detail={"session_id": session_id})
    return session


def _instance_response(runtime, instance: RuntimeInstance) -> InstanceResponse:
    current = runtime.provisioner.runtime_fingerprint()
    return InstanceResponse.from_instance(
        instance, stale=is_stale(instance.fingerprint, current.image_ref)
    )


@router.post("/pairing-sessions", response_model=Envelope, tags=["pairing"])
async def create_pairing_session(request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"pairing:create:{_client_ip(request)}",
        runtime.settings.pairing_rate_limit_per_minute,
        runtime.settings.pairing_rate_limit_window_seconds,
        response=response,
    )
    session = runtime.create_pairing_session()
    base_url = runtime.settings.base_url.rstrip("/")
    return Envelope(
        status="ok",
        data=PairingSessionCreated(
            session_id=session.id,
            stream_url=f"{base_url}/v1/pairing-sessions/{session.id}/stream",
            expires_at=session.expires_at,
        ),
    )


@router.get("/pairing-sessions/{session_id}", response_model=Envelope, tags=["pairing"])
async def get_pairing_session(session_id: str):
    runtime = get_runtime()
    session = _get_session_or_404(runtime, session_id)
    return Envelope(
        status="ok",
        data=PairingSessionResponse.from_session(session, runtime.events.snapshot(session_id)),
    )


def _format_sse(event: SessionEvent) -> str:
    return f"event: {event.kind}\ndata: {json.dumps(event.to_payload())}\n\n"


def _replay_from_record(session: PairingSession) -> List[SessionEvent]:
    """Rebuild observer events from the stored record when no snapshot exists."""
    message = _PERSISTED_STATE_MESSAGES.get(session.state, session.error_message or "")
    events: List[SessionEvent] = [StatusEvent(state=session.state, message=message)]
    if session.error_code:
        events.append(
            ErrorEvent(
                code=session.error_code,
                message=_ERROR_EVENT_MESSAGES.get(session.error_code, session.error_message or ""),
            )
        )
    return events


def _ends_stream(event: SessionEvent) -> bool:
    if isinstance(event, ErrorEvent):
        return True
    return isinstance(event, StatusEvent) and SessionState(event.state).is_terminal


async def _session_stream(
    request: Request,
    session: PairingSession,
    snapshot: Optional[SessionSnapshot],
    queue: asyncio.Queue,
    unsubscribe,
) -> AsyncIterator[str]:
    log = logger.bind(session_id=session.id)
    try:
        if snapshot is None or (session.state.is_terminal and not snapshot.state.is_terminal):
            replay = _replay_from_record(session)
        else:
            replay = snapshot.replay_events()
        for event in replay:
            yield _format_sse(event)
        done = any(_ends_stream(event) for event in replay)
        while not done:
            try:
                event, _ = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    log.info("session_stream_client_gone")
                    return
                yield ":keep-alive\n\n"
                continue
            yield _format_sse(event)
            done = _ends_stream(event)
    finally:
        unsubscribe()
        log.debug("session_stream_closed")


@router.get("/pairing-sessions/{session_id}/stream", tags=["pairing"])
async def stream_pairing_session(session_id: str, request: Request):
    runtime = get_runtime()
    session = _get_session_or_404(runtime, session_id)
    # Subscribe before reading the snapshot so nothing emitted in between is lost.
    queue, unsubscribe = runtime.events.subscribe_queue(session_id)
    snapshot = runtime.events.snapshot(session_id)
    return StreamingResponse(
        _session_stream(request, session, snapshot, queue, unsubscribe),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/admin/instances", response_model=Envelope, tags=["admin"])
async def admin_list_instances(
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Maximum instances to return"),
    principal: str = Depends(get_admin_principal),
):
    runtime = get_runtime()
    instances = runtime.store.list_instances()
    items = [_instance_response(runtime, instance) for instance in instances[: limit or len(instances)]]
    return Envelope(status="ok", data=InstanceListResponse(items=items, total=len(instances)))


@router.get("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_user_status(user_id: str, principal: str = Depends(get_admin_principal)):
    runtime = get_runtime()
    user = runtime.store.get_user(user_id)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    observed = await runtime.provisioner.inspect_status(user_id)
    instance = runtime.store.get_instance_by_user_id(user_id)
    return Envelope(
        status="ok",
        data=UserStatusResponse.from_user(
            user,
            instance=_instance_response(runtime, instance) if instance else None,
            observed_status=observed.value if observed else None,
        ),
    )


def _require_user(runtime, user_id: str) -> None:
    if not runtime.store.get_user(user_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})


def _instance_status(runtime, user_id: str) -> Optional[str]:
    instance = runtime.store.get_instance_by_user_id(user_id)
    return instance.status.value if instance else None


@router.post("/admin/users/{user_id}/deprovision", response_model=Envelope, tags=["admin"])
async def admin_deprovision(user_id: str, principal: str = Depends(get_admin_principal)):
    runtime = get_runtime()
    _require_user(runtime, user_id)
    ok = await runtime.provisioner.deprovision(user_id)
    logger.info("admin_deprovision", user_id=user_id, ok=ok)
    return Envelope(
        status="ok",
        data=ProvisionActionResponse(
            user_id=user_id, action="deprovision", ok=ok, status=_instance_status(runtime, user_id)
        ),
    )


@router.post("/admin/users/{user_id}/reprovision", response_model=Envelope, tags=["admin"])
async def admin_reprovision(user_id: str, principal: str = Depends(get_admin_principal)):
    runtime = get_runtime()
    result = await runtime.flows.reprovision(user_id)
    return Envelope(
        status="ok",
        data=ProvisionActionResponse(
            user_id=user_id,
            action="reprovision",
            ok=result.healthy,
            status=result.instance.status.value,
        ),
    )


@router.post("/admin/users/{user_id}/restart", response_model=Envelope, tags=["admin"])
async def admin_restart(user_id: str, principal: str = Depends(get_admin_principal)):
    runtime = get_runtime()
    _require_user(runtime, user_id)
    ok = await runtime.provisioner.restart(user_id)
    logger.info("admin_restart", user_id=user_id, ok=ok)
    return Envelope(
        status="ok",
        data=ProvisionActionResponse(
            user_id=user_id, action="restart", ok=ok, status=_instance_status(runtime, user_id)
        ),
    )


@router.post("/admin/reconcile", response_model=Envelope, tags=["admin"])
async def admin_reconcile(principal: str = Depends(get_admin_principal)):
    runtime = get_runtime()
    report = await runtime.provisioner.reconcile()
    return Envelope(
        status="ok",
        data=ReconcileResponse(
            instances=report.instances,
            resources=report.resources,
            updated=report.updated,
            orphans_removed=report.orphans_removed,
        ),
    )
