from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from agentdeploy.service.events import SessionSnapshot
from agentdeploy.storage.models import PairingSession, RuntimeInstance, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class PairingSessionCreated(BaseModel):
    session_id: str
    stream_url: str
    expires_at: datetime


class PairingSessionResponse(BaseModel):
    id: str
    state: str
    created_at: datetime
    expires_at: datetime
    user_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message: Optional[str] = None
    qr_code: Optional[str] = None
    qr_expires_at: Optional[datetime] = None

    @classmethod
    def from_session(
        cls, session: PairingSession, snapshot: Optional[SessionSnapshot] = None
    ) -> "PairingSessionResponse":
        # The messaging identity stays server-side; only the user id is exposed.
        response = cls(
            id=session.id,
            state=session.state.value,
            created_at=session.created_at,
            expires_at=session.expires_at,
            user_id=session.user_id,
            error_code=session.error_code.value if session.error_code else None,
            error_message=session.error_message,
        )
        if snapshot is not None and not session.state.is_terminal:
            response.message = snapshot.message
            response.qr_code = snapshot.qr
            response.qr_expires_at = snapshot.qr_expires_at
        return response


class RuntimeFingerprintResponse(BaseModel):
    config_version: str
    plugin_version: str
    policy_version: str
    image_ref: str


class InstanceResponse(BaseModel):
    id: str
    user_id: str
    resource_name: str
    status: str
    resource_id: Optional[str] = None
    fingerprint: RuntimeFingerprintResponse
    stale: bool = False
    reconciled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_instance(cls, instance: RuntimeInstance, *, stale: bool = False) -> "InstanceResponse":
        return cls(
            id=instance.id,
            user_id=instance.user_id,
            resource_name=instance.resource_name,
            status=instance.status.value,
            resource_id=instance.resource_id,
            fingerprint=RuntimeFingerprintResponse(**instance.fingerprint.to_dict()),
            stale=stale,
            reconciled_at=instance.reconciled_at,
            created_at=instance.created_at,
            updated_at=instance.updated_at,
        )


class InstanceListResponse(BaseModel):
    items: List[InstanceResponse]
    total: int


class UserStatusResponse(BaseModel):
    user_id: str
    identity: str
    status: str
    created_at: datetime
    instance: Optional[InstanceResponse] = None
    observed_status: Optional[str] = None

    @classmethod
    def from_user(
        cls,
        user: User,
        instance: Optional[InstanceResponse] = None,
        observed_status: Optional[str] = None,
    ) -> "UserStatusResponse":
        return cls(
            user_id=user.id,
            identity=user.identity,
            status=user.status,
            created_at=user.created_at,
            instance=instance,
            observed_status=observed_status,
        )


class ProvisionActionResponse(BaseModel):
    user_id: str
    action: str
    ok: bool
    status: Optional[str] = None


class ReconcileResponse(BaseModel):
    instances: int
    resources: int
    updated: List[str] = Field(default_factory=list)
    orphans_removed: List[str] = Field(default_factory=list)
