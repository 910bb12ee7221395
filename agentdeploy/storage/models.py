from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    WAITING = "waiting"
    LINKED = "linked"
    DEPLOYING = "deploying"
    READY = "ready"
    EXPIRED = "expired"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SESSION_STATES


TERMINAL_SESSION_STATES = frozenset(
    {SessionState.READY, SessionState.EXPIRED, SessionState.ERROR}
)

# Forward order of the success path; terminal failures sit outside it.
_SESSION_PROGRESS = {
    SessionState.WAITING: 0,
    SessionState.LINKED: 1,
    SessionState.DEPLOYING: 2,
    SessionState.READY: 3,
}


def is_forward_transition(current: SessionState, target: SessionState) -> bool:
    """Return True when moving ``current`` to ``target`` keeps state monotonic."""
    if current.is_terminal:
        return False
    if target in (SessionState.EXPIRED, SessionState.ERROR):
        return True
    return _SESSION_PROGRESS[target] >= _SESSION_PROGRESS[current]


class SessionErrorCode(str, Enum):
    SESSION_EXPIRED = "SESSION_EXPIRED"
    LOGIN_FAILED = "LOGIN_FAILED"
    PROVISION_FAILED = "PROVISION_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN = "UNKNOWN"


class InstanceStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class PairingSession:
    id: str
    state: SessionState
    created_at: datetime
    expires_at: datetime
    work_dir: str
    identity: Optional[str] = None
    user_id: Optional[str] = None
    error_code: Optional[SessionErrorCode] = None
    error_message: Optional[str] = None

    @classmethod
    def new(cls, work_root: str, ttl_seconds: int) -> "PairingSession":
        session_id = f"ps_{uuid.uuid4()}"
        now = utcnow()
        return cls(
            id=session_id,
            state=SessionState.WAITING,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            work_dir=f"{work_root.rstrip('/')}/{session_id}",
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class User:
    id: str
    identity: str
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RuntimeFingerprint:
    """Versions baked into a runtime when it was provisioned."""

    config_version: str = ""
    plugin_version: str = ""
    policy_version: str = ""
    image_ref: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "config_version": self.config_version,
            "plugin_version": self.plugin_version,
            "policy_version": self.policy_version,
            "image_ref": self.image_ref,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RuntimeFingerprint":
        data = data or {}
        return cls(
            config_version=data.get("config_version", ""),
            plugin_version=data.get("plugin_version", ""),
            policy_version=data.get("policy_version", ""),
            image_ref=data.get("image_ref", ""),
        )


@dataclass
class RuntimeInstance:
    id: str
    user_id: str
    resource_name: str
    work_dir: str
    status: InstanceStatus = InstanceStatus.PROVISIONING
    resource_id: Optional[str] = None
    access_token: Optional[str] = None
    fingerprint: RuntimeFingerprint = field(default_factory=RuntimeFingerprint)
    reconciled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProfileData:
    """Raw sync data captured while a messaging account was being linked."""

    user_id: str
    display_name: Optional[str] = None
    contacts: List[Dict] = field(default_factory=list)
    chats: List[Dict] = field(default_factory=list)
    messages: List[Dict] = field(default_factory=list)
    raw_updated_at: datetime = field(default_factory=utcnow)
