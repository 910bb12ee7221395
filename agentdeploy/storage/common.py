"""Helpers shared by the memory and postgres store implementations.

Both backends expose the same method surface (``PersistentStore``) so the
pairing worker, provisioning engine and reaper never care which one is wired.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from agentdeploy.storage.errors import ConstraintViolation
from agentdeploy.storage.models import (
    InstanceStatus,
    PairingSession,
    ProfileData,
    RuntimeFingerprint,
    RuntimeInstance,
    SessionErrorCode,
    SessionState,
    User,
    is_forward_transition,
)

# Marks "leave unchanged" for optional update arguments where None means clear
UNSET: Any = object()

SESSION_UPDATE_FIELDS = frozenset(
    {"state", "identity", "user_id", "error_code", "error_message"}
)

# Upper bounds on captured sync data kept per user
MAX_CONTACTS = 500
MAX_CHATS = 200
MAX_MESSAGES = 1000


class PersistentStore(Protocol):
    def create_pairing_session(self, session: PairingSession) -> PairingSession: ...

    def get_pairing_session(self, session_id: str) -> Optional[PairingSession]: ...

    def update_pairing_session(
        self, session_id: str, **fields: Any
    ) -> Optional[PairingSession]: ...

    def list_pairing_sessions(
        self, state: Optional[SessionState] = None, limit: int = 100
    ) -> List[PairingSession]: ...

    def delete_expired_pairing_sessions(self, before: datetime) -> List[str]: ...

    def get_or_create_user_by_identity(self, identity: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def create_or_replace_instance_for_user(
        self,
        user_id: str,
        work_dir: str,
        *,
        resource_name: str,
        access_token: Optional[str] = None,
        fingerprint: Optional[RuntimeFingerprint] = None,
    ) -> RuntimeInstance: ...

    def get_instance_by_user_id(self, user_id: str) -> Optional[RuntimeInstance]: ...

    def update_instance_status(
        self, instance_id: str, status: InstanceStatus, resource_id: Any = UNSET
    ) -> Optional[RuntimeInstance]: ...

    def mark_instance_reconciled(self, instance_id: str) -> Optional[RuntimeInstance]: ...

    def list_instances(self) -> List[RuntimeInstance]: ...

    def upsert_profile_data(self, data: ProfileData) -> ProfileData: ...

    def get_profile_data(self, user_id: str) -> Optional[ProfileData]: ...


def new_user_id() -> str:
    return f"user_{uuid.uuid4()}"


def new_instance_id() -> str:
    return f"gw_{uuid.uuid4()}"


def normalize_session_updates(
    current: PairingSession, fields: Dict[str, Any]
) -> Dict[str, Any]:
    """Validate a partial session update and coerce enum values.

    Raises ``ConstraintViolation`` for unknown fields or a state change that
    would move a session backwards or out of a terminal state.
    """
    unknown = set(fields) - SESSION_UPDATE_FIELDS
    if unknown:
        raise ConstraintViolation(
            "unknown pairing session fields", {"fields": sorted(unknown)}
        )
    updates = dict(fields)
    if "state" in updates and updates["state"] is not None:
        target = SessionState(updates["state"])
        if target != current.state and not is_forward_transition(current.state, target):
            raise ConstraintViolation(
                "invalid pairing session transition",
                {"from": current.state.value, "to": target.value, "session_id": current.id},
            )
        updates["state"] = target
    if updates.get("error_code") is not None:
        updates["error_code"] = SessionErrorCode(updates["error_code"])
    return updates


def cap_profile_lists(data: ProfileData) -> ProfileData:
    data.contacts = list(data.contacts or [])[:MAX_CONTACTS]
    data.chats = list(data.chats or [])[:MAX_CHATS]
    data.messages = list(data.messages or [])[:MAX_MESSAGES]
    return data


def merge_profile_data(existing: Optional[ProfileData], incoming: ProfileData) -> ProfileData:
    """Non-empty incoming lists replace stored ones; empty lists keep what is stored."""
    incoming = cap_profile_lists(incoming)
    if existing is None:
        return incoming
    return ProfileData(
        user_id=incoming.user_id,
        display_name=incoming.display_name or existing.display_name,
        contacts=incoming.contacts or existing.contacts,
        chats=incoming.chats or existing.chats,
        messages=incoming.messages or existing.messages,
        raw_updated_at=incoming.raw_updated_at,
    )


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read ``key`` from a dict row, tolerating columns missing on older schemas."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
