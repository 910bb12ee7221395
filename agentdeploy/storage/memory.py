from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentdeploy.logging import get_logger
from agentdeploy.storage.common import (
    UNSET,
    merge_profile_data,
    new_instance_id,
    new_user_id,
    normalize_session_updates,
)
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
    utcnow,
)


class MemoryStore:
    """In-process store that snapshots itself to a JSON file after every write."""

    def __init__(self, fs_root: str = "/tmp/agentdeploy", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.pairing_sessions: Dict[str, PairingSession] = {}
        self.users: Dict[str, User] = {}
        self.instances: Dict[str, RuntimeInstance] = {}
        self.profile_data: Dict[str, ProfileData] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "deploy_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # -- pairing sessions -------------------------------------------------

    def create_pairing_session(self, session: PairingSession) -> PairingSession:
        with self._data_lock:
            if session.id in self.pairing_sessions:
                raise ConstraintViolation(
                    "pairing session already exists", {"session_id": session.id}
                )
            self.pairing_sessions[session.id] = session
            self._persist_state()
            return session

    def get_pairing_session(self, session_id: str) -> Optional[PairingSession]:
        with self._data_lock:
            return self.pairing_sessions.get(session_id)

    def update_pairing_session(self, session_id: str, **fields: Any) -> Optional[PairingSession]:
        with self._data_lock:
            session = self.pairing_sessions.get(session_id)
            if not session:
                return None
            for name, value in normalize_session_updates(session, fields).items():
                setattr(session, name, value)
            self._persist_state()
            return session

    def list_pairing_sessions(
        self, state: Optional[SessionState] = None, limit: int = 100
    ) -> List[PairingSession]:
        with self._data_lock:
            results = [
                s for s in self.pairing_sessions.values() if state is None or s.state == state
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)[:limit]

    def delete_expired_pairing_sessions(self, before: datetime) -> List[str]:
        with self._data_lock:
            doomed = [s.id for s in self.pairing_sessions.values() if s.expires_at < before]
            for session_id in doomed:
                del self.pairing_sessions[session_id]
            if doomed:
                self._persist_state()
            return doomed

    # -- users ------------------------------------------------------------

    def get_or_create_user_by_identity(self, identity: str) -> User:
        with self._data_lock:
            existing = next((u for u in self.users.values() if u.identity == identity), None)
            if existing:
                return existing
            user = User(id=new_user_id(), identity=identity)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    # -- runtime instances ------------------------------------------------

    def create_or_replace_instance_for_user(
        self,
        user_id: str,
        work_dir: str,
        *,
        resource_name: str,
        access_token: Optional[str] = None,
        fingerprint: Optional[RuntimeFingerprint] = None,
    ) -> RuntimeInstance:
        with self._data_lock:
            now = utcnow()
            existing = self._instance_for_user(user_id)
            if existing:
                updated = replace(
                    existing,
                    work_dir=work_dir,
                    resource_name=resource_name,
                    status=InstanceStatus.PROVISIONING,
                    resource_id=None,
                    access_token=access_token,
                    fingerprint=fingerprint or existing.fingerprint,
                    updated_at=now,
                )
            else:
                updated = RuntimeInstance(
                    id=new_instance_id(),
                    user_id=user_id,
                    resource_name=resource_name,
                    work_dir=work_dir,
                    access_token=access_token,
                    fingerprint=fingerprint or RuntimeFingerprint(),
                    created_at=now,
                    updated_at=now,
                )
            self.instances[updated.id] = updated
            self._persist_state()
            return updated

    def _instance_for_user(self, user_id: str) -> Optional[RuntimeInstance]:
        return next((i for i in self.instances.values() if i.user_id == user_id), None)

    def get_instance_by_user_id(self, user_id: str) -> Optional[RuntimeInstance]:
        with self._data_lock:
            return self._instance_for_user(user_id)

    def update_instance_status(
        self, instance_id: str, status: InstanceStatus, resource_id: Any = UNSET
    ) -> Optional[RuntimeInstance]:
        with self._data_lock:
            instance = self.instances.get(instance_id)
            if not instance:
                return None
            status = InstanceStatus(status)
            if instance.status != status:
                instance.updated_at = utcnow()
            instance.status = status
            if resource_id is not UNSET:
                instance.resource_id = resource_id
            if status == InstanceStatus.STOPPED:
                instance.resource_id = None
            self._persist_state()
            return instance

    def mark_instance_reconciled(self, instance_id: str) -> Optional[RuntimeInstance]:
        with self._data_lock:
            instance = self.instances.get(instance_id)
            if not instance:
                return None
            instance.reconciled_at = utcnow()
            self._persist_state()
            return instance

    def list_instances(self) -> List[RuntimeInstance]:
        with self._data_lock:
            return sorted(self.instances.values(), key=lambda i: i.created_at)

    # -- captured profile data --------------------------------------------

    def upsert_profile_data(self, data: ProfileData) -> ProfileData:
        with self._data_lock:
            merged = merge_profile_data(self.profile_data.get(data.user_id), data)
            self.profile_data[data.user_id] = merged
            self._persist_state()
            return merged

    def get_profile_data(self, user_id: str) -> Optional[ProfileData]:
        with self._data_lock:
            return self.profile_data.get(user_id)

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "pairing_sessions": [
                self._serialize_session(s) for s in self.pairing_sessions.values()
            ],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "instances": [self._serialize_instance(i) for i in self.instances.values()],
            "profile_data": [
                self._serialize_profile(p) for p in self.profile_data.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2, default=str))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.pairing_sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("pairing_sessions", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.instances = {
            i["id"]: self._deserialize_instance(i) for i in data.get("instances", [])
        }
        self.profile_data = {
            p["user_id"]: self._deserialize_profile(p) for p in data.get("profile_data", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            sessions=len(self.pairing_sessions),
            users=len(self.users),
            instances=len(self.instances),
        )
        return True

    def _serialize_session(self, session: PairingSession) -> dict:
        return {
            "id": session.id,
            "state": session.state.value,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "work_dir": session.work_dir,
            "identity": session.identity,
            "user_id": session.user_id,
            "error_code": session.error_code.value if session.error_code else None,
            "error_message": session.error_message,
        }

    def _deserialize_session(self, data: dict) -> PairingSession:
        return PairingSession(
            id=data["id"],
            state=SessionState(data["state"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            work_dir=data["work_dir"],
            identity=data.get("identity"),
            user_id=data.get("user_id"),
            error_code=SessionErrorCode(data["error_code"]) if data.get("error_code") else None,
            error_message=data.get("error_message"),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "identity": user.identity,
            "status": user.status,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            identity=data["identity"],
            status=data.get("status", "active"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_instance(self, instance: RuntimeInstance) -> dict:
        return {
            "id": instance.id,
            "user_id": instance.user_id,
            "resource_name": instance.resource_name,
            "work_dir": instance.work_dir,
            "status": instance.status.value,
            "resource_id": instance.resource_id,
            "access_token": instance.access_token,
            "fingerprint": instance.fingerprint.to_dict(),
            "reconciled_at": self._serialize_datetime(instance.reconciled_at),
            "created_at": self._serialize_datetime(instance.created_at),
            "updated_at": self._serialize_datetime(instance.updated_at),
        }

    def _deserialize_instance(self, data: dict) -> RuntimeInstance:
        return RuntimeInstance(
            id=data["id"],
            user_id=data["user_id"],
            resource_name=data["resource_name"],
            work_dir=data["work_dir"],
            status=InstanceStatus(data.get("status", InstanceStatus.STOPPED.value)),
            resource_id=data.get("resource_id"),
            access_token=data.get("access_token"),
            fingerprint=RuntimeFingerprint.from_dict(data.get("fingerprint")),
            reconciled_at=self._deserialize_datetime(data.get("reconciled_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_profile(self, profile: ProfileData) -> dict:
        return {
            "user_id": profile.user_id,
            "display_name": profile.display_name,
            "contacts": profile.contacts,
            "chats": profile.chats,
            "messages": profile.messages,
            "raw_updated_at": self._serialize_datetime(profile.raw_updated_at),
        }

    def _deserialize_profile(self, data: dict) -> ProfileData:
        return ProfileData(
            user_id=data["user_id"],
            display_name=data.get("display_name"),
            contacts=data.get("contacts") or [],
            chats=data.get("chats") or [],
            messages=data.get("messages") or [],
            raw_updated_at=self._deserialize_datetime(data["raw_updated_at"]),
        )
