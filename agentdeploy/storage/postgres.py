from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from agentdeploy.logging import get_logger
from agentdeploy.storage.common import (
    UNSET,
    cap_profile_lists,
    new_instance_id,
    new_user_id,
    normalize_session_updates,
    safe_row_value,
)
from agentdeploy.storage.errors import ConstraintViolation, StoreError
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

REQUIRED_TABLES = ("app_user", "pairing_session", "runtime_instance", "user_profile_data")


class PostgresStore:
    """Postgres-backed store for pairing sessions, users and runtime instances."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate driver failures into storage-layer errors."""
        try:
            yield
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(f"{operation} failed", operation=operation) from exc

    def _verify_required_schema(self) -> None:
        with self._guard("verify_schema"), self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- pairing sessions -------------------------------------------------

    def _row_to_session(self, row: dict) -> PairingSession:
        error_code = row.get("error_code")
        return PairingSession(
            id=row["id"],
            state=SessionState(row["state"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            work_dir=row["work_dir"],
            identity=row.get("identity"),
            user_id=row.get("user_id"),
            error_code=SessionErrorCode(error_code) if error_code else None,
            error_message=row.get("error_message"),
        )

    def create_pairing_session(self, session: PairingSession) -> PairingSession:
        with self._guard("create_pairing_session"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pairing_session (id, state, work_dir, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.state.value,
                    session.work_dir,
                    session.expires_at,
                    session.created_at,
                ),
            )
        return session

    def get_pairing_session(self, session_id: str) -> Optional[PairingSession]:
        with self._guard("get_pairing_session"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pairing_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def update_pairing_session(self, session_id: str, **fields: Any) -> Optional[PairingSession]:
        with self._guard("update_pairing_session"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pairing_session WHERE id = %s FOR UPDATE", (session_id,)
            ).fetchone()
            if not row:
                return None
            updates = normalize_session_updates(self._row_to_session(row), fields)
            if not updates:
                return self._row_to_session(row)
            assignments = ", ".join(f"{name} = %s" for name in updates)
            values = [
                value.value if isinstance(value, (SessionState, SessionErrorCode)) else value
                for value in updates.values()
            ]
            updated = conn.execute(
                f"UPDATE pairing_session SET {assignments} WHERE id = %s RETURNING *",
                (*values, session_id),
            ).fetchone()
        return self._row_to_session(updated)

    def list_pairing_sessions(
        self, state: Optional[SessionState] = None, limit: int = 100
    ) -> List[PairingSession]:
        with self._guard("list_pairing_sessions"), self._connect() as conn:
            if state is None:
                rows = conn.execute(
                    "SELECT * FROM pairing_session ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM pairing_session WHERE state = %s ORDER BY created_at DESC LIMIT %s",
                    (SessionState(state).value, limit),
                ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_expired_pairing_sessions(self, before: datetime) -> List[str]:
        with self._guard("delete_expired_pairing_sessions"), self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM pairing_session WHERE expires_at < %s RETURNING id", (before,)
            ).fetchall()
        return [row["id"] for row in rows]

    # -- users ------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=row["id"],
            identity=row["identity"],
            status=row.get("status", "active"),
            created_at=row.get("created_at") or utcnow(),
        )

    def get_or_create_user_by_identity(self, identity: str) -> User:
        with self._guard("get_or_create_user"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_user (id, identity, status)
                VALUES (%s, %s, 'active')
                ON CONFLICT (identity) DO NOTHING
                """,
                (new_user_id(), identity),
            )
            row = conn.execute(
                "SELECT * FROM app_user WHERE identity = %s", (identity,)
            ).fetchone()
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._guard("get_user"), self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._guard("list_users"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # -- runtime instances ------------------------------------------------

    @staticmethod
    def _row_to_instance(row: dict) -> RuntimeInstance:
        return RuntimeInstance(
            id=row["id"],
            user_id=row["user_id"],
            resource_name=row["resource_name"],
            work_dir=row["work_dir"],
            status=InstanceStatus(row["status"]),
            resource_id=row.get("resource_id"),
            access_token=row.get("access_token"),
            fingerprint=RuntimeFingerprint(
                config_version=safe_row_value(row, "config_version", ""),
                plugin_version=safe_row_value(row, "plugin_version", ""),
                policy_version=safe_row_value(row, "policy_version", ""),
                image_ref=safe_row_value(row, "image_ref", ""),
            ),
            reconciled_at=row.get("reconciled_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or row.get("created_at") or utcnow(),
        )

    def create_or_replace_instance_for_user(
        self,
        user_id: str,
        work_dir: str,
        *,
        resource_name: str,
        access_token: Optional[str] = None,
        fingerprint: Optional[RuntimeFingerprint] = None,
    ) -> RuntimeInstance:
        fp = fingerprint or RuntimeFingerprint()
        with self._guard("create_or_replace_instance"), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO runtime_instance (
                    id, user_id, resource_id, resource_name, status, work_dir, access_token,
                    config_version, plugin_version, policy_version, image_ref
                )
                VALUES (%s, %s, NULL, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    resource_id = NULL,
                    resource_name = EXCLUDED.resource_name,
                    status = EXCLUDED.status,
                    work_dir = EXCLUDED.work_dir,
                    access_token = EXCLUDED.access_token,
                    config_version = EXCLUDED.config_version,
                    plugin_version = EXCLUDED.plugin_version,
                    policy_version = EXCLUDED.policy_version,
                    image_ref = EXCLUDED.image_ref,
                    updated_at = now()
                RETURNING *
                """,
                (
                    new_instance_id(),
                    user_id,
                    resource_name,
                    InstanceStatus.PROVISIONING.value,
                    work_dir,
                    access_token,
                    fp.config_version,
                    fp.plugin_version,
                    fp.policy_version,
                    fp.image_ref,
                ),
            ).fetchone()
        return self._row_to_instance(row)

    def get_instance_by_user_id(self, user_id: str) -> Optional[RuntimeInstance]:
        with self._guard("get_instance_by_user_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM runtime_instance WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_instance(row) if row else None

    def update_instance_status(
        self, instance_id: str, status: InstanceStatus, resource_id: Any = UNSET
    ) -> Optional[RuntimeInstance]:
        status = InstanceStatus(status)
        if status == InstanceStatus.STOPPED:
            resource_id = None
        with self._guard("update_instance_status"), self._connect() as conn:
            if resource_id is UNSET:
                row = conn.execute(
                    """
                    UPDATE runtime_instance
                    SET updated_at = CASE WHEN status <> %s THEN now() ELSE updated_at END,
                        status = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (status.value, status.value, instance_id),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE runtime_instance
                    SET updated_at = CASE WHEN status <> %s THEN now() ELSE updated_at END,
                        status = %s,
                        resource_id = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (status.value, status.value, resource_id, instance_id),
                ).fetchone()
        return self._row_to_instance(row) if row else None

    def mark_instance_reconciled(self, instance_id: str) -> Optional[RuntimeInstance]:
        with self._guard("mark_instance_reconciled"), self._connect() as conn:
            row = conn.execute(
                "UPDATE runtime_instance SET reconciled_at = now() WHERE id = %s RETURNING *",
                (instance_id,),
            ).fetchone()
        return self._row_to_instance(row) if row else None

    def list_instances(self) -> List[RuntimeInstance]:
        with self._guard("list_instances"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM runtime_instance ORDER BY created_at"
            ).fetchall()
        return [self._row_to_instance(row) for row in rows]

    # -- captured profile data --------------------------------------------

    @staticmethod
    def _row_to_profile(row: dict) -> ProfileData:
        return ProfileData(
            user_id=row["user_id"],
            display_name=row.get("display_name"),
            contacts=safe_row_value(row, "contacts_json", []),
            chats=safe_row_value(row, "chats_json", []),
            messages=safe_row_value(row, "messages_json", []),
            raw_updated_at=row.get("raw_updated_at") or utcnow(),
        )

    def upsert_profile_data(self, data: ProfileData) -> ProfileData:
        data = cap_profile_lists(data)

        def _json_or_null(items: list) -> Optional[str]:
            return json.dumps(items, default=str) if items else None

        with self._guard("upsert_profile_data"), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_profile_data (
                    user_id, display_name, contacts_json, chats_json, messages_json, raw_updated_at
                )
                VALUES (%s, %s, %s::jsonb, %s::jsonb, %s::jsonb, now())
                ON CONFLICT (user_id) DO UPDATE SET
                    display_name = COALESCE(EXCLUDED.display_name, user_profile_data.display_name),
                    contacts_json = COALESCE(EXCLUDED.contacts_json, user_profile_data.contacts_json),
                    chats_json = COALESCE(EXCLUDED.chats_json, user_profile_data.chats_json),
                    messages_json = COALESCE(EXCLUDED.messages_json, user_profile_data.messages_json),
                    raw_updated_at = now()
                RETURNING *
                """,
                (
                    data.user_id,
                    data.display_name,
                    _json_or_null(data.contacts),
                    _json_or_null(data.chats),
                    _json_or_null(data.messages),
                ),
            ).fetchone()
        return self._row_to_profile(row)

    def get_profile_data(self, user_id: str) -> Optional[ProfileData]:
        with self._guard("get_profile_data"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_profile_data WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_profile(row) if row else None
