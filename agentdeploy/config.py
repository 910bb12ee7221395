from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProvisionerKind(str, Enum):
    """Backends able to host per-user runtimes."""

    NOOP = "noop"
    DOCKER = "docker"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _default_auth_root() -> str:
    return str(Path.home() / ".agentdeploy" / "auth")


class Settings(BaseModel):
    """Process settings for the deployment server.

    Every field maps to one environment variable; ``.env`` in the working
    directory is consulted when the variable is not exported.
    """

    port: int = env_field(8080, "PORT")
    base_url: str = env_field("http://localhost:8080", "BASE_URL")
    internal_url: str = env_field("http://host.docker.internal:8080", "INTERNAL_URL")

    database_url: str = env_field(
        "postgresql://localhost:5432/agentdeploy", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(True, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    auth_root: str = Field(
        default_factory=_default_auth_root, json_schema_extra={"env": "AUTH_ROOT"}
    )
    session_ttl_seconds: int = env_field(600, "SESSION_TTL_SECONDS", ge=1)
    session_retention_seconds: int = env_field(
        24 * 60 * 60, "SESSION_RETENTION_SECONDS", ge=0
    )
    link_adapter: str | None = env_field(None, "LINK_ADAPTER")

    provisioner: ProvisionerKind = env_field(ProvisionerKind.NOOP, "PROVISIONER")
    docker_image: str = env_field("agent-runtime:local", "DOCKER_IMAGE")
    docker_network: str | None = env_field(None, "DOCKER_NETWORK")
    docker_auth_volume: str | None = env_field(None, "DOCKER_AUTH_VOLUME")
    docker_container_prefix: str = env_field("agentdeploy-rt-", "DOCKER_CONTAINER_PREFIX")
    docker_gateway_uid: int = env_field(1000, "DOCKER_GATEWAY_UID")
    docker_gateway_gid: int = env_field(1000, "DOCKER_GATEWAY_GID")

    reaper_interval_seconds: int = env_field(600, "REAPER_INTERVAL_SECONDS", ge=1)
    reaper_max_age_seconds: int = env_field(6 * 60 * 60, "REAPER_MAX_AGE_SECONDS", ge=1)
    reconcile_on_startup: bool = env_field(True, "RECONCILE_ON_STARTUP")

    admin_token: str | None = env_field(None, "ADMIN_TOKEN")
    pairing_rate_limit_per_minute: int = env_field(10, "PAIRING_RATE_LIMIT_PER_MINUTE")
    pairing_rate_limit_window_seconds: int = env_field(
        60, "PAIRING_RATE_LIMIT_WINDOW_SECONDS"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("provisioner", mode="before")
    @classmethod
    def _normalize_provisioner(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or ProvisionerKind.NOOP
        return value

    @field_validator("docker_network", "docker_auth_volume", "link_adapter", "redis_url", "admin_token")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("auth_root")
    @classmethod
    def _expand_auth_root(cls, value: str) -> str:
        return str(Path(value).expanduser())

    @property
    def tmp_auth_root(self) -> Path:
        """Directory holding per-session working dirs before a user exists."""
        return Path(self.auth_root) / "tmp"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
