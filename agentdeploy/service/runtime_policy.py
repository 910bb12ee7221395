"""Versioned configuration written into every per-user runtime.

Bumping one of the version constants marks existing runtimes as stale: their
stored :class:`RuntimeFingerprint` no longer matches :func:`runtime_fingerprint`.
"""

from __future__ import annotations

import os
import posixpath
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from agentdeploy.service.fs import LINK_STATE_DIRNAME
from agentdeploy.storage.models import RuntimeFingerprint

RUNTIME_CONFIG_VERSION = "2026.02.21.1"
RUNTIME_PLUGIN_VERSION = "2026.02.21.1"
RUNTIME_POLICY_VERSION = "2026.02.21.1"

CONFIG_FILENAME = "gateway.json"
PLUGIN_ID = "agentdeploy-profile"
PLUGIN_MANIFEST_FILENAME = "gateway.plugin.json"

# Mount point of the per-user directory inside the runtime container
RUNTIME_ROOT_DIR = "/data/auth"

DEFAULT_MODEL_TIER = "best"
DEFAULT_TOOLS_PROFILE = "minimal"
DEFAULT_TOOLS_ALSO_ALLOW = ("get_user_profile", "update_user_profile", "memory_search", "memory_get")

MODEL_PRIMARY_BY_TIER: Dict[str, str] = {
    "best": "nvidia/moonshotai/kimi-k2.5",
    "fast": "google/gemini-3-flash-preview",
    "premium": "nvidia/moonshotai/kimi-k2.5",
}

_LARGE_TIER_FALLBACKS = [
    "google/gemini-3-pro-preview",
    "google/gemini-3-flash-preview",
    "nvidia/nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "groq/llama-3.3-70b-versatile",
    "openai/gpt-4o-mini",
]

MODEL_FALLBACKS_BY_TIER: Dict[str, List[str]] = {
    "best": _LARGE_TIER_FALLBACKS,
    "fast": [
        "groq/llama-3.1-8b-instant",
        "nvidia/nvidia/llama-3.1-nemotron-nano-8b-v1",
        "openai/gpt-4o-mini",
    ],
    "premium": _LARGE_TIER_FALLBACKS,
}

MODEL_CONTEXT_TOKENS_BY_TIER: Dict[str, int] = {
    "best": 131_072,
    "fast": 32_000,
    "premium": 131_072,
}

PROVIDER_ENV_PASSTHROUGH = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "OPENROUTER_API_KEY",
    "XAI_API_KEY",
    "GROQ_API_KEY",
    "MISTRAL_API_KEY",
    "TOGETHER_API_KEY",
    "PERPLEXITY_API_KEY",
    "CEREBRAS_API_KEY",
    "NVIDIA_API_KEY",
)

# Providers routed through an OpenAI-compatible endpoint so model ids resolve
_OPENAI_COMPATIBLE_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "nvidia": {
        "baseUrl": "https://integrate.api.nvidia.com/v1",
        "apiKey": "${NVIDIA_API_KEY}",
        "api": "openai-completions",
        "models": [
            {"id": "moonshotai/kimi-k2.5", "name": "Kimi K2.5", "contextWindow": 131072, "maxTokens": 8192},
            {
                "id": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
                "name": "Nemotron Ultra 253B",
                "contextWindow": 131072,
                "maxTokens": 16384,
            },
            {
                "id": "nvidia/llama-3.1-nemotron-nano-8b-v1",
                "name": "Nemotron Nano 8B",
                "contextWindow": 131072,
                "maxTokens": 8192,
            },
        ],
    },
    "groq": {
        "baseUrl": "https://api.groq.com/openai/v1",
        "apiKey": "${GROQ_API_KEY}",
        "api": "openai-completions",
        "models": [
            {
                "id": "llama-3.3-70b-versatile",
                "name": "Llama 3.3 70B Versatile",
                "contextWindow": 128000,
                "maxTokens": 8192,
            },
            {
                "id": "llama-3.1-8b-instant",
                "name": "Llama 3.1 8B Instant",
                "contextWindow": 128000,
                "maxTokens": 8192,
            },
        ],
    },
}


def _tier(model_tier: Optional[str]) -> str:
    tier = (model_tier or DEFAULT_MODEL_TIER).strip().lower()
    return tier if tier in MODEL_PRIMARY_BY_TIER else DEFAULT_MODEL_TIER


def resolve_primary_model(model_tier: Optional[str] = None) -> str:
    return MODEL_PRIMARY_BY_TIER[_tier(model_tier)]


def resolve_model_fallbacks(model_tier: Optional[str] = None) -> List[str]:
    return list(MODEL_FALLBACKS_BY_TIER[_tier(model_tier)])


def resolve_context_tokens(model_tier: Optional[str] = None) -> int:
    return MODEL_CONTEXT_TOKENS_BY_TIER[_tier(model_tier)]


def _origin(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def control_ui_origins(base_url: Optional[str], port: int) -> List[str]:
    """Origins allowed to open the runtime's control UI, deduplicated in order."""
    candidates = [
        base_url,
        f"http://localhost:{port}",
        f"http://127.0.0.1:{port}",
        f"http://[::1]:{port}",
    ]
    origins: List[str] = []
    for candidate in candidates:
        origin = _origin(candidate)
        if origin and origin not in origins:
            origins.append(origin)
    return origins


def build_gateway_config(
    identity: str,
    access_token: str,
    *,
    model_tier: Optional[str] = None,
    allowed_origins: Optional[List[str]] = None,
    runtime_root: str = RUNTIME_ROOT_DIR,
) -> Dict[str, Any]:
    """Render the runtime configuration for one user.

    Direct messages are restricted to the linked ``identity``; the runtime
    authenticates callers with ``access_token``.
    """
    link_state_dir = posixpath.join(runtime_root, LINK_STATE_DIRNAME)
    return {
        "meta": {
            "configVersion": RUNTIME_CONFIG_VERSION,
            "pluginVersion": RUNTIME_PLUGIN_VERSION,
            "policyVersion": RUNTIME_POLICY_VERSION,
        },
        "gateway": {
            "auth": {"mode": "token", "token": access_token},
            "controlUi": {"allowInsecureAuth": True, "allowedOrigins": list(allowed_origins or [])},
        },
        "channels": {
            "messaging": {
                "dmPolicy": "allowlist",
                "allowFrom": [identity],
                "selfChatMode": True,
                "accounts": {"default": {"authDir": link_state_dir}},
            }
        },
        "plugins": {
            "load": {"paths": [runtime_root]},
            "entries": {"messaging": {"enabled": True}, PLUGIN_ID: {"enabled": True}},
        },
        "models": {"mode": "merge", "providers": _OPENAI_COMPATIBLE_PROVIDERS},
        "agents": {
            "defaults": {
                "workspace": runtime_root,
                "contextTokens": resolve_context_tokens(model_tier),
                "model": {
                    "primary": resolve_primary_model(model_tier),
                    "fallbacks": resolve_model_fallbacks(model_tier),
                },
            }
        },
        "tools": {"profile": DEFAULT_TOOLS_PROFILE, "alsoAllow": list(DEFAULT_TOOLS_ALSO_ALLOW)},
    }


def build_plugin_manifest() -> Dict[str, Any]:
    return {
        "id": PLUGIN_ID,
        "version": RUNTIME_PLUGIN_VERSION,
        "configSchema": {"type": "object", "additionalProperties": False, "properties": {}},
    }


def provider_env(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """``NAME=value`` entries for provider keys set in ``environ``."""
    source = os.environ if environ is None else environ
    entries = []
    for name in PROVIDER_ENV_PASSTHROUGH:
        value = source.get(name)
        if value and value.strip():
            entries.append(f"{name}={value}")
    return entries


def runtime_fingerprint(image_ref: str) -> RuntimeFingerprint:
    return RuntimeFingerprint(
        config_version=RUNTIME_CONFIG_VERSION,
        plugin_version=RUNTIME_PLUGIN_VERSION,
        policy_version=RUNTIME_POLICY_VERSION,
        image_ref=image_ref,
    )


def is_stale(fingerprint: Optional[RuntimeFingerprint], image_ref: str) -> bool:
    """True when ``fingerprint`` differs from what a fresh provision would record."""
    if fingerprint is None:
        return True
    return fingerprint != runtime_fingerprint(image_ref)
