"""Config loading, interpolation, deep merge, and redaction for the chat client.

Provides:
- Built-in defaults, layered with an optional YAML file and env overrides
- {env:VAR} secret interpolation with allowlist enforcement
- Deep merge for layered config
- Redaction for safe logging (bearer tokens never reach log output)

Config file shape (.justdeen.config.yaml):

    api:
      base_url: https://rag.example.workers.dev
      connect_timeout_ms: 5000
      read_timeout_ms: 60000
      timeout_ms: 10000
    auth:
      token: "{env:JUSTDEEN_ACCESS_TOKEN}"
      user_id: auth0|abc123
    history:
      max_messages: 20
    session:
      title_max_chars: 50
    debug: false
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("justdeen.config_loader")

DEFAULT_CONFIG_FILE = ".justdeen.config.yaml"

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {
        "base_url": "http://localhost:8787",
        "connect_timeout_ms": 5000,
        "read_timeout_ms": 60000,
        "timeout_ms": 10000,
    },
    "auth": {
        "token": "",
        "user_id": "",
    },
    "history": {
        "max_messages": None,
    },
    "session": {
        "title_max_chars": 50,
    },
    "debug": False,
}

# Env var → config path
_ENV_OVERRIDES = {
    "JUSTDEEN_API_URL": ("api", "base_url"),
    "JUSTDEEN_API_TIMEOUT": ("api", "timeout_ms"),
    "JUSTDEEN_DEBUG": ("debug",),
}

_CORE_ENV_PATTERNS = [
    re.compile(r"^JUSTDEEN_"),
]

# Regex for interpolation tokens: {env:VAR}
_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


# ── Settings ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChatSettings:
    base_url: str = "http://localhost:8787"
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 60000
    api_timeout_ms: int = 10000
    history_max_messages: Optional[int] = None
    title_max_chars: int = 50
    auth_token: str = ""
    user_id: str = ""
    debug: bool = False


def settings_from_config(config: Dict[str, Any]) -> ChatSettings:
    """Build typed settings from a merged, interpolated config dict."""
    api = config.get("api", {})
    auth = config.get("auth", {})
    max_messages = config.get("history", {}).get("max_messages")

    try:
        return ChatSettings(
            base_url=str(api.get("base_url", ChatSettings.base_url)).rstrip("/"),
            connect_timeout_ms=int(api.get("connect_timeout_ms", ChatSettings.connect_timeout_ms)),
            read_timeout_ms=int(api.get("read_timeout_ms", ChatSettings.read_timeout_ms)),
            api_timeout_ms=int(api.get("timeout_ms", ChatSettings.api_timeout_ms)),
            history_max_messages=int(max_messages) if max_messages is not None else None,
            title_max_chars=int(config.get("session", {}).get("title_max_chars", ChatSettings.title_max_chars)),
            auth_token=str(auth.get("token") or ""),
            user_id=str(auth.get("user_id") or ""),
            debug=_as_bool(config.get("debug", False)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid chat client config: {e}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ── Loading ───────────────────────────────────────────────────────────


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Defaults ← YAML file ← env overrides ← explicit overrides, then interpolate.

    A missing default config file is fine; a missing explicit one is not.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_FILE)
    if path.is_file():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        config = deep_merge(config, file_config)
        logger.debug("Loaded config file %s", path)
    elif config_path:
        raise ValueError(f"Config file not found: {config_path}")

    config = deep_merge(config, _env_overrides())
    if overrides:
        config = deep_merge(config, overrides)

    config = interpolate_config(config)
    logger.debug("Effective config: %s", redact_config(config))
    return config


def _env_overrides() -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for env_var, keys in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value is None or value == "":
            continue
        node = result
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value
    return result


# ── Env allowlist ─────────────────────────────────────────────────────


def _check_env_allowed(var_name: str) -> bool:
    """Check if env var name is in the allowlist."""
    return any(pattern.search(var_name) for pattern in _CORE_ENV_PATTERNS)


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(value: str) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value (allowlisted vars only)."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _check_env_allowed(var_name):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^JUSTDEEN_.*"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively interpolate all string values in a config dict.

    Returns a new dict with resolved values.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value)
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging."""
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif _SENSITIVE_KEY_RE.search(key) and value:
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


def redact_string(value: str) -> str:
    """Redact bearer tokens and secret-looking JUSTDEEN_* values from a string."""
    result = value

    for key, val in os.environ.items():
        if (
            key.startswith("JUSTDEEN_")
            and _SENSITIVE_KEY_RE.search(key)
            and val
            and len(val) > 8
            and val in result
        ):
            result = result.replace(val, REDACTED)

    return re.sub(
        r"(Authorization:\s*Bearer\s+)\S+", rf"\1{REDACTED}", result, flags=re.IGNORECASE
    )
