"""Config loading, interpolation, deep merge, and redaction for the couchfeed tool.

Provides:
- YAML config file loading (.couchfeed.yaml)
- {env:VAR} credential interpolation restricted to COUCHDB_* / COUCHFEED_*
- Deep merge for layered config (defaults < file < command line)
- Redaction for safe logging (never leak passwords or auth headers)

Example file:

    server: https://couch.example.com/
    auth:
      username: admin
      password: "{env:COUCHDB_PASSWORD}"
    timeout:
      connect_ms: 5000
      read_ms: null
"""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("couchfeed.config_loader")

DEFAULT_CONFIG_PATH = ".couchfeed.yaml"

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULTS: Dict[str, Any] = {
    "server": "http://127.0.0.1:5984/",
    "auth": {},
    "timeout": {
        "connect_ms": 5000,
        # Continuous feeds stay open indefinitely; no read deadline by default.
        "read_ms": None,
    },
}

# Only these variables may be pulled into the config
ENV_PREFIXES = ("COUCHDB_", "COUCHFEED_")

_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Config keys and header names whose values are credentials
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|password|secret|token|credential|cookie)",
    re.IGNORECASE,
)

# Secrets embedded in free text (error messages, URLs)
_TEXT_SECRET_RES = [
    re.compile(r"(://[^/:@\s]+:)[^/@\s]+(@)"),
    re.compile(r"(Authorization:\s*(?:Basic|Bearer)\s+)\S+()", re.IGNORECASE),
    re.compile(r"(X-Auth-CouchDB-Token:\s*)\S+()", re.IGNORECASE),
]


# ── Interpolation ─────────────────────────────────────────────────────


def _env_lookup(match: re.Match) -> str:
    name = match.group(1)
    if not name.startswith(ENV_PREFIXES):
        raise ValueError(
            f"Environment variable '{name}' is not in the allowlist. "
            f"Allowed: {', '.join(p + '*' for p in ENV_PREFIXES)}"
        )
    val = os.environ.get(name)
    if val is None:
        raise ValueError(f"Environment variable '{name}' is not set")
    return val


def interpolate_value(value: str) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value."""
    return _INTERP_RE.sub(_env_lookup, value)


def _interpolate(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_value(node)
    if isinstance(node, dict):
        return {key: _interpolate(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_interpolate(item) for item in node]
    return node


def interpolate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of config with every {env:...} token resolved, at any depth."""
    return _interpolate(config)


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Neither argument is modified.
    """
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ── Loading ───────────────────────────────────────────────────────────


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Load the layered config: DEFAULTS < YAML file < overrides.

    A missing file is only an error when the path was given explicitly.
    Interpolation runs after merging, so overrides may use {env:...} too.
    """
    file_config: Dict[str, Any] = {}
    config_path = Path(path or DEFAULT_CONFIG_PATH)

    if config_path.is_file():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        file_config = loaded
        logger.debug("Loaded config from %s", config_path)
    elif path:
        raise ValueError(f"Config not found: {path}")

    merged = deep_merge(deep_merge(DEFAULTS, file_config), overrides or {})
    logger.debug("Effective config: %s", redact_config(merged))
    return interpolate_config(merged)


# ── Redaction ─────────────────────────────────────────────────────────


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return redact_config(value)
    if isinstance(value, str) and _INTERP_RE.search(value):
        names = ", ".join(f"env:{name}" for name in _INTERP_RE.findall(value))
        return f"{REDACTED} (from {names})"
    if _SENSITIVE_KEY_RE.search(key) and value not in (None, ""):
        return REDACTED
    return value


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of config for display/logging.

    Values taken from the environment show where they came from; any other
    value under a credential-like key is replaced by REDACTED.
    """
    return {key: _redact_value(key, value) for key, value in config.items()}


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with credential values redacted."""
    return {
        name: REDACTED if _SENSITIVE_KEY_RE.search(name) else value
        for name, value in headers.items()
    }


def redact_string(value: str) -> str:
    """Strip secrets out of free text before it is printed or logged.

    Covers values of COUCHDB_*/COUCHFEED_* variables, passwords in URLs and
    Authorization / proxy token headers.
    """
    for name, secret in os.environ.items():
        if name.startswith(ENV_PREFIXES) and len(secret) > 4:
            value = value.replace(secret, REDACTED)
    for pattern in _TEXT_SECRET_RES:
        value = pattern.sub(rf"\1{REDACTED}\2", value)
    return value
