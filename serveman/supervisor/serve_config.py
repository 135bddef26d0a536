"""Persistent serve manager configuration helpers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir

from serveman.contracts import (
    DEFAULT_COMMAND,
    DEFAULT_HOSTNAME,
    EXIT_POLICIES,
    EXIT_POLICY_VERIFY,
    HEALTH_PATH,
    PORT_MAX,
    PORT_MIN,
    READY_TIMEOUT_SECONDS,
    SERVE_CONFIG_SCHEMA_V1,
    SUPPORTED_CONFIG_SCHEMAS,
)

CONFIG_PATH = Path(user_config_dir("serveman")) / "config.json"


def default_config() -> dict[str, Any]:
    return {
        "schema_version": SERVE_CONFIG_SCHEMA_V1,
        "port_min": PORT_MIN,
        "port_max": PORT_MAX,
        "command": list(DEFAULT_COMMAND),
        "hostname": DEFAULT_HOSTNAME,
        "health_path": HEALTH_PATH,
        "exit_policy": EXIT_POLICY_VERIFY,
        "ready_timeout_seconds": READY_TIMEOUT_SECONDS,
    }


def _coerce_port(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be integer")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} must be integer") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"{field_name} out of range: {port}")
    return port


def validate_config(config: dict[str, Any]) -> dict[str, Any]:
    """Validate config schema and port range constraints."""
    if not isinstance(config, dict):
        raise ValueError("config must be object")
    defaults = default_config()
    schema_version = config.get("schema_version", SERVE_CONFIG_SCHEMA_V1)
    if schema_version not in SUPPORTED_CONFIG_SCHEMAS:
        raise ValueError("unsupported config schema_version")

    port_min = _coerce_port(config.get("port_min", defaults["port_min"]), "port_min")
    port_max = _coerce_port(config.get("port_max", defaults["port_max"]), "port_max")
    if port_min > port_max:
        raise ValueError("port_min must not exceed port_max")

    command = config.get("command", defaults["command"])
    if isinstance(command, str):
        command = [command]
    if not isinstance(command, list) or not command:
        raise ValueError("command must be non-empty list")
    normalized_command = [str(part) for part in command]
    if not normalized_command[0].strip():
        raise ValueError("command executable must not be blank")

    hostname = str(config.get("hostname", defaults["hostname"])).strip() or DEFAULT_HOSTNAME
    health_path = str(config.get("health_path", defaults["health_path"])).strip()
    if not health_path.startswith("/"):
        raise ValueError("health_path must start with '/'")

    exit_policy = str(config.get("exit_policy", defaults["exit_policy"])).strip().lower()
    if exit_policy not in EXIT_POLICIES:
        raise ValueError(f"unsupported exit_policy: {exit_policy}")

    try:
        ready_timeout = float(config.get("ready_timeout_seconds", defaults["ready_timeout_seconds"]))
    except (TypeError, ValueError):
        raise ValueError("ready_timeout_seconds must be number") from None
    if ready_timeout <= 0:
        raise ValueError("ready_timeout_seconds must be positive")

    return {
        "schema_version": SERVE_CONFIG_SCHEMA_V1,
        "port_min": port_min,
        "port_max": port_max,
        "command": normalized_command,
        "hostname": hostname,
        "health_path": health_path,
        "exit_policy": exit_policy,
        "ready_timeout_seconds": ready_timeout,
    }


def port_range(config: dict[str, Any]) -> tuple[int, int]:
    """Return the (min, max) port tuple of a validated config."""
    return int(config["port_min"]), int(config["port_max"])


def load_config(path: Path = CONFIG_PATH) -> dict[str, Any]:
    """Load config from disk or return defaults."""
    if not path.exists():
        return default_config()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return default_config()
    if not isinstance(raw, dict):
        return default_config()
    try:
        return validate_config(raw)
    except ValueError:
        return default_config()


def save_config(config: dict[str, Any], path: Path = CONFIG_PATH) -> dict[str, Any]:
    """Validate and persist config to disk."""
    validated = validate_config(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(validated, indent=2), encoding="utf-8")
    return validated
