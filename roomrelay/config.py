"""Configuration management for the relay."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .constants import DEDUP_CAPACITY, DEFAULT_ROOMS, MAX_ROOM_LEN
from .utils import normalize_room_name, split_csv

logger = logging.getLogger(__name__)

MAX_CONFIG_FILE_SIZE = 1024 * 1024
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when startup configuration is missing or invalid."""


@dataclass(frozen=True)
class RelayConfig:
    """Validated relay configuration."""

    host: str = "127.0.0.1"
    port: int = 8787
    allowed_origins: tuple[str, ...] = ("http://127.0.0.1:5173", "http://localhost:5173")
    tokens: tuple[str, ...] = ()
    require_tokens: bool = True
    rooms: tuple[str, ...] = DEFAULT_ROOMS
    dedup_capacity: int = DEDUP_CAPACITY
    dedup_shards: int = 1
    max_connections: int = 200
    heartbeat_s: float = 25.0
    tls_cert: str = ""
    tls_key: str = ""

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert and self.tls_key)


def get_default_config() -> dict[str, Any]:
    """Get default configuration values.

    Returns:
        Default configuration dictionary
    """
    defaults = RelayConfig()
    return {
        "host": defaults.host,
        "port": defaults.port,
        "allowed_origins": list(defaults.allowed_origins),
        "tokens": [],
        "require_tokens": defaults.require_tokens,
        "rooms": list(defaults.rooms),
        "dedup_capacity": defaults.dedup_capacity,
        "dedup_shards": defaults.dedup_shards,
        "max_connections": defaults.max_connections,
        "heartbeat_s": defaults.heartbeat_s,
        "tls_cert": "",
        "tls_key": "",
    }


def load_config_file(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Load a JSON config file.

    Raises:
        ConfigError: If the file is missing, too large or not a JSON object
    """
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ConfigError(f"config file not found: {config_path}")

    file_size = config_path.stat().st_size
    if file_size > MAX_CONFIG_FILE_SIZE:
        raise ConfigError(
            f"config file too large: {file_size} bytes (max {MAX_CONFIG_FILE_SIZE})"
        )

    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file must contain a JSON object: {config_path}")

    logger.info("Loaded config from %s", config_path)
    return data


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    if env.get("RELAY_HOST"):
        overrides["host"] = env["RELAY_HOST"]

    port = env.get("PORT") or env.get("RELAY_PORT")
    if port:
        overrides["port"] = port

    if "CLIENT_ORIGIN" in env:
        overrides["allowed_origins"] = split_csv(env["CLIENT_ORIGIN"])

    tokens = env.get("INVITE_TOKENS") or env.get("INVITE_TOKEN")
    if tokens is not None:
        overrides["tokens"] = split_csv(tokens)

    if env.get("RELAY_REQUIRE_TOKENS"):
        overrides["require_tokens"] = env["RELAY_REQUIRE_TOKENS"]

    if "RELAY_ROOMS" in env:
        overrides["rooms"] = split_csv(env["RELAY_ROOMS"])

    if env.get("RELAY_DEDUP_CAPACITY"):
        overrides["dedup_capacity"] = env["RELAY_DEDUP_CAPACITY"]

    if env.get("RELAY_DEDUP_SHARDS"):
        overrides["dedup_shards"] = env["RELAY_DEDUP_SHARDS"]

    if env.get("RELAY_TLS_CERT"):
        overrides["tls_cert"] = env["RELAY_TLS_CERT"]

    if env.get("RELAY_TLS_KEY"):
        overrides["tls_key"] = env["RELAY_TLS_KEY"]

    return overrides


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer (got {value!r})") from e


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean (got {value!r})")


def _as_str_list(value: Any, name: str) -> list[str]:
    if isinstance(value, str):
        return split_csv(value)
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{name} must be a list of strings")
    return [v.strip() for v in value if v.strip()]


def build_config(data: Mapping[str, Any]) -> RelayConfig:
    """Validate merged settings into a RelayConfig.

    Raises:
        ConfigError: On the first invalid setting
    """
    port = _as_int(data.get("port"), "port")
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range: {port}")

    tokens = tuple(_as_str_list(data.get("tokens", []), "tokens"))
    require_tokens = _as_bool(data.get("require_tokens", True), "require_tokens")
    if require_tokens and not tokens:
        raise ConfigError(
            "Missing INVITE_TOKEN (or INVITE_TOKENS). Refusing to start. "
            "Set RELAY_REQUIRE_TOKENS=false to run in open mode."
        )

    rooms: list[str] = []
    for raw in _as_str_list(data.get("rooms", []), "rooms"):
        room = normalize_room_name(raw, MAX_ROOM_LEN)
        if room is None:
            raise ConfigError(f"invalid room name: {raw!r}")
        if room not in rooms:
            rooms.append(room)
    if not rooms:
        raise ConfigError("at least one room must be configured")

    dedup_capacity = _as_int(data.get("dedup_capacity"), "dedup_capacity")
    if dedup_capacity <= 0:
        raise ConfigError("dedup_capacity must be positive")

    dedup_shards = _as_int(data.get("dedup_shards"), "dedup_shards")
    if dedup_shards <= 0:
        raise ConfigError("dedup_shards must be positive")
    if dedup_shards > dedup_capacity:
        raise ConfigError("dedup_shards cannot exceed dedup_capacity")

    max_connections = _as_int(data.get("max_connections"), "max_connections")
    if max_connections <= 0:
        raise ConfigError("max_connections must be positive")

    try:
        heartbeat_s = float(data.get("heartbeat_s", 0))
    except (TypeError, ValueError) as e:
        raise ConfigError("heartbeat_s must be a number") from e

    tls_cert = str(data.get("tls_cert") or "")
    tls_key = str(data.get("tls_key") or "")
    if bool(tls_cert) != bool(tls_key):
        raise ConfigError("tls_cert and tls_key must be set together")
    if tls_cert:
        tls_cert = str(Path(tls_cert).expanduser())
        tls_key = str(Path(tls_key).expanduser())

    return RelayConfig(
        host=str(data.get("host") or "127.0.0.1"),
        port=port,
        allowed_origins=tuple(_as_str_list(data.get("allowed_origins", []), "allowed_origins")),
        tokens=tokens,
        require_tokens=require_tokens,
        rooms=tuple(rooms),
        dedup_capacity=dedup_capacity,
        dedup_shards=dedup_shards,
        max_connections=max_connections,
        heartbeat_s=heartbeat_s,
        tls_cert=tls_cert,
        tls_key=tls_key,
    )


def load_config(env: Mapping[str, str] | None = None) -> RelayConfig:
    """Load configuration from defaults, an optional JSON file and the environment.

    The JSON file path comes from ``RELAY_CONFIG``; environment variables
    override file values.

    Args:
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated configuration

    Raises:
        ConfigError: If configuration is missing or invalid
    """
    env = os.environ if env is None else env

    data = get_default_config()
    config_path = env.get("RELAY_CONFIG")
    if config_path:
        data.update(load_config_file(config_path))
    data.update(_env_overrides(env))

    return build_config(data)
