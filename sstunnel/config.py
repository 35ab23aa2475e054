"""
Core configuration for the sstunnel local/server proxy.

CONFIG holds the process defaults (env overridable, validated at import).
Connections never read CONFIG directly: the CLI builds one immutable
ProxyConfig snapshot at startup and hands it to every connection.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from sstunnel.exceptions import ConfigError


_DEFAULT_PASSWORD = os.getenv("SSTUNNEL_DEFAULT_PASSWORD", "123456")

ENV_PREFIX = "SSTUNNEL_"

# Default configuration - all required keys with correct types
CONFIG = {
    # Role: True runs the server end, False the local (SOCKS5-facing) end.
    "SERVER_MODE": False,

    # Server end: bind address in server mode, remote address in local mode.
    "SERVER_HOST": "127.0.0.1",
    "SERVER_PORT": 8388,

    # Local end: SOCKS5 listener for applications.
    "LOCAL_HOST": "127.0.0.1",
    "LOCAL_PORT": 1080,

    # Crypto
    "PASSWORD": _DEFAULT_PASSWORD,
    "METHOD": "aes-256-cfb",
    # Require one-time auth on every chunk (server enforces, local requests).
    "ONE_TIME_AUTH": False,
    # Upper bound for one authenticated chunk payload; the wire length field is 16 bits.
    "MAX_CHUNK_SIZE": 0x3FFF,

    # Runtime (seconds)
    "TIMEOUT": 300,
    "CONNECT_TIMEOUT": 5.0,
    "POLL_INTERVAL": 1.0,
    # How long a send may wait for writability before the rest is parked as pending.
    "WRITE_WAIT": 0.05,
    "BUFFER_SIZE": 16384,

    # Include the requested target host:port in connection logs.
    "LOG_TARGETS": True,
}


# Required keys with their expected types
_REQUIRED_KEYS = {
    "SERVER_MODE": bool,
    "SERVER_HOST": str,
    "SERVER_PORT": int,
    "LOCAL_HOST": str,
    "LOCAL_PORT": int,
    "PASSWORD": str,
    "METHOD": str,
    "ONE_TIME_AUTH": bool,
    "MAX_CHUNK_SIZE": int,
    "TIMEOUT": int,
    "CONNECT_TIMEOUT": float,
    "POLL_INTERVAL": float,
    "WRITE_WAIT": float,
    "BUFFER_SIZE": int,
    "LOG_TARGETS": bool,
}

_FLOAT_KEYS = {key for key, kind in _REQUIRED_KEYS.items() if kind is float}

# Keys of the JSON config file format, mapped onto CONFIG keys.
_FILE_KEYS = {
    "server": "SERVER_HOST",
    "server_port": "SERVER_PORT",
    "local_address": "LOCAL_HOST",
    "local_port": "LOCAL_PORT",
    "password": "PASSWORD",
    "method": "METHOD",
    "timeout": "TIMEOUT",
    "auth": "ONE_TIME_AUTH",
    "server_mode": "SERVER_MODE",
    "connect_timeout": "CONNECT_TIMEOUT",
}


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise ConfigError("<reason>") on any violation.
    """
    missing_keys = set(_REQUIRED_KEYS.keys()) - set(cfg.keys())
    if missing_keys:
        raise ConfigError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if key in _FLOAT_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"CONFIG[{key}] must be float seconds, got {type(value).__name__}")
            continue
        # bool is an int subclass; do not let True pass as a port.
        if expected_type is int and isinstance(value, bool):
            raise ConfigError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise ConfigError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    for key in ("SERVER_PORT", "LOCAL_PORT"):
        port = cfg[key]
        if not (1 <= port <= 65535):
            raise ConfigError(f"CONFIG[{key}] must be valid port (1-65535), got {port}")

    for key in ("SERVER_HOST", "LOCAL_HOST", "METHOD", "PASSWORD"):
        if not cfg[key]:
            raise ConfigError(f"CONFIG[{key}] must be non-empty string, got {repr(cfg[key])}")

    if cfg["TIMEOUT"] <= 0:
        raise ConfigError(f"CONFIG[TIMEOUT] must be > 0 seconds, got {cfg['TIMEOUT']}")
    for key in ("CONNECT_TIMEOUT", "POLL_INTERVAL"):
        if cfg[key] <= 0:
            raise ConfigError(f"CONFIG[{key}] must be > 0 seconds, got {cfg[key]}")
    if cfg["WRITE_WAIT"] < 0:
        raise ConfigError(f"CONFIG[WRITE_WAIT] must be >= 0 seconds, got {cfg['WRITE_WAIT']}")

    if not (1 <= cfg["MAX_CHUNK_SIZE"] <= 0xFFFF):
        raise ConfigError(f"CONFIG[MAX_CHUNK_SIZE] must be 1..65535, got {cfg['MAX_CHUNK_SIZE']}")
    if cfg["BUFFER_SIZE"] < 1:
        raise ConfigError(f"CONFIG[BUFFER_SIZE] must be positive, got {cfg['BUFFER_SIZE']}")


def _coerce(key: str, raw: str) -> Any:
    expected_type = _REQUIRED_KEYS[key]
    if expected_type is bool:
        lowered = str(raw).strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"invalid boolean literal: {raw}")
    if expected_type is int:
        return int(raw)
    if expected_type is float:
        return float(raw)
    return str(raw)


def _apply_env_overrides(cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Apply SSTUNNEL_<KEY> environment variable overrides to config."""
    env = os.environ if environ is None else environ
    result = cfg.copy()

    for key in _REQUIRED_KEYS:
        env_var = ENV_PREFIX + key
        if env_var not in env:
            continue
        try:
            result[key] = _coerce(key, env[env_var])
        except ValueError:
            raise ConfigError(
                f"Invalid {_REQUIRED_KEYS[key].__name__} value for {env_var}: {env[env_var]}"
            )

    return result


def load_config_file(path: str | Path, base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge a JSON config file onto `base` (defaults to CONFIG) and validate it."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}")
    except json.JSONDecodeError as exc:
        raise ConfigError(f"config file {path} is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")

    result = dict(CONFIG if base is None else base)
    for file_key, value in data.items():
        key = _FILE_KEYS.get(file_key)
        if key is None:
            raise ConfigError(f"unknown key in config file {path}: {file_key}")
        if key in _FLOAT_KEYS and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        result[key] = value

    validate_config(result)
    return result


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable per-process configuration snapshot handed to each connection."""

    server_mode: bool
    server_host: str
    server_port: int
    local_host: str
    local_port: int
    password: str
    method: str
    one_time_auth: bool
    timeout: float
    connect_timeout: float = 5.0
    poll_interval: float = 1.0
    write_wait: float = 0.05
    buffer_size: int = 16384
    max_chunk_size: int = 0x3FFF
    log_targets: bool = True

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "ProxyConfig":
        validate_config(dict(cfg))
        return cls(
            server_mode=cfg["SERVER_MODE"],
            server_host=cfg["SERVER_HOST"],
            server_port=cfg["SERVER_PORT"],
            local_host=cfg["LOCAL_HOST"],
            local_port=cfg["LOCAL_PORT"],
            password=cfg["PASSWORD"],
            method=cfg["METHOD"].lower(),
            one_time_auth=cfg["ONE_TIME_AUTH"],
            timeout=float(cfg["TIMEOUT"]),
            connect_timeout=float(cfg["CONNECT_TIMEOUT"]),
            poll_interval=float(cfg["POLL_INTERVAL"]),
            write_wait=float(cfg["WRITE_WAIT"]),
            buffer_size=cfg["BUFFER_SIZE"],
            max_chunk_size=cfg["MAX_CHUNK_SIZE"],
            log_targets=cfg["LOG_TARGETS"],
        )

    @property
    def role(self) -> str:
        return "server" if self.server_mode else "local"

    @property
    def server_address(self) -> Tuple[str, int]:
        return (self.server_host, self.server_port)

    @property
    def listen_address(self) -> Tuple[str, int]:
        if self.server_mode:
            return (self.server_host, self.server_port)
        return (self.local_host, self.local_port)

    def with_overrides(self, **changes: Any) -> "ProxyConfig":
        return replace(self, **changes)

    def describe(self) -> Dict[str, Any]:
        """Loggable view of the snapshot; the password is masked."""
        info: Dict[str, Any] = {
            "mode": self.role,
            "method": self.method,
            "password": "*" * len(self.password),
            "auth": self.one_time_auth,
            "timeout": self.timeout,
        }
        if self.server_mode:
            info["bind"] = f"{self.server_host}:{self.server_port}"
        else:
            info["server"] = f"{self.server_host}:{self.server_port}"
            info["local"] = f"{self.local_host}:{self.local_port}"
        return info


# Apply environment overrides and validate
CONFIG = _apply_env_overrides(CONFIG)
validate_config(CONFIG)
