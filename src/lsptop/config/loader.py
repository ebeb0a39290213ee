"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Deep merge of system and user files
- ``LSPTOP_*`` environment variable overrides
- Conversion from dict to the typed Config dataclass
"""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import yaml

from lsptop.config.paths import get_config_paths
from lsptop.config.schema import Config, DaemonConfig, LoggingConfig, ServerConfig

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("lsptop.config")

_cached_config: Config | None = None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Nested dicts merge recursively, lists are replaced wholesale, and a
    ``None`` in ``override`` leaves the base value untouched.
    """
    result = base.copy()
    for key, value in override.items():
        if value is None:
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result


def env_overrides() -> dict[str, Any]:
    """Build a config dict from ``LSPTOP_*`` environment variables."""
    overrides: dict[str, Any] = {}

    def section(name: str) -> dict[str, Any]:
        return overrides.setdefault(name, {})

    if socket_path := os.environ.get("LSPTOP_SOCKET"):
        section("daemon")["socket_path"] = socket_path
    if pid_file := os.environ.get("LSPTOP_PID_FILE"):
        section("daemon")["pid_file"] = pid_file
    if idle := os.environ.get("LSPTOP_IDLE_TIMEOUT"):
        try:
            section("daemon")["idle_timeout"] = float(idle)
        except ValueError:
            _log.warning("Ignoring non-numeric LSPTOP_IDLE_TIMEOUT=%r", idle)
    if command := os.environ.get("LSPTOP_SERVER_COMMAND"):
        section("server")["command"] = shlex.split(command)
    if log_path := os.environ.get("LSPTOP_LOG"):
        section("logging")["file"] = log_path
    if level := os.environ.get("LSPTOP_LOG_LEVEL"):
        section("logging")["level"] = level

    return overrides


def _str_list(value: Any, default: list[str]) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list):
        return [str(v) for v in value]
    return list(default)


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert a merged dict to the typed Config dataclass."""
    daemon_data = data.get("daemon") or {}
    defaults = DaemonConfig()
    daemon = DaemonConfig(
        socket_path=str(daemon_data.get("socket_path", defaults.socket_path)),
        pid_file=str(daemon_data.get("pid_file", defaults.pid_file)),
        idle_timeout=float(daemon_data.get("idle_timeout", defaults.idle_timeout)),
        sweep_interval=float(daemon_data.get("sweep_interval", defaults.sweep_interval)),
    )

    server_data = data.get("server") or {}
    server_defaults = ServerConfig()
    env = server_data.get("env") or {}
    server = ServerConfig(
        command=_str_list(server_data.get("command"), server_defaults.command),
        env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
        project_markers=_str_list(
            server_data.get("project_markers"), server_defaults.project_markers
        ),
        request_timeout=float(
            server_data.get("request_timeout", server_defaults.request_timeout)
        ),
        startup_timeout=float(
            server_data.get("startup_timeout", server_defaults.startup_timeout)
        ),
        settle_delay=float(server_data.get("settle_delay", server_defaults.settle_delay)),
        diagnostics_timeout=float(
            server_data.get("diagnostics_timeout", server_defaults.diagnostics_timeout)
        ),
        shutdown_grace=float(
            server_data.get("shutdown_grace", server_defaults.shutdown_grace)
        ),
        terminate_timeout=float(
            server_data.get("terminate_timeout", server_defaults.terminate_timeout)
        ),
    )

    log_data = data.get("logging") or {}
    log_defaults = LoggingConfig()
    trace = log_data.get("trace", [])
    if isinstance(trace, str):
        trace = [t for t in trace.split(",") if t.strip()]
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file", log_defaults.file),
        max_bytes=int(log_data.get("max_bytes", log_defaults.max_bytes)),
        trace=[str(t).strip() for t in trace],
    )

    return Config(daemon=daemon, server=server, logging=logging_config)


def load_config(
    reload: bool = False,
    paths: Sequence[Path] | None = None,
) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. User config
    3. System config

    Args:
        reload: Force reload even if cached.
        paths: Explicit config files to merge instead of the standard ones.
            Results loaded from explicit paths are not cached.
    """
    global _cached_config

    if _cached_config is not None and not reload and paths is None:
        return _cached_config

    merged: dict[str, Any] = {}
    for path in paths if paths is not None else get_config_paths():
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            merged = deep_merge(merged, config_data)

    merged = deep_merge(merged, env_overrides())
    config = dict_to_config(merged)

    if paths is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached config (tests, or forcing a reload)."""
    global _cached_config
    _cached_config = None
