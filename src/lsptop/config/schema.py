"""Configuration schema dataclasses for lsp-top.

All fields have defaults so that partial YAML files merge cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_SOCKET_PATH = "/tmp/lsp-top.sock"
DEFAULT_PID_FILE = "/tmp/lsp-top.pid"
DEFAULT_LOG_FILE = "/tmp/lsp-top.log"


@dataclass
class DaemonConfig:
    """Local endpoint and session housekeeping.

    Example config.yaml:
        daemon:
          socket_path: /tmp/lsp-top.sock
          idle_timeout: 900
          sweep_interval: 15
    """

    socket_path: str = DEFAULT_SOCKET_PATH
    pid_file: str = DEFAULT_PID_FILE
    idle_timeout: float = 30 * 60  # Seconds without a completed operation
    sweep_interval: float = 30.0  # Seconds between idle sweeps


@dataclass
class ServerConfig:
    """How to run and talk to the wrapped language server."""

    command: list[str] = field(default_factory=lambda: ["vtsls", "--stdio"])
    env: dict[str, str] = field(default_factory=dict)
    project_markers: list[str] = field(
        default_factory=lambda: ["tsconfig.json", "jsconfig.json"]
    )
    request_timeout: float = 10.0
    startup_timeout: float = 30.0
    settle_delay: float = 0.5  # Lower bound before pulling diagnostics
    diagnostics_timeout: float = 5.0  # Max wait for publishDiagnostics
    shutdown_grace: float = 2.0  # Wait for exit after shutdown/exit
    terminate_timeout: float = 3.0  # Wait after SIGTERM before SIGKILL


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0..4, takes precedence over level
    file: str | None = DEFAULT_LOG_FILE
    max_bytes: int = 5 * 1024 * 1024
    trace: list[str] = field(default_factory=list)  # e.g. ["protocol"]


@dataclass
class Config:
    """Root configuration object."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
