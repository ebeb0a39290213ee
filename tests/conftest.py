"""Root pytest configuration for all tests."""

from __future__ import annotations

import shutil
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from lsptop.config import Config, DaemonConfig, LoggingConfig, ServerConfig, reset_config
from lsptop.metrics import init_metrics

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)

FIXTURES = Path(__file__).parent / "fixtures"

A_TS = """\
import { formatTotal } from "./b";

export class Calculator {
  add(a: number, b: number): number {
    return a + b;
  }

  subtract(a: number, b: number): number {
    return a - b;
  }

  total = formatTotal(this.add(1, 2));

}
"""

B_TS = """\
export function formatTotal(value: number): string {
  return `Total: ${value}`;
}
"""


@pytest.fixture(autouse=True)
def fresh_state() -> Iterator[None]:
    """Fresh metrics and no cached config for every test."""
    reset_config()
    init_metrics()
    yield
    reset_config()


@pytest.fixture
def fake_server_command() -> list[str]:
    return [sys.executable, str(FIXTURES / "fake_lsp_server.py")]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A TypeScript project root with a tsconfig.json marker."""
    root = (tmp_path / "proj").resolve()
    (root / "src").mkdir(parents=True)
    (root / "tsconfig.json").write_text('{"compilerOptions": {"strict": true}}\n')
    (root / "src" / "a.ts").write_text(A_TS)
    (root / "src" / "b.ts").write_text(B_TS)
    return root


@pytest.fixture
def server_config(fake_server_command: list[str]) -> ServerConfig:
    return ServerConfig(
        command=fake_server_command,
        request_timeout=2.0,
        startup_timeout=5.0,
        settle_delay=0.05,
        diagnostics_timeout=1.0,
        shutdown_grace=1.0,
        terminate_timeout=1.0,
    )


@pytest.fixture
def socket_dir() -> Iterator[Path]:
    """Short directory for unix sockets (tmp_path can exceed the path limit)."""
    path = Path(tempfile.mkdtemp(prefix="lsptop-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def config(server_config: ServerConfig, socket_dir: Path) -> Config:
    return Config(
        daemon=DaemonConfig(
            socket_path=str(socket_dir / "d.sock"),
            pid_file=str(socket_dir / "d.pid"),
            idle_timeout=60.0,
            sweep_interval=60.0,
        ),
        server=server_config,
        logging=LoggingConfig(file=None),
    )
