"""End-to-end tests for the daemon connection server."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from lsptop.config import AliasStore, Config, LoggingConfig
from lsptop.daemon_client import probe, send_request
from lsptop.errors import AlreadyRunning
from lsptop.frames import DaemonRequest, ErrorFrame, ResultFrame
from lsptop.logging import reset_logging, setup_logging
from lsptop.metrics import get_metrics
from lsptop.server import LOG_BUFFER_LIMIT, Connection, ConnectionState, DaemonServer


def make_project(base: Path, name: str) -> Path:
    root = (base / name).resolve()
    (root / "src").mkdir(parents=True)
    (root / "tsconfig.json").write_text("{}\n")
    (root / "src" / "a.ts").write_text("export const a = 1;\n")
    return root


@pytest.fixture
async def daemon(config: Config, tmp_path: Path):
    server = DaemonServer(config, aliases=AliasStore(tmp_path / "aliases.yaml"))
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def caller_logging(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("LSPTOP_LOG", raising=False)
    reset_logging()
    setup_logging(LoggingConfig(file=None, level="DEBUG"))
    yield
    reset_logging()


async def ask(daemon: DaemonServer, on_log=None, **fields) -> ResultFrame | ErrorFrame:
    return await send_request(
        DaemonRequest(**fields), daemon.socket_path, on_log=on_log, timeout=10.0
    )


async def raw_exchange(socket_path: str, payload: bytes) -> list[dict]:
    reader, writer = await asyncio.open_unix_connection(socket_path)
    writer.write(payload)
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5.0)
    writer.close()
    await writer.wait_closed()
    return [json.loads(line) for line in data.splitlines() if line.strip()]


class StubWriter:
    """Just enough of a StreamWriter to observe buffered log frames."""

    def __init__(self, buffered: int = 0) -> None:
        self.buffered = buffered
        self.chunks: list[bytes] = []
        self.transport = self

    def get_write_buffer_size(self) -> int:
        return self.buffered

    def is_closing(self) -> bool:
        return False

    def write(self, data: bytes) -> None:
        self.chunks.append(data)


class TestQueries:
    async def test_definition_round_trip(self, daemon: DaemonServer, project: Path) -> None:
        frame = await ask(
            daemon, action="definition", project_root=str(project), args=["src/a.ts:12:11"]
        )

        assert isinstance(frame, ResultFrame)
        assert frame.code is None
        assert frame.data["uri"] == (project / "src" / "b.ts").as_uri()
        assert frame.data["range"]["start"]["line"] == 11

    async def test_status_across_two_projects(self, daemon: DaemonServer, tmp_path: Path) -> None:
        first = make_project(tmp_path, "first")
        second = make_project(tmp_path, "second")
        for root in (first, second):
            frame = await ask(daemon, action="definition", project_root=str(root), args=["src/a.ts:1:14"])
            assert isinstance(frame, ResultFrame)

        status = await ask(daemon, action="status")

        assert isinstance(status, ResultFrame)
        assert status.data["sessions"] == 2
        assert status.data["pid"] == os.getpid()
        assert status.data["metrics"]["counters"]["definition.calls"] == 2
        assert {Path(r["root"]).name for r in status.data["roots"]} == {"first", "second"}

    async def test_missing_marker_is_project_not_found(
        self, daemon: DaemonServer, tmp_path: Path
    ) -> None:
        bare = tmp_path / "bare"
        bare.mkdir()

        frame = await ask(daemon, action="hover", project_root=str(bare), args=["x.ts:1:1"])

        assert isinstance(frame, ErrorFrame)
        assert frame.code == "PROJECT_NOT_FOUND"
        assert len(daemon.manager) == 0
        assert get_metrics().counter("session.created") == 0

    async def test_empty_answer_is_marked_no_result(
        self, daemon: DaemonServer, project: Path
    ) -> None:
        frame = await ask(daemon, action="hover", project_root=str(project), args=["src/a.ts:11:1"])

        assert isinstance(frame, ResultFrame)
        assert frame.code == "NO_RESULT"
        assert frame.data is None

    async def test_references_with_declaration(
        self, daemon: DaemonServer, project: Path
    ) -> None:
        frame = await ask(
            daemon,
            action="references",
            project_root=str(project),
            args=["src/a.ts:3:14", '{"includeDeclaration": true}'],
        )

        assert isinstance(frame, ResultFrame)
        assert [loc["uri"].rsplit("/", 1)[-1] for loc in frame.data] == ["a.ts", "b.ts", "c.ts"]

    async def test_references_exclude_declaration_by_default(
        self, daemon: DaemonServer, project: Path
    ) -> None:
        frame = await ask(
            daemon, action="references", project_root=str(project), args=["src/a.ts:3:14"]
        )

        assert isinstance(frame, ResultFrame)
        assert [loc["uri"].rsplit("/", 1)[-1] for loc in frame.data] == ["b.ts", "c.ts"]

    async def test_document_symbols_query(self, daemon: DaemonServer, project: Path) -> None:
        frame = await ask(
            daemon,
            action="documentSymbols",
            project_root=str(project),
            args=["src/a.ts", '{"query": "sub"}'],
        )

        assert isinstance(frame, ResultFrame)
        assert frame.data[0]["name"] == "Calculator"
        assert [child["name"] for child in frame.data[0]["children"]] == ["subtract"]

    async def test_diagnostics(self, daemon: DaemonServer, project: Path) -> None:
        (project / "src" / "bad.ts").write_text("ok\nERROR\n")

        frame = await ask(daemon, action="diagnostics", project_root=str(project), args=["src/bad.ts"])

        assert isinstance(frame, ResultFrame)
        assert [d["message"] for d in frame.data] == ["Found ERROR on line 2"]

    async def test_initialize_restarts_session(self, daemon: DaemonServer, project: Path) -> None:
        await ask(daemon, action="workspaceSymbols", project_root=str(project), args=["Calc"])
        old_pid = daemon.manager.get(project).client.pid

        frame = await ask(daemon, action="initialize", project_root=str(project))

        assert isinstance(frame, ResultFrame)
        assert frame.data["state"] == "READY"
        assert frame.data["pid"] != old_pid

    async def test_alias_resolves_to_project(self, daemon: DaemonServer, project: Path) -> None:
        daemon.aliases.add("app", project)

        frame = await ask(daemon, action="workspaceSymbols", alias="app", args=["Calc"])

        assert isinstance(frame, ResultFrame)
        assert [s["name"] for s in frame.data] == ["Calculator"]

    async def test_unknown_alias(self, daemon: DaemonServer) -> None:
        frame = await ask(daemon, action="hover", alias="nope", args=["a.ts:1:1"])

        assert isinstance(frame, ErrorFrame)
        assert frame.code == "PROJECT_NOT_FOUND"

    async def test_invalid_position(self, daemon: DaemonServer, project: Path) -> None:
        frame = await ask(daemon, action="definition", project_root=str(project), args=["src/a.ts"])

        assert isinstance(frame, ErrorFrame)
        assert frame.code == "INVALID_ARGUMENT"

    async def test_unknown_action(self, daemon: DaemonServer, project: Path) -> None:
        frame = await ask(daemon, action="rename", project_root=str(project))

        assert isinstance(frame, ErrorFrame)
        assert frame.code == "UNKNOWN_ACTION"
        assert "rename.calls" not in get_metrics().counters


class TestMalformedRequests:
    async def test_not_json(self, daemon: DaemonServer) -> None:
        frames = await raw_exchange(daemon.socket_path, b"definition please\n")

        assert len(frames) == 1
        assert frames[0]["type"] == "error"
        assert frames[0]["code"] == "PROTOCOL_ERROR"
        assert get_metrics().counter("connection.protocol_errors") == 1

    async def test_not_an_object(self, daemon: DaemonServer) -> None:
        frames = await raw_exchange(daemon.socket_path, b'["definition"]\n')
        assert frames[0]["code"] == "PROTOCOL_ERROR"

    async def test_missing_action(self, daemon: DaemonServer) -> None:
        frames = await raw_exchange(daemon.socket_path, b'{"projectRoot": "/tmp"}\n')
        assert frames[0]["code"] == "PROTOCOL_ERROR"

    async def test_missing_project_root(self, daemon: DaemonServer) -> None:
        frames = await raw_exchange(daemon.socket_path, b'{"action": "hover", "args": ["a.ts:1:1"]}\n')
        assert frames[0]["code"] == "PROTOCOL_ERROR"
        assert "projectRoot" in frames[0]["message"]

    async def test_relative_project_root(self, daemon: DaemonServer) -> None:
        frames = await raw_exchange(
            daemon.socket_path, b'{"action": "hover", "projectRoot": "app", "args": ["a.ts:1:1"]}\n'
        )
        assert frames[0]["code"] == "PROTOCOL_ERROR"

    async def test_daemon_keeps_serving_after_bad_request(self, daemon: DaemonServer) -> None:
        await raw_exchange(daemon.socket_path, b"{\n")

        frame = await ask(daemon, action="status")

        assert isinstance(frame, ResultFrame)

    async def test_request_without_newline(self, daemon: DaemonServer) -> None:
        reader, writer = await asyncio.open_unix_connection(daemon.socket_path)
        writer.write(b'{"action": "sta')
        await writer.drain()
        await asyncio.sleep(0.05)
        writer.write(b'tus"}')
        await writer.drain()

        line = await asyncio.wait_for(reader.readline(), timeout=5.0)
        writer.close()
        await writer.wait_closed()

        frame = json.loads(line)
        assert frame["type"] == "result"
        assert frame["data"]["sessions"] == 0


class TestLogFrames:
    async def test_verbose_request_streams_logs_before_result(
        self, caller_logging: None, daemon: DaemonServer, project: Path
    ) -> None:
        lines: list[str] = []

        frame = await ask(
            daemon,
            on_log=lines.append,
            action="definition",
            project_root=str(project),
            args=["src/a.ts:3:14"],
            verbose=True,
        )

        assert isinstance(frame, ResultFrame)
        assert any("Announcing" in line for line in lines)

    async def test_quiet_request_gets_no_logs(
        self, caller_logging: None, daemon: DaemonServer, project: Path
    ) -> None:
        lines: list[str] = []

        await ask(
            daemon,
            on_log=lines.append,
            action="definition",
            project_root=str(project),
            args=["src/a.ts:3:14"],
        )

        assert lines == []

    async def test_log_level_filters_frames(
        self, caller_logging: None, daemon: DaemonServer, project: Path
    ) -> None:
        lines: list[str] = []

        await ask(
            daemon,
            on_log=lines.append,
            action="definition",
            project_root=str(project),
            args=["src/a.ts:3:14"],
            verbose=True,
            log_level="WARNING",
        )

        assert lines == []


class TestConnections:
    async def test_dropped_client_does_not_cancel_work(
        self, daemon: DaemonServer, project: Path
    ) -> None:
        request = {"action": "definition", "projectRoot": str(project), "args": ["src/a.ts:3:14"]}
        _reader, writer = await asyncio.open_unix_connection(daemon.socket_path)
        writer.write(json.dumps(request).encode() + b"\n")
        await writer.drain()
        writer.close()
        await writer.wait_closed()

        for _ in range(100):
            if get_metrics().counter("definition.calls") and not daemon._work:
                break
            await asyncio.sleep(0.05)

        session = daemon.manager.get(project)
        assert session is not None and session.is_ready
        assert get_metrics().counter("definition.errors") == 0

    def test_states_only_move_forward(self) -> None:
        conn = Connection(1, None, None)  # type: ignore[arg-type]
        conn.advance(ConnectionState.READING)

        with pytest.raises(RuntimeError):
            conn.advance(ConnectionState.STREAMING)
        with pytest.raises(RuntimeError):
            conn.advance(ConnectionState.ACCEPTED)
        assert conn.history == [ConnectionState.ACCEPTED, ConnectionState.READING]

    def test_closed_connection_ignores_late_transitions(self) -> None:
        conn = Connection(1, None, None)  # type: ignore[arg-type]
        for state in list(ConnectionState)[1:]:
            conn.advance(state)

        conn.advance(ConnectionState.DISPATCHED)

        assert conn.is_closed
        assert conn.history == list(ConnectionState)

    async def test_shutdown_while_reading(self, config: Config, tmp_path: Path) -> None:
        server = DaemonServer(config, aliases=AliasStore(tmp_path / "aliases.yaml"))
        await server.start()
        _reader, writer = await asyncio.open_unix_connection(server.socket_path)
        for _ in range(100):
            if server._connections:
                break
            await asyncio.sleep(0.01)
        conn = next(iter(server._connections))

        await server.close()
        for _ in range(100):
            if not server._connections:
                break
            await asyncio.sleep(0.01)
        writer.close()

        assert conn.is_closed
        assert not server._connections
        assert get_metrics().counter("connection.protocol_errors") == 0

    def test_log_frames_dropped_when_client_lags(self) -> None:
        writer = StubWriter(buffered=LOG_BUFFER_LIMIT)
        conn = Connection(1, None, writer)  # type: ignore[arg-type]
        conn.advance(ConnectionState.READING)
        conn.advance(ConnectionState.DISPATCHED)

        conn.log_sink("first")
        writer.buffered = 0
        conn.log_sink("second")

        assert [json.loads(chunk)["data"] for chunk in writer.chunks] == ["second"]
        assert conn.dropped_logs == 1
        assert get_metrics().counter("connection.log_frames_dropped") == 1


class TestDaemonLifecycle:
    async def test_socket_and_pid_file(self, daemon: DaemonServer, config: Config) -> None:
        assert await probe(daemon.socket_path)
        assert oct(os.stat(daemon.socket_path).st_mode & 0o777) == "0o600"
        assert Path(config.daemon.pid_file).read_text().strip() == str(os.getpid())

    async def test_second_daemon_refuses_to_start(
        self, daemon: DaemonServer, config: Config, tmp_path: Path
    ) -> None:
        other = DaemonServer(config, aliases=AliasStore(tmp_path / "aliases.yaml"))

        with pytest.raises(AlreadyRunning):
            await other.start()
        assert await probe(daemon.socket_path)

    async def test_stale_socket_is_replaced(self, config: Config, tmp_path: Path) -> None:
        Path(config.daemon.socket_path).write_text("")
        server = DaemonServer(config, aliases=AliasStore(tmp_path / "aliases.yaml"))

        await server.start()
        try:
            assert await probe(config.daemon.socket_path)
        finally:
            await server.close()

    async def test_stop_action_shuts_everything_down(
        self, daemon: DaemonServer, project: Path, config: Config
    ) -> None:
        await ask(daemon, action="workspaceSymbols", project_root=str(project))
        session = daemon.manager.get(project)
        serving = asyncio.create_task(daemon.serve_until_stopped())

        frame = await ask(daemon, action="stop")
        await asyncio.wait_for(serving, timeout=10.0)

        assert isinstance(frame, ResultFrame)
        assert frame.data["stopping"] is True
        assert not session.client.is_running
        assert not os.path.exists(config.daemon.socket_path)
        assert not os.path.exists(config.daemon.pid_file)
