"""The daemon's connection server.

Listens on a unix socket. Each connection carries exactly one request
object (newline optional); the server answers with newline-delimited
frames and closes:

    client                          daemon
      | -- {"action": ...}\\n -->      |   ACCEPTED -> READING
      |                               |   DISPATCHED (manager / action)
      | <-- {"type":"log",...}\\n --   |   STREAMING (verbose requests only)
      | <-- {"type":"result",...}\\n - |
      |           close               |   CLOSED

Every path ends in exactly one ``result`` or ``error`` frame. A dropped
client does not cancel work already sent to a language server; its
result is discarded.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import signal
from enum import Enum
from pathlib import Path
from typing import Any

from lsptop.actions import ACTIONS, DAEMON_ACTIONS, dispatch
from lsptop.config import AliasStore, Config, get_config
from lsptop.daemon_client import probe
from lsptop.errors import (
    AlreadyRunning,
    DaemonError,
    InvalidArgument,
    ProjectNotFound,
    ProtocolError,
    UnknownAction,
)
from lsptop.frames import (
    MAX_REQUEST_SIZE,
    DaemonRequest,
    ErrorFrame,
    LogFrame,
    ResultFrame,
    encode_frame,
    error_frame,
    parse_request,
    read_request,
    result_frame,
)
from lsptop.logging import bind_caller_sink, get_logger, parse_level
from lsptop.manager import SessionManager
from lsptop.metrics import get_metrics

log = get_logger("server")

READ_TIMEOUT = 30.0
LOG_BUFFER_LIMIT = 1024 * 1024


class ConnectionState(str, Enum):
    ACCEPTED = "ACCEPTED"
    READING = "READING"
    DISPATCHED = "DISPATCHED"
    STREAMING = "STREAMING"
    CLOSED = "CLOSED"


_ORDER = list(ConnectionState)


class Connection:
    """One accepted client connection and its frame stream."""

    def __init__(self, conn_id: int, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.id = conn_id
        self.reader = reader
        self.writer = writer
        self.state = ConnectionState.ACCEPTED
        self.history = [ConnectionState.ACCEPTED]
        self.peer_gone = False
        self.dropped_logs = 0

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def advance(self, state: ConnectionState) -> None:
        """Move forward one step; states are never skipped or revisited.

        A closed connection stays closed: late transitions from a handler
        that was interrupted by daemon shutdown are ignored.
        """
        if state is self.state or self.is_closed:
            return
        if _ORDER.index(state) != _ORDER.index(self.state) + 1:
            raise RuntimeError(f"Connection {self.id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _write(self, frame: LogFrame | ResultFrame | ErrorFrame) -> bool:
        if self.peer_gone or self.is_closed or self.writer.is_closing():
            self.peer_gone = True
            return False
        self.advance(ConnectionState.STREAMING)
        self.writer.write(encode_frame(frame))
        return True

    def log_sink(self, line: str) -> None:
        # Log frames are never drained; past the limit they are dropped.
        if self.writer.transport.get_write_buffer_size() >= LOG_BUFFER_LIMIT:
            self.dropped_logs += 1
            get_metrics().increment("connection.log_frames_dropped")
            return
        self._write(LogFrame(data=line))

    async def finish(self, frame: ResultFrame | ErrorFrame) -> None:
        """Write the terminal frame."""
        if self.dropped_logs:
            log.debug("Connection %d dropped %d log frames", self.id, self.dropped_logs)
        if not self._write(frame):
            log.debug("Connection %d closed before its %s frame", self.id, frame.type)
            return
        try:
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            self.peer_gone = True
            log.debug("Connection %d reset while writing %s frame", self.id, frame.type)

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass
        if self.state is not ConnectionState.STREAMING:
            # Terminal frame could not be written; still walk the states.
            for state in _ORDER[_ORDER.index(self.state) + 1 : -1]:
                self.advance(state)
        self.advance(ConnectionState.CLOSED)


def validate_shape(request: DaemonRequest) -> None:
    """Reject requests that lack what their action needs.

    Raises:
        ProtocolError: A project action without projectRoot or alias, or a
            relative projectRoot.
    """
    if request.action in DAEMON_ACTIONS:
        return
    if not request.project_root and not request.alias:
        raise ProtocolError(f"Action {request.action!r} requires projectRoot or alias")
    if request.project_root and not Path(request.project_root).expanduser().is_absolute():
        raise ProtocolError(f"projectRoot must be an absolute path: {request.project_root}")


class DaemonServer:
    """Unix socket front end for a SessionManager.

    Args:
        config: Daemon configuration; defaults to the loaded config.
        manager: SessionManager to dispatch to; created from ``config`` if
            not given.
        aliases: Alias lookup for requests that name an alias instead of a
            project root.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        manager: SessionManager | None = None,
        aliases: AliasStore | None = None,
    ) -> None:
        self.config = config or get_config()
        self.manager = manager or SessionManager(self.config)
        self.aliases = aliases or AliasStore()
        self.socket_path = self.config.daemon.socket_path
        self.pid_file = self.config.daemon.pid_file

        self._server: asyncio.AbstractServer | None = None
        self._ids = itertools.count(1)
        self._connections: set[Connection] = set()
        self._work: set[asyncio.Task[Any]] = set()
        self._stop_requested = asyncio.Event()
        self._closed = False

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind the socket, write the PID file and start the idle sweep.

        Raises:
            AlreadyRunning: Another daemon answers on the socket.
        """
        await self._claim_socket()
        Path(self.socket_path).parent.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=self.socket_path, limit=MAX_REQUEST_SIZE
        )
        os.chmod(self.socket_path, 0o600)
        self._write_pid_file()
        self.manager.start_sweeper()
        log.info("Daemon listening on %s (pid %d)", self.socket_path, os.getpid())

    async def _claim_socket(self) -> None:
        if not os.path.exists(self.socket_path):
            return
        if await probe(self.socket_path):
            raise AlreadyRunning(f"A daemon is already listening on {self.socket_path}")
        log.info("Removing stale socket %s", self.socket_path)
        os.unlink(self.socket_path)

    def _write_pid_file(self) -> None:
        try:
            Path(self.pid_file).write_text(f"{os.getpid()}\n", encoding="utf-8")
        except OSError as e:
            log.warning("Could not write PID file %s: %s", self.pid_file, e)

    def request_stop(self) -> None:
        self._stop_requested.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        log.info("Received %s, stopping", sig.name)
        self.request_stop()

    async def serve_until_stopped(self) -> None:
        await self._stop_requested.wait()
        await self.close()

    async def close(self) -> None:
        """Stop listening, stop every Session, remove socket and PID file."""
        if self._closed:
            return
        self._closed = True
        log.info("Daemon stopping")
        if self._server is not None:
            self._server.close()
        if self._work:
            await asyncio.wait(self._work, timeout=self.config.server.shutdown_grace)
        await self.manager.shutdown_all()
        for conn in list(self._connections):
            await conn.close()
        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                log.debug("Listener did not close cleanly")
        for path in (self.socket_path, self.pid_file):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
        log.info("Daemon stopped")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        conn = Connection(next(self._ids), reader, writer)
        self._connections.add(conn)
        stop_after = False
        try:
            stop_after = await self._serve(conn)
        except Exception:
            log.exception("Connection %d failed", conn.id)
        finally:
            await conn.close()
            self._connections.discard(conn)
        if stop_after:
            self.request_stop()

    async def _serve(self, conn: Connection) -> bool:
        conn.advance(ConnectionState.READING)
        try:
            request = parse_request(await self._read_request(conn))
            validate_shape(request)
        except ProtocolError as e:
            if conn.is_closed:
                log.debug("Connection %d closed by shutdown while reading", conn.id)
                return False
            log.info("Connection %d: %s", conn.id, e)
            get_metrics().increment("connection.protocol_errors")
            conn.advance(ConnectionState.DISPATCHED)
            await conn.finish(error_frame(e))
            return False

        if conn.is_closed:
            log.debug("Connection %d closed by shutdown before %s ran", conn.id, request.action)
            return False
        conn.advance(ConnectionState.DISPATCHED)
        log.debug("Connection %d: %s %s", conn.id, request.action, request.args)

        sink = conn.log_sink if request.verbose else None
        level = parse_level(request.log_level, default=logging.DEBUG)
        with bind_caller_sink(sink, level=level, flags=request.trace):
            task = asyncio.create_task(self._execute(request), name=f"dispatch-{conn.id}")
        self._work.add(task)
        task.add_done_callback(self._work.discard)

        # Shielded so a dropped client never interrupts a round trip.
        frame = await asyncio.shield(task)
        await conn.finish(frame)
        return request.action == "stop" and isinstance(frame, ResultFrame)

    async def _read_request(self, conn: Connection) -> bytes:
        try:
            return await asyncio.wait_for(read_request(conn.reader), timeout=READ_TIMEOUT)
        except asyncio.TimeoutError:
            raise ProtocolError(f"No request received within {READ_TIMEOUT:g}s") from None
        except ConnectionResetError as e:
            raise ProtocolError(f"Connection closed while reading request: {e}") from e

    async def _execute(self, request: DaemonRequest) -> ResultFrame | ErrorFrame:
        if request.action not in ACTIONS and request.action not in DAEMON_ACTIONS:
            return error_frame(UnknownAction(f"Unknown action: {request.action}"))

        try:
            with get_metrics().track(request.action):
                data = await self._run_action(request)
        except DaemonError as e:
            log.info("%s failed: %s (%s)", request.action, e, e.code.value)
            return error_frame(e)
        except Exception as e:
            log.exception("Unexpected error handling %s", request.action)
            return error_frame(e)
        return result_frame(data)

    async def _run_action(self, request: DaemonRequest) -> Any:
        if request.action == "status":
            return self.status()
        if request.action == "stop":
            return {"stopping": True, "pid": os.getpid()}
        root = self.resolve_root(request)
        return await dispatch(self.manager, request.action, root, request.args)

    def resolve_root(self, request: DaemonRequest) -> Path:
        """Project root from ``projectRoot``, or from ``alias`` via the alias store."""
        if request.project_root:
            return Path(request.project_root).expanduser()
        assert request.alias is not None
        path = self.aliases.get(request.alias)
        if path is None:
            raise ProjectNotFound(f"Unknown alias: {request.alias}")
        if not Path(path).is_absolute():
            raise InvalidArgument(f"Alias {request.alias} maps to a relative path: {path}")
        return Path(path)

    def status(self) -> dict[str, Any]:
        metrics = get_metrics()
        return {
            "pid": os.getpid(),
            "socket": self.socket_path,
            "uptime": round(metrics.uptime(), 3),
            **self.manager.status(),
            "metrics": metrics.snapshot(),
        }


async def run_daemon(config: Config | None = None) -> int:
    """Run a daemon in the foreground until stopped by request or signal."""
    server = DaemonServer(config)
    try:
        await server.start()
    except AlreadyRunning as e:
        log.error("%s", e)
        return 1
    server.install_signal_handlers()
    await server.serve_until_stopped()
    return 0
