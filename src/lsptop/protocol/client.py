"""Protocol client for one language server subprocess.

The client owns the subprocess and its pipes. Outbound requests get a
fresh integer id and a :class:`PendingRequest` whose future is settled by
the reader task when the matching response arrives. Notifications from
the server are dispatched by method name; ``textDocument/publishDiagnostics``
feeds the :class:`DiagnosticsCache` and wakes anyone waiting on that URI.

When the subprocess goes away every still-pending request is rejected:
with ``SessionCrashed`` if nobody asked it to stop, ``SessionStopping``
otherwise. Nothing is left unresolved.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lsptop.errors import (
    DaemonError,
    FramingError,
    ProtocolError,
    RequestTimeout,
    ServerError,
    SessionCrashed,
    SessionStopping,
    SpawnFailure,
)
from lsptop.logging import TRACE, detach_caller_sink, get_logger
from lsptop.protocol.framing import read_message, write_message
from lsptop.protocol.messages import (
    METHOD_NOT_FOUND,
    Message,
    Notification,
    Request,
    Response,
    error_response,
    parse_message,
)

log = get_logger("protocol")

PUBLISH_DIAGNOSTICS = "textDocument/publishDiagnostics"


@dataclass
class PendingRequest:
    """An outbound request waiting for its response."""

    id: int
    method: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)


@dataclass
class DiagnosticsEntry:
    """Most recent diagnostics published for one URI."""

    uri: str
    diagnostics: list[dict[str, Any]]
    version: int | None
    stale: bool = False
    received_at: float = field(default_factory=time.monotonic)


class DiagnosticsCache:
    """URI -> latest diagnostics, with per-URI waiters.

    An entry is trusted only for the document version it was recorded
    against; :meth:`invalidate` marks it stale as soon as the tracker
    advances that URI's version.
    """

    def __init__(self) -> None:
        self._entries: dict[str, DiagnosticsEntry] = {}
        self._waiters: dict[str, list[asyncio.Future[None]]] = {}

    def update(self, uri: str, diagnostics: list[dict[str, Any]], version: int | None) -> None:
        self._entries[uri] = DiagnosticsEntry(uri, list(diagnostics), version)
        for waiter in self._waiters.pop(uri, []):
            if not waiter.done():
                waiter.set_result(None)

    def invalidate(self, uri: str) -> None:
        entry = self._entries.get(uri)
        if entry is not None:
            entry.stale = True

    def latest(self, uri: str) -> DiagnosticsEntry | None:
        return self._entries.get(uri)

    def get(self, uri: str, version: int) -> DiagnosticsEntry | None:
        """Return the entry only if it is fresh for ``version``."""
        entry = self._entries.get(uri)
        if entry is None or entry.stale or entry.version != version:
            return None
        return entry

    async def wait_for(self, uri: str, version: int, timeout: float) -> DiagnosticsEntry | None:
        """Wait until diagnostics for ``version`` are published, or time out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            entry = self.get(uri, version)
            if entry is not None:
                return entry
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            waiter: asyncio.Future[None] = loop.create_future()
            self._waiters.setdefault(uri, []).append(waiter)
            try:
                await asyncio.wait_for(waiter, remaining)
            except asyncio.TimeoutError:
                return self.get(uri, version)
            finally:
                waiters = self._waiters.get(uri)
                if waiters and waiter in waiters:
                    waiters.remove(waiter)

    def __len__(self) -> int:
        return len(self._entries)


async def terminate_process(process: asyncio.subprocess.Process, timeout: float) -> None:
    """SIGTERM, then SIGKILL if the process is still around after ``timeout``."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
        return
    except asyncio.TimeoutError:
        log.warning("Language server pid %d ignored SIGTERM, killing", process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


class ProtocolClient:
    """JSON-RPC over the stdio pipes of one language server process."""

    def __init__(
        self,
        command: Sequence[str],
        cwd: str,
        *,
        env: dict[str, str] | None = None,
        request_timeout: float = 10.0,
        on_exit: Callable[[int | None], None] | None = None,
        version_lookup: Callable[[str], int | None] | None = None,
    ) -> None:
        self.command = list(command)
        self.cwd = cwd
        self.env = env or {}
        self.request_timeout = request_timeout
        self.on_exit = on_exit
        self.version_lookup = version_lookup
        self.diagnostics = DiagnosticsCache()
        self.capabilities: dict[str, Any] = {}

        self._process: asyncio.subprocess.Process | None = None
        self._pending: dict[int, PendingRequest] = {}
        self._next_id = 0
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._closing = False
        self._exited = asyncio.Event()
        self._returncode: int | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        """Spawn the server and start the reader tasks.

        Raises:
            SpawnFailure: If the executable cannot be started.
        """
        if self._process is not None:
            raise RuntimeError("Protocol client already started")

        process_env = os.environ.copy()
        process_env.update(self.env)
        log.info("Starting language server: %s (cwd=%s)", " ".join(self.command), self.cwd)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=process_env,
            )
        except OSError as e:
            raise SpawnFailure(f"Could not start {self.command[0]}: {e}") from e

        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"lsp-reader-{self._process.pid}"
        )
        self._stderr_task = asyncio.create_task(
            self._stderr_loop(), name=f"lsp-stderr-{self._process.pid}"
        )
        log.debug("Language server started with pid %d", self._process.pid)

    async def initialize(self, root: str, *, timeout: float | None = None) -> dict[str, Any]:
        """Run the initialize / initialized handshake for ``root``."""
        root_uri = Path(root).as_uri()
        result = await self.request(
            "initialize",
            {
                "processId": os.getpid(),
                "rootUri": root_uri,
                "rootPath": root,
                "workspaceFolders": [{"uri": root_uri, "name": os.path.basename(root) or root}],
                "capabilities": {
                    "workspace": {"workspaceFolders": True, "configuration": True},
                    "textDocument": {
                        "synchronization": {"openClose": True, "change": 1},
                        "publishDiagnostics": {
                            "relatedInformation": True,
                            "versionSupport": True,
                            "tagSupport": {"valueSet": [1, 2]},
                        },
                        "diagnostic": {
                            "dynamicRegistration": False,
                            "relatedDocumentSupport": False,
                        },
                        "definition": {"linkSupport": False},
                        "hover": {"contentFormat": ["markdown", "plaintext"]},
                        "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
                    },
                },
            },
            timeout=timeout,
        )
        self.capabilities = (result or {}).get("capabilities", {}) if isinstance(result, dict) else {}
        await self.notify("initialized", {})
        return self.capabilities

    async def shutdown(self, *, grace: float = 2.0, terminate_timeout: float = 3.0) -> None:
        """Ask the server to exit, escalating to SIGTERM/SIGKILL."""
        process = self._process
        if process is None:
            return
        self._closing = True

        if self.is_running:
            try:
                await self.request("shutdown", timeout=grace)
                await self.notify("exit")
            except DaemonError as e:
                log.debug("Graceful shutdown request failed: %s", e)

        try:
            await asyncio.wait_for(self._exited.wait(), timeout=grace)
        except asyncio.TimeoutError:
            log.info("Language server pid %d did not exit in %.1fs", process.pid, grace)
            await terminate_process(process, terminate_timeout)

        await self._join_tasks()

    async def _join_tasks(self) -> None:
        for task in (self._reader_task, self._stderr_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=1.0)
            except asyncio.TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, message: Request | Response | Notification) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise SessionCrashed("Language server not started")
        if self._exited.is_set():
            raise self._exit_error()
        log.log(TRACE, "--> %s", message.to_dict(), extra={"flag": "protocol"})
        async with self._write_lock:
            try:
                await write_message(process.stdin, message.to_dict())
            except (BrokenPipeError, ConnectionResetError) as e:
                raise SessionCrashed(f"Language server pipe closed: {e}") from e

    async def notify(self, method: str, params: Any = None) -> None:
        await self._send(Notification(method, params))

    async def request(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            RequestTimeout: No response within ``timeout`` (default
                ``request_timeout``). The Session stays usable.
            ServerError: The server answered with an error payload.
            SessionCrashed / SessionStopping: The process went away.
        """
        if self._closing and method != "shutdown":
            raise SessionStopping(f"Language server is shutting down; {method} rejected")

        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, method, future)

        limit = self.request_timeout if timeout is None else timeout
        try:
            await self._send(Request(request_id, method, params))
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError:
            raise RequestTimeout(f"Request {method} timed out after {limit:g} seconds") from None
        finally:
            self._pending.pop(request_id, None)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        detach_caller_sink()
        process = self._process
        assert process is not None and process.stdout is not None
        try:
            while True:
                try:
                    raw = await read_message(process.stdout)
                except FramingError as e:
                    # The stream cannot be resynchronized after a bad frame.
                    log.error("Unreadable message from language server: %s", e)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    break
                if raw is None:
                    break
                log.log(TRACE, "<-- %s", raw, extra={"flag": "protocol"})
                try:
                    message = parse_message(raw)
                except ProtocolError as e:
                    log.warning("Ignoring message: %s", e)
                    continue
                await self._dispatch(message)
        finally:
            returncode = await process.wait()
            self._handle_exit(returncode)

    async def _stderr_loop(self) -> None:
        detach_caller_sink()
        process = self._process
        assert process is not None and process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                log.warning("Language server stderr: %s", text)

    async def _dispatch(self, message: Message) -> None:
        if isinstance(message, Response):
            self._resolve(message)
        elif isinstance(message, Request):
            await self._answer_server_request(message)
        else:
            self._handle_notification(message)

    def _resolve(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None) if isinstance(response.id, int) else None
        if pending is None:
            log.debug("Dropping response for unknown or expired request id %r", response.id)
            return
        if pending.future.done():
            return
        if response.error is not None:
            message = response.error.get("message") or "Unknown error"
            pending.future.set_exception(
                ServerError(
                    f"{pending.method}: {message}",
                    server_code=response.error.get("code"),
                    data=response.error.get("data"),
                )
            )
        else:
            pending.future.set_result(response.result)

    def _handle_notification(self, notification: Notification) -> None:
        if notification.method == PUBLISH_DIAGNOSTICS:
            self._record_diagnostics(notification.params or {})
        elif notification.method == "window/logMessage":
            params = notification.params or {}
            log.log(TRACE, "server: %s", params.get("message", ""), extra={"flag": "protocol"})
        else:
            log.debug("Unhandled notification %s", notification.method)

    def _record_diagnostics(self, params: dict[str, Any]) -> None:
        uri = params.get("uri")
        if not isinstance(uri, str):
            log.warning("publishDiagnostics without uri ignored")
            return
        diagnostics = params.get("diagnostics") or []
        version = params.get("version")
        if not isinstance(version, int) and self.version_lookup is not None:
            version = self.version_lookup(uri)
        log.debug("Diagnostics received for %s (version=%s, count=%d)", uri, version, len(diagnostics))
        self.diagnostics.update(uri, diagnostics, version)

    async def _answer_server_request(self, request: Request) -> None:
        if request.method == "workspace/configuration":
            items = (request.params or {}).get("items") or [{}]
            reply = Response(request.id, result=[{} for _ in items])
        elif request.method in (
            "window/workDoneProgress/create",
            "client/registerCapability",
            "client/unregisterCapability",
        ):
            reply = Response(request.id, result=None)
        else:
            log.debug("Rejecting server request %s", request.method)
            reply = error_response(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")
        try:
            await self._send(reply)
        except DaemonError as e:
            log.debug("Could not answer %s: %s", request.method, e)

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    def _exit_error(self) -> DaemonError:
        if self._closing:
            return SessionStopping("Language server was shut down")
        return SessionCrashed(f"Language server exited unexpectedly (code {self._returncode})")

    def _handle_exit(self, returncode: int | None) -> None:
        if self._exited.is_set():
            return
        self._returncode = returncode
        self._exited.set()

        if self._closing:
            log.info("Language server exited (code %s)", returncode)
        else:
            log.error(
                "Language server crashed (code %s) with %d pending request(s)",
                returncode,
                len(self._pending),
            )

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(self._exit_error())

        if self.on_exit is not None:
            try:
                self.on_exit(returncode)
            except Exception:
                log.exception("Exit callback failed")
