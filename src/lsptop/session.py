"""One project root bound to one language server process.

A Session owns its ProtocolClient (and through it the subprocess), its
DocumentTracker, and the activity clock the idle sweep reads. Operations
run inside :meth:`Session.operation`, which refuses work unless the
Session is READY and keeps count of what is in flight so a stop can let
it drain.

Lifecycle::

    STARTING --initialize ok--> READY --stop/idle--> STOPPING --> TERMINATED
        |                         |
        +------- process exit ----+----------------------------> TERMINATED
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any

from lsptop.config.schema import ServerConfig
from lsptop.documents import DocumentTracker
from lsptop.errors import (
    RequestTimeout,
    ServerError,
    SessionCrashed,
    SessionStopping,
    SpawnFailure,
)
from lsptop.logging import get_logger
from lsptop.metrics import get_metrics
from lsptop.project import Position, resolve_project_path
from lsptop.protocol.client import ProtocolClient

log = get_logger("session")

TYPESCRIPT_SUFFIXES = (".ts", ".tsx", ".mts", ".cts")
SKIP_DIRS = {"node_modules", ".git", "dist", "build", "out", "coverage"}


class SessionState(str, Enum):
    STARTING = "STARTING"
    READY = "READY"
    STOPPING = "STOPPING"
    TERMINATED = "TERMINATED"


def resolve_server_command(command: Sequence[str], root: Path) -> list[str]:
    """Prefer a project-local install of a bare executable name.

    ``vtsls`` is looked up in ``<root>/node_modules/.bin`` and
    ``<cwd>/node_modules/.bin`` before falling back to PATH.
    """
    resolved = list(command)
    if not resolved:
        raise SpawnFailure("No language server command configured")
    executable = resolved[0]
    if os.sep in executable:
        return resolved

    for base in (root, Path.cwd()):
        candidate = base / "node_modules" / ".bin" / executable
        if candidate.is_file():
            resolved[0] = str(candidate)
            return resolved

    found = shutil.which(executable)
    if found:
        resolved[0] = found
    return resolved


def count_typescript_files(root: Path) -> int:
    count = 0
    for _dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS and not d.startswith(".")]
        count += sum(1 for name in filenames if name.endswith(TYPESCRIPT_SUFFIXES))
    return count


class Session:
    """A warm language server for one project root.

    Args:
        root: Absolute project root; the unique key in the SessionManager.
        config: Server settings (command, timeouts, environment).
        on_terminated: Called once when the Session reaches TERMINATED,
            whether by an orderly stop or a crash.
    """

    def __init__(
        self,
        root: Path,
        config: ServerConfig,
        *,
        on_terminated: Callable[[Session], None] | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.on_terminated = on_terminated
        self.state = SessionState.STARTING
        self.crashed = False
        self.created_at = time.time()
        self.last_activity = time.monotonic()

        self.client = ProtocolClient(
            resolve_server_command(config.command, root),
            str(root),
            env=config.env,
            request_timeout=config.request_timeout,
            on_exit=self._on_client_exit,
            version_lookup=self._version_of,
        )
        self.documents = DocumentTracker(
            self.client.notify,
            on_version_change=self.client.diagnostics.invalidate,
        )

        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._terminated = asyncio.Event()

    def __repr__(self) -> str:
        return f"Session(root={str(self.root)!r}, state={self.state.value})"

    def _version_of(self, uri: str) -> int | None:
        return self.documents.version_of(uri)

    # ------------------------------------------------------------------
    # Activity clock
    # ------------------------------------------------------------------

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the server and complete the initialize handshake.

        Raises:
            SpawnFailure: The process could not start or did not finish
                initializing within ``startup_timeout``.
            SessionCrashed: The process exited during the handshake.
            SessionStopping: A stop was requested during the handshake.
        """
        log.info("Starting session for %s", self.root)
        started = time.perf_counter()
        try:
            await self.client.start()
            await self.client.initialize(str(self.root), timeout=self.config.startup_timeout)
        except RequestTimeout as e:
            await self._abort_start()
            raise SpawnFailure(
                f"Language server did not initialize within {self.config.startup_timeout:g}s"
            ) from e
        except BaseException:
            await self._abort_start()
            raise

        if self.state is not SessionState.STARTING:
            # Stopped or crashed while the handshake was finishing.
            if self.crashed:
                raise SessionCrashed("Language server exited during startup")
            raise SessionStopping("Session was stopped during startup")

        self.state = SessionState.READY
        self.touch()
        get_metrics().observe("session.start", (time.perf_counter() - started) * 1000)
        log.info("Session for %s ready (pid %s)", self.root, self.client.pid)

    async def _abort_start(self) -> None:
        if self.state is SessionState.TERMINATED:
            return
        self.state = SessionState.STOPPING
        await self.client.shutdown(grace=0.1, terminate_timeout=self.config.terminate_timeout)
        self._mark_terminated()

    async def stop(self, reason: str = "requested") -> None:
        """Stop accepting work, let in-flight operations drain, shut down.

        Safe to call more than once; later callers wait for the first stop
        to finish.
        """
        if self.state in (SessionState.STOPPING, SessionState.TERMINATED):
            await self._terminated.wait()
            return

        log.info("Stopping session for %s (%s)", self.root, reason)
        self.state = SessionState.STOPPING
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=self.config.shutdown_grace)
        except asyncio.TimeoutError:
            log.warning(
                "Session for %s still has %d operation(s) in flight; shutting down anyway",
                self.root,
                self._in_flight,
            )

        await self.client.shutdown(
            grace=self.config.shutdown_grace,
            terminate_timeout=self.config.terminate_timeout,
        )
        self._mark_terminated()

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    def _on_client_exit(self, returncode: int | None) -> None:
        if self.state in (SessionState.STOPPING, SessionState.TERMINATED):
            return
        self.crashed = True
        get_metrics().increment("session.crashes")
        log.error("Session for %s crashed (exit code %s)", self.root, returncode)
        self._mark_terminated()

    def _mark_terminated(self) -> None:
        if self._terminated.is_set():
            return
        self.state = SessionState.TERMINATED
        self._terminated.set()
        if self.on_terminated is not None:
            try:
                self.on_terminated(self)
            except Exception:
                log.exception("Termination callback for %s failed", self.root)

    @asynccontextmanager
    async def operation(self) -> AsyncIterator[None]:
        """Run one operation against a READY Session.

        Raises:
            SessionStopping: The Session is starting, stopping or stopped.
            SessionCrashed: The Session's process has exited unexpectedly.
        """
        if self.state is not SessionState.READY:
            if self.crashed:
                raise SessionCrashed(f"Session for {self.root} crashed")
            raise SessionStopping(f"Session for {self.root} is {self.state.value.lower()}")

        self._in_flight += 1
        self._drained.clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            self.touch()
            if self._in_flight == 0:
                self._drained.set()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def resolve(self, file: str) -> Path:
        return resolve_project_path(self.root, file)

    async def _position_request(
        self, method: str, position: Position, extra: dict[str, Any] | None = None
    ) -> Any:
        path = self.resolve(position.file)
        async with self.operation():
            async with self.documents.use(path) as doc:
                params: dict[str, Any] = {
                    "textDocument": {"uri": doc.uri},
                    "position": position.to_lsp(),
                }
                if extra:
                    params.update(extra)
                return await self.client.request(method, params)

    async def definition(self, position: Position) -> Any:
        return await self._position_request("textDocument/definition", position)

    async def type_definition(self, position: Position) -> Any:
        return await self._position_request("textDocument/typeDefinition", position)

    async def implementation(self, position: Position) -> Any:
        return await self._position_request("textDocument/implementation", position)

    async def hover(self, position: Position) -> Any:
        return await self._position_request("textDocument/hover", position)

    async def references(self, position: Position, include_declaration: bool = False) -> Any:
        return await self._position_request(
            "textDocument/references",
            position,
            {"context": {"includeDeclaration": include_declaration}},
        )

    async def document_symbols(self, file: str) -> Any:
        path = self.resolve(file)
        async with self.operation():
            async with self.documents.use(path) as doc:
                return await self.client.request(
                    "textDocument/documentSymbol", {"textDocument": {"uri": doc.uri}}
                )

    async def workspace_symbols(self, query: str = "") -> Any:
        async with self.operation():
            return await self.client.request("workspace/symbol", {"query": query})

    async def diagnostics(self, file: str) -> list[dict[str, Any]]:
        """Diagnostics for ``file`` at its current on-disk content.

        A published list for the current document version is returned as
        is. Otherwise wait for the server to publish one; if it does not,
        wait out the settle delay and pull diagnostics explicitly.
        """
        path = self.resolve(file)
        metrics = get_metrics()
        cache = self.client.diagnostics
        loop = asyncio.get_running_loop()

        async with self.operation():
            async with self.documents.use(path) as doc:
                cached = cache.get(doc.uri, doc.version)
                if cached is not None:
                    if not doc.changed:
                        metrics.increment("diagnostics.cache_hits")
                    return list(cached.diagnostics)

                metrics.increment("diagnostics.cache_misses")
                started = loop.time()
                entry = await cache.wait_for(doc.uri, doc.version, self.config.diagnostics_timeout)
                if entry is not None:
                    return list(entry.diagnostics)

                remaining = self.config.settle_delay - (loop.time() - started)
                if remaining > 0:
                    await asyncio.sleep(remaining)

                pulled = await self._pull_diagnostics(doc.uri)
                if pulled is not None:
                    cache.update(doc.uri, pulled, doc.version)
                    return list(pulled)

                latest = cache.latest(doc.uri)
                return list(latest.diagnostics) if latest else []

    async def _pull_diagnostics(self, uri: str) -> list[dict[str, Any]] | None:
        if not self.client.capabilities.get("diagnosticProvider"):
            return None
        try:
            report = await self.client.request(
                "textDocument/diagnostic", {"textDocument": {"uri": uri}}
            )
        except ServerError as e:
            log.debug("Diagnostic pull for %s failed: %s", uri, e)
            return None
        if not isinstance(report, dict):
            return None
        items = report.get("items")
        return items if isinstance(items, list) else None

    async def refresh(self) -> dict[str, int]:
        """Re-sync every tracked document with what is on disk."""
        async with self.operation():
            changed = await self.documents.refresh()
            typescript_files = await asyncio.to_thread(count_typescript_files, self.root)
            return {
                "trackedDocuments": len(self.documents),
                "changedDocuments": changed,
                "typescriptFiles": typescript_files,
            }

    def describe(self) -> dict[str, Any]:
        """Status entry for this Session."""
        return {
            "root": str(self.root),
            "state": self.state.value,
            "pid": self.client.pid,
            "documents": len(self.documents),
            "pendingRequests": self.client.pending_count,
            "inFlight": self._in_flight,
            "idleSeconds": round(self.idle_seconds(), 1),
            "uptimeSeconds": round(time.time() - self.created_at, 1),
        }
