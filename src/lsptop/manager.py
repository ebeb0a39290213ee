"""Project root -> Session table and the idle sweep."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from lsptop.config import Config, get_config
from lsptop.errors import ProjectNotFound, SessionStopping
from lsptop.logging import detach_caller_sink, get_logger
from lsptop.metrics import get_metrics
from lsptop.project import has_project_marker
from lsptop.session import Session, SessionState

log = get_logger("manager")


def normalize_root(root: str | Path) -> Path:
    return Path(root).expanduser().resolve()


class SessionManager:
    """Creates Sessions lazily, one per project root.

    All mutation happens on the daemon's event loop. A root whose Session is
    still starting is not started twice: later callers await the same
    startup task.

    Example:
        ```python
        manager = SessionManager(config)
        manager.start_sweeper()
        session = await manager.get_or_create("/work/app")
        result = await session.definition(position)
        await manager.shutdown_all()
        ```
    """

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or get_config()
        self._sessions: dict[Path, Session] = {}
        self._starting: dict[Path, asyncio.Task[Session]] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._closing = False

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, root: object) -> bool:
        if not isinstance(root, (str, Path)):
            return False
        return normalize_root(root) in self._sessions

    def get(self, root: str | Path) -> Session | None:
        return self._sessions.get(normalize_root(root))

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def get_or_create(self, root: str | Path) -> Session:
        """Return the READY Session for ``root``, starting one if needed.

        Reusing a Session resets its idle clock.

        Raises:
            ProjectNotFound: ``root`` is missing or has no project marker.
                Checked before anything is spawned.
            SessionStopping: The manager itself is shutting down.
        """
        if self._closing:
            raise SessionStopping("Daemon is shutting down")
        key = normalize_root(root)

        session = self._sessions.get(key)
        if session is not None and session.state is SessionState.STOPPING:
            # Let the old process go before its replacement starts.
            await session.wait_terminated()
            session = self._sessions.get(key)

        if session is not None and session.state is SessionState.READY:
            session.touch()
            return session

        pending = self._starting.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        self._check_project(key)
        task = asyncio.create_task(self._start_session(key), name=f"session-start-{key.name}")
        self._starting[key] = task
        return await asyncio.shield(task)

    def _check_project(self, root: Path) -> None:
        if not root.is_dir():
            raise ProjectNotFound(f"Project root does not exist: {root}")
        markers = self.config.server.project_markers
        if not has_project_marker(root, markers):
            raise ProjectNotFound(f"No {' or '.join(markers)} found in {root}")

    async def _start_session(self, root: Path) -> Session:
        detach_caller_sink()
        try:
            session = Session(root, self.config.server, on_terminated=self._forget)
            self._sessions[root] = session
            get_metrics().increment("session.created")
            await session.start()
            return session
        finally:
            self._starting.pop(root, None)

    def _forget(self, session: Session) -> None:
        if self._sessions.get(session.root) is session:
            del self._sessions[session.root]
            log.debug("Removed session for %s", session.root)

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def stop_session(self, root: str | Path, reason: str = "requested") -> bool:
        """Stop the Session for ``root``; False if there was none."""
        session = self._sessions.get(normalize_root(root))
        if session is None:
            return False
        await session.stop(reason)
        return True

    async def restart(self, root: str | Path) -> Session:
        """Replace the Session for ``root`` with a freshly started one."""
        key = normalize_root(root)
        self._check_project(key)
        pending = self._starting.get(key)
        if pending is not None:
            try:
                await asyncio.shield(pending)
            except Exception as e:
                log.debug("Pending start for %s failed before restart: %s", key, e)
        await self.stop_session(key, reason="restart")
        return await self.get_or_create(key)

    async def sweep(self, now: float | None = None) -> list[Path]:
        """Stop every READY Session idle for longer than ``idle_timeout``.

        Returns:
            The roots that were stopped.
        """
        timeout = self.config.daemon.idle_timeout
        idle = [
            session
            for session in self._sessions.values()
            if session.state is SessionState.READY and session.idle_seconds(now) > timeout
        ]
        if not idle:
            return []

        for session in idle:
            log.info(
                "Session for %s idle for %.0fs (limit %.0fs)",
                session.root,
                session.idle_seconds(now),
                timeout,
            )
        results = await asyncio.gather(
            *(session.stop(reason="idle") for session in idle), return_exceptions=True
        )
        for session, result in zip(idle, results):
            if isinstance(result, BaseException):
                log.error("Stopping idle session for %s failed: %s", session.root, result)
        get_metrics().increment("session.idle_stops", len(idle))
        return [session.root for session in idle]

    async def _run_sweeper(self) -> None:
        detach_caller_sink()
        interval = self.config.daemon.sweep_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                log.exception("Idle sweep failed")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._run_sweeper(), name="idle-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def shutdown_all(self) -> None:
        """Stop the sweeper and every Session; new requests are refused."""
        self._closing = True
        await self.stop_sweeper()
        sessions = list(self._sessions.values())
        if sessions:
            log.info("Stopping %d session(s)", len(sessions))
        results = await asyncio.gather(
            *(session.stop(reason="daemon stopping") for session in sessions),
            return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                log.error("Stopping session for %s failed: %s", session.root, result)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "roots": [session.describe() for session in self._sessions.values()],
        }
