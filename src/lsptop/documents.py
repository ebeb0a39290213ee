"""Per-session record of which files the language server has seen.

The first time a URI is used the tracker sends ``textDocument/didOpen``
with version 1. Later uses compare the file on disk against what was last
sent; if the text differs it sends ``textDocument/didChange`` with the next
version. A URI is opened at most once per tracker.

Each URI has a gate that lets any number of operations read the document
concurrently while a version bump waits for them to drain, so a change is
never interleaved with a request issued against the previous version.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from lsptop.errors import InvalidArgument
from lsptop.logging import get_logger
from lsptop.project import language_id, path_to_uri

log = get_logger("documents")

SyncAction = Literal["announce", "change", "unchanged"]
Notifier = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass
class DocumentEntry:
    uri: str
    path: Path
    language_id: str
    version: int = 0
    announced: bool = False
    fingerprint: tuple[int, int] | None = None  # (mtime_ns, size)
    digest: str | None = None


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    """What the tracker did before letting an operation through."""

    uri: str
    version: int
    action: SyncAction

    @property
    def changed(self) -> bool:
        return self.action != "unchanged"


class _UriGate:
    """Shared/exclusive gate; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writing = False
        self._writers_waiting = 0

    async def acquire_shared(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writing and self._writers_waiting == 0)
            self._readers += 1

    async def release_shared(self) -> None:
        async with self._cond:
            self._readers -= 1
            self._cond.notify_all()

    async def acquire_exclusive(self) -> None:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writing and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writing = True

    async def downgrade(self) -> None:
        """Turn the held exclusive hold into a shared one without a gap."""
        async with self._cond:
            self._writing = False
            self._readers += 1
            self._cond.notify_all()

    async def release_exclusive(self) -> None:
        async with self._cond:
            self._writing = False
            self._cond.notify_all()


def _fingerprint(path: Path) -> tuple[int, int]:
    try:
        stat = path.stat()
    except FileNotFoundError:
        raise InvalidArgument(f"File not found: {path}") from None
    return stat.st_mtime_ns, stat.st_size


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        raise InvalidArgument(f"File not found: {path}") from None
    except IsADirectoryError:
        raise InvalidArgument(f"Not a file: {path}") from None


def _digest(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class DocumentTracker:
    """Open/change bookkeeping for one Session.

    Args:
        notify: Sends a notification to the language server.
        on_version_change: Called with the URI right after its version
            advances (before the change notification goes out).
    """

    def __init__(
        self,
        notify: Notifier,
        on_version_change: Callable[[str], None] | None = None,
    ) -> None:
        self._notify = notify
        self._on_version_change = on_version_change
        self._entries: dict[str, DocumentEntry] = {}
        self._gates: dict[str, _UriGate] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, uri: object) -> bool:
        return uri in self._entries

    def get(self, uri: str) -> DocumentEntry | None:
        return self._entries.get(uri)

    def version_of(self, uri: str) -> int | None:
        entry = self._entries.get(uri)
        return entry.version if entry else None

    def paths(self) -> list[Path]:
        return [entry.path for entry in self._entries.values()]

    def _gate(self, uri: str) -> _UriGate:
        gate = self._gates.get(uri)
        if gate is None:
            gate = self._gates[uri] = _UriGate()
        return gate

    def _needs_sync(self, entry: DocumentEntry | None, path: Path) -> bool:
        if entry is None or not entry.announced:
            return True
        if _fingerprint(path) == entry.fingerprint:
            return False
        return _digest(_read_text(path)) != entry.digest

    @asynccontextmanager
    async def use(self, path: str | Path) -> AsyncIterator[SyncOutcome]:
        """Bring ``path`` up to date, then hold it steady for the caller.

        While the ``async with`` body runs no other task can change the
        document's version, so requests issued inside it refer to the
        version in the yielded outcome.
        """
        path = Path(path)
        uri = path_to_uri(path)
        gate = self._gate(uri)

        await gate.acquire_shared()
        try:
            stale = self._needs_sync(self._entries.get(uri), path)
        except BaseException:
            await gate.release_shared()
            raise

        if stale:
            await gate.release_shared()
            await gate.acquire_exclusive()
            try:
                outcome = await self._sync_exclusive(uri, path)
            except BaseException:
                await gate.release_exclusive()
                raise
            await gate.downgrade()
        else:
            entry = self._entries[uri]
            outcome = SyncOutcome(uri, entry.version, "unchanged")

        try:
            yield outcome
        finally:
            await gate.release_shared()

    async def sync(self, path: str | Path) -> SyncOutcome:
        """Bring ``path`` up to date without holding it afterwards."""
        async with self.use(path) as outcome:
            return outcome

    async def _sync_exclusive(self, uri: str, path: Path) -> SyncOutcome:
        fingerprint = _fingerprint(path)
        text = _read_text(path)
        digest = _digest(text)
        entry = self._entries.get(uri)

        if entry is None or not entry.announced:
            entry = DocumentEntry(uri=uri, path=path, language_id=language_id(path))
            entry.version = 1
            entry.announced = True
            entry.fingerprint = fingerprint
            entry.digest = digest
            self._entries[uri] = entry
            log.debug("Announcing %s (version 1)", uri)
            await self._notify(
                "textDocument/didOpen",
                {
                    "textDocument": {
                        "uri": uri,
                        "languageId": entry.language_id,
                        "version": 1,
                        "text": text,
                    }
                },
            )
            return SyncOutcome(uri, 1, "announce")

        if digest == entry.digest:
            # Touched on disk, same text.
            entry.fingerprint = fingerprint
            return SyncOutcome(uri, entry.version, "unchanged")

        entry.version += 1
        entry.fingerprint = fingerprint
        entry.digest = digest
        if self._on_version_change is not None:
            self._on_version_change(uri)
        log.debug("Changing %s (version %d)", uri, entry.version)
        await self._notify(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": entry.version},
                "contentChanges": [{"text": text}],
            },
        )
        return SyncOutcome(uri, entry.version, "change")

    async def refresh(self) -> int:
        """Re-sync every tracked document; returns how many changed."""
        changed = 0
        for path in self.paths():
            try:
                outcome = await self.sync(path)
            except InvalidArgument as e:
                log.info("Skipping %s during refresh: %s", path, e)
                continue
            if outcome.changed:
                changed += 1
        return changed
