"""Project alias store.

Maps short names to absolute project roots, persisted as a flat YAML
mapping in ``aliases.yaml`` next to the user config file.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

import yaml
from filelock import FileLock

from lsptop.config.paths import get_aliases_path

_log = logging.getLogger("lsptop.config")

LOCK_TIMEOUT = 10


class AliasStore:
    """Read/write access to the alias file.

    The file is re-read on every lookup so that a long-running daemon sees
    aliases added by the CLI after it started.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or get_aliases_path()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            _log.warning("Could not read aliases from %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            _log.warning("Ignoring aliases file %s: expected a mapping", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def _save(self, aliases: dict[str, str]) -> None:
        # Renamed over the target; readers never see a partial file.
        tmp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(aliases, f, default_flow_style=False, sort_keys=True)
        os.replace(tmp_path, self.path)

    def _atomic_update(self, modifier: Callable[[dict[str, str]], dict[str, str]]) -> dict[str, str]:
        """Read-modify-write with file locking."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(self.lock_path, timeout=LOCK_TIMEOUT):
            aliases = modifier(self._load())
            self._save(aliases)
            return aliases

    def add(self, alias: str, project_path: str | Path) -> Path:
        """Register ``alias`` for ``project_path`` and return the absolute path.

        Raises:
            ValueError: If the alias is empty or the path does not exist.
        """
        if not alias:
            raise ValueError("Alias must not be empty")
        absolute = Path(project_path).expanduser().resolve()
        if not absolute.exists():
            raise ValueError(f"Path does not exist: {absolute}")

        def register(aliases: dict[str, str]) -> dict[str, str]:
            aliases[alias] = str(absolute)
            return aliases

        self._atomic_update(register)
        return absolute

    def get(self, alias: str) -> str | None:
        return self._load().get(alias)

    def remove(self, alias: str) -> bool:
        removed = False

        def unregister(aliases: dict[str, str]) -> dict[str, str]:
            nonlocal removed
            removed = aliases.pop(alias, None) is not None
            return aliases

        self._atomic_update(unregister)
        return removed

    def list(self) -> dict[str, str]:
        return dict(self._load())
