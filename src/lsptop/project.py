"""Project roots, file paths and ``file:line:col`` positions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from lsptop.errors import InvalidArgument

DEFAULT_MARKERS = ("tsconfig.json", "jsconfig.json")

LANGUAGE_IDS = {
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascriptreact",
    ".json": "json",
}


@dataclass(frozen=True, slots=True)
class Position:
    """A 1-based position as typed on the command line."""

    file: str
    line: int | None = None
    column: int | None = None

    def to_lsp(self) -> dict[str, int]:
        """0-based protocol position; missing parts default to the first."""
        return {
            "line": max((self.line or 1) - 1, 0),
            "character": max((self.column or 1) - 1, 0),
        }


def parse_position(text: str) -> Position:
    """Parse ``file``, ``file:line`` or ``file:line:col``.

    Raises:
        InvalidArgument: For empty input or non-numeric line/column.
    """
    if not text or text == "-":
        raise InvalidArgument("File path required (e.g., src/file.ts:10:5)")

    parts = text.split(":")
    if len(parts) > 3:
        raise InvalidArgument(f"Invalid position format: {text}. Use file:line:col")

    file = parts[0]
    if not file:
        raise InvalidArgument(f"Missing file in position: {text}")

    numbers: list[int] = []
    for label, raw in zip(("line", "column"), parts[1:]):
        try:
            value = int(raw)
        except ValueError:
            raise InvalidArgument(f"Invalid {label} number: {raw}") from None
        if value < 1:
            raise InvalidArgument(f"Invalid {label} number: {raw}")
        numbers.append(value)

    return Position(file, *numbers)


def require_location(text: str) -> Position:
    """Parse a position that must carry both line and column."""
    pos = parse_position(text)
    if pos.line is None or pos.column is None:
        raise InvalidArgument("Invalid position format. Use file.ts:line:column")
    return pos


def resolve_project_path(project_root: str | Path, file_path: str) -> Path:
    path = Path(file_path).expanduser()
    if path.is_absolute():
        return path
    return Path(project_root) / path


def has_project_marker(root: str | Path, markers: tuple[str, ...] | list[str] = DEFAULT_MARKERS) -> bool:
    root = Path(root)
    return any((root / marker).is_file() for marker in markers)


def path_to_uri(path: str | Path) -> str:
    return Path(path).resolve().as_uri()


def language_id(path: str | Path) -> str:
    return LANGUAGE_IDS.get(Path(path).suffix.lower(), "typescript")
