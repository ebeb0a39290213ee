"""Action name -> Session operation.

Handlers receive the SessionManager, the resolved project root and the
request's string arguments, and return whatever the language server
answered. ``status`` and ``stop`` act on the daemon itself and are
handled by the server, not here.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from lsptop.errors import InvalidArgument, UnknownAction
from lsptop.manager import SessionManager
from lsptop.project import require_location

ActionHandler = Callable[[SessionManager, Path, list[str]], Awaitable[Any]]

ACTIONS: dict[str, ActionHandler] = {}

# Actions that do not need a project root.
DAEMON_ACTIONS = frozenset({"status", "stop"})


def action(name: str) -> Callable[[ActionHandler], ActionHandler]:
    def register(handler: ActionHandler) -> ActionHandler:
        ACTIONS[name] = handler
        return handler

    return register


def available_actions() -> list[str]:
    return sorted(ACTIONS.keys() | DAEMON_ACTIONS)


def _arg(args: list[str], index: int, what: str) -> str:
    if len(args) <= index or not args[index]:
        raise InvalidArgument(f"Missing argument: {what}")
    return args[index]


def parse_flags(args: list[str], index: int) -> dict[str, Any]:
    """Optional JSON object of flags at ``args[index]``."""
    if len(args) <= index or not args[index]:
        return {}
    try:
        flags = json.loads(args[index])
    except json.JSONDecodeError as e:
        raise InvalidArgument(f"Flags must be a JSON object: {e}") from e
    if not isinstance(flags, dict):
        raise InvalidArgument("Flags must be a JSON object")
    return flags


def filter_symbols(symbols: list[dict[str, Any]], query: str) -> list[dict[str, Any]]:
    """Keep symbols whose name contains ``query`` (case-insensitive).

    A matching symbol keeps its whole subtree. A non-matching symbol is kept
    only when one of its descendants matches, with its children narrowed to
    the matching branches.
    """
    needle = query.lower()
    kept: list[dict[str, Any]] = []
    for symbol in symbols:
        if needle in str(symbol.get("name", "")).lower():
            kept.append(symbol)
            continue
        children = symbol.get("children")
        if children:
            matching = filter_symbols(children, query)
            if matching:
                kept.append({**symbol, "children": matching})
    return kept


async def dispatch(manager: SessionManager, name: str, root: Path, args: list[str]) -> Any:
    handler = ACTIONS.get(name)
    if handler is None:
        raise UnknownAction(
            f"Unknown action: {name}. Available: {', '.join(available_actions())}"
        )
    return await handler(manager, root, args)


@action("definition")
async def definition(manager: SessionManager, root: Path, args: list[str]) -> Any:
    position = require_location(_arg(args, 0, "file:line:column"))
    session = await manager.get_or_create(root)
    return await session.definition(position)


@action("typeDefinition")
async def type_definition(manager: SessionManager, root: Path, args: list[str]) -> Any:
    position = require_location(_arg(args, 0, "file:line:column"))
    session = await manager.get_or_create(root)
    return await session.type_definition(position)


@action("implementation")
async def implementation(manager: SessionManager, root: Path, args: list[str]) -> Any:
    position = require_location(_arg(args, 0, "file:line:column"))
    session = await manager.get_or_create(root)
    return await session.implementation(position)


@action("hover")
async def hover(manager: SessionManager, root: Path, args: list[str]) -> Any:
    position = require_location(_arg(args, 0, "file:line:column"))
    session = await manager.get_or_create(root)
    return await session.hover(position)


@action("references")
async def references(manager: SessionManager, root: Path, args: list[str]) -> Any:
    position = require_location(_arg(args, 0, "file:line:column"))
    flags = parse_flags(args, 1)
    include_declaration = flags.get("includeDeclaration", False)
    if not isinstance(include_declaration, bool):
        raise InvalidArgument("includeDeclaration must be true or false")
    session = await manager.get_or_create(root)
    return await session.references(position, include_declaration=include_declaration)


@action("diagnostics")
async def diagnostics(manager: SessionManager, root: Path, args: list[str]) -> Any:
    file = _arg(args, 0, "file")
    session = await manager.get_or_create(root)
    return await session.diagnostics(file)


@action("documentSymbols")
async def document_symbols(manager: SessionManager, root: Path, args: list[str]) -> Any:
    file = _arg(args, 0, "file")
    query = parse_flags(args, 1).get("query")
    if query is not None and not isinstance(query, str):
        raise InvalidArgument("query must be a string")
    session = await manager.get_or_create(root)
    symbols = await session.document_symbols(file)
    if query and isinstance(symbols, list):
        return filter_symbols(symbols, query)
    return symbols


@action("workspaceSymbols")
async def workspace_symbols(manager: SessionManager, root: Path, args: list[str]) -> Any:
    query = args[0] if args else ""
    session = await manager.get_or_create(root)
    return await session.workspace_symbols(query)


@action("initialize")
async def initialize(manager: SessionManager, root: Path, args: list[str]) -> Any:
    session = await manager.restart(root)
    return {"root": str(session.root), "pid": session.client.pid, "state": session.state.value}


@action("refresh")
async def refresh(manager: SessionManager, root: Path, args: list[str]) -> Any:
    session = await manager.get_or_create(root)
    return await session.refresh()
