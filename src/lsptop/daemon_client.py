"""Talking to the daemon over its unix socket, and starting it if needed."""

from __future__ import annotations

import asyncio
import os
import subprocess
import sys
from collections.abc import Callable
from typing import Any

from lsptop.errors import ConnectionUnavailable, DaemonError, ErrorCode, ProtocolError
from lsptop.frames import (
    DaemonRequest,
    ErrorFrame,
    LogFrame,
    ResultFrame,
    decode_frame,
    encode_request,
)
from lsptop.logging import get_logger

log = get_logger("client")

CONNECT_TIMEOUT = 2.0
STARTUP_WAIT = 10.0
FRAME_LIMIT = 64 * 1024 * 1024


async def probe(socket_path: str, timeout: float = 1.0) -> bool:
    """True if something accepts connections on ``socket_path``."""
    if not os.path.exists(socket_path):
        return False
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(socket_path), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def send_request(
    request: DaemonRequest,
    socket_path: str,
    *,
    on_log: Callable[[str], None] | None = None,
    timeout: float | None = None,
) -> ResultFrame | ErrorFrame:
    """Send one request and read frames until the terminal one.

    Log frames are handed to ``on_log`` as they arrive.

    Raises:
        ConnectionUnavailable: The daemon socket cannot be reached.
        ProtocolError: The daemon closed the connection without a
            terminal frame, or sent something that is not a frame.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(socket_path, limit=FRAME_LIMIT),
            timeout=CONNECT_TIMEOUT,
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise ConnectionUnavailable(f"Cannot connect to daemon at {socket_path}: {e}") from e

    try:
        writer.write(encode_request(request))
        await writer.drain()
        return await asyncio.wait_for(_read_terminal(reader, on_log), timeout=timeout)
    except asyncio.TimeoutError:
        raise ConnectionUnavailable(f"Daemon did not answer within {timeout:g}s") from None
    except (ConnectionResetError, BrokenPipeError) as e:
        raise ConnectionUnavailable(f"Connection to daemon lost: {e}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


async def _read_terminal(
    reader: asyncio.StreamReader, on_log: Callable[[str], None] | None
) -> ResultFrame | ErrorFrame:
    while True:
        line = await reader.readline()
        if not line:
            raise ProtocolError("Daemon closed the connection without a result")
        if not line.strip():
            continue
        frame = decode_frame(line)
        if isinstance(frame, LogFrame):
            if on_log is not None:
                on_log(frame.data)
            continue
        return frame


def raise_for_frame(frame: ResultFrame | ErrorFrame) -> ResultFrame:
    """Turn an error frame back into the matching DaemonError."""
    if isinstance(frame, ErrorFrame):
        try:
            code = ErrorCode(frame.code)
        except ValueError:
            code = ErrorCode.INTERNAL_ERROR
        raise DaemonError(frame.message, code=code)
    return frame


async def call(
    socket_path: str,
    action: str,
    project_root: str | None = None,
    args: list[str] | None = None,
    **fields: Any,
) -> Any:
    """Convenience wrapper returning the result data or raising DaemonError."""
    request = DaemonRequest(action=action, project_root=project_root, args=args or [], **fields)
    frame = raise_for_frame(await send_request(request, socket_path))
    return frame.data


def spawn_daemon(verbose: bool = False, env: dict[str, str] | None = None) -> subprocess.Popen[bytes]:
    """Start ``python -m lsptop daemon`` detached from this terminal."""
    command = [sys.executable, "-m", "lsptop", "daemon"]
    if verbose:
        command.append("--verbose")
    log.debug("Spawning daemon: %s", " ".join(command))
    return subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        env={**os.environ, **(env or {})},
    )


async def wait_for_daemon(socket_path: str, timeout: float = STARTUP_WAIT) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await probe(socket_path):
            return True
        await asyncio.sleep(0.1)
    return False


async def ensure_daemon(socket_path: str, verbose: bool = False) -> bool:
    """Start the daemon unless one already answers.

    Returns:
        True if a new daemon was started.

    Raises:
        ConnectionUnavailable: The spawned daemon never opened its socket.
    """
    if await probe(socket_path):
        return False
    process = spawn_daemon(verbose=verbose, env={"LSPTOP_SOCKET": socket_path})
    if not await wait_for_daemon(socket_path):
        if process.poll() is not None:
            raise ConnectionUnavailable(f"Daemon exited during startup (code {process.returncode})")
        raise ConnectionUnavailable(f"Daemon did not open {socket_path} within {STARTUP_WAIT:g}s")
    return True
