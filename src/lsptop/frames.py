"""Wire types for the daemon's local endpoint.

A client writes one :class:`DaemonRequest` as a JSON object (a trailing
newline is optional), then reads newline-terminated response frames until
the connection closes: any number of ``log`` frames followed by exactly
one ``result`` or ``error``.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from lsptop.errors import DaemonError, ErrorCode, ProtocolError

MAX_REQUEST_SIZE = 1024 * 1024
READ_CHUNK = 64 * 1024

_decoder = json.JSONDecoder()


class LspTopModel(BaseModel):
    """Base model with populate_by_name enabled."""

    model_config = ConfigDict(populate_by_name=True)


class DaemonRequest(LspTopModel):
    """One request from a client connection."""

    action: str = Field(min_length=1)
    project_root: str | None = Field(default=None, alias="projectRoot")
    alias: str | None = None
    args: list[str] = Field(default_factory=list)
    verbose: bool = False
    log_level: str | None = Field(default=None, alias="logLevel")
    trace: list[str] = Field(default_factory=list)


class LogFrame(LspTopModel):
    type: Literal["log"] = "log"
    data: str


class ResultFrame(LspTopModel):
    """Terminal success frame; ``code`` is ``NO_RESULT`` for empty answers."""

    type: Literal["result"] = "result"
    data: Any = None
    code: str | None = None


class ErrorFrame(LspTopModel):
    type: Literal["error"] = "error"
    message: str
    code: str


Frame = Annotated[LogFrame | ResultFrame | ErrorFrame, Field(discriminator="type")]

_frame_adapter: TypeAdapter[LogFrame | ResultFrame | ErrorFrame] = TypeAdapter(Frame)


def is_empty_result(data: Any) -> bool:
    return data is None or data == [] or data == {}


def result_frame(data: Any) -> ResultFrame:
    """Wrap ``data``, marking empty answers as ``NO_RESULT``."""
    if is_empty_result(data):
        return ResultFrame(data=data, code=ErrorCode.NO_RESULT.value)
    return ResultFrame(data=data)


def error_frame(error: BaseException) -> ErrorFrame:
    if isinstance(error, DaemonError):
        return ErrorFrame(message=error.message, code=error.code.value)
    return ErrorFrame(
        message=f"Internal error: {type(error).__name__}: {error}",
        code=ErrorCode.INTERNAL_ERROR.value,
    )


def encode_frame(frame: LogFrame | ResultFrame | ErrorFrame) -> bytes:
    exclude = {"code"} if isinstance(frame, ResultFrame) and frame.code is None else None
    return frame.model_dump_json(exclude=exclude).encode("utf-8") + b"\n"


def decode_frame(line: bytes | str) -> LogFrame | ResultFrame | ErrorFrame:
    """Parse one response line.

    Raises:
        ProtocolError: If the line is not a valid frame.
    """
    try:
        return _frame_adapter.validate_json(line)
    except ValidationError as e:
        raise ProtocolError(f"Invalid response frame: {e.error_count()} validation error(s)") from e


def _is_complete_value(buffer: bytes) -> bool:
    try:
        text = buffer.decode("utf-8").lstrip()
    except UnicodeDecodeError:
        # May be a multi-byte character split across chunks.
        return False
    if not text:
        return False
    try:
        _decoder.raw_decode(text)
    except json.JSONDecodeError:
        return False
    return True


async def read_request(reader: asyncio.StreamReader) -> bytes:
    """Read the bytes of one request from a client connection.

    Stops at the first newline, at EOF, or as soon as the buffered bytes
    hold one complete JSON value, so clients that write a bare object and
    keep the socket open for the response are answered too.

    Raises:
        ProtocolError: More than ``MAX_REQUEST_SIZE`` bytes without a
            complete request.
    """
    buffer = b""
    while True:
        chunk = await reader.read(READ_CHUNK)
        if not chunk:
            return buffer
        buffer += chunk
        newline = buffer.find(b"\n")
        if newline >= 0:
            return buffer[: newline + 1]
        if len(buffer) > MAX_REQUEST_SIZE:
            raise ProtocolError(f"Request exceeds {MAX_REQUEST_SIZE} bytes")
        if _is_complete_value(buffer):
            return buffer


def parse_request(line: bytes) -> DaemonRequest:
    """Parse the single request a client sends.

    Raises:
        ProtocolError: Not JSON, not an object, or missing/mistyped fields.
    """
    if not line.strip():
        raise ProtocolError("Empty request")
    if len(line) > MAX_REQUEST_SIZE:
        raise ProtocolError(f"Request exceeds {MAX_REQUEST_SIZE} bytes")
    try:
        raw = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Request is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ProtocolError(f"Request must be a JSON object, got {type(raw).__name__}")
    try:
        return DaemonRequest.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in e.errors()
        )
        raise ProtocolError(f"Invalid request: {problems}") from e


def encode_request(request: DaemonRequest) -> bytes:
    return request.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8") + b"\n"
