"""JSON-RPC message variants exchanged with the language server.

A raw message is classified by which keys it carries:

- ``id`` and ``method``  -> :class:`Request` (the server asking us)
- ``id`` only            -> :class:`Response` (``result`` or ``error``)
- ``method`` only        -> :class:`Notification`
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from lsptop.errors import ProtocolError

JSONRPC_VERSION = "2.0"

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestId = int | str


@dataclass(frozen=True, slots=True)
class Request:
    id: RequestId
    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            msg["params"] = self.params
        return msg


@dataclass(frozen=True, slots=True)
class Response:
    id: RequestId | None
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            msg["error"] = self.error
        else:
            msg["result"] = self.result
        return msg


@dataclass(frozen=True, slots=True)
class Notification:
    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            msg["params"] = self.params
        return msg


Message = Request | Response | Notification


def parse_message(raw: dict[str, Any]) -> Message:
    """Classify a decoded JSON-RPC object.

    Raises:
        ProtocolError: If it is neither a request, response nor notification.
    """
    method = raw.get("method")
    has_id = "id" in raw and raw["id"] is not None

    if method is not None:
        if not isinstance(method, str):
            raise ProtocolError(f"Method must be a string, got {type(method).__name__}")
        if has_id:
            return Request(id=raw["id"], method=method, params=raw.get("params"))
        return Notification(method=method, params=raw.get("params"))

    if "result" in raw or "error" in raw:
        error = raw.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"code": INTERNAL_ERROR, "message": str(error)}
        return Response(id=raw.get("id"), result=raw.get("result"), error=error)

    raise ProtocolError(f"Unrecognized JSON-RPC message with keys {sorted(raw)}")


def error_response(request_id: RequestId, code: int, message: str) -> Response:
    return Response(id=request_id, error={"code": code, "message": message})
