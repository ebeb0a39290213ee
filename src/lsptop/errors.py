"""Error taxonomy for the daemon.

Every failure that can reach a client carries a machine-readable
``ErrorCode``. The Connection Server turns any ``DaemonError`` into a
terminal ``error`` frame using ``code`` and ``str(error)``; anything else
is reported as ``INTERNAL_ERROR``.

``NO_RESULT`` is listed for completeness but is never raised: an empty
answer is a successful ``result`` frame marked with that code.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable failure kinds sent in ``error`` frames."""

    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    SESSION_CRASHED = "SESSION_CRASHED"
    SESSION_STOPPING = "SESSION_STOPPING"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    SPAWN_FAILURE = "SPAWN_FAILURE"
    NO_RESULT = "NO_RESULT"
    CONNECTION_UNAVAILABLE = "CONNECTION_UNAVAILABLE"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    SERVER_ERROR = "SERVER_ERROR"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DaemonError(Exception):
    """Base class for errors that map to an ``error`` frame."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ProtocolError(DaemonError):
    """Malformed request or response framing."""

    code = ErrorCode.PROTOCOL_ERROR


class FramingError(ProtocolError):
    """Content-Length framing on the subprocess pipe is broken.

    Raised when:
    - Content-Length header is missing, non-numeric or negative
    - A header line is malformed or not ASCII
    - The body is truncated, not UTF-8, or not a JSON object
    """


class SessionCrashed(DaemonError):
    """The subprocess exited while requests were pending."""

    code = ErrorCode.SESSION_CRASHED


class SessionStopping(DaemonError):
    """The Session is being torn down and accepts no new operations."""

    code = ErrorCode.SESSION_STOPPING


class RequestTimeout(DaemonError):
    """No response from the subprocess within the request bound."""

    code = ErrorCode.REQUEST_TIMEOUT


class SpawnFailure(DaemonError):
    """The language server process could not be started."""

    code = ErrorCode.SPAWN_FAILURE


class ConnectionUnavailable(DaemonError):
    """The client cannot reach the daemon endpoint."""

    code = ErrorCode.CONNECTION_UNAVAILABLE


class ProjectNotFound(DaemonError):
    """The project root has no project marker (e.g. tsconfig.json)."""

    code = ErrorCode.PROJECT_NOT_FOUND


class InvalidArgument(DaemonError):
    """Bad position, path, or flags in a request's arguments."""

    code = ErrorCode.INVALID_ARGUMENT


class UnknownAction(DaemonError):
    code = ErrorCode.UNKNOWN_ACTION


class ServerError(DaemonError):
    """The language server answered a request with an error payload."""

    code = ErrorCode.SERVER_ERROR

    def __init__(self, message: str, server_code: int | None = None, data: object = None) -> None:
        super().__init__(message)
        self.server_code = server_code
        self.data = data


class AlreadyRunning(DaemonError):
    """Another daemon already owns the local endpoint."""

    code = ErrorCode.ALREADY_RUNNING
