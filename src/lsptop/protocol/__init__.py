"""Language server protocol transport: framing, message types, client."""

from lsptop.protocol.client import DiagnosticsCache, ProtocolClient
from lsptop.protocol.framing import encode_message, read_message, write_message
from lsptop.protocol.messages import Message, Notification, Request, Response, parse_message

__all__ = [
    "DiagnosticsCache",
    "Message",
    "Notification",
    "ProtocolClient",
    "Request",
    "Response",
    "encode_message",
    "parse_message",
    "read_message",
    "write_message",
]
