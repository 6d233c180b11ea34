from ._types import END_OF_STREAM, ConnEvent, ConnState, ListenerState, ServerEvent
from .config import Config
from .connection import Connection
from .errors import (
    AcceptPendingError,
    ClosedChannelError,
    LinesockError,
    LineTooLongError,
    ListenerStateError,
    ReadPendingError,
    WritePendingError,
)
from .listener import Listener
from .server import Server

__all__ = [
    "END_OF_STREAM",
    "AcceptPendingError",
    "ClosedChannelError",
    "Config",
    "ConnEvent",
    "ConnState",
    "Connection",
    "LineTooLongError",
    "LinesockError",
    "Listener",
    "ListenerState",
    "ListenerStateError",
    "ReadPendingError",
    "Server",
    "ServerEvent",
    "WritePendingError",
]
