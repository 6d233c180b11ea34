from enum import Enum
from typing import Tuple, Union


# Reported by a read completion when the peer has closed its side.
END_OF_STREAM = -1

Address = Union[Tuple[str, int], Tuple[str, int, int, int]]


class ServerEvent(str, Enum):
    LISTENING = "listening"
    CONNECTION = "connection"
    ERROR = "error"
    CLOSE = "close"


class ConnEvent(str, Enum):
    MESSAGE = "message"
    END = "end"
    ERROR = "error"
    DRAIN = "drain"
    CLOSE = "close"


class ListenerState(Enum):
    UNBOUND = "unbound"
    LISTENING = "listening"
    CLOSED = "closed"


class ConnState(Enum):
    OPEN = "open"
    ENDED = "ended"
    CLOSED = "closed"
    ERRORED = "errored"
