from typing import TYPE_CHECKING
import asyncio
if TYPE_CHECKING:
    from .connection import Connection

class ServerState:
    """
    State shared between the server and the connections it hands to the application.
    """
    def __init__(self):
        """
        Every connection accepted and not yet closed. A connection removes itself when it emits CLOSE,
        whether the peer hung up, the application closed it or the server is shutting down.
        """
        self.connections: set["Connection"] = set()
        """
        Tasks running coroutine applications, one per connection. Shutdown waits for them
        (up to timeout_graceful_shutdown) before cancelling what is left.
        """
        self.tasks: set[asyncio.Task[None]] = set()
        self.total_connections = 0
