"""
The accept loop.

After bind() the listener always has exactly one accept in flight. When it completes the next
accept is armed *before* anything else runs, so a slow or failing connection handler can never
hold up the following clients. Only then is the accepted channel wrapped in a Connection, its
read loop started and the CONNECTION event emitted.

A failed accept is terminal: the listener reports it, closes its channel and stops accepting.
Connections accepted earlier are not tracked and keep running.
"""
import asyncio
import logging
from typing import Callable, Optional

from ._types import Address, ListenerState, ServerEvent
from .channel import Channel, ServerChannel
from .connection import Connection
from .errors import ListenerStateError
from .events import EventEmitter
from .util import format_addr

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 511


class Listener(EventEmitter[ServerEvent]):

    def __init__(self,
                 connection_listener: Optional[Callable[[Connection], object]] = None,
                 *,
                 loop: asyncio.AbstractEventLoop | None = None,
                 encoding: str = "utf-8"):
        super().__init__(ServerEvent)
        self.loop = loop
        self.encoding = encoding
        self.state = ListenerState.UNBOUND
        self._channel: ServerChannel | None = None

        if connection_listener is not None:
            self.on(ServerEvent.CONNECTION, connection_listener)

    @property
    def address(self) -> Address | None:
        if self._channel is None:
            return None
        return self._channel.local_address

    def __repr__(self) -> str:
        return f"<Listener {format_addr(self.address)} {self.state.value}>"

    def bind(self,
             port: int,
             host: str | None = None,
             backlog: int | None = None,
             callback: Optional[Callable[[], object]] = None) -> None:
        """
        Bind to host:port (every interface when host is omitted) and start accepting.

        Emits LISTENING on success, ERROR otherwise. `callback` is subscribed to LISTENING and
        dropped again if binding fails.
        """
        backlog_size = backlog if backlog is not None else DEFAULT_BACKLOG
        if callback is not None:
            self.on(ServerEvent.LISTENING, callback)

        channel = None
        try:
            if self.state is not ListenerState.UNBOUND:
                raise ListenerStateError(f"cannot bind a listener that is {self.state.value}")
            loop = self.loop or asyncio.get_running_loop()
            channel = ServerChannel.listen(host, port, backlog_size, loop)
            self._channel = channel
            self.state = ListenerState.LISTENING
            self._accept()
        except Exception as exc:
            if channel is not None:
                channel.close()
                self._channel = None
                self.state = ListenerState.UNBOUND
            if callback is not None:
                self.off(ServerEvent.LISTENING, callback)
            self.emit(ServerEvent.ERROR, exc)
            return

        logger.debug("%r: accepting (backlog=%d)", self, backlog_size)
        self.emit(ServerEvent.LISTENING)

    def _accept(self) -> None:
        self._channel.accept(self.on_accept_complete, self.on_accept_failed)

    def on_accept_complete(self, channel: Channel) -> None:
        if self.state is not ListenerState.LISTENING:
            channel.close()
            return

        connection = None
        try:
            self._accept()

            connection = Connection(channel, encoding=self.encoding)
            connection.start_reading()
            logger.debug("%r: accepted %r", self, connection)
            self.emit(ServerEvent.CONNECTION, connection)
        except Exception as exc:
            if connection is None:
                channel.close()
            self.emit(ServerEvent.ERROR, exc)

    def on_accept_failed(self, exc: BaseException) -> None:
        if self.state is not ListenerState.LISTENING:
            # close() cancelled the accept that was in flight
            logger.debug("%r: accept failed after close: %r", self, exc)
            return
        if isinstance(exc, asyncio.CancelledError):
            logger.debug("%r: accept cancelled while the loop shuts down", self)
            return

        self.state = ListenerState.CLOSED
        try:
            self._channel.close()
        except OSError:
            logger.exception("%r: closing after a failed accept", self)
        self.emit(ServerEvent.ERROR, exc)

    def close(self, callback: Optional[Callable[[], object]] = None) -> None:
        """
        Stop accepting. Emits CLOSE, or ERROR if the listener was never bound or closing fails.
        Closing a listener that is already closed does nothing.
        """
        if self.state is ListenerState.CLOSED and self._channel is not None and self._channel.closed:
            logger.debug("%r: already closed", self)
            return

        if callback is not None:
            self.on(ServerEvent.CLOSE, callback)

        try:
            if self._channel is None:
                raise ListenerStateError("listener is not bound")
            self.state = ListenerState.CLOSED
            self._channel.close()
        except Exception as exc:
            if callback is not None:
                self.off(ServerEvent.CLOSE, callback)
            self.emit(ServerEvent.ERROR, exc)
            return

        self.emit(ServerEvent.CLOSE)
