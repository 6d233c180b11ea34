"""
One accepted TCP connection exchanging newline-delimited text.

The read loop is self-perpetuating: every completed read is scanned for line feeds and then,
unless the stream ended or the connection was closed meanwhile, the next read is armed. There
is never more than one read in flight, so the receive buffer and the line accumulator have a
single writer and need no locking.

Reads always land at the start of a fixed 8 KiB buffer. Bytes that follow the last line feed
of a read are moved into the accumulator and carry over to the next read, so lines may span
any number of reads. A final line the peer never terminates is dropped at end of stream.

Events (see ConnEvent):
- MESSAGE(text): one decoded line, delimiter stripped
- END: the peer closed its side; the connection releases its channel and subscribers
- ERROR(exc): a read or write failed, or a line grew past MAX_LINE_LENGTH
- DRAIN: a send() finished writing
- CLOSE: the channel has been closed
"""
import asyncio
import logging
from typing import Callable, Iterator, Optional

from ._types import END_OF_STREAM, ConnEvent, ConnState
from .channel import Channel
from .errors import ClosedChannelError, LineTooLongError
from .events import EventEmitter
from .util import format_addr

logger = logging.getLogger(__name__)

DELIMITER = b"\n"


class Connection(EventEmitter[ConnEvent]):
    BUFFER_SIZE = 8192
    MAX_LINE_LENGTH = 1024 * 1024

    def __init__(self, channel: Channel, encoding: str = "utf-8"):
        super().__init__(ConnEvent)
        self.channel = channel
        self.encoding = encoding
        self.state = ConnState.OPEN

        self._buffer = bytearray(self.BUFFER_SIZE)
        self._view = memoryview(self._buffer)
        self._pending = bytearray()

        self.local_address = channel.local_address
        self.remote_address = channel.remote_address

    def __repr__(self) -> str:
        return f"<Connection {format_addr(self.remote_address)} {self.state.value}>"

    # reading

    def start_reading(self) -> None:
        """
        Arm the next read into the receive buffer.
        """
        if self.state is not ConnState.OPEN:
            return
        try:
            self.channel.read(self._view, self.on_read_complete, self.on_read_failed)
        except Exception as exc:
            self.on_read_failed(exc)

    def on_read_complete(self, nbytes: int) -> None:
        if self.state is not ConnState.OPEN:
            return

        if nbytes == END_OF_STREAM:
            self._end()
            return

        for line in self._scan(nbytes):
            self.emit(ConnEvent.MESSAGE, line)
            if self.state is not ConnState.OPEN:
                # a handler closed us mid-read
                return

        if len(self._pending) > self.MAX_LINE_LENGTH:
            self.emit(ConnEvent.ERROR, LineTooLongError(self.MAX_LINE_LENGTH))
            self.close()
            return

        self.start_reading()

    def _scan(self, nbytes: int) -> Iterator[str]:
        """
        Yield every complete line in the first `nbytes` bytes of the buffer.
        """
        start = 0
        while start < nbytes:
            end = self._buffer.find(DELIMITER, start, nbytes)
            if end == -1:
                break
            self._pending += self._view[start:end]
            line = self._pending.decode(self.encoding, "replace")
            self._pending.clear()
            start = end + 1
            yield line
        self._pending += self._view[start:nbytes]

    def on_read_failed(self, exc: BaseException) -> None:
        if self.state is not ConnState.OPEN:
            # close() cancelled the read that was in flight
            logger.debug("%r: read failed after close: %r", self, exc)
            return
        if isinstance(exc, asyncio.CancelledError):
            logger.debug("%r: read cancelled while the loop shuts down", self)
            return
        self.state = ConnState.ERRORED
        self.emit(ConnEvent.ERROR, exc)

    def _end(self) -> None:
        self.state = ConnState.ENDED
        if self._pending:
            logger.debug("%r: dropping %d bytes of unterminated line", self, len(self._pending))
            self._pending.clear()
        self.emit(ConnEvent.END)
        self._release()

    # writing

    def send(self, text: str, callback: Optional[Callable[[], object]] = None) -> None:
        """
        Encode `text` and write all of it in a single operation.

        DRAIN is emitted, and `callback` called, once the write completes. Writes are not
        queued: calling send() again before that reports a WritePendingError as an error event.
        """
        try:
            payload = text.encode(self.encoding)
            self.channel.write(
                payload,
                lambda nbytes: self._on_write_complete(nbytes, callback),
                self._on_write_failed
            )
        except Exception as exc:
            self.emit(ConnEvent.ERROR, exc)

    def send_line(self, text: str, callback: Optional[Callable[[], object]] = None) -> None:
        self.send(text + "\n", callback)

    def _on_write_complete(self, nbytes: int, callback: Optional[Callable[[], object]]) -> None:
        logger.debug("%r: wrote %d bytes", self, nbytes)
        self.emit(ConnEvent.DRAIN)
        if callback is not None:
            self._invoke(callback, ())

    def _on_write_failed(self, exc: BaseException) -> None:
        if isinstance(exc, ClosedChannelError) and self.state is not ConnState.OPEN:
            logger.debug("%r: write cancelled by close", self)
            return
        if isinstance(exc, asyncio.CancelledError):
            logger.debug("%r: write cancelled while the loop shuts down", self)
            return
        self.emit(ConnEvent.ERROR, exc)

    # teardown

    def close(self) -> None:
        """
        Close the channel. No events are delivered afterwards.
        """
        if self.state in (ConnState.CLOSED, ConnState.ENDED):
            return
        self.state = ConnState.CLOSED
        self._release()

    def _release(self) -> None:
        try:
            self.channel.close()
        except OSError as exc:
            self.emit(ConnEvent.ERROR, exc)
        self.emit(ConnEvent.CLOSE)
        self.remove_all_listeners()
