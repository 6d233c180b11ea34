"""
Completion-based socket channels on top of the asyncio event loop.

The loop's coroutine socket API (sock_accept, sock_recv_into, sock_sendall) is wrapped so that
every operation is fire-and-continue: the caller issues it with a `completed` and a `failed`
callback and returns immediately. The callbacks run later on the loop thread, from the done
callback of the task that performed the operation.

Each channel allows a single outstanding operation of each kind. Issuing a second read (or
write, or accept) before the first one completes raises instead of queueing.

Closing a channel cancels whatever is in flight; the cancelled operations report
ClosedChannelError through their `failed` callback. An operation cancelled while the channel is
still open (the loop shutting down) reports the CancelledError itself.
"""
import asyncio
import functools
import logging
import socket
from typing import Any, Callable, Optional

from ._types import END_OF_STREAM, Address
from .errors import AcceptPendingError, ClosedChannelError, ReadPendingError, WritePendingError

logger = logging.getLogger(__name__)

Failed = Callable[[BaseException], None]


def _outcome(task: asyncio.Task, closed: bool) -> tuple[Any, Optional[BaseException]]:
    if task.cancelled():
        if closed:
            return None, ClosedChannelError("operation cancelled by close()")
        # cancelled from outside, e.g. by asyncio.run() tearing down the loop
        return None, asyncio.CancelledError()
    exc = task.exception()
    if exc is not None:
        return None, exc
    return task.result(), None


class Channel:
    """
    A connected, non-blocking stream socket.
    """

    def __init__(self, sock: socket.socket, loop: asyncio.AbstractEventLoop):
        sock.setblocking(False)
        self._sock = sock
        self._loop = loop
        self._read_task: asyncio.Task | None = None
        self._write_task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def local_address(self) -> Address | None:
        try:
            return self._sock.getsockname()
        except OSError:
            return None

    @property
    def remote_address(self) -> Address | None:
        try:
            return self._sock.getpeername()
        except OSError:
            return None

    def read(self, buffer: memoryview, completed: Callable[[int], None], failed: Failed) -> None:
        if self._closed:
            raise ClosedChannelError()
        if self._read_task is not None:
            raise ReadPendingError("a read is already outstanding on this channel")
        task = self._loop.create_task(self._loop.sock_recv_into(self._sock, buffer))
        self._read_task = task
        task.add_done_callback(functools.partial(self._read_done, len(buffer), completed, failed))

    def _read_done(self, size: int, completed: Callable[[int], None], failed: Failed, task: asyncio.Task) -> None:
        self._read_task = None
        nbytes, exc = _outcome(task, self._closed)
        if exc is not None:
            failed(exc)
            return
        # recv_into only returns 0 for a non-empty buffer once the peer has shut down its side
        if nbytes == 0 and size > 0:
            nbytes = END_OF_STREAM
        completed(nbytes)

    def write(self, data: bytes, completed: Callable[[int], None], failed: Failed) -> None:
        if self._closed:
            raise ClosedChannelError()
        if self._write_task is not None:
            raise WritePendingError("a write is already outstanding on this channel")
        task = self._loop.create_task(self._loop.sock_sendall(self._sock, data))
        self._write_task = task
        task.add_done_callback(functools.partial(self._write_done, len(data), completed, failed))

    def _write_done(self, size: int, completed: Callable[[int], None], failed: Failed, task: asyncio.Task) -> None:
        self._write_task = None
        _, exc = _outcome(task, self._closed)
        if exc is not None:
            failed(exc)
            return
        completed(size)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in (self._read_task, self._write_task):
            if task is not None:
                task.cancel()
        self._sock.close()

    def __repr__(self) -> str:
        return f"<Channel remote={self.remote_address} closed={self._closed}>"


class ServerChannel:
    """
    A listening socket handing out accepted connections as Channel objects.
    """

    def __init__(self, sock: socket.socket, loop: asyncio.AbstractEventLoop):
        sock.setblocking(False)
        self._sock = sock
        self._loop = loop
        self._accept_task: asyncio.Task | None = None
        self._closed = False

    @classmethod
    def listen(
            cls,
            host: str | None,
            port: int,
            backlog: int,
            loop: asyncio.AbstractEventLoop
    ) -> "ServerChannel":
        """
        Resolve, bind and listen. A missing host binds the IPv4 wildcard address.

        Raises OSError (socket.gaierror included) when the address cannot be resolved or bound.
        """
        if host is None or host == "":
            family, address = socket.AF_INET, ("", port)
        else:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
            family, _, _, _, sockaddr = infos[0]
            address = sockaddr[:2]
        sock = socket.create_server(address, family=family, backlog=backlog)
        return cls(sock, loop)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def local_address(self) -> Address | None:
        try:
            return self._sock.getsockname()
        except OSError:
            return None

    def accept(self, completed: Callable[[Channel], None], failed: Failed) -> None:
        if self._closed:
            raise ClosedChannelError()
        if self._accept_task is not None:
            raise AcceptPendingError("an accept is already outstanding on this channel")
        task = self._loop.create_task(self._loop.sock_accept(self._sock))
        self._accept_task = task
        task.add_done_callback(functools.partial(self._accept_done, completed, failed))

    def _accept_done(self, completed: Callable[[Channel], None], failed: Failed, task: asyncio.Task) -> None:
        self._accept_task = None
        result, exc = _outcome(task, self._closed)
        if exc is not None:
            failed(exc)
            return
        sock, _ = result
        completed(Channel(sock, self._loop))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._accept_task is not None:
            self._accept_task.cancel()
        self._sock.close()

    def __repr__(self) -> str:
        return f"<ServerChannel local={self.local_address} closed={self._closed}>"
