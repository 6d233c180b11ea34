import asyncio

import pytest

from linesock import END_OF_STREAM, ConnEvent, Connection
from linesock.errors import AcceptPendingError, ClosedChannelError, ReadPendingError, WritePendingError


class FakeChannel:
    """In-memory stand-in for channel.Channel; the test decides when operations complete."""

    local_address = ("127.0.0.1", 8888)
    remote_address = ("127.0.0.1", 50123)

    def __init__(self):
        self.closed = False
        self.reads_armed = 0
        self.pending_read = None
        self.pending_write = None
        self.written: list[bytes] = []

    def read(self, buffer, completed, failed):
        if self.closed:
            raise ClosedChannelError()
        if self.pending_read is not None:
            raise ReadPendingError("read pending")
        self.reads_armed += 1
        self.pending_read = (buffer, completed, failed)

    def feed(self, data: bytes):
        buffer, completed, _ = self._take_read()
        buffer[:len(data)] = data
        completed(len(data))

    def end(self):
        _, completed, _ = self._take_read()
        completed(END_OF_STREAM)

    def fail_read(self, exc):
        _, _, failed = self._take_read()
        failed(exc)

    def _take_read(self):
        assert self.pending_read is not None, "no read armed"
        pending, self.pending_read = self.pending_read, None
        return pending

    def write(self, data, completed, failed):
        if self.closed:
            raise ClosedChannelError()
        if self.pending_write is not None:
            raise WritePendingError("write pending")
        self.pending_write = (bytes(data), completed, failed)

    def complete_write(self):
        data, completed, _ = self.pending_write
        self.pending_write = None
        self.written.append(data)
        completed(len(data))

    def fail_write(self, exc):
        _, _, failed = self.pending_write
        self.pending_write = None
        failed(exc)

    def close(self):
        self.closed = True


class FakeServerChannel:
    """In-memory stand-in for channel.ServerChannel."""

    local_address = ("127.0.0.1", 8888)

    def __init__(self):
        self.closed = False
        self.accepts_armed = 0
        self.pending_accept = None

    def accept(self, completed, failed):
        if self.closed:
            raise ClosedChannelError()
        if self.pending_accept is not None:
            raise AcceptPendingError("accept pending")
        self.accepts_armed += 1
        self.pending_accept = (completed, failed)

    def deliver(self, channel):
        completed, _ = self.pending_accept
        self.pending_accept = None
        completed(channel)

    def fail(self, exc):
        _, failed = self.pending_accept
        self.pending_accept = None
        failed(exc)

    def close(self):
        self.closed = True


class Recorder:
    """Collects (event, payload) pairs from an emitter."""

    def __init__(self, emitter, events):
        self.seen = []
        for event in events:
            emitter.on(event, lambda *args, event=event: self.seen.append((event, *args)))

    def kinds(self):
        return [item[0] for item in self.seen]

    def payloads(self, event):
        return [item[1] for item in self.seen if item[0] is event]


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def connection(channel):
    conn = Connection(channel)
    conn.start_reading()
    return conn


@pytest.fixture
def events(connection):
    return Recorder(connection, list(ConnEvent))


@pytest.fixture
def run():
    def _run(coro, timeout=10):
        return asyncio.run(asyncio.wait_for(coro, timeout))
    return _run


@pytest.fixture
def server_channel():
    return FakeServerChannel()


@pytest.fixture
def recorder():
    return Recorder


@pytest.fixture
def channel_factory():
    return FakeChannel
