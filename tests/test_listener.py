"""Tests for the accept loop, against fake channels and against real loopback sockets."""

import asyncio

import pytest

from linesock import ConnEvent, Connection, ConnState, Listener, ListenerState, ServerEvent
from linesock import listener as listener_module
from linesock.errors import ClosedChannelError, ListenerStateError


@pytest.fixture
def fake_listen(monkeypatch, server_channel):
    """Make Listener.bind() use the in-memory server channel."""
    calls = []

    def listen(host, port, backlog, loop):
        calls.append((host, port, backlog))
        return server_channel

    monkeypatch.setattr(listener_module.ServerChannel, "listen", staticmethod(listen))
    return calls


def bound_listener(recorder, **kwargs):
    listener = Listener(loop=asyncio.new_event_loop(), **kwargs)
    events = recorder(listener, list(ServerEvent))
    listener.bind(8888)
    listener.loop.close()
    return listener, events


# fake channels

def test_bind_defaults(fake_listen, server_channel, recorder):
    listener, events = bound_listener(recorder)

    assert fake_listen == [(None, 8888, 511)]
    assert events.kinds() == [ServerEvent.LISTENING]
    assert listener.state is ListenerState.LISTENING
    assert server_channel.accepts_armed == 1


def test_bind_callback_subscribes_to_listening(fake_listen):
    seen = []
    listener = Listener(loop=asyncio.new_event_loop())
    listener.bind(9000, host="127.0.0.1", backlog=16, callback=lambda: seen.append("up"))
    listener.loop.close()

    assert fake_listen == [("127.0.0.1", 9000, 16)]
    assert seen == ["up"]


def test_accept_rearms_before_connection_handler_runs(fake_listen, server_channel, channel_factory, recorder):
    """The next accept is already armed when the application first sees the connection."""
    armed_seen = []
    listener, events = bound_listener(recorder)
    listener.on(ServerEvent.CONNECTION, lambda conn: armed_seen.append(server_channel.accepts_armed))

    channel = channel_factory()
    server_channel.deliver(channel)

    assert armed_seen == [2]
    assert server_channel.pending_accept is not None
    connection = events.payloads(ServerEvent.CONNECTION)[0]
    assert isinstance(connection, Connection)
    assert connection.channel is channel
    assert channel.reads_armed == 1


def test_accept_loop_keeps_going(fake_listen, server_channel, channel_factory, recorder):
    listener, events = bound_listener(recorder)
    for _ in range(3):
        server_channel.deliver(channel_factory())

    assert len(events.payloads(ServerEvent.CONNECTION)) == 3
    assert server_channel.accepts_armed == 4


def test_throwing_connection_handler_does_not_stop_accepting(fake_listen, server_channel, channel_factory, recorder):
    listener, events = bound_listener(recorder)

    def broken(conn):
        raise RuntimeError("application bug")

    listener.on(ServerEvent.CONNECTION, broken)
    server_channel.deliver(channel_factory())
    server_channel.deliver(channel_factory())

    assert len(events.payloads(ServerEvent.CONNECTION)) == 2
    assert server_channel.accepts_armed == 3


def test_connection_setup_failure_is_reported(monkeypatch, fake_listen, server_channel, channel_factory, recorder):
    """A failure while wrapping the accepted channel is an error event; accepting continues."""
    listener, events = bound_listener(recorder)

    def explode(channel, encoding):
        raise MemoryError("no buffer for you")

    monkeypatch.setattr(listener_module, "Connection", explode)
    channel = channel_factory()
    server_channel.deliver(channel)

    errors = events.payloads(ServerEvent.ERROR)
    assert len(errors) == 1 and isinstance(errors[0], MemoryError)
    assert events.payloads(ServerEvent.CONNECTION) == []
    assert server_channel.pending_accept is not None
    assert channel.closed


def test_accept_failure_is_terminal(fake_listen, server_channel, recorder):
    listener, events = bound_listener(recorder)
    err = OSError(24, "Too many open files")
    server_channel.fail(err)

    assert events.payloads(ServerEvent.ERROR) == [err]
    assert listener.state is ListenerState.CLOSED
    assert server_channel.accepts_armed == 1
    assert server_channel.pending_accept is None
    assert server_channel.closed


def test_close_then_cancelled_accept_is_silent(fake_listen, server_channel, recorder):
    listener, events = bound_listener(recorder)
    listener.close()
    server_channel.fail(ClosedChannelError())

    assert events.kinds() == [ServerEvent.LISTENING, ServerEvent.CLOSE]
    assert listener.state is ListenerState.CLOSED


def test_late_accept_after_close_is_dropped(fake_listen, server_channel, channel_factory, recorder):
    listener, events = bound_listener(recorder)
    listener.close()
    channel = channel_factory()
    server_channel.deliver(channel)

    assert events.payloads(ServerEvent.CONNECTION) == []
    assert channel.closed


def test_close_twice_emits_close_once(fake_listen, server_channel, recorder):
    listener, events = bound_listener(recorder)
    listener.close()
    listener.close()
    assert events.kinds() == [ServerEvent.LISTENING, ServerEvent.CLOSE]


def test_cancelled_accept_while_listening_is_not_an_error(fake_listen, server_channel, recorder):
    listener, events = bound_listener(recorder)
    server_channel.fail(asyncio.CancelledError())

    assert events.kinds() == [ServerEvent.LISTENING]
    assert listener.state is ListenerState.LISTENING


def test_close_failure_is_reported(fake_listen, server_channel, recorder):
    listener, events = bound_listener(recorder)
    err = OSError("close failed")

    def close():
        raise err

    server_channel.close = close
    listener.close()

    assert events.kinds() == [ServerEvent.LISTENING, ServerEvent.ERROR]
    assert events.payloads(ServerEvent.ERROR) == [err]
    assert listener.state is ListenerState.CLOSED


def test_connection_encoding_is_passed_on(fake_listen, server_channel, channel_factory, recorder):
    listener, events = bound_listener(recorder, encoding="latin-1")
    server_channel.deliver(channel_factory())
    assert events.payloads(ServerEvent.CONNECTION)[0].encoding == "latin-1"


def test_bind_twice_is_an_error(fake_listen, recorder):
    listener, events = bound_listener(recorder)
    listener.bind(8889)
    errors = events.payloads(ServerEvent.ERROR)
    assert len(errors) == 1 and isinstance(errors[0], ListenerStateError)
    assert listener.state is ListenerState.LISTENING


def test_close_unbound_listener_is_an_error(recorder):
    listener = Listener()
    events = recorder(listener, list(ServerEvent))
    seen = []
    listener.close(callback=lambda: seen.append("closed"))

    errors = events.payloads(ServerEvent.ERROR)
    assert len(errors) == 1 and isinstance(errors[0], ListenerStateError)
    assert seen == []
    assert listener.listener_count(ServerEvent.CLOSE) == 1  # only the recorder


def test_bind_outside_event_loop_is_an_error(recorder):
    listener = Listener()
    events = recorder(listener, list(ServerEvent))
    listener.bind(0, host="127.0.0.1")
    assert events.kinds() == [ServerEvent.ERROR]
    assert listener.state is ListenerState.UNBOUND


# real sockets

async def wait_for(queue: asyncio.Queue):
    return await asyncio.wait_for(queue.get(), 5)


def test_bind_then_close(run):
    async def main():
        listener = Listener()
        kinds = []
        for event in ServerEvent:
            listener.on(event, lambda *args, event=event: kinds.append(event))
        listener.bind(0, host="127.0.0.1")
        assert listener.address[0] == "127.0.0.1"
        listener.close()
        await asyncio.sleep(0.05)
        return kinds

    assert run(main()) == [ServerEvent.LISTENING, ServerEvent.CLOSE]


def test_address_in_use(run):
    async def main():
        first = Listener()
        first.bind(0, host="127.0.0.1")
        port = first.address[1]

        second = Listener()
        kinds, errors = [], []
        second.on(ServerEvent.LISTENING, lambda: kinds.append("listening"))
        second.on(ServerEvent.ERROR, errors.append)
        second.bind(port, host="127.0.0.1", callback=lambda: kinds.append("callback"))
        first.close()
        return kinds, errors, second

    kinds, errors, second = run(main())
    assert kinds == []
    assert len(errors) == 1 and isinstance(errors[0], OSError)
    assert second.state is ListenerState.UNBOUND
    assert second.listener_count(ServerEvent.LISTENING) == 1


def test_lines_from_a_real_client(run):
    async def main():
        messages: asyncio.Queue = asyncio.Queue()
        ended = asyncio.Event()

        def on_connection(conn: Connection):
            conn.on(ConnEvent.MESSAGE, messages.put_nowait)
            conn.on(ConnEvent.END, ended.set)

        listener = Listener(on_connection)
        listener.bind(0, host="127.0.0.1")
        reader, writer = await asyncio.open_connection(*listener.address[:2])

        writer.write(b"foo\nbar")
        await writer.drain()
        first = await wait_for(messages)
        writer.write(b"baz\n")
        await writer.drain()
        second = await wait_for(messages)

        writer.close()
        await writer.wait_closed()
        await asyncio.wait_for(ended.wait(), 5)
        listener.close()
        return [first, second]

    assert run(main()) == ["foo", "barbaz"]


def test_reply_to_a_real_client(run):
    async def main():
        connections = []

        def on_connection(conn: Connection):
            connections.append(conn)
            conn.on(ConnEvent.MESSAGE, lambda line: conn.send_line(line.upper()))

        listener = Listener(on_connection)
        listener.bind(0, host="127.0.0.1")
        reader, writer = await asyncio.open_connection(*listener.address[:2])

        writer.write(b"hello\n")
        reply = await asyncio.wait_for(reader.readline(), 5)

        connections[0].close()
        eof = await asyncio.wait_for(reader.read(), 5)
        writer.close()
        await writer.wait_closed()
        listener.close()
        return reply, eof, connections[0].state

    assert run(main()) == (b"HELLO\n", b"", ConnState.CLOSED)


def test_close_leaves_accepted_connections_alone(run):
    async def main():
        messages: asyncio.Queue = asyncio.Queue()
        connections = []

        def on_connection(conn: Connection):
            connections.append(conn)
            conn.on(ConnEvent.MESSAGE, messages.put_nowait)

        listener = Listener(on_connection)
        listener.bind(0, host="127.0.0.1")
        reader, writer = await asyncio.open_connection(*listener.address[:2])
        writer.write(b"before\n")
        assert await wait_for(messages) == "before"

        listener.close()
        writer.write(b"after\n")
        line = await wait_for(messages)
        connections[0].close()
        writer.close()
        await writer.wait_closed()
        return line

    assert run(main()) == "after"
