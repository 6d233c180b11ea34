"""
A line echo server written directly against Listener and Connection, without the Server runner.

Listener - the accept loop
Binds the port and keeps exactly one accept outstanding. Every accepted socket becomes a
Connection, announced through the "connection" event.

Connection - one client
Turns whatever the socket delivers into whole lines ("message" events) no matter how the bytes
were split on the wire, and writes text back with send(). Writes are not queued, so
echo() waits for each send to complete before starting the next.

Try it with: nc 127.0.0.1 8888
"""

import asyncio

from linesock import Connection, ConnEvent, Listener, ServerEvent
from linesock.main import echo


def handle(connection: Connection):
    peername = connection.remote_address
    print(f"Connected to {peername}")

    connection.on(ConnEvent.MESSAGE, lambda line: print(f"Received: {line}"))
    echo(connection)  # Echo it back, one write at a time
    connection.on(ConnEvent.END, lambda: print("Client disconnected"))
    connection.on(ConnEvent.ERROR, lambda exc: print(f"Client error: {exc!r}"))


async def main():
    stopped = asyncio.Event()

    listener = Listener(handle)
    listener.on(ServerEvent.LISTENING, lambda: print(f"Serving on {listener.address}"))
    listener.on(ServerEvent.ERROR, lambda exc: print(f"Listener error: {exc!r}"))
    listener.on(ServerEvent.CLOSE, stopped.set)
    listener.bind(8888, host="127.0.0.1")

    try:
        await stopped.wait()
    finally:
        listener.close()

if __name__ == '__main__':
    asyncio.run(main())
