from typing import Any, Callable, Generator
import asyncio
import inspect
import signal
import sys
import logging
import contextlib
import threading
import click
from ._types import ConnEvent, ListenerState, ServerEvent
from .config import Config
from .connection import Connection
from .listener import Listener
from .server_state import ServerState
from .util import format_addr, get_port


HANDLED_SIGNALS = {
    signal.SIGINT: "SIGINT",
    signal.SIGTERM: "SIGTERM",
}
if sys.platform == "win32":
    HANDLED_SIGNALS[signal.SIGBREAK] = "SIGBREAK"


logger = logging.getLogger(__name__)

App = Callable[[Connection], Any]


class Server:
    def __init__(self, config: Config, app: App):
        self.config = config
        self.app = app
        self.server_state = ServerState()
        self.started = False
        self.should_exit = False
        self.force_exit = False
        self._captured_signals: list[int] = []
        self.listener: Listener | None = None

    def run(self) -> None:
        return asyncio.run(self.serve())

    async def serve(self) -> None:
        with self.capture_signals():
            await self._serve()

    async def _serve(self):
        logger.info("Starting server...")
        await self.startup()
        if self.should_exit:
            return
        await self.main_loop()
        await self.shutdown()
        logger.info("Server shutdown complete!")

    async def startup(self) -> None:
        listener = Listener(self.on_connection, encoding=self.config.encoding)
        listener.on(ServerEvent.ERROR, self.on_listener_error)
        listener.bind(self.config.port, host=self.config.host, backlog=self.config.backlog)

        if listener.state is not ListenerState.LISTENING:
            # the bind error has already been logged by on_listener_error
            sys.exit(1)

        self.listener = listener
        self.started = True
        self._log_startup_message(listener)

    def _log_startup_message(self, listener: Listener):
        addr_format = "%s:%d"
        host = "0.0.0.0" if self.config.host is None else self.config.host
        if ":" in host:
            # It's an IPv6 address.
            addr_format = "[%s]:%d"

        port = self.config.port
        if port == 0:
            port = get_port(listener.address)

        message = f"linesock running on {addr_format} (Press CTRL+C to quit)"
        color_message = "linesock running on " + click.style(addr_format, bold=True) + " (Press CTRL+C to quit)"
        logger.info(
            message,
            host,
            port,
            extra={"color_message": color_message},
        )

    def on_listener_error(self, exc: BaseException) -> None:
        if self.started:
            logger.error("Listener error: %s", exc, exc_info=exc)
        else:
            logger.error(exc)

    def on_connection(self, connection: Connection) -> None:
        """
        Track the connection, then hand it to the application. A coroutine app runs as a task.
        """
        connections = self.server_state.connections
        connections.add(connection)
        self.server_state.total_connections += 1
        connection.on(ConnEvent.CLOSE, lambda: connections.discard(connection))
        logger.info("Connection from %s", format_addr(connection.remote_address))

        result = self.app(connection)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(self.server_state.tasks.discard)
            self.server_state.tasks.add(task)

    async def main_loop(self) -> None:
        """
        Tick until a signal asks us to exit. Accepting and reading happen in completion
        callbacks on the event loop, in between the ticks.
        """
        while not self.should_exit:
            await asyncio.sleep(0.1)

    async def shutdown(self) -> None:
        logger.info("Shutting down server...")
        # Stop accepting new connections:
        if self.listener is not None:
            self.listener.close()

        for connection in list(self.server_state.connections):
            connection.close()

        # Give cancelled reads and writes a chance to report back.
        await asyncio.sleep(0.1)

        try:
            await asyncio.wait_for(
                self._wait_tasks_to_complete(),
                timeout=self.config.timeout_graceful_shutdown
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Graceful shutdown timed out. Forcing exit."
            )
            for t in self.server_state.tasks:
                if not t.done():
                    t.cancel(msg="Task cancelled due to timeout during graceful shutdown")

    async def _wait_tasks_to_complete(self) -> None:
        if self.server_state.tasks and not self.force_exit:
            logger.info("Waiting for application tasks to complete. (CTRL+C to force quit)")
            while self.server_state.tasks and not self.force_exit:
                await asyncio.sleep(0.1)

    # signal handling
    @contextlib.contextmanager
    def capture_signals(self) -> Generator[None, None, None]:
        """
        Signals can only be listened to from the main thread
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        original_handlers = {sig: signal.signal(sig, self.handle_exit) for sig in HANDLED_SIGNALS.keys()}
        try:
            yield
        finally:
            # Restore original signal handlers
            for sig, handler in original_handlers.items():
                signal.signal(sig, handler)
            # Raise captured signals in reverse order to ensure proper handling
            for captured_signal in reversed(self._captured_signals):
                signal.raise_signal(captured_signal)

    def handle_exit(self, sig: int, frame) -> None:
        self._captured_signals.append(sig)
        if self.should_exit and sig == signal.SIGINT:
            self.force_exit = True
        else:
            self.should_exit = True
