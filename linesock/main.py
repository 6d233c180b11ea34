import logging
from collections import deque

import click

from ._types import ConnEvent
from .config import Config
from .connection import Connection
from .listener import DEFAULT_BACKLOG
from .log_config import LOG_LEVELS, configure_logging
from .server import Server

logger = logging.getLogger(__name__)


def echo(connection: Connection) -> None:
    """
    Send every line back to the peer, one write at a time. A failed read or write closes the
    connection.
    """
    outgoing: deque[str] = deque()

    def sent() -> None:
        outgoing.popleft()
        if outgoing:
            connection.send_line(outgoing[0], sent)

    def on_message(line: str) -> None:
        outgoing.append(line)
        if len(outgoing) == 1:
            connection.send_line(line, sent)

    def on_error(exc: BaseException) -> None:
        logger.info("Closing %r: %s", connection, exc)
        outgoing.clear()
        connection.close()

    connection.on(ConnEvent.MESSAGE, on_message)
    connection.on(ConnEvent.ERROR, on_error)


@click.command(context_settings={"auto_envvar_prefix": "LINESOCK"})
@click.option("--host", type=str, default=None, show_default="all interfaces", help="Bind socket to this host.")
@click.option("--port", type=int, default=8888, show_default=True, help="Bind socket to this port. 0 picks a free port.")
@click.option("--backlog", type=int, default=DEFAULT_BACKLOG, show_default=True,
              help="Maximum number of connections to hold in backlog.")
@click.option("--timeout-graceful-shutdown", type=float, default=None,
              help="Maximum number of seconds to wait for application tasks during shutdown.")
@click.option("--encoding", type=str, default="utf-8", show_default=True, help="Text encoding of the lines.")
@click.option("--log-level", type=click.Choice(list(LOG_LEVELS.keys())), default="info", show_default=True,
              help="Log level.")
@click.option("--use-colors/--no-use-colors", default=None, help="Enable/Disable colorized logging.")
def main(
        host: str | None,
        port: int,
        backlog: int,
        timeout_graceful_shutdown: float | None,
        encoding: str,
        log_level: str,
        use_colors: bool | None,
) -> None:
    """Run a newline-delimited echo server."""
    try:
        "".encode(encoding)
    except LookupError:
        raise click.BadParameter(f"unknown encoding {encoding!r}", param_hint="--encoding")

    configure_logging(log_level, use_colors=use_colors)
    config = Config(
        host=host,
        port=port,
        backlog=backlog,
        timeout_graceful_shutdown=timeout_graceful_shutdown,
        encoding=encoding,
    )
    Server(config, echo).run()


if __name__ == "__main__":
    main()
