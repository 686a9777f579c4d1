"""Serve a relay from a configuration and the `peerchat-relay` command."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import signal
import sys
from typing import Any

import click
from pydantic import ValidationError
from websockets.asyncio.server import serve as websockets_serve

from peerchat.p2p.relay.config import RelayLoggingConfig
from peerchat.p2p.relay.config import RelayServingConfig
from peerchat.p2p.relay.config import RelayTLSConfig
from peerchat.p2p.relay.server import RelayServer
from peerchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


async def report_stats(
    server: RelayServer,
    interval: float,
    detail_limit: int | None = None,
    level: int = logging.INFO,
) -> None:
    """Log relay usage every `interval` seconds until cancelled.

    Connected clients are listed, oldest first, while there are fewer than
    `detail_limit` of them.
    """
    while True:
        await asyncio.sleep(interval)
        stats = server.stats()
        message = f'Relay stats: {stats}'
        if detail_limit is not None and 0 < stats.clients < detail_limit:
            clients = sorted(
                server.room_manager.get_clients(),
                key=lambda client: client.created,
            )
            message += '\n' + '\n'.join(repr(client) for client in clients)
        logger.log(level, message)


def stop_on_signals(*signums: int) -> asyncio.Future[int]:
    """Create a future resolved with the first of `signums` received."""
    loop = asyncio.get_running_loop()
    stop: asyncio.Future[int] = loop.create_future()

    def _stop(signum: int) -> None:
        if not stop.done():
            stop.set_result(signum)

    for signum in signums:
        loop.add_signal_handler(signum, _stop, signum)
    return stop


async def serve(
    config: RelayServingConfig,
    stop: asyncio.Future[Any] | None = None,
) -> None:
    """Serve a relay until stopped.

    On stop every client is closed with code 1001 before the listening
    socket is shut down. Logging is not configured here, see
    [`configure_logging()`][peerchat.p2p.relay.run.configure_logging].

    Args:
        config: Serving configuration.
        stop: Future that stops the relay once done. If `None`, the relay
            stops on SIGINT or SIGTERM.
    """
    server = RelayServer.from_config(config)
    signums: tuple[int, ...] = ()
    if stop is None:
        signums = (signal.SIGINT, signal.SIGTERM)
        stop = stop_on_signals(*signums)

    ssl_context = None if config.tls is None else config.tls.ssl_context()
    reporter = None
    if config.stats.interval is not None:
        reporter = spawn_guarded_background_task(
            report_stats,
            server,
            config.stats.interval,
            config.stats.detail_limit,
            config.stats.level,
            name='relay-stats-reporter',
        )

    try:
        async with websockets_serve(
            server.handler,
            config.host,
            config.port,
            logger=None,
            ssl=ssl_context,
        ):
            logger.info(
                f'Relay server listening at {config.scheme}://'
                f'{config.host or "0.0.0.0"}:{config.port} '
                f'(default room: {config.default_room})',
            )
            await stop
            closed = await server.close_all()
            logger.info(f'Relay server stopping, closed {closed} client(s)')
    finally:
        if reporter is not None:
            reporter.cancel()
            try:
                await reporter
            except asyncio.CancelledError:
                pass
        loop = asyncio.get_running_loop()
        for signum in signums:
            loop.remove_signal_handler(signum)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayLoggingConfig) -> None:
    """Log to stdout and, if `log_dir` is set, a weekly rotated file."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, config.log_file),
                # Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=config.level,
        handlers=handlers,
    )
    logging.getLogger('websockets').setLevel(config.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--room', metavar='NAME', help='Default room.')
@click.option(
    '--max-message-bytes',
    type=click.IntRange(min=1),
    help='Close clients that send larger frames.',
)
@click.option('--certfile', type=click.Path(exists=True), help='TLS cert.')
@click.option('--keyfile', type=click.Path(exists=True), help='TLS key.')
@click.option(
    '--stats-interval',
    type=float,
    metavar='SECONDS',
    help='Seconds between usage reports.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    room: str | None,
    max_message_bytes: int | None,
    certfile: str | None,
    keyfile: str | None,
    stats_interval: float | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a relay that forwards signaling frames between peers in a room.

    Options override the values read from the configuration file.
    """
    if keyfile is not None and certfile is None:
        raise click.UsageError('--keyfile requires --certfile.')

    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )
    data = config.model_dump()
    for key, value in (
        ('host', host),
        ('port', port),
        ('default_room', room),
        ('max_message_bytes', max_message_bytes),
    ):
        if value is not None:
            data[key] = value
    if certfile is not None:
        data['tls'] = RelayTLSConfig(
            certfile=certfile,
            keyfile=keyfile,
        ).model_dump()
    if stats_interval is not None:
        data['stats']['interval'] = stats_interval
    if log_dir is not None:
        data['logging']['log_dir'] = log_dir
    if log_level is not None:
        data['logging']['level'] = log_level
    try:
        config = RelayServingConfig.model_validate(data)
    except ValidationError as e:
        raise click.UsageError(str(e)) from e

    configure_logging(config.logging)
    logger.debug(f'Relay configuration: {config!r}')
    asyncio.run(serve(config))
