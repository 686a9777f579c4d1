"""Relay server configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import ssl
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from peerchat.p2p.relay.messages import DEFAULT_ROOM
from peerchat.utils.config import load


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(f'Unknown logging level {value}.')
    return level


class RelayTLSConfig(BaseModel):
    """TLS settings for serving `wss://` connections.

    Attributes:
        certfile: Certificate chain file in PEM format.
        keyfile: Private key file. If not specified, the key is read from
            the certfile.
    """

    certfile: str
    keyfile: str | None = None

    def ssl_context(self) -> ssl.SSLContext:
        """Create a server side SSL context from the certificate files."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.certfile, keyfile=self.keyfile)
        return context


class RelayStatsConfig(BaseModel):
    """Periodic reporting of relay clients and rooms.

    Attributes:
        interval: Seconds between reports. `None` disables reporting.
        detail_limit: Each client is listed in the report while fewer than
            this many are connected. `None` never lists clients.
        level: Level the report is logged at.
    """

    interval: float | None = 60
    detail_limit: int | None = 32
    level: int = logging.INFO

    @field_validator('level', mode='before')
    @classmethod
    def _check_level(cls, value: int | str) -> int:
        return _parse_level(value)


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Directory for weekly rotated log files. Logs only go to
            stdout if not set.
        log_file: Name of the log file within `log_dir`.
        level: Level of the root logger.
        websockets_level: Level of the `websockets` logger which is far
            more verbose than the relay itself.
    """

    log_dir: str | None = None
    log_file: str = 'relay.log'
    level: int = logging.INFO
    websockets_level: int = logging.WARNING

    @field_validator('level', 'websockets_level', mode='before')
    @classmethod
    def _check_level(cls, value: int | str) -> int:
        return _parse_level(value)


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to. All interfaces if
            not set.
        port: Network port the server binds to.
        default_room: Room for connections and frames that do not name one.
        max_message_bytes: Connections that send a larger frame are closed
            with code 4003.
        tls: Enables `wss://` when set.
        logging: Logging configuration.
        stats: Client and room reporting configuration.
    """

    host: str | None = None
    port: int = 8080
    default_room: str = DEFAULT_ROOM
    max_message_bytes: int | None = None
    tls: RelayTLSConfig | None = None
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    stats: RelayStatsConfig = Field(default_factory=RelayStatsConfig)

    @field_validator('port')
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError(f'Port must be in [0, 65535]. Got {value}.')
        return value

    @field_validator('default_room')
    @classmethod
    def _check_room(cls, value: str) -> str:
        if not value:
            raise ValueError('Default room cannot be empty.')
        return value

    @field_validator('max_message_bytes')
    @classmethod
    def _check_max_message_bytes(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError('Max message size must be positive.')
        return value

    @property
    def scheme(self) -> str:
        """`wss` if TLS is configured otherwise `ws`."""
        return 'ws' if self.tls is None else 'wss'

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="relay.toml"
            port = 8080
            default_room = "lobby"
            max_message_bytes = 65536

            [tls]
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"

            [logging]
            log_dir = "/var/log/peerchat"
            level = "INFO"

            [stats]
            interval = 300
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
