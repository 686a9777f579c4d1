from __future__ import annotations

import logging
import pathlib
import ssl

import pytest
from pydantic import ValidationError

from peerchat.p2p.relay.config import RelayLoggingConfig
from peerchat.p2p.relay.config import RelayServingConfig
from peerchat.p2p.relay.config import RelayStatsConfig
from peerchat.p2p.relay.config import RelayTLSConfig
from testing.ssl import CertificateFiles


def test_defaults() -> None:
    config = RelayServingConfig()
    assert config.host is None
    assert config.port == 8080
    assert config.default_room == 'main'
    assert config.max_message_bytes is None
    assert config.tls is None
    assert config.scheme == 'ws'
    assert config.logging == RelayLoggingConfig()
    assert config.logging.level == logging.INFO
    assert config.logging.websockets_level == logging.WARNING
    assert config.logging.log_file == 'relay.log'
    assert config.stats == RelayStatsConfig()
    assert config.stats.interval == 60


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
host = "localhost"
port = 3579
default_room = "lobby"
max_message_bytes = 1024

[tls]
certfile = "/path/to/cert.pem"
keyfile = "/path/to/privkey.pem"

[logging]
log_dir = "/path/to/log/dir"
level = "warning"
websockets_level = "INFO"

[stats]
interval = 120
detail_limit = 8
level = "DEBUG"
"""

    filepath = tmp_path / 'relay.toml'
    with open(filepath, 'w') as f:
        f.write(data)

    config = RelayServingConfig.from_toml(filepath)

    assert config.host == 'localhost'
    assert config.port == 3579
    assert config.default_room == 'lobby'
    assert config.max_message_bytes == 1024
    assert config.tls == RelayTLSConfig(
        certfile='/path/to/cert.pem',
        keyfile='/path/to/privkey.pem',
    )
    assert config.scheme == 'wss'
    assert config.logging.log_dir == '/path/to/log/dir'
    assert config.logging.level == logging.WARNING
    assert config.logging.websockets_level == logging.INFO
    assert config.stats.interval == 120
    assert config.stats.detail_limit == 8
    assert config.stats.level == logging.DEBUG


def test_read_partial_config_file(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    with open(filepath, 'w') as f:
        f.write('port = 9000\n')

    config = RelayServingConfig.from_toml(filepath)
    assert config.port == 9000
    assert config.logging == RelayLoggingConfig()
    assert config.stats == RelayStatsConfig()


@pytest.mark.parametrize(
    'kwargs',
    (
        {'port': -1},
        {'port': 65536},
        {'default_room': ''},
        {'max_message_bytes': 0},
        {'logging': {'level': 'LOUD'}},
        {'stats': {'level': 'quiet'}},
        {'tls': {'keyfile': '/path/to/key.pem'}},
    ),
)
def test_invalid_values(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        RelayServingConfig.model_validate(kwargs)


def test_tls_ssl_context(certificate_files: CertificateFiles) -> None:
    tls = RelayTLSConfig(
        certfile=certificate_files.certfile,
        keyfile=certificate_files.keyfile,
    )
    context = tls.ssl_context()
    assert isinstance(context, ssl.SSLContext)
    assert context.protocol == ssl.PROTOCOL_TLS_SERVER
