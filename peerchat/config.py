"""Peer configuration file parsing."""
from __future__ import annotations

import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from peerchat.utils.config import load

DEFAULT_ICE_SERVERS = ['stun:stun.l.google.com:19302']


class PeerConfig(BaseModel):
    """Configuration of a peer's relay and transport settings.

    Attributes:
        relay_address: Address of the relay server. A `room` query
            parameter selects the relay room, e.g.
            `ws://relay.example.com:8080?room=friends`.
        reconnect_delay: Seconds to wait before reconnecting to the relay
            after the connection drops.
        open_timeout: Seconds to wait on opening a relay connection.
        ice_servers: STUN/TURN server URLs used to discover candidates.
        channel_label: Label of data channels this peer opens.
    """

    model_config = ConfigDict(extra='forbid')

    relay_address: str = 'ws://localhost:8080'
    reconnect_delay: float = Field(default=3.0, ge=0)
    open_timeout: float = Field(default=10.0, gt=0)
    ice_servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    channel_label: str = 'chat'

    @field_validator('relay_address')
    @classmethod
    def _check_relay_address(cls, value: str) -> str:
        if not (value.startswith('ws://') or value.startswith('wss://')):
            raise ValueError(
                f'Relay address must start with ws:// or wss://. Got {value}.',
            )
        return value

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="peer.toml"
            relay_address = "wss://relay.example.com?room=friends"
            reconnect_delay = 3.0
            ice_servers = ["stun:stun.l.google.com:19302"]
            ```

        Note:
            Omitted values are set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
