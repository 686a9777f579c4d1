"""Exception types raised by signaling clients and relay servers."""
from __future__ import annotations


class RelayClientError(Exception):
    """Base exception type for exceptions raised by signaling clients."""

    pass


class RelayNotConnectedError(RelayClientError):
    """Exception raised if a client is not connected to a relay server."""

    pass


class RelayServerError(Exception):
    """Base exception type for exceptions raised by relay servers."""

    pass


class BadRequestError(RelayServerError):
    """Client sent a frame the relay cannot route."""

    pass
