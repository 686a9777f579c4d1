"""Exception types for peering errors."""
from __future__ import annotations


class PeerConnectionError(Exception):
    """Error connecting to peer."""

    pass


class NegotiationError(PeerConnectionError):
    """Negotiation blob from a peer is malformed or cannot be applied."""

    pass
