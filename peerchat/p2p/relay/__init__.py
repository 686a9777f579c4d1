"""Relay server and signaling client implementations."""
from __future__ import annotations

from peerchat.p2p.relay.client import SignalingClient
from peerchat.p2p.relay.messages import SignalEnvelope
