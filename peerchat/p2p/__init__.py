"""Peer-to-peer communication and relaying.

This module provides two main functionalities: the
[`PeerConnectionManager`][peerchat.p2p.manager.PeerConnectionManager] and
relay client/server implementations.

* The [`PeerConnectionManager`][peerchat.p2p.manager.PeerConnectionManager]
  enables communication between arbitrary peers, identified by their public
  keys, even if peers are behind separate NATs. Peer connections are
  established using [aiortc](https://aiortc.readthedocs.io/){target=_blank},
  an asyncio WebRTC implementation.
* The [`peerchat.p2p.relay`][peerchat.p2p.relay] module provides
  implementations of the relay server and the signaling client that are used
  by peers to exchange the offers, answers and candidates needed to
  establish WebRTC peer connections.
"""
from __future__ import annotations
