"""PeerChat is a library for signed peer-to-peer chat over WebRTC."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peerchat')
