"""Signal envelopes exchanged through the relay server.

Frames on the relay are JSON objects of the form:

```json
{"type": "offer", "from": "<hex-key>", "to": "<hex-key>", "data": {...}, "room": "main"}
```

The relay never looks inside `data`. It is the negotiation blob: a session
description for offers and answers or an ICE candidate for candidates.
"""
from __future__ import annotations

import dataclasses
import json
from typing import Any
from typing import Literal

SignalType = Literal['offer', 'answer', 'candidate']

SIGNAL_TYPES = ('offer', 'answer', 'candidate')
DEFAULT_ROOM = 'main'


@dataclasses.dataclass
class SignalEnvelope:
    """Negotiation message addressed from one peer to another.

    Attributes:
        type: One of `#!python 'offer'`, `#!python 'answer'` or
            `#!python 'candidate'`.
        source: Hex public key of the sending peer (`from` on the wire).
        target: Hex public key of the destination peer (`to` on the wire).
        data: Opaque negotiation blob.
        room: Relay room the envelope is broadcast in.
    """

    type: SignalType
    source: str
    target: str
    data: Any
    room: str = DEFAULT_ROOM


class SignalMessageError(Exception):
    """Base exception type for signal envelopes."""

    pass


class SignalDecodeError(SignalMessageError):
    """Exception raised when a frame cannot be decoded into an envelope."""

    pass


class SignalEncodeError(SignalMessageError):
    """Exception raised when an envelope cannot be encoded."""

    pass


def decode_signal(message: str | bytes) -> SignalEnvelope:
    """Decode a relay frame into a signal envelope.

    Args:
        message: JSON frame received from the relay.

    Returns:
        Parsed envelope.

    Raises:
        SignalDecodeError: If the frame is not JSON, is not an object, has an
            unknown `type`, or is missing the `from` or `to` keys.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SignalDecodeError('Failed to load frame as JSON.') from e

    if not isinstance(data, dict):
        raise SignalDecodeError('Frame is not a JSON object.')

    signal_type = data.get('type')
    if signal_type not in SIGNAL_TYPES:
        raise SignalDecodeError(f'Unknown signal type: {signal_type}.')

    source = data.get('from')
    target = data.get('to')
    if not isinstance(source, str) or not isinstance(target, str):
        raise SignalDecodeError(
            'Signal is missing string "from" and "to" keys.',
        )

    room = data.get('room') or DEFAULT_ROOM
    return SignalEnvelope(
        type=signal_type,
        source=source,
        target=target,
        data=data.get('data'),
        room=str(room),
    )


def encode_signal(envelope: SignalEnvelope) -> str:
    """Encode a signal envelope as a relay frame.

    Raises:
        SignalEncodeError: If the envelope is the wrong type or its data is
            not JSON serializable.
    """
    if not isinstance(envelope, SignalEnvelope):
        raise SignalEncodeError(
            f'Message is not an instance of {SignalEnvelope.__name__}. '
            f'Got {type(envelope).__name__}.',
        )

    data = {
        'type': envelope.type,
        'from': envelope.source,
        'to': envelope.target,
        'data': envelope.data,
        'room': envelope.room,
    }
    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise SignalEncodeError('Error encoding signal envelope.') from e
