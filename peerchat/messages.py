"""Application message types exchanged over peer channels.

Messages travel between peers as JSON objects with camelCase keys so they
stay readable by browser clients speaking the same protocol. Every message
carries a `messageType` key naming the dataclass it decodes into.
"""
from __future__ import annotations

import dataclasses
import enum
import json
import re
import sys
from typing import Any
from typing import Union


class DeliveryState(enum.Enum):
    """Local delivery state of a message.

    Never transmitted as part of the signed payload.
    """

    sending = 'sending'
    sent = 'sent'
    failed = 'failed'
    received = 'received'


class GroupMessageType(enum.Enum):
    """Kinds of group messages and the payload each requires."""

    text = 'text'
    file = 'file'
    event = 'event'
    poll = 'poll'
    poll_vote = 'pollVote'
    group_update = 'group_update'


@dataclasses.dataclass
class FileAttachment:
    """File attached to a message.

    Attributes:
        name: Original file name.
        type: MIME type.
        size: Size of the raw file in bytes.
        data: Base64 encoded contents. Not covered by the signature.
    """

    name: str
    type: str
    size: int
    data: str = ''


@dataclasses.dataclass
class GroupPoll:
    """Poll posted to a group."""

    question: str
    options: list[str]


@dataclasses.dataclass
class GroupEvent:
    """Event announced to a group."""

    title: str
    description: str
    event_time: str
    location: str | None = None


@dataclasses.dataclass
class GroupPollVote:
    """Vote on a previously posted poll."""

    poll_id: int
    option_index: int


@dataclasses.dataclass
class GroupUpdate:
    """Change to group metadata."""

    display_picture: str


@dataclasses.dataclass
class Group:
    """Group of peers identified by their public keys."""

    id: str
    name: str
    member_keys: list[str]
    display_picture: str | None = None


@dataclasses.dataclass
class DirectMessage:
    """One-to-one message.

    Attributes:
        sender: Hex public key of the author.
        content: Message text.
        timestamp: Milliseconds since the epoch at creation.
        file: Optional attachment.
        signature: Hex ECDSA signature over the canonical payload.
        id: Local identifier, never signed.
        state: Local delivery state, never signed.
    """

    sender: str
    content: str
    timestamp: int
    file: FileAttachment | None = None
    signature: str = ''
    id: int | None = None
    state: DeliveryState = DeliveryState.sending


@dataclasses.dataclass
class GroupMessage:
    """Message posted to a group.

    Only the typed payload matching `type` is expected to be set, but the
    signature covers whichever payloads are present.
    """

    group_id: str
    sender_key: str
    timestamp: int
    type: GroupMessageType = GroupMessageType.text
    content: str = ''
    file: FileAttachment | None = None
    event: GroupEvent | None = None
    poll: GroupPoll | None = None
    poll_vote: GroupPollVote | None = None
    group_update: GroupUpdate | None = None
    signature: str = ''
    id: int | None = None
    state: DeliveryState = DeliveryState.sending


Message = Union[DirectMessage, GroupMessage]

_SUBOBJECT_TYPES: dict[str, type[Any]] = {
    'file': FileAttachment,
    'event': GroupEvent,
    'poll': GroupPoll,
    'poll_vote': GroupPollVote,
    'group_update': GroupUpdate,
}

# Scalar fields that are signed or used to identify a message.
_FIELD_TYPES: dict[str, type[Any]] = {
    'sender': str,
    'sender_key': str,
    'group_id': str,
    'content': str,
    'signature': str,
    'timestamp': int,
}


class MessageError(Exception):
    """Base exception type for application messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def to_camel(name: str) -> str:
    """Convert a snake_case name to camelCase."""
    first, *rest = name.split('_')
    return first + ''.join(part.capitalize() for part in rest)


def to_snake(name: str) -> str:
    """Convert a camelCase name to snake_case."""
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def _to_wire(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            to_camel(field.name): _to_wire(getattr(value, field.name))
            for field in dataclasses.fields(value)
            if getattr(value, field.name) is not None
        }
    elif isinstance(value, enum.Enum):
        return value.value
    elif isinstance(value, list):
        return [_to_wire(item) for item in value]
    return value


def _from_wire(data: dict[str, Any]) -> dict[str, Any]:
    fields = {to_snake(key): value for key, value in data.items()}
    for name, type_ in _SUBOBJECT_TYPES.items():
        value = fields.get(name)
        if isinstance(value, dict):
            fields[name] = type_(
                **{to_snake(key): item for key, item in value.items()},
            )
        elif value is not None:
            raise TypeError(f'{to_camel(name)} must be an object')
    if 'state' in fields:
        fields['state'] = DeliveryState(fields['state'])
    if 'type' in fields:
        fields['type'] = GroupMessageType(fields['type'])
    return fields


def decode_message(message: str | bytes) -> Message:
    """Decode a JSON string into the correct message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError('Message is not a JSON object.')

    try:
        message_type_name = data.pop('messageType')
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a messageType key.',
        ) from e

    message_type = getattr(sys.modules[__name__], str(message_type_name), None)
    if message_type not in (DirectMessage, GroupMessage):
        raise MessageDecodeError(
            f'The message is of an unknown message type: {message_type_name}.',
        )

    try:
        decoded = message_type(**_from_wire(data))
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e

    for name, type_ in _FIELD_TYPES.items():
        if not hasattr(decoded, name):
            continue
        value = getattr(decoded, name)
        if not isinstance(value, type_) or isinstance(value, bool):
            raise MessageDecodeError(
                f'Field {to_camel(name)} of {message_type.__name__} must be '
                f'of type {type_.__name__}.',
            )
    return decoded


def encode_message(message: Message) -> str:
    """Encode a message as a JSON string.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, (DirectMessage, GroupMessage)):
        raise MessageEncodeError(
            'Message is not a DirectMessage or GroupMessage. '
            f'Got {type(message).__name__}.',
        )

    data = {'messageType': type(message).__name__, **_to_wire(message)}
    try:
        return json.dumps(data)
    except TypeError as e:
        raise MessageEncodeError('Error encoding message.') from e
