"""Canonical byte form of messages for signing and verification.

The canonical form is a projection of a message onto the fields that carry
meaning: local identifiers, the signature, and the delivery state are left
out, and each nested object is rebuilt with its own explicit key order
instead of being copied verbatim. Optional values that are absent are
omitted entirely rather than written as `null`.

The projection is serialized as compact UTF-8 JSON, which is byte-for-byte
what `JSON.stringify` produces in a browser for the same object, so
signatures made by either kind of client verify on the other.
"""
from __future__ import annotations

import json
from typing import Any

from peerchat.messages import DirectMessage
from peerchat.messages import FileAttachment
from peerchat.messages import GroupEvent
from peerchat.messages import GroupMessage
from peerchat.messages import GroupPoll
from peerchat.messages import GroupPollVote
from peerchat.messages import GroupUpdate
from peerchat.messages import Message


def _omit_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def _file(file: FileAttachment | None) -> dict[str, Any] | None:
    if file is None:
        return None
    # Contents are not signed, only the name, type and size.
    return {'name': file.name, 'type': file.type, 'size': file.size}


def _event(event: GroupEvent | None) -> dict[str, Any] | None:
    if event is None:
        return None
    return _omit_none(
        {
            'title': event.title,
            'description': event.description,
            'location': event.location,
            'eventTime': event.event_time,
        },
    )


def _poll(poll: GroupPoll | None) -> dict[str, Any] | None:
    if poll is None:
        return None
    return {'question': poll.question, 'options': list(poll.options)}


def _poll_vote(vote: GroupPollVote | None) -> dict[str, Any] | None:
    if vote is None:
        return None
    return {'pollId': vote.poll_id, 'optionIndex': vote.option_index}


def _group_update(update: GroupUpdate | None) -> dict[str, Any] | None:
    if update is None:
        return None
    return {'displayPicture': update.display_picture}


def direct_message_payload(message: DirectMessage) -> dict[str, Any]:
    """Get the signed projection of a direct message."""
    return _omit_none(
        {
            'sender': message.sender,
            'content': message.content,
            'timestamp': message.timestamp,
            'file': _file(message.file),
        },
    )


def group_message_payload(message: GroupMessage) -> dict[str, Any]:
    """Get the signed projection of a group message."""
    return _omit_none(
        {
            'groupId': message.group_id,
            'senderKey': message.sender_key,
            'timestamp': message.timestamp,
            'type': message.type.value,
            'content': message.content,
            'file': _file(message.file),
            'event': _event(message.event),
            'poll': _poll(message.poll),
            'pollVote': _poll_vote(message.poll_vote),
            'groupUpdate': _group_update(message.group_update),
        },
    )


def canonicalize(message: Message) -> bytes:
    """Serialize the signed projection of a message.

    Args:
        message: Direct or group message.

    Returns:
        Compact UTF-8 JSON bytes of the canonical payload.

    Raises:
        TypeError: If `message` is not a known message type.
    """
    if isinstance(message, DirectMessage):
        payload = direct_message_payload(message)
    elif isinstance(message, GroupMessage):
        payload = group_message_payload(message)
    else:
        raise TypeError(
            f'Cannot canonicalize object of type {type(message).__name__}.',
        )
    return json.dumps(
        payload,
        separators=(',', ':'),
        ensure_ascii=False,
    ).encode('utf-8')
