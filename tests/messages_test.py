from __future__ import annotations

import json

import pytest

from peerchat.messages import decode_message
from peerchat.messages import DeliveryState
from peerchat.messages import DirectMessage
from peerchat.messages import encode_message
from peerchat.messages import FileAttachment
from peerchat.messages import GroupEvent
from peerchat.messages import GroupMessage
from peerchat.messages import GroupMessageType
from peerchat.messages import GroupPoll
from peerchat.messages import GroupPollVote
from peerchat.messages import MessageDecodeError
from peerchat.messages import MessageEncodeError
from peerchat.messages import to_camel
from peerchat.messages import to_snake


@pytest.mark.parametrize(
    'snake,camel',
    (
        ('sender', 'sender'),
        ('group_id', 'groupId'),
        ('sender_key', 'senderKey'),
        ('poll_vote', 'pollVote'),
        ('option_index', 'optionIndex'),
    ),
)
def test_case_conversion(snake: str, camel: str) -> None:
    assert to_camel(snake) == camel
    assert to_snake(camel) == snake


def test_encode_direct_message() -> None:
    message = DirectMessage(
        sender='ab',
        content='hi',
        timestamp=1,
        file=FileAttachment('a.txt', 'text/plain', 3, 'abc'),
        signature='ff',
    )
    data = json.loads(encode_message(message))
    assert data['messageType'] == 'DirectMessage'
    assert data['file'] == {
        'name': 'a.txt',
        'type': 'text/plain',
        'size': 3,
        'data': 'abc',
    }
    assert data['state'] == 'sending'
    assert 'id' not in data


def test_encode_group_message_uses_camel_case() -> None:
    message = GroupMessage(
        group_id='g1',
        sender_key='ab',
        timestamp=1,
        type=GroupMessageType.poll_vote,
        poll_vote=GroupPollVote(poll_id='p1', option_index=0),
    )
    data = json.loads(encode_message(message))
    assert data['groupId'] == 'g1'
    assert data['senderKey'] == 'ab'
    assert data['type'] == 'pollVote'
    assert data['pollVote'] == {'pollId': 'p1', 'optionIndex': 0}
    assert 'event' not in data


def test_decode_group_message_nested_types() -> None:
    message = GroupMessage(
        group_id='g1',
        sender_key='ab',
        timestamp=1,
        type=GroupMessageType.event,
        event=GroupEvent('Party', 'fun', '2024-01-01T18:00', 'Park'),
        poll=GroupPoll('Lunch?', ['yes', 'no']),
        state=DeliveryState.sent,
    )
    decoded = decode_message(encode_message(message))
    assert isinstance(decoded, GroupMessage)
    assert decoded == message
    assert isinstance(decoded.event, GroupEvent)
    assert decoded.type is GroupMessageType.event
    assert decoded.state is DeliveryState.sent


def test_decode_bytes() -> None:
    message = DirectMessage(sender='ab', content='hi', timestamp=1)
    assert decode_message(encode_message(message).encode()) == message


@pytest.mark.parametrize(
    'raw,match',
    (
        ('{', 'JSON'),
        (b'\xff\xfe', 'JSON'),
        ('[]', 'JSON object'),
        ('{"sender": "ab"}', 'messageType'),
        ('{"messageType": "Group"}', 'unknown message type'),
        ('{"messageType": "decode_message"}', 'unknown message type'),
        ('{"messageType": "DirectMessage", "sender": "ab"}', 'convert'),
        (
            '{"messageType": "GroupMessage", "groupId": "g", '
            '"senderKey": "k", "timestamp": 1, "type": "dance"}',
            'convert',
        ),
        (
            '{"messageType": "DirectMessage", "sender": "ab", '
            '"content": "", "timestamp": 1, "file": {"unknown": 1}}',
            'convert',
        ),
        (
            '{"messageType": "DirectMessage", "sender": "ab", '
            '"content": "", "timestamp": 1, "file": [1]}',
            'convert',
        ),
        (
            '{"messageType": "GroupMessage", "groupId": "g", '
            '"senderKey": ["x"], "timestamp": 1}',
            'senderKey',
        ),
        (
            '{"messageType": "DirectMessage", "sender": {"a": 1}, '
            '"content": "", "timestamp": 1}',
            'sender',
        ),
        (
            '{"messageType": "DirectMessage", "sender": "ab", '
            '"content": "", "timestamp": [1]}',
            'timestamp',
        ),
        (
            '{"messageType": "DirectMessage", "sender": "ab", '
            '"content": "", "timestamp": true}',
            'timestamp',
        ),
        (
            '{"messageType": "DirectMessage", "sender": "ab", '
            '"content": "", "timestamp": 1, "signature": 7}',
            'signature',
        ),
    ),
)
def test_decode_errors(raw: str | bytes, match: str) -> None:
    with pytest.raises(MessageDecodeError, match=match):
        decode_message(raw)


def test_encode_errors() -> None:
    with pytest.raises(MessageEncodeError, match='DirectMessage'):
        encode_message(object())  # type: ignore[arg-type]

    message = DirectMessage(sender='ab', content=object(), timestamp=1)  # type: ignore[arg-type]
    with pytest.raises(MessageEncodeError, match='encoding'):
        encode_message(message)
