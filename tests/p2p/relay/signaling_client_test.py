from __future__ import annotations

import asyncio
import json
import logging
from unittest import mock

import pytest
from websockets.asyncio.server import serve
from websockets.asyncio.server import ServerConnection

from peerchat.p2p.relay.client import room_from_address
from peerchat.p2p.relay.client import SignalingClient
from peerchat.p2p.relay.exceptions import RelayNotConnectedError
from peerchat.p2p.relay.messages import encode_signal
from peerchat.p2p.relay.messages import SignalEnvelope
from testing.relay_server import RelayServerInfo
from testing.utils import open_port
from testing.utils import wait_for_condition


@pytest.mark.parametrize(
    'address,room',
    (
        ('ws://localhost:8080', 'main'),
        ('ws://localhost:8080?room=friends', 'friends'),
        ('wss://relay.example.com/?room=a&other=b', 'a'),
    ),
)
def test_room_from_address(address: str, room: str) -> None:
    assert room_from_address(address) == room


def test_invalid_address() -> None:
    with pytest.raises(ValueError, match='ws://'):
        SignalingClient('http://localhost:8080')


@pytest.mark.asyncio()
async def test_signal_before_connect() -> None:
    client = SignalingClient()
    with pytest.raises(RelayNotConnectedError):
        await client.signal('abcd', 'offer', {})


@pytest.mark.asyncio()
async def test_send_queues_while_offline_and_disconnect_clears() -> None:
    client = SignalingClient()
    await client.send(SignalEnvelope('offer', 'a', 'b', {}))
    await client.send(SignalEnvelope('answer', 'a', 'b', {}))
    assert client.queued == 2
    assert not client.connected

    await client.disconnect()
    assert client.queued == 0


@pytest.mark.asyncio()
async def test_set_relay_address_moves_queue() -> None:
    client = SignalingClient('ws://localhost:8080')
    envelope = SignalEnvelope('offer', 'a', 'b', {})
    await client.send(envelope)

    await client.set_relay_address('ws://localhost:9999?room=friends')
    assert client.address == 'ws://localhost:9999?room=friends'
    assert client.room == 'friends'
    assert client.queued == 1
    assert envelope.room == 'friends'

    with pytest.raises(ValueError):
        await client.set_relay_address('localhost:9999')

    await client.disconnect()


@pytest.mark.asyncio()
async def test_connect_and_exchange(relay_server: RelayServerInfo) -> None:
    a_received: list[SignalEnvelope] = []
    b_received: list[SignalEnvelope] = []
    connectivity: list[bool] = []

    a = SignalingClient(relay_server.address, reconnect_delay=0.05)
    a.on_connectivity_change(connectivity.append)
    b = SignalingClient(relay_server.address, reconnect_delay=0.05)

    async def _handle_b(envelope: SignalEnvelope) -> None:
        b_received.append(envelope)

    await a.connect('aaaa', a_received.append)
    await b.connect('bbbb', _handle_b)
    await a.wait_until_connected(timeout=5)
    await b.wait_until_connected(timeout=5)
    assert a.connected
    assert a.local_key == 'aaaa'
    assert connectivity == [True]

    await a.signal('bbbb', 'offer', {'type': 'offer', 'sdp': 'v=0'})
    await wait_for_condition(lambda: len(b_received) == 1)

    envelope = b_received[0]
    assert envelope.type == 'offer'
    assert envelope.source == 'aaaa'
    assert envelope.target == 'bbbb'
    assert envelope.data == {'type': 'offer', 'sdp': 'v=0'}
    assert envelope.room == 'main'
    assert a_received == []

    await a.disconnect()
    await b.disconnect()
    assert connectivity == [True, False]
    assert not a.connected


@pytest.mark.asyncio()
async def test_frames_for_other_peers_dropped(
    relay_server: RelayServerInfo,
) -> None:
    handler = mock.MagicMock()
    receiver = mock.MagicMock()
    a = SignalingClient(relay_server.address)
    b = SignalingClient(relay_server.address)
    c = SignalingClient(relay_server.address)
    await a.connect('aaaa', mock.MagicMock())
    await b.connect('bbbb', receiver)
    await c.connect('cccc', handler)
    for client in (a, b, c):
        await client.wait_until_connected(timeout=5)

    await a.signal('bbbb', 'candidate', {'candidate': ''})
    await wait_for_condition(lambda: receiver.call_count == 1)
    handler.assert_not_called()

    for client in (a, b, c):
        await client.disconnect()


@pytest.mark.asyncio()
async def test_rooms_are_isolated(relay_server: RelayServerInfo) -> None:
    handler = mock.MagicMock()
    receiver = mock.MagicMock()
    a = SignalingClient(f'{relay_server.address}?room=one')
    b = SignalingClient(f'{relay_server.address}?room=two')
    b_same = SignalingClient(f'{relay_server.address}?room=one')
    await a.connect('aaaa', mock.MagicMock())
    await b.connect('bbbb', handler)
    await b_same.connect('bbbb', receiver)
    for client in (a, b, b_same):
        await client.wait_until_connected(timeout=5)

    await a.signal('bbbb', 'offer', {})
    await wait_for_condition(lambda: receiver.call_count == 1)
    assert receiver.call_args.args[0].room == 'one'
    handler.assert_not_called()

    for client in (a, b, b_same):
        await client.disconnect()


@pytest.mark.asyncio()
async def test_handle_frame_filters(caplog) -> None:
    caplog.set_level(logging.WARNING)
    handler = mock.MagicMock()
    client = SignalingClient()
    client._local_key = 'aaaa'
    client._on_signal = handler

    await client._handle_frame('not json')
    await client._handle_frame('{"type": "hangup", "from": "b", "to": "aaaa"}')
    await client._handle_frame(
        encode_signal(SignalEnvelope('offer', 'bbbb', 'cccc', {})),
    )
    await client._handle_frame(
        encode_signal(SignalEnvelope('offer', 'aaaa', 'aaaa', {})),
    )
    handler.assert_not_called()
    assert sum('malformed' in r.message for r in caplog.records) == 2

    await client._handle_frame(
        encode_signal(SignalEnvelope('offer', 'bbbb', 'aaaa', {})),
    )
    handler.assert_called_once()


@pytest.mark.asyncio()
async def test_queued_signals_flushed_in_order() -> None:
    port = open_port()
    address = f'ws://localhost:{port}'
    frames: list[str] = []

    async def _record(websocket: ServerConnection) -> None:
        async for frame in websocket:
            frames.append(str(frame))

    client = SignalingClient(address, reconnect_delay=0.05)
    await client.connect('aaaa', mock.MagicMock())
    for i in range(5):
        await client.signal('bbbb', 'candidate', {'index': i})
    assert client.queued == 5

    # Let at least one connection attempt fail first
    await asyncio.sleep(0.1)
    assert not client.connected

    async with serve(_record, 'localhost', port):
        await client.wait_until_connected(timeout=5)
        assert client.queued == 0
        await client.signal('bbbb', 'candidate', {'index': 5})
        await wait_for_condition(lambda: len(frames) == 6)

    assert [json.loads(frame)['data']['index'] for frame in frames] == list(
        range(6),
    )
    await client.disconnect()


@pytest.mark.asyncio()
async def test_reconnects_after_connection_lost(
    relay_server: RelayServerInfo,
) -> None:
    connectivity: list[bool] = []
    client = SignalingClient(relay_server.address, reconnect_delay=0.05)
    client.on_connectivity_change(connectivity.append)
    await client.connect('aaaa', mock.MagicMock())
    await client.wait_until_connected(timeout=5)

    for relay_client in relay_server.relay_server.room_manager.get_clients():
        await relay_client.websocket.close()

    await wait_for_condition(lambda: connectivity == [True, False, True])
    assert client.connected

    await client.disconnect()


@pytest.mark.asyncio()
async def test_connect_supersedes_previous(
    relay_server: RelayServerInfo,
) -> None:
    client = SignalingClient(relay_server.address)
    await client.connect('aaaa', mock.MagicMock())
    await client.wait_until_connected(timeout=5)

    await client.connect('bbbb', mock.MagicMock())
    assert client.local_key == 'bbbb'
    await client.wait_until_connected(timeout=5)
    await wait_for_condition(
        lambda: len(relay_server.relay_server.room_manager.get_clients())
        == 1,
    )

    await client.disconnect()


@pytest.mark.asyncio()
async def test_set_relay_address_reconnects(
    relay_server: RelayServerInfo,
) -> None:
    client = SignalingClient(f'ws://localhost:{open_port()}')
    await client.connect('aaaa', mock.MagicMock())
    await client.set_relay_address(f'{relay_server.address}?room=friends')
    await client.wait_until_connected(timeout=5)

    manager = relay_server.relay_server.room_manager
    await wait_for_condition(lambda: manager.get_rooms() == {'friends': 1})

    await client.disconnect()


@pytest.mark.asyncio()
async def test_handler_errors_do_not_stop_client(
    relay_server: RelayServerInfo,
    caplog,
) -> None:
    caplog.set_level(logging.ERROR)
    received: list[SignalEnvelope] = []
    connectivity: list[bool] = []

    async def _handle(envelope: SignalEnvelope) -> None:
        if envelope.data.get('sdp') == 123:
            raise RuntimeError('cannot apply offer')
        received.append(envelope)

    a = SignalingClient(relay_server.address, reconnect_delay=0.05)
    b = SignalingClient(relay_server.address, reconnect_delay=0.05)
    b.on_connectivity_change(connectivity.append)
    await a.connect('aaaa', mock.MagicMock())
    await b.connect('bbbb', _handle)
    await a.wait_until_connected(timeout=5)
    await b.wait_until_connected(timeout=5)

    await a.signal('bbbb', 'offer', {'type': 'offer', 'sdp': 123})
    await a.signal('bbbb', 'offer', {'type': 'offer', 'sdp': 'v=0'})
    await wait_for_condition(lambda: len(received) == 1)

    assert received[0].data == {'type': 'offer', 'sdp': 'v=0'}
    assert any(
        'signal handler failed' in record.message for record in caplog.records
    )
    assert b.connected
    assert connectivity == [True]

    await a.disconnect()
    await b.disconnect()
