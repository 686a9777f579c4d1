"""Relay server implementation for facilitating WebRTC peer connections.

The relay server (or signaling server) is a lightweight server reachable by
all peers that forwards negotiation envelopes between them until they can
talk directly. It groups connections into rooms and broadcasts every frame
it receives to all other connections in the same room. It does not check
who a frame is from or addressed to: peers discard frames not meant for
them, and message authenticity is established by signatures between peers,
never by the relay.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import sys
import urllib.parse

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from peerchat.p2p.relay.config import RelayServingConfig
from peerchat.p2p.relay.exceptions import BadRequestError
from peerchat.p2p.relay.manager import RoomManager
from peerchat.p2p.relay.messages import DEFAULT_ROOM

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class RelayStats:
    """Snapshot of relay usage.

    Attributes:
        clients: Number of connected clients.
        rooms: Number of members in each non-empty room.
    """

    clients: int
    rooms: dict[str, int]

    def __str__(self) -> str:
        return f'{self.clients} client(s) in {len(self.rooms)} room(s)'


class RelayServer:
    """Room based WebRTC relay server.

    A connection joins the room named by the `room` query parameter of the
    URL it connected to (or the default room) as soon as it connects, and
    also joins any room named in the `room` field of a frame it sends.

    The relay server is built on websockets and designed to be served using
    [`serve()`][peerchat.p2p.relay.run.serve].

    Args:
        default_room: Room for connections and frames that do not name one.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        default_room: str = DEFAULT_ROOM,
        max_message_bytes: int | None = None,
    ) -> None:
        self._default_room = default_room
        self._max_message_bytes = max_message_bytes
        self._room_manager = RoomManager()

    @classmethod
    def from_config(cls, config: RelayServingConfig) -> RelayServer:
        """Create a relay server from a serving configuration."""
        return cls(
            default_room=config.default_room,
            max_message_bytes=config.max_message_bytes,
        )

    @property
    def room_manager(self) -> RoomManager:
        """Manager of connected clients and their rooms."""
        return self._room_manager

    def connection_room(self, websocket: ServerConnection) -> str:
        """Get the room a connection joins from its request URL."""
        request = websocket.request
        path = request.path if request is not None else ''
        query = urllib.parse.urlparse(path).query
        rooms = urllib.parse.parse_qs(query).get('room')
        return rooms[0] if rooms else self._default_room

    def stats(self) -> RelayStats:
        """Count connected clients and room members."""
        return RelayStats(
            clients=len(self.room_manager.get_clients()),
            rooms=self.room_manager.get_rooms(),
        )

    async def close_all(
        self,
        code: int = 1001,
        reason: str = 'Relay shutting down',
    ) -> int:
        """Close every client connection.

        Returns:
            Number of connections that were open.
        """
        count = 0
        for client in self.room_manager.get_clients():
            if client.websocket.state is State.OPEN:
                count += 1
            await client.websocket.close(code, reason)
        return count

    def frame_room(self, websocket: ServerConnection, message: str) -> str:
        """Get the room a frame should be broadcast in.

        Raises:
            BadRequestError: If the frame is not a JSON object.
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            raise BadRequestError('Frame is not valid JSON.') from e
        if not isinstance(data, dict):
            raise BadRequestError('Frame is not a JSON object.')
        room = data.get('room')
        return str(room) if room else self.connection_room(websocket)

    async def forward(
        self,
        source: ServerConnection,
        room: str,
        message: str,
    ) -> int:
        """Send a frame to every other open connection in a room.

        Returns:
            Number of connections the frame was sent to.
        """
        count = 0
        for member in self.room_manager.get_members(room):
            if member is source or member.state is not State.OPEN:
                continue
            try:
                await member.send(message)
            except websockets.exceptions.ConnectionClosed:
                logger.error(
                    'Connection closed while attempting to relay message',
                )
            else:
                count += 1
        return count

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server message handler.

        Frames that are not JSON objects are logged and skipped. The
        connection is closed with code 4003 if a frame exceeds the
        configured size limit.

        Args:
            websocket: Websocket connection of the client.
        """
        room = self.connection_room(websocket)
        self.room_manager.join(websocket, room)
        logger.info(
            f'Client connected from {websocket.remote_address} to room '
            f'{room}',
        )

        try:
            await self._handle_messages(websocket)
        finally:
            self.room_manager.remove(websocket)

    async def _handle_messages(self, websocket: ServerConnection) -> None:
        while True:
            try:
                message = await websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                logger.info(
                    f'Client at {websocket.remote_address} disconnected',
                )
                break
            except websockets.exceptions.ConnectionClosedError:
                logger.info(
                    f'Client at {websocket.remote_address} disconnected '
                    'unexpectedly',
                )
                break

            if (
                self._max_message_bytes is not None
                and sys.getsizeof(message) > self._max_message_bytes
            ):
                await websocket.close(
                    4003,
                    reason='Message length exceeds limit.',
                )
                logger.warning(
                    f'Client at {websocket.remote_address} sent message with '
                    f'size {sys.getsizeof(message)} bytes which exceeds '
                    f'the max configured size of {self._max_message_bytes} '
                    'bytes. Connection closed with error code 4003',
                )
                break

            if isinstance(message, bytes):
                try:
                    message = message.decode('utf-8')
                except UnicodeDecodeError:
                    logger.error(
                        'Failed to decode binary frame from '
                        f'{websocket.remote_address}',
                    )
                    continue

            try:
                room = self.frame_room(websocket, message)
            except BadRequestError as e:
                logger.error(
                    'Failed to parse signaling message from '
                    f'{websocket.remote_address}: {e}',
                )
                continue

            self.room_manager.join(websocket, room)
            count = await self.forward(websocket, room, message)
            if count > 0:
                logger.info(
                    f'Relayed message from {websocket.remote_address} to '
                    f'{count} peer(s) in room {room}',
                )
