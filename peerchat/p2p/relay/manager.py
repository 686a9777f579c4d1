"""Helper classes for tracking relay connections grouped by room."""
from __future__ import annotations

import dataclasses
import datetime

from websockets.asyncio.server import ServerConnection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(eq=False)
class Client:
    """Connection to the relay and the rooms it has joined.

    Attributes:
        websocket: WebSocket connection to the client.
        rooms: Rooms the client is a member of.
        created: Time the client connected.
    """

    websocket: ServerConnection
    rooms: set[str] = dataclasses.field(default_factory=set)
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        rooms = ', '.join(sorted(self.rooms))
        return (
            f'{self.__class__.__name__}(address={address}, rooms=[{rooms}], '
            f'created={created})'
        )


class RoomManager:
    """Tracks which connections are in which rooms.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][peerchat.p2p.relay.server.RelayServer].
    """

    def __init__(self) -> None:
        self._clients: dict[ServerConnection, Client] = {}
        self._rooms: dict[str, set[ServerConnection]] = {}

    def join(self, websocket: ServerConnection, room: str) -> Client:
        """Add a connection to a room, tracking the connection if new."""
        client = self._clients.get(websocket)
        if client is None:
            client = Client(websocket=websocket)
            self._clients[websocket] = client
        client.rooms.add(room)
        self._rooms.setdefault(room, set()).add(websocket)
        return client

    def get_client(self, websocket: ServerConnection) -> Client | None:
        """Get the client for a connection."""
        return self._clients.get(websocket, None)

    def get_clients(self) -> list[Client]:
        """Get a list of all clients."""
        return list(self._clients.values())

    def get_members(self, room: str) -> list[ServerConnection]:
        """Get the connections in a room."""
        return list(self._rooms.get(room, ()))

    def get_rooms(self) -> dict[str, int]:
        """Get the number of members of each room."""
        return {room: len(members) for room, members in self._rooms.items()}

    def remove(self, websocket: ServerConnection) -> None:
        """Remove a connection from every room and drop empty rooms."""
        client = self._clients.pop(websocket, None)
        if client is None:
            return
        for room in client.rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._rooms[room]
