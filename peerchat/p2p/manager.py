"""Manager of many peer-to-peer sessions."""
from __future__ import annotations

import asyncio
import functools
import logging
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Generator

from aiortc import RTCConfiguration
from aiortc import RTCIceServer
from aiortc.exceptions import InternalError
from aiortc.exceptions import InvalidAccessError
from aiortc.exceptions import InvalidStateError

from peerchat.config import PeerConfig
from peerchat.identity import truncate_key
from peerchat.p2p.connection import PeerSession
from peerchat.p2p.connection import SessionStatus
from peerchat.p2p.connection import StatusCallback
from peerchat.p2p.exceptions import NegotiationError
from peerchat.p2p.relay.client import SignalingClient
from peerchat.p2p.relay.messages import SignalEnvelope

logger = logging.getLogger(__name__)

# Errors raised by aiortc when a negotiation blob cannot be applied in the
# current signaling state.
_NEGOTIATION_ERRORS = (
    NegotiationError,
    InternalError,
    InvalidAccessError,
    InvalidStateError,
    ValueError,
)


def make_configuration(ice_servers: list[str] | None) -> RTCConfiguration:
    """Build an aiortc configuration from a list of ICE server URLs.

    Args:
        ice_servers: STUN/TURN URLs. `None` uses aiortc's default STUN
            server and an empty list disables server reflexive candidates.
    """
    if ice_servers is None:
        return RTCConfiguration()
    return RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers],
    )


class PeerConnectionManager:
    """Peer sessions manager.

    Owns one [`PeerSession`][peerchat.p2p.connection.PeerSession] per remote
    public key, answers negotiation requests arriving through the
    [`SignalingClient`][peerchat.p2p.relay.client.SignalingClient], and
    sends and receives payloads over open data channels.

    Example:
        ```python
        from peerchat.p2p.manager import PeerConnectionManager
        from peerchat.p2p.relay.client import SignalingClient

        async with PeerConnectionManager(
            alice.public_key,
            SignalingClient('ws://localhost:8080'),
        ) as manager:
            manager.on_status_change(bob_key, print)
            await manager.connect_to_peer(bob_key)
            ...
            delivered = manager.send_message(bob_key, 'hello')
            peer_key, message = await manager.recv()
        ```

    Note:
        The manager can be initialized with `await` or used as an
        asynchronous context manager. Either starts the signaling client.

    Args:
        local_key: Hex public key of the local identity.
        signaling: Client connection to the relay. The manager owns it and
            disconnects it in
            [`cleanup()`][peerchat.p2p.manager.PeerConnectionManager.cleanup].
        ice_servers: STUN/TURN URLs for new transports. `None` uses
            aiortc's default.
        channel_label: Label of data channels opened by this peer.
        on_message: Optional callback invoked with the peer key and payload
            of every message received. Messages are also available from
            [`recv()`][peerchat.p2p.manager.PeerConnectionManager.recv].
    """

    def __init__(
        self,
        local_key: str,
        signaling: SignalingClient,
        *,
        ice_servers: list[str] | None = None,
        channel_label: str = 'chat',
        on_message: Callable[[str, bytes | str], Any] | None = None,
    ) -> None:
        self._local_key = local_key
        self._signaling = signaling
        self._configuration = make_configuration(ice_servers)
        self._channel_label = channel_label
        self._on_message = on_message

        self._sessions: dict[str, PeerSession] = {}
        self._status_callbacks: dict[str, StatusCallback] = {}
        self._message_queue: asyncio.Queue[
            tuple[str, bytes | str]
        ] = asyncio.Queue()
        self._started = False

    @classmethod
    def from_config(
        cls,
        local_key: str,
        config: PeerConfig,
        **kwargs: Any,
    ) -> PeerConnectionManager:
        """Create a manager and its signaling client from a config."""
        signaling = SignalingClient(
            config.relay_address,
            reconnect_delay=config.reconnect_delay,
            open_timeout=config.open_timeout,
        )
        return cls(
            local_key,
            signaling,
            ice_servers=config.ice_servers,
            channel_label=config.channel_label,
            **kwargs,
        )

    @property
    def _log_prefix(self) -> str:
        local = truncate_key(self._local_key, 8, 0)
        return f'{self.__class__.__name__}[{local}]'

    @property
    def local_key(self) -> str:
        """Hex public key of the local identity."""
        return self._local_key

    @property
    def signaling(self) -> SignalingClient:
        """Signaling client owned by this manager."""
        return self._signaling

    @property
    def peers(self) -> list[str]:
        """Keys of all peers with a session."""
        return list(self._sessions)

    async def start(self) -> None:
        """Connect to the relay and begin handling incoming signals."""
        if not self._started:
            self._started = True
            await self._signaling.connect(self._local_key, self.handle_signal)

    async def __aenter__(self) -> PeerConnectionManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.cleanup()

    def __await__(self) -> Generator[Any, None, PeerConnectionManager]:
        return self.__aenter__().__await__()

    def _get_session(self, peer_key: str) -> PeerSession:
        # Lookup and insert happen without yielding to the event loop so
        # there is never more than one session per key.
        session = self._sessions.get(peer_key)
        if session is None:
            session = PeerSession(
                peer_key,
                self._local_key,
                self._signaling,
                configuration=self._configuration,
                channel_label=self._channel_label,
                on_message=self._handle_message,
                on_status_change=functools.partial(
                    self._notify_status,
                    peer_key,
                ),
            )
            self._sessions[peer_key] = session
            logger.debug(
                f'{self._log_prefix}: created session for '
                f'{truncate_key(peer_key, 8, 0)}',
            )
        return session

    def _notify_status(self, peer_key: str, status: SessionStatus) -> None:
        callback = self._status_callbacks.get(peer_key)
        if callback is not None:
            callback(status)

    def _handle_message(self, peer_key: str, data: bytes | str) -> None:
        self._message_queue.put_nowait((peer_key, data))
        if self._on_message is not None:
            self._on_message(peer_key, data)

    def on_status_change(self, peer_key: str, callback: StatusCallback) -> None:
        """Set the callback invoked when a peer's session status changes.

        Replaces any callback previously set for the peer.
        """
        self._status_callbacks[peer_key] = callback

    def status(self, peer_key: str) -> SessionStatus:
        """Get the status of the session with a peer.

        Peers without a session are `offline`.
        """
        session = self._sessions.get(peer_key)
        return SessionStatus.offline if session is None else session.status

    def session(self, peer_key: str) -> PeerSession | None:
        """Get the session with a peer if one exists."""
        return self._sessions.get(peer_key)

    async def connect_to_peer(
        self,
        peer_key: str,
        *,
        restart: bool = False,
    ) -> None:
        """Start negotiating a data channel with a peer.

        Safe to call repeatedly: if the session is already connecting or
        connected this is a no-op. There is no timeout on negotiation so a
        handshake that stalls stays `connecting`.

        Args:
            peer_key: Hex public key of the peer.
            restart: Abandon a negotiation still in `connecting` and send a
                fresh offer. Ignored if the data channel is open.
        """
        if peer_key == self._local_key:
            raise ValueError('Cannot connect to self.')

        session = self._get_session(peer_key)
        if session.is_open:
            return
        if restart and session.status is SessionStatus.connecting:
            logger.info(
                f'{self._log_prefix}: restarting negotiation with '
                f'{truncate_key(peer_key, 8, 0)}',
            )
            await session.close()
        if session.status is not SessionStatus.offline:
            return

        logger.info(
            f'{self._log_prefix}: initiating handshake with '
            f'{truncate_key(peer_key, 8, 0)}',
        )
        try:
            await session.start_offer()
        except _NEGOTIATION_ERRORS as e:
            logger.error(
                f'{self._log_prefix}: failed to create offer for '
                f'{truncate_key(peer_key, 8, 0)}: {e!r}',
            )
            await session.close()

    def send_message(self, peer_key: str, payload: bytes | str) -> bool:
        """Send a payload to a peer over its data channel.

        Delivery is best effort. Nothing is queued when the channel is not
        open, so retrying is up to the caller.

        Returns:
            `True` if the channel was open and the payload was sent.
        """
        session = self._sessions.get(peer_key)
        if session is None:
            logger.warning(
                f'{self._log_prefix}: cannot send to '
                f'{truncate_key(peer_key, 8, 0)}, no session',
            )
            return False
        return session.send(payload)

    async def recv(self) -> tuple[str, bytes | str]:
        """Receive the next message from any peer.

        Returns:
            Tuple of the sending peer's key and the payload.
        """
        return await self._message_queue.get()

    async def handle_signal(self, envelope: SignalEnvelope) -> None:
        """Apply a negotiation envelope received from the relay.

        Malformed or inapplicable envelopes are logged and dropped without
        affecting the session.
        """
        if (
            envelope.target != self._local_key
            or envelope.source == self._local_key
        ):
            logger.debug(f'{self._log_prefix}: ignoring misaddressed signal')
            return

        session = self._get_session(envelope.source)
        try:
            if envelope.type == 'offer':
                await session.handle_offer(envelope.data)
            elif envelope.type == 'answer':
                await session.handle_answer(envelope.data)
            elif envelope.type == 'candidate':
                await session.handle_candidate(envelope.data)
            else:
                raise NegotiationError(
                    f'Unknown signal type {envelope.type}.',
                )
        except _NEGOTIATION_ERRORS as e:
            logger.error(
                f'{self._log_prefix}: dropping {envelope.type} from '
                f'{truncate_key(envelope.source, 8, 0)}: {e!r}',
            )
        except Exception as e:
            logger.exception(
                f'{self._log_prefix}: unexpected error applying '
                f'{envelope.type} from '
                f'{truncate_key(envelope.source, 8, 0)}, dropping it: {e!r}',
            )

    async def cleanup(self) -> None:
        """Close every session and disconnect from the relay.

        All status callbacks are removed and the sessions are discarded.
        Calling this more than once is safe.
        """
        self._status_callbacks.clear()
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
        await self._signaling.disconnect()
        self._started = False
        logger.info(f'{self._log_prefix}: cleaned up all sessions')
