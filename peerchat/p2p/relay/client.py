"""Reconnecting client connection to a relay server."""
from __future__ import annotations

import asyncio
import collections
import inspect
import logging
import ssl
import urllib.parse
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect

from peerchat.identity import truncate_key
from peerchat.p2p.relay.exceptions import RelayNotConnectedError
from peerchat.p2p.relay.messages import DEFAULT_ROOM
from peerchat.p2p.relay.messages import decode_signal
from peerchat.p2p.relay.messages import encode_signal
from peerchat.p2p.relay.messages import SignalDecodeError
from peerchat.p2p.relay.messages import SignalEnvelope
from peerchat.p2p.relay.messages import SignalType
from peerchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

DEFAULT_RELAY_ADDRESS = 'ws://localhost:8080'
DEFAULT_RECONNECT_DELAY = 3.0

SignalHandler = Callable[[SignalEnvelope], Optional[Awaitable[None]]]
ConnectivityCallback = Callable[[bool], None]


def room_from_address(address: str) -> str:
    """Get the relay room named by the `room` query parameter of an address.

    Returns:
        The room name or `#!python 'main'` if the address does not name one.
    """
    query = urllib.parse.urlparse(address).query
    rooms = urllib.parse.parse_qs(query).get('room')
    return rooms[0] if rooms else DEFAULT_ROOM


def _validate_address(address: str) -> None:
    if not (address.startswith('ws://') or address.startswith('wss://')):
        raise ValueError(
            'Relay server address must start with ws:// or wss://. '
            f'Got {address}.',
        )


class SignalingClient:
    """Client connection to a relay server.

    The client keeps a single logical connection to the relay open for as
    long as it is active. If the connection drops for any reason other than
    [`disconnect()`][peerchat.p2p.relay.client.SignalingClient.disconnect],
    a new connection is attempted after a fixed delay, forever. Envelopes
    sent while the connection is down are queued and flushed in order once
    the connection opens again.

    Incoming frames are decoded into
    [`SignalEnvelope`][peerchat.p2p.relay.messages.SignalEnvelope] objects
    and passed to the handler given to
    [`connect()`][peerchat.p2p.relay.client.SignalingClient.connect]. Frames
    that cannot be decoded, frames addressed to another peer, and frames
    that appear to come from this client are dropped.

    Example:
        ```python
        from peerchat.p2p.relay.client import SignalingClient

        client = SignalingClient('ws://localhost:8080?room=friends')
        await client.connect(identity.public_key, handle_signal)
        await client.signal(peer_key, 'offer', {'type': 'offer', 'sdp': ...})
        await client.disconnect()
        ```

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`. The relay room is taken from the `room` query
            parameter.
        reconnect_delay: Seconds to wait before reconnecting after the
            connection closes unexpectedly or cannot be opened.
        open_timeout: Seconds to wait on opening a connection.
        ssl_context: Custom SSL context used for `wss://` addresses. A
            default context is created if not provided.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None`.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str = DEFAULT_RELAY_ADDRESS,
        *,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        open_timeout: float = 10,
        ssl_context: ssl.SSLContext | None = None,
        verify_certificate: bool = True,
    ) -> None:
        _validate_address(address)
        self._address = address
        self._room = room_from_address(address)
        self._reconnect_delay = reconnect_delay
        self._open_timeout = open_timeout
        self._ssl_context = ssl_context
        self._verify_certificate = verify_certificate

        self._local_key: str | None = None
        self._on_signal: SignalHandler | None = None
        self._connectivity_callbacks: list[ConnectivityCallback] = []

        self._queue: collections.deque[SignalEnvelope] = collections.deque()
        self._task: asyncio.Task[None] | None = None
        # Only set once the connection is open and the queue is flushed.
        self._websocket: ClientConnection | None = None
        self._open_event = asyncio.Event()

    @property
    def _log_prefix(self) -> str:
        local = truncate_key(self._local_key, 8, 0) or 'pending'
        return f'{self.__class__.__name__}[{local}]'

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def room(self) -> str:
        """Relay room envelopes are sent in."""
        return self._room

    @property
    def local_key(self) -> str | None:
        """Public key of the local peer if connected."""
        return self._local_key

    @property
    def connected(self) -> bool:
        """Relay connection is open and the outbound queue was flushed."""
        return self._websocket is not None

    @property
    def queued(self) -> int:
        """Number of envelopes waiting on the relay connection."""
        return len(self._queue)

    def _ssl_kwargs(self) -> dict[str, Any]:
        if not self._address.startswith('wss://'):
            return {}
        context = self._ssl_context
        if context is None:
            context = ssl.create_default_context()
            if not self._verify_certificate:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
        return {'ssl': context}

    def on_connectivity_change(self, callback: ConnectivityCallback) -> None:
        """Register a callback invoked with the new state on open and close.

        Args:
            callback: Called with `True` when the relay connection opens and
                `False` when it closes.
        """
        self._connectivity_callbacks.append(callback)

    def _set_connected(self, websocket: ClientConnection | None) -> None:
        was_connected = self._websocket is not None
        self._websocket = websocket
        if websocket is None:
            self._open_event.clear()
        else:
            self._open_event.set()

        if was_connected != (websocket is not None):
            for callback in list(self._connectivity_callbacks):
                callback(websocket is not None)

    def _start(self) -> None:
        self._task = spawn_guarded_background_task(
            self._run,
            name=f'signaling-client-{truncate_key(self._local_key, 8, 0)}',
        )

    async def _stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_connected(None)

    async def connect(self, local_key: str, on_signal: SignalHandler) -> None:
        """Start maintaining a connection to the relay server.

        Returns once the first connection attempt is scheduled. Use
        [`wait_until_connected()`][peerchat.p2p.relay.client.SignalingClient.wait_until_connected]
        to wait on the connection. Calling this again replaces the previous
        connection, key and handler.

        Args:
            local_key: Hex public key of the local peer. Frames not
                addressed to this key are dropped.
            on_signal: Callback (sync or async) invoked with each envelope
                addressed to this peer.
        """
        await self._stop()
        self._local_key = local_key
        self._on_signal = on_signal
        logger.info(
            f'{self._log_prefix}: connecting to relay at {self._address}',
        )
        self._start()

    async def wait_until_connected(self, timeout: float | None = None) -> None:
        """Wait for the relay connection to open.

        Raises:
            asyncio.TimeoutError: If the connection does not open within
                `timeout` seconds.
        """
        await asyncio.wait_for(self._open_event.wait(), timeout)

    async def set_relay_address(self, address: str) -> None:
        """Change the relay server address.

        Tears down the current connection and, if the client was connected
        or trying to connect, immediately connects to the new address with
        the same key and handler. Queued envelopes are kept and moved to the
        new room.

        Raises:
            ValueError: If address does not start with `ws://` or `wss://`.
        """
        _validate_address(address)
        active = self._task is not None
        await self._stop()

        self._address = address
        self._room = room_from_address(address)
        for envelope in self._queue:
            envelope.room = self._room
        logger.info(f'{self._log_prefix}: relay address set to {address}')

        if active and self._local_key is not None:
            self._start()

    async def disconnect(self) -> None:
        """Close the relay connection and stop reconnecting.

        Envelopes still queued are discarded.
        """
        await self._stop()
        if self._queue:
            logger.info(
                f'{self._log_prefix}: discarding {len(self._queue)} queued '
                'signal(s)',
            )
        self._queue.clear()
        logger.info(f'{self._log_prefix}: disconnected from relay')

    async def _run(self) -> None:
        while True:
            try:
                websocket = await connect(
                    self._address,
                    open_timeout=self._open_timeout,
                    **self._ssl_kwargs(),
                )
            except (
                OSError,
                asyncio.TimeoutError,
                websockets.exceptions.WebSocketException,
            ) as e:
                logger.warning(
                    f'{self._log_prefix}: unable to connect to relay at '
                    f'{self._address} ({e!r}). Retrying in '
                    f'{self._reconnect_delay} seconds',
                )
            else:
                await self._serve(websocket)
                logger.warning(
                    f'{self._log_prefix}: relay connection lost. '
                    f'Reconnecting in {self._reconnect_delay} seconds',
                )
            await asyncio.sleep(self._reconnect_delay)

    async def _serve(self, websocket: ClientConnection) -> None:
        try:
            await self._flush(websocket)
            self._set_connected(websocket)
            logger.info(
                f'{self._log_prefix}: connected to relay at {self._address} '
                f'in room {self._room}',
            )
            while True:
                frame = await websocket.recv()
                await self._handle_frame(frame)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f'{self._log_prefix}: relay connection closed ({e})')
        finally:
            self._set_connected(None)
            await websocket.close()

    async def _flush(self, websocket: ClientConnection) -> None:
        # Envelopes sent during the flush are appended to the queue, so
        # draining until empty keeps submission order.
        if self._queue:
            logger.info(
                f'{self._log_prefix}: flushing {len(self._queue)} queued '
                'signal(s)',
            )
        while self._queue:
            envelope = self._queue[0]
            await websocket.send(encode_signal(envelope))
            self._queue.popleft()

    async def _handle_frame(self, frame: str | bytes) -> None:
        try:
            envelope = decode_signal(frame)
        except SignalDecodeError as e:
            logger.warning(
                f'{self._log_prefix}: dropping malformed relay frame: {e}',
            )
            return

        if envelope.target != self._local_key:
            return
        if envelope.source == self._local_key:
            logger.debug(f'{self._log_prefix}: dropping self-addressed frame')
            return

        logger.info(
            f'{self._log_prefix}: incoming {envelope.type} from '
            f'{truncate_key(envelope.source, 8, 0)}',
        )
        if self._on_signal is None:
            return
        try:
            result = self._on_signal(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(
                f'{self._log_prefix}: signal handler failed on '
                f'{envelope.type} from '
                f'{truncate_key(envelope.source, 8, 0)}: {e!r}',
            )

    async def send(self, envelope: SignalEnvelope) -> None:
        """Send an envelope to the relay.

        If the relay connection is not open, the envelope is queued and sent
        once it opens. If no connection attempt is in progress, one is
        started.

        Raises:
            SignalEncodeError: If the envelope cannot be encoded.
        """
        message = encode_signal(envelope)
        websocket = self._websocket
        if websocket is None:
            self._queue.append(envelope)
            logger.debug(
                f'{self._log_prefix}: queued {envelope.type} for '
                f'{truncate_key(envelope.target, 8, 0)} while offline',
            )
            if self._task is None and self._local_key is not None:
                self._start()
            return

        try:
            await websocket.send(message)
        except websockets.exceptions.ConnectionClosed:
            logger.warning(
                f'{self._log_prefix}: relay closed while sending '
                f'{envelope.type}, re-queueing',
            )
            self._queue.append(envelope)
        else:
            logger.debug(
                f'{self._log_prefix}: sent {envelope.type} to '
                f'{truncate_key(envelope.target, 8, 0)}',
            )

    async def signal(
        self,
        target: str,
        signal_type: SignalType,
        data: Any,
    ) -> None:
        """Address and send a negotiation blob to a peer.

        Args:
            target: Hex public key of the destination peer.
            signal_type: Type of negotiation message.
            data: Negotiation blob.

        Raises:
            RelayNotConnectedError: If
                [`connect()`][peerchat.p2p.relay.client.SignalingClient.connect]
                has never been called so there is no local key to send from.
        """
        if self._local_key is None:
            raise RelayNotConnectedError(
                'Cannot send signals before connect() is called.',
            )
        envelope = SignalEnvelope(
            type=signal_type,
            source=self._local_key,
            target=target,
            data=data,
            room=self._room,
        )
        await self.send(envelope)
