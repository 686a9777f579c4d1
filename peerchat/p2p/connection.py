"""Per-peer negotiation and data channel state."""
from __future__ import annotations

import enum
import logging
from typing import Any
from typing import Callable

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceCandidate
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidAccessError
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from peerchat.identity import truncate_key
from peerchat.p2p.exceptions import NegotiationError
from peerchat.p2p.relay.client import SignalingClient

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, 'bytes | str'], None]


class SessionStatus(enum.Enum):
    """Externally observed status of a peer session."""

    offline = 'offline'
    connecting = 'connecting'
    connected = 'connected'


class NegotiationRole(enum.Enum):
    """Which side of the handshake the local peer took."""

    initiator = 'initiator'
    responder = 'responder'
    unset = 'unset'


StatusCallback = Callable[[SessionStatus], None]


class StatusReconciler:
    """Fold data channel and ICE events into a single session status.

    The data channel opening and ICE reaching a connected state are two
    independent asynchronous events that both mean the peer is reachable.
    Whichever arrives first moves the status to `connected` and the second
    is a no-op, so observers never see a flicker. A closing channel or
    a disconnected, failed or closed ICE transport moves the status back to
    `offline`.

    Args:
        callback: Invoked with the new status on every change.
    """

    def __init__(self, callback: StatusCallback | None = None) -> None:
        self._status = SessionStatus.offline
        self._callback = callback

    @property
    def status(self) -> SessionStatus:
        """Current status."""
        return self._status

    def _set(self, status: SessionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        if self._callback is not None:
            self._callback(status)

    def begin(self) -> None:
        """Negotiation started."""
        if self._status is SessionStatus.offline:
            self._set(SessionStatus.connecting)

    def reset(self) -> None:
        """Transport torn down."""
        self._set(SessionStatus.offline)

    def channel_opened(self) -> None:
        """Data channel reported open."""
        self._set(SessionStatus.connected)

    def channel_closed(self) -> None:
        """Data channel reported closed."""
        self._set(SessionStatus.offline)

    def ice_state_changed(self, state: str) -> None:
        """ICE connection state changed.

        Args:
            state: New `iceConnectionState` of the peer connection.
        """
        if state in ('connected', 'completed'):
            self._set(SessionStatus.connected)
        elif state in ('disconnected', 'failed', 'closed'):
            self._set(SessionStatus.offline)
        elif state == 'checking':
            self.begin()


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    """Convert a session description to its wire form."""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_dict(data: Any) -> RTCSessionDescription:
    """Parse a session description from its wire form.

    Raises:
        NegotiationError: If the blob is not a valid session description.
    """
    try:
        sdp = data['sdp']
        type_ = data['type']
    except (KeyError, TypeError) as e:
        raise NegotiationError(f'Invalid session description: {e!r}') from e
    if not isinstance(sdp, str) or not isinstance(type_, str):
        raise NegotiationError(
            'Invalid session description: sdp and type must be strings.',
        )
    try:
        return RTCSessionDescription(sdp=sdp, type=type_)
    except ValueError as e:
        raise NegotiationError(f'Invalid session description: {e!r}') from e


def candidate_from_dict(data: Any) -> RTCIceCandidate | None:
    """Parse an ICE candidate from its wire form.

    The wire form mirrors `RTCIceCandidateInit` in browsers:
    `{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}`.

    Returns:
        The candidate or `None` if the blob signals the end of candidates.

    Raises:
        NegotiationError: If the blob is not a valid candidate.
    """
    if not data:
        return None
    try:
        text = data['candidate']
        if not text:
            return None
        if text.startswith('candidate:'):
            text = text.split(':', 1)[1]
        candidate = candidate_from_sdp(text)
        candidate.sdpMid = data.get('sdpMid')
        candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    except (
        AssertionError,
        AttributeError,
        IndexError,
        KeyError,
        TypeError,
        ValueError,
    ) as e:
        raise NegotiationError(f'Invalid ICE candidate: {e!r}') from e
    return candidate


class PeerSession:
    """Negotiation state and data channel for one remote peer.

    A session outlives any single transport: when the channel closes the
    session goes back to `offline` and a later offer, from either side,
    negotiates a fresh
    [`RTCPeerConnection`](https://aiortc.readthedocs.io/en/latest/api.html)
    inside the same session. Events from a transport that has been replaced
    are ignored.

    Warning:
        Applications should use the
        [`PeerConnectionManager`][peerchat.p2p.manager.PeerConnectionManager]
        rather than creating sessions directly.

    Args:
        peer_key: Hex public key of the remote peer.
        local_key: Hex public key of the local peer.
        signaling: Client used to send negotiation envelopes.
        configuration: aiortc configuration, such as ICE servers.
        channel_label: Label of the data channel opened by initiators.
        on_message: Invoked with the peer key and payload of each message
            received on the data channel.
        on_status_change: Invoked with the new status on every change.
    """

    def __init__(
        self,
        peer_key: str,
        local_key: str,
        signaling: SignalingClient,
        *,
        configuration: RTCConfiguration | None = None,
        channel_label: str = 'chat',
        on_message: MessageCallback | None = None,
        on_status_change: StatusCallback | None = None,
    ) -> None:
        self.peer_key = peer_key
        self.local_key = local_key
        self.role = NegotiationRole.unset

        self._signaling = signaling
        self._configuration = configuration
        self._channel_label = channel_label
        self._on_message = on_message
        self._on_status_change = on_status_change

        self._reconciler = StatusReconciler(self._status_changed)
        self._pc: RTCPeerConnection | None = None
        self._channel: RTCDataChannel | None = None
        self._pending_candidates: list[RTCIceCandidate] = []
        # aiortc re-serializes remote descriptions so keep the offer as sent.
        self._applied_offer: str | None = None

    @property
    def _log_prefix(self) -> str:
        local = truncate_key(self.local_key, 8, 0)
        remote = truncate_key(self.peer_key, 8, 0)
        return f'{self.__class__.__name__}[{local} > {remote}]'

    @property
    def status(self) -> SessionStatus:
        """Current session status."""
        return self._reconciler.status

    @property
    def is_open(self) -> bool:
        """Data channel is open and can send."""
        return self._channel is not None and self._channel.readyState == 'open'

    @property
    def pending_candidates(self) -> int:
        """Number of remote candidates waiting on a remote description."""
        return len(self._pending_candidates)

    def _status_changed(self, status: SessionStatus) -> None:
        logger.info(f'{self._log_prefix}: status changed to {status.value}')
        if self._on_status_change is not None:
            self._on_status_change(status)

    def _swap_transport(
        self,
        pc: RTCPeerConnection | None,
    ) -> tuple[RTCPeerConnection | None, RTCDataChannel | None]:
        stale = (self._pc, self._channel)
        if self._pc is not None:
            # Buffered candidates belong to the negotiation being replaced.
            self._pending_candidates.clear()
        self._pc = pc
        self._channel = None
        self._applied_offer = None
        if pc is not None:
            self._watch_transport(pc)
        return stale

    def _watch_transport(self, pc: RTCPeerConnection) -> None:
        @pc.on('datachannel')
        def on_datachannel(channel: RTCDataChannel) -> None:
            if pc is self._pc:
                logger.info(
                    f'{self._log_prefix}: received data channel '
                    f'{channel.label}',
                )
                self._bind_channel(channel)

        @pc.on('iceconnectionstatechange')
        def on_iceconnectionstatechange() -> None:
            if pc is self._pc:
                logger.debug(
                    f'{self._log_prefix}: ICE state is '
                    f'{pc.iceConnectionState}',
                )
                self._reconciler.ice_state_changed(pc.iceConnectionState)

    def _bind_channel(self, channel: RTCDataChannel) -> None:
        self._channel = channel

        @channel.on('open')
        def on_open() -> None:
            if channel is self._channel:
                logger.info(
                    f'{self._log_prefix}: data channel {channel.label} open',
                )
                self._reconciler.channel_opened()

        @channel.on('close')
        def on_close() -> None:
            if channel is self._channel:
                logger.info(
                    f'{self._log_prefix}: data channel {channel.label} closed',
                )
                self._reconciler.channel_closed()

        @channel.on('message')
        def on_message(data: bytes | str) -> None:
            logger.debug(f'{self._log_prefix}: received message from peer')
            if self._on_message is not None:
                self._on_message(self.peer_key, data)

        # Channels announced by the remote side may already be open.
        if channel.readyState == 'open':
            self._reconciler.channel_opened()

    async def _close_transport(
        self,
        pc: RTCPeerConnection | None,
        channel: RTCDataChannel | None,
    ) -> None:
        if channel is not None:
            channel.close()
        if pc is not None:
            await pc.close()

    async def _apply_pending_candidates(self, pc: RTCPeerConnection) -> None:
        while self._pending_candidates and pc is self._pc:
            candidate = self._pending_candidates.pop(0)
            try:
                await pc.addIceCandidate(candidate)
            except (InvalidAccessError, InvalidStateError, ValueError) as e:
                logger.warning(
                    f'{self._log_prefix}: dropping buffered candidate that '
                    f'could not be applied: {e!r}',
                )

    async def start_offer(self) -> None:
        """Begin negotiating as the initiator.

        Creates a fresh transport and data channel, moves the session to
        `connecting`, and sends an offer to the peer. Does nothing unless
        the session is `offline`.
        """
        if self.status is not SessionStatus.offline:
            return

        self.role = NegotiationRole.initiator
        pc = RTCPeerConnection(configuration=self._configuration)
        stale = self._swap_transport(pc)
        self._reconciler.begin()
        self._bind_channel(pc.createDataChannel(self._channel_label))
        await self._close_transport(*stale)

        await pc.setLocalDescription(await pc.createOffer())
        if pc is not self._pc:
            return
        logger.info(f'{self._log_prefix}: sending offer')
        await self._signaling.signal(
            self.peer_key,
            'offer',
            description_to_dict(pc.localDescription),
        )

    async def handle_offer(self, data: Any) -> None:
        """Answer an offer from the peer.

        Duplicate offers are ignored. If both peers sent offers at the same
        time, the peer with the smaller key yields and answers while the
        other ignores the incoming offer.

        Raises:
            NegotiationError: If the offer is malformed.
        """
        description = description_from_dict(data)
        if description.type != 'offer':
            raise NegotiationError(
                f'Expected an offer but got {description.type}.',
            )

        current = self._pc
        if current is not None and self._applied_offer == description.sdp:
            logger.info(f'{self._log_prefix}: ignoring duplicate offer')
            return
        if (
            self.role is NegotiationRole.initiator
            and current is not None
            and current.signalingState == 'have-local-offer'
        ):
            if self.local_key > self.peer_key:
                logger.info(f'{self._log_prefix}: ignoring colliding offer')
                return
            logger.info(f'{self._log_prefix}: yielding to colliding offer')

        self.role = NegotiationRole.responder
        pc = RTCPeerConnection(configuration=self._configuration)
        stale = self._swap_transport(pc)
        self._reconciler.reset()
        self._reconciler.begin()
        await self._close_transport(*stale)

        await pc.setRemoteDescription(description)
        if pc is self._pc:
            self._applied_offer = description.sdp
        await self._apply_pending_candidates(pc)
        await pc.setLocalDescription(await pc.createAnswer())
        if pc is not self._pc:
            return
        logger.info(f'{self._log_prefix}: sending answer')
        await self._signaling.signal(
            self.peer_key,
            'answer',
            description_to_dict(pc.localDescription),
        )

    async def handle_answer(self, data: Any) -> None:
        """Apply the peer's answer to our outstanding offer.

        Answers that do not match an outstanding offer are ignored.

        Raises:
            NegotiationError: If the answer is malformed.
        """
        description = description_from_dict(data)
        if description.type != 'answer':
            raise NegotiationError(
                f'Expected an answer but got {description.type}.',
            )

        pc = self._pc
        if (
            self.role is not NegotiationRole.initiator
            or pc is None
            or pc.signalingState != 'have-local-offer'
        ):
            logger.warning(
                f'{self._log_prefix}: ignoring answer that does not match '
                'an outstanding offer',
            )
            return

        logger.info(f'{self._log_prefix}: applying answer')
        await pc.setRemoteDescription(description)
        await self._apply_pending_candidates(pc)

    async def handle_candidate(self, data: Any) -> None:
        """Add a remote ICE candidate.

        Candidates that arrive before the remote description is applied are
        buffered in order and applied once it is.

        Raises:
            NegotiationError: If the candidate is malformed.
        """
        candidate = candidate_from_dict(data)
        if candidate is None:
            return

        pc = self._pc
        if pc is None or pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            logger.debug(
                f'{self._log_prefix}: buffered candidate until the remote '
                'description is set',
            )
            return
        await pc.addIceCandidate(candidate)

    def send(self, payload: bytes | str) -> bool:
        """Send a payload on the data channel.

        Returns:
            `True` if the channel was open and the payload was handed to it,
            otherwise `False`. Nothing is queued.
        """
        channel = self._channel
        if channel is None or channel.readyState != 'open':
            state = 'missing' if channel is None else channel.readyState
            logger.warning(
                f'{self._log_prefix}: cannot send, data channel is {state}',
            )
            return False
        channel.send(payload)
        logger.debug(f'{self._log_prefix}: sent message to peer')
        return True

    async def close(self) -> None:
        """Close the data channel and transport.

        The session returns to `offline` and can negotiate again.
        """
        stale = self._swap_transport(None)
        self._pending_candidates.clear()
        self._reconciler.reset()
        await self._close_transport(*stale)
        logger.info(f'{self._log_prefix}: closed')
