"""Signed direct and group messaging on top of peer connections."""
from __future__ import annotations

import collections
import dataclasses
import inspect
import logging
import time
from typing import Any
from typing import Callable

from peerchat.crypto import async_sign
from peerchat.crypto import async_verification_state
from peerchat.crypto import TrustState
from peerchat.exceptions import SigningError
from peerchat.identity import Identity
from peerchat.identity import truncate_key
from peerchat.messages import decode_message
from peerchat.messages import DeliveryState
from peerchat.messages import DirectMessage
from peerchat.messages import encode_message
from peerchat.messages import FileAttachment
from peerchat.messages import Group
from peerchat.messages import GroupEvent
from peerchat.messages import GroupMessage
from peerchat.messages import GroupMessageType
from peerchat.messages import GroupPoll
from peerchat.messages import GroupPollVote
from peerchat.messages import GroupUpdate
from peerchat.messages import Message
from peerchat.messages import MessageDecodeError
from peerchat.p2p.manager import PeerConnectionManager

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class ReceivedMessage:
    """Message received from a peer and its verification result.

    Attributes:
        peer_key: Key of the peer whose data channel carried the message.
        message: Decoded message with state `received`.
        trust: Result of checking the signature against the author's key.
    """

    peer_key: str
    message: Message
    trust: TrustState


class Messenger:
    """Sends and receives signed messages for one identity.

    Outgoing messages are signed with the identity's private key and sent
    over the manager's data channels. Incoming payloads are decoded, checked
    against the author's public key, and de-duplicated by sender and
    timestamp.

    Example:
        ```python
        async with PeerConnectionManager(identity.public_key, signaling) as m:
            messenger = Messenger(m, identity)
            await m.connect_to_peer(bob_key)
            ...
            message = await messenger.send_direct(bob_key, 'hi')
            assert message.state is DeliveryState.sent
        ```

    Args:
        manager: Manager of the peer sessions to send over.
        identity: Local identity used to sign outgoing messages.
        max_seen: Number of verified messages remembered for
            de-duplication. The oldest are forgotten first.
    """

    def __init__(
        self,
        manager: PeerConnectionManager,
        identity: Identity,
        *,
        max_seen: int = 10000,
    ) -> None:
        if manager.local_key != identity.public_key:
            raise ValueError(
                'Manager local key does not match the identity public key.',
            )
        self._manager = manager
        self._identity = identity
        self._last_timestamp = 0
        self._max_seen = max_seen
        self._seen: collections.OrderedDict[tuple[str, int], None] = (
            collections.OrderedDict()
        )

    @property
    def _log_prefix(self) -> str:
        local = truncate_key(self._identity.public_key, 8, 0)
        return f'{self.__class__.__name__}[{local}]'

    def _timestamp(self) -> int:
        # Strictly increasing so receivers never see two of our messages
        # with the same timestamp.
        now = int(time.time() * 1000)
        self._last_timestamp = max(now, self._last_timestamp + 1)
        return self._last_timestamp

    async def _sign(self, message: Message) -> None:
        try:
            message.signature = await async_sign(
                message,
                self._identity.private_key,
            )
        except SigningError:
            message.state = DeliveryState.failed
            logger.exception(f'{self._log_prefix}: failed to sign message')
            raise

    async def send_direct(
        self,
        peer_key: str,
        content: str,
        file: FileAttachment | None = None,
    ) -> DirectMessage:
        """Sign and send a direct message to a peer.

        Returns:
            The message with its signature set and state `sent` if the data
            channel was open or `failed` if it was not.

        Raises:
            SigningError: If the message could not be signed. The message is
                not sent.
        """
        message = DirectMessage(
            sender=self._identity.public_key,
            content=content,
            timestamp=self._timestamp(),
            file=file,
        )
        await self._sign(message)

        delivered = self._manager.send_message(
            peer_key,
            encode_message(message),
        )
        message.state = (
            DeliveryState.sent if delivered else DeliveryState.failed
        )
        if not delivered:
            logger.warning(
                f'{self._log_prefix}: direct message to '
                f'{truncate_key(peer_key, 8, 0)} was not delivered',
            )
        return message

    async def send_group(
        self,
        group: Group,
        content: str = '',
        *,
        type: GroupMessageType = GroupMessageType.text,  # noqa: A002
        file: FileAttachment | None = None,
        event: GroupEvent | None = None,
        poll: GroupPoll | None = None,
        poll_vote: GroupPollVote | None = None,
        group_update: GroupUpdate | None = None,
    ) -> tuple[GroupMessage, dict[str, bool]]:
        """Sign a group message once and send it to every other member.

        Returns:
            Tuple of the signed message and a mapping of member key to
            whether the message was delivered to that member. The message
            state is `sent` if any member received it, otherwise `failed`.

        Raises:
            SigningError: If the message could not be signed. The message is
                not sent.
        """
        message = GroupMessage(
            group_id=group.id,
            sender_key=self._identity.public_key,
            timestamp=self._timestamp(),
            type=type,
            content=content,
            file=file,
            event=event,
            poll=poll,
            poll_vote=poll_vote,
            group_update=group_update,
        )
        await self._sign(message)

        payload = encode_message(message)
        deliveries = {
            member: self._manager.send_message(member, payload)
            for member in group.member_keys
            if member != self._identity.public_key
        }
        message.state = (
            DeliveryState.sent
            if any(deliveries.values())
            else DeliveryState.failed
        )
        logger.debug(
            f'{self._log_prefix}: sent group message to '
            f'{sum(deliveries.values())}/{len(deliveries)} members of '
            f'{group.id}',
        )
        return message, deliveries

    async def receive(
        self,
        peer_key: str,
        raw: bytes | str,
    ) -> ReceivedMessage | None:
        """Decode and verify a payload received from a peer.

        Direct messages are verified against the key of the peer whose
        channel delivered them and are `invalid` if they claim a different
        sender. Group messages are verified against their `senderKey`
        since they may be relayed by any member.

        Returns:
            The received message or `None` if the payload could not be
            decoded or duplicates a verified message already received.
        """
        try:
            message = decode_message(raw)
        except MessageDecodeError as e:
            logger.warning(
                f'{self._log_prefix}: dropping malformed message from '
                f'{truncate_key(peer_key, 8, 0)}: {e}',
            )
            return None

        if isinstance(message, DirectMessage):
            author = message.sender
            if author == peer_key:
                trust = await async_verification_state(message, peer_key)
            else:
                trust = TrustState.invalid
        else:
            author = message.sender_key
            trust = await async_verification_state(message, author)

        key = (author, message.timestamp)
        if key in self._seen:
            logger.debug(
                f'{self._log_prefix}: ignoring duplicate message from '
                f'{truncate_key(author, 8, 0)}',
            )
            return None

        message.state = DeliveryState.received
        if trust is TrustState.verified:
            # Only verified messages claim an (author, timestamp) slot.
            self._seen[key] = None
            if len(self._seen) > self._max_seen:
                self._seen.popitem(last=False)
        else:
            logger.warning(
                f'{self._log_prefix}: message from '
                f'{truncate_key(author, 8, 0)} failed verification '
                f'({trust.value})',
            )
        return ReceivedMessage(peer_key=peer_key, message=message, trust=trust)

    async def run(self, handler: Callable[[ReceivedMessage], Any]) -> None:
        """Receive messages from the manager and pass them to a handler.

        Runs until cancelled. The handler may be a function or a coroutine
        function.
        """
        while True:
            peer_key, raw = await self._manager.recv()
            received = await self.receive(peer_key, raw)
            if received is None:
                continue
            result = handler(received)
            if inspect.isawaitable(result):
                await result
