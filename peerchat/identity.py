"""Key pair identities and the identity backup file format."""
from __future__ import annotations

import dataclasses
import datetime
import json
import logging
import pathlib
from typing import Any

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec

from peerchat.crypto import export_private_key
from peerchat.crypto import export_public_key
from peerchat.crypto import fingerprint
from peerchat.crypto import load_private_key
from peerchat.crypto import load_public_key
from peerchat.exceptions import IdentityError

logger = logging.getLogger(__name__)

CURVE_NAME = 'ECDSA P-256'
KEY_FILE_WARNING = 'CRITICAL: Keep this private key secure.'


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


def _format_timestamp(timestamp: datetime.datetime) -> str:
    text = timestamp.astimezone(datetime.timezone.utc).isoformat(
        timespec='milliseconds',
    )
    return text.replace('+00:00', 'Z')


def _parse_timestamp(text: str) -> datetime.datetime:
    # fromisoformat() only understands the Z suffix on Python 3.11+
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    timestamp = datetime.datetime.fromisoformat(text)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)
    return timestamp


@dataclasses.dataclass(frozen=True)
class Identity:
    """ECDSA P-256 key pair identifying a peer.

    Use [`generate_identity()`][peerchat.identity.generate_identity] or
    [`Identity.from_keys()`][peerchat.identity.Identity.from_keys] rather than
    the constructor so the key pair is validated.

    Attributes:
        public_key: Hex SPKI public key. This doubles as the peer's address.
        private_key: Hex PKCS8 private key. Never transmitted.
        created_at: When the key pair was generated.
    """

    public_key: str
    private_key: str = dataclasses.field(repr=False)
    created_at: datetime.datetime = dataclasses.field(
        default_factory=_utc_now,
    )

    @property
    def fingerprint(self) -> str:
        """Fingerprint of the public key."""
        return fingerprint(self.public_key)

    @classmethod
    def from_keys(
        cls,
        public_key: str,
        private_key: str,
        created_at: datetime.datetime | None = None,
    ) -> Identity:
        """Create an identity from an existing key pair.

        Raises:
            IdentityError: If either key is missing, cannot be parsed, is not
                an ECDSA P-256 key, or the two keys do not belong together.
        """
        if not public_key or not private_key:
            raise IdentityError('Identity requires a public and private key.')

        try:
            private = load_private_key(private_key)
            public = load_public_key(public_key)
        except (TypeError, ValueError, UnsupportedAlgorithm) as e:
            raise IdentityError(f'Invalid identity key material: {e}') from e

        if private.public_key().public_numbers() != public.public_numbers():
            raise IdentityError(
                'Public key does not match the private key of the identity.',
            )

        return cls(
            public_key=public_key.lower(),
            private_key=private_key.lower(),
            created_at=_utc_now() if created_at is None else created_at,
        )


def generate_identity() -> Identity:
    """Generate a new random identity."""
    key = ec.generate_private_key(ec.SECP256R1())
    identity = Identity(
        public_key=export_public_key(key.public_key()),
        private_key=export_private_key(key),
    )
    logger.info(f'Generated new identity {identity.fingerprint}')
    return identity


def export_identity(identity: Identity) -> dict[str, Any]:
    """Get the backup document of an identity.

    Warning:
        The returned document contains the private key.
    """
    return {
        'privateKey': identity.private_key,
        'publicKey': identity.public_key,
        'generated': _format_timestamp(identity.created_at),
        'curve': CURVE_NAME,
        'warning': KEY_FILE_WARNING,
    }


def import_identity(data: Any) -> Identity:
    """Create an identity from a backup document.

    Only `publicKey` and `privateKey` are required. A missing `generated`
    timestamp defaults to now.

    Raises:
        IdentityError: If the document or the keys in it are invalid.
    """
    if not isinstance(data, dict):
        raise IdentityError('Identity document must be a JSON object.')

    public_key = data.get('publicKey')
    private_key = data.get('privateKey')
    if not isinstance(public_key, str) or not isinstance(private_key, str):
        raise IdentityError('Identity document is missing keys.')

    created_at = None
    if data.get('generated') is not None:
        try:
            created_at = _parse_timestamp(str(data['generated']))
        except ValueError as e:
            raise IdentityError(
                f'Invalid generated timestamp in identity document: {e}',
            ) from e

    return Identity.from_keys(public_key, private_key, created_at)


def dumps(identity: Identity) -> str:
    """Serialize an identity backup document to a JSON string."""
    return json.dumps(export_identity(identity), indent=2)


def loads(data: str | bytes) -> Identity:
    """Parse an identity backup document from a JSON string.

    Raises:
        IdentityError: If the string is not JSON or the identity is invalid.
    """
    try:
        document = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise IdentityError('Identity document is not valid JSON.') from e
    return import_identity(document)


def save_identity(identity: Identity, path: str | pathlib.Path) -> None:
    """Write an identity backup document to a file."""
    with open(path, 'w') as f:
        f.write(dumps(identity))


def load_identity(path: str | pathlib.Path) -> Identity:
    """Read an identity backup document from a file.

    Raises:
        IdentityError: If the file does not exist or holds an invalid
            identity.
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except FileNotFoundError as e:
        raise IdentityError(f'No identity file found at {path}.') from e
    return loads(data)


def truncate_key(key: str | None, start: int = 12, end: int = 8) -> str:
    """Shorten a key for display as `start...end`."""
    if not key:
        return ''
    if len(key) <= start + end:
        return key
    return f'{key[:start]}...{key[len(key) - end:]}'
