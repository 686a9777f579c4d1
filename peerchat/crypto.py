"""ECDSA P-256 message signing, verification and key fingerprints.

Keys are passed around as hex strings of their DER exports (SPKI for public
keys, PKCS8 for private keys). Signatures are hex strings of the raw
`r || s` concatenation (64 bytes) rather than DER, matching what WebCrypto
produces, so browser and Python peers can check each other's messages.
"""
from __future__ import annotations

import asyncio
import enum
import functools
import hashlib
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
)
from cryptography.hazmat.primitives.asymmetric.utils import (
    encode_dss_signature,
)

from peerchat.canonical import canonicalize
from peerchat.exceptions import SigningError
from peerchat.messages import Message

logger = logging.getLogger(__name__)

# Size in bytes of each of r and s for P-256.
_COORDINATE_BYTES = 32
FINGERPRINT_LENGTH = 16


class TrustState(enum.Enum):
    """Outcome of checking a message signature."""

    verified = 'verified'
    """Signature matches the claimed sender's key."""
    invalid = 'invalid'
    """Well-formed signature that does not match the payload or key."""
    unknown = 'unknown'
    """Key or signature could not be parsed so no decision was made."""


def load_private_key(private_key: str) -> ec.EllipticCurvePrivateKey:
    """Parse a hex PKCS8 P-256 private key.

    Raises:
        ValueError: If the key is not valid hex, not PKCS8 DER, or not an
            ECDSA P-256 key.
    """
    key = serialization.load_der_private_key(
        bytes.fromhex(private_key),
        password=None,
    )
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(
        key.curve,
        ec.SECP256R1,
    ):
        raise ValueError('Private key is not an ECDSA P-256 key.')
    return key


def load_public_key(public_key: str) -> ec.EllipticCurvePublicKey:
    """Parse a hex SPKI P-256 public key.

    Raises:
        ValueError: If the key is not valid hex, not SPKI DER, or not an
            ECDSA P-256 key.
    """
    key = serialization.load_der_public_key(bytes.fromhex(public_key))
    if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(
        key.curve,
        ec.SECP256R1,
    ):
        raise ValueError('Public key is not an ECDSA P-256 key.')
    return key


def export_public_key(key: ec.EllipticCurvePublicKey) -> str:
    """Export a public key as hex SPKI DER."""
    return key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).hex()


def export_private_key(key: ec.EllipticCurvePrivateKey) -> str:
    """Export a private key as hex unencrypted PKCS8 DER."""
    return key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).hex()


def sign(message: Message, private_key: str) -> str:
    """Sign the canonical payload of a message.

    The signature is returned rather than attached so the caller decides
    when the message counts as signed.

    Args:
        message: Message to sign. Its `signature`, `id` and `state` fields
            are ignored.
        private_key: Hex PKCS8 private key of the sender.

    Returns:
        Hex encoded `r || s` signature.

    Raises:
        SigningError: If the private key cannot be parsed.
    """
    try:
        key = load_private_key(private_key)
    except (TypeError, ValueError, UnsupportedAlgorithm) as e:
        raise SigningError(f'Unable to load private key: {e}') from e

    der_signature = key.sign(canonicalize(message), ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der_signature)
    signature = r.to_bytes(_COORDINATE_BYTES, 'big') + s.to_bytes(
        _COORDINATE_BYTES,
        'big',
    )
    logger.debug('Signed message payload')
    return signature.hex()


def verification_state(message: Message, public_key: str) -> TrustState:
    """Check a message signature against the claimed sender's key.

    The payload is re-canonicalized from the message as received, so any
    change made in transit produces different bytes and fails the check.

    Args:
        message: Received message with its `signature` set.
        public_key: Hex SPKI public key of the claimed sender.

    Returns:
        The [`TrustState`][peerchat.crypto.TrustState] of the message. This
        function never raises.
    """
    try:
        key = load_public_key(public_key)
        raw_signature = bytes.fromhex(message.signature)
        payload = canonicalize(message)
    except (AttributeError, TypeError, ValueError, UnsupportedAlgorithm) as e:
        logger.warning(f'Unable to check message signature: {e}')
        return TrustState.unknown

    if len(raw_signature) != 2 * _COORDINATE_BYTES:
        logger.warning(
            f'Signature has length {len(raw_signature)} bytes but expected '
            f'{2 * _COORDINATE_BYTES} bytes',
        )
        return TrustState.unknown

    der_signature = encode_dss_signature(
        int.from_bytes(raw_signature[:_COORDINATE_BYTES], 'big'),
        int.from_bytes(raw_signature[_COORDINATE_BYTES:], 'big'),
    )
    try:
        key.verify(der_signature, payload, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        logger.warning('Signature verification failed')
        return TrustState.invalid
    return TrustState.verified


def verify(message: Message, public_key: str) -> bool:
    """Check if a message was signed by the owner of `public_key`.

    Returns:
        `True` only if the signature is valid. Malformed keys, malformed
        signatures, and mismatches all return `False`.
    """
    return verification_state(message, public_key) is TrustState.verified


async def async_sign(message: Message, private_key: str) -> str:
    """Sign a message in the default executor.

    Raises:
        SigningError: If the private key cannot be parsed.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        functools.partial(sign, message, private_key),
    )


async def async_verification_state(
    message: Message,
    public_key: str,
) -> TrustState:
    """Compute the trust state of a message in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        functools.partial(verification_state, message, public_key),
    )


async def async_verify(message: Message, public_key: str) -> bool:
    """Verify a message in the default executor."""
    state = await async_verification_state(message, public_key)
    return state is TrustState.verified


def fingerprint(public_key: str) -> str:
    """Short human-comparable fingerprint of a public key.

    The fingerprint is for out-of-band comparison between people and is not
    a substitute for signature verification.

    Returns:
        First 16 hex characters of the SHA-256 digest of the key's hex text,
        upper-cased.
    """
    digest = hashlib.sha256(public_key.encode('utf-8')).hexdigest()
    return digest[:FINGERPRINT_LENGTH].upper()
