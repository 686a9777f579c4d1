"""Exception types for identity and message authentication errors."""
from __future__ import annotations


class SigningError(Exception):
    """Message could not be signed.

    Raised when the private key cannot be parsed or is not an ECDSA P-256
    key. Callers must treat the message as not sent.
    """

    pass


class IdentityError(Exception):
    """Stored or imported identity key material is missing or invalid."""

    pass
