"""Self-signed TLS certificates for testing `wss://` relays.

Warning:
    Certificates created here are only suitable for local tests.
"""
from __future__ import annotations

import datetime
import ipaddress
import pathlib
from typing import NamedTuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


class CertificateFiles(NamedTuple):
    """Paths returned by the `certificate_files` fixture."""

    certfile: str
    keyfile: str


@pytest.fixture(scope='session')
def certificate_files(
    tmp_path_factory: pytest.TempPathFactory,
) -> CertificateFiles:
    """Write a self-signed certificate for localhost to disk."""
    tmp_path = tmp_path_factory.mktemp('certificate-files')
    certfile = tmp_path / 'cert.pem'
    keyfile = tmp_path / 'key.pem'
    write_self_signed_cert(certfile, keyfile)
    return CertificateFiles(str(certfile), str(keyfile))


def write_self_signed_cert(
    certfile: str | pathlib.Path,
    keyfile: str | pathlib.Path,
) -> None:
    """Create a P-256 key and a certificate valid for one day."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'localhost')])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName('localhost'),
                    x509.IPAddress(ipaddress.IPv4Address('127.0.0.1')),
                ],
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    with open(keyfile, 'wb') as f:
        f.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )
    with open(certfile, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
