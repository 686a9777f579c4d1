"""`peerchat` command-line interface for managing identities."""
from __future__ import annotations

import logging
import os
import sys

import click
from cryptography.exceptions import UnsupportedAlgorithm

import peerchat
from peerchat.crypto import fingerprint as key_fingerprint
from peerchat.crypto import load_public_key
from peerchat.exceptions import IdentityError
from peerchat.identity import generate_identity
from peerchat.identity import load_identity
from peerchat.identity import save_identity

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    '--log-level',
    default='INFO',
    type=click.Choice(
        ['ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(log_level: str) -> None:
    """Manage PeerChat identities."""
    logging.basicConfig(
        format='%(levelname)s: %(message)s',
        level=log_level.upper(),
        handlers=[logging.StreamHandler(sys.stderr)],
    )


@cli.command()
def version() -> None:
    """Show the PeerChat version."""
    click.echo(f'PeerChat v{peerchat.__version__}')


@cli.command()
@click.argument('output', metavar='OUTPUT', type=click.Path(dir_okay=False))
@click.option(
    '--force',
    is_flag=True,
    default=False,
    help='Overwrite OUTPUT if it exists.',
)
def keygen(output: str, force: bool) -> None:
    """Generate a new identity and write it to OUTPUT.

    The file contains the private key. Keep it secure.
    """
    if os.path.exists(output) and not force:
        logger.error(f'{output} already exists. Use --force to overwrite.')
        sys.exit(1)

    identity = generate_identity()
    save_identity(identity, output)
    logger.info(f'Saved new identity to {output}.')
    click.echo(identity.public_key)
    click.echo(f'Fingerprint: {identity.fingerprint}')


@cli.command()
@click.argument('file_or_key', metavar='FILE_OR_KEY', required=True)
def fingerprint(file_or_key: str) -> None:
    """Print the fingerprint of an identity file or hex public key."""
    if os.path.isfile(file_or_key):
        try:
            identity = load_identity(file_or_key)
        except IdentityError as e:
            logger.error(e)
            sys.exit(1)
        click.echo(identity.fingerprint)
        return

    key = file_or_key.strip().lower()
    try:
        load_public_key(key)
    except (ValueError, UnsupportedAlgorithm) as e:
        logger.error(f'Not an identity file or a valid public key: {e}')
        sys.exit(1)
    click.echo(key_fingerprint(key))


@cli.command()
@click.argument('file', metavar='FILE', type=click.Path(exists=True))
def show(file: str) -> None:
    """Show the public key and fingerprint of an identity file."""
    try:
        identity = load_identity(file)
    except IdentityError as e:
        logger.error(e)
        sys.exit(1)

    created = identity.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')
    click.echo(f'Public key:  {identity.public_key}')
    click.echo(f'Fingerprint: {identity.fingerprint}')
    click.echo(f'Created:     {created}')
