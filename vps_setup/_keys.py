"""WireGuard Curve25519 keypairs persisted as base64 files."""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from vps_setup._logging import log_success

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class KeyPair:
    """Base64-encoded private and public keys in ``wg`` format."""

    private_key: str
    public_key: str


def generate_keypair() -> KeyPair:
    """Return a fresh keypair equivalent to ``wg genkey | wg pubkey``."""

    private = X25519PrivateKey.generate()
    raw_private = private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    raw_public = private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return KeyPair(
        private_key=base64.b64encode(raw_private).decode("ascii"),
        public_key=base64.b64encode(raw_public).decode("ascii"),
    )


def derive_public_key(private_key: str) -> str:
    """Return the public key matching a base64 ``private_key``.

    Examples
    --------
    >>> pair = generate_keypair()
    >>> derive_public_key(pair.private_key) == pair.public_key
    True
    """

    private = X25519PrivateKey.from_private_bytes(base64.b64decode(private_key))
    raw_public = private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(raw_public).decode("ascii")


def _write_secret(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as handle:
        handle.write(content)
    tmp_path.replace(path)
    path.chmod(0o600)


def key_paths(directory: Path, prefix: str) -> tuple[Path, Path]:
    """Return the private and public key files for ``prefix``.

    Examples
    --------
    >>> [p.name for p in key_paths(Path("/etc/wireguard"), "server")]
    ['server_private.key', 'server_public.key']
    """

    return directory / f"{prefix}_private.key", directory / f"{prefix}_public.key"


def keypair_exists(directory: Path, prefix: str) -> bool:
    """Return ``True`` when both key files for ``prefix`` are on disk."""

    return all(path.is_file() for path in key_paths(directory, prefix))


def read_keypair(directory: Path, prefix: str) -> KeyPair:
    """Load the stored keypair for ``prefix``, deriving the public half."""

    private_path, _ = key_paths(directory, prefix)
    private_key = private_path.read_text(encoding="ascii").strip()
    return KeyPair(private_key, derive_public_key(private_key))


def ensure_keypair(directory: Path, prefix: str) -> KeyPair:
    """Load the keypair stored under ``prefix``, generating it if absent.

    An existing private key is never replaced; a missing public key file is
    re-derived from it.
    """

    private_path, public_path = key_paths(directory, prefix)
    if private_path.is_file():
        pair = read_keypair(directory, prefix)
        if not public_path.is_file():
            public_path.write_text(f"{pair.public_key}\n", encoding="ascii")
        logger.info("Keys for %s already exist", prefix)
        return pair
    pair = generate_keypair()
    _write_secret(private_path, f"{pair.private_key}\n")
    public_path.write_text(f"{pair.public_key}\n", encoding="ascii")
    log_success(logger, "Generated keys for %s", prefix)
    return pair


__all__ = [
    "KeyPair",
    "derive_public_key",
    "ensure_keypair",
    "generate_keypair",
    "key_paths",
    "keypair_exists",
    "read_keypair",
]
