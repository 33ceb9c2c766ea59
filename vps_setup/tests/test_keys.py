"""Tests for WireGuard keypair storage."""

from __future__ import annotations

import base64
import stat
from pathlib import Path

from vps_setup._keys import derive_public_key, ensure_keypair, generate_keypair, key_paths, keypair_exists


def test_generated_keys_are_32_byte_base64() -> None:
    pair = generate_keypair()

    assert len(base64.b64decode(pair.private_key)) == 32
    assert len(base64.b64decode(pair.public_key)) == 32
    assert derive_public_key(pair.private_key) == pair.public_key


def test_ensure_keypair_writes_private_key_owner_only(tmp_path: Path) -> None:
    pair = ensure_keypair(tmp_path / "wireguard", "server")

    private_path, public_path = key_paths(tmp_path / "wireguard", "server")
    assert stat.S_IMODE(private_path.stat().st_mode) == 0o600
    assert private_path.read_text(encoding="ascii") == f"{pair.private_key}\n"
    assert public_path.read_text(encoding="ascii") == f"{pair.public_key}\n"
    assert not private_path.with_name("server_private.key.tmp").exists()
    assert keypair_exists(tmp_path / "wireguard", "server")


def test_existing_keypair_is_never_regenerated(tmp_path: Path) -> None:
    first = ensure_keypair(tmp_path, "client_laptop")

    second = ensure_keypair(tmp_path, "client_laptop")

    assert second == first


def test_missing_public_key_is_rederived(tmp_path: Path) -> None:
    pair = ensure_keypair(tmp_path, "server")
    _, public_path = key_paths(tmp_path, "server")
    public_path.unlink()

    assert ensure_keypair(tmp_path, "server") == pair
    assert public_path.read_text(encoding="ascii").strip() == pair.public_key
