#!/usr/bin/env python3
"""
session_key.py — create the session-encryption key and encrypt an
already-paired credential directory.

Usage:
  # print a new key and the command that stores it in the keychain
  python3 scripts/session_key.py generate

  # convert a plain auth_dir to encrypted-at-rest (*.enc) files
  python3 scripts/session_key.py encrypt-dir ./auth_info
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from shared.fileio import atomic_write_bytes  # noqa: E402
from shared.secrets import encrypt_bytes, generate_encryption_key, get_secret  # noqa: E402

_KEY_NAME = "session-encryption-key"


def encrypt_session_dir(path: Path, key: str) -> int:
    """Encrypt every plain credential file in *path* in place.

    Each ``<name>`` becomes ``<name>.enc``; the plaintext file is removed
    only after its encrypted copy is on disk.  Backups are dropped.

    Returns:
        Number of files encrypted.
    """
    if not path.is_dir():
        raise FileNotFoundError(f"credential directory not found: {path}")

    count = 0
    for item in sorted(path.iterdir()):
        if not item.is_file():
            continue
        if item.name.endswith(".bak"):
            item.unlink()
            continue
        if item.name.endswith(".enc"):
            continue
        atomic_write_bytes(
            item.with_name(item.name + ".enc"), encrypt_bytes(item.read_bytes(), key)
        )
        item.unlink()
        count += 1
    return count


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the wa-relay session encryption key")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("generate", help="Print a new Fernet key")
    encrypt = sub.add_parser(
        "encrypt-dir", help="Encrypt a plain credential directory with the stored key"
    )
    encrypt.add_argument("path", type=Path, help="Credential directory (AUTH_DIR)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "generate":
        key = generate_encryption_key()
        print(key)
        print(
            "\nStore it with:\n"
            f"  secret-tool store --label='wa-relay session key' service wa-relay key {_KEY_NAME}\n"
            "or export WA_RELAY_SESSION_ENCRYPTION_KEY for development.",
            file=sys.stderr,
        )
        return 0

    try:
        key = get_secret(_KEY_NAME)
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    try:
        count = encrypt_session_dir(args.path, key)
    except FileNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"Encrypted {count} files in {args.path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
