"""
Credential store — persists the paired WhatsApp session across restarts.

The session lives in a directory of small files in the multi-file layout
used by the transport library (``creds.json`` plus signal key files).
Two modes are supported:

Plain:
    The library works directly in ``auth_dir``.  Before every save the
    current ``creds.json`` is copied atomically to ``creds.json.bak``;
    an unreadable ``creds.json`` is restored from that copy on load.

Encrypted (a ``session-encryption-key`` secret is configured):
    ``auth_dir`` holds only Fernet-encrypted ``*.enc`` files.  They are
    decrypted into a private tmpfs working directory on open, changed
    files are re-encrypted and atomically written back on every save,
    and the working directory is shredded on close.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from cryptography.fernet import InvalidToken

from shared.fileio import atomic_write_bytes
from shared.secrets import decrypt_bytes, encrypt_bytes

logger = logging.getLogger("relay.credentials")

CREDS_FILE = "creds.json"
_BACKUP_SUFFIX = ".bak"
_ENC_SUFFIX = ".enc"

AuthLoader = Callable[[str], Awaitable[Any]]


class CredentialError(Exception):
    """Raised when persisted credentials cannot be read or written."""


async def _load_multi_file_auth_state(folder: str) -> Any:
    # Imported lazily; the protocol stack is only needed on a live run.
    from pyaileys.auth.store import MultiFileAuthState

    return await MultiFileAuthState.load(folder)


def _is_valid_json(path: Path) -> bool:
    try:
        json.loads(path.read_text(encoding="utf-8"))
        return True
    except (OSError, ValueError, UnicodeDecodeError):
        return False


class CredentialStore:
    """Loads and saves the transport's multi-file auth state.

    Args:
        path: Persistent credential directory (``AUTH_DIR``).
        encryption_key: Optional Fernet key enabling encrypted mode.
        loader: Coroutine ``(folder) -> auth_state``; defaults to the
                transport library's multi-file loader.  The returned object
                must provide an awaitable ``save_creds()``.
    """

    def __init__(
        self,
        path: Path,
        encryption_key: Optional[str] = None,
        loader: Optional[AuthLoader] = None,
    ) -> None:
        self._path = Path(path)
        self._key = encryption_key
        self._loader = loader or _load_multi_file_auth_state
        self._auth_state: Any = None
        self._workdir: Optional[Path] = None
        self._synced_digests: Dict[str, str] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def encrypted(self) -> bool:
        return self._key is not None

    @property
    def auth_state(self) -> Any:
        return self._auth_state

    def has_session(self) -> bool:
        """True when a previously paired session is on disk."""
        name = CREDS_FILE + _ENC_SUFFIX if self.encrypted else CREDS_FILE
        return (self._path / name).exists()

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def open(self) -> Any:
        """Load credentials, creating an empty credential directory if absent.

        Called on every (re)connect; the returned auth state is handed to
        the transport.
        """
        self._path.mkdir(parents=True, exist_ok=True)
        os.chmod(self._path, 0o700)

        if self.encrypted:
            folder = self._materialize()
        else:
            self._recover_plain()
            folder = self._path

        self._auth_state = await self._loader(str(folder))
        logger.info(
            "Credentials loaded from %s (%s, %s)",
            self._path,
            "encrypted" if self.encrypted else "plain",
            "existing session" if self.has_session() else "new session",
        )
        return self._auth_state

    def _recover_plain(self) -> None:
        creds = self._path / CREDS_FILE
        backup = self._path / (CREDS_FILE + _BACKUP_SUFFIX)
        if not creds.exists() or _is_valid_json(creds):
            return
        if backup.exists() and _is_valid_json(backup):
            logger.warning("%s is unreadable; restoring from %s", creds, backup.name)
            atomic_write_bytes(creds, backup.read_bytes())
            return
        raise CredentialError(
            f"{creds} is unreadable and no valid backup exists; "
            "remove the directory and pair again"
        )

    def _materialize(self) -> Path:
        """Decrypt the persistent ``*.enc`` files into the working directory."""
        if self._workdir is not None:
            # Reconnect: the working copy is the newest state.
            self.sync_encrypted()
            return self._workdir

        shm_dir = "/dev/shm" if os.path.isdir("/dev/shm") else None
        self._workdir = Path(tempfile.mkdtemp(prefix="wa-relay-auth-", dir=shm_dir))
        os.chmod(self._workdir, 0o700)

        assert self._key is not None
        self._synced_digests = {}
        for enc_path in sorted(self._path.glob("*" + _ENC_SUFFIX)):
            name = enc_path.name[: -len(_ENC_SUFFIX)]
            try:
                plaintext = decrypt_bytes(enc_path.read_bytes(), self._key)
            except InvalidToken as exc:
                raise CredentialError(
                    f"Cannot decrypt {enc_path}: wrong session-encryption-key?"
                ) from exc
            target = self._workdir / name
            target.write_bytes(plaintext)
            os.chmod(target, 0o600)
            self._synced_digests[name] = hashlib.sha256(plaintext).hexdigest()
        logger.debug(
            "Decrypted %d credential files into %s",
            len(self._synced_digests),
            self._workdir,
        )
        return self._workdir

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save(self) -> None:
        """Persist rotated credentials.  Awaited before the rotation is acked."""
        if self._auth_state is None:
            raise CredentialError("save() called before open()")

        if not self.encrypted:
            creds = self._path / CREDS_FILE
            if creds.exists() and _is_valid_json(creds):
                atomic_write_bytes(
                    self._path / (CREDS_FILE + _BACKUP_SUFFIX), creds.read_bytes()
                )

        await self._auth_state.save_creds()

        if self.encrypted:
            self.sync_encrypted()

    def sync_encrypted(self) -> int:
        """Write changed working files back to the encrypted directory.

        Returns:
            Number of files re-encrypted.
        """
        if self._workdir is None or self._key is None:
            return 0

        written = 0
        present: set[str] = set()
        for item in sorted(self._workdir.iterdir()):
            if not item.is_file():
                continue
            present.add(item.name)
            plaintext = item.read_bytes()
            digest = hashlib.sha256(plaintext).hexdigest()
            if self._synced_digests.get(item.name) == digest:
                continue
            atomic_write_bytes(
                self._path / (item.name + _ENC_SUFFIX),
                encrypt_bytes(plaintext, self._key),
            )
            self._synced_digests[item.name] = digest
            written += 1

        for name in list(self._synced_digests):
            if name not in present:
                (self._path / (name + _ENC_SUFFIX)).unlink(missing_ok=True)
                del self._synced_digests[name]

        if written:
            logger.debug("Re-encrypted %d credential files", written)
        return written

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def archive(self) -> Optional[Path]:
        """Move the credential directory aside after a logout.

        The next start then begins a fresh pairing instead of replaying a
        session the server has revoked.

        Returns:
            The archive path, or ``None`` if there was nothing to archive.
        """
        self._discard_workdir()
        self._auth_state = None
        if not self._path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self._path.with_name(f"{self._path.name}.logged-out-{stamp}")
        self._path.rename(target)
        logger.warning("Logged-out session archived to %s", target)
        return target

    def close(self) -> None:
        """Flush pending encrypted changes and shred the working directory."""
        if self.encrypted and self._workdir is not None:
            try:
                self.sync_encrypted()
            except OSError:
                logger.exception("Failed to persist credentials on close")
        self._discard_workdir()

    def _discard_workdir(self) -> None:
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None
            self._synced_digests = {}
