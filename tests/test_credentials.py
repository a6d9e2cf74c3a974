"""
Tests for CredentialStore — plain mode backup/recovery, encrypted mode
round trip, logout archiving, and working-directory cleanup.

The transport library's loader is replaced by a fake auth state that
writes ``creds.json`` (and optionally key files) into its folder.
"""

import json
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from relay.credentials import CREDS_FILE, CredentialError, CredentialStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeAuthState:
    """Multi-file auth state stand-in; ``save_creds`` bumps a counter."""

    def __init__(self, folder):
        self.folder = Path(folder)
        creds = self.folder / CREDS_FILE
        self.creds = json.loads(creds.read_text()) if creds.exists() else {"rev": 0}

    async def save_creds(self):
        self.creds["rev"] += 1
        (self.folder / CREDS_FILE).write_text(json.dumps(self.creds))


class FakeLoader:
    def __init__(self):
        self.folders = []
        self.states = []

    async def __call__(self, folder):
        self.folders.append(folder)
        state = FakeAuthState(folder)
        self.states.append(state)
        return state


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def key():
    return Fernet.generate_key().decode()


# ---------------------------------------------------------------------------
# Plain mode
# ---------------------------------------------------------------------------


class TestPlainMode:
    @pytest.mark.asyncio
    async def test_open_creates_private_directory(self, tmp_path, loader):
        store = CredentialStore(tmp_path / "auth_info", loader=loader)

        await store.open()

        assert store.path.is_dir()
        assert (store.path.stat().st_mode & 0o777) == 0o700
        assert loader.folders == [str(store.path)]
        assert not store.has_session()

    @pytest.mark.asyncio
    async def test_save_persists_and_keeps_backup(self, tmp_path, loader):
        store = CredentialStore(tmp_path / "auth_info", loader=loader)
        await store.open()

        await store.save()
        await store.save()

        assert store.has_session()
        assert json.loads((store.path / CREDS_FILE).read_text()) == {"rev": 2}
        assert json.loads((store.path / "creds.json.bak").read_text()) == {"rev": 1}

    @pytest.mark.asyncio
    async def test_session_survives_restart(self, tmp_path, loader):
        path = tmp_path / "auth_info"
        first = CredentialStore(path, loader=loader)
        await first.open()
        await first.save()
        first.close()

        second = CredentialStore(path, loader=loader)
        state = await second.open()

        assert state.creds == {"rev": 1}

    @pytest.mark.asyncio
    async def test_corrupt_creds_restored_from_backup(self, tmp_path, loader):
        path = tmp_path / "auth_info"
        path.mkdir()
        (path / CREDS_FILE).write_text('{"rev": ')
        (path / "creds.json.bak").write_text('{"rev": 4}')

        state = await CredentialStore(path, loader=loader).open()

        assert state.creds == {"rev": 4}

    @pytest.mark.asyncio
    async def test_corrupt_creds_without_backup_fails(self, tmp_path, loader):
        path = tmp_path / "auth_info"
        path.mkdir()
        (path / CREDS_FILE).write_text("garbage")

        with pytest.raises(CredentialError):
            await CredentialStore(path, loader=loader).open()

    @pytest.mark.asyncio
    async def test_save_before_open_fails(self, tmp_path, loader):
        with pytest.raises(CredentialError):
            await CredentialStore(tmp_path / "auth_info", loader=loader).save()


# ---------------------------------------------------------------------------
# Encrypted mode
# ---------------------------------------------------------------------------


class TestEncryptedMode:
    @pytest.mark.asyncio
    async def test_only_ciphertext_at_rest(self, tmp_path, loader, key):
        store = CredentialStore(tmp_path / "auth_info", encryption_key=key, loader=loader)
        await store.open()

        await store.save()

        assert store.encrypted
        assert store.has_session()
        names = sorted(p.name for p in store.path.iterdir())
        assert names == ["creds.json.enc"]
        ciphertext = (store.path / "creds.json.enc").read_bytes()
        assert b"rev" not in ciphertext
        assert json.loads(Fernet(key.encode()).decrypt(ciphertext)) == {"rev": 1}
        store.close()

    @pytest.mark.asyncio
    async def test_round_trip_across_restart(self, tmp_path, loader, key):
        path = tmp_path / "auth_info"
        first = CredentialStore(path, encryption_key=key, loader=loader)
        await first.open()
        await first.save()
        first.close()

        second = CredentialStore(path, encryption_key=key, loader=loader)
        state = await second.open()

        assert state.creds == {"rev": 1}
        assert loader.folders[1] != str(path)
        second.close()

    @pytest.mark.asyncio
    async def test_wrong_key_fails(self, tmp_path, loader, key):
        path = tmp_path / "auth_info"
        store = CredentialStore(path, encryption_key=key, loader=loader)
        await store.open()
        await store.save()
        store.close()

        other = CredentialStore(path, encryption_key=Fernet.generate_key().decode(), loader=loader)
        with pytest.raises(CredentialError):
            await other.open()
        other.close()

    @pytest.mark.asyncio
    async def test_reconnect_reuses_working_copy(self, tmp_path, loader, key):
        store = CredentialStore(tmp_path / "auth_info", encryption_key=key, loader=loader)
        await store.open()
        await store.save()
        await store.open()

        assert loader.folders[0] == loader.folders[1]
        assert loader.states[1].creds == {"rev": 1}
        store.close()

    @pytest.mark.asyncio
    async def test_sync_tracks_added_and_removed_files(self, tmp_path, loader, key):
        store = CredentialStore(tmp_path / "auth_info", encryption_key=key, loader=loader)
        await store.open()
        workdir = Path(loader.folders[0])

        (workdir / "pre-key-1.json").write_text("{}")
        assert store.sync_encrypted() == 1
        assert (store.path / "pre-key-1.json.enc").exists()
        assert store.sync_encrypted() == 0

        (workdir / "pre-key-1.json").unlink()
        store.sync_encrypted()
        assert not (store.path / "pre-key-1.json.enc").exists()
        store.close()

    @pytest.mark.asyncio
    async def test_close_removes_working_directory(self, tmp_path, loader, key):
        store = CredentialStore(tmp_path / "auth_info", encryption_key=key, loader=loader)
        await store.open()
        workdir = Path(loader.folders[0])
        await store.save()

        store.close()

        assert not workdir.exists()
        assert (store.path / "creds.json.enc").exists()


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestArchive:
    @pytest.mark.asyncio
    async def test_archive_moves_directory_aside(self, tmp_path, loader):
        store = CredentialStore(tmp_path / "auth_info", loader=loader)
        await store.open()
        await store.save()

        target = store.archive()

        assert target is not None
        assert target.name.startswith("auth_info.logged-out-")
        assert (target / CREDS_FILE).exists()
        assert not store.path.exists()
        assert store.auth_state is None

    def test_archive_without_directory(self, tmp_path, loader):
        store = CredentialStore(tmp_path / "auth_info", loader=loader)
        assert store.archive() is None
