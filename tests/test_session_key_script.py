"""
Tests for ``scripts/session_key.py`` (key generation and converting a
plain credential directory to encrypted-at-rest files).
"""

import importlib.util
import json
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from relay.credentials import CredentialStore

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "session_key.py"


@pytest.fixture(scope="module")
def session_key():
    spec = importlib.util.spec_from_file_location("session_key", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def plain_dir(tmp_path):
    path = tmp_path / "auth_info"
    path.mkdir()
    (path / "creds.json").write_text(json.dumps({"rev": 3}))
    (path / "creds.json.bak").write_text(json.dumps({"rev": 2}))
    (path / "pre-key-1.json").write_text("{}")
    return path


class TestGenerate:
    def test_prints_usable_key(self, session_key, capsys):
        assert session_key.main(["generate"]) == 0

        key = capsys.readouterr().out.strip()
        Fernet(key.encode())


class TestEncryptDir:
    def test_plain_files_replaced_by_ciphertext(self, session_key, plain_dir):
        key = Fernet.generate_key().decode()

        count = session_key.encrypt_session_dir(plain_dir, key)

        assert count == 2
        assert sorted(p.name for p in plain_dir.iterdir()) == [
            "creds.json.enc",
            "pre-key-1.json.enc",
        ]

    @pytest.mark.asyncio
    async def test_encrypted_store_reads_converted_session(self, session_key, plain_dir):
        key = Fernet.generate_key().decode()
        session_key.encrypt_session_dir(plain_dir, key)

        loaded = {}

        async def loader(folder):
            loaded["creds"] = json.loads((Path(folder) / "creds.json").read_text())
            return object()

        store = CredentialStore(plain_dir, encryption_key=key, loader=loader)
        await store.open()
        store.close()

        assert loaded["creds"] == {"rev": 3}

    def test_main_uses_stored_key(self, session_key, plain_dir, monkeypatch, capsys):
        key = Fernet.generate_key().decode()
        monkeypatch.setattr(session_key, "get_secret", lambda name: key)

        assert session_key.main(["encrypt-dir", str(plain_dir)]) == 0
        assert "Encrypted 2 files" in capsys.readouterr().out

    def test_main_without_key_fails(self, session_key, plain_dir, monkeypatch):
        def missing(name):
            raise RuntimeError("Secret 'session-encryption-key' not found")

        monkeypatch.setattr(session_key, "get_secret", missing)

        assert session_key.main(["encrypt-dir", str(plain_dir)]) == 1
        assert (plain_dir / "creds.json").exists()

    def test_missing_directory(self, session_key, tmp_path, monkeypatch):
        monkeypatch.setattr(session_key, "get_secret", lambda name: "k")
        assert session_key.main(["encrypt-dir", str(tmp_path / "nope")]) == 1
