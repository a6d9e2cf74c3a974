"""
Tests for the sent-item ledger.
"""

import json
from unittest.mock import patch

from relay.ledger import SentLedger


class TestLoad:
    def test_missing_file_starts_empty(self, tmp_path):
        ledger = SentLedger(tmp_path / "sent_cache.json")
        assert ledger.load() == 0
        assert len(ledger) == 0

    def test_loads_existing_names(self, tmp_path):
        path = tmp_path / "sent_cache.json"
        path.write_text(json.dumps(["a.pdf", "b.pdf"]))

        ledger = SentLedger(path)

        assert ledger.load() == 2
        assert "a.pdf" in ledger
        assert ledger.contains("b.pdf")
        assert not ledger.contains("c.pdf")

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "sent_cache.json"
        path.write_text("{not json")

        ledger = SentLedger(path)

        assert ledger.load() == 0

    def test_wrong_shape_starts_empty(self, tmp_path):
        path = tmp_path / "sent_cache.json"
        path.write_text(json.dumps({"a.pdf": True}))

        assert SentLedger(path).load() == 0


class TestAdd:
    def test_add_writes_through(self, tmp_path):
        path = tmp_path / "sent_cache.json"
        ledger = SentLedger(path)
        ledger.load()

        ledger.add("b.pdf")
        ledger.add("a.pdf")

        assert json.loads(path.read_text()) == ["a.pdf", "b.pdf"]
        assert list(ledger) == ["a.pdf", "b.pdf"]

    def test_add_is_idempotent(self, tmp_path):
        ledger = SentLedger(tmp_path / "sent_cache.json")
        ledger.add("a.pdf")
        ledger.add("a.pdf")
        assert len(ledger) == 1

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "state" / "sent_cache.json"
        ledger = SentLedger(path)
        ledger.add("a.pdf")
        assert path.exists()

    def test_flush_failure_keeps_name_in_memory(self, tmp_path):
        ledger = SentLedger(tmp_path / "sent_cache.json")
        with patch("relay.ledger.atomic_write_bytes", side_effect=OSError("disk full")):
            ledger.add("a.pdf")

        assert "a.pdf" in ledger
        assert not (tmp_path / "sent_cache.json").exists()

    def test_no_temp_files_left_behind(self, tmp_path):
        ledger = SentLedger(tmp_path / "sent_cache.json")
        for i in range(5):
            ledger.add(f"{i}.pdf")
        assert [p.name for p in tmp_path.iterdir()] == ["sent_cache.json"]
