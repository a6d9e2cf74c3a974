"""
Sent-item ledger — the durable set of bucket file names that have
already been delivered to the group.

Stored as a flat JSON list.  Loading is best-effort (a missing or
corrupt file starts an empty ledger); every ``add`` is written through
to disk before returning.  Names are never removed.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

from shared.fileio import atomic_write_bytes

logger = logging.getLogger("relay.ledger")


class SentLedger:
    """Monotonic, write-through set of delivered file names.

    Args:
        path: Location of the JSON ledger file.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._names: set[str] = set()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> int:
        """Read the ledger from disk.

        Returns:
            Number of names loaded (0 when the file is missing or unreadable).
        """
        if not self._path.exists():
            logger.info("No ledger at %s; starting empty", self._path)
            self._names = set()
            return 0

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise TypeError(f"expected a JSON list, got {type(data).__name__}")
            self._names = {str(name) for name in data}
        except (OSError, json.JSONDecodeError, TypeError, UnicodeDecodeError):
            logger.warning(
                "Unreadable ledger at %s; starting empty (already-sent files may be re-sent)",
                self._path,
                exc_info=True,
            )
            self._names = set()
        else:
            logger.info("Loaded %d sent entries from %s", len(self._names), self._path)
        return len(self._names)

    def contains(self, name: str) -> bool:
        return name in self._names

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._names))

    def add(self, name: str) -> None:
        """Record *name* as delivered and flush the ledger to disk.

        A failed flush is logged; the name stays recorded in memory so the
        running process still will not resend it.
        """
        if name in self._names:
            return
        self._names.add(name)
        try:
            self._flush()
        except OSError:
            logger.warning("Could not save ledger to %s", self._path, exc_info=True)

    def _flush(self) -> None:
        payload = json.dumps(sorted(self._names), indent=2, ensure_ascii=False) + "\n"
        atomic_write_bytes(self._path, payload.encode("utf-8"), mode=0o644)
