"""
PostgreSQL access for the outbox and inbox tables.

Uses ``asyncpg`` with parameterized placeholders ($1, $2, ...) only.
The outbox update is guarded by ``sent_at IS NULL`` so a row is marked
sent at most once even if two cycles race on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

logger = logging.getLogger("relay.tables")

_SELECT_PENDING_SQL = """
    SELECT id, "to", message, sent_at, wa_msg_id
    FROM messages_outbox
    WHERE sent_at IS NULL
    ORDER BY id
    LIMIT $1
"""

_MARK_SENT_SQL = """
    UPDATE messages_outbox
    SET sent_at = $2, wa_msg_id = $3
    WHERE id = $1 AND sent_at IS NULL
"""

_INSERT_INBOX_SQL = """
    INSERT INTO messages_inbox (from_jid, to_jid, message, received_at)
    VALUES ($1, $2, $3, $4)
"""


@dataclass
class OutboxRow:
    id: Any
    message: str
    to: Optional[str] = None
    sent_at: Optional[datetime] = None
    wa_msg_id: Optional[str] = None


@dataclass(frozen=True)
class InboxRecord:
    from_jid: str
    to_jid: str
    message: str
    received_at: datetime


def _rowcount(status: str) -> int:
    # asyncpg command status format: "UPDATE <rowcount>"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError, AttributeError):
        logger.debug("Unexpected command status string: %s", status)
        return 0


class OutboxStore:
    """Reads pending outbox rows and marks them sent.

    Args:
        pool: An ``asyncpg`` connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch_pending(self, limit: int = 50) -> List[OutboxRow]:
        """Return up to *limit* rows whose ``sent_at`` is unset, oldest first."""
        rows = await self._pool.fetch(_SELECT_PENDING_SQL, limit)
        return [
            OutboxRow(
                id=row["id"],
                to=row["to"],
                message=row["message"] or "",
                sent_at=row["sent_at"],
                wa_msg_id=row["wa_msg_id"],
            )
            for row in rows
        ]

    async def mark_sent(
        self,
        row_id: Any,
        sent_at: datetime,
        wa_msg_id: Optional[str],
    ) -> bool:
        """Set ``sent_at``/``wa_msg_id`` on a still-pending row.

        Returns:
            ``True`` if the row was updated, ``False`` if it was already sent
            or no longer exists.
        """
        status = await self._pool.execute(_MARK_SENT_SQL, row_id, sent_at, wa_msg_id)
        return _rowcount(status) == 1


class InboxStore:
    """Appends archived inbound messages.

    Args:
        pool: An ``asyncpg`` connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert(self, record: InboxRecord) -> None:
        await self._pool.execute(
            _INSERT_INBOX_SQL,
            record.from_jid,
            record.to_jid,
            record.message,
            record.received_at,
        )
        logger.debug("Archived inbound message from %s", record.from_jid)
