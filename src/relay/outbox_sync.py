"""
Outbox sync engine — delivers queued rows from ``messages_outbox``.

Rows with ``sent_at`` unset are sent one by one; a successful send
stamps ``sent_at`` and ``wa_msg_id`` so the row is never selected
again.  A failed row simply stays pending and is retried next cycle.
The table is optional: if it is missing the cycle is a quiet no-op.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import asyncpg

from relay.connection import ConnectionManager, NotConnectedError
from relay.tables import OutboxStore
from shared.audit import AuditLogger

logger = logging.getLogger("relay.outbox_sync")


@dataclass
class OutboxCycleStats:
    selected: int = 0
    sent: int = 0
    empty: int = 0
    failed: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxSyncEngine:
    """Polls the outbox table and sends pending rows.

    Args:
        store: Outbox table access.
        connection: Connection manager used to send.
        config: The full relay configuration.
        audit: Optional audit logger.
        clock: Returns the timestamp written to ``sent_at``.
    """

    def __init__(
        self,
        store: OutboxStore,
        connection: ConnectionManager,
        config: Dict[str, Any],
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        relay_config = config.get("relay", {})
        self._store = store
        self._connection = connection
        self._audit = audit
        self._clock = clock
        self._default_target: str = relay_config["group_jid"]
        self._batch_size = int(relay_config.get("outbox_batch_size", 50))
        self._table_missing_logged = False

    async def run_cycle(self) -> OutboxCycleStats:
        """Run one select-send-mark pass.  Never raises."""
        stats = OutboxCycleStats()

        if not self._connection.is_open:
            logger.debug("Outbox cycle skipped: connection %s", self._connection.state.value)
            return stats

        try:
            rows = await self._store.fetch_pending(self._batch_size)
        except asyncpg.UndefinedTableError:
            if not self._table_missing_logged:
                logger.info("messages_outbox table not found; outbox relay idle")
                self._table_missing_logged = True
            return stats
        except Exception:
            logger.debug("Outbox query failed; retrying next cycle", exc_info=True)
            return stats

        stats.selected = len(rows)

        for row in rows:
            if not row.message:
                stats.empty += 1
                logger.debug("Outbox row %s has an empty message; skipped", row.id)
                continue

            target = row.to or self._default_target
            try:
                receipt = await self._connection.send(target, row.message)
            except NotConnectedError:
                logger.warning("Connection dropped; outbox row %s stays pending", row.id)
                stats.failed += 1
                break
            except Exception:
                logger.warning(
                    "Outbox send failed for row %s; will retry next cycle",
                    row.id,
                    exc_info=True,
                )
                stats.failed += 1
                continue

            sent_at = self._clock()
            try:
                updated = await self._store.mark_sent(row.id, sent_at, receipt.message_id)
            except Exception:
                # Row stays pending and will be sent again.
                logger.error(
                    "Sent outbox row %s but could not mark it sent", row.id, exc_info=True
                )
                stats.failed += 1
                continue

            if not updated:
                logger.warning("Outbox row %s was already marked sent", row.id)
            row.sent_at = sent_at
            row.wa_msg_id = receipt.message_id
            stats.sent += 1
            if self._audit is not None:
                await self._audit.log(
                    "outbox_send",
                    {"row_id": row.id, "to": target, "wa_msg_id": receipt.message_id},
                    success=True,
                )

        if stats.selected:
            logger.info(
                "Outbox cycle: %d selected, %d sent, %d failed",
                stats.selected,
                stats.sent,
                stats.failed,
            )
            if self._audit is not None:
                await self._audit.log(
                    "outbox_cycle", asdict(stats), success=stats.failed == 0
                )
        return stats
