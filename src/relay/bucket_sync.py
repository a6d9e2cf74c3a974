"""
Bucket sync engine — announces newly uploaded documents to the group.

Each cycle lists the newest bucket objects, skips anything that is not
a document or is already in the sent ledger, and sends one notification
per remaining file, in listing order.  A file is recorded in the ledger
only after its send succeeded, so a crash between the two can cause a
duplicate announcement but never a silent drop.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from relay.connection import ConnectionManager, NotConnectedError
from relay.ledger import SentLedger
from relay.storage import StorageClient, StorageError
from shared.audit import AuditLogger

logger = logging.getLogger("relay.bucket_sync")


@dataclass
class BucketCycleStats:
    listed: int = 0
    sent: int = 0
    already_sent: int = 0
    ignored: int = 0
    failed: int = 0
    aborted: bool = False


def format_notification(template: str, name: str, url: str) -> str:
    """Render the group notification for one uploaded file."""
    return template.format(name=name, url=url)


class BucketSyncEngine:
    """Polls one storage bucket and forwards new documents.

    Args:
        storage: Storage client for the bucket.
        ledger: Durable set of already-delivered file names.
        connection: Connection manager used to send.
        config: The full relay configuration.
        audit: Optional audit logger.
    """

    def __init__(
        self,
        storage: StorageClient,
        ledger: SentLedger,
        connection: ConnectionManager,
        config: Dict[str, Any],
        audit: Optional[AuditLogger] = None,
    ) -> None:
        relay_config = config.get("relay", {})
        storage_config = config.get("storage", {})
        self._storage = storage
        self._ledger = ledger
        self._connection = connection
        self._audit = audit
        self._group_jid: str = relay_config["group_jid"]
        self._suffix = str(relay_config.get("document_suffix", ".pdf")).lower()
        self._template: str = relay_config.get(
            "message_template", "📄 New PDF uploaded: *{name}*\n{url}"
        )
        self._prefix: str = storage_config.get("prefix", "")
        self._limit = int(storage_config.get("list_limit", 100))

    async def run_cycle(self) -> BucketCycleStats:
        """Run one listing-and-delivery pass.  Never raises."""
        stats = BucketCycleStats()

        if not self._connection.is_open:
            logger.debug("Bucket cycle skipped: connection %s", self._connection.state.value)
            return stats

        try:
            files = await self._storage.list_files(prefix=self._prefix, limit=self._limit)
        except StorageError as exc:
            logger.error("Storage list error: %s", exc)
            await self._record(stats, success=False, error=str(exc))
            return stats
        except Exception:
            logger.exception("Storage list failed unexpectedly")
            await self._record(stats, success=False, error="see logs")
            return stats

        stats.listed = len(files)

        for record in files:
            name = record.name
            if not name.lower().endswith(self._suffix):
                stats.ignored += 1
                continue
            if self._ledger.contains(name):
                stats.already_sent += 1
                continue

            try:
                url = self._storage.get_public_url(name)
            except StorageError as exc:
                logger.error("Get public URL error for %s: %s", name, exc)
                stats.failed += 1
                continue

            text = format_notification(self._template, name, url)
            logger.info("Sending to group: %s %s", name, url)
            try:
                receipt = await self._connection.send(self._group_jid, text)
            except NotConnectedError:
                logger.warning("Connection dropped mid-cycle; %s will be retried", name)
                stats.failed += 1
                stats.aborted = True
                break
            except Exception:
                logger.warning("Send failed for %s; will retry next cycle", name, exc_info=True)
                stats.failed += 1
                continue

            self._ledger.add(name)
            stats.sent += 1
            if self._audit is not None:
                await self._audit.log(
                    "bucket_send",
                    {"name": name, "wa_msg_id": receipt.message_id},
                    success=True,
                )

        if stats.sent or stats.failed:
            logger.info(
                "Bucket cycle: %d listed, %d sent, %d already sent, %d failed",
                stats.listed,
                stats.sent,
                stats.already_sent,
                stats.failed,
            )
        await self._record(stats, success=stats.failed == 0)
        return stats

    async def _record(self, stats: BucketCycleStats, success: bool, **extra: Any) -> None:
        if self._audit is None:
            return
        details = asdict(stats)
        details.update(extra)
        await self._audit.log("bucket_cycle", details, success=success)
