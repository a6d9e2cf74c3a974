"""
Structured audit logging — records relay events to a JSON Lines file
and, when a database is configured, to the ``audit_log`` table.

Every delivery, sync cycle, and connection transition is recorded with a
timestamp, service name, action, details dict, and success flag.  Audit
writes happen on a background task so a slow disk or database never
stalls the relay loops.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("./logs/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class _AuditRecord:
    """Single audit event prepared for async batch flushing."""

    json_line: str
    action: str
    details_json: str
    success: bool


class AuditLogger:
    """Buffered audit logger that writes to a file and, optionally, a database.

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``),
              or ``None`` to write the file only.
        log_path: Path to the JSON Lines audit log file.
        service: Service label stored with every event.
        queue_size: Max queued events before producers backpressure.
        flush_batch_size: Number of queued events to flush per write batch.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool] = None,
        log_path: Path = _DEFAULT_LOG_PATH,
        service: str = "relay",
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = Path(log_path)
        self._service = service
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False
        self._lifecycle_lock = asyncio.Lock()
        self._db_disabled = False

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            loop = asyncio.get_running_loop()
            self._worker_task = loop.create_task(
                self._worker(),
                name="wa-relay-audit-writer",
            )

    async def _write_batch(self, batch: list[_AuditRecord]) -> None:
        if not batch:
            return

        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(item.json_line for item in batch))
        except OSError:
            logger.exception("Failed to write audit log file")

        if self._pool is None or self._db_disabled:
            return

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL,
                    [
                        (
                            self._service,
                            item.action,
                            item.details_json,
                            item.success,
                        )
                        for item in batch
                    ],
                )
        except asyncpg.UndefinedTableError:
            # Nothing to write into; keep the file trail only.
            self._db_disabled = True
            logger.warning("audit_log table missing; database audit disabled")
        except Exception:
            logger.exception("Failed to write audit log to database")

    async def _worker(self) -> None:
        """Drain queue and flush records in small batches."""
        stop = False
        while True:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                break

            batch = [record]

            while len(batch) < self._flush_batch_size:
                try:
                    maybe_next = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break

                if maybe_next is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(maybe_next)

            await self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()

            if stop:
                break

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            action: Action identifier (e.g. ``"bucket_cycle"``,
                    ``"outbox_send"``, ``"connection_close"``).
            details: Arbitrary JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        details_payload = details or {}
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service,
            "action": action,
            "details": details_payload,
            "success": success,
        }
        record = _AuditRecord(
            json_line=json.dumps(event, default=str) + "\n",
            action=action,
            details_json=json.dumps(details_payload, default=str),
            success=success,
        )
        async with self._lifecycle_lock:
            if self._closed:
                logger.debug("Dropping audit event after logger close: action=%s", action)
                return
            self._ensure_worker()
            await self._queue.put(record)

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        worker: asyncio.Task[None] | None = None
        async with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker_task
            if worker is not None:
                await self._queue.put(None)

        if worker is not None:
            await worker
