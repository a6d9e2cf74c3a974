"""
Relay entry point — pairs with WhatsApp, then keeps two queues flowing
into the configured group and archives inbound messages.

Runs as a long-lived service.

Key behaviours:
    - Loads configuration from ``settings.toml`` and the environment.
    - Owns a single ``ConnectionManager``; every sender depends on it.
    - Polls the storage bucket and the outbox table on independent
      schedules, each skipping ticks while a previous cycle is running.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Exits with status 1 on configuration errors and 2 after a logout.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from relay.bucket_sync import BucketSyncEngine
from relay.connection import BackoffPolicy, ConnectionManager, TransportFactory
from relay.credentials import CredentialStore
from relay.inbox import InboxArchiver
from relay.ledger import SentLedger
from relay.outbox_sync import OutboxSyncEngine
from relay.pairing_page import PairingPage
from relay.scheduler import PeriodicTask
from relay.settings import ConfigError, load_config
from relay.storage import StorageClient
from relay.tables import InboxStore, OutboxStore
from relay.transport import PyaileysTransport
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_optional_secret

logger = logging.getLogger("relay.main")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_LOGGED_OUT = 2


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _sleep_with_shutdown(seconds: float) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown."""
    if _shutdown_event.is_set():
        return True

    remaining = max(0.0, seconds)
    while remaining > 0:
        if _shutdown_event.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return _shutdown_event.is_set()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler — sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_schedulers(
    config: Dict[str, Any],
    bucket_engine: BucketSyncEngine,
    outbox_engine: Optional[OutboxSyncEngine],
) -> List[PeriodicTask]:
    interval = float(config["relay"]["poll_interval_seconds"])
    tasks = [PeriodicTask("bucket-sync", interval, bucket_engine.run_cycle)]
    if outbox_engine is not None:
        tasks.append(PeriodicTask("outbox-sync", interval, outbox_engine.run_cycle))
    return tasks


async def main(
    config: Dict[str, Any],
    transport_factory: TransportFactory = PyaileysTransport,
) -> int:
    """Top-level async entry point.

    Returns:
        Process exit status.
    """
    pool = None
    audit: Optional[AuditLogger] = None
    storage: Optional[StorageClient] = None
    page: Optional[PairingPage] = None
    manager: Optional[ConnectionManager] = None
    schedulers: List[PeriodicTask] = []
    exit_code = EXIT_OK

    try:
        # --- database (optional) ---
        db_config = dict(config["database"])
        if db_config.get("dsn"):
            pool = await get_connection_pool(db_config)
            if not await health_check(pool):
                logger.warning("Database did not answer a health check; outbox cycles will retry")
            if db_config.get("init_schema"):
                await init_database(pool)
        else:
            logger.warning("DATABASE_URL not set; outbox relay and inbox archive disabled")

        audit = AuditLogger(pool, log_path=Path(config["audit"]["log_path"]))

        # --- local state ---
        ledger = SentLedger(Path(config["relay"]["ledger_path"]))
        ledger.load()

        session_config = config["session"]
        credentials = CredentialStore(
            Path(session_config["auth_dir"]),
            encryption_key=get_optional_secret("session-encryption-key"),
        )

        # --- pairing page ---
        pairing_config = config["pairing"]
        page = PairingPage(
            host=pairing_config["host"],
            port=int(pairing_config["port"]),
            open_browser=bool(pairing_config["open_browser"]),
            print_terminal=bool(pairing_config["print_terminal"]),
        )
        page.start()

        # --- connection ---
        manager = ConnectionManager(
            credentials,
            transport_factory,
            presenter=page,
            backoff=BackoffPolicy.from_config(config["reconnect"]),
            audit=audit,
            archive_on_logout=bool(session_config.get("archive_on_logout", True)),
        )

        # --- engines ---
        storage_config = config["storage"]
        storage = StorageClient(
            storage_config["url"],
            storage_config["service_key"],
            storage_config["bucket"],
            timeout=float(storage_config.get("timeout_seconds", 30.0)),
        )
        bucket_engine = BucketSyncEngine(storage, ledger, manager, config, audit=audit)

        outbox_engine: Optional[OutboxSyncEngine] = None
        if pool is not None:
            outbox_engine = OutboxSyncEngine(OutboxStore(pool), manager, config, audit=audit)
            manager.add_message_listener(
                InboxArchiver(InboxStore(pool), lambda: manager.self_jid if manager else None)
            )

        await audit.log(
            "startup",
            {
                "bucket": storage_config["bucket"],
                "group_jid": config["relay"]["group_jid"],
                "outbox_enabled": outbox_engine is not None,
                "ledger_entries": len(ledger),
            },
        )

        await manager.connect()

        schedulers = build_schedulers(config, bucket_engine, outbox_engine)
        for task in schedulers:
            task.start()

        # --- wait for shutdown or logout ---
        while not _shutdown_event.is_set():
            if manager.logged_out:
                logger.critical(
                    "WhatsApp session was logged out. Restart to pair again."
                )
                exit_code = EXIT_LOGGED_OUT
                break
            await _sleep_with_shutdown(1.0)
    finally:
        for task in schedulers:
            await task.stop()
        if manager is not None:
            await manager.stop()
        if page is not None:
            page.stop()
        if storage is not None:
            await storage.close()
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Relay shut down cleanly.")

    return exit_code


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        config = load_config()
    except ConfigError as exc:
        logger.critical("%s", exc)
        sys.exit(EXIT_CONFIG)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        exit_code = asyncio.run(main(config))
    except Exception:
        logger.exception("Fatal error starting relay")
        exit_code = EXIT_CONFIG
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
