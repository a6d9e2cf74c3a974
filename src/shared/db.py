"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The relay touches three
tables:

- ``messages_outbox``: SELECT + UPDATE (``sent_at``, ``wa_msg_id``).
- ``messages_inbox``: INSERT only.
- ``audit_log``: INSERT only.

The outbox and inbox tables are usually provisioned by the operator
(e.g. in the Supabase dashboard).  Schema creation here is opt-in.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with either a ``dsn`` key or
                ``host``, ``port``, ``database``, ``user``, ``password``;
                optionally ``min_size`` and ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    min_size = int(config.get("min_size", 1))
    max_size = int(config.get("max_size", 5))

    if config.get("dsn"):
        pool = await asyncpg.create_pool(
            dsn=config["dsn"],
            min_size=min_size,
            max_size=max_size,
        )
        logger.info("Database pool created from DSN (size %d-%d)", min_size, max_size)
        return pool

    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config.get("database"),
        user=config.get("user"),
        password=config.get("password"),
        min_size=min_size,
        max_size=max_size,
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host"),
        config.get("database"),
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS messages_outbox (
        id          BIGSERIAL PRIMARY KEY,
        "to"        TEXT,
        message     TEXT NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        sent_at     TIMESTAMPTZ,
        wa_msg_id   TEXT
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_outbox_pending
    ON messages_outbox (id) WHERE sent_at IS NULL;
    """,
    """
    CREATE TABLE IF NOT EXISTS messages_inbox (
        id           BIGSERIAL PRIMARY KEY,
        from_jid     TEXT NOT NULL,
        to_jid       TEXT NOT NULL,
        message      TEXT NOT NULL,
        received_at  TIMESTAMPTZ NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    );
    """,
)


async def init_database(pool: asyncpg.Pool) -> None:
    """Create the relay tables if they do not exist.

    Idempotent (uses IF NOT EXISTS).  Only called when
    ``database.init_schema`` is enabled; a missing outbox table is
    otherwise tolerated at runtime.
    """
    async with pool.acquire() as conn:
        for statement in _SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("Database schema ensured (%d statements)", len(_SCHEMA_STATEMENTS))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
