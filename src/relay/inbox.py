"""
Inbox archiver — appends live inbound chat messages to ``messages_inbox``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from relay.tables import InboxRecord, InboxStore
from relay.transport import NOTIFY, InboundBatch

logger = logging.getLogger("relay.inbox")

# (container field, text field) in priority order; None means the
# container itself is the text.
_TEXT_PATHS = (
    ("conversation", None),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
)


def _get(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_text(content: Any) -> str:
    """Return the best available text of a message payload, or ``""``.

    Works on protobuf messages and on plain mappings of the same shape.
    """
    for container, leaf in _TEXT_PATHS:
        value = _get(content, container)
        if leaf is not None:
            value = _get(value, leaf)
        if isinstance(value, str) and value:
            return value
    return ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InboxArchiver:
    """Listener for the connection manager's inbound stream.

    Args:
        store: Inbox table access.
        self_jid: Returns the paired account's JID (the recipient).
        clock: Returns the receive timestamp.
    """

    def __init__(
        self,
        store: InboxStore,
        self_jid: Callable[[], Optional[str]],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._self_jid = self_jid
        self._clock = clock

    async def __call__(self, batch: InboundBatch) -> int:
        return await self.handle(batch)

    async def handle(self, batch: InboundBatch) -> int:
        """Archive every message with text in a live batch.

        Returns:
            Number of records stored.
        """
        if batch.kind != NOTIFY:
            return 0

        stored = 0
        for message in batch.messages:
            try:
                text = extract_text(message.content)
                if not text:
                    continue
                await self._store.insert(
                    InboxRecord(
                        from_jid=message.remote_jid or "",
                        to_jid=self._self_jid() or "",
                        message=text,
                        received_at=self._clock(),
                    )
                )
                stored += 1
            except Exception as exc:
                logger.warning("Inbox insert failed: %s", exc)
        return stored
