"""
Transport boundary — the WhatsApp multi-device session as seen by the
connection manager.

``Transport`` is the abstract interface; ``PyaileysTransport`` adapts
the ``pyaileys`` client to it.  The transport reports everything it
observes (pairing challenges, open/close, credential rotation, inbound
messages) to a ``TransportListener`` and exposes a single send
operation.  Encryption and device handling stay inside the library.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, List, Mapping, Optional, Protocol

logger = logging.getLogger("relay.transport")

NOTIFY = "notify"
HISTORY = "history"


class DisconnectReason(IntEnum):
    """Close status codes used by the multi-device web protocol."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


class TransportError(Exception):
    """A send (or other transport call) failed.

    Args:
        message: Human-readable description.
        retryable: Whether retrying the same payload later may succeed.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class SendReceipt:
    """Delivery receipt returned by a successful send."""

    target: str
    message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class InboundMessage:
    """One inbound chat message.

    ``content`` is the raw message payload (protobuf message or mapping)
    in the library's shape; text extraction happens in the archiver.
    """

    message_id: str
    remote_jid: str
    sender_jid: Optional[str]
    content: Any
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InboundBatch:
    """A group of inbound messages delivered together.

    ``kind`` is ``"notify"`` for live traffic and ``"history"`` for
    replayed history.
    """

    kind: str
    messages: List[InboundMessage]


class TransportListener(Protocol):
    """Callbacks a transport drives.  All are awaited by the transport."""

    async def on_pairing_challenge(self, code: str) -> None: ...

    async def on_open(self) -> None: ...

    async def on_close(self, code: int, detail: str) -> None: ...

    async def on_credentials_update(self) -> None: ...

    async def on_messages(self, batch: InboundBatch) -> None: ...


class Transport(ABC):
    """Abstract WhatsApp session."""

    @abstractmethod
    async def connect(self) -> None:
        """Begin session bring-up; progress is reported to the listener."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Tear the session down.  Must be safe to call more than once."""
        ...

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> SendReceipt:
        """Send a text message to *jid*.

        Raises:
            TransportError: If the message could not be sent.
        """
        ...

    @property
    @abstractmethod
    def self_jid(self) -> Optional[str]:
        """JID of the paired account, once known."""
        ...


# ---------------------------------------------------------------------------
# Update parsing helpers
# ---------------------------------------------------------------------------


def _field(obj: Any, *names: str) -> Any:
    """Return the first present attribute/key among *names*."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, Mapping):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def disconnect_code(update: Any) -> int:
    """Extract the close status code from a connection update.

    Looks at ``last_disconnect.error.output.statusCode`` first, then
    ``last_disconnect.error.status``; returns 0 when neither is present.
    """
    last = _field(update, "last_disconnect", "lastDisconnect")
    error = _field(last, "error")
    output = _field(error, "output")
    for candidate in (
        _field(output, "status_code", "statusCode"),
        _field(error, "status_code", "statusCode", "status"),
    ):
        try:
            if candidate:
                return int(candidate)
        except (TypeError, ValueError):
            continue
    return 0


def _disconnect_detail(update: Any) -> str:
    last = _field(update, "last_disconnect", "lastDisconnect")
    error = _field(last, "error")
    return str(error) if error is not None else ""


# ---------------------------------------------------------------------------
# pyaileys adapter
# ---------------------------------------------------------------------------


class PyaileysTransport(Transport):
    """``Transport`` backed by the ``pyaileys`` multi-device client.

    Args:
        auth_state: The multi-file auth state loaded by the credential store.
        listener: Receiver of session events.
    """

    def __init__(self, auth_state: Any, listener: TransportListener) -> None:
        # Imported lazily; the generated protocol modules are large.
        from pyaileys.auth.state import AuthenticationState
        from pyaileys.client import WhatsAppClient

        self._listener = listener
        auth = AuthenticationState(creds=auth_state.creds, keys=auth_state.keys)
        self._client = WhatsAppClient(auth=auth)
        self._closed = False

        self._client.on("connection.update", self._on_connection_update)
        self._client.on("creds.update", self._on_creds_update)
        self._client.on("message.decrypted", self._on_message_decrypted)

    @property
    def self_jid(self) -> Optional[str]:
        me = self._client.socket.auth.creds.me
        return me.id if me else None

    async def connect(self) -> None:
        await self._client.connect()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._client.disconnect()
        except Exception:
            logger.debug("Transport disconnect raised", exc_info=True)

    async def send_text(self, jid: str, text: str) -> SendReceipt:
        try:
            message_id = await self._client.send_text(jid, text)
        except Exception as exc:
            raise TransportError(f"send to {jid} failed: {exc}") from exc
        return SendReceipt(target=jid, message_id=message_id or None)

    # ----- library event handlers -----------------------------------------

    async def _on_connection_update(self, update: Any) -> None:
        qr = _field(update, "qr")
        if qr:
            await self._listener.on_pairing_challenge(str(qr))

        connection = _field(update, "connection")
        if connection == "open":
            await self._listener.on_open()
        elif connection == "close":
            await self._listener.on_close(disconnect_code(update), _disconnect_detail(update))

    async def _on_creds_update(self, _creds: Any) -> None:
        await self._listener.on_credentials_update()

    async def _on_message_decrypted(self, event: Mapping[str, Any]) -> None:
        ts = event.get("timestamp_s") or 0
        message = InboundMessage(
            message_id=str(event.get("id") or ""),
            remote_jid=str(event.get("chat_jid") or ""),
            sender_jid=event.get("sender_jid"),
            content=event.get("message"),
            timestamp=datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None,
        )
        await self._listener.on_messages(InboundBatch(kind=NOTIFY, messages=[message]))
