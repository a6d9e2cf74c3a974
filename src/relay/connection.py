"""
Connection manager — owns the WhatsApp session state machine.

States::

    DISCONNECTED --start()--> PAIRING --open--> OPEN
         ^                                       |
         +------------- close (any state) -------+

A close with the logged-out code halts the machine permanently; any
other close schedules a reconnect after a jittered exponential backoff.
Components that need to send depend on this object (``send``,
``state``) rather than on a shared module-level socket.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from relay.credentials import CredentialError, CredentialStore
from relay.transport import (
    DisconnectReason,
    InboundBatch,
    SendReceipt,
    Transport,
    TransportListener,
)
from shared.audit import AuditLogger

logger = logging.getLogger("relay.connection")

TransportFactory = Callable[[Any, TransportListener], Transport]
MessageListener = Callable[[InboundBatch], Awaitable[Any]]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    PAIRING = "pairing"
    OPEN = "open"
    CLOSING = "closing"


class NotConnectedError(RuntimeError):
    """``send`` was called while the session is not open."""


class PairingPresenter(Protocol):
    """Where pairing challenges are shown (e.g. the local QR page)."""

    def show_challenge(self, code: str) -> None: ...

    def clear(self) -> None: ...


class BackoffPolicy:
    """Exponential reconnect delay with proportional jitter and a cap.

    Args:
        initial: Delay before the first retry, in seconds.
        maximum: Upper bound on any delay.
        multiplier: Growth factor per consecutive failure.
        jitter: Fraction of the delay added or removed at random.
    """

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 60.0,
        multiplier: float = 2.0,
        jitter: float = 0.2,
    ) -> None:
        self.initial = max(0.0, initial)
        self.maximum = max(self.initial, maximum)
        self.multiplier = max(1.0, multiplier)
        self.jitter = min(max(0.0, jitter), 1.0)
        self.attempts = 0

    @classmethod
    def from_config(cls, config: dict) -> "BackoffPolicy":
        return cls(
            initial=float(config.get("initial_delay_seconds", 1.0)),
            maximum=float(config.get("max_delay_seconds", 60.0)),
            multiplier=float(config.get("multiplier", 2.0)),
            jitter=float(config.get("jitter", 0.2)),
        )

    def next_delay(self) -> float:
        base = min(self.maximum, self.initial * (self.multiplier ** self.attempts))
        self.attempts += 1
        if self.jitter and base > 0:
            base += random.uniform(-self.jitter, self.jitter) * base
        return min(self.maximum, max(0.0, base))

    def reset(self) -> None:
        self.attempts = 0


class _SessionListener:
    """Forwards events from one transport instance, tagged by generation.

    Events from a transport that has since been replaced are dropped.
    """

    def __init__(self, manager: "ConnectionManager", generation: int) -> None:
        self._manager = manager
        self._generation = generation

    def _current(self) -> bool:
        return self._generation == self._manager._generation

    async def on_pairing_challenge(self, code: str) -> None:
        if self._current():
            await self._manager._handle_pairing_challenge(code)

    async def on_open(self) -> None:
        if self._current():
            await self._manager._handle_open()

    async def on_close(self, code: int, detail: str) -> None:
        if self._current():
            await self._manager._handle_close(code, detail)

    async def on_credentials_update(self) -> None:
        if self._current():
            await self._manager._handle_credentials_update()

    async def on_messages(self, batch: InboundBatch) -> None:
        if self._current():
            await self._manager._dispatch_messages(batch)


class ConnectionManager:
    """Session lifecycle: connect, pair, reconnect, and terminal logout.

    Args:
        credentials: Store that loads/saves the session credentials.
        transport_factory: ``(auth_state, listener) -> Transport``.
        presenter: Optional pairing presenter (QR page).
        backoff: Reconnect delay policy.
        audit: Optional audit logger.
        archive_on_logout: Move credentials aside after a logout.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        transport_factory: TransportFactory,
        presenter: Optional[PairingPresenter] = None,
        backoff: Optional[BackoffPolicy] = None,
        audit: Optional[AuditLogger] = None,
        archive_on_logout: bool = True,
    ) -> None:
        self._credentials = credentials
        self._factory = transport_factory
        self._presenter = presenter
        self._backoff = backoff or BackoffPolicy()
        self._audit = audit
        self._archive_on_logout = archive_on_logout

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._generation = 0
        self._current_challenge: Optional[str] = None
        self._listeners: List[MessageListener] = []
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._logged_out = asyncio.Event()
        self._stopping = False

    # ----- capability surface ---------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def logged_out(self) -> bool:
        return self._logged_out.is_set()

    @property
    def self_jid(self) -> Optional[str]:
        return self._transport.self_jid if self._transport is not None else None

    async def wait_logged_out(self) -> None:
        await self._logged_out.wait()

    def add_message_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    async def send(self, target: str, text: str) -> SendReceipt:
        """Send *text* to *target* through the open session.

        Raises:
            NotConnectedError: If the session is not ``OPEN``.
            TransportError: If the transport rejects the send.
        """
        transport = self._transport
        if self._state is not ConnectionState.OPEN or transport is None:
            raise NotConnectedError(f"cannot send while {self._state.value}")
        return await transport.send_text(target, text)

    # ----- lifecycle -------------------------------------------------------

    async def connect(self) -> None:
        """First bring-up.  Transient failures are retried in the background.

        Raises:
            CredentialError: If the persisted session cannot be loaded.
        """
        pending = self._reconnect_task
        try:
            await self.start()
        except CredentialError:
            raise
        except Exception:
            logger.exception("Initial connection attempt failed")
            await self._retry_after_failure(pending, "connect failed")

    async def start(self) -> None:
        """Load credentials and bring up a new transport session."""
        if self._logged_out.is_set():
            raise NotConnectedError("session logged out; re-pair required")
        if self._stopping:
            return

        previous = self._transport
        if previous is not None:
            self._transport = None
            self._generation += 1
            try:
                await previous.close()
            except Exception:
                logger.debug("Closing replaced transport raised", exc_info=True)

        auth_state = await self._credentials.open()
        self._generation += 1
        listener = _SessionListener(self, self._generation)
        self._transport = self._factory(auth_state, listener)
        self._state = ConnectionState.PAIRING
        logger.info("Connecting (attempt generation %d)", self._generation)
        await self._transport.connect()

    async def stop(self) -> None:
        """Close the session and stop reconnecting."""
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        transport = self._transport
        if transport is not None:
            self._state = ConnectionState.CLOSING
            self._generation += 1
            try:
                await transport.close()
            except Exception:
                logger.exception("Error while closing transport")
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        self._credentials.close()
        logger.info("Connection manager stopped")

    # ----- event handling --------------------------------------------------

    async def _handle_pairing_challenge(self, code: str) -> None:
        if code == self._current_challenge:
            return
        self._current_challenge = code
        self._state = ConnectionState.PAIRING
        logger.info("Pairing challenge received; scan it from Linked devices")
        if self._presenter is not None:
            try:
                self._presenter.show_challenge(code)
            except Exception:
                logger.exception("Pairing presenter failed to show challenge")

    async def _handle_open(self) -> None:
        self._state = ConnectionState.OPEN
        self._current_challenge = None
        self._backoff.reset()
        if self._presenter is not None:
            try:
                self._presenter.clear()
            except Exception:
                logger.exception("Pairing presenter failed to clear")
        logger.info("WhatsApp connected as %s", self.self_jid or "<unknown>")
        await self._record("connection_open", {"self_jid": self.self_jid})

    async def _handle_credentials_update(self) -> None:
        await self._credentials.save()
        logger.debug("Credentials persisted after rotation")

    async def _handle_close(self, code: int, detail: str) -> None:
        if self._logged_out.is_set():
            return
        transport = self._transport
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        self._current_challenge = None
        if transport is not None:
            self._generation += 1
            try:
                await transport.close()
            except Exception:
                logger.debug("Closing dropped transport raised", exc_info=True)

        if code == DisconnectReason.LOGGED_OUT:
            logger.critical("Session logged out (code %d); not reconnecting", code)
            await self._record("logged_out", {"code": code, "detail": detail}, success=False)
            if self._archive_on_logout:
                try:
                    self._credentials.archive()
                except OSError:
                    logger.exception("Failed to archive logged-out credentials")
            self._logged_out.set()
            return

        if self._stopping:
            return

        delay = self._backoff.next_delay()
        logger.warning(
            "Connection closed (code %d%s); reconnecting in %.1fs",
            code,
            f": {detail}" if detail else "",
            delay,
        )
        await self._record(
            "connection_close",
            {"code": code, "detail": detail, "retry_in_seconds": round(delay, 2)},
            success=False,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect(delay), name="wa-relay-reconnect"
        )

    async def _reconnect(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        pending = self._reconnect_task
        try:
            await self.start()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reconnect attempt failed")
            await self._retry_after_failure(pending, "reconnect failed")

    async def _retry_after_failure(
        self, pending: Optional[asyncio.Task[None]], detail: str
    ) -> None:
        # A close reported by the failed attempt has already scheduled the
        # next reconnect (or ended the session); do not schedule a second one.
        if self._reconnect_task is not pending or self._logged_out.is_set():
            return
        await self._handle_close(0, detail)

    async def _dispatch_messages(self, batch: InboundBatch) -> None:
        for listener in self._listeners:
            try:
                await listener(batch)
            except Exception:
                logger.exception("Inbound message listener failed")

    async def _record(self, action: str, details: dict, success: bool = True) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.log(action, details, success=success)
        except Exception:
            logger.debug("Audit write failed for %s", action, exc_info=True)
