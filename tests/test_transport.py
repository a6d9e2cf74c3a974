"""
Tests for connection-update parsing and the pyaileys adapter's event
translation.  The adapter is built without its client so no protocol
stack is needed.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from relay.transport import (
    NOTIFY,
    DisconnectReason,
    PyaileysTransport,
    TransportError,
    disconnect_code,
)


def make_adapter(client=None):
    adapter = PyaileysTransport.__new__(PyaileysTransport)
    adapter._listener = AsyncMock()
    adapter._client = client
    adapter._closed = False
    return adapter


class TestDisconnectCode:
    def test_output_status_code(self):
        update = {"lastDisconnect": {"error": {"output": {"statusCode": 401}}}}
        assert disconnect_code(update) == DisconnectReason.LOGGED_OUT

    def test_attribute_style(self):
        update = SimpleNamespace(
            last_disconnect=SimpleNamespace(
                error=SimpleNamespace(output=SimpleNamespace(status_code=515))
            )
        )
        assert disconnect_code(update) == 515

    def test_error_status_fallback(self):
        update = {"last_disconnect": {"error": {"status": 428}}}
        assert disconnect_code(update) == 428

    def test_missing_code_is_zero(self):
        assert disconnect_code({}) == 0
        assert disconnect_code({"last_disconnect": {"error": None}}) == 0
        assert disconnect_code({"last_disconnect": {"error": {"status": "n/a"}}}) == 0


class TestEventTranslation:
    @pytest.mark.asyncio
    async def test_qr_becomes_pairing_challenge(self):
        adapter = make_adapter()
        await adapter._on_connection_update({"qr": "2@abc,def"})
        adapter._listener.on_pairing_challenge.assert_awaited_once_with("2@abc,def")

    @pytest.mark.asyncio
    async def test_open_and_close(self):
        adapter = make_adapter()
        await adapter._on_connection_update({"connection": "open"})
        adapter._listener.on_open.assert_awaited_once()

        await adapter._on_connection_update(
            {"connection": "close", "last_disconnect": {"error": {"status": 408}}}
        )
        code, detail = adapter._listener.on_close.await_args.args
        assert code == 408
        assert "408" in detail

    @pytest.mark.asyncio
    async def test_creds_update(self):
        adapter = make_adapter()
        await adapter._on_creds_update(object())
        adapter._listener.on_credentials_update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_decrypted_message_becomes_notify_batch(self):
        adapter = make_adapter()
        await adapter._on_message_decrypted(
            {
                "id": "ABC",
                "chat_jid": "15552223333@s.whatsapp.net",
                "sender_jid": "15552223333@s.whatsapp.net",
                "message": {"conversation": "hi"},
                "timestamp_s": 1700000000,
            }
        )

        batch = adapter._listener.on_messages.await_args.args[0]
        assert batch.kind == NOTIFY
        (message,) = batch.messages
        assert message.message_id == "ABC"
        assert message.remote_jid == "15552223333@s.whatsapp.net"
        assert message.content == {"conversation": "hi"}
        assert message.timestamp.year == 2023


class TestSend:
    @pytest.mark.asyncio
    async def test_send_returns_receipt(self):
        client = SimpleNamespace(send_text=AsyncMock(return_value="3EB0ABC"))
        adapter = make_adapter(client)

        receipt = await adapter.send_text("1@g.us", "hello")

        client.send_text.assert_awaited_once_with("1@g.us", "hello")
        assert receipt.target == "1@g.us"
        assert receipt.message_id == "3EB0ABC"

    @pytest.mark.asyncio
    async def test_send_failure_wrapped(self):
        client = SimpleNamespace(send_text=AsyncMock(side_effect=ConnectionError("reset")))
        adapter = make_adapter(client)

        with pytest.raises(TransportError):
            await adapter.send_text("1@g.us", "hello")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        client = SimpleNamespace(disconnect=AsyncMock())
        adapter = make_adapter(client)

        await adapter.close()
        await adapter.close()

        client.disconnect.assert_awaited_once()
