"""Tests for push transports."""

import httpx
import pytest

from agora.config import Settings, set_settings
from agora.transport import (
    ConnectionGone,
    DeliveryError,
    HttpPushTransport,
    LocalWebSocketTransport,
    get_transport,
    reset_transport,
)


def _transport(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPushTransport("https://push.example.com/prod/", client=client)


class TestHttpPushTransport:
    @pytest.mark.asyncio
    async def test_posts_payload_to_connection_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        transport = _transport(handler)
        await transport.post_to_connection("abc123", b'{"type": "new_message"}')
        await transport.close()

        assert len(seen) == 1
        assert str(seen[0].url) == "https://push.example.com/prod/@connections/abc123"
        assert seen[0].method == "POST"
        assert seen[0].content == b'{"type": "new_message"}'

    @pytest.mark.asyncio
    async def test_410_is_gone(self):
        transport = _transport(lambda request: httpx.Response(410))
        with pytest.raises(ConnectionGone) as exc_info:
            await transport.post_to_connection("abc123", b"{}")
        assert exc_info.value.connection_id == "abc123"

    @pytest.mark.asyncio
    async def test_other_errors_are_delivery_errors(self):
        transport = _transport(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(DeliveryError) as exc_info:
            await transport.post_to_connection("abc123", b"{}")
        assert not isinstance(exc_info.value, ConnectionGone)
        assert "500" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_network_failure_is_delivery_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = _transport(handler)
        with pytest.raises(DeliveryError) as exc_info:
            await transport.post_to_connection("abc123", b"{}")
        assert not isinstance(exc_info.value, ConnectionGone)


class TestLocalWebSocketTransport:
    @pytest.mark.asyncio
    async def test_unknown_connection_is_gone(self):
        transport = LocalWebSocketTransport()
        with pytest.raises(ConnectionGone):
            await transport.post_to_connection("nope", b"{}")

    def test_register_unregister(self):
        transport = LocalWebSocketTransport()
        transport.register("c1", object())
        assert transport.is_registered("c1")
        transport.unregister("c1")
        transport.unregister("c1")
        assert not transport.is_registered("c1")


class TestTransportSingleton:
    def test_default_is_local(self):
        reset_transport()
        assert isinstance(get_transport(), LocalWebSocketTransport)

    def test_push_endpoint_selects_http(self):
        set_settings(Settings(push_endpoint="https://push.example.com"))
        reset_transport()
        transport = get_transport()
        assert isinstance(transport, HttpPushTransport)
        assert transport.connection_url("x") == "https://push.example.com/@connections/x"
