"""Tests for the connection manager."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.broker_connect import ConnectionStatus, NotificationLevel


def _payload(request: httpx.Request) -> dict:
    return json.loads(request.content)


@pytest.fixture
def manager(session):
    return session.connections


def _ack_connect(backend, broker_id, **extra):
    backend.add("POST", f"/api/brokers/{broker_id}/connect", json={"success": True, **extra})


# =============================================================================
# Listing
# =============================================================================

class TestListConnections:
    """Tests for list_connections."""

    @pytest.mark.asyncio
    async def test_no_credentials_makes_no_calls(self, manager, backend):
        assert await manager.list_connections("1") == []
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_returns_server_connections(self, session, manager, backend):
        session.credentials.store_credential("zerodha")
        backend.add("GET", "/api/brokers/connections/1", json=[
            {
                "id": "c1",
                "userId": "1",
                "brokerId": "zerodha",
                "brokerName": "Zerodha Kite",
                "status": "connected",
                "accessToken": "tok",
                "expiresAt": "2099-01-01T00:00:00Z",
                "isActive": True,
            },
        ])

        connections = await manager.list_connections("1")

        assert len(connections) == 1
        assert connections[0].broker_id == "zerodha"
        assert connections[0].status == ConnectionStatus.CONNECTED
        assert manager.connection_status("zerodha") == ConnectionStatus.CONNECTED
        assert manager.has_valid_credentials("zerodha") is True
        assert [r.url.path for r in backend.requests] == ["/health", "/api/brokers/connections/1"]

    @pytest.mark.asyncio
    async def test_unhealthy_backend(self, session, manager, backend):
        session.credentials.store_credential("zerodha")
        backend.healthy = False
        assert await manager.list_connections("1") == []
        assert [r.url.path for r in backend.requests] == ["/health"]

    @pytest.mark.asyncio
    async def test_not_found_is_empty(self, session, manager, backend):
        session.credentials.store_credential("zerodha")
        assert await manager.list_connections("1") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,kwargs", [
        (500, {"json": {"error": "boom"}}),
        (200, {"text": "<html>oops</html>", "headers": {"content-type": "text/html"}}),
        (200, {"text": "{not json", "headers": {"content-type": "application/json"}}),
        (200, {"json": {"connections": []}}),
        (403, {"json": {"error": "forbidden"}}),
    ])
    async def test_bad_responses_are_empty(self, session, manager, backend, status, kwargs):
        session.credentials.store_credential("zerodha")
        backend.add("GET", "/api/brokers/connections/1", status=status, **kwargs)
        assert await manager.list_connections("1") == []

    @pytest.mark.asyncio
    async def test_listing_does_not_downgrade_connected(self, manager, backend):
        _ack_connect(backend, "dhan", connection={"accessToken": "tok"})
        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is True
        conn = manager.get_connection("dhan")
        backend.add("GET", "/api/brokers/connections/1", json=[
            {"id": "c9", "userId": "1", "brokerId": "dhan", "status": "disconnected"},
        ])

        listed = await manager.list_connections("1")

        assert listed[0].status == ConnectionStatus.DISCONNECTED
        assert manager.get_connection("dhan") is conn
        assert conn.id == "c9"
        assert manager.connection_status("dhan") == ConnectionStatus.CONNECTED
        assert manager.has_valid_credentials("dhan") is True

    @pytest.mark.asyncio
    async def test_listing_keeps_pending_oauth(self, manager, backend):
        backend.add("POST", "/api/brokers/fyers/oauth/init", json={"authUrl": "https://f.example"})
        assert await manager.connect("fyers") is True
        backend.add("GET", "/api/brokers/connections/1", json=[
            {"brokerId": "fyers", "status": "disconnected"},
        ])

        await manager.list_connections("1")

        assert manager.connection_status("fyers") == ConnectionStatus.CONNECTING
        assert await manager.complete_oauth("fyers", "oauth-token") is True

    @pytest.mark.asyncio
    async def test_listing_updates_errored_connection(self, manager, backend):
        backend.add("POST", "/api/brokers/dhan/connect", status=401, json={"error": "bad key"})
        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is False
        backend.add("GET", "/api/brokers/connections/1", json=[
            {"brokerId": "dhan", "status": "connected", "accessToken": "server-tok"},
        ])

        await manager.list_connections("1")

        assert manager.connection_status("dhan") == ConnectionStatus.CONNECTED
        assert manager.get_connection("dhan").access_token == "server-tok"


# =============================================================================
# Connect
# =============================================================================

class TestConnectCredentialBrokers:
    """Tests for api_key and credentials brokers."""

    @pytest.mark.asyncio
    async def test_api_key_connect(self, manager, backend):
        _ack_connect(backend, "delta_exchange")

        assert await manager.connect("delta_exchange", {"apiKey": "k", "apiSecret": "s"}) is True

        assert manager.connection_status("delta_exchange") == ConnectionStatus.CONNECTED
        assert manager.has_valid_credentials("delta_exchange") is True
        connect_calls = backend.calls("/api/brokers/delta_exchange/connect")
        assert len(connect_calls) == 1
        assert _payload(connect_calls[0]) == {"userId": "1", "apiKey": "k", "apiSecret": "s"}

    @pytest.mark.asyncio
    async def test_uses_server_access_token(self, manager, backend):
        _ack_connect(backend, "dhan", connection={
            "id": "conn-9",
            "accessToken": "server-token",
            "expiresAt": "2099-01-01T00:00:00Z",
        })

        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is True

        conn = manager.get_connection("dhan")
        assert conn.access_token == "server-token"
        assert conn.id == "conn-9"
        assert conn.expires_at.year == 2099

    @pytest.mark.asyncio
    async def test_out_of_range_expiry_is_ignored(self, manager, backend):
        _ack_connect(backend, "dhan", connection={"accessToken": "tok", "expiresAt": 1e30})

        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is True

        conn = manager.get_connection("dhan")
        assert conn.expires_at is None
        assert manager.has_valid_credentials("dhan") is True

    @pytest.mark.asyncio
    async def test_unusable_oauth_lifetime_is_ignored(self, manager, backend):
        backend.add("POST", "/api/brokers/fyers/oauth/init", json={"authUrl": "https://f.example"})
        await manager.connect("fyers")

        assert await manager.complete_oauth("fyers", "token", expires_in=float("inf")) is True
        assert manager.get_connection("fyers").expires_at is None

    @pytest.mark.asyncio
    async def test_missing_secret_makes_no_calls(self, manager, backend, session):
        assert await manager.connect("delta_exchange", {"apiKey": "k"}) is False

        assert backend.requests == []
        assert manager.connection_status("delta_exchange") == ConnectionStatus.DISCONNECTED
        error = session.notifier.last
        assert error.level == NotificationLevel.ERROR
        assert "apiSecret" in error.message

    @pytest.mark.asyncio
    async def test_no_credentials_makes_no_calls(self, manager, backend):
        assert await manager.connect("angel_one") is False
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_stored_credentials_need_a_fresh_payload(self, session, manager, backend):
        session.credentials.store_credential("dhan", {"apiKey": "stored", "apiSecret": "s"})
        _ack_connect(backend, "dhan")

        assert await manager.connect("dhan") is False
        assert backend.requests == []
        assert manager.connection_status("dhan") == ConnectionStatus.DISCONNECTED
        assert session.credentials.get_credential("dhan").api_key == "stored"

    @pytest.mark.asyncio
    async def test_login_connect_sends_totp(self, manager, backend):
        _ack_connect(backend, "angel_one")

        ok = await manager.connect(
            "angel_one", {"username": "trader", "password": "pw", "totp": "654321"}
        )

        assert ok is True
        call = backend.calls("/api/brokers/angel_one/connect")[0]
        assert _payload(call) == {
            "userId": "1", "username": "trader", "password": "pw", "totp": "654321",
        }

    @pytest.mark.asyncio
    async def test_server_error_text_surfaced(self, session, manager, backend):
        backend.add(
            "POST", "/api/brokers/dhan/connect", status=401, json={"error": "Invalid API key"}
        )

        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is False

        assert manager.connection_status("dhan") == ConnectionStatus.ERROR
        assert manager.has_valid_credentials("dhan") is False
        assert "Invalid API key" in session.notifier.last.message

    @pytest.mark.asyncio
    async def test_unacknowledged_connect_fails(self, session, manager, backend):
        backend.add(
            "POST", "/api/brokers/dhan/connect",
            json={"success": False, "error": "Account locked"},
        )
        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is False
        assert "Account locked" in session.notifier.last.message

    @pytest.mark.asyncio
    async def test_non_json_connect_fails(self, manager, backend):
        backend.add("POST", "/api/brokers/dhan/connect", text="OK")
        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is False
        assert manager.connection_status("dhan") == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_unreachable_backend(self, session, manager, backend):
        backend.healthy = False

        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is False

        assert [r.url.path for r in backend.requests] == ["/health"]
        assert manager.connection_status("dhan") == ConnectionStatus.ERROR
        assert "Backend server is not available" in session.notifier.last.message
        # Credentials were still stored before the health check
        assert session.credentials.has_credential("dhan") is True

    @pytest.mark.asyncio
    async def test_unknown_broker(self, session, manager, backend):
        assert await manager.connect("robinhood", {"apiKey": "k", "apiSecret": "s"}) is False
        assert backend.requests == []
        assert "robinhood" in session.notifier.last.message

    @pytest.mark.asyncio
    async def test_retry_after_error(self, manager, backend):
        backend.add("POST", "/api/brokers/dhan/connect", status=500, json={"error": "down"})
        assert await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}) is False

        _ack_connect(backend, "dhan")
        assert await manager.connect("dhan") is True
        assert manager.connection_status("dhan") == ConnectionStatus.CONNECTED


class TestConnectOAuth:
    """Tests for the OAuth flow."""

    @pytest.mark.asyncio
    async def test_oauth_opens_authorization_url(self, manager, backend, opened_urls):
        backend.add(
            "POST", "/api/brokers/zerodha/oauth/init",
            json={"authUrl": "https://kite.example/connect?state=1"},
        )

        assert await manager.connect("zerodha") is True

        assert opened_urls == ["https://kite.example/connect?state=1"]
        assert _payload(backend.calls("/api/brokers/zerodha/oauth/init")[0]) == {"userId": "1"}
        assert manager.connection_status("zerodha") == ConnectionStatus.CONNECTING
        assert manager.has_valid_credentials("zerodha") is False

    @pytest.mark.asyncio
    async def test_complete_oauth(self, manager, backend):
        backend.add("POST", "/api/brokers/fyers/oauth/init", json={"authUrl": "https://f.example"})
        await manager.connect("fyers")

        assert await manager.complete_oauth("fyers", "oauth-token", expires_in=3600) is True

        conn = manager.get_connection("fyers")
        assert conn.status == ConnectionStatus.CONNECTED
        assert conn.access_token == "oauth-token"
        assert conn.expires_at > datetime.now(timezone.utc)
        assert manager.has_valid_credentials("fyers") is True

    @pytest.mark.asyncio
    async def test_complete_oauth_without_pending_flow(self, manager):
        assert await manager.complete_oauth("fyers", "token") is False
        assert manager.connection_status("fyers") == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_complete_oauth_requires_token(self, manager, backend):
        backend.add("POST", "/api/brokers/fyers/oauth/init", json={"authUrl": "https://f.example"})
        await manager.connect("fyers")

        assert await manager.complete_oauth("fyers", "") is False
        assert manager.connection_status("fyers") == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_auth_url(self, manager, backend, opened_urls):
        backend.add("POST", "/api/brokers/upstox/oauth/init", json={})

        assert await manager.connect("upstox") is False

        assert opened_urls == []
        assert manager.connection_status("upstox") == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_async_opener(self, session, backend):
        opened = []

        async def opener(url):
            opened.append(url)

        session.connections._opener = opener
        backend.add("POST", "/api/brokers/kotak_neo/oauth/init", json={"authUrl": "https://k"})

        assert await session.connections.connect("kotak_neo") is True
        assert opened == ["https://k"]

    @pytest.mark.asyncio
    async def test_expired_token_is_not_valid(self, manager, backend):
        backend.add("POST", "/api/brokers/fyers/oauth/init", json={"authUrl": "https://f.example"})
        await manager.connect("fyers")
        await manager.complete_oauth("fyers", "token")

        manager.get_connection("fyers").expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert manager.connection_status("fyers") == ConnectionStatus.CONNECTED
        assert manager.has_valid_credentials("fyers") is False


# =============================================================================
# Disconnect
# =============================================================================

class TestDisconnect:
    """Tests for disconnect."""

    @pytest.mark.asyncio
    async def test_disconnect_resets_and_closes_streams(self, session, manager, backend, connector):
        _ack_connect(backend, "dhan")
        backend.add("POST", "/api/brokers/dhan/disconnect", json={"success": True})
        await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"})
        assert await session.streams.start_stream("dhan", ["TCS"], on_quote=lambda q: None) is True
        socket = connector.last

        assert await manager.disconnect("dhan") is True

        assert manager.connection_status("dhan") == ConnectionStatus.DISCONNECTED
        assert manager.has_valid_credentials("dhan") is False
        assert manager.get_connection("dhan").access_token is None
        assert session.streams.is_streaming("dhan") is False
        assert socket.closed is True
        assert _payload(backend.calls("/api/brokers/dhan/disconnect")[0]) == {"userId": "1"}

    @pytest.mark.asyncio
    async def test_failed_disconnect_still_closes_streams(self, session, manager, backend, connector):
        _ack_connect(backend, "dhan")
        backend.add("POST", "/api/brokers/dhan/disconnect", status=500, json={"error": "down"})
        await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"})
        await session.streams.start_stream("dhan", ["TCS"], on_quote=lambda q: None)

        assert await manager.disconnect("dhan") is False

        assert session.streams.is_streaming("dhan") is False
        assert connector.last.closed is True
        assert manager.connection_status("dhan") == ConnectionStatus.CONNECTED
        assert session.notifier.last.level == NotificationLevel.ERROR

    @pytest.mark.asyncio
    async def test_disconnect_unknown_broker(self, manager, backend):
        assert await manager.disconnect("nope") is False
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_are_serialised(self, manager, backend):
        _ack_connect(backend, "dhan")
        backend.add("POST", "/api/brokers/dhan/disconnect", json={"success": True})

        connected, disconnected = await asyncio.gather(
            manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}),
            manager.disconnect("dhan"),
        )

        assert connected is True
        assert disconnected is True
        assert manager.connection_status("dhan") == ConnectionStatus.DISCONNECTED
        paths = [r.url.path for r in backend.requests]
        assert paths.index("/api/brokers/dhan/connect") < paths.index("/api/brokers/dhan/disconnect")


# =============================================================================
# Portfolio
# =============================================================================

class TestPortfolio:
    """Tests for positions, orders and sync."""

    @pytest.mark.asyncio
    async def test_get_positions(self, manager, backend):
        backend.add("GET", "/api/brokers/zerodha/positions", json=[
            {"id": "p1", "brokerId": "zerodha", "symbol": "INFY", "quantity": 10,
             "averagePrice": 1500, "currentPrice": 1525, "pnl": 250, "pnlPercent": 1.67,
             "product": "cnc", "exchange": "NSE"},
            "garbage",
        ])

        positions = await manager.get_positions("zerodha")

        assert len(positions) == 1
        assert positions[0].symbol == "INFY"
        assert positions[0].pnl == 250
        assert backend.calls("/api/brokers/zerodha/positions")[0].url.params["userId"] == "1"

    @pytest.mark.asyncio
    async def test_get_orders_skips_malformed(self, manager, backend):
        backend.add("GET", "/api/brokers/zerodha/orders", json=[
            {"id": "o1", "symbol": "TCS", "side": "sell", "type": "limit", "quantity": 5,
             "price": 3500, "status": "filled", "filledQuantity": 5},
            {"symbol": "NOID"},
        ])

        orders = await manager.get_orders("zerodha")

        assert [o.id for o in orders] == ["o1"]
        assert orders[0].filled_quantity == 5

    @pytest.mark.asyncio
    async def test_positions_failure_is_empty(self, manager, backend):
        backend.add("GET", "/api/brokers/zerodha/positions", status=500, json={"error": "x"})
        assert await manager.get_positions("zerodha") == []

    @pytest.mark.asyncio
    async def test_sync_requires_connection(self, manager, backend):
        assert await manager.sync_broker("dhan") is False
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_sync_all(self, manager, backend):
        _ack_connect(backend, "dhan")
        backend.add(
            "POST", "/api/brokers/dhan/sync",
            json={"success": True, "lastSyncAt": "2025-01-02T03:04:05Z"},
        )
        await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"})

        assert await manager.sync_all() == {"dhan": True}
        assert manager.get_connection("dhan").last_sync_at == datetime(
            2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_sync_failure(self, session, manager, backend):
        _ack_connect(backend, "dhan")
        backend.add("POST", "/api/brokers/dhan/sync", status=502, text="Bad gateway")
        await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"})

        assert await manager.sync_broker("dhan") is False
        assert session.notifier.last.level == NotificationLevel.ERROR
