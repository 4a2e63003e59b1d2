"""Broker Session.

Explicit owner of all per-application broker state: the registry,
credential store, backend client, notifier, per-broker locks, and the
connection, stream and order managers wired together.
"""

from typing import Optional
import logging

import httpx

from src.broker_connect.config import ChargeSchedule, StreamConfig
from src.broker_connect.connections import BrokerLocks, ConnectionManager, UrlOpener
from src.broker_connect.credentials import CredentialStore
from src.broker_connect.notifications import Notifier
from src.broker_connect.orders import OrderRouter
from src.broker_connect.registry import BrokerRegistry
from src.broker_connect.streaming import Connector, MarketDataStreamManager
from src.broker_connect.transport import BackendClient
from src.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class BrokerSession:
    """Per-session broker context.

    Args:
        settings: Settings to use (defaults to ``get_settings()``).
        user_id: Acting user (defaults to ``settings.default_user_id``).
        transport: httpx transport for the backend client.
        connector: Coroutine opening a WebSocket (defaults to ``websockets.connect``).
        opener: Callable opening an OAuth authorization URL.

    Example:
        async with BrokerSession() as session:
            await session.connections.connect("dhan", {"apiKey": "k", "apiSecret": "s"})
            await session.streams.start_stream("dhan", ["TCS"], on_quote=print)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        user_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connector: Optional[Connector] = None,
        opener: Optional[UrlOpener] = None,
    ):
        self.settings = settings or get_settings()
        self.user_id = user_id or self.settings.default_user_id

        self.registry = BrokerRegistry()
        self.credentials = CredentialStore(
            self.registry, ttl_seconds=self.settings.credential_ttl_seconds
        )
        self.notifier = Notifier()
        self.locks = BrokerLocks()
        self.backend = BackendClient(
            self.settings.api_base_url,
            health_path=self.settings.health_path,
            health_timeout=self.settings.health_timeout_seconds,
            request_timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )

        self.streams = MarketDataStreamManager(
            self.registry,
            self.credentials,
            self.backend,
            self.notifier,
            self.locks,
            stream_base_url=self.settings.stream_base_url,
            user_id=self.user_id,
            config=StreamConfig(
                reconnect_attempts=self.settings.stream_reconnect_attempts,
                base_delay=self.settings.stream_reconnect_base_delay,
                max_delay=self.settings.stream_reconnect_max_delay,
                open_timeout=self.settings.stream_open_timeout,
            ),
            connector=connector,
        )
        self.connections = ConnectionManager(
            self.registry,
            self.credentials,
            self.backend,
            self.notifier,
            self.locks,
            streams=self.streams,
            user_id=self.user_id,
            opener=opener,
        )
        self.orders = OrderRouter(
            self.registry,
            self.backend,
            self.notifier,
            user_id=self.user_id,
            schedule=ChargeSchedule(
                brokerage_rate=self.settings.brokerage_rate,
                brokerage_cap=self.settings.brokerage_cap,
                stt_rate=self.settings.stt_rate,
                exchange_rate=self.settings.exchange_rate,
                gst_rate=self.settings.gst_rate,
            ),
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        """Close all streams and the backend client. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.streams.close_all()
        await self.backend.aclose()
        self.credentials.clear()
        logger.info(f"Broker session for user {self.user_id} closed")

    async def __aenter__(self) -> "BrokerSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
