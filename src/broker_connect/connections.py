"""Broker Connection Manager.

Performs the per-auth-type handshake against the backend and owns the
local connection status cache. Every public method is fail-soft:
errors become a notification plus a safe return value.
"""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, Union
import asyncio
import logging
import uuid
import webbrowser

from src.broker_connect.config import AuthType, BrokerDescriptor, ConnectionStatus, route
from src.broker_connect.credentials import CredentialStore, StoredCredential
from src.broker_connect.exceptions import (
    AuthenticationFailure,
    BrokerConnectError,
    ConfigurationError,
    UnreachableBackendError,
)
from src.broker_connect.models import Connection, Order, Position, parse_timestamp
from src.broker_connect.notifications import Notifier
from src.broker_connect.registry import BrokerRegistry
from src.broker_connect.transport import BackendClient, error_text, json_body
from src.logging_config import OperationContext

if TYPE_CHECKING:
    from src.broker_connect.streaming import MarketDataStreamManager

logger = logging.getLogger(__name__)

UrlOpener = Callable[[str], Union[Any, Awaitable[Any]]]


class BrokerLocks:
    """One ``asyncio.Lock`` per broker id.

    Serialises connect, disconnect and stream start for the same broker
    while leaving different brokers independent.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_broker(self, broker_id: str) -> asyncio.Lock:
        lock = self._locks.get(broker_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[broker_id] = lock
        return lock

    def locked(self, broker_id: str) -> bool:
        lock = self._locks.get(broker_id)
        return lock is not None and lock.locked()


def _issue_session_token(broker_id: str) -> str:
    return f"{broker_id}-session-{uuid.uuid4().hex}"


# Local states a listing never overrides
_LOCALLY_OWNED = (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING)


def _merge_listed(cached: Connection, listed: Connection) -> None:
    """Fold a server-listed record into the cached one in place."""
    cached.id = listed.id
    cached.user_id = listed.user_id or cached.user_id
    cached.last_sync_at = listed.last_sync_at or cached.last_sync_at
    cached.updated_at = listed.updated_at
    if cached.status in _LOCALLY_OWNED:
        return
    cached.status = listed.status
    cached.is_active = listed.is_active
    cached.expires_at = listed.expires_at
    if listed.access_token:
        cached.access_token = listed.access_token
        cached.refresh_token = listed.refresh_token


class ConnectionManager:
    """Manages broker connections for one user session.

    Example:
        manager = ConnectionManager(registry, credentials, backend, notifier)
        if await manager.connect("dhan", {"apiKey": "k", "apiSecret": "s"}):
            manager.connection_status("dhan")  # ConnectionStatus.CONNECTED
    """

    def __init__(
        self,
        registry: BrokerRegistry,
        credentials: CredentialStore,
        backend: BackendClient,
        notifier: Notifier,
        locks: Optional[BrokerLocks] = None,
        streams: Optional["MarketDataStreamManager"] = None,
        user_id: str = "1",
        opener: Optional[UrlOpener] = None,
    ):
        self._registry = registry
        self._credentials = credentials
        self._backend = backend
        self._notifier = notifier
        self._locks = locks or BrokerLocks()
        self._streams = streams
        self._user_id = user_id
        self._opener = opener or webbrowser.open_new
        self._connections: dict[str, Connection] = {}

    @property
    def user_id(self) -> str:
        return self._user_id

    def attach_streams(self, streams: "MarketDataStreamManager") -> None:
        """Set the stream manager whose streams are closed on disconnect."""
        self._streams = streams

    # =========================================================================
    # Local State
    # =========================================================================

    def _connection_for(self, broker: BrokerDescriptor) -> Connection:
        conn = self._connections.get(broker.id)
        if conn is None:
            conn = Connection(
                broker_id=broker.id,
                broker_name=broker.display_name,
                user_id=self._user_id,
            )
            self._connections[broker.id] = conn
        return conn

    def get_connection(self, broker_id: str) -> Optional[Connection]:
        return self._connections.get(broker_id)

    def connection_status(self, broker_id: str) -> ConnectionStatus:
        """Get the cached status of a broker. No network call."""
        conn = self._connections.get(broker_id)
        return conn.status if conn else ConnectionStatus.DISCONNECTED

    def has_valid_credentials(self, broker_id: str) -> bool:
        """Check for a live authenticated session.

        True only when the connection is connected, carries an access token
        and has not expired. A stored credential payload alone is not enough.
        """
        conn = self._connections.get(broker_id)
        if conn is None:
            return False
        return (
            conn.status is ConnectionStatus.CONNECTED
            and bool(conn.access_token)
            and not conn.is_expired
        )

    def connected_brokers(self) -> list[str]:
        return [
            broker_id for broker_id, conn in self._connections.items()
            if conn.status is ConnectionStatus.CONNECTED
        ]

    # =========================================================================
    # Listing
    # =========================================================================

    async def list_connections(self, user_id: Optional[str] = None) -> list[Connection]:
        """Fetch the server-reported connections of a user.

        Returns an empty list without touching the network when no broker
        has stored credentials, and an empty list on any backend failure.
        """
        user_id = user_id or self._user_id
        with OperationContext("list_connections", user_id=user_id):
            if not self._credentials.configured_brokers():
                logger.debug("No broker credentials stored, skipping connection fetch")
                return []

            if not await self._backend.check_health():
                logger.warning("Backend unavailable, returning no connections")
                return []

            try:
                resp = await self._backend.get(route("connections", user_id=user_id))
            except UnreachableBackendError as e:
                logger.warning(f"Failed to fetch connections: {e}")
                return []

            if resp.status_code == 404:
                logger.info("No connections endpoint for user, treating as empty")
                return []
            if not resp.is_success:
                logger.warning(
                    f"Connection fetch failed with status {resp.status_code}: {error_text(resp)}"
                )
                return []

            try:
                body = json_body(resp)
            except ValueError as e:
                logger.warning(f"Ignoring connection list: {e}")
                return []
            if not isinstance(body, list):
                logger.warning(f"Connection list is not an array: {type(body).__name__}")
                return []

            connections = []
            for item in body:
                if not isinstance(item, dict):
                    logger.warning(f"Skipping malformed connection entry: {item!r}")
                    continue
                connections.append(Connection.from_api(item))

            if user_id == self._user_id:
                await self._refresh_cache(connections)
            return connections

    async def _refresh_cache(self, connections: list[Connection]) -> None:
        for conn in connections:
            broker = self._registry.find_broker(conn.broker_id)
            if broker is None:
                continue
            async with self._locks.for_broker(broker.id):
                cached = self._connections.get(broker.id)
                if cached is None:
                    cached = Connection(broker_id=broker.id, user_id=self._user_id)
                    self._connections[broker.id] = cached
                _merge_listed(cached, conn)
                cached.broker_name = conn.broker_name or broker.display_name

    # =========================================================================
    # Connect / Disconnect
    # =========================================================================

    async def connect(
        self,
        broker_id: str,
        credentials: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Connect to a broker.

        Args:
            broker_id: Catalog id of the broker.
            credentials: UI payload (``apiKey``/``apiSecret`` or
                ``username``/``password``/``totp``). Ignored for OAuth
                brokers; required for every other auth type.

        Returns:
            True when the backend acknowledged the handshake. For OAuth
            brokers this means the authorization page was opened; the
            connection stays ``connecting`` until ``complete_oauth``.
        """
        broker = self._registry.find_broker(broker_id)
        if broker is None:
            self._notifier.error(f"Broker not found: {broker_id}", broker_id=broker_id)
            return False

        async with self._locks.for_broker(broker_id):
            with OperationContext("connect", user_id=self._user_id, broker_id=broker_id):
                try:
                    credential = self._credentials.store_credential(broker_id, credentials)
                except ConfigurationError as e:
                    logger.warning(f"Rejected credentials for {broker_id}: {e.message}")
                    self._notifier.error(e.user_message, broker_id=broker_id)
                    return False

                conn = self._connection_for(broker)
                conn.begin_attempt()

                try:
                    await self._backend.ensure_available(broker_id)
                    if broker.auth_type is AuthType.OAUTH:
                        await self._start_oauth(broker)
                        return True
                    await self._submit_credentials(broker, conn, credential)
                except BrokerConnectError as e:
                    logger.error(f"Connection to {broker_id} failed: {e.message}")
                    conn.mark_error(e.message)
                    self._notifier.error(
                        f"Failed to connect to {broker.display_name}: {e.user_message}",
                        broker_id=broker_id,
                    )
                    return False

                self._notifier.success(
                    f"Connected to {broker.display_name}", broker_id=broker_id
                )
                return True

    async def _start_oauth(self, broker: BrokerDescriptor) -> None:
        resp = await self._backend.post(
            route("oauth_init", broker_id=broker.id), {"userId": self._user_id}
        )
        if not resp.is_success:
            raise AuthenticationFailure(
                f"OAuth initialization failed: {error_text(resp)}", broker_id=broker.id
            )
        try:
            body = json_body(resp)
        except ValueError as e:
            raise AuthenticationFailure(
                f"OAuth initialization failed: {e}", broker_id=broker.id
            ) from e

        auth_url = body.get("authUrl") if isinstance(body, dict) else None
        if not auth_url:
            raise AuthenticationFailure(
                "OAuth initialization returned no authorization URL", broker_id=broker.id
            )

        try:
            result = self._opener(auth_url)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            raise AuthenticationFailure(
                f"Could not open authorization page: {e}", broker_id=broker.id
            ) from e
        logger.info(f"Opened authorization page for {broker.id}")
        self._notifier.info(
            f"Complete authorization for {broker.display_name} in the opened window",
            broker_id=broker.id,
        )

    async def _submit_credentials(
        self,
        broker: BrokerDescriptor,
        conn: Connection,
        credential: StoredCredential,
    ) -> None:
        payload = {"userId": self._user_id, **credential.to_payload()}
        resp = await self._backend.post(route("connect", broker_id=broker.id), payload)
        if not resp.is_success:
            raise AuthenticationFailure(error_text(resp), broker_id=broker.id)
        try:
            body = json_body(resp)
        except ValueError as e:
            raise AuthenticationFailure(str(e), broker_id=broker.id) from e

        if not isinstance(body, dict) or body.get("success") is not True:
            message = body.get("error") if isinstance(body, dict) else None
            raise AuthenticationFailure(
                message or "Broker did not acknowledge the connection", broker_id=broker.id
            )

        details = body.get("connection") if isinstance(body.get("connection"), dict) else {}
        conn.mark_connected(
            access_token=details.get("accessToken") or _issue_session_token(broker.id),
            refresh_token=details.get("refreshToken"),
            expires_at=parse_timestamp(details.get("expiresAt")),
        )
        if details.get("id"):
            conn.id = str(details["id"])

    async def complete_oauth(
        self,
        broker_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[float] = None,
    ) -> bool:
        """Finish a pending OAuth connection from the authorization callback.

        Returns:
            True if the connection moved to ``connected``.
        """
        broker = self._registry.find_broker(broker_id)
        if broker is None:
            self._notifier.error(f"Broker not found: {broker_id}", broker_id=broker_id)
            return False

        async with self._locks.for_broker(broker_id):
            with OperationContext("complete_oauth", user_id=self._user_id, broker_id=broker_id):
                conn = self._connections.get(broker_id)
                if conn is None or conn.status is not ConnectionStatus.CONNECTING:
                    logger.warning(f"No pending authorization for {broker_id}")
                    self._notifier.warning(
                        f"No pending authorization for {broker.display_name}",
                        broker_id=broker_id,
                    )
                    return False

                expires_at = None
                if expires_in:
                    try:
                        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
                    except (OverflowError, ValueError, TypeError):
                        logger.warning(f"Ignoring unusable token lifetime for {broker_id}: {expires_in!r}")
                try:
                    conn.mark_connected(access_token, refresh_token, expires_at)
                except BrokerConnectError as e:
                    conn.mark_error(e.message)
                    self._notifier.error(
                        f"Failed to connect to {broker.display_name}: {e.user_message}",
                        broker_id=broker_id,
                    )
                    return False

                self._notifier.success(
                    f"Connected to {broker.display_name}", broker_id=broker_id
                )
                return True

    async def disconnect(self, broker_id: str) -> bool:
        """Tear down a broker connection.

        Open streams of the broker are closed whatever the backend answers.
        """
        broker = self._registry.find_broker(broker_id)
        if broker is None:
            self._notifier.error(f"Broker not found: {broker_id}", broker_id=broker_id)
            return False

        async with self._locks.for_broker(broker_id):
            with OperationContext("disconnect", user_id=self._user_id, broker_id=broker_id):
                try:
                    resp = await self._backend.post(
                        route("disconnect", broker_id=broker_id), {"userId": self._user_id}
                    )
                    if not resp.is_success:
                        raise BrokerConnectError(error_text(resp), broker_id=broker_id)
                except BrokerConnectError as e:
                    logger.error(f"Disconnect from {broker_id} failed: {e.message}")
                    self._notifier.error(
                        f"Failed to disconnect from {broker.display_name}",
                        broker_id=broker_id,
                    )
                    return False
                finally:
                    if self._streams is not None:
                        await self._streams.close_streams(broker_id)

                conn = self._connections.get(broker_id)
                if conn is not None:
                    conn.reset()
                self._notifier.success(
                    f"Disconnected from {broker.display_name}", broker_id=broker_id
                )
                return True

    # =========================================================================
    # Portfolio
    # =========================================================================

    async def _fetch_list(self, broker_id: str, route_name: str) -> list[dict]:
        try:
            resp = await self._backend.get(
                route(route_name, broker_id=broker_id), params={"userId": self._user_id}
            )
        except UnreachableBackendError as e:
            logger.warning(f"Failed to fetch {route_name} for {broker_id}: {e}")
            return []
        if not resp.is_success:
            logger.warning(
                f"Fetching {route_name} for {broker_id} failed with status {resp.status_code}"
            )
            return []
        try:
            body = json_body(resp)
        except ValueError as e:
            logger.warning(f"Ignoring {route_name} for {broker_id}: {e}")
            return []
        if not isinstance(body, list):
            return []
        return [item for item in body if isinstance(item, dict)]

    async def get_positions(self, broker_id: str) -> list[Position]:
        """Get open positions reported by a broker. Failures yield []."""
        with OperationContext("get_positions", user_id=self._user_id, broker_id=broker_id):
            positions = []
            for item in await self._fetch_list(broker_id, "positions"):
                try:
                    positions.append(Position.from_api(item))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed position: {e}")
            return positions

    async def get_orders(self, broker_id: str) -> list[Order]:
        """Get orders reported by a broker. Failures yield []."""
        with OperationContext("get_orders", user_id=self._user_id, broker_id=broker_id):
            orders = []
            for item in await self._fetch_list(broker_id, "orders"):
                try:
                    orders.append(Order.from_api(item))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed order: {e}")
            return orders

    async def sync_broker(self, broker_id: str) -> bool:
        """Ask the backend to resync a connected broker's portfolio."""
        broker = self._registry.find_broker(broker_id)
        if broker is None or not self.has_valid_credentials(broker_id):
            self._notifier.warning(
                f"{self._registry.display_name(broker_id)} is not connected",
                broker_id=broker_id,
            )
            return False

        with OperationContext("sync", user_id=self._user_id, broker_id=broker_id):
            try:
                resp = await self._backend.post(
                    route("sync", broker_id=broker_id), {"userId": self._user_id}
                )
                if not resp.is_success:
                    raise BrokerConnectError(error_text(resp), broker_id=broker_id)
                body = json_body(resp)
            except (BrokerConnectError, ValueError) as e:
                logger.error(f"Sync of {broker_id} failed: {e}")
                self._notifier.error(
                    f"Failed to sync {broker.display_name}", broker_id=broker_id
                )
                return False

            synced_at = None
            if isinstance(body, dict):
                synced_at = parse_timestamp(body.get("lastSyncAt"))
            self._connections[broker_id].last_sync_at = synced_at or datetime.now(timezone.utc)
            logger.info(f"Synced {broker_id}")
            return True

    async def sync_all(self) -> dict[str, bool]:
        """Sync every connected broker.

        Returns:
            Dict of broker_id -> sync success.
        """
        results = {}
        for broker_id in self.connected_brokers():
            results[broker_id] = await self.sync_broker(broker_id)
        return results
