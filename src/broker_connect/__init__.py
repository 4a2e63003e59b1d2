"""Broker Connect.

Broker connectivity for the trading journal: a static broker catalog,
credential storage, per-auth-type connection handshakes, live quote and
order-update streams, and order routing with charge estimates.

Supported Brokers:
- Exness, Zerodha Kite, Fyers, Kotak Neo, Upstox (OAuth)
- Delta Exchange, Dhan (API key)
- Angel One SmartAPI (username, password, TOTP)

Example:
    from src.broker_connect import BrokerSession, OrderRequest, OrderType

    async with BrokerSession() as session:
        # Connect an API-key broker
        await session.connections.connect(
            "delta_exchange", {"apiKey": "...", "apiSecret": "..."}
        )

        # Stream quotes
        await session.streams.start_stream(
            "delta_exchange", ["BTCUSD"], on_quote=lambda q: print(q.symbol, q.price)
        )

        # Place an order
        order = OrderRequest(symbol="BTCUSD", quantity=1, order_type=OrderType.LIMIT, price=60000)
        result = await session.orders.place_order("delta_exchange", order)
"""

from src.broker_connect.config import (
    AuthType,
    BrokerFeature,
    ConnectionStatus,
    OrderSide,
    OrderType,
    OrderStatus,
    OrderValidity,
    ProductType,
    Exchange,
    StreamKind,
    BrokerFeatures,
    BrokerEndpoints,
    BrokerDescriptor,
    BROKER_CATALOG,
    REQUIRED_CREDENTIAL_FIELDS,
    ChargeSchedule,
    DEFAULT_CHARGE_SCHEDULE,
    StreamConfig,
)

from src.broker_connect.exceptions import (
    ErrorCode,
    BrokerConnectError,
    ConfigurationError,
    ValidationError,
    UnknownBrokerError,
    UnreachableBackendError,
    AuthenticationFailure,
    StreamError,
    OrderRejected,
    InvalidStatusTransition,
)

from src.broker_connect.models import (
    Connection,
    Quote,
    OrderRequest,
    Order,
    OrderResult,
    ChargeEstimate,
    Position,
)

from src.broker_connect.registry import BrokerRegistry
from src.broker_connect.credentials import (
    OAuthCredential,
    ApiKeyCredential,
    LoginCredential,
    StoredCredential,
    CredentialStore,
)
from src.broker_connect.notifications import Notification, NotificationLevel, Notifier
from src.broker_connect.transport import BackendClient
from src.broker_connect.connections import BrokerLocks, ConnectionManager
from src.broker_connect.streaming import MarketDataStreamManager, StreamHandle
from src.broker_connect.orders import OrderRouter, estimate_charges
from src.broker_connect.session import BrokerSession

__all__ = [
    # Config
    "AuthType",
    "BrokerFeature",
    "ConnectionStatus",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "OrderValidity",
    "ProductType",
    "Exchange",
    "StreamKind",
    "BrokerFeatures",
    "BrokerEndpoints",
    "BrokerDescriptor",
    "BROKER_CATALOG",
    "REQUIRED_CREDENTIAL_FIELDS",
    "ChargeSchedule",
    "DEFAULT_CHARGE_SCHEDULE",
    "StreamConfig",
    # Errors
    "ErrorCode",
    "BrokerConnectError",
    "ConfigurationError",
    "ValidationError",
    "UnknownBrokerError",
    "UnreachableBackendError",
    "AuthenticationFailure",
    "StreamError",
    "OrderRejected",
    "InvalidStatusTransition",
    # Models
    "Connection",
    "Quote",
    "OrderRequest",
    "Order",
    "OrderResult",
    "ChargeEstimate",
    "Position",
    # Components
    "BrokerRegistry",
    "OAuthCredential",
    "ApiKeyCredential",
    "LoginCredential",
    "StoredCredential",
    "CredentialStore",
    "Notification",
    "NotificationLevel",
    "Notifier",
    "BackendClient",
    "BrokerLocks",
    "ConnectionManager",
    "MarketDataStreamManager",
    "StreamHandle",
    "OrderRouter",
    "estimate_charges",
    "BrokerSession",
]
