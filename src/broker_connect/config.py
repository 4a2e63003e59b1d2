"""Broker Connect Configuration.

Enums, capability records, the broker catalog, and backend route
templates for broker connectivity.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# =============================================================================
# Enums
# =============================================================================

class AuthType(str, Enum):
    """How a broker authenticates the user."""
    OAUTH = "oauth"
    API_KEY = "api_key"
    CREDENTIALS = "credentials"  # username + password (+ TOTP)


class BrokerFeature(str, Enum):
    """Capabilities a broker may expose."""
    LIVE_DATA = "live_data"
    ORDER_PLACEMENT = "order_placement"
    PORTFOLIO_SYNC = "portfolio_sync"
    OPTIONS_TRADING = "options_trading"


class ConnectionStatus(str, Enum):
    """Broker connection status."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class OrderSide(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type."""
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    STOP_LIMIT = "stop_limit"

    @property
    def requires_price(self) -> bool:
        return self is not OrderType.MARKET

    @property
    def requires_stop_price(self) -> bool:
        return self in (OrderType.STOP_LOSS, OrderType.STOP_LIMIT)


class OrderStatus(str, Enum):
    """Order status as reported by the broker."""
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    PARTIAL = "partial"


class OrderValidity(str, Enum):
    """Time in force."""
    DAY = "day"
    IOC = "ioc"  # Immediate or cancel
    GTC = "gtc"  # Good til cancelled


class ProductType(str, Enum):
    """Product type."""
    MIS = "mis"  # Intraday
    CNC = "cnc"  # Delivery
    NRML = "nrml"  # Carry-forward derivatives


class Exchange(str, Enum):
    """Exchange segment."""
    NSE = "NSE"
    BSE = "BSE"
    MCX = "MCX"
    NCDEX = "NCDEX"


class StreamKind(str, Enum):
    """Kinds of streaming channels held per broker."""
    MARKET_DATA = "market_data"
    ORDER_UPDATES = "order_updates"


# =============================================================================
# Broker Descriptors
# =============================================================================

@dataclass(frozen=True)
class BrokerFeatures:
    """Capability record of a broker."""
    live_data: bool = True
    order_placement: bool = True
    portfolio_sync: bool = True
    options_trading: bool = False

    def supports(self, feature: BrokerFeature) -> bool:
        return bool(getattr(self, feature.value))


@dataclass(frozen=True)
class BrokerEndpoints:
    """Backend path templates for a broker."""
    auth: str
    orders: str
    positions: str
    live_data: str

    @classmethod
    def for_alias(cls, alias: str) -> "BrokerEndpoints":
        base = f"/api/brokers/{alias}"
        return cls(
            auth=f"{base}/auth",
            orders=f"{base}/orders",
            positions=f"{base}/positions",
            live_data=f"{base}/stream",
        )


@dataclass(frozen=True)
class BrokerDescriptor:
    """Static description of a supported broker."""
    id: str
    display_name: str
    auth_type: AuthType
    endpoints: BrokerEndpoints
    features: BrokerFeatures = field(default_factory=BrokerFeatures)
    description: str = ""
    is_active: bool = True

    @property
    def name(self) -> str:
        return self.id

    @property
    def requires_credentials(self) -> bool:
        """True when the user must supply secrets before connecting."""
        return self.auth_type is not AuthType.OAUTH


# Credential fields each auth type must carry (UI payload keys)
REQUIRED_CREDENTIAL_FIELDS: dict[AuthType, tuple[str, ...]] = {
    AuthType.OAUTH: (),
    AuthType.API_KEY: ("apiKey", "apiSecret"),
    AuthType.CREDENTIALS: ("username", "password"),
}


_ALL_FEATURES = BrokerFeatures(
    live_data=True, order_placement=True, portfolio_sync=True, options_trading=True,
)


BROKER_CATALOG: tuple[BrokerDescriptor, ...] = (
    BrokerDescriptor(
        id="exness",
        display_name="Exness",
        description="Global forex and CFD broker with competitive spreads",
        auth_type=AuthType.OAUTH,
        features=BrokerFeatures(options_trading=False),
        endpoints=BrokerEndpoints.for_alias("exness"),
    ),
    BrokerDescriptor(
        id="delta_exchange",
        display_name="Delta Exchange",
        description="Crypto derivatives trading platform",
        auth_type=AuthType.API_KEY,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("delta"),
    ),
    BrokerDescriptor(
        id="zerodha",
        display_name="Zerodha Kite",
        description="India's largest stock broker",
        auth_type=AuthType.OAUTH,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("zerodha"),
    ),
    BrokerDescriptor(
        id="fyers",
        display_name="Fyers",
        description="Technology-driven stock broker",
        auth_type=AuthType.OAUTH,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("fyers"),
    ),
    BrokerDescriptor(
        id="angel_one",
        display_name="Angel One SmartAPI",
        description="Full-service stock broker with SmartAPI",
        auth_type=AuthType.CREDENTIALS,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("angel"),
    ),
    BrokerDescriptor(
        id="kotak_neo",
        display_name="Kotak Securities Neo",
        description="Kotak Securities Neo API platform",
        auth_type=AuthType.OAUTH,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("kotak"),
    ),
    BrokerDescriptor(
        id="dhan",
        display_name="Dhan",
        description="Modern trading platform with advanced features",
        auth_type=AuthType.API_KEY,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("dhan"),
    ),
    BrokerDescriptor(
        id="upstox",
        display_name="Upstox",
        description="Technology-first stock broker",
        auth_type=AuthType.OAUTH,
        features=_ALL_FEATURES,
        endpoints=BrokerEndpoints.for_alias("upstox"),
    ),
)


# =============================================================================
# Backend Routes
# =============================================================================

BACKEND_ROUTES = {
    "connections": "/api/brokers/connections/{user_id}",
    "oauth_init": "/api/brokers/{broker_id}/oauth/init",
    "connect": "/api/brokers/{broker_id}/connect",
    "disconnect": "/api/brokers/{broker_id}/disconnect",
    "orders": "/api/brokers/{broker_id}/orders",
    "positions": "/api/brokers/{broker_id}/positions",
    "sync": "/api/brokers/{broker_id}/sync",
    "order_stream": "/api/brokers/{broker_id}/orders/stream",
}


def route(name: str, **params: str) -> str:
    """Format a backend route template."""
    return BACKEND_ROUTES[name].format(**params)


# =============================================================================
# Charges
# =============================================================================

@dataclass(frozen=True)
class ChargeSchedule:
    """Fixed-rate charge schedule used for pre-trade estimates."""
    brokerage_rate: float = 0.0003
    brokerage_cap: float = 20.0
    stt_rate: float = 0.001
    exchange_rate: float = 0.0000345
    gst_rate: float = 0.18


DEFAULT_CHARGE_SCHEDULE = ChargeSchedule()


# =============================================================================
# Streaming
# =============================================================================

@dataclass
class StreamConfig:
    """Reconnect policy for streaming channels.

    ``reconnect_attempts == 0`` keeps a dropped stream closed.
    """
    reconnect_attempts: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_max: float = 0.5
    open_timeout: Optional[float] = 10.0
