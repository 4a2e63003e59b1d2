"""Broker Connect Data Models.

Dataclasses for connections, quotes, orders, positions, and charges.
Wire payloads use the backend's camelCase keys; the ``from_api``
constructors and ``to_payload`` methods translate at the boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import json
import logging
import uuid

from src.broker_connect.config import (
    ConnectionStatus,
    Exchange,
    OrderSide,
    OrderStatus,
    OrderType,
    OrderValidity,
    ProductType,
)
from src.broker_connect.exceptions import InvalidStatusTransition

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _enum_or_default(enum_cls, value: Any, default):
    """Parse an enum value, falling back to ``default`` for unknown values."""
    if value is None or value == "":
        return default
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value {value!r}, using {default.value}")
        return default


# =============================================================================
# Connection Models
# =============================================================================

# Allowed status changes; a connect attempt runs disconnected -> connecting -> connected|error
_STATUS_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset({
        ConnectionStatus.CONNECTED,
        ConnectionStatus.ERROR,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.CONNECTED: frozenset({
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
    }),
    ConnectionStatus.ERROR: frozenset({
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
    }),
}


@dataclass
class Connection:
    """Local record of the authentication state against one broker."""
    broker_id: str
    broker_name: str = ""
    user_id: str = ""
    id: str = field(default_factory=_new_id)
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED

    # Tokens
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    # State
    last_sync_at: Optional[datetime] = None
    is_active: bool = False
    last_error: Optional[str] = None

    # Timestamps
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return _utc_now() >= self.expires_at

    def can_transition_to(self, status: ConnectionStatus) -> bool:
        return status in _STATUS_TRANSITIONS[self.status]

    def transition_to(self, status: ConnectionStatus) -> None:
        """Move to ``status``, enforcing the transition table."""
        if not self.can_transition_to(status):
            raise InvalidStatusTransition(
                f"Cannot move {self.broker_id} from {self.status.value} to {status.value}",
                broker_id=self.broker_id,
            )
        self.status = status
        self.updated_at = _utc_now()

    def begin_attempt(self) -> None:
        """Enter ``connecting``; a pending attempt is restarted in place."""
        self.last_error = None
        if self.status is ConnectionStatus.CONNECTING:
            self.updated_at = _utc_now()
            return
        self.transition_to(ConnectionStatus.CONNECTING)

    def mark_connected(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        if not access_token:
            raise InvalidStatusTransition(
                f"A connected {self.broker_id} connection needs an access token",
                broker_id=self.broker_id,
            )
        self.transition_to(ConnectionStatus.CONNECTED)
        self.access_token = access_token
        self.refresh_token = refresh_token or self.refresh_token
        self.expires_at = expires_at
        self.is_active = True
        self.last_error = None

    def mark_error(self, message: str) -> None:
        self.transition_to(ConnectionStatus.ERROR)
        self.is_active = False
        self.last_error = message

    def reset(self) -> None:
        """Return to ``disconnected`` and drop tokens."""
        if self.status is not ConnectionStatus.DISCONNECTED:
            self.transition_to(ConnectionStatus.DISCONNECTED)
        self.access_token = None
        self.refresh_token = None
        self.expires_at = None
        self.is_active = False

    @classmethod
    def from_api(cls, data: dict) -> "Connection":
        try:
            status = ConnectionStatus(data.get("status", "disconnected"))
        except ValueError:
            status = ConnectionStatus.ERROR
        return cls(
            id=str(data.get("id") or _new_id()),
            user_id=str(data.get("userId", "")),
            broker_id=str(data.get("brokerId", "")),
            broker_name=data.get("brokerName", ""),
            status=status,
            access_token=data.get("accessToken") or None,
            refresh_token=data.get("refreshToken") or None,
            expires_at=parse_timestamp(data.get("expiresAt")),
            last_sync_at=parse_timestamp(data.get("lastSyncAt")),
            is_active=bool(data.get("isActive", status is ConnectionStatus.CONNECTED)),
            created_at=parse_timestamp(data.get("createdAt")) or _utc_now(),
            updated_at=parse_timestamp(data.get("updatedAt")) or _utc_now(),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "brokerId": self.broker_id,
            "brokerName": self.broker_name,
            "status": self.status.value,
            "expiresAt": _isoformat(self.expires_at),
            "lastSyncAt": _isoformat(self.last_sync_at),
            "isActive": self.is_active,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


# =============================================================================
# Market Data Models
# =============================================================================

_QUOTE_REQUIRED = ("symbol", "price")


def _volume(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except OverflowError as e:
        raise ValueError(f"Quote volume out of range: {value}") from e


@dataclass
class Quote:
    """Latest market data for a symbol."""
    symbol: str
    price: float
    change: float = 0.0
    change_percent: float = 0.0
    volume: int = 0
    high: float = 0.0
    low: float = 0.0
    open: float = 0.0
    timestamp: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "Quote":
        """Build a quote from a decoded stream message.

        Raises:
            ValueError: If required fields are missing or not numeric.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Quote message must be an object, got {type(data).__name__}")
        missing = [key for key in _QUOTE_REQUIRED if data.get(key) in (None, "")]
        if missing:
            raise ValueError(f"Quote message missing {', '.join(missing)}")
        return cls(
            symbol=str(data["symbol"]),
            price=float(data["price"]),
            change=float(data.get("change", 0) or 0),
            change_percent=float(data.get("changePercent", 0) or 0),
            volume=_volume(data.get("volume")),
            high=float(data.get("high", 0) or 0),
            low=float(data.get("low", 0) or 0),
            open=float(data.get("open", 0) or 0),
            timestamp=str(data.get("timestamp", "")),
        )

    @classmethod
    def parse_message(cls, raw: Any) -> list["Quote"]:
        """Decode a raw stream frame holding one quote or an array of quotes."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
        items = payload if isinstance(payload, list) else [payload]
        return [cls.from_api(item) for item in items]


# =============================================================================
# Order Models
# =============================================================================

@dataclass
class OrderRequest:
    """Order form submitted by the user."""
    symbol: str
    quantity: float
    side: OrderSide = OrderSide.BUY
    order_type: OrderType = OrderType.MARKET
    price: Optional[float] = None
    stop_price: Optional[float] = None
    validity: OrderValidity = OrderValidity.DAY
    product: ProductType = ProductType.MIS
    exchange: Exchange = Exchange.NSE

    def to_payload(self) -> dict:
        payload = {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "quantity": self.quantity,
            "validity": self.validity.value,
            "product": self.product.value,
            "exchange": self.exchange.value,
        }
        if self.price is not None:
            payload["price"] = self.price
        if self.stop_price is not None:
            payload["stopPrice"] = self.stop_price
        return payload


@dataclass
class Order:
    """Broker-acknowledged order."""
    id: str = field(default_factory=_new_id)
    broker_id: str = ""
    user_id: str = ""
    broker_order_id: Optional[str] = None

    # Order details
    symbol: str = ""
    side: OrderSide = OrderSide.BUY
    order_type: OrderType = OrderType.MARKET
    quantity: float = 0.0
    price: Optional[float] = None
    stop_price: Optional[float] = None

    # Status
    status: OrderStatus = OrderStatus.PENDING
    filled_quantity: float = 0.0
    average_price: Optional[float] = None

    validity: OrderValidity = OrderValidity.DAY
    product: ProductType = ProductType.MIS
    exchange: Exchange = Exchange.NSE

    # Timestamps
    order_time: datetime = field(default_factory=_utc_now)
    update_time: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict) -> "Order":
        return cls(
            id=str(data["id"]),
            broker_id=str(data.get("brokerId", "")),
            user_id=str(data.get("userId", "")),
            broker_order_id=data.get("brokerOrderId"),
            symbol=str(data.get("symbol", "")),
            side=_enum_or_default(OrderSide, data.get("side"), OrderSide.BUY),
            order_type=_enum_or_default(OrderType, data.get("type"), OrderType.MARKET),
            quantity=float(data.get("quantity", 0) or 0),
            price=_optional_float(data.get("price")),
            stop_price=_optional_float(data.get("stopPrice")),
            status=_enum_or_default(OrderStatus, data.get("status"), OrderStatus.PENDING),
            filled_quantity=float(data.get("filledQuantity", 0) or 0),
            average_price=_optional_float(data.get("averagePrice")),
            validity=_enum_or_default(OrderValidity, data.get("validity"), OrderValidity.DAY),
            product=_enum_or_default(ProductType, data.get("product"), ProductType.MIS),
            exchange=_enum_or_default(Exchange, data.get("exchange"), Exchange.NSE),
            order_time=parse_timestamp(data.get("orderTime")) or _utc_now(),
            update_time=parse_timestamp(data.get("updateTime")),
        )


@dataclass
class OrderResult:
    """Result of an order submission."""
    success: bool
    order: Optional[Order] = None
    message: str = ""
    error_code: Optional[str] = None
    request: Optional[OrderRequest] = None
    submitted_at: datetime = field(default_factory=_utc_now)


@dataclass
class ChargeEstimate:
    """Estimated transaction charges for an order value."""
    brokerage: float = 0.0
    stt: float = 0.0
    exchange_charges: float = 0.0
    gst: float = 0.0

    @property
    def total(self) -> float:
        return self.brokerage + self.stt + self.exchange_charges + self.gst

    def to_dict(self) -> dict:
        return {
            "brokerage": self.brokerage,
            "stt": self.stt,
            "exchangeCharges": self.exchange_charges,
            "gst": self.gst,
            "total": self.total,
        }


# =============================================================================
# Position Models
# =============================================================================

@dataclass
class Position:
    """Open position reported by a broker."""
    symbol: str
    broker_id: str = ""
    id: str = field(default_factory=_new_id)
    quantity: float = 0.0
    average_price: float = 0.0
    current_price: float = 0.0
    pnl: float = 0.0
    pnl_percent: float = 0.0
    product: ProductType = ProductType.MIS
    exchange: Exchange = Exchange.NSE
    last_updated: datetime = field(default_factory=_utc_now)

    @classmethod
    def from_api(cls, data: dict) -> "Position":
        return cls(
            id=str(data.get("id") or _new_id()),
            broker_id=str(data.get("brokerId", "")),
            symbol=str(data.get("symbol", "")),
            quantity=float(data.get("quantity", 0) or 0),
            average_price=float(data.get("averagePrice", 0) or 0),
            current_price=float(data.get("currentPrice", 0) or 0),
            pnl=float(data.get("pnl", 0) or 0),
            pnl_percent=float(data.get("pnlPercent", 0) or 0),
            product=_enum_or_default(ProductType, data.get("product"), ProductType.MIS),
            exchange=_enum_or_default(Exchange, data.get("exchange"), Exchange.NSE),
            last_updated=parse_timestamp(data.get("lastUpdated")) or _utc_now(),
        )
