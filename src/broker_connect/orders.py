"""Order Router.

Validates order forms locally, submits them to the broker's order
endpoint, and computes advisory pre-trade charge estimates.
"""

from typing import Any, Optional
import logging
import math

from src.broker_connect.config import (
    BrokerFeature,
    ChargeSchedule,
    DEFAULT_CHARGE_SCHEDULE,
    OrderSide,
    OrderType,
    route,
)
from src.broker_connect.exceptions import (
    BrokerConnectError,
    OrderRejected,
    ValidationError,
)
from src.broker_connect.models import ChargeEstimate, Order, OrderRequest, OrderResult
from src.broker_connect.notifications import Notifier
from src.broker_connect.registry import BrokerRegistry
from src.broker_connect.transport import BackendClient, error_text, json_body
from src.logging_config import OperationContext

logger = logging.getLogger(__name__)


def _is_positive(value: Any) -> bool:
    """True for a finite number greater than zero."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


def estimate_charges(
    order_value: float,
    schedule: ChargeSchedule = DEFAULT_CHARGE_SCHEDULE,
) -> ChargeEstimate:
    """Estimate transaction charges for a notional order value.

    Brokerage is a percentage of value capped at a flat fee; GST applies
    to brokerage plus exchange charges. Negative values count as zero.

    Example:
        estimate_charges(100_000).total  # 20 + 100 + 3.45 + 4.221
    """
    value = max(0.0, float(order_value or 0))
    brokerage = min(schedule.brokerage_cap, value * schedule.brokerage_rate)
    exchange_charges = value * schedule.exchange_rate
    return ChargeEstimate(
        brokerage=brokerage,
        stt=value * schedule.stt_rate,
        exchange_charges=exchange_charges,
        gst=schedule.gst_rate * (brokerage + exchange_charges),
    )


class OrderRouter:
    """Routes orders to broker order endpoints.

    Example:
        router = OrderRouter(registry, backend, notifier)
        result = await router.place_order(
            "zerodha",
            OrderRequest(symbol="INFY", quantity=10, order_type=OrderType.LIMIT, price=1500),
        )
        if not result.success:
            print(result.message)
    """

    def __init__(
        self,
        registry: BrokerRegistry,
        backend: BackendClient,
        notifier: Notifier,
        user_id: str = "1",
        schedule: ChargeSchedule = DEFAULT_CHARGE_SCHEDULE,
    ):
        self._registry = registry
        self._backend = backend
        self._notifier = notifier
        self._user_id = user_id
        self._schedule = schedule

    # =========================================================================
    # Estimates
    # =========================================================================

    def estimate_charges(self, order_value: float) -> ChargeEstimate:
        return estimate_charges(order_value, self._schedule)

    def order_value(self, request: OrderRequest, market_price: Optional[float] = None) -> float:
        """Notional value of an order form.

        Market orders are valued at the last quote; other types at their price.
        """
        if request.order_type is OrderType.MARKET:
            price = market_price
        else:
            price = request.price
        return max(0.0, float(request.quantity or 0) * float(price or 0))

    def estimated_total(self, request: OrderRequest, market_price: Optional[float] = None) -> float:
        """Cash impact of an order: buys add charges, sells subtract them."""
        value = self.order_value(request, market_price)
        charges = self.estimate_charges(value).total
        if request.side is OrderSide.BUY:
            return value + charges
        return value - charges

    # =========================================================================
    # Submission
    # =========================================================================

    def validate(self, broker_id: Optional[str], request: OrderRequest) -> None:
        """Check an order form before submission.

        Raises:
            ValidationError: Naming the first offending field.
        """
        if not broker_id:
            raise ValidationError("Please select a broker", fields=["broker"])
        broker = self._registry.find_broker(broker_id)
        if broker is None:
            raise ValidationError(
                f"Broker not found: {broker_id}", fields=["broker"], broker_id=broker_id
            )
        if not broker.features.supports(BrokerFeature.ORDER_PLACEMENT):
            raise ValidationError(
                f"{broker.display_name} does not support order placement",
                fields=["broker"],
                broker_id=broker_id,
            )
        if not request.symbol or not request.symbol.strip():
            raise ValidationError("Please enter a symbol", fields=["symbol"], broker_id=broker_id)
        if not _is_positive(request.quantity):
            raise ValidationError(
                "Please enter a valid quantity", fields=["quantity"], broker_id=broker_id
            )
        if request.order_type.requires_price and not _is_positive(request.price):
            raise ValidationError(
                f"Please enter a price for {request.order_type.value} orders",
                fields=["price"],
                broker_id=broker_id,
            )
        if request.order_type.requires_stop_price and not _is_positive(request.stop_price):
            raise ValidationError(
                f"Please enter a stop price for {request.order_type.value} orders",
                fields=["stop_price"],
                broker_id=broker_id,
            )

    async def place_order(self, broker_id: Optional[str], request: OrderRequest) -> OrderResult:
        """Validate and submit an order.

        Returns:
            OrderResult carrying the acknowledged ``Order`` on success, or a
            message and error code plus the original request on failure.
        """
        with OperationContext("place_order", user_id=self._user_id, broker_id=broker_id or ""):
            try:
                self.validate(broker_id, request)
            except ValidationError as e:
                logger.info(f"Order rejected locally: {e.message}")
                self._notifier.error(e.user_message, broker_id=broker_id)
                return OrderResult(
                    success=False,
                    message=e.user_message,
                    error_code=e.error_code.value,
                    request=request,
                )

            try:
                order = await self._submit(broker_id, request)
            except BrokerConnectError as e:
                logger.error(f"Order for {request.symbol} on {broker_id} failed: {e.message}")
                self._notifier.error(f"Failed to place order: {e.user_message}", broker_id=broker_id)
                return OrderResult(
                    success=False,
                    message=e.user_message,
                    error_code=e.error_code.value,
                    request=request,
                )

            logger.info(
                f"Order placed: {order.side.value} {order.quantity} {order.symbol} "
                f"on {broker_id} (id={order.id}, status={order.status.value})"
            )
            self._notifier.success(
                f"Order placed: {order.side.value.upper()} {order.quantity:g} {order.symbol}",
                broker_id=broker_id,
            )
            return OrderResult(
                success=True,
                order=order,
                message="Order placed",
                request=request,
            )

    async def _submit(self, broker_id: str, request: OrderRequest) -> Order:
        payload = {"userId": self._user_id, **request.to_payload()}
        resp = await self._backend.post(route("orders", broker_id=broker_id), payload)
        if not resp.is_success:
            raise OrderRejected(error_text(resp), broker_id=broker_id)
        try:
            body = json_body(resp)
        except ValueError as e:
            raise OrderRejected(f"Unreadable order acknowledgement: {e}", broker_id=broker_id) from e

        if not isinstance(body, dict) or not body.get("id"):
            message = body.get("error") if isinstance(body, dict) else None
            raise OrderRejected(
                message or "Broker did not acknowledge the order", broker_id=broker_id
            )
        try:
            order = Order.from_api(body)
        except (KeyError, ValueError) as e:
            raise OrderRejected(
                f"Malformed order acknowledgement: {e}", broker_id=broker_id
            ) from e
        if not order.broker_id:
            order.broker_id = broker_id
        return order

