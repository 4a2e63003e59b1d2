"""Market Data Stream Manager.

Live quote and order-update WebSocket streams, at most one of each kind
per broker. Inbound frames are parsed into ``Quote`` / ``Order`` records
and handed to caller callbacks (sync or async). Malformed frames are
dropped; a transport failure closes the stream and notifies the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode
import asyncio
import json
import logging
import random

import websockets
from websockets.exceptions import WebSocketException

from src.broker_connect.config import (
    BrokerDescriptor,
    BrokerFeature,
    StreamConfig,
    StreamKind,
    route,
)
from src.broker_connect.connections import BrokerLocks
from src.broker_connect.credentials import CredentialStore
from src.broker_connect.exceptions import StreamError, UnreachableBackendError
from src.broker_connect.models import Order, Quote
from src.broker_connect.notifications import Notifier
from src.broker_connect.registry import BrokerRegistry
from src.broker_connect.transport import BackendClient
from src.logging_config import OperationContext

logger = logging.getLogger(__name__)

QuoteCallback = Callable[[Quote], Any]
OrderCallback = Callable[[Order], Any]
ErrorCallback = Callable[[StreamError], Any]
Connector = Callable[..., Awaitable[Any]]

# Failures that end a socket: protocol errors, resets, and open timeouts
_TRANSPORT_ERRORS = (WebSocketException, OSError, asyncio.TimeoutError)

_STREAM_LABELS = {
    StreamKind.MARKET_DATA: "Live data stream",
    StreamKind.ORDER_UPDATES: "Order update stream",
}


def compute_reconnect_delay(attempt: int, config: StreamConfig) -> float:
    """Exponential backoff with jitter, capped at ``config.max_delay``."""
    delay = config.base_delay * (2 ** (attempt - 1))
    delay += random.uniform(0, config.jitter_max)
    return min(delay, config.max_delay)


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        logger.error(f"Stream callback error: {e}")


@dataclass
class StreamHandle:
    """An open stream for one broker."""
    broker_id: str
    kind: StreamKind
    url: str
    symbols: tuple[str, ...] = ()
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    messages_received: int = 0
    closed: bool = False
    websocket: Any = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class MarketDataStreamManager:
    """Owns the live streams of a session.

    Example:
        streams = MarketDataStreamManager(registry, credentials, backend, notifier, locks,
                                          stream_base_url="ws://localhost:3001", user_id="1")
        await streams.start_stream("zerodha", ["RELIANCE", "TCS"], on_quote=print)
        ...
        await streams.stop_stream("zerodha")
    """

    def __init__(
        self,
        registry: BrokerRegistry,
        credentials: CredentialStore,
        backend: BackendClient,
        notifier: Notifier,
        locks: Optional[BrokerLocks] = None,
        stream_base_url: str = "ws://localhost:3001",
        user_id: str = "1",
        config: Optional[StreamConfig] = None,
        connector: Optional[Connector] = None,
    ):
        self._registry = registry
        self._credentials = credentials
        self._backend = backend
        self._notifier = notifier
        self._locks = locks or BrokerLocks()
        self._stream_base_url = stream_base_url.rstrip("/")
        self._user_id = user_id
        self._config = config or StreamConfig()
        self._connector = connector or websockets.connect
        self._handles: dict[tuple[str, StreamKind], StreamHandle] = {}

    # =========================================================================
    # Queries
    # =========================================================================

    def is_streaming(self, broker_id: str, kind: StreamKind = StreamKind.MARKET_DATA) -> bool:
        handle = self._handles.get((broker_id, kind))
        return handle is not None and not handle.closed

    def get_handle(
        self, broker_id: str, kind: StreamKind = StreamKind.MARKET_DATA
    ) -> Optional[StreamHandle]:
        return self._handles.get((broker_id, kind))

    def active_streams(self) -> list[StreamHandle]:
        return [h for h in self._handles.values() if not h.closed]

    def stream_url(self, broker: BrokerDescriptor, symbols: Iterable[str]) -> str:
        """Build the live data URL for a broker and symbol list."""
        query = urlencode({"symbols": ",".join(symbols), "userId": self._user_id}, safe=",")
        return f"{self._stream_base_url}{broker.endpoints.live_data}?{query}"

    def order_stream_url(self, broker: BrokerDescriptor) -> str:
        query = urlencode({"userId": self._user_id})
        return f"{self._stream_base_url}{route('order_stream', broker_id=broker.id)}?{query}"

    # =========================================================================
    # Market Data
    # =========================================================================

    async def start_stream(
        self,
        broker_id: str,
        symbols: Iterable[str],
        on_quote: QuoteCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> bool:
        """Open a live quote stream, replacing any previous one for the broker.

        Args:
            broker_id: Catalog id of the broker.
            symbols: Symbols to subscribe to.
            on_quote: Called with each parsed ``Quote``.
            on_error: Called with the ``StreamError`` if the stream fails.

        Returns:
            True if the stream was opened.
        """
        symbols = tuple(dict.fromkeys(s.strip() for s in symbols if s and s.strip()))
        broker = self._check_preconditions(broker_id, BrokerFeature.LIVE_DATA)
        if broker is None:
            return False
        if not symbols:
            self._notifier.warning("Select at least one symbol to stream", broker_id=broker_id)
            return False

        async def dispatch(raw: Any) -> None:
            try:
                quotes = Quote.parse_message(raw)
            except (ValueError, TypeError, OverflowError) as e:
                logger.warning(f"Dropping malformed quote message from {broker_id}: {e}")
                return
            for quote in quotes:
                await _invoke(on_quote, quote)

        return await self._open_stream(
            broker,
            StreamKind.MARKET_DATA,
            self.stream_url(broker, symbols),
            dispatch,
            on_error,
            symbols=symbols,
        )

    async def stop_stream(self, broker_id: str) -> bool:
        """Close a broker's quote stream. Stopping a closed stream is a no-op.

        Returns:
            True if an open stream was closed.
        """
        return await self._close(broker_id, StreamKind.MARKET_DATA)

    # =========================================================================
    # Order Updates
    # =========================================================================

    async def start_order_stream(
        self,
        broker_id: str,
        on_order: OrderCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> bool:
        """Open an order-update stream delivering ``Order`` records."""
        broker = self._check_preconditions(broker_id, BrokerFeature.ORDER_PLACEMENT)
        if broker is None:
            return False

        async def dispatch(raw: Any) -> None:
            try:
                if isinstance(raw, (bytes, bytearray)):
                    raw = raw.decode("utf-8")
                payload = json.loads(raw)
                items = payload if isinstance(payload, list) else [payload]
                orders = [Order.from_api(item) for item in items]
            except (KeyError, ValueError, TypeError, AttributeError, OverflowError) as e:
                logger.warning(f"Dropping malformed order update from {broker_id}: {e}")
                return
            for order in orders:
                await _invoke(on_order, order)

        return await self._open_stream(
            broker,
            StreamKind.ORDER_UPDATES,
            self.order_stream_url(broker),
            dispatch,
            on_error,
        )

    async def stop_order_stream(self, broker_id: str) -> bool:
        return await self._close(broker_id, StreamKind.ORDER_UPDATES)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close_streams(self, broker_id: str) -> int:
        """Close every stream of a broker without taking its lock.

        Returns:
            Number of streams closed.
        """
        closed = 0
        for kind in StreamKind:
            if await self._close(broker_id, kind):
                closed += 1
        return closed

    async def close_all(self) -> None:
        for broker_id, kind in list(self._handles):
            await self._close(broker_id, kind)

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_preconditions(
        self, broker_id: str, feature: BrokerFeature
    ) -> Optional[BrokerDescriptor]:
        broker = self._registry.find_broker(broker_id)
        if broker is None:
            self._notifier.error(f"Broker not found: {broker_id}", broker_id=broker_id)
            return None
        if not self._credentials.has_credential(broker_id):
            self._notifier.error(
                f"Please configure {broker.display_name} credentials first",
                broker_id=broker_id,
            )
            return None
        if not broker.features.supports(feature):
            self._notifier.error(
                f"{broker.display_name} does not support {feature.value.replace('_', ' ')}",
                broker_id=broker_id,
            )
            return None
        return broker

    async def _open_stream(
        self,
        broker: BrokerDescriptor,
        kind: StreamKind,
        url: str,
        dispatch: Callable[[Any], Awaitable[None]],
        on_error: Optional[ErrorCallback],
        symbols: tuple[str, ...] = (),
    ) -> bool:
        async with self._locks.for_broker(broker.id):
            with OperationContext(f"start_{kind.value}", user_id=self._user_id, broker_id=broker.id):
                if not await self._backend.check_health():
                    self._notifier.error(
                        UnreachableBackendError().user_message, broker_id=broker.id
                    )
                    return False

                await self._close(broker.id, kind)

                try:
                    websocket = await self._connect(url)
                except _TRANSPORT_ERRORS as e:
                    error = StreamError(f"Could not open stream: {e}", broker_id=broker.id)
                    logger.error(f"{error.error_code.value}: {error.message}")
                    self._notifier.error(
                        f"Failed to start {_STREAM_LABELS[kind].lower()} for {broker.display_name}",
                        broker_id=broker.id,
                    )
                    if on_error is not None:
                        await _invoke(on_error, error)
                    return False

                handle = StreamHandle(
                    broker_id=broker.id, kind=kind, url=url, symbols=symbols, websocket=websocket,
                )
                self._handles[(broker.id, kind)] = handle
                handle.task = asyncio.create_task(self._pump(handle, dispatch, on_error))
                logger.info(f"{_STREAM_LABELS[kind]} opened for {broker.id}")
                return True

    async def _connect(self, url: str) -> Any:
        return await self._connector(url, open_timeout=self._config.open_timeout)

    async def _consume(
        self,
        handle: StreamHandle,
        dispatch: Callable[[Any], Awaitable[None]],
    ) -> StreamError:
        try:
            async for raw in handle.websocket:
                handle.messages_received += 1
                await dispatch(raw)
        except _TRANSPORT_ERRORS as e:
            return StreamError(f"Stream failed: {e}", broker_id=handle.broker_id)
        return StreamError("Stream closed by server", broker_id=handle.broker_id)

    async def _pump(
        self,
        handle: StreamHandle,
        dispatch: Callable[[Any], Awaitable[None]],
        on_error: Optional[ErrorCallback],
    ) -> None:
        try:
            error = await self._run(handle, dispatch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected {handle.kind.value} stream error for {handle.broker_id}")
            error = StreamError(f"Stream failed: {e}", broker_id=handle.broker_id)
        if error is None or handle.closed:
            return
        await self._fail(handle, error, on_error)

    async def _run(
        self,
        handle: StreamHandle,
        dispatch: Callable[[Any], Awaitable[None]],
    ) -> Optional[StreamError]:
        """Consume the socket, reconnecting per policy; None once closed locally."""
        attempt = 0
        seen = 0
        while True:
            error = await self._consume(handle, dispatch)
            if handle.closed:
                return None
            if handle.messages_received > seen:
                attempt = 0
                seen = handle.messages_received

            reopened = False
            while not reopened and attempt < self._config.reconnect_attempts:
                attempt += 1
                delay = compute_reconnect_delay(attempt, self._config)
                logger.warning(
                    f"{error.message} for {handle.broker_id}, reconnecting in {delay:.1f}s "
                    f"(attempt {attempt}/{self._config.reconnect_attempts})"
                )
                await asyncio.sleep(delay)
                if handle.closed:
                    return None
                try:
                    handle.websocket = await self._connect(handle.url)
                    reopened = True
                except _TRANSPORT_ERRORS as e:
                    error = StreamError(f"Reconnect failed: {e}", broker_id=handle.broker_id)
            if not reopened:
                return error

    async def _fail(
        self,
        handle: StreamHandle,
        error: StreamError,
        on_error: Optional[ErrorCallback],
    ) -> None:
        handle.closed = True
        key = (handle.broker_id, handle.kind)
        if self._handles.get(key) is handle:
            del self._handles[key]

        logger.error(f"{error.error_code.value} on {handle.broker_id}: {error.message}")
        self._notifier.error(
            f"{_STREAM_LABELS[handle.kind]} for "
            f"{self._registry.display_name(handle.broker_id)} disconnected",
            broker_id=handle.broker_id,
        )
        if on_error is not None:
            await _invoke(on_error, error)

    async def _close(self, broker_id: str, kind: StreamKind) -> bool:
        handle = self._handles.pop((broker_id, kind), None)
        if handle is None:
            return False

        handle.closed = True
        if handle.websocket is not None:
            try:
                await handle.websocket.close()
            except _TRANSPORT_ERRORS as e:
                logger.debug(f"Error closing {kind.value} stream for {broker_id}: {e}")

        task = handle.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info(f"{_STREAM_LABELS[kind]} closed for {broker_id}")
        return True
