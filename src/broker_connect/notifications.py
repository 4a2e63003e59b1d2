"""User Notifications.

Collects the user-facing messages produced by broker operations
(the toasts of the UI layer) and fans them out to subscribers.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional
import logging
import uuid

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    """Notification severity."""
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
}


@dataclass
class Notification:
    """A message for the user."""
    level: NotificationLevel
    message: str
    broker_id: Optional[str] = None
    notification_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationCallback = Callable[[Notification], None]


class Notifier:
    """Publishes notifications to subscribers and keeps a bounded history.

    Example:
        notifier = Notifier()
        notifier.subscribe(lambda n: print(n.level.value, n.message))
        notifier.error("Failed to place order", broker_id="zerodha")
    """

    def __init__(self, max_history: int = 200):
        self._history: deque[Notification] = deque(maxlen=max_history)
        self._subscribers: list[NotificationCallback] = []

    def subscribe(self, callback: NotificationCallback) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def notify(
        self,
        level: NotificationLevel,
        message: str,
        broker_id: Optional[str] = None,
    ) -> Notification:
        notification = Notification(level=level, message=message, broker_id=broker_id)
        self._history.append(notification)
        logger.log(_LOG_LEVELS[level], f"[{level.value}] {message}")
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception as e:
                logger.warning(f"Notification subscriber failed: {e}")
        return notification

    def success(self, message: str, broker_id: Optional[str] = None) -> Notification:
        return self.notify(NotificationLevel.SUCCESS, message, broker_id)

    def info(self, message: str, broker_id: Optional[str] = None) -> Notification:
        return self.notify(NotificationLevel.INFO, message, broker_id)

    def warning(self, message: str, broker_id: Optional[str] = None) -> Notification:
        return self.notify(NotificationLevel.WARNING, message, broker_id)

    def error(self, message: str, broker_id: Optional[str] = None) -> Notification:
        return self.notify(NotificationLevel.ERROR, message, broker_id)

    @property
    def history(self) -> list[Notification]:
        return list(self._history)

    @property
    def last(self) -> Optional[Notification]:
        return self._history[-1] if self._history else None

    def errors(self) -> list[Notification]:
        return [n for n in self._history if n.level is NotificationLevel.ERROR]

    def clear(self) -> None:
        self._history.clear()
