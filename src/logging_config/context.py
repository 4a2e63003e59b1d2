"""Operation Context.

Binds an operation id, the acting user, and the broker being
operated on to every log entry emitted inside a broker operation.
Context is stored in contextvars so concurrent asyncio tasks keep
their own values.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


_operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")
_operation_var: ContextVar[str] = ContextVar("operation", default="")
_user_id_var: ContextVar[str] = ContextVar("user_id", default="")
_broker_id_var: ContextVar[str] = ContextVar("broker_id", default="")


def generate_operation_id() -> str:
    return uuid.uuid4().hex[:12]


def get_operation_id() -> str:
    return _operation_id_var.get()


def get_broker_id() -> str:
    return _broker_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get the bound context as a dictionary for log records."""
    ctx = {}
    for key, var in (
        ("operation_id", _operation_id_var),
        ("operation", _operation_var),
        ("user_id", _user_id_var),
        ("broker_id", _broker_id_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    return ctx


@dataclass
class OperationContext:
    """Context manager scoping log context to one broker operation.

    Nested contexts restore the outer values on exit.

    Example:
        with OperationContext("connect", user_id="1", broker_id="zerodha"):
            logger.info("starting handshake")  # carries broker_id=zerodha
    """

    operation: str
    user_id: str = ""
    broker_id: str = ""
    operation_id: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _tokens: list[tuple[ContextVar, Token]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.operation_id:
            self.operation_id = generate_operation_id()

    def __enter__(self) -> "OperationContext":
        self._tokens = [
            (_operation_id_var, _operation_id_var.set(self.operation_id)),
            (_operation_var, _operation_var.set(self.operation)),
            (_user_id_var, _user_id_var.set(self.user_id)),
            (_broker_id_var, _broker_id_var.set(self.broker_id)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000
