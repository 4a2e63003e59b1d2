"""Structured Logging.

Console or JSON logging with per-operation context (operation id,
user id, broker id) for broker connectivity.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import OperationContext, generate_operation_id, get_context_dict
from src.logging_config.setup import (
    ConsoleFormatter,
    StructuredFormatter,
    configure_logging,
    get_logger,
)

__all__ = [
    "ConsoleFormatter",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "OperationContext",
    "StructuredFormatter",
    "configure_logging",
    "generate_operation_id",
    "get_context_dict",
    "get_logger",
]
