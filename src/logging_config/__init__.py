"""Structured logging and operation tracing.

Provides structured JSON logging, per-operation context (instance, actor,
operation) and performance timing for the StageGate engine.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import OperationContext, generate_operation_id
from src.logging_config.performance import PerformanceTimer, log_performance
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "OperationContext",
    "PerformanceTimer",
    "configure_logging",
    "generate_operation_id",
    "get_logger",
    "log_performance",
]
