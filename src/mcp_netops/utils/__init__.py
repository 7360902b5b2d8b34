"""Utility modules."""
from .connection import RETRYABLE_EXCEPTIONS, retry_async, wait_jittered_exponential
from .logging_config import setup_logging, timed, timed_section, perf_logger

__all__ = [
    "RETRYABLE_EXCEPTIONS",
    "retry_async",
    "wait_jittered_exponential",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
]
