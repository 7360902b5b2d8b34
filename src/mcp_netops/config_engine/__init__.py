"""Configuration transaction engine."""
from .engine import DEFAULT_CALLER, ConfigurationEngine
from .schema import Transaction, TransactionResult, TransactionState

__all__ = [
    "ConfigurationEngine",
    "DEFAULT_CALLER",
    "Transaction",
    "TransactionResult",
    "TransactionState",
]
