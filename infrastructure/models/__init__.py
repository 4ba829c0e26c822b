"""Infrastructure models package exports."""
from .base import Base, metadata
from .transaction import TransactionModel
from .processed_event import ProcessedEventModel

__all__ = [
    "Base",
    "metadata",
    "TransactionModel",
    "ProcessedEventModel",
]
