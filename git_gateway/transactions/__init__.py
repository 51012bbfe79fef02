"""Cross-service transactions and their compensations."""

from .compensation import CompensationManager
from .events import EventPublisher
from .transactor import DistributedTransaction, DistributedTransactionManager, RepositoryRequest

__all__ = [
    "CompensationManager",
    "DistributedTransaction",
    "DistributedTransactionManager",
    "EventPublisher",
    "RepositoryRequest",
]
