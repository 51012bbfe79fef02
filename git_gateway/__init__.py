"""
Git Gateway

HTTP access to server-side bare Git repositories, with webhook triggers and
cross-service repository transactions.
"""

import importlib.metadata

__version__ = importlib.metadata.version("git-gateway")

from .errors import GatewayError
from .git import GitExecutor, RepositoryLockManager
from .repositories import RepositoryManager
from .webhooks import WebhookEngine

__all__ = [
    "GatewayError",
    "GitExecutor",
    "RepositoryLockManager",
    "RepositoryManager",
    "WebhookEngine",
]
