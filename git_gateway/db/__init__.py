"""
Database package for the Git Gateway.
"""

from .base import Base, get_db, get_engine, get_session_local
from .models import (
    BranchModel,
    CommitModel,
    RepositoryModel,
    TagModel,
    WebhookEventModel,
    WebhookTriggerModel,
)

__all__ = [
    "Base",
    "get_engine",
    "get_session_local",
    "get_db",
    "RepositoryModel",
    "BranchModel",
    "CommitModel",
    "TagModel",
    "WebhookEventModel",
    "WebhookTriggerModel",
]
