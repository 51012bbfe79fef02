"""Repository management: manager, request schemas and routes."""

from .manager import RepositoryManager

__all__ = ["RepositoryManager"]
