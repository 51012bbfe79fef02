"""Git layer: subprocess executor, output parsers and repository locks."""

from .executor import GitExecutor, GitIdentity, validate_tree_path
from .locks import RepositoryLockManager, get_lock_manager
from .parsing import CommitInfo, DiffFile, GitDiff, TreeEntry

__all__ = [
    "GitExecutor",
    "GitIdentity",
    "validate_tree_path",
    "RepositoryLockManager",
    "get_lock_manager",
    "CommitInfo",
    "DiffFile",
    "GitDiff",
    "TreeEntry",
]
