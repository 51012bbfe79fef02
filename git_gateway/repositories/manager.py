"""
Repository manager.

Keeps the bare repositories on disk and their metadata rows consistent. Every
write runs under the repository's write lock and touches the filesystem
before the database; every git read runs under the read lock.
"""

import os
import shutil
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.models import ZERO_SHA, BranchModel, CommitModel, RepositoryModel, TagModel, utc_now
from ..db.services import (
    BranchService,
    CommitService,
    CompensationService,
    RepositoryService,
    TagService,
    parse_uuid,
)
from ..errors import (
    ConflictError,
    ForbiddenError,
    GatewayError,
    GitError,
    GitNotFoundError,
)
from ..git.executor import FileContent, GitExecutor, GitIdentity
from ..git.locks import RepositoryLockManager, get_lock_manager
from ..git.parsing import CommitInfo

logger = structlog.get_logger()

UPDATABLE_FIELDS = ("name", "description", "visibility", "default_branch")


def system_identity() -> GitIdentity:
    settings = get_settings()
    return GitIdentity(settings.system_author_name, settings.system_author_email)


class RepositoryManager:
    """Coordinates the git executor, the metadata store and the locks."""

    def __init__(
        self,
        db: Session,
        locks: Optional[RepositoryLockManager] = None,
        git_root: Optional[str] = None,
    ):
        settings = get_settings()
        self.db = db
        self.locks = locks or get_lock_manager()
        self.git_root = os.path.abspath(git_root or settings.git_root)
        self.repositories = RepositoryService(db)
        self.branches = BranchService(db)
        self.commits = CommitService(db)
        self.tags = TagService(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def executor(self, repository: RepositoryModel) -> GitExecutor:
        return GitExecutor(repository.git_path)

    def _locations(self, project_id: Any, name: str) -> Dict[str, str]:
        settings = get_settings()
        relative = f"{project_id}/{name}.git"
        return {
            "git_path": os.path.join(self.git_root, str(project_id), f"{name}.git"),
            "clone_url": f"{settings.clone_base_url.rstrip('/')}/{relative}",
            "ssh_url": f"git@{settings.ssh_host}:{relative}",
        }

    def _record_commit(self, repository: RepositoryModel, info: CommitInfo) -> CommitModel:
        return self.commits.record(
            repository.id,
            sha=info.sha,
            message=info.message,
            author=info.author,
            author_email=info.author_email,
            committer=info.committer,
            committer_email=info.committer_email,
            parent_shas=info.parent_shas,
            tree_sha=info.tree_sha,
            committed_at=info.committed_at,
            files=[f.to_dict() for f in info.files],
        )

    def _after_push(self, repository: RepositoryModel) -> RepositoryModel:
        """Refresh counts, size and last push time after new commits."""
        self.repositories.refresh_counts(repository.id)
        return self.repositories.update(
            repository.id,
            size=GitExecutor.repository_size(repository.git_path),
            last_pushed_at=utc_now(),
        )

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def create_repository(
        self,
        project_id: Any,
        name: str,
        description: Optional[str] = None,
        visibility: str = "private",
        default_branch: Optional[str] = None,
        init_readme: bool = False,
    ) -> Tuple[RepositoryModel, bool]:
        """
        Create a repository and return ``(repository, created)``.

        An identical live repository is returned with ``created=False``; a
        live repository with the same name but other settings is a conflict.
        """
        project_id = parse_uuid(project_id, "project_id")
        default_branch = default_branch or get_settings().default_branch
        locations = self._locations(project_id, name)

        # serialises against removal of a deleted repository's directory at this path
        with self.locks.write(locations["git_path"]):
            existing = self.repositories.find_by_name(project_id, name)
            if existing is not None:
                if (
                    existing.status == "active"
                    and existing.visibility == visibility
                    and (existing.description or None) == (description or None)
                    and existing.default_branch == default_branch
                ):
                    return existing, False
                raise ConflictError(
                    f"repository {name} already exists in project",
                    details={"repository_id": str(existing.id)},
                )

            # the unique indexes on (project_id, name) and git_path decide concurrent creates
            repository = self.repositories.create(
                project_id=project_id,
                name=name,
                description=description,
                visibility=visibility,
                default_branch=default_branch,
                status="active",
                **locations,
            )
            with self.locks.write(repository.id):
                repository = self._initialise(repository, description, init_readme)

        logger.info(
            "repository created",
            repository_id=str(repository.id),
            project_id=str(project_id),
            name=name,
        )
        return repository, True

    def _initialise(
        self, repository: RepositoryModel, description: Optional[str], init_readme: bool
    ) -> RepositoryModel:
        default_branch = repository.default_branch
        executor = self.executor(repository)
        try:
            if os.path.exists(repository.git_path):
                logger.warning(
                    "removing leftover directory of a deleted repository",
                    repository_id=str(repository.id),
                    git_path=repository.git_path,
                )
                shutil.rmtree(repository.git_path)
            executor.init_bare(default_branch)
        except (GatewayError, OSError):
            logger.error(
                "repository init failed, removing row",
                repository_id=str(repository.id),
                git_path=repository.git_path,
            )
            self.repositories.hard_delete(repository.id)
            raise

        self.branches.create(repository.id, default_branch, ZERO_SHA, is_default=True)

        if not init_readme:
            self.repositories.refresh_counts(repository.id)
            return self.repositories.update(
                repository.id, size=GitExecutor.repository_size(repository.git_path)
            )

        body = f"# {repository.name}\n"
        if description:
            body += f"\n{description}\n"
        sha = executor.commit(default_branch, "Initial commit", system_identity(), {"README.md": body})
        self._record_commit(repository, executor.commit_info(sha))
        self.branches.advance(repository.id, default_branch, sha)
        return self._after_push(repository)

    def get_repository(self, repository_id: Any) -> RepositoryModel:
        return self.repositories.get(repository_id)

    def update_repository(self, repository_id: Any, changes: Mapping[str, Any]) -> RepositoryModel:
        """Apply name, description, visibility and default_branch changes."""
        changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        repository = self.repositories.get(repository_id)

        with self.locks.write(repository.id):
            new_name = changes.pop("name", None)
            if new_name and new_name != repository.name:
                repository = self._rename(repository, new_name)

            new_default = changes.pop("default_branch", None)
            if new_default and new_default != repository.default_branch:
                self._set_default_branch(repository, new_default)

            fields = {k: v for k, v in changes.items() if v is not None}
            if fields:
                repository = self.repositories.update(repository.id, **fields)

        return self.repositories.get(repository.id)

    def _rename(self, repository: RepositoryModel, new_name: str) -> RepositoryModel:
        if self.repositories.find_by_name(repository.project_id, new_name) is not None:
            raise ConflictError(f"repository {new_name} already exists in project")

        locations = self._locations(repository.project_id, new_name)
        old_path = repository.git_path
        new_path = locations["git_path"]
        if os.path.exists(new_path):
            raise ConflictError("target directory already exists", details={"name": new_name})

        os.makedirs(os.path.dirname(new_path), exist_ok=True)
        shutil.move(old_path, new_path)
        try:
            repository = self.repositories.update(repository.id, name=new_name, **locations)
        except Exception:
            shutil.move(new_path, old_path)
            raise
        logger.info(
            "repository renamed",
            repository_id=str(repository.id),
            old_path=old_path,
            new_path=new_path,
        )
        return repository

    def delete_repository(self, repository_id: Any) -> RepositoryModel:
        """Soft delete the row; the directory is removed by ``remove_directory``."""
        repository = self.repositories.soft_delete(repository_id)
        logger.info("repository soft-deleted", repository_id=str(repository.id))
        return repository

    def remove_directory(self, repository_id: Any, git_path: str) -> bool:
        """
        Recursively delete a repository directory.

        A failure is logged and recorded as a pending ``delete_repository``
        compensation so the compensation runner can retry it. A directory
        owned by a live repository, such as one re-created under the same
        name, is kept.
        """
        try:
            with self.locks.write(git_path), self.locks.write(repository_id):
                owner = self.repositories.find_by_path(git_path)
                if owner is not None:
                    logger.info(
                        "directory owned by a live repository, keeping it",
                        repository_id=str(repository_id),
                        owner_id=str(owner.id),
                        git_path=git_path,
                    )
                    return True
                if os.path.exists(git_path):
                    shutil.rmtree(git_path)
        except Exception as exc:
            logger.error(
                "repository directory removal failed",
                repository_id=str(repository_id),
                git_path=git_path,
                error=str(exc),
            )
            CompensationService(self.db).create(
                action="delete_repository",
                resource_id=repository_id,
                payload={"git_path": git_path},
                max_retries=get_settings().compensation_max_retries,
            )
            return False
        logger.info("repository directory removed", git_path=git_path)
        return True

    def list_repositories(
        self, project_id: Optional[Any] = None, page: int = 1, page_size: int = 20
    ) -> Tuple[List[RepositoryModel], int]:
        return self.repositories.list(project_id=project_id, page=page, page_size=page_size)

    def search_repositories(
        self,
        query: str,
        project_id: Optional[Any] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[RepositoryModel], int]:
        return self.repositories.search(query, project_id=project_id, page=page, page_size=page_size)

    def stats(self, repository_id: Any) -> Dict[str, Any]:
        return self.repositories.stats(repository_id)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def create_branch(
        self,
        repository_id: Any,
        name: str,
        from_sha: Optional[str] = None,
        from_branch: Optional[str] = None,
        is_protected: bool = False,
    ) -> BranchModel:
        repository = self.repositories.get(repository_id)
        with self.locks.write(repository.id):
            executor = self.executor(repository)
            sha = executor.create_branch(name, from_sha or from_branch)
            try:
                branch = self.branches.create(
                    repository.id, name, sha, is_default=False, is_protected=is_protected
                )
            except ConflictError:
                executor.delete_branch(name)
                raise
            self.repositories.refresh_counts(repository.id)
        logger.info("branch created", repository_id=str(repository.id), branch=name, sha=sha)
        return branch

    def get_branch(self, repository_id: Any, name: str) -> BranchModel:
        repository = self.repositories.get(repository_id)
        return self.branches.get(repository.id, name)

    def list_branches(
        self, repository_id: Any, page: int = 1, page_size: int = 20
    ) -> Tuple[List[BranchModel], int]:
        repository = self.repositories.get(repository_id)
        return self.branches.list(repository.id, page=page, page_size=page_size)

    def delete_branch(self, repository_id: Any, name: str) -> None:
        repository = self.repositories.get(repository_id)
        with self.locks.write(repository.id):
            branch = self.branches.get(repository.id, name)
            if branch.is_default or name == repository.default_branch:
                raise ConflictError("the default branch cannot be deleted", details={"branch": name})
            if branch.is_protected:
                raise ForbiddenError("branch is protected", details={"branch": name})
            try:
                self.executor(repository).delete_branch(name)
            except GitNotFoundError:
                logger.warning(
                    "branch missing on disk, removing row only",
                    repository_id=str(repository.id),
                    branch=name,
                )
            self.branches.soft_delete(repository.id, name)
            self.repositories.refresh_counts(repository.id)
        logger.info("branch deleted", repository_id=str(repository.id), branch=name)

    def set_default_branch(self, repository_id: Any, name: str) -> BranchModel:
        repository = self.repositories.get(repository_id)
        with self.locks.write(repository.id):
            return self._set_default_branch(repository, name)

    def _set_default_branch(self, repository: RepositoryModel, name: str) -> BranchModel:
        """Point HEAD at ``name`` first, then move the metadata; HEAD is restored if that fails."""
        self.branches.get(repository.id, name)
        previous = repository.default_branch
        executor = self.executor(repository)
        executor.set_head(name)
        try:
            branch = self.repositories.set_default_branch(repository.id, name)
        except Exception:
            logger.error(
                "default branch update failed, restoring HEAD",
                repository_id=str(repository.id),
                branch=name,
                previous=previous,
            )
            executor.set_head(previous)
            raise
        logger.info("default branch changed", repository_id=str(repository.id), branch=name)
        return branch

    def merge(
        self,
        repository_id: Any,
        source: str,
        target: str,
        identity: Optional[GitIdentity] = None,
    ) -> Dict[str, Any]:
        """Merge ``source`` into ``target`` and record the merge commit."""
        repository = self.repositories.get(repository_id)
        with self.locks.write(repository.id):
            executor = self.executor(repository)
            sha = executor.merge(target, source, identity or system_identity())
            commit = self._record_commit(repository, executor.commit_info(sha))
            self.branches.advance(repository.id, target, sha)
            self._after_push(repository)
        return {"sha": sha, "source": source, "target": target, "commit": commit.to_dict()}

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def create_commit(
        self,
        repository_id: Any,
        branch: str,
        message: str,
        files: Mapping[str, FileContent],
        author: GitIdentity,
    ) -> CommitModel:
        repository = self.repositories.get(repository_id)
        with self.locks.write(repository.id):
            executor = self.executor(repository)
            sha = executor.commit(branch, message, author, files)
            commit = self._record_commit(repository, executor.commit_info(sha))
            self.branches.advance(repository.id, branch, sha)
            self._after_push(repository)
        logger.info(
            "commit recorded", repository_id=str(repository.id), branch=branch, sha=sha
        )
        return commit

    def get_commit(self, repository_id: Any, sha: str) -> Dict[str, Any]:
        repository = self.repositories.get(repository_id)
        try:
            with self.locks.read(repository.id):
                return self.executor(repository).commit_info(sha).to_dict()
        except (GitError, GitNotFoundError) as exc:
            logger.info(
                "git read failed, using metadata",
                repository_id=str(repository.id),
                sha=sha,
                error=exc.message,
            )
        return self.commits.get(repository.id, sha).to_dict(include_files=True)

    def list_commits(
        self,
        repository_id: Any,
        branch: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        repository = self.repositories.get(repository_id)
        ref = branch or repository.default_branch
        page = page if page > 0 else 1
        page_size = page_size if page_size > 0 else 20
        try:
            with self.locks.read(repository.id):
                executor = self.executor(repository)
                history = executor.commit_history(ref, skip=(page - 1) * page_size, limit=page_size)
                total = executor.total_commit_count(ref)
            return [c.to_dict() for c in history], total
        except GitError as exc:
            logger.info(
                "git log failed, using metadata",
                repository_id=str(repository.id),
                ref=ref,
                error=exc.message,
            )
        items, total = self.commits.list(repository.id, page=page, page_size=page_size)
        return [c.to_dict() for c in items], total

    def commit_diff(self, repository_id: Any, sha: str) -> Dict[str, Any]:
        repository = self.repositories.get(repository_id)
        with self.locks.read(repository.id):
            return self.executor(repository).diff(None, sha).to_dict()

    def compare(self, repository_id: Any, base: str, head: str) -> Dict[str, Any]:
        repository = self.repositories.get(repository_id)
        with self.locks.read(repository.id):
            return self.executor(repository).diff(base, head).to_dict()

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def create_tag(
        self,
        repository_id: Any,
        name: str,
        target: str,
        message: Optional[str] = None,
        tagger: Optional[GitIdentity] = None,
    ) -> TagModel:
        repository = self.repositories.get(repository_id)
        tagger = tagger or system_identity()
        with self.locks.write(repository.id):
            executor = self.executor(repository)
            sha = executor.create_tag(name, target, tagger=tagger, message=message or None)
            try:
                tag = self.tags.create(
                    repository.id,
                    name,
                    sha,
                    message=message or None,
                    tagger=tagger.name,
                    tagger_email=tagger.email,
                )
            except ConflictError:
                executor.delete_tag(name)
                raise
            self.repositories.refresh_counts(repository.id)
        logger.info("tag created", repository_id=str(repository.id), tag=name, sha=sha)
        return tag

    def get_tag(self, repository_id: Any, name: str) -> TagModel:
        repository = self.repositories.get(repository_id)
        return self.tags.get(repository.id, name)

    def list_tags(
        self, repository_id: Any, page: int = 1, page_size: int = 20
    ) -> Tuple[List[TagModel], int]:
        repository = self.repositories.get(repository_id)
        return self.tags.list(repository.id, page=page, page_size=page_size)

    def delete_tag(self, repository_id: Any, name: str) -> None:
        repository = self.repositories.get(repository_id)
        with self.locks.write(repository.id):
            self.tags.get(repository.id, name)
            try:
                self.executor(repository).delete_tag(name)
            except GitNotFoundError:
                logger.warning(
                    "tag missing on disk, removing row only",
                    repository_id=str(repository.id),
                    tag=name,
                )
            self.tags.delete(repository.id, name)
            self.repositories.refresh_counts(repository.id)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def file_content(self, repository_id: Any, ref: Optional[str], path: str) -> bytes:
        repository = self.repositories.get(repository_id)
        with self.locks.read(repository.id):
            return self.executor(repository).file_content(ref or repository.default_branch, path)

    def tree(self, repository_id: Any, ref: Optional[str], path: str = "") -> List[Dict[str, Any]]:
        repository = self.repositories.get(repository_id)
        with self.locks.read(repository.id):
            entries = self.executor(repository).tree(ref or repository.default_branch, path)
        return [e.to_dict() for e in entries]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, repair: bool = False) -> Dict[str, Any]:
        """
        Compare live rows against the directories under the git root.

        Reports rows whose directory is missing and ``*.git`` directories that
        no live row points at. With ``repair`` the missing directories are
        re-initialised and the orphans removed.
        """
        live = self.repositories.list_all_live()
        live_paths = {os.path.abspath(r.git_path) for r in live}

        missing = [
            {"repository_id": str(r.id), "git_path": r.git_path}
            for r in live
            if not os.path.isdir(r.git_path)
        ]

        orphans: List[str] = []
        if os.path.isdir(self.git_root):
            for project_dir in sorted(os.listdir(self.git_root)):
                project_path = os.path.join(self.git_root, project_dir)
                if not os.path.isdir(project_path):
                    continue
                for entry in sorted(os.listdir(project_path)):
                    path = os.path.abspath(os.path.join(project_path, entry))
                    if entry.endswith(".git") and os.path.isdir(path) and path not in live_paths:
                        orphans.append(path)

        if repair:
            for item in missing:
                repository = self.repositories.get(item["repository_id"])
                with self.locks.write(repository.id):
                    self.executor(repository).init_bare(repository.default_branch)
                logger.warning("re-initialised missing repository", **item)
            for path in orphans:
                shutil.rmtree(path, ignore_errors=True)
                logger.warning("removed orphan repository directory", git_path=path)

        return {"missing_directories": missing, "orphan_directories": orphans, "repaired": repair}
