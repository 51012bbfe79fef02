"""
Repository API routes.

Handlers that touch git or the repository locks are plain ``def`` so FastAPI
runs them in its threadpool.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from sqlalchemy.orm import Session

from ..db.base import get_db
from ..db.services import WebhookService
from ..envelope import page, success
from ..errors import NotFoundError
from ..git.executor import GitIdentity
from .manager import RepositoryManager
from .schemas import (
    BranchCreate,
    CommitCreate,
    DefaultBranchUpdate,
    MergeRequest,
    RepositoryCreate,
    RepositoryUpdate,
    TagCreate,
    WebhookCreate,
)

router = APIRouter(prefix="/repositories", tags=["repositories"])

CONTENT_TYPES = {
    ".json": "application/json",
    ".xml": "application/xml",
    ".html": "text/html",
    ".htm": "text/html",
}


def get_manager(db: Session = Depends(get_db)) -> RepositoryManager:
    return RepositoryManager(db)


def content_type_for(path: str) -> str:
    lowered = path.lower()
    for suffix, media_type in CONTENT_TYPES.items():
        if lowered.endswith(suffix):
            return media_type
    return "text/plain"


# =============================================================================
# Repositories
# =============================================================================


@router.post("", status_code=201)
def create_repository(
    body: RepositoryCreate,
    response: Response,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    """Create a repository; an identical repeat returns the existing one with 200."""
    repository, created = manager.create_repository(
        project_id=body.project_id,
        name=body.name,
        description=body.description,
        visibility=body.visibility,
        default_branch=body.default_branch,
        init_readme=body.init_readme,
    )
    if not created:
        response.status_code = 200
        return success(repository.to_dict(), message="repository already exists")
    return success(repository.to_dict(), message="repository created", code=201)


@router.get("")
def list_repositories(
    project_id: Optional[str] = Query(None),
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    items, total = manager.list_repositories(project_id, page_number, page_size)
    return success(page([r.to_dict() for r in items], total, page_number, page_size))


@router.get("/search")
def search_repositories(
    q: str = Query("", max_length=255),
    project_id: Optional[str] = Query(None),
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    items, total = manager.search_repositories(q, project_id, page_number, page_size)
    return success(page([r.to_dict() for r in items], total, page_number, page_size))


@router.get("/{repository_id}")
def get_repository(
    repository_id: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    return success(manager.get_repository(repository_id).to_dict())


@router.put("/{repository_id}")
def update_repository(
    repository_id: str,
    body: RepositoryUpdate,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    repository = manager.update_repository(repository_id, body.model_dump(exclude_unset=True))
    return success(repository.to_dict(), message="repository updated")


@router.delete("/{repository_id}")
def delete_repository(
    repository_id: str,
    background_tasks: BackgroundTasks,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    """Soft delete now; the directory is removed after the response is sent."""
    repository = manager.delete_repository(repository_id)
    background_tasks.add_task(manager.remove_directory, repository.id, repository.git_path)
    return success({"id": str(repository.id)}, message="repository deleted")


@router.get("/{repository_id}/stats")
def repository_stats(
    repository_id: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    return success(manager.stats(repository_id))


# =============================================================================
# Branches
# =============================================================================


@router.post("/{repository_id}/branches", status_code=201)
def create_branch(
    repository_id: str,
    body: BranchCreate,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    branch = manager.create_branch(
        repository_id,
        body.name,
        from_sha=body.from_sha,
        from_branch=body.from_branch,
        is_protected=body.is_protected,
    )
    return success(branch.to_dict(), message="branch created", code=201)


@router.get("/{repository_id}/branches")
def list_branches(
    repository_id: str,
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    items, total = manager.list_branches(repository_id, page_number, page_size)
    return success(page([b.to_dict() for b in items], total, page_number, page_size))


@router.get("/{repository_id}/branches/{branch:path}")
def get_branch(
    repository_id: str, branch: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    return success(manager.get_branch(repository_id, branch).to_dict())


@router.delete("/{repository_id}/branches/{branch:path}")
def delete_branch(
    repository_id: str, branch: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    manager.delete_branch(repository_id, branch)
    return success({"name": branch}, message="branch deleted")


@router.put("/{repository_id}/default-branch")
def set_default_branch(
    repository_id: str,
    body: DefaultBranchUpdate,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    branch = manager.set_default_branch(repository_id, body.branch)
    return success(branch.to_dict(), message="default branch updated")


@router.post("/{repository_id}/merge")
def merge_branches(
    repository_id: str,
    body: MergeRequest,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    identity = None
    if body.author_name and body.author_email:
        identity = GitIdentity(body.author_name, body.author_email)
    result = manager.merge(repository_id, body.source, body.target, identity)
    return success(result, message="branches merged")


# =============================================================================
# Commits
# =============================================================================


@router.post("/{repository_id}/commits", status_code=201)
def create_commit(
    repository_id: str,
    body: CommitCreate,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    commit = manager.create_commit(
        repository_id,
        body.branch,
        body.message,
        body.file_map(),
        GitIdentity(body.author_name, body.author_email),
    )
    return success(commit.to_dict(include_files=True), message="commit created", code=201)


@router.get("/{repository_id}/commits")
def list_commits(
    repository_id: str,
    branch: Optional[str] = Query(None),
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    items, total = manager.list_commits(repository_id, branch, page_number, page_size)
    return success(page(items, total, page_number, page_size))


@router.get("/{repository_id}/commits/{sha}")
def get_commit(
    repository_id: str, sha: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    return success(manager.get_commit(repository_id, sha))


@router.get("/{repository_id}/commits/{sha}/diff")
def get_commit_diff(
    repository_id: str, sha: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    return success(manager.commit_diff(repository_id, sha))


@router.get("/{repository_id}/compare")
def compare(
    repository_id: str,
    base: str = Query(..., min_length=1),
    head: str = Query(..., min_length=1),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    return success(manager.compare(repository_id, base, head))


# =============================================================================
# Tags
# =============================================================================


@router.post("/{repository_id}/tags", status_code=201)
def create_tag(
    repository_id: str,
    body: TagCreate,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    tagger = None
    if body.tagger_name and body.tagger_email:
        tagger = GitIdentity(body.tagger_name, body.tagger_email)
    tag = manager.create_tag(repository_id, body.name, body.target, body.message, tagger)
    return success(tag.to_dict(), message="tag created", code=201)


@router.get("/{repository_id}/tags")
def list_tags(
    repository_id: str,
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    items, total = manager.list_tags(repository_id, page_number, page_size)
    return success(page([t.to_dict() for t in items], total, page_number, page_size))


@router.get("/{repository_id}/tags/{tag:path}")
def get_tag(
    repository_id: str, tag: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    return success(manager.get_tag(repository_id, tag).to_dict())


@router.delete("/{repository_id}/tags/{tag:path}")
def delete_tag(
    repository_id: str, tag: str, manager: RepositoryManager = Depends(get_manager)
) -> Dict[str, Any]:
    manager.delete_tag(repository_id, tag)
    return success({"name": tag}, message="tag deleted")


# =============================================================================
# Files
# =============================================================================


@router.get("/{repository_id}/files")
def get_file(
    repository_id: str,
    path: str = Query(..., min_length=1),
    branch: Optional[str] = Query(None),
    manager: RepositoryManager = Depends(get_manager),
) -> Response:
    """Raw file bytes; the only endpoint that is not enveloped."""
    content = manager.file_content(repository_id, branch, path)
    return Response(content=content, media_type=content_type_for(path))


@router.get("/{repository_id}/tree")
def get_tree(
    repository_id: str,
    path: str = Query(""),
    branch: Optional[str] = Query(None),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    return success(manager.tree(repository_id, branch, path))


# =============================================================================
# Outbound webhook subscriptions
# =============================================================================


@router.post("/{repository_id}/webhooks", status_code=201)
def create_webhook(
    repository_id: str,
    body: WebhookCreate,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    repository = manager.get_repository(repository_id)
    webhook = WebhookService(manager.db).create(
        repository.id, body.url, secret=body.secret, events=body.events, is_active=body.is_active
    )
    return success(webhook.to_dict(), message="webhook created", code=201)


@router.get("/{repository_id}/webhooks")
def list_webhooks(
    repository_id: str,
    page_number: int = Query(1, alias="page"),
    page_size: int = Query(20, le=1000),
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    repository = manager.get_repository(repository_id)
    items, total = WebhookService(manager.db).list(repository.id, page_number, page_size)
    return success(page([w.to_dict() for w in items], total, page_number, page_size))


@router.delete("/{repository_id}/webhooks/{webhook_id}")
def delete_webhook(
    repository_id: str,
    webhook_id: str,
    manager: RepositoryManager = Depends(get_manager),
) -> Dict[str, Any]:
    repository = manager.get_repository(repository_id)
    service = WebhookService(manager.db)
    webhook = service.get(webhook_id)
    if webhook.repository_id != repository.id:
        raise NotFoundError("webhook not found", details={"webhook_id": webhook_id})
    service.delete(webhook.id)
    return success({"id": webhook_id}, message="webhook deleted")
