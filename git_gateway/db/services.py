"""
Database services for Git Gateway.

One service per aggregate. Each takes a SQLAlchemy ``Session`` and commits its
own writes; unique violations surface as ``ConflictError`` and lookups that
miss surface as ``NotFoundError``.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import desc, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from ..errors import ConflictError, NotFoundError, ValidationError
from .models import (
    ZERO_SHA,
    BranchModel,
    CommitFileModel,
    CommitModel,
    CompensationEntryModel,
    DomainEventModel,
    ProjectMemberModel,
    ProjectModel,
    RepositoryModel,
    TagModel,
    WebhookDeliveryModel,
    WebhookEventModel,
    WebhookModel,
    WebhookTriggerModel,
    utc_now,
)

IdLike = Union[str, uuid.UUID]

DEFAULT_PAGE_SIZE = 20

EVENT_UPDATE_COLUMNS = frozenset(
    {
        "processed",
        "processed_at",
        "error_message",
        "updated_at",
        "event_data",
        "signature",
        "retry_count",
        "processing_started_at",
    }
)
TRIGGER_UPDATE_COLUMNS = frozenset(
    {"name", "event_types", "conditions", "actions", "enabled", "updated_at"}
)
REPOSITORY_UPDATE_COLUMNS = frozenset(
    {
        "name",
        "description",
        "visibility",
        "default_branch",
        "git_path",
        "clone_url",
        "ssh_url",
        "status",
        "size",
        "commit_count",
        "branch_count",
        "tag_count",
        "last_pushed_at",
    }
)


def parse_uuid(value: IdLike, field: str = "id") -> uuid.UUID:
    """Coerce a wire identifier to a UUID or raise ValidationError."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"invalid {field}: must be a UUID") from None


def normalize_pagination(page: int, page_size: int) -> Tuple[int, int]:
    """page <= 0 becomes 1, page_size <= 0 becomes the default."""
    page = page if page and page > 0 else 1
    page_size = page_size if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
    return page, page_size


def paginate(query: Query, page: int, page_size: int) -> Tuple[List[Any], int]:
    """Return one page of ``query`` together with the unpaginated total."""
    page, page_size = normalize_pagination(page, page_size)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return items, total


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so ``text`` matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _check_columns(fields: Dict[str, Any], allowed: Iterable[str], table: str) -> None:
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationError(
            f"column(s) not updatable on {table}: {', '.join(unknown)}",
            details={"table": table, "columns": unknown},
        )


def _commit(db: Session, conflict_message: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(conflict_message) from None


class RepositoryService:
    """Service for managing repository rows."""

    def __init__(self, db: Session):
        self.db = db

    def _live(self) -> Query:
        return self.db.query(RepositoryModel).filter(RepositoryModel.deleted_at.is_(None))

    def create(self, **fields: Any) -> RepositoryModel:
        """Insert a repository row."""
        repository = RepositoryModel(**fields)
        self.db.add(repository)
        _commit(self.db, "repository already exists")
        self.db.refresh(repository)
        return repository

    def get(self, repository_id: IdLike) -> RepositoryModel:
        """Get a live repository by ID."""
        repository = (
            self._live()
            .filter(RepositoryModel.id == parse_uuid(repository_id, "repository_id"))
            .first()
        )
        if repository is None:
            raise NotFoundError(
                "repository not found", details={"repository_id": str(repository_id)}
            )
        return repository

    def find_by_name(self, project_id: IdLike, name: str) -> Optional[RepositoryModel]:
        """Get a live repository by (project_id, name)."""
        return (
            self._live()
            .filter(RepositoryModel.project_id == parse_uuid(project_id, "project_id"))
            .filter(RepositoryModel.name == name)
            .first()
        )

    def find_by_path(self, git_path: str) -> Optional[RepositoryModel]:
        """Get the live repository that owns ``git_path``."""
        return self._live().filter(RepositoryModel.git_path == git_path).first()

    def list(
        self,
        project_id: Optional[IdLike] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[RepositoryModel], int]:
        """List live repositories, newest first."""
        query = self._live()
        if project_id:
            query = query.filter(
                RepositoryModel.project_id == parse_uuid(project_id, "project_id")
            )
        return paginate(query.order_by(desc(RepositoryModel.created_at)), page, page_size)

    def list_all_live(self) -> List[RepositoryModel]:
        return self._live().all()

    def search(
        self,
        query_text: str,
        project_id: Optional[IdLike] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[RepositoryModel], int]:
        """Case-insensitive substring search over name and description."""
        if not query_text:
            return self.list(project_id=project_id, page=page, page_size=page_size)

        pattern = f"%{escape_like(query_text)}%"
        query = self._live().filter(
            or_(
                RepositoryModel.name.ilike(pattern, escape="\\"),
                RepositoryModel.description.ilike(pattern, escape="\\"),
            )
        )
        if project_id:
            query = query.filter(
                RepositoryModel.project_id == parse_uuid(project_id, "project_id")
            )
        return paginate(query.order_by(desc(RepositoryModel.created_at)), page, page_size)

    def update(self, repository_id: IdLike, **fields: Any) -> RepositoryModel:
        """Update a live repository."""
        _check_columns(fields, REPOSITORY_UPDATE_COLUMNS, "repositories")
        repository = self.get(repository_id)
        for key, value in fields.items():
            setattr(repository, key, value)
        repository.updated_at = utc_now()
        _commit(self.db, "repository already exists")
        self.db.refresh(repository)
        return repository

    def soft_delete(self, repository_id: IdLike) -> RepositoryModel:
        repository = self.get(repository_id)
        now = utc_now()
        repository.status = "deleted"
        repository.deleted_at = now
        repository.updated_at = now
        self.db.commit()
        self.db.refresh(repository)
        return repository

    def hard_delete(self, repository_id: IdLike) -> None:
        """Delete the row and everything it owns."""
        repository = (
            self.db.query(RepositoryModel)
            .filter(RepositoryModel.id == parse_uuid(repository_id, "repository_id"))
            .first()
        )
        if repository is None:
            return
        self.db.delete(repository)
        self.db.commit()

    def set_default_branch(self, repository_id: IdLike, branch_name: str) -> BranchModel:
        """Move the default flag to ``branch_name`` in a single transaction."""
        repository = self.get(repository_id)
        target = (
            self.db.query(BranchModel)
            .filter(BranchModel.repository_id == repository.id)
            .filter(BranchModel.name == branch_name)
            .filter(BranchModel.deleted_at.is_(None))
            .first()
        )
        if target is None:
            raise NotFoundError("branch not found", details={"branch": branch_name})

        try:
            (
                self.db.query(BranchModel)
                .filter(BranchModel.repository_id == repository.id)
                .filter(BranchModel.is_default.is_(True))
                .update({BranchModel.is_default: False}, synchronize_session="fetch")
            )
            target.is_default = True
            repository.default_branch = branch_name
            repository.updated_at = utc_now()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(target)
        return target

    def refresh_counts(self, repository_id: IdLike) -> RepositoryModel:
        """Recompute branch, commit and tag counts from their tables."""
        repository = self.get(repository_id)
        repository.branch_count = BranchService(self.db).count(repository.id)
        repository.commit_count = CommitService(self.db).count(repository.id)
        repository.tag_count = TagService(self.db).count(repository.id)
        self.db.commit()
        self.db.refresh(repository)
        return repository

    def stats(self, repository_id: IdLike) -> Dict[str, Any]:
        """Live counts plus size and last push from the row."""
        repository = self.get(repository_id)
        return {
            "repository_id": str(repository.id),
            "branch_count": BranchService(self.db).count(repository.id),
            "commit_count": CommitService(self.db).count(repository.id),
            "tag_count": TagService(self.db).count(repository.id),
            "size": repository.size or 0,
            "last_pushed_at": (
                repository.last_pushed_at.isoformat() if repository.last_pushed_at else None
            ),
        }


class BranchService:
    """Service for managing branch rows."""

    def __init__(self, db: Session):
        self.db = db

    def _live(self, repository_id: IdLike) -> Query:
        return (
            self.db.query(BranchModel)
            .filter(BranchModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .filter(BranchModel.deleted_at.is_(None))
        )

    def create(
        self,
        repository_id: IdLike,
        name: str,
        commit_sha: str = ZERO_SHA,
        is_default: bool = False,
        is_protected: bool = False,
    ) -> BranchModel:
        branch = BranchModel(
            repository_id=parse_uuid(repository_id, "repository_id"),
            name=name,
            commit_sha=commit_sha,
            is_default=is_default,
            is_protected=is_protected,
        )
        self.db.add(branch)
        _commit(self.db, f"branch {name} already exists")
        self.db.refresh(branch)
        return branch

    def find(self, repository_id: IdLike, name: str) -> Optional[BranchModel]:
        return self._live(repository_id).filter(BranchModel.name == name).first()

    def get(self, repository_id: IdLike, name: str) -> BranchModel:
        branch = self.find(repository_id, name)
        if branch is None:
            raise NotFoundError("branch not found", details={"branch": name})
        return branch

    def list(
        self, repository_id: IdLike, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[BranchModel], int]:
        """Default branch first, then by name."""
        query = self._live(repository_id).order_by(
            desc(BranchModel.is_default), BranchModel.name
        )
        return paginate(query, page, page_size)

    def advance(
        self, repository_id: IdLike, name: str, commit_sha: str
    ) -> BranchModel:
        """Point ``name`` at ``commit_sha``, creating the row if missing."""
        branch = self.find(repository_id, name)
        if branch is None:
            return self.create(repository_id, name, commit_sha=commit_sha)
        branch.commit_sha = commit_sha
        branch.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(branch)
        return branch

    def soft_delete(self, repository_id: IdLike, name: str) -> BranchModel:
        branch = self.get(repository_id, name)
        now = utc_now()
        branch.deleted_at = now
        branch.updated_at = now
        self.db.commit()
        return branch

    def count(self, repository_id: IdLike) -> int:
        return self._live(repository_id).count()


class CommitService:
    """Service for recorded commits and their file changes."""

    def __init__(self, db: Session):
        self.db = db

    def find(self, repository_id: IdLike, sha: str) -> Optional[CommitModel]:
        return (
            self.db.query(CommitModel)
            .filter(CommitModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .filter(CommitModel.sha == sha)
            .first()
        )

    def get(self, repository_id: IdLike, sha: str) -> CommitModel:
        commit = self.find(repository_id, sha)
        if commit is None:
            raise NotFoundError("commit not found", details={"sha": sha})
        return commit

    def record(
        self,
        repository_id: IdLike,
        *,
        sha: str,
        message: str,
        author: str,
        author_email: str,
        committer: str,
        committer_email: str,
        parent_shas: Sequence[str],
        tree_sha: str,
        committed_at: datetime,
        files: Sequence[Dict[str, Any]] = (),
    ) -> CommitModel:
        """Insert a commit with its files; an already recorded sha is returned as is."""
        existing = self.find(repository_id, sha)
        if existing is not None:
            return existing

        commit = CommitModel(
            repository_id=parse_uuid(repository_id, "repository_id"),
            sha=sha,
            message=message,
            author=author,
            author_email=author_email,
            committer=committer,
            committer_email=committer_email,
            parent_shas=list(parent_shas),
            tree_sha=tree_sha,
            committed_at=committed_at,
            added_lines=sum(f.get("added_lines", 0) for f in files),
            deleted_lines=sum(f.get("deleted_lines", 0) for f in files),
            changed_files=len(files),
        )
        for f in files:
            commit.files.append(
                CommitFileModel(
                    file_path=f["path"],
                    status=f["status"],
                    old_path=f.get("old_path"),
                    added_lines=f.get("added_lines", 0),
                    deleted_lines=f.get("deleted_lines", 0),
                )
            )
        self.db.add(commit)
        _commit(self.db, f"commit {sha} already recorded")
        self.db.refresh(commit)
        return commit

    def list(
        self, repository_id: IdLike, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[CommitModel], int]:
        query = (
            self.db.query(CommitModel)
            .filter(CommitModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .order_by(desc(CommitModel.committed_at), desc(CommitModel.created_at))
        )
        return paginate(query, page, page_size)

    def count(self, repository_id: IdLike) -> int:
        return (
            self.db.query(func.count(CommitModel.id))
            .filter(CommitModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .scalar()
            or 0
        )


class TagService:
    """Service for tag rows."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, repository_id: IdLike, name: str, commit_sha: str, **fields: Any) -> TagModel:
        tag = TagModel(
            repository_id=parse_uuid(repository_id, "repository_id"),
            name=name,
            commit_sha=commit_sha,
            **fields,
        )
        self.db.add(tag)
        _commit(self.db, f"tag {name} already exists")
        self.db.refresh(tag)
        return tag

    def find(self, repository_id: IdLike, name: str) -> Optional[TagModel]:
        return (
            self.db.query(TagModel)
            .filter(TagModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .filter(TagModel.name == name)
            .first()
        )

    def get(self, repository_id: IdLike, name: str) -> TagModel:
        tag = self.find(repository_id, name)
        if tag is None:
            raise NotFoundError("tag not found", details={"tag": name})
        return tag

    def list(
        self, repository_id: IdLike, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[TagModel], int]:
        query = (
            self.db.query(TagModel)
            .filter(TagModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .order_by(desc(TagModel.tagged_at))
        )
        return paginate(query, page, page_size)

    def delete(self, repository_id: IdLike, name: str) -> None:
        tag = self.get(repository_id, name)
        self.db.delete(tag)
        self.db.commit()

    def count(self, repository_id: IdLike) -> int:
        return (
            self.db.query(func.count(TagModel.id))
            .filter(TagModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .scalar()
            or 0
        )


class WebhookService:
    """Service for outbound webhook subscriptions."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        repository_id: IdLike,
        url: str,
        secret: Optional[str] = None,
        events: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> WebhookModel:
        webhook = WebhookModel(
            repository_id=parse_uuid(repository_id, "repository_id"),
            url=url,
            secret=secret,
            events=events or [],
            is_active=is_active,
        )
        self.db.add(webhook)
        _commit(self.db, "webhook already exists")
        self.db.refresh(webhook)
        return webhook

    def get(self, webhook_id: IdLike) -> WebhookModel:
        webhook = (
            self.db.query(WebhookModel)
            .filter(WebhookModel.id == parse_uuid(webhook_id, "webhook_id"))
            .first()
        )
        if webhook is None:
            raise NotFoundError("webhook not found", details={"webhook_id": str(webhook_id)})
        return webhook

    def list(
        self, repository_id: IdLike, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[WebhookModel], int]:
        query = (
            self.db.query(WebhookModel)
            .filter(WebhookModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .order_by(desc(WebhookModel.created_at))
        )
        return paginate(query, page, page_size)

    def delete(self, webhook_id: IdLike) -> None:
        self.db.delete(self.get(webhook_id))
        self.db.commit()

    def active_secret(self, repository_id: IdLike) -> Optional[str]:
        """Secret of the newest active subscription that has one."""
        webhook = (
            self.db.query(WebhookModel)
            .filter(WebhookModel.repository_id == parse_uuid(repository_id, "repository_id"))
            .filter(WebhookModel.is_active.is_(True))
            .filter(WebhookModel.secret.isnot(None))
            .order_by(desc(WebhookModel.created_at))
            .first()
        )
        return webhook.secret if webhook else None


class WebhookEventService:
    """Durable store of inbound webhook events."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        repository_id: IdLike,
        event_type: str,
        event_data: Dict[str, Any],
        source: str = "git",
        signature: Optional[str] = None,
    ) -> WebhookEventModel:
        event = WebhookEventModel(
            repository_id=parse_uuid(repository_id, "repository_id"),
            event_type=event_type,
            event_data=event_data or {},
            source=source,
            signature=signature,
        )
        self.db.add(event)
        _commit(self.db, "event already exists")
        self.db.refresh(event)
        return event

    def get(self, event_id: IdLike) -> WebhookEventModel:
        event = (
            self.db.query(WebhookEventModel)
            .filter(WebhookEventModel.id == parse_uuid(event_id, "event_id"))
            .first()
        )
        if event is None:
            raise NotFoundError("webhook event not found", details={"event_id": str(event_id)})
        return event

    def update(self, event_id: IdLike, **fields: Any) -> WebhookEventModel:
        """Update allowlisted columns only; anything else is rejected before SQL."""
        _check_columns(fields, EVENT_UPDATE_COLUMNS, "webhook_events")
        event = self.get(event_id)
        for key, value in fields.items():
            setattr(event, key, value)
        if "updated_at" not in fields:
            event.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(event)
        return event

    def delete(self, event_id: IdLike) -> None:
        self.db.delete(self.get(event_id))
        self.db.commit()

    def list(
        self,
        repository_id: Optional[IdLike] = None,
        event_types: Optional[Sequence[str]] = None,
        source: Optional[str] = None,
        processed: Optional[bool] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[WebhookEventModel], int]:
        """List events with optional filtering, newest first."""
        query = self.db.query(WebhookEventModel)
        if repository_id:
            query = query.filter(
                WebhookEventModel.repository_id == parse_uuid(repository_id, "repository_id")
            )
        if event_types:
            query = query.filter(WebhookEventModel.event_type.in_(list(event_types)))
        if source:
            query = query.filter(WebhookEventModel.source == source)
        if processed is not None:
            query = query.filter(WebhookEventModel.processed.is_(processed))
        if start_time:
            query = query.filter(WebhookEventModel.created_at >= start_time)
        if end_time:
            query = query.filter(WebhookEventModel.created_at <= end_time)
        return paginate(query.order_by(desc(WebhookEventModel.created_at)), page, page_size)

    def _claimable(self, query: Query, stale_after: timedelta) -> Query:
        cutoff = utc_now() - stale_after
        return query.filter(WebhookEventModel.processed.is_(False)).filter(
            or_(
                WebhookEventModel.processing_started_at.is_(None),
                WebhookEventModel.processing_started_at < cutoff,
            )
        )

    def claim(self, event_id: IdLike, stale_after: timedelta) -> bool:
        """
        Atomically mark an unprocessed event as being processed.

        Returns False when the event is processed or another worker holds a
        claim younger than ``stale_after``.
        """
        now = utc_now()
        query = self.db.query(WebhookEventModel).filter(
            WebhookEventModel.id == parse_uuid(event_id, "event_id")
        )
        claimed = self._claimable(query, stale_after).update(
            {
                WebhookEventModel.processing_started_at: now,
                WebhookEventModel.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        return claimed == 1

    def pending(
        self,
        limit: int = 100,
        max_retries: int = 5,
        stale_after: timedelta = timedelta(minutes=10),
    ) -> List[WebhookEventModel]:
        """Unclaimed, unprocessed events still under the retry cap, oldest first."""
        return (
            self._claimable(self.db.query(WebhookEventModel), stale_after)
            .filter(WebhookEventModel.retry_count < max_retries)
            .order_by(WebhookEventModel.created_at)
            .limit(limit)
            .all()
        )

    def statistics(self, repository_id: Optional[IdLike] = None) -> Dict[str, Any]:
        """Event and delivery counters, optionally scoped to one repository."""
        events = self.db.query(WebhookEventModel)
        if repository_id:
            events = events.filter(
                WebhookEventModel.repository_id == parse_uuid(repository_id, "repository_id")
            )

        total = events.count()
        processed = events.filter(WebhookEventModel.processed.is_(True)).count()
        failed = events.filter(WebhookEventModel.error_message.isnot(None)).count()
        pending = events.filter(WebhookEventModel.processed.is_(False)).count()

        by_type = dict(
            events.with_entities(WebhookEventModel.event_type, func.count(WebhookEventModel.id))
            .group_by(WebhookEventModel.event_type)
            .all()
        )
        by_source = dict(
            events.with_entities(WebhookEventModel.source, func.count(WebhookEventModel.id))
            .group_by(WebhookEventModel.source)
            .all()
        )

        deliveries = self.db.query(WebhookDeliveryModel)
        if repository_id:
            deliveries = deliveries.join(
                WebhookTriggerModel, WebhookDeliveryModel.webhook_id == WebhookTriggerModel.id
            ).filter(
                WebhookTriggerModel.repository_id == parse_uuid(repository_id, "repository_id")
            )
        total_deliveries = deliveries.count()
        by_status = dict(
            deliveries.with_entities(
                WebhookDeliveryModel.status, func.count(WebhookDeliveryModel.id)
            )
            .group_by(WebhookDeliveryModel.status)
            .all()
        )
        successful = by_status.get("success", 0)

        return {
            "total_events": total,
            "processed_events": processed,
            "failed_events": failed,
            "pending_events": pending,
            "events_by_type": by_type,
            "events_by_source": by_source,
            "total_deliveries": total_deliveries,
            "deliveries_by_status": by_status,
            "success_rate": (successful / total_deliveries) if total_deliveries else 0.0,
        }


class WebhookTriggerService:
    """Service for trigger rules."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        repository_id: IdLike,
        name: str,
        event_types: Sequence[str],
        conditions: Optional[Dict[str, Any]] = None,
        actions: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
    ) -> WebhookTriggerModel:
        trigger = WebhookTriggerModel(
            repository_id=parse_uuid(repository_id, "repository_id"),
            name=name,
            event_types=list(event_types),
            conditions=conditions or {},
            actions=actions or {},
            enabled=enabled,
        )
        self.db.add(trigger)
        _commit(self.db, f"trigger {name} already exists")
        self.db.refresh(trigger)
        return trigger

    def get(self, trigger_id: IdLike) -> WebhookTriggerModel:
        trigger = (
            self.db.query(WebhookTriggerModel)
            .filter(WebhookTriggerModel.id == parse_uuid(trigger_id, "trigger_id"))
            .first()
        )
        if trigger is None:
            raise NotFoundError("trigger not found", details={"trigger_id": str(trigger_id)})
        return trigger

    def update(self, trigger_id: IdLike, **fields: Any) -> WebhookTriggerModel:
        """Update allowlisted columns only; anything else is rejected before SQL."""
        _check_columns(fields, TRIGGER_UPDATE_COLUMNS, "webhook_triggers")
        trigger = self.get(trigger_id)
        for key, value in fields.items():
            setattr(trigger, key, value)
        if "updated_at" not in fields:
            trigger.updated_at = utc_now()
        _commit(self.db, "trigger already exists")
        self.db.refresh(trigger)
        return trigger

    def delete(self, trigger_id: IdLike) -> None:
        self.db.delete(self.get(trigger_id))
        self.db.commit()

    def list(
        self,
        repository_id: Optional[IdLike] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[WebhookTriggerModel], int]:
        query = self.db.query(WebhookTriggerModel)
        if repository_id:
            query = query.filter(
                WebhookTriggerModel.repository_id == parse_uuid(repository_id, "repository_id")
            )
        if enabled is not None:
            query = query.filter(WebhookTriggerModel.enabled.is_(enabled))
        return paginate(query.order_by(desc(WebhookTriggerModel.created_at)), page, page_size)

    def for_event(self, repository_id: IdLike, event_type: str) -> List[WebhookTriggerModel]:
        """Enabled triggers of the repository that subscribe to ``event_type``."""
        triggers = (
            self.db.query(WebhookTriggerModel)
            .filter(
                WebhookTriggerModel.repository_id == parse_uuid(repository_id, "repository_id")
            )
            .filter(WebhookTriggerModel.enabled.is_(True))
            .order_by(WebhookTriggerModel.created_at)
            .all()
        )
        # JSON containment is not portable across backends
        return [t for t in triggers if event_type in (t.event_types or [])]


class WebhookDeliveryService:
    """Service for outbound delivery attempts."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> WebhookDeliveryModel:
        delivery = WebhookDeliveryModel(**fields)
        self.db.add(delivery)
        self.db.commit()
        self.db.refresh(delivery)
        return delivery

    def get(self, delivery_id: IdLike) -> WebhookDeliveryModel:
        delivery = (
            self.db.query(WebhookDeliveryModel)
            .filter(WebhookDeliveryModel.id == parse_uuid(delivery_id, "delivery_id"))
            .first()
        )
        if delivery is None:
            raise NotFoundError(
                "delivery not found", details={"delivery_id": str(delivery_id)}
            )
        return delivery

    def list(
        self,
        webhook_id: Optional[IdLike] = None,
        event_id: Optional[IdLike] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple[List[WebhookDeliveryModel], int]:
        query = self.db.query(WebhookDeliveryModel)
        if webhook_id:
            query = query.filter(
                WebhookDeliveryModel.webhook_id == parse_uuid(webhook_id, "webhook_id")
            )
        if event_id:
            query = query.filter(WebhookDeliveryModel.event_id == parse_uuid(event_id, "event_id"))
        if status:
            query = query.filter(WebhookDeliveryModel.status == status)
        return paginate(
            query.order_by(desc(WebhookDeliveryModel.created_at)), page, page_size
        )

    def for_event(self, event_id: IdLike) -> List[WebhookDeliveryModel]:
        return (
            self.db.query(WebhookDeliveryModel)
            .filter(WebhookDeliveryModel.event_id == parse_uuid(event_id, "event_id"))
            .order_by(WebhookDeliveryModel.created_at, WebhookDeliveryModel.attempts)
            .all()
        )


class CompensationService:
    """Persistence for compensation entries."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        action: str,
        resource_id: IdLike,
        payload: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[IdLike] = None,
        max_retries: int = 3,
    ) -> CompensationEntryModel:
        entry = CompensationEntryModel(
            action=action,
            resource_id=parse_uuid(resource_id, "resource_id"),
            payload=payload or {},
            transaction_id=parse_uuid(transaction_id, "transaction_id")
            if transaction_id
            else None,
            max_retries=max_retries,
        )
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def get(self, entry_id: IdLike) -> CompensationEntryModel:
        entry = (
            self.db.query(CompensationEntryModel)
            .filter(CompensationEntryModel.id == parse_uuid(entry_id, "compensation_id"))
            .first()
        )
        if entry is None:
            raise NotFoundError(
                "compensation entry not found", details={"compensation_id": str(entry_id)}
            )
        return entry

    def save(self, entry: CompensationEntryModel) -> CompensationEntryModel:
        entry.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def list(
        self,
        status: Optional[str] = None,
        transaction_id: Optional[IdLike] = None,
    ) -> List[CompensationEntryModel]:
        query = self.db.query(CompensationEntryModel)
        if status:
            query = query.filter(CompensationEntryModel.status == status)
        if transaction_id:
            query = query.filter(
                CompensationEntryModel.transaction_id
                == parse_uuid(transaction_id, "transaction_id")
            )
        return query.order_by(CompensationEntryModel.created_at).all()

    def delete_executed(self) -> int:
        count = (
            self.db.query(CompensationEntryModel)
            .filter(CompensationEntryModel.status == "executed")
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return count


class ProjectService:
    """Minimal project rows managed by the transactor."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        tenant_id: IdLike,
        name: str,
        key: str,
        created_by: IdLike,
        description: Optional[str] = None,
    ) -> ProjectModel:
        """Insert a project together with its owner membership."""
        owner = parse_uuid(created_by, "user_id")
        project = ProjectModel(
            tenant_id=parse_uuid(tenant_id, "tenant_id"),
            name=name,
            key=key,
            description=description,
            created_by=owner,
        )
        project.members.append(ProjectMemberModel(user_id=owner, role="owner"))
        self.db.add(project)
        _commit(self.db, f"project {name} already exists")
        self.db.refresh(project)
        return project

    def get(self, project_id: IdLike) -> ProjectModel:
        project = (
            self.db.query(ProjectModel)
            .filter(ProjectModel.id == parse_uuid(project_id, "project_id"))
            .first()
        )
        if project is None:
            raise NotFoundError("project not found", details={"project_id": str(project_id)})
        return project

    def is_member(self, project_id: IdLike, user_id: IdLike) -> bool:
        return (
            self.db.query(ProjectMemberModel)
            .filter(ProjectMemberModel.project_id == parse_uuid(project_id, "project_id"))
            .filter(ProjectMemberModel.user_id == parse_uuid(user_id, "user_id"))
            .first()
            is not None
        )

    def delete(self, project_id: IdLike) -> bool:
        """Hard delete a project and its members; False when already gone."""
        project = (
            self.db.query(ProjectModel)
            .filter(ProjectModel.id == parse_uuid(project_id, "project_id"))
            .first()
        )
        if project is None:
            return False
        self.db.delete(project)
        self.db.commit()
        return True


class DomainEventService:
    """Store of domain events published by the transactor."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        event_type: str,
        aggregate_id: IdLike,
        tenant_id: IdLike,
        payload: Optional[Dict[str, Any]] = None,
        user_id: Optional[IdLike] = None,
    ) -> DomainEventModel:
        event = DomainEventModel(
            type=event_type,
            aggregate_id=parse_uuid(aggregate_id, "aggregate_id"),
            tenant_id=parse_uuid(tenant_id, "tenant_id"),
            user_id=parse_uuid(user_id, "user_id") if user_id else None,
            payload=payload or {},
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        return event

    def pending(self, limit: int = 100, max_retries: int = 5) -> List[DomainEventModel]:
        return (
            self.db.query(DomainEventModel)
            .filter(DomainEventModel.processed.is_(False))
            .filter(DomainEventModel.retry_count < max_retries)
            .order_by(DomainEventModel.created_at)
            .limit(limit)
            .all()
        )

    def list(self, aggregate_id: Optional[IdLike] = None) -> List[DomainEventModel]:
        query = self.db.query(DomainEventModel)
        if aggregate_id:
            query = query.filter(
                DomainEventModel.aggregate_id == parse_uuid(aggregate_id, "aggregate_id")
            )
        return query.order_by(DomainEventModel.created_at).all()

    def mark_processed(self, event_id: IdLike, error: Optional[str] = None) -> DomainEventModel:
        event = (
            self.db.query(DomainEventModel)
            .filter(DomainEventModel.id == parse_uuid(event_id, "event_id"))
            .first()
        )
        if event is None:
            raise NotFoundError("domain event not found", details={"event_id": str(event_id)})
        if error:
            event.error = error
            event.retry_count = (event.retry_count or 0) + 1
        else:
            event.processed = True
            event.error = None
        event.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(event)
        return event
