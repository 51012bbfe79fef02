"""
SQLAlchemy models for Git Gateway.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .base import Base

ZERO_SHA = "0" * 40


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


class RepositoryModel(Base):
    """A bare Git repository and its metadata."""

    __tablename__ = "repositories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    visibility = Column(
        Enum("public", "private", "internal", name="repository_visibility"),
        nullable=False,
        default="private",
    )
    status = Column(
        Enum("active", "archived", "deleted", name="repository_status"),
        nullable=False,
        default="active",
        index=True,
    )
    default_branch = Column(String(255), nullable=False, default="main")
    git_path = Column(String(512), nullable=False)
    clone_url = Column(String(512), nullable=True)
    ssh_url = Column(String(512), nullable=True)

    # Aggregates
    size = Column(BigInteger, nullable=False, default=0)
    commit_count = Column(BigInteger, nullable=False, default=0)
    branch_count = Column(Integer, nullable=False, default=0)
    tag_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_pushed_at = Column(DateTime(timezone=True), nullable=True)

    branches = relationship(
        "BranchModel", back_populates="repository", cascade="all, delete-orphan", passive_deletes=True
    )
    commits = relationship(
        "CommitModel", back_populates="repository", cascade="all, delete-orphan", passive_deletes=True
    )
    tags = relationship(
        "TagModel", back_populates="repository", cascade="all, delete-orphan", passive_deletes=True
    )
    webhooks = relationship("WebhookModel", cascade="all, delete-orphan", passive_deletes=True)
    events = relationship("WebhookEventModel", cascade="all, delete-orphan", passive_deletes=True)
    triggers = relationship(
        "WebhookTriggerModel", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        # (project_id, name) and git_path are unique among live rows only
        Index(
            "uq_repositories_project_name_live",
            "project_id",
            "name",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index(
            "uq_repositories_git_path_live",
            "git_path",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_repositories_project_name", "project_id", "name"),
        Index("ix_repositories_created_at", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "project_id": str(self.project_id),
            "name": self.name,
            "description": self.description,
            "visibility": self.visibility,
            "status": self.status,
            "default_branch": self.default_branch,
            "git_path": self.git_path,
            "clone_url": self.clone_url,
            "ssh_url": self.ssh_url,
            "size": self.size or 0,
            "commit_count": self.commit_count or 0,
            "branch_count": self.branch_count or 0,
            "tag_count": self.tag_count or 0,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
            "last_pushed_at": _iso(self.last_pushed_at),
        }


class BranchModel(Base):
    """A branch row; soft-deleted via deleted_at."""

    __tablename__ = "branches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    commit_sha = Column(String(40), nullable=False, default=ZERO_SHA)
    is_default = Column(Boolean, nullable=False, default=False)
    is_protected = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)

    repository = relationship("RepositoryModel", back_populates="branches")

    __table_args__ = (
        Index(
            "uq_branches_repository_name_live",
            "repository_id",
            "name",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "repository_id": str(self.repository_id),
            "name": self.name,
            "commit_sha": self.commit_sha,
            "is_default": bool(self.is_default),
            "is_protected": bool(self.is_protected),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class CommitModel(Base):
    """A commit recorded by the gateway."""

    __tablename__ = "commits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sha = Column(String(40), nullable=False)
    message = Column(Text, nullable=False, default="")
    author = Column(String(255), nullable=False)
    author_email = Column(String(255), nullable=False)
    committer = Column(String(255), nullable=False)
    committer_email = Column(String(255), nullable=False)
    parent_shas = Column(JSON, nullable=False, default=list)
    tree_sha = Column(String(40), nullable=False)
    added_lines = Column(Integer, nullable=False, default=0)
    deleted_lines = Column(Integer, nullable=False, default=0)
    changed_files = Column(Integer, nullable=False, default=0)
    committed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    repository = relationship("RepositoryModel", back_populates="commits")
    files = relationship(
        "CommitFileModel",
        back_populates="commit",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CommitFileModel.file_path",
    )

    __table_args__ = (
        UniqueConstraint("repository_id", "sha", name="uq_commits_repository_sha"),
        Index("ix_commits_repository_sha", "repository_id", "sha"),
        Index("ix_commits_committed_at", "committed_at"),
    )

    def to_dict(self, include_files: bool = False) -> Dict[str, Any]:
        """Convert model to dictionary."""
        data = {
            "id": str(self.id),
            "repository_id": str(self.repository_id),
            "sha": self.sha,
            "message": self.message,
            "author": self.author,
            "author_email": self.author_email,
            "committer": self.committer,
            "committer_email": self.committer_email,
            "parent_shas": list(self.parent_shas or []),
            "tree_sha": self.tree_sha,
            "added_lines": self.added_lines or 0,
            "deleted_lines": self.deleted_lines or 0,
            "changed_files": self.changed_files or 0,
            "committed_at": _iso(self.committed_at),
            "created_at": _iso(self.created_at),
        }
        if include_files:
            data["files"] = [f.to_dict() for f in self.files]
        return data


class CommitFileModel(Base):
    """A file touched by a commit."""

    __tablename__ = "commit_files"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    commit_id = Column(
        UUID(as_uuid=True),
        ForeignKey("commits.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_path = Column(String(1024), nullable=False)
    status = Column(
        Enum("added", "modified", "deleted", "renamed", "copied", name="commit_file_status"),
        nullable=False,
    )
    old_path = Column(String(1024), nullable=True)
    added_lines = Column(Integer, nullable=False, default=0)
    deleted_lines = Column(Integer, nullable=False, default=0)

    commit = relationship("CommitModel", back_populates="files")

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "path": self.file_path,
            "status": self.status,
            "old_path": self.old_path,
            "added_lines": self.added_lines or 0,
            "deleted_lines": self.deleted_lines or 0,
        }


class TagModel(Base):
    """A lightweight or annotated tag."""

    __tablename__ = "tags"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    commit_sha = Column(String(40), nullable=False, index=True)
    message = Column(Text, nullable=True)
    tagger = Column(String(255), nullable=True)
    tagger_email = Column(String(255), nullable=True)
    tagged_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    repository = relationship("RepositoryModel", back_populates="tags")

    __table_args__ = (
        UniqueConstraint("repository_id", "name", name="uq_tags_repository_name"),
        Index("ix_tags_tagged_at", "tagged_at"),
    )

    @property
    def annotated(self) -> bool:
        return bool(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "repository_id": str(self.repository_id),
            "name": self.name,
            "commit_sha": self.commit_sha,
            "message": self.message,
            "annotated": self.annotated,
            "tagger": self.tagger,
            "tagger_email": self.tagger_email,
            "tagged_at": _iso(self.tagged_at),
            "created_at": _iso(self.created_at),
        }


class WebhookModel(Base):
    """Outbound webhook subscription of a repository."""

    __tablename__ = "webhooks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url = Column(String(512), nullable=False)
    secret = Column(String(255), nullable=True)
    events = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary. The secret is never exposed."""
        return {
            "id": str(self.id),
            "repository_id": str(self.repository_id),
            "url": self.url,
            "has_secret": bool(self.secret),
            "events": list(self.events or []),
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class WebhookEventModel(Base):
    """Inbound webhook event; immutable once processed."""

    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(String(50), nullable=False, index=True)
    event_data = Column(JSON, nullable=False, default=dict)
    source = Column(String(50), nullable=False, default="git", index=True)
    signature = Column(Text, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    # set while a worker holds the event; a stale value may be reclaimed
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_webhook_events_processed_created", "processed", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "repository_id": str(self.repository_id),
            "event_type": self.event_type,
            "event_data": self.event_data or {},
            "source": self.source,
            "signature": self.signature,
            "processed": bool(self.processed),
            "processed_at": _iso(self.processed_at),
            "error_message": self.error_message,
            "retry_count": self.retry_count or 0,
            "processing_started_at": _iso(self.processing_started_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class WebhookTriggerModel(Base):
    """Rule binding event types and conditions to actions."""

    __tablename__ = "webhook_triggers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        UUID(as_uuid=True),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    event_types = Column(JSON, nullable=False, default=list)
    conditions = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=dict)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    deliveries = relationship(
        "WebhookDeliveryModel", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("repository_id", "name", name="uq_webhook_triggers_repository_name"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "repository_id": str(self.repository_id),
            "name": self.name,
            "event_types": list(self.event_types or []),
            "conditions": self.conditions or {},
            "actions": self.actions or {},
            "enabled": bool(self.enabled),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class WebhookDeliveryModel(Base):
    """One outbound attempt of a call_webhook action."""

    __tablename__ = "webhook_deliveries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_id = Column(
        UUID(as_uuid=True),
        ForeignKey("webhook_triggers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_id = Column(
        UUID(as_uuid=True),
        ForeignKey("webhook_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url = Column(Text, nullable=False)
    method = Column(String(10), nullable=False, default="POST")
    status = Column(
        Enum("pending", "success", "failed", "retrying", name="delivery_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    status_code = Column(Integer, nullable=True)
    request_body = Column(Text, nullable=True)
    response_body = Column(Text, nullable=True)
    duration = Column(BigInteger, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "webhook_id": str(self.webhook_id),
            "event_id": str(self.event_id),
            "url": self.url,
            "method": self.method,
            "status": self.status,
            "status_code": self.status_code,
            "request_body": self.request_body,
            "response_body": self.response_body,
            "duration": self.duration,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_retry_at": _iso(self.next_retry_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class CompensationEntryModel(Base):
    """Recorded inverse operation of a cross-service transaction."""

    __tablename__ = "compensation_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    action = Column(
        Enum(
            "delete_repository",
            "rollback_project",
            "notify_failure",
            name="compensation_action",
        ),
        nullable=False,
    )
    resource_id = Column(UUID(as_uuid=True), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        Enum("pending", "executed", "failed", name="compensation_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    executed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "transaction_id": _str(self.transaction_id),
            "action": self.action,
            "resource_id": str(self.resource_id),
            "payload": self.payload or {},
            "status": self.status,
            "retry_count": self.retry_count or 0,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "executed_at": _iso(self.executed_at),
        }


class ProjectModel(Base):
    """Minimal project row created by the cross-service transactor."""

    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    key = Column(String(64), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    status = Column(
        Enum("active", "rolled_back", name="project_status"),
        nullable=False,
        default="active",
    )
    created_by = Column(UUID(as_uuid=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    members = relationship(
        "ProjectMemberModel", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_projects_tenant_name"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "name": self.name,
            "key": self.key,
            "description": self.description,
            "status": self.status,
            "created_by": str(self.created_by),
            "members": [m.to_dict() for m in self.members],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ProjectMemberModel(Base):
    """Membership of a user in a project."""

    __tablename__ = "project_members"

    project_id = Column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(UUID(as_uuid=True), primary_key=True)
    role = Column(String(50), nullable=False, default="owner")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {"user_id": str(self.user_id), "role": self.role}


class DomainEventModel(Base):
    """Domain event published by the transactor."""

    __tablename__ = "domain_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(String(100), nullable=False, index=True)
    aggregate_id = Column(UUID(as_uuid=True), nullable=False)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": str(self.id),
            "type": self.type,
            "aggregate_id": str(self.aggregate_id),
            "tenant_id": str(self.tenant_id),
            "user_id": _str(self.user_id),
            "payload": self.payload or {},
            "processed": bool(self.processed),
            "error": self.error,
            "retry_count": self.retry_count or 0,
            "created_at": _iso(self.created_at),
        }


__all__: List[str] = [
    "ZERO_SHA",
    "utc_now",
    "RepositoryModel",
    "BranchModel",
    "CommitModel",
    "CommitFileModel",
    "TagModel",
    "WebhookModel",
    "WebhookEventModel",
    "WebhookTriggerModel",
    "WebhookDeliveryModel",
    "CompensationEntryModel",
    "ProjectModel",
    "ProjectMemberModel",
    "DomainEventModel",
]
