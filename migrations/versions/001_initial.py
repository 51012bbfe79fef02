"""Create gateway tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers
revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None

LIVE = sa.text("deleted_at IS NULL")


def _timestamps(*, updated: bool = True):
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        )
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            )
        )
    return columns


def _repository_fk():
    return sa.Column(
        "repository_id",
        UUID(as_uuid=True),
        sa.ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    # Repositories
    op.create_table(
        "repositories",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("project_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "visibility",
            sa.Enum("public", "private", "internal", name="repository_visibility"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("active", "archived", "deleted", name="repository_status"),
            nullable=False,
        ),
        sa.Column("default_branch", sa.String(255), nullable=False),
        sa.Column("git_path", sa.String(512), nullable=False),
        sa.Column("clone_url", sa.String(512), nullable=True),
        sa.Column("ssh_url", sa.String(512), nullable=True),
        sa.Column("size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("commit_count", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("branch_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tag_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_pushed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_repositories_project_id", "repositories", ["project_id"])
    op.create_index("ix_repositories_status", "repositories", ["status"])
    op.create_index("ix_repositories_deleted_at", "repositories", ["deleted_at"])
    op.create_index("ix_repositories_project_name", "repositories", ["project_id", "name"])
    op.create_index("ix_repositories_created_at", "repositories", ["created_at"])
    op.create_index(
        "uq_repositories_project_name_live",
        "repositories",
        ["project_id", "name"],
        unique=True,
        postgresql_where=LIVE,
        sqlite_where=LIVE,
    )
    op.create_index(
        "uq_repositories_git_path_live",
        "repositories",
        ["git_path"],
        unique=True,
        postgresql_where=LIVE,
        sqlite_where=LIVE,
    )

    # Branches
    op.create_table(
        "branches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _repository_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("commit_sha", sa.String(40), nullable=False),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_protected", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_branches_repository_id", "branches", ["repository_id"])
    op.create_index("ix_branches_deleted_at", "branches", ["deleted_at"])
    op.create_index(
        "uq_branches_repository_name_live",
        "branches",
        ["repository_id", "name"],
        unique=True,
        postgresql_where=LIVE,
        sqlite_where=LIVE,
    )

    # Commits and their files
    op.create_table(
        "commits",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _repository_fk(),
        sa.Column("sha", sa.String(40), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("author", sa.String(255), nullable=False),
        sa.Column("author_email", sa.String(255), nullable=False),
        sa.Column("committer", sa.String(255), nullable=False),
        sa.Column("committer_email", sa.String(255), nullable=False),
        sa.Column("parent_shas", sa.JSON, nullable=False),
        sa.Column("tree_sha", sa.String(40), nullable=False),
        sa.Column("added_lines", sa.Integer, nullable=False, server_default="0"),
        sa.Column("deleted_lines", sa.Integer, nullable=False, server_default="0"),
        sa.Column("changed_files", sa.Integer, nullable=False, server_default="0"),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("repository_id", "sha", name="uq_commits_repository_sha"),
    )
    op.create_index("ix_commits_repository_id", "commits", ["repository_id"])
    op.create_index("ix_commits_repository_sha", "commits", ["repository_id", "sha"])
    op.create_index("ix_commits_committed_at", "commits", ["committed_at"])

    op.create_table(
        "commit_files",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "commit_id",
            UUID(as_uuid=True),
            sa.ForeignKey("commits.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("file_path", sa.String(1024), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "added", "modified", "deleted", "renamed", "copied", name="commit_file_status"
            ),
            nullable=False,
        ),
        sa.Column("old_path", sa.String(1024), nullable=True),
        sa.Column("added_lines", sa.Integer, nullable=False, server_default="0"),
        sa.Column("deleted_lines", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_commit_files_commit_id", "commit_files", ["commit_id"])

    # Tags
    op.create_table(
        "tags",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _repository_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("commit_sha", sa.String(40), nullable=False),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("tagger", sa.String(255), nullable=True),
        sa.Column("tagger_email", sa.String(255), nullable=True),
        sa.Column("tagged_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("repository_id", "name", name="uq_tags_repository_name"),
    )
    op.create_index("ix_tags_repository_id", "tags", ["repository_id"])
    op.create_index("ix_tags_commit_sha", "tags", ["commit_sha"])
    op.create_index("ix_tags_tagged_at", "tags", ["tagged_at"])

    # Outbound subscriptions
    op.create_table(
        "webhooks",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _repository_fk(),
        sa.Column("url", sa.String(512), nullable=False),
        sa.Column("secret", sa.String(255), nullable=True),
        sa.Column("events", sa.JSON, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_webhooks_repository_id", "webhooks", ["repository_id"])
    op.create_index("ix_webhooks_is_active", "webhooks", ["is_active"])

    # Webhook events, triggers and deliveries
    op.create_table(
        "webhook_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _repository_fk(),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_data", sa.JSON, nullable=False),
        sa.Column("source", sa.String(50), nullable=False, server_default="git"),
        sa.Column("signature", sa.Text, nullable=True),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_webhook_events_repository_id", "webhook_events", ["repository_id"])
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_source", "webhook_events", ["source"])
    op.create_index(
        "ix_webhook_events_processed_created", "webhook_events", ["processed", "created_at"]
    )

    op.create_table(
        "webhook_triggers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _repository_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("event_types", sa.JSON, nullable=False),
        sa.Column("conditions", sa.JSON, nullable=False),
        sa.Column("actions", sa.JSON, nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "repository_id", "name", name="uq_webhook_triggers_repository_name"
        ),
    )
    op.create_index("ix_webhook_triggers_repository_id", "webhook_triggers", ["repository_id"])
    op.create_index("ix_webhook_triggers_enabled", "webhook_triggers", ["enabled"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "webhook_id",
            UUID(as_uuid=True),
            sa.ForeignKey("webhook_triggers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("webhook_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("method", sa.String(10), nullable=False, server_default="POST"),
        sa.Column(
            "status",
            sa.Enum("pending", "success", "failed", "retrying", name="delivery_status"),
            nullable=False,
        ),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("request_body", sa.Text, nullable=True),
        sa.Column("response_body", sa.Text, nullable=True),
        sa.Column("duration", sa.BigInteger, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_webhook_deliveries_webhook_id", "webhook_deliveries", ["webhook_id"])
    op.create_index("ix_webhook_deliveries_event_id", "webhook_deliveries", ["event_id"])
    op.create_index("ix_webhook_deliveries_status", "webhook_deliveries", ["status"])

    # Cross-service transactions
    op.create_table(
        "compensation_entries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("transaction_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "action",
            sa.Enum(
                "delete_repository",
                "rollback_project",
                "notify_failure",
                name="compensation_action",
            ),
            nullable=False,
        ),
        sa.Column("resource_id", UUID(as_uuid=True), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "executed", "failed", name="compensation_status"),
            nullable=False,
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        *_timestamps(),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_compensation_entries_transaction_id", "compensation_entries", ["transaction_id"]
    )
    op.create_index("ix_compensation_entries_status", "compensation_entries", ["status"])

    op.create_table(
        "projects",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("key", sa.String(64), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "rolled_back", name="project_status"),
            nullable=False,
        ),
        sa.Column("created_by", UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_projects_tenant_name"),
    )
    op.create_index("ix_projects_tenant_id", "projects", ["tenant_id"])

    op.create_table(
        "project_members",
        sa.Column(
            "project_id",
            UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("user_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("role", sa.String(50), nullable=False, server_default="owner"),
        *_timestamps(updated=False),
    )

    op.create_table(
        "domain_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("aggregate_id", UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_domain_events_type", "domain_events", ["type"])
    op.create_index("ix_domain_events_tenant_id", "domain_events", ["tenant_id"])
    op.create_index("ix_domain_events_processed", "domain_events", ["processed"])


def downgrade() -> None:
    for table in (
        "domain_events",
        "project_members",
        "projects",
        "compensation_entries",
        "webhook_deliveries",
        "webhook_triggers",
        "webhook_events",
        "webhooks",
        "tags",
        "commit_files",
        "commits",
        "branches",
        "repositories",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "project_status",
            "compensation_status",
            "compensation_action",
            "delivery_status",
            "commit_file_status",
            "repository_status",
            "repository_visibility",
        ):
            sa.Enum(name=enum_name).drop(bind, checkfirst=True)
