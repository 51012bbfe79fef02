"""
Enumerations for the webhook pipeline.
"""

from enum import Enum


class EventType(str, Enum):
    """Canonical inbound event types; wire values use underscores."""

    PUSH = "push"
    TAG_PUSH = "tag_push"
    BRANCH_PUSH = "branch_push"
    PULL_REQUEST = "pull_request"
    BRANCH_CREATE = "branch_create"
    BRANCH_DELETE = "branch_delete"
    TAG_CREATE = "tag_create"
    TAG_DELETE = "tag_delete"
    COMMIT = "commit"
    REPOSITORY_CREATE = "repository_create"
    REPOSITORY_UPDATE = "repository_update"
    REPOSITORY_DELETE = "repository_delete"

    @classmethod
    def values(cls) -> frozenset:
        return frozenset(member.value for member in cls)


PUSH_EVENTS = frozenset({EventType.PUSH.value, EventType.BRANCH_PUSH.value, EventType.TAG_PUSH.value})
TAG_EVENTS = frozenset(
    {EventType.TAG_PUSH.value, EventType.TAG_CREATE.value, EventType.TAG_DELETE.value}
)


class WebhookSource(str, Enum):
    GIT = "git"
    GITHUB = "github"
    GITLAB = "gitlab"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class NotificationType(str, Enum):
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    DINGTALK = "dingtalk"
    WECHAT = "wechat"
