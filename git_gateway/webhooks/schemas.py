"""
Request models for webhook events and triggers.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, constr, model_validator

from .enums import NotificationType


class FileChangeFilter(BaseModel):
    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)


class TriggerConditions(BaseModel):
    """Regex patterns for refs, authors and messages; globs for files."""

    branches: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)
    authors: List[str] = Field(default_factory=list)
    commit_message: Optional[str] = None
    file_changes: Optional[FileChangeFilter] = None

    @model_validator(mode="after")
    def compile_patterns(self) -> "TriggerConditions":
        patterns = self.branches + self.tags + self.authors
        if self.commit_message:
            patterns.append(self.commit_message)
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid pattern {pattern!r}: {exc}") from None
        return self


class StartPipelineConfig(BaseModel):
    pipeline_id: constr(min_length=1, max_length=255)
    variables: Dict[str, str] = Field(default_factory=dict)
    environment: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class SendNotificationConfig(BaseModel):
    type: NotificationType = NotificationType.WEBHOOK
    recipients: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    template: Optional[str] = None


class CallWebhookConfig(BaseModel):
    url: constr(min_length=1, max_length=2048, pattern=r"^https?://")
    method: Literal["POST", "PUT", "PATCH", "GET", "DELETE"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)
    secret: Optional[str] = None


class TriggerActions(BaseModel):
    start_pipeline: Optional[StartPipelineConfig] = None
    send_notification: Optional[SendNotificationConfig] = None
    call_webhook: Optional[CallWebhookConfig] = None


class WebhookTriggerCreate(BaseModel):
    repository_id: UUID
    name: constr(min_length=1, max_length=255)
    event_types: List[constr(min_length=1, max_length=50)] = Field(min_length=1)
    conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    actions: TriggerActions = Field(default_factory=TriggerActions)
    enabled: bool = True


class WebhookTriggerUpdate(BaseModel):
    name: Optional[constr(min_length=1, max_length=255)] = None
    event_types: Optional[List[constr(min_length=1, max_length=50)]] = None
    conditions: Optional[TriggerConditions] = None
    actions: Optional[TriggerActions] = None
    enabled: Optional[bool] = None


class WebhookEventCreate(BaseModel):
    repository_id: UUID
    event_type: constr(min_length=1, max_length=50)
    event_data: Dict[str, Any] = Field(default_factory=dict)
    source: Literal["git", "github", "gitlab"] = "git"
    signature: Optional[str] = None
