"""
Request models for the repository API.
"""

from __future__ import annotations

import base64
import binascii
from typing import Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, constr, model_validator

from ..errors import ValidationError

RepositoryName = constr(min_length=1, max_length=255, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
RefName = constr(min_length=1, max_length=255, pattern=r"^[^-]")
Visibility = Literal["public", "private", "internal"]


class RepositoryCreate(BaseModel):
    """Create a repository; repeating an identical request is a no-op."""

    project_id: UUID
    name: RepositoryName
    description: Optional[constr(max_length=4000)] = None
    visibility: Visibility = "private"
    default_branch: Optional[RefName] = None
    init_readme: bool = False

    @model_validator(mode="after")
    def reject_git_suffix(self) -> "RepositoryCreate":
        if self.name.lower().endswith(".git"):
            raise ValueError("name must not end with .git")
        return self


class RepositoryUpdate(BaseModel):
    name: Optional[RepositoryName] = None
    description: Optional[constr(max_length=4000)] = None
    visibility: Optional[Visibility] = None
    default_branch: Optional[RefName] = None


class BranchCreate(BaseModel):
    name: RefName
    from_sha: Optional[constr(min_length=1, max_length=255)] = None
    from_branch: Optional[RefName] = None
    is_protected: bool = False


class DefaultBranchUpdate(BaseModel):
    branch: RefName


class MergeRequest(BaseModel):
    source: RefName
    target: RefName
    author_name: Optional[constr(min_length=1, max_length=255)] = None
    author_email: Optional[constr(min_length=3, max_length=255)] = None


class FileChange(BaseModel):
    """One file of a commit. ``content`` None deletes the path."""

    path: constr(min_length=1, max_length=1024)
    content: Optional[str] = None
    encoding: Literal["utf-8", "base64"] = "utf-8"

    def data(self) -> Optional[bytes]:
        if self.content is None:
            return None
        if self.encoding == "base64":
            try:
                return base64.b64decode(self.content, validate=True)
            except (binascii.Error, ValueError):
                raise ValidationError(f"invalid base64 content for {self.path}") from None
        return self.content.encode("utf-8")


class CommitCreate(BaseModel):
    branch: RefName
    message: constr(min_length=1, max_length=65536)
    author_name: constr(min_length=1, max_length=255)
    author_email: constr(min_length=3, max_length=255)
    files: List[FileChange] = Field(min_length=1)

    def file_map(self) -> Dict[str, Optional[bytes]]:
        return {f.path: f.data() for f in self.files}


class TagCreate(BaseModel):
    name: RefName
    target: constr(min_length=1, max_length=255)
    message: Optional[str] = None
    tagger_name: Optional[constr(min_length=1, max_length=255)] = None
    tagger_email: Optional[constr(min_length=3, max_length=255)] = None


class WebhookCreate(BaseModel):
    url: constr(min_length=1, max_length=512, pattern=r"^https?://")
    secret: Optional[constr(min_length=1, max_length=255)] = None
    events: List[str] = Field(default_factory=list)
    is_active: bool = True
