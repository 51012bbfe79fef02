"""
Request models for projects and cross-service transactions.
"""

from __future__ import annotations

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, constr

from .transactor import RepositoryRequest


class RepositorySpec(BaseModel):
    name: constr(min_length=1, max_length=255, pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    description: Optional[constr(max_length=4000)] = None
    visibility: Literal["public", "private", "internal"] = "private"
    default_branch: Optional[constr(min_length=1, max_length=255)] = None
    init_readme: bool = False

    def to_request(self) -> RepositoryRequest:
        return RepositoryRequest(
            name=self.name,
            description=self.description,
            visibility=self.visibility,
            default_branch=self.default_branch,
            init_readme=self.init_readme,
        )


class ProjectCreate(BaseModel):
    """A new project together with its first repository."""

    tenant_id: UUID
    user_id: UUID
    name: constr(min_length=1, max_length=255)
    key: constr(min_length=1, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_-]*$")
    description: Optional[constr(max_length=4000)] = None
    repository: RepositorySpec


class ProjectRepositoryCreate(BaseModel):
    user_id: UUID
    repository: RepositorySpec
