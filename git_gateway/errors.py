"""
Git Gateway error hierarchy.

Every error raised across the service boundary is a ``GatewayError``. Each
subclass carries the HTTP status and the machine-readable code that the API
envelope reports, so handlers only need ``classify_error`` to translate
lower-layer failures.
"""

from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, NoResultFound, OperationalError, SQLAlchemyError


class GatewayError(Exception):
    """Base error for Git Gateway components."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    category: str = "internal"

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GatewayError):
    """Malformed identifier, rejected input or schema violation."""

    status_code = 400
    code = "VALIDATION_ERROR"
    category = "validation"


class NoChangesError(ValidationError):
    """A commit request would not change the branch tree."""

    code = "NO_CHANGES"

    def __init__(self, message: str = "no changes to commit", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AuthError(GatewayError):
    """Missing or invalid credentials."""

    status_code = 401
    code = "UNAUTHORIZED"
    category = "auth"


class ForbiddenError(GatewayError):
    """Access check failed."""

    status_code = 403
    code = "FORBIDDEN"
    category = "forbidden"


class NotFoundError(GatewayError):
    """Entity lookup missed, soft-deleted rows included."""

    status_code = 404
    code = "NOT_FOUND"
    category = "not_found"


class ConflictError(GatewayError):
    """Unique constraint violation or non-idempotent repeat."""

    status_code = 409
    code = "CONFLICT"
    category = "conflict"


class DependencyError(GatewayError):
    """Git executor, database or a downstream service failed."""

    status_code = 500
    code = "DEPENDENCY_ERROR"
    category = "dependency"


class UpstreamError(DependencyError):
    """A peer service answered with an error."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class RepositoryBusyError(GatewayError):
    """The per-repository lock could not be acquired before its deadline."""

    status_code = 503
    code = "REPOSITORY_BUSY"
    category = "transient_busy"

    def __init__(self, repository_id: str, timeout: float) -> None:
        super().__init__(
            f"repository {repository_id} is busy",
            details={"repository_id": repository_id, "timeout": timeout},
        )
        self.repository_id = repository_id
        self.timeout = timeout


# Git layer


class GitError(DependencyError):
    """A git invocation failed."""

    code = "GIT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        args: Optional[list] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = args or []
        self.returncode = returncode
        self.stderr = stderr


class GitTimeoutError(GitError):
    """A git invocation exceeded its deadline and was killed."""

    code = "GIT_TIMEOUT"


class GitNotFoundError(NotFoundError):
    """A ref, path or object does not exist in the repository."""


class GitConflictError(ConflictError):
    """A ref already exists."""


class GitMergeConflictError(ConflictError):
    """A merge could not be completed automatically."""

    code = "MERGE_CONFLICT"

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


def classify_error(exc: BaseException) -> GatewayError:
    """Translate an arbitrary exception into the gateway taxonomy."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, IntegrityError):
        return ConflictError("resource already exists")
    if isinstance(exc, NoResultFound):
        return NotFoundError("resource not found")
    if isinstance(exc, OperationalError):
        return DependencyError("database unavailable")
    if isinstance(exc, SQLAlchemyError):
        return DependencyError("database error")
    if isinstance(exc, TimeoutError):
        return DependencyError("operation timed out")
    return GatewayError("internal server error")
