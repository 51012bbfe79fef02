"""
Async client for the Git Gateway HTTP API.

Used by peer services (and by the transactor) to reach the gateway. Responses
are unwrapped from the ``{success, message, data, error?}`` envelope. The
client never retries; callers own retry policy.
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog

from .config import get_settings
from .errors import DependencyError, UpstreamError

logger = structlog.get_logger()


class ApiError(UpstreamError):
    """The gateway answered with HTTP >= 400."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


class ApiFailure(UpstreamError):
    """The gateway answered 2xx with ``success=false``."""


class TransportError(DependencyError):
    """The request never produced a response (connect, timeout, protocol)."""


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class GitGatewayClient:
    """
    Integration client for the gateway API.

    ``transport`` lets tests substitute ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.gateway_api_token
        self.timeout = timeout or settings.peer_client_timeout
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "GitGatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self.client.request(
                method,
                path,
                json=json,
                params=params,
                timeout=timeout or self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("gateway request failed", method=method, path=path, error=str(exc))
            raise TransportError(f"{method} {path} failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            message = response.reason_phrase or "request failed"
            try:
                message = response.json().get("message") or message
            except (ValueError, AttributeError):
                pass
            raise ApiError(response.status_code, message)
        return response

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        return self._unwrap(await self._send(method, path, **kwargs))

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        try:
            envelope = response.json()
        except ValueError:
            raise ApiFailure("response is not valid JSON") from None
        if not isinstance(envelope, dict) or not envelope.get("success", False):
            message = envelope.get("message") if isinstance(envelope, dict) else None
            raise ApiFailure(message or "request was not successful")
        return envelope.get("data")

    # =========================================================================
    # Repositories
    # =========================================================================

    async def ensure_repository(
        self,
        project_id: str,
        name: str,
        description: Optional[str] = None,
        visibility: str = "private",
        default_branch: Optional[str] = None,
        init_readme: bool = False,
        timeout: Optional[float] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Create a repository and return ``(repository, created)``.

        ``created`` is False when the gateway answered 200 with an identical
        repository that already existed.
        """
        body = {
            "project_id": str(project_id),
            "name": name,
            "description": description,
            "visibility": visibility,
            "default_branch": default_branch,
            "init_readme": init_readme,
        }
        body = {k: v for k, v in body.items() if v is not None}
        response = await self._send("POST", "/api/v1/repositories", json=body, timeout=timeout)
        return self._unwrap(response), response.status_code == 201

    async def create_repository(self, project_id: str, name: str, **kwargs: Any) -> Dict[str, Any]:
        repository, _ = await self.ensure_repository(project_id, name, **kwargs)
        return repository

    async def get_repository(self, repository_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/api/v1/repositories/{_segment(repository_id)}", timeout=timeout
        )

    async def update_repository(self, repository_id: str, **changes: Any) -> Dict[str, Any]:
        return await self._request(
            "PUT", f"/api/v1/repositories/{_segment(repository_id)}", json=changes
        )

    async def delete_repository(self, repository_id: str, timeout: Optional[float] = None) -> None:
        await self._request(
            "DELETE", f"/api/v1/repositories/{_segment(repository_id)}", timeout=timeout
        )

    async def list_repositories(
        self, project_id: Optional[str] = None, page: int = 1, page_size: int = 20
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/api/v1/repositories",
            params={"project_id": project_id, "page": page, "page_size": page_size},
        )

    async def search_repositories(
        self, query: str, project_id: Optional[str] = None, page: int = 1, page_size: int = 20
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/api/v1/repositories/search",
            params={"q": query, "project_id": project_id, "page": page, "page_size": page_size},
        )

    async def get_repository_stats(self, repository_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/api/v1/repositories/{_segment(repository_id)}/stats"
        )

    # =========================================================================
    # Branches
    # =========================================================================

    async def create_branch(
        self,
        repository_id: str,
        name: str,
        from_sha: Optional[str] = None,
        from_branch: Optional[str] = None,
        is_protected: bool = False,
    ) -> Dict[str, Any]:
        body = {"name": name, "from_sha": from_sha, "from_branch": from_branch, "is_protected": is_protected}
        return await self._request(
            "POST",
            f"/api/v1/repositories/{_segment(repository_id)}/branches",
            json={k: v for k, v in body.items() if v is not None},
        )

    async def get_branch(self, repository_id: str, name: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/branches/{quote(name, safe='/')}",
        )

    async def list_branches(self, repository_id: str, page: int = 1, page_size: int = 100) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/branches",
            params={"page": page, "page_size": page_size},
        )
        return data["items"]

    async def delete_branch(self, repository_id: str, name: str) -> None:
        await self._request(
            "DELETE",
            f"/api/v1/repositories/{_segment(repository_id)}/branches/{quote(name, safe='/')}",
        )

    async def set_default_branch(self, repository_id: str, name: str) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"/api/v1/repositories/{_segment(repository_id)}/default-branch",
            json={"branch": name},
        )

    async def merge_branch(self, repository_id: str, target: str, source: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/repositories/{_segment(repository_id)}/merge",
            json={"target": target, "source": source},
        )

    # =========================================================================
    # Commits
    # =========================================================================

    async def create_commit(
        self,
        repository_id: str,
        branch: str,
        message: str,
        author_name: str,
        author_email: str,
        files: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/repositories/{_segment(repository_id)}/commits",
            json={
                "branch": branch,
                "message": message,
                "author_name": author_name,
                "author_email": author_email,
                "files": files,
            },
        )

    async def get_commit(self, repository_id: str, sha: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/api/v1/repositories/{_segment(repository_id)}/commits/{_segment(sha)}"
        )

    async def list_commits(
        self,
        repository_id: str,
        branch: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/commits",
            params={"branch": branch, "page": page, "page_size": page_size},
        )

    async def get_commit_diff(self, repository_id: str, sha: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/commits/{_segment(sha)}/diff",
        )

    async def compare(self, repository_id: str, base: str, head: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/compare",
            params={"base": base, "head": head},
        )

    # =========================================================================
    # Tags
    # =========================================================================

    async def create_tag(
        self, repository_id: str, name: str, target: str, message: Optional[str] = None
    ) -> Dict[str, Any]:
        body = {"name": name, "target": target, "message": message}
        return await self._request(
            "POST",
            f"/api/v1/repositories/{_segment(repository_id)}/tags",
            json={k: v for k, v in body.items() if v is not None},
        )

    async def get_tag(self, repository_id: str, name: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/api/v1/repositories/{_segment(repository_id)}/tags/{quote(name, safe='/')}"
        )

    async def list_tags(self, repository_id: str, page: int = 1, page_size: int = 100) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/tags",
            params={"page": page, "page_size": page_size},
        )
        return data["items"]

    async def delete_tag(self, repository_id: str, name: str) -> None:
        await self._request(
            "DELETE",
            f"/api/v1/repositories/{_segment(repository_id)}/tags/{quote(name, safe='/')}",
        )

    # =========================================================================
    # Files
    # =========================================================================

    async def get_file_content(self, repository_id: str, branch: Optional[str], path: str) -> bytes:
        """Raw bytes; this endpoint is not enveloped."""
        response = await self._send(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/files",
            params={"branch": branch, "path": path},
        )
        return response.content

    async def get_directory_content(
        self, repository_id: str, branch: Optional[str], path: str = ""
    ) -> List[Dict[str, Any]]:
        return await self._request(
            "GET",
            f"/api/v1/repositories/{_segment(repository_id)}/tree",
            params={"branch": branch, "path": path},
        )
