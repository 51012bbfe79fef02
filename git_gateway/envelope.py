"""
Response envelope, pagination and bearer authentication shared by routers.
"""

import hmac
from typing import Any, Dict, List, Optional

from fastapi import Header

from .config import get_settings
from .db.services import normalize_pagination
from .errors import AuthError, GatewayError


def success(data: Any = None, message: str = "success", code: int = 200) -> Dict[str, Any]:
    """Wrap ``data`` in the standard envelope."""
    return {"code": code, "success": True, "message": message, "data": data}


def failure(exc: GatewayError) -> Dict[str, Any]:
    """Envelope for an error; carries only the public part of the error."""
    return {
        "code": exc.status_code,
        "success": False,
        "message": exc.message,
        "data": None,
        "error": {"code": exc.code, "category": exc.category, "details": exc.details},
    }


def page(items: List[Any], total: int, page: int, page_size: int) -> Dict[str, Any]:
    """Standard paginated payload."""
    page, page_size = normalize_pagination(page, page_size)
    return {"items": items, "total": total, "page": page, "page_size": page_size}


def require_api_token(authorization: Optional[str] = Header(default=None)) -> None:
    """Enforce ``Authorization: Bearer <API_TOKEN>`` when a token is configured."""
    token = get_settings().api_token
    if not token:
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("missing bearer token")
    if not hmac.compare_digest(authorization[7:].strip().encode(), token.encode()):
        raise AuthError("invalid bearer token")
