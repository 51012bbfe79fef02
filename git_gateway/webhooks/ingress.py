"""
Inbound webhook normalisation and signature verification.

Forge-specific headers are mapped onto the canonical event types; values
that are not recognised pass through unchanged.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..errors import AuthError, ValidationError
from .enums import EventType, WebhookSource

GITHUB_EVENTS = {
    "push": EventType.PUSH.value,
    "pull_request": EventType.PULL_REQUEST.value,
    "create": EventType.BRANCH_CREATE.value,
    "delete": EventType.BRANCH_DELETE.value,
    "repository": EventType.REPOSITORY_UPDATE.value,
}
GITHUB_TAG_EVENTS = {
    "create": EventType.TAG_CREATE.value,
    "delete": EventType.TAG_DELETE.value,
}
GITLAB_EVENTS = {
    "Push Hook": EventType.PUSH.value,
    "Merge Request Hook": EventType.PULL_REQUEST.value,
    "Tag Push Hook": EventType.TAG_PUSH.value,
}


@dataclass
class InboundEvent:
    """A normalised inbound webhook ready to be stored."""

    event_type: str
    source: str
    payload: Dict[str, Any]
    signature: Optional[str] = None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    # Starlette headers are case-insensitive; plain dicts in tests may not be
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def normalize_event_type(raw: str) -> str:
    """Canonicalise a native event type; unknown values pass through raw."""
    value = (raw or "").strip()
    candidate = value.replace("-", "_").lower()
    if candidate in EventType.values():
        return candidate
    return value


def github_event_type(header: str, payload: Mapping[str, Any]) -> str:
    if payload.get("ref_type") == "tag" and header in GITHUB_TAG_EVENTS:
        return GITHUB_TAG_EVENTS[header]
    return GITHUB_EVENTS.get(header, header)


def gitlab_event_type(header: str) -> str:
    return GITLAB_EVENTS.get(header, header)


def parse_native(
    headers: Mapping[str, str],
    payload: Dict[str, Any],
    query_event_type: Optional[str] = None,
) -> InboundEvent:
    raw = _header(headers, "X-Event-Type") or query_event_type
    if not raw:
        raise ValidationError("missing event type (X-Event-Type header or event_type query)")
    return InboundEvent(
        event_type=normalize_event_type(raw),
        source=WebhookSource.GIT.value,
        payload=payload,
        signature=_header(headers, "X-Hub-Signature"),
    )


def parse_github(headers: Mapping[str, str], payload: Dict[str, Any]) -> InboundEvent:
    raw = _header(headers, "X-GitHub-Event")
    if not raw:
        raise ValidationError("missing X-GitHub-Event header")
    return InboundEvent(
        event_type=github_event_type(raw, payload),
        source=WebhookSource.GITHUB.value,
        payload=payload,
        signature=_header(headers, "X-Hub-Signature-256") or _header(headers, "X-Hub-Signature"),
    )


def parse_gitlab(headers: Mapping[str, str], payload: Dict[str, Any]) -> InboundEvent:
    raw = _header(headers, "X-Gitlab-Event")
    if not raw:
        raise ValidationError("missing X-Gitlab-Event header")
    return InboundEvent(
        event_type=gitlab_event_type(raw),
        source=WebhookSource.GITLAB.value,
        payload=payload,
        signature=_header(headers, "X-Gitlab-Token"),
    )


def compute_signature(secret: str, body: bytes, algorithm: str = "sha256") -> str:
    """Hex HMAC of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, getattr(hashlib, algorithm)).hexdigest()


def verify_signature(source: str, secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check an inbound signature in the format of ``source``."""
    if not signature:
        return False
    signature = signature.strip()

    if source == WebhookSource.GITLAB.value:
        return hmac.compare_digest(signature.encode("utf-8"), secret.encode("utf-8"))

    algorithm = "sha256"
    digest = signature
    if "=" in signature:
        prefix, digest = signature.split("=", 1)
        algorithm = prefix.lower()
        if algorithm not in ("sha256", "sha1"):
            return False
    elif source == WebhookSource.GITHUB.value:
        # GitHub always prefixes the algorithm
        return False

    expected = compute_signature(secret, body, algorithm)
    return hmac.compare_digest(expected, digest.lower())


def require_valid_signature(
    event: InboundEvent, secret: Optional[str], body: bytes
) -> None:
    """Raise AuthError when a secret is known and the signature does not match."""
    if not secret:
        return
    if not event.signature:
        raise AuthError("missing webhook signature")
    if not verify_signature(event.source, secret, body, event.signature):
        raise AuthError("invalid webhook signature")
