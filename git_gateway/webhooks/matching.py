"""
Trigger condition matching.

Branch, tag, author and commit message patterns are regular expressions with
search semantics. File filters are shell globs where ``*`` also crosses ``/``.
An empty pattern list always passes.
"""

import re
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import structlog

from .enums import EventType, PUSH_EVENTS

logger = structlog.get_logger()

BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"


def strip_ref(ref: str) -> str:
    for prefix in (BRANCH_PREFIX, TAG_PREFIX):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def matches_any(value: str, patterns: Optional[Iterable[str]]) -> bool:
    """True when ``patterns`` is empty or any pattern matches ``value``."""
    patterns = [p for p in (patterns or []) if p]
    if not patterns:
        return True
    for pattern in patterns:
        try:
            if re.search(pattern, value):
                return True
        except re.error:
            logger.warning("invalid trigger pattern", pattern=pattern)
    return False


def head_commit(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    head = payload.get("head_commit")
    if isinstance(head, Mapping) and head:
        return head
    commits = payload.get("commits")
    if isinstance(commits, list) and commits and isinstance(commits[-1], Mapping):
        return commits[-1]
    return None


def commit_author_email(commit: Mapping[str, Any]) -> str:
    author = commit.get("author")
    if isinstance(author, Mapping) and author.get("email"):
        return str(author["email"])
    return str(commit.get("author_email") or "")


def changed_files(payload: Mapping[str, Any]) -> Set[str]:
    """Union of added, modified and removed files over all commits."""
    files: Set[str] = set()
    for commit in payload.get("commits") or []:
        if not isinstance(commit, Mapping):
            continue
        for key in ("added", "modified", "removed"):
            files.update(str(f) for f in commit.get(key) or [])
    return files


def _glob_any(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


def file_filters_pass(files: Set[str], conditions: Mapping[str, Any]) -> bool:
    file_changes = conditions.get("file_changes") or {}
    include: List[str] = list(file_changes.get("include") or []) + list(
        conditions.get("paths") or []
    )
    exclude: List[str] = list(file_changes.get("exclude") or [])

    if include and not any(_glob_any(f, include) for f in files):
        return False
    if exclude and any(_glob_any(f, exclude) for f in files):
        return False
    return True


def pull_request_target(payload: Mapping[str, Any]) -> str:
    pr = payload.get("pull_request") or {}
    if isinstance(pr, Mapping):
        if pr.get("target_branch"):
            return str(pr["target_branch"])
        base = pr.get("base") or {}
        if isinstance(base, Mapping) and base.get("ref"):
            return str(base["ref"])
    attributes = payload.get("object_attributes") or {}
    if isinstance(attributes, Mapping) and attributes.get("target_branch"):
        return str(attributes["target_branch"])
    return ""


def _push_matches(event_type: str, payload: Mapping[str, Any], conditions: Mapping[str, Any]) -> bool:
    ref = str(payload.get("ref") or "")
    name = strip_ref(ref)
    is_tag = ref.startswith(TAG_PREFIX) or event_type == EventType.TAG_PUSH.value
    if is_tag:
        if not matches_any(name, conditions.get("tags")):
            return False
    elif not matches_any(name, conditions.get("branches")):
        return False

    head = head_commit(payload)
    if head is not None:
        message_pattern = conditions.get("commit_message")
        if message_pattern and not matches_any(str(head.get("message") or ""), [message_pattern]):
            return False
        if not matches_any(commit_author_email(head), conditions.get("authors")):
            return False

    return file_filters_pass(changed_files(payload), conditions)


def event_matches(
    event_type: str, payload: Mapping[str, Any], conditions: Optional[Mapping[str, Any]]
) -> bool:
    """Evaluate a trigger's conditions against one event."""
    conditions = conditions or {}

    if event_type in PUSH_EVENTS:
        return _push_matches(event_type, payload, conditions)

    if event_type == EventType.PULL_REQUEST.value:
        return matches_any(pull_request_target(payload), conditions.get("branches"))

    if event_type in (EventType.BRANCH_CREATE.value, EventType.BRANCH_DELETE.value):
        return matches_any(strip_ref(str(payload.get("ref") or "")), conditions.get("branches"))

    if event_type in (EventType.TAG_CREATE.value, EventType.TAG_DELETE.value):
        return matches_any(strip_ref(str(payload.get("ref") or "")), conditions.get("tags"))

    return True


def trigger_matches(trigger: Any, event: Any) -> bool:
    """Scope, enabled flag, event type membership, then conditions."""
    if not trigger.enabled or trigger.repository_id != event.repository_id:
        return False
    if event.event_type not in (trigger.event_types or []):
        return False
    payload: Dict[str, Any] = event.event_data or {}
    return event_matches(event.event_type, payload, trigger.conditions)
