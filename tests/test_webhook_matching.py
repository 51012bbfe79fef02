"""Tests for trigger condition matching."""

import uuid
from types import SimpleNamespace

from git_gateway.webhooks.matching import (
    changed_files,
    event_matches,
    matches_any,
    strip_ref,
    trigger_matches,
)


def push_payload(ref="refs/heads/main", message="Fix bug", email="dev@example.com", files=None):
    return {
        "ref": ref,
        "before": "0" * 40,
        "after": "a" * 40,
        "commits": [
            {
                "id": "a" * 40,
                "message": message,
                "author": {"name": "Dev", "email": email},
                "added": list(files or ["src/app.py"]),
                "modified": [],
                "removed": [],
            }
        ],
    }


class TestHelpers:
    def test_strip_ref(self):
        assert strip_ref("refs/heads/feature/x") == "feature/x"
        assert strip_ref("refs/tags/v1.0") == "v1.0"
        assert strip_ref("main") == "main"

    def test_empty_patterns_match(self):
        assert matches_any("anything", [])
        assert matches_any("anything", None)

    def test_regex_search_semantics(self):
        assert matches_any("release/1.2", ["^release/"])
        assert matches_any("feature/main-fix", ["main"])
        assert not matches_any("develop", ["^main$"])

    def test_invalid_pattern_does_not_match(self):
        assert not matches_any("main", ["(unclosed"])

    def test_changed_files_union(self):
        payload = {
            "commits": [
                {"added": ["a.py"], "modified": ["b.py"], "removed": []},
                {"added": [], "modified": ["b.py"], "removed": ["c.py"]},
            ]
        }
        assert changed_files(payload) == {"a.py", "b.py", "c.py"}


class TestPushMatching:
    def test_branch_filter(self):
        assert event_matches("push", push_payload(), {"branches": ["^main$"]})
        assert not event_matches("push", push_payload("refs/heads/dev"), {"branches": ["^main$"]})

    def test_tag_push_uses_tag_patterns(self):
        payload = push_payload("refs/tags/v1.2.0")
        assert event_matches("tag_push", payload, {"tags": [r"^v\d+"], "branches": ["^main$"]})
        assert not event_matches("tag_push", payload, {"tags": ["^release-"]})

    def test_commit_message_pattern(self):
        conditions = {"commit_message": r"\[deploy\]"}
        assert event_matches("push", push_payload(message="Ship it [deploy]"), conditions)
        assert not event_matches("push", push_payload(message="WIP"), conditions)

    def test_author_filter(self):
        conditions = {"authors": [r"@example\.com$"]}
        assert event_matches("push", push_payload(), conditions)
        assert not event_matches("push", push_payload(email="x@other.org"), conditions)

    def test_head_commit_preferred(self):
        payload = push_payload(message="old")
        payload["head_commit"] = {"message": "new [deploy]", "author": {"email": "a@b.c"}}
        assert event_matches("push", payload, {"commit_message": "deploy"})

    def test_file_include_globs(self):
        conditions = {"file_changes": {"include": ["src/**/*.py"]}}
        assert event_matches("push", push_payload(files=["src/pkg/mod.py"]), conditions)
        assert not event_matches("push", push_payload(files=["docs/index.md"]), conditions)

    def test_file_exclude_globs(self):
        conditions = {"file_changes": {"exclude": ["*.md"]}}
        assert event_matches("push", push_payload(files=["src/app.py"]), conditions)
        assert not event_matches("push", push_payload(files=["src/app.py", "README.md"]), conditions)

    def test_paths_act_as_includes(self):
        assert event_matches("push", push_payload(files=["api/x.go"]), {"paths": ["api/*"]})
        assert not event_matches("push", push_payload(files=["web/x.js"]), {"paths": ["api/*"]})


class TestOtherEvents:
    def test_pull_request_target_branch(self):
        github = {"pull_request": {"base": {"ref": "main"}}}
        gitlab = {"object_attributes": {"target_branch": "main"}}
        assert event_matches("pull_request", github, {"branches": ["^main$"]})
        assert event_matches("pull_request", gitlab, {"branches": ["^main$"]})
        assert not event_matches("pull_request", github, {"branches": ["^dev$"]})

    def test_branch_and_tag_lifecycle(self):
        assert event_matches("branch_create", {"ref": "refs/heads/feat"}, {"branches": ["^feat"]})
        assert not event_matches("tag_delete", {"ref": "v1"}, {"tags": ["^release"]})

    def test_unfiltered_event_types_match(self):
        assert event_matches("repository_update", {}, {"branches": ["^main$"]})


class TestTriggerMatches:
    def make(self, **overrides):
        repository_id = uuid.uuid4()
        trigger = SimpleNamespace(
            enabled=True, repository_id=repository_id, event_types=["push"], conditions={}
        )
        event = SimpleNamespace(
            repository_id=repository_id, event_type="push", event_data=push_payload()
        )
        for key, value in overrides.items():
            setattr(trigger, key, value)
        return trigger, event

    def test_matching_trigger(self):
        trigger, event = self.make()
        assert trigger_matches(trigger, event)

    def test_disabled_trigger(self):
        trigger, event = self.make(enabled=False)
        assert not trigger_matches(trigger, event)

    def test_other_repository(self):
        trigger, event = self.make(repository_id=uuid.uuid4())
        assert not trigger_matches(trigger, event)

    def test_event_type_not_subscribed(self):
        trigger, event = self.make(event_types=["tag_push"])
        assert not trigger_matches(trigger, event)
