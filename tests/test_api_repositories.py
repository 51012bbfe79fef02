"""API-level tests for repository, branch, commit, tag and file endpoints."""

import base64
import shutil
import uuid

import pytest

from git_gateway.config import settings

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")

BASE = "/api/v1/repositories"


def make_repository_payload(**overrides) -> dict:
    """Create a valid repository payload with optional overrides."""
    defaults = {
        "project_id": str(uuid.uuid4()),
        "name": "service",
        "description": "Demo service",
        "visibility": "private",
        "init_readme": True,
    }
    defaults.update(overrides)
    return defaults


def commit_payload(branch: str = "main", **files) -> dict:
    return {
        "branch": branch,
        "message": "Update files",
        "author_name": "Jane Dev",
        "author_email": "jane@example.com",
        "files": [{"path": path, "content": content} for path, content in files.items()],
    }


@pytest.fixture
def repository(client) -> dict:
    response = client.post(BASE, json=make_repository_payload())
    assert response.status_code == 201
    return response.json()["data"]


class TestHealth:
    def test_health_is_public(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_token", "s3cret")
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "git-gateway"
        assert body["status"] == "ok"
        assert "version" in body


class TestAuthentication:
    """Bearer token enforcement when API_TOKEN is configured."""

    def test_missing_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_token", "s3cret")
        response = client.get(BASE)

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"

    def test_valid_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_token", "s3cret")
        response = client.get(BASE, headers={"Authorization": "Bearer s3cret"})

        assert response.status_code == 200

    def test_wrong_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_token", "s3cret")
        response = client.get(BASE, headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_wrong_token_of_same_length(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_token", "s3cret")
        response = client.get(BASE, headers={"Authorization": "Bearer s3creT"})

        assert response.status_code == 401
        assert response.json()["message"] == "invalid bearer token"


class TestRepositoryEndpoints:
    def test_create_returns_envelope(self, client):
        response = client.post(BASE, json=make_repository_payload(name="api"))

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["code"] == 201
        assert body["data"]["name"] == "api"
        assert body["data"]["default_branch"] == "main"
        assert body["data"]["commit_count"] == 1

    def test_idempotent_create(self, client):
        payload = make_repository_payload()
        first = client.post(BASE, json=payload)
        second = client.post(BASE, json=payload)

        assert second.status_code == 200
        assert second.json()["data"]["id"] == first.json()["data"]["id"]

    def test_conflicting_create(self, client):
        payload = make_repository_payload()
        client.post(BASE, json=payload)
        response = client.post(BASE, json={**payload, "visibility": "public"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    @pytest.mark.parametrize("name", ["bad name", "demo.git", ".hidden"])
    def test_invalid_name(self, client, name):
        response = client.post(BASE, json=make_repository_payload(name=name))

        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_get_update_delete(self, client, repository):
        url = f"{BASE}/{repository['id']}"

        assert client.get(url).json()["data"]["name"] == "service"

        response = client.put(url, json={"description": "Updated"})
        assert response.status_code == 200
        assert response.json()["data"]["description"] == "Updated"

        response = client.delete(url)
        assert response.status_code == 200
        assert client.get(url).status_code == 404

    def test_unknown_and_malformed_ids(self, client):
        assert client.get(f"{BASE}/{uuid.uuid4()}").status_code == 404
        assert client.get(f"{BASE}/not-a-uuid").status_code == 400

    def test_list_and_search(self, client, repository):
        client.post(BASE, json=make_repository_payload(name="frontend", description="web"))

        listing = client.get(BASE, params={"page": 1, "page_size": 1}).json()["data"]
        assert listing["total"] == 2
        assert len(listing["items"]) == 1
        assert listing["page_size"] == 1

        found = client.get(f"{BASE}/search", params={"q": "front"}).json()["data"]
        assert [r["name"] for r in found["items"]] == ["frontend"]

    def test_stats(self, client, repository):
        stats = client.get(f"{BASE}/{repository['id']}/stats").json()["data"]

        assert stats["branch_count"] == 1
        assert stats["commit_count"] == 1
        assert stats["tag_count"] == 0


class TestBranchEndpoints:
    def test_branch_lifecycle(self, client, repository):
        url = f"{BASE}/{repository['id']}/branches"

        response = client.post(url, json={"name": "feature/login"})
        assert response.status_code == 201
        assert response.json()["data"]["name"] == "feature/login"

        assert client.get(f"{url}/feature/login").status_code == 200
        names = [b["name"] for b in client.get(url).json()["data"]["items"]]
        assert names == ["main", "feature/login"]

        assert client.delete(f"{url}/feature/login").status_code == 200
        assert client.get(f"{url}/feature/login").status_code == 404

    def test_option_like_branch_name_rejected(self, client, repository):
        url = f"{BASE}/{repository['id']}/branches"

        response = client.post(url, json={"name": "--force"})

        assert response.status_code == 422
        names = [b["name"] for b in client.get(url).json()["data"]["items"]]
        assert names == ["main"]

    def test_default_branch_delete_conflicts(self, client, repository):
        response = client.delete(f"{BASE}/{repository['id']}/branches/main")
        assert response.status_code == 409

    def test_protected_branch_delete_forbidden(self, client, repository):
        url = f"{BASE}/{repository['id']}/branches"
        client.post(url, json={"name": "release", "is_protected": True})

        response = client.delete(f"{url}/release")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_change_default_branch(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"
        client.post(f"{repo_url}/branches", json={"name": "develop"})

        response = client.put(f"{repo_url}/default-branch", json={"branch": "develop"})
        assert response.status_code == 200
        assert response.json()["data"]["is_default"] is True
        assert client.get(repo_url).json()["data"]["default_branch"] == "develop"

    def test_merge(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"
        client.post(f"{repo_url}/branches", json={"name": "feature"})
        client.post(f"{repo_url}/commits", json=commit_payload("feature", **{"f.txt": "f\n"}))

        response = client.post(f"{repo_url}/merge", json={"source": "feature", "target": "main"})
        assert response.status_code == 200
        assert len(response.json()["data"]["commit"]["parent_shas"]) == 2


class TestCommitEndpoints:
    def test_create_and_read_commit(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"

        response = client.post(
            f"{repo_url}/commits", json=commit_payload(**{"src/app.py": "print('hi')\n"})
        )
        assert response.status_code == 201
        commit = response.json()["data"]
        assert commit["files"][0]["path"] == "src/app.py"

        detail = client.get(f"{repo_url}/commits/{commit['sha']}").json()["data"]
        assert detail["message"] == "Update files"

        diff = client.get(f"{repo_url}/commits/{commit['sha']}/diff").json()["data"]
        assert diff["total_added"] == 1

        history = client.get(f"{repo_url}/commits", params={"branch": "main"}).json()["data"]
        assert history["total"] == 2
        assert history["items"][0]["sha"] == commit["sha"]

    def test_base64_content(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"
        payload = commit_payload()
        payload["files"] = [
            {
                "path": "bin/data.bin",
                "content": base64.b64encode(b"\x00\xffdata").decode(),
                "encoding": "base64",
            }
        ]
        assert client.post(f"{repo_url}/commits", json=payload).status_code == 201

        response = client.get(f"{repo_url}/files", params={"path": "bin/data.bin"})
        assert response.content == b"\x00\xffdata"

    def test_unchanged_content_rejected(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"
        payload = commit_payload(**{"README.md": "# service\n\nDemo service\n"})

        response = client.post(f"{repo_url}/commits", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NO_CHANGES"

    def test_unsafe_path_rejected(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"
        payload = commit_payload(**{".git/config": "x"})

        response = client.post(f"{repo_url}/commits", json=payload)
        assert response.status_code == 400

    def test_compare(self, client, repository):
        repo_url = f"{BASE}/{repository['id']}"
        client.post(f"{repo_url}/branches", json={"name": "feature"})
        client.post(f"{repo_url}/commits", json=commit_payload("feature", **{"new.txt": "n\n"}))

        result = client.get(f"{repo_url}/compare", params={"base": "main", "head": "feature"})
        assert [f["path"] for f in result.json()["data"]["files"]] == ["new.txt"]


class TestTagEndpoints:
    def test_tag_lifecycle(self, client, repository):
        url = f"{BASE}/{repository['id']}/tags"

        response = client.post(url, json={"name": "v1.0.0", "target": "main", "message": "First"})
        assert response.status_code == 201
        assert response.json()["data"]["annotated"] is True

        assert client.get(f"{url}/v1.0.0").status_code == 200
        assert client.get(url).json()["data"]["total"] == 1
        assert client.post(url, json={"name": "v1.0.0", "target": "main"}).status_code == 409

        assert client.delete(f"{url}/v1.0.0").status_code == 200
        assert client.get(f"{url}/v1.0.0").status_code == 404


class TestFileEndpoints:
    def test_raw_file_content(self, client, repository):
        response = client.get(f"{BASE}/{repository['id']}/files", params={"path": "README.md"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.content == b"# service\n\nDemo service\n"

    def test_missing_file(self, client, repository):
        response = client.get(f"{BASE}/{repository['id']}/files", params={"path": "nope.txt"})

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_tree(self, client, repository):
        response = client.get(f"{BASE}/{repository['id']}/tree")

        entries = response.json()["data"]
        assert [e["name"] for e in entries] == ["README.md"]
