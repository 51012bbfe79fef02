"""Tests for the repository manager: filesystem and metadata kept in step."""

import os
import shutil
import uuid

import pytest

from git_gateway.db.models import CompensationEntryModel
from git_gateway.errors import ConflictError, ForbiddenError, GitError, GitNotFoundError, NotFoundError
from git_gateway.git.executor import GitIdentity
from git_gateway.repositories import manager as manager_module

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")

AUTHOR = GitIdentity("Jane Dev", "jane@example.com")


def read_head(repository) -> str:
    with open(os.path.join(repository.git_path, "HEAD")) as fh:
        return fh.read().strip()


@pytest.fixture
def project_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def repository(manager, project_id):
    repo, _ = manager.create_repository(project_id, "service", description="Demo", init_readme=True)
    return repo


class TestCreateRepository:
    """Creation is idempotent for identical requests."""

    def test_creates_bare_repository_and_default_branch(self, manager, project_id, git_root):
        repo, created = manager.create_repository(project_id, "api")

        assert created is True
        assert repo.git_path == os.path.join(git_root, str(project_id), "api.git")
        assert os.path.isdir(repo.git_path)
        assert repo.clone_url.endswith(f"/{project_id}/api.git")
        assert repo.branch_count == 1
        assert repo.commit_count == 0
        branch = manager.get_branch(repo.id, "main")
        assert branch.is_default

    def test_identical_request_returns_existing(self, manager, project_id):
        first, _ = manager.create_repository(project_id, "api", description="x")
        second, created = manager.create_repository(project_id, "api", description="x")

        assert created is False
        assert second.id == first.id

    def test_different_settings_conflict(self, manager, project_id):
        manager.create_repository(project_id, "api", visibility="private")
        with pytest.raises(ConflictError):
            manager.create_repository(project_id, "api", visibility="public")

    def test_same_name_in_other_project(self, manager, project_id):
        manager.create_repository(project_id, "api")
        _, created = manager.create_repository(uuid.uuid4(), "api")
        assert created is True

    def test_init_readme(self, manager, repository):
        assert repository.commit_count == 1
        assert repository.last_pushed_at is not None
        assert manager.file_content(repository.id, None, "README.md") == b"# service\n\nDemo\n"
        commits, total = manager.list_commits(repository.id)
        assert total == 1
        assert commits[0]["message"] == "Initial commit"
        assert manager.get_branch(repository.id, "main").commit_sha == commits[0]["sha"]

    def test_failed_init_removes_row(self, manager, project_id):
        from git_gateway.errors import ValidationError

        with pytest.raises(ValidationError):
            manager.create_repository(project_id, "api", default_branch="bad..branch")
        assert manager.repositories.find_by_name(project_id, "api") is None

    def test_losing_concurrent_create_conflicts(self, manager, repository, project_id, monkeypatch):
        head = manager.get_branch(repository.id, "main").commit_sha
        # a racing request whose lookup ran before the winner's row was committed
        monkeypatch.setattr(manager.repositories, "find_by_name", lambda *args: None)

        with pytest.raises(ConflictError):
            manager.create_repository(project_id, "service", visibility="public")

        assert manager.executor(repository).resolve_ref("main") == head
        _, total = manager.list_repositories(project_id)
        assert total == 1

    def test_recreate_after_delete_starts_fresh(self, manager, repository, project_id):
        old_id, old_path = repository.id, repository.git_path
        manager.delete_repository(old_id)

        fresh, created = manager.create_repository(project_id, "service")

        assert created is True
        assert fresh.git_path == old_path
        assert fresh.commit_count == 0
        assert manager.executor(fresh).resolve_ref("main") is None
        _, total = manager.list_commits(fresh.id)
        assert total == 0

        # the deferred removal for the deleted row must not touch the new directory
        assert manager.remove_directory(old_id, old_path) is True
        assert manager.executor(fresh).exists()


class TestUpdateAndDelete:
    def test_rename_moves_directory(self, manager, repository, project_id, git_root):
        old_path = repository.git_path
        updated = manager.update_repository(repository.id, {"name": "renamed", "visibility": "public"})

        assert updated.name == "renamed"
        assert updated.visibility == "public"
        assert updated.git_path == os.path.join(git_root, str(project_id), "renamed.git")
        assert os.path.isdir(updated.git_path)
        assert not os.path.exists(old_path)

    def test_rename_to_existing_name_conflicts(self, manager, repository, project_id):
        manager.create_repository(project_id, "other")
        with pytest.raises(ConflictError):
            manager.update_repository(repository.id, {"name": "other"})

    def test_soft_delete_hides_repository(self, manager, repository):
        manager.delete_repository(repository.id)

        with pytest.raises(NotFoundError):
            manager.get_repository(repository.id)
        assert os.path.isdir(repository.git_path)

    def test_remove_directory(self, manager, repository):
        manager.delete_repository(repository.id)

        assert manager.remove_directory(repository.id, repository.git_path) is True
        assert not os.path.exists(repository.git_path)

    def test_live_directory_is_kept(self, manager, repository):
        assert manager.remove_directory(uuid.uuid4(), repository.git_path) is True
        assert os.path.isdir(repository.git_path)

    def test_failed_removal_records_compensation(self, manager, repository, monkeypatch, db_session):
        manager.delete_repository(repository.id)

        def fail(path):
            raise OSError("device busy")

        monkeypatch.setattr(manager_module.shutil, "rmtree", fail)

        assert manager.remove_directory(repository.id, repository.git_path) is False
        entry = db_session.query(CompensationEntryModel).one()
        assert entry.action == "delete_repository"
        assert entry.status == "pending"
        assert entry.payload == {"git_path": repository.git_path}

    def test_search(self, manager, repository, project_id):
        manager.create_repository(project_id, "frontend", description="web client")

        items, total = manager.search_repositories("SERV")
        assert total == 1
        assert items[0].id == repository.id

        items, total = manager.search_repositories("client", project_id=project_id)
        assert [r.name for r in items] == ["frontend"]

    def test_search_treats_wildcards_literally(self, manager, repository, project_id):
        manager.create_repository(project_id, "alpha")
        manager.create_repository(project_id, "beta")

        assert manager.search_repositories("%")[1] == 0
        assert manager.search_repositories("a_p")[1] == 0

        underscored, _ = manager.create_repository(project_id, "a_p")
        items, total = manager.search_repositories("a_p")
        assert total == 1
        assert items[0].id == underscored.id


class TestBranches:
    def test_branch_lifecycle(self, manager, repository):
        branch = manager.create_branch(repository.id, "feature/login")
        head = manager.get_branch(repository.id, "main").commit_sha

        assert branch.commit_sha == head
        items, total = manager.list_branches(repository.id)
        assert total == 2
        assert items[0].name == "main"

        manager.delete_branch(repository.id, "feature/login")
        with pytest.raises(NotFoundError):
            manager.get_branch(repository.id, "feature/login")
        assert manager.get_repository(repository.id).branch_count == 1

    def test_branch_needs_a_commit(self, manager, project_id):
        empty, _ = manager.create_repository(project_id, "empty")
        with pytest.raises(GitNotFoundError):
            manager.create_branch(empty.id, "feature")

    def test_default_branch_cannot_be_deleted(self, manager, repository):
        with pytest.raises(ConflictError):
            manager.delete_branch(repository.id, "main")

    def test_protected_branch_cannot_be_deleted(self, manager, repository):
        manager.create_branch(repository.id, "release", is_protected=True)
        with pytest.raises(ForbiddenError):
            manager.delete_branch(repository.id, "release")

    def test_set_default_branch_moves_flag_and_head(self, manager, repository):
        manager.create_branch(repository.id, "develop")
        branch = manager.set_default_branch(repository.id, "develop")

        assert branch.is_default
        assert manager.get_branch(repository.id, "main").is_default is False
        assert manager.get_repository(repository.id).default_branch == "develop"
        # reads without a ref now resolve against the new default
        manager.create_commit(repository.id, "develop", "Develop only", {"dev.txt": "d\n"}, AUTHOR)
        assert manager.file_content(repository.id, None, "dev.txt") == b"d\n"

    def test_set_unknown_default_branch(self, manager, repository):
        with pytest.raises(NotFoundError):
            manager.set_default_branch(repository.id, "missing")

    def test_failed_head_update_changes_nothing(self, manager, repository, monkeypatch):
        manager.create_branch(repository.id, "develop")

        def fail(self, branch):
            raise GitError("symbolic-ref failed")

        monkeypatch.setattr(manager_module.GitExecutor, "set_head", fail)

        with pytest.raises(GitError):
            manager.set_default_branch(repository.id, "develop")

        assert manager.get_repository(repository.id).default_branch == "main"
        assert manager.get_branch(repository.id, "main").is_default is True
        assert manager.get_branch(repository.id, "develop").is_default is False
        assert read_head(repository) == "ref: refs/heads/main"

    def test_failed_metadata_update_restores_head(self, manager, repository, monkeypatch):
        manager.create_branch(repository.id, "develop")

        def fail(repository_id, name):
            raise ConflictError("default branch changed concurrently")

        monkeypatch.setattr(manager.repositories, "set_default_branch", fail)

        with pytest.raises(ConflictError):
            manager.set_default_branch(repository.id, "develop")

        assert manager.get_repository(repository.id).default_branch == "main"
        assert manager.get_branch(repository.id, "develop").is_default is False
        assert read_head(repository) == "ref: refs/heads/main"

    def test_merge(self, manager, repository):
        manager.create_branch(repository.id, "feature")
        manager.create_commit(repository.id, "feature", "Feature", {"f.txt": "f\n"}, AUTHOR)

        result = manager.merge(repository.id, "feature", "main", AUTHOR)

        assert result["target"] == "main"
        assert len(result["commit"]["parent_shas"]) == 2
        assert manager.get_branch(repository.id, "main").commit_sha == result["sha"]
        assert manager.file_content(repository.id, "main", "f.txt") == b"f\n"


class TestCommitsAndTags:
    def test_commit_updates_metadata(self, manager, repository):
        commit = manager.create_commit(
            repository.id, "main", "Add app", {"src/app.py": "print(1)\n"}, AUTHOR
        )

        assert commit.author == "Jane Dev"
        assert commit.changed_files == 1
        assert manager.get_branch(repository.id, "main").commit_sha == commit.sha
        assert manager.get_repository(repository.id).commit_count == 2

        detail = manager.get_commit(repository.id, commit.sha)
        assert detail["files"][0]["path"] == "src/app.py"
        diff = manager.commit_diff(repository.id, commit.sha)
        assert diff["total_added"] == 1

    def test_list_commits_paginates(self, manager, repository):
        for i in range(3):
            manager.create_commit(repository.id, "main", f"Change {i}", {"n.txt": f"{i}\n"}, AUTHOR)

        items, total = manager.list_commits(repository.id, page=1, page_size=2)
        assert total == 4
        assert [c["message"] for c in items] == ["Change 2", "Change 1"]

    def test_compare(self, manager, repository):
        base = manager.get_branch(repository.id, "main").commit_sha
        manager.create_branch(repository.id, "feature")
        manager.create_commit(repository.id, "feature", "Feature", {"f.txt": "a\nb\n"}, AUTHOR)

        result = manager.compare(repository.id, base, "feature")
        assert [f["path"] for f in result["files"]] == ["f.txt"]
        assert result["total_added"] == 2

    def test_tag_lifecycle(self, manager, repository):
        head = manager.get_branch(repository.id, "main").commit_sha

        tag = manager.create_tag(repository.id, "v1.0.0", "main", message="First release")
        assert tag.commit_sha == head
        assert tag.tagger == "Git Gateway"
        items, total = manager.list_tags(repository.id)
        assert total == 1

        with pytest.raises(ConflictError):
            manager.create_tag(repository.id, "v1.0.0", "main")

        manager.delete_tag(repository.id, "v1.0.0")
        with pytest.raises(NotFoundError):
            manager.get_tag(repository.id, "v1.0.0")

    def test_tree(self, manager, repository):
        manager.create_commit(repository.id, "main", "Add src", {"src/a.py": "a\n"}, AUTHOR)

        names = {e["name"]: e["type"] for e in manager.tree(repository.id, None)}
        assert names == {"README.md": "file", "src": "directory"}


class TestReconcile:
    def test_reports_missing_and_orphans(self, manager, repository, project_id):
        other, _ = manager.create_repository(project_id, "other")
        shutil.rmtree(repository.git_path)
        manager.delete_repository(other.id)

        report = manager.reconcile()

        assert report["missing_directories"] == [
            {"repository_id": str(repository.id), "git_path": repository.git_path}
        ]
        assert report["orphan_directories"] == [os.path.abspath(other.git_path)]
        assert report["repaired"] is False

    def test_repair(self, manager, repository, project_id):
        other, _ = manager.create_repository(project_id, "other")
        shutil.rmtree(repository.git_path)
        manager.delete_repository(other.id)

        manager.reconcile(repair=True)

        assert os.path.isdir(repository.git_path)
        assert not os.path.exists(other.git_path)
        clean = manager.reconcile()
        assert clean["missing_directories"] == []
        assert clean["orphan_directories"] == []
