"""
Git executor.

Thin wrapper that shells out to the ``git`` binary against one bare
repository. Every invocation is bounded by a timeout; on expiry the child is
killed and ``GitTimeoutError`` is raised.
"""

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Union

import structlog

from ..config import get_settings
from ..errors import (
    GitConflictError,
    GitError,
    GitMergeConflictError,
    GitNotFoundError,
    GitTimeoutError,
    NoChangesError,
    ValidationError,
)
from .parsing import (
    COMMIT_FORMAT,
    EMPTY_TREE_SHA,
    LOG_FORMAT,
    CommitInfo,
    GitDiff,
    TreeEntry,
    merge_diff,
    parse_commit_record,
    parse_count,
    parse_log,
    parse_ls_tree,
    parse_name_status,
    parse_numstat,
)

logger = structlog.get_logger()

ZERO_SHA = "0" * 40

# Per-commit numstat is only fetched for small pages
HISTORY_STATS_LIMIT = 20

FileContent = Union[str, bytes, None]


@dataclass(frozen=True)
class GitIdentity:
    name: str
    email: str

    def env(self, prefix: str) -> Dict[str, str]:
        return {f"GIT_{prefix}_NAME": self.name, f"GIT_{prefix}_EMAIL": self.email}


def validate_tree_path(path: str) -> str:
    """Reject paths that escape the tree or touch git metadata."""
    if not path or path.startswith("/"):
        raise ValidationError("file path must be relative", details={"path": path})
    parts = path.split("/")
    for part in parts:
        if part in ("", ".", ".."):
            raise ValidationError("file path is not normalised", details={"path": path})
        if part.lower() == ".git":
            raise ValidationError("file path may not contain .git", details={"path": path})
    return path


class GitExecutor:
    """Runs git commands against a bare repository at ``path``."""

    def __init__(
        self,
        path: str,
        git_binary: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.path = os.path.abspath(path)
        self.git_binary = git_binary or settings.git_binary
        self.timeout = timeout or settings.git_command_timeout

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _env(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C", "LANG": "C"})
        env.pop("GIT_DIR", None)
        env.pop("GIT_INDEX_FILE", None)
        if extra:
            env.update(extra)
        return env

    def _run(
        self,
        args: Sequence[str],
        *,
        input: Optional[bytes] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        bare: bool = True,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        command = [self.git_binary]
        if bare:
            command += ["--git-dir", self.path]
        command += list(args)

        logger.debug("git command", args=list(args), repository=self.path)
        try:
            result = subprocess.run(
                command,
                input=input,
                capture_output=True,
                env=self._env(env),
                cwd=cwd,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error("git command timed out", args=list(args), timeout=self.timeout)
            raise GitTimeoutError(
                f"git {args[0]} timed out after {self.timeout}s", args=list(args)
            ) from None
        except FileNotFoundError:
            raise GitError(f"git executable not found: {self.git_binary}") from None

        if check and result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise GitError(
                f"git {args[0]} failed",
                args=list(args),
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def _text(self, args: Sequence[str], **kwargs) -> str:
        return self._run(args, **kwargs).stdout.decode("utf-8", errors="replace")

    def _succeeds(self, args: Sequence[str], **kwargs) -> bool:
        return self._run(args, check=False, **kwargs).returncode == 0

    @staticmethod
    def _revision(ref: str) -> str:
        # a leading dash would be parsed as an option
        if not ref or ref.startswith("-"):
            raise ValidationError("invalid revision", details={"ref": ref})
        return ref

    def _check_ref_name(self, ref: str, kind: str) -> None:
        name = ref.split("/", 2)[-1]
        # check-ref-format accepts "-x", which git branch and git tag read as an option
        if name.startswith("-") or not self._succeeds(["check-ref-format", ref], bare=False):
            raise ValidationError(f"invalid {kind} name", details={kind: name})

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------

    def init_bare(self, default_branch: str) -> None:
        """Create the bare repository with HEAD on ``default_branch``."""
        self._check_ref_name(f"refs/heads/{default_branch}", "branch")
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._run(["init", "--bare", "--quiet", self.path], bare=False)
        self.set_head(default_branch)
        logger.info("bare repository initialised", path=self.path, default_branch=default_branch)

    def set_head(self, branch: str) -> None:
        self._run(["symbolic-ref", "HEAD", f"refs/heads/{branch}"])

    def exists(self) -> bool:
        return os.path.isdir(self.path) and self._succeeds(["rev-parse", "--git-dir"])

    def resolve_ref(self, ref: str) -> Optional[str]:
        """Return the commit sha ``ref`` points to, or None."""
        result = self._run(
            ["rev-parse", "--verify", "--quiet", f"{self._revision(ref)}^{{commit}}"],
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.decode().strip() or None

    def has_commits(self) -> bool:
        return bool(self._text(["rev-list", "--all", "--max-count=1"]).strip())

    def branch_exists(self, name: str) -> bool:
        return self._succeeds(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"])

    def tag_exists(self, name: str) -> bool:
        return self._succeeds(["show-ref", "--verify", "--quiet", f"refs/tags/{name}"])

    @staticmethod
    def repository_size(path: str) -> int:
        """Total size in bytes of the files under ``path``."""
        total = 0
        for root, _dirs, files in os.walk(path):
            for name in files:
                try:
                    total += os.path.getsize(os.path.join(root, name))
                except OSError:
                    continue
        return total

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def create_branch(self, name: str, from_sha: Optional[str] = None) -> str:
        """Create ``name`` at ``from_sha`` (HEAD when empty) and return its tip."""
        self._check_ref_name(f"refs/heads/{name}", "branch")
        if self.branch_exists(name):
            raise GitConflictError(f"branch {name} already exists", details={"branch": name})

        start = from_sha or "HEAD"
        start_sha = self.resolve_ref(start)
        if start_sha is None:
            raise GitNotFoundError(
                f"start point {start} not found", details={"ref": start}
            )
        self._run(["branch", name, start_sha])
        return start_sha

    def delete_branch(self, name: str) -> None:
        if not self.branch_exists(name):
            raise GitNotFoundError(f"branch {name} not found", details={"branch": name})
        if not self._succeeds(["branch", "-d", name]):
            self._run(["branch", "-D", name])

    def merge(self, target: str, source: str, identity: GitIdentity) -> str:
        """Merge ``source`` into ``target`` with a merge commit and return its sha."""
        for branch in (target, source):
            if not self.branch_exists(branch):
                raise GitNotFoundError(f"branch {branch} not found", details={"branch": branch})

        workdir = tempfile.mkdtemp(prefix="git-gateway-merge-")
        worktree = os.path.join(workdir, "tree")
        env = {**identity.env("AUTHOR"), **identity.env("COMMITTER")}
        try:
            self._run(["worktree", "add", "--quiet", worktree, target])
            result = self._run(
                [
                    "merge",
                    "--no-ff",
                    "-m",
                    f"Merge branch '{source}' into {target}",
                    source,
                ],
                cwd=worktree,
                bare=False,
                env=env,
                check=False,
            )
            if result.returncode != 0:
                output = (
                    result.stdout.decode("utf-8", errors="replace")
                    + result.stderr.decode("utf-8", errors="replace")
                ).strip()
                self._run(["merge", "--abort"], cwd=worktree, bare=False, check=False)
                if "CONFLICT" in output or "Automatic merge failed" in output:
                    raise GitMergeConflictError(
                        f"merge of {source} into {target} has conflicts", stderr=output
                    )
                raise GitError(
                    "git merge failed",
                    args=["merge", source],
                    returncode=result.returncode,
                    stderr=output,
                )
            sha = self._text(["rev-parse", "HEAD"], cwd=worktree, bare=False).strip()
        finally:
            self._run(["worktree", "remove", "--force", worktree], check=False)
            self._run(["worktree", "prune"], check=False)
            shutil.rmtree(workdir, ignore_errors=True)

        logger.info("branches merged", source=source, target=target, sha=sha)
        return sha

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def commit(
        self,
        branch: str,
        message: str,
        author: GitIdentity,
        files: Mapping[str, FileContent],
        committer: Optional[GitIdentity] = None,
    ) -> str:
        """
        Write ``files`` onto ``branch`` and return the new commit sha.

        Content of None removes the path. The tree is built in a temporary
        index so the bare repository never needs a working copy.
        """
        self._check_ref_name(f"refs/heads/{branch}", "branch")
        if not files:
            raise NoChangesError()
        for path in files:
            validate_tree_path(path)

        ref = f"refs/heads/{branch}"
        parent = self.resolve_ref(ref)
        if parent is None and self.has_commits():
            raise GitNotFoundError(f"branch {branch} not found", details={"branch": branch})

        fd, index_path = tempfile.mkstemp(prefix="git-gateway-index-")
        os.close(fd)
        os.unlink(index_path)
        index_env = {"GIT_INDEX_FILE": index_path}
        try:
            if parent:
                self._run(["read-tree", parent], env=index_env)
            for path, content in files.items():
                if content is None:
                    self._run(["update-index", "--force-remove", path], env=index_env)
                    continue
                data = content.encode("utf-8") if isinstance(content, str) else content
                blob = self._text(["hash-object", "-w", "--stdin"], input=data).strip()
                self._run(
                    ["update-index", "--add", "--cacheinfo", f"100644,{blob},{path}"],
                    env=index_env,
                )
            tree = self._text(["write-tree"], env=index_env).strip()
        finally:
            if os.path.exists(index_path):
                os.unlink(index_path)

        parent_tree = (
            self._text(["rev-parse", f"{parent}^{{tree}}"]).strip() if parent else EMPTY_TREE_SHA
        )
        if tree == parent_tree:
            raise NoChangesError()

        args = ["commit-tree", tree]
        if parent:
            args += ["-p", parent]
        env = {**author.env("AUTHOR"), **(committer or author).env("COMMITTER")}
        sha = self._text(args, input=message.encode("utf-8"), env=env).strip()

        self._run(["update-ref", ref, sha, parent or ZERO_SHA])
        logger.info("commit created", branch=branch, sha=sha, files=len(files))
        return sha

    def commit_info(self, sha: str) -> CommitInfo:
        """Full metadata of one commit with its file changes."""
        resolved = self.resolve_ref(sha)
        if resolved is None:
            raise GitNotFoundError(f"commit {sha} not found", details={"sha": sha})
        info = parse_commit_record(
            self._text(["show", "-s", f"--format={COMMIT_FORMAT}", resolved])
        )
        base = info.parent_shas[0] if info.parent_shas else EMPTY_TREE_SHA
        info.files = self._diff_files(base, info.sha)
        return info

    def commit_history(self, ref: str, skip: int = 0, limit: int = 20) -> List[CommitInfo]:
        """Paginated log of ``ref``; per-commit stats are fetched for small pages."""
        if self.resolve_ref(ref) is None:
            return []
        output = self._text(
            [
                "log",
                f"--format={LOG_FORMAT}",
                f"--skip={max(skip, 0)}",
                f"--max-count={max(limit, 1)}",
                ref,
            ]
        )
        commits = parse_log(output)
        if limit <= HISTORY_STATS_LIMIT:
            for info in commits:
                base = info.parent_shas[0] if info.parent_shas else EMPTY_TREE_SHA
                info.files = self._diff_files(base, info.sha)
        return commits

    def total_commit_count(self, ref: str) -> int:
        sha = self.resolve_ref(ref)
        if sha is None:
            return 0
        return parse_count(self._text(["rev-list", "--count", sha]))

    # ------------------------------------------------------------------
    # Diffs
    # ------------------------------------------------------------------

    def _diff_files(self, from_ref: str, to_ref: str):
        numstat = self._text(["diff", "--numstat", "-M", "-z", from_ref, to_ref])
        name_status = self._text(["diff", "--name-status", "-M", "-z", from_ref, to_ref])
        return merge_diff(parse_name_status(name_status), parse_numstat(numstat))

    def diff(self, from_ref: Optional[str], to_ref: str) -> GitDiff:
        """Diff two revisions; an empty ``from_ref`` means the first parent of ``to_ref``."""
        to_sha = self.resolve_ref(to_ref)
        if to_sha is None:
            raise GitNotFoundError(f"revision {to_ref} not found", details={"ref": to_ref})
        if from_ref:
            from_sha = self.resolve_ref(from_ref)
            if from_sha is None:
                raise GitNotFoundError(
                    f"revision {from_ref} not found", details={"ref": from_ref}
                )
        else:
            parents = self._text(["rev-list", "--parents", "-n", "1", to_sha]).split()[1:]
            from_sha = parents[0] if parents else EMPTY_TREE_SHA
        return GitDiff(from_sha=from_sha, to_sha=to_sha, files=self._diff_files(from_sha, to_sha))

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def create_tag(
        self,
        name: str,
        target_sha: str,
        tagger: Optional[GitIdentity] = None,
        message: Optional[str] = None,
    ) -> str:
        """Create a lightweight tag, or an annotated one when a message is given."""
        self._check_ref_name(f"refs/tags/{name}", "tag")
        if self.tag_exists(name):
            raise GitConflictError(f"tag {name} already exists", details={"tag": name})
        target = self.resolve_ref(target_sha)
        if target is None:
            raise GitNotFoundError(f"target {target_sha} not found", details={"ref": target_sha})

        if message:
            if tagger is None:
                settings = get_settings()
                tagger = GitIdentity(settings.system_author_name, settings.system_author_email)
            env = tagger.env("COMMITTER")
            self._run(
                ["tag", "-a", name, target, "-F", "-"],
                input=message.encode("utf-8"),
                env=env,
            )
        else:
            self._run(["tag", name, target])
        return target

    def delete_tag(self, name: str) -> None:
        if not self.tag_exists(name):
            raise GitNotFoundError(f"tag {name} not found", details={"tag": name})
        self._run(["tag", "-d", name])

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def file_content(self, ref: str, path: str) -> bytes:
        path = path.strip("/")
        result = self._run(["cat-file", "blob", f"{self._revision(ref)}:{path}"], check=False)
        if result.returncode != 0:
            raise GitNotFoundError(
                f"file {path} not found at {ref}", details={"ref": ref, "path": path}
            )
        return result.stdout

    def tree(self, ref: str, dir_path: str = "") -> List[TreeEntry]:
        dir_path = dir_path.strip("/")
        ref = self._revision(ref)
        treeish = f"{ref}:{dir_path}" if dir_path else f"{ref}^{{tree}}"
        result = self._run(["ls-tree", "-l", "-z", treeish], check=False)
        if result.returncode != 0:
            raise GitNotFoundError(
                f"path {dir_path or '/'} not found at {ref}",
                details={"ref": ref, "path": dir_path},
            )
        return parse_ls_tree(result.stdout.decode("utf-8", errors="replace"), dir_path)
