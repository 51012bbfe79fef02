"""
Parsers for git plumbing output.

All parsers tolerate empty output and trailing whitespace. Numeric fields that
git renders as ``-`` (binary files) parse to 0.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

# Fields are NUL separated and records end with an ASCII record separator so
# that commit messages can contain anything but those two bytes.
COMMIT_FORMAT = "%H%x00%T%x00%P%x00%an%x00%ae%x00%aI%x00%cn%x00%ce%x00%cI%x00%B"
RECORD_SEPARATOR = "\x1e"
LOG_FORMAT = COMMIT_FORMAT + "%x1e"

_STATUS_CODES = {
    "A": "added",
    "M": "modified",
    "D": "deleted",
    "T": "modified",
    "R": "renamed",
    "C": "copied",
}


@dataclass
class TreeEntry:
    name: str
    path: str
    type: str
    size: int
    mode: str
    sha: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DiffFile:
    path: str
    status: str
    old_path: Optional[str] = None
    added_lines: int = 0
    deleted_lines: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GitDiff:
    from_sha: str
    to_sha: str
    files: List[DiffFile] = field(default_factory=list)

    @property
    def total_added(self) -> int:
        return sum(f.added_lines for f in self.files)

    @property
    def total_deleted(self) -> int:
        return sum(f.deleted_lines for f in self.files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_sha": self.from_sha,
            "to_sha": self.to_sha,
            "files": [f.to_dict() for f in self.files],
            "total_added": self.total_added,
            "total_deleted": self.total_deleted,
        }


@dataclass
class CommitInfo:
    sha: str
    tree_sha: str
    parent_shas: List[str]
    author: str
    author_email: str
    authored_at: datetime
    committer: str
    committer_email: str
    committed_at: datetime
    message: str
    files: List[DiffFile] = field(default_factory=list)

    @property
    def added_lines(self) -> int:
        return sum(f.added_lines for f in self.files)

    @property
    def deleted_lines(self) -> int:
        return sum(f.deleted_lines for f in self.files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "tree_sha": self.tree_sha,
            "parent_shas": list(self.parent_shas),
            "author": self.author,
            "author_email": self.author_email,
            "authored_at": self.authored_at.isoformat(),
            "committer": self.committer,
            "committer_email": self.committer_email,
            "committed_at": self.committed_at.isoformat(),
            "message": self.message,
            "added_lines": self.added_lines,
            "deleted_lines": self.deleted_lines,
            "changed_files": len(self.files),
            "files": [f.to_dict() for f in self.files],
        }


def parse_int(value: str) -> int:
    """Parse a git numeric field; ``-`` and blanks become 0."""
    value = value.strip()
    if not value or value == "-":
        return 0
    return int(value)


def map_status(code: str) -> str:
    """Map a name-status letter (``R087`` style scores allowed) to a status."""
    code = code.strip()
    if not code:
        return "modified"
    return _STATUS_CODES.get(code[0].upper(), "modified")


def _nul_tokens(output: str) -> List[str]:
    tokens = [t.strip("\n") for t in output.split("\0")]
    while tokens and not tokens[-1].strip():
        tokens.pop()
    return tokens


def parse_name_status(output: str) -> List[DiffFile]:
    """Parse ``git diff --name-status -z`` output."""
    tokens = _nul_tokens(output)
    files: List[DiffFile] = []
    i = 0
    while i < len(tokens):
        code = tokens[i].strip()
        if not code:
            i += 1
            continue
        status = map_status(code)
        if status in ("renamed", "copied") and i + 2 < len(tokens):
            files.append(DiffFile(path=tokens[i + 2], old_path=tokens[i + 1], status=status))
            i += 3
        elif i + 1 < len(tokens):
            files.append(DiffFile(path=tokens[i + 1], status=status))
            i += 2
        else:
            break
    return files


def parse_numstat(output: str) -> Dict[str, Tuple[int, int]]:
    """Parse ``git diff --numstat -z`` output into ``{new_path: (added, deleted)}``."""
    tokens = _nul_tokens(output)
    stats: Dict[str, Tuple[int, int]] = {}
    i = 0
    while i < len(tokens):
        parts = tokens[i].split("\t", 2)
        if len(parts) < 3:
            i += 1
            continue
        added, deleted, path = parts
        if path:
            stats[path] = (parse_int(added), parse_int(deleted))
            i += 1
        else:
            # rename or copy: the two paths follow as separate tokens
            if i + 2 < len(tokens):
                stats[tokens[i + 2]] = (parse_int(added), parse_int(deleted))
            i += 3
    return stats


def merge_diff(files: List[DiffFile], stats: Dict[str, Tuple[int, int]]) -> List[DiffFile]:
    """Attach numstat line counts to name-status entries."""
    for f in files:
        added, deleted = stats.get(f.path, (0, 0))
        f.added_lines = added
        f.deleted_lines = deleted
    return files


def parse_ls_tree(output: str, dir_path: str = "") -> List[TreeEntry]:
    """Parse ``git ls-tree -l -z`` output."""
    prefix = dir_path.strip("/")
    entries: List[TreeEntry] = []
    for record in _nul_tokens(output):
        if "\t" not in record:
            continue
        meta, name = record.split("\t", 1)
        parts = meta.split()
        if len(parts) < 4:
            continue
        mode, object_type, sha, size = parts[:4]
        entries.append(
            TreeEntry(
                name=name,
                path=f"{prefix}/{name}" if prefix else name,
                type="directory" if object_type == "tree" else "file",
                size=parse_int(size),
                mode=mode,
                sha=sha,
            )
        )
    return entries


def parse_timestamp(value: str) -> datetime:
    """Parse a strict ISO-8601 git date into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_commit_record(record: str) -> CommitInfo:
    """Parse one record produced with ``COMMIT_FORMAT``."""
    fields = record.lstrip("\n").split("\0", 9)
    if len(fields) < 10:
        raise ValueError("malformed commit record")
    (
        sha,
        tree_sha,
        parents,
        author,
        author_email,
        authored_at,
        committer,
        committer_email,
        committed_at,
        message,
    ) = fields
    return CommitInfo(
        sha=sha.strip(),
        tree_sha=tree_sha.strip(),
        parent_shas=parents.split(),
        author=author,
        author_email=author_email,
        authored_at=parse_timestamp(authored_at),
        committer=committer,
        committer_email=committer_email,
        committed_at=parse_timestamp(committed_at),
        message=message.rstrip(),
    )


def parse_log(output: str) -> List[CommitInfo]:
    """Parse ``git log --format=LOG_FORMAT`` output."""
    return [
        parse_commit_record(record)
        for record in output.split(RECORD_SEPARATOR)
        if record.strip()
    ]


def parse_count(output: str) -> int:
    return parse_int(output) if output.strip() else 0
