"""Working-tree snapshots used to isolate an agent's edits.

A snapshot fingerprints every dirty or untracked file before an agent runs.
Afterwards only files whose fingerprint changed (or that became dirty) are
attributed to the agent, so pre-existing local edits are never committed on
the user's behalf.
"""

import os
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from review_loop.utils import get_git_revision_hash, run_command

DELETED = "DELETED"
DELETED_MODE = "000000"
EXECUTABLE_MODE = "100755"
REGULAR_MODE = "100644"


@dataclass(frozen=True)
class FileState:
    """Fingerprint of one path: blob hash (or ``DELETED``) and file mode."""

    hash: str
    mode: str

    @property
    def deleted(self) -> bool:
        """Whether the file was missing from the working tree."""
        return self.hash == DELETED


@dataclass(frozen=True)
class WorktreeSnapshot:
    """Ordered, read-only mapping of path to ``FileState``."""

    files: Mapping[str, FileState] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    def __contains__(self, path: object) -> bool:
        return path in self.files

    def __iter__(self) -> Iterator[str]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    def get(self, path: str) -> FileState | None:
        """Return the recorded state for ``path``, if any."""
        return self.files.get(path)


def _git_paths(repo_root: Path, args: list[str]) -> list[str]:
    """Run a NUL-separated git listing and return its paths."""
    returncode, stdout, _ = run_command(["git", *args], cwd=repo_root)
    if returncode != 0:
        return []
    return [path for path in stdout.split("\0") if path]


def dirty_files(repo_root: Path) -> list[str]:
    """Return modified, staged and untracked paths, de-duplicated in first-seen order.

    Args:
        repo_root: Repository root

    Returns:
        Repository-relative paths

    """
    listings = (
        ["diff", "-z", "--name-only"],
        ["diff", "-z", "--cached", "--name-only"],
        ["ls-files", "-z", "--others", "--exclude-standard"],
    )
    seen: dict[str, None] = {}
    for args in listings:
        for path in _git_paths(repo_root, args):
            seen.setdefault(path, None)
    return list(seen)


def file_state(repo_root: Path, path: str) -> FileState:
    """Fingerprint a single repository-relative path."""
    full_path = repo_root / path
    if not full_path.is_file():
        return FileState(DELETED, DELETED_MODE)

    mode = EXECUTABLE_MODE if os.access(full_path, os.X_OK) else REGULAR_MODE
    return FileState(get_git_revision_hash(full_path, cwd=repo_root), mode)


def take_snapshot(repo_root: Path) -> WorktreeSnapshot:
    """Fingerprint every currently dirty or untracked file.

    Args:
        repo_root: Repository root

    Returns:
        Snapshot of the dirty universe

    """
    return WorktreeSnapshot({path: file_state(repo_root, path) for path in dirty_files(repo_root)})


def changed_files_since(
    repo_root: Path,
    baseline: WorktreeSnapshot,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return paths that are new or changed relative to ``baseline``.

    Args:
        repo_root: Repository root
        baseline: Snapshot taken before the agent ran
        exclude_prefixes: Path prefixes owned by the engine (log directories)

    Returns:
        Changed paths in enumeration order; empty when nothing changed

    """
    prefixes = tuple(exclude_prefixes)
    changed = []
    for path in dirty_files(repo_root):
        if prefixes and path.startswith(prefixes):
            continue
        if baseline.get(path) != file_state(repo_root, path):
            changed.append(path)
    return changed
