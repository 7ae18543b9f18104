"""Shared fixtures for review-loop tests."""

import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from review_loop.utils import run_command

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@dataclass
class FakeClock:
    """Clock whose sleeps only advance virtual time."""

    now: datetime = FIXED_NOW
    sleeps: list[float] = field(default_factory=list)

    def wall_time(self) -> datetime:
        """Return the virtual wall time."""
        return self.now

    def sleep(self, seconds: float) -> None:
        """Record the sleep and advance time."""
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


def git_executable() -> str:
    """Return the absolute path to the git executable, or skip if unavailable."""
    git_path = shutil.which("git")
    if git_path is None:
        pytest.skip("git executable is required for this test")
    assert git_path is not None  # pytest.skip() raises, so this is never None
    return git_path


def git(repo: Path, *args: str) -> str:
    """Run a git command in ``repo``, assert success and return stdout."""
    returncode, stdout, stderr = run_command([git_executable(), *args], cwd=repo)
    assert returncode == 0, stderr
    return stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    """Write ``name``, commit it and return the new HEAD sha."""
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def fake_clock() -> FakeClock:
    """Virtual clock starting at a fixed time."""
    return FakeClock()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Repository with a ``develop`` base and a ``feature`` branch one commit ahead."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "develop")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "app.py", "def add(a, b):\n    return a + b\n", "Initial commit")
    git(repo, "checkout", "-q", "-b", "feature")
    commit_file(repo, "app.py", "def add(a, b):\n    return a - b\n", "Change add")
    return repo


def install_failing_pre_commit_hook(repo: Path) -> None:
    """Make every ``git commit`` in ``repo`` fail without writing to stderr."""
    hook = repo / ".git" / "hooks" / "pre-commit"
    hook.parent.mkdir(parents=True, exist_ok=True)
    hook.write_text("#!/bin/sh\nexit 1\n")
    hook.chmod(0o755)


def commit_bytes(repo: Path, name: str, content: bytes, message: str) -> str:
    """Write raw bytes to ``name``, commit it and return the new HEAD sha."""
    (repo / name).write_bytes(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")
