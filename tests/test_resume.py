"""Tests for resume module."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from review_loop.config import Settings
from review_loop.git_ops import RESUME_STASH_MESSAGE, GitRepo
from review_loop.messages import refactor_commit_message, refactor_commit_pattern
from review_loop.resume import (
    ResumeState,
    ResumeStatus,
    apply_saved_settings,
    check_resume_point,
    detect_state,
    reset_for_resume,
    validate_resume_branch,
)
from review_loop.run_log import RunLog, RunMarkers, RunSummary
from tests.conftest import commit_file, git

PATTERN = refactor_commit_pattern("micro")
REVIEW = json.dumps({"findings": [{"title": "rename"}], "overall_correctness": "needs refactoring"})
SAVED_MAX_LOOP = 4
EXPLICIT_MAX_LOOP = 6
THIRD_ITERATION = 3


@pytest.fixture
def repo(git_repo: Path) -> GitRepo:
    """Repository on a refactor branch."""
    git(git_repo, "checkout", "-q", "-b", "refactor/micro-20260301-120000")
    return GitRepo(git_repo, MagicMock())


@pytest.fixture
def run_log(tmp_path: Path, repo: GitRepo) -> RunLog:
    """Run log whose markers point at the refactor branch."""
    log = RunLog(tmp_path / "logs" / "refactor")
    log.write_markers(
        RunMarkers(
            branch=repo.current_branch(),
            start_commit=repo.head_sha(),
            target_branch="develop",
            scope="micro",
            max_loop=SAVED_MAX_LOOP,
        ),
    )
    return log


class TestDetectState:
    """Tests for detect_state function."""

    def test_no_logs(self, run_log: RunLog, repo: GitRepo) -> None:
        """Without review files there is nothing to resume."""
        assert detect_state(run_log, PATTERN, repo).status is ResumeStatus.NO_LOGS

    def test_completed_run(self, run_log: RunLog, repo: GitRepo) -> None:
        """A run with a completed final status is not resumed."""
        run_log.write_summary(
            RunSummary(title="T", final_status="clean-pass", branch="b", target_branch="develop"),
        )
        state = detect_state(run_log, PATTERN, repo)
        assert state.status is ResumeStatus.COMPLETED
        assert state.prev_status == "clean-pass"

    def test_committed_iteration_resumes_at_next(self, run_log: RunLog, repo: GitRepo) -> None:
        """A commit for the last reviewed iteration moves on to the next one."""
        run_log.review_file(1).write_text(REVIEW)
        run_log.review_file(2).write_text(REVIEW)
        commit_file(repo.root, "app.py", "x = 1\n", refactor_commit_message("micro", 1, 4))
        commit_file(repo.root, "app.py", "x = 2\n", refactor_commit_message("micro", 2, 4))

        state = detect_state(run_log, PATTERN, repo)

        assert state == ResumeState(ResumeStatus.RESUMABLE, resume_from=THIRD_ITERATION)

    def test_uncommitted_iteration_reuses_review(self, run_log: RunLog, repo: GitRepo) -> None:
        """An interrupted iteration is redone with its saved review."""
        run_log.review_file(1).write_text(REVIEW)
        commit_file(repo.root, "app.py", "x = 1\n", refactor_commit_message("micro", 1, 4))
        run_log.review_file(2).write_text(REVIEW)

        state = detect_state(run_log, PATTERN, repo)

        assert state.resume_from == 2  # noqa: PLR2004
        assert state.reuse_review

    def test_unparsable_review_is_not_reused(self, run_log: RunLog, repo: GitRepo) -> None:
        """A broken saved review is requested again."""
        run_log.review_file(1).write_text("interrupted mid-write")

        state = detect_state(run_log, PATTERN, repo)

        assert state.resume_from == 1
        assert not state.reuse_review

    def test_iteration_number_prefix_is_exact(self, run_log: RunLog, repo: GitRepo) -> None:
        """A commit for iteration 10 does not count as iteration 1."""
        run_log.review_file(1).write_text(REVIEW)
        commit_file(repo.root, "app.py", "x = 1\n", f"{PATTERN} 10 changes")

        assert detect_state(run_log, PATTERN, repo).resume_from == 1


class TestValidateResumeBranch:
    """Tests for validate_resume_branch function."""

    def test_matching_branch(self, run_log: RunLog, repo: GitRepo) -> None:
        """The recorded branch is returned when it is checked out."""
        assert validate_resume_branch(run_log, repo, dry_run=False) == repo.current_branch()

    def test_missing_markers(self, tmp_path: Path, repo: GitRepo) -> None:
        """A missing branch marker means there is nothing to resume."""
        with pytest.raises(ValueError, match="missing branch.txt"):
            validate_resume_branch(RunLog(tmp_path / "empty"), repo, dry_run=False)

    def test_wrong_branch(self, run_log: RunLog, repo: GitRepo) -> None:
        """Being on another branch is an error naming the expected one."""
        git(repo.root, "checkout", "-q", "feature")
        with pytest.raises(ValueError, match="git checkout refactor/micro-20260301-120000"):
            validate_resume_branch(run_log, repo, dry_run=False)

    def test_non_refactor_branch_requires_dry_run(self, tmp_path: Path, repo: GitRepo) -> None:
        """Only dry runs may resume on a non-refactor branch."""
        git(repo.root, "checkout", "-q", "feature")
        log = RunLog(tmp_path / "dry")
        log.write_markers(RunMarkers(branch="feature"))

        assert validate_resume_branch(log, repo, dry_run=True) == "feature"
        with pytest.raises(ValueError, match="refactor/\\* branch"):
            validate_resume_branch(log, repo, dry_run=False)


class TestResetForResume:
    """Tests for reset_for_resume function."""

    def test_stashes_then_resets(self, repo: GitRepo) -> None:
        """Uncommitted edits are stashed before the reset."""
        (repo.root / "app.py").write_text("half-applied\n")
        (repo.root / "new.py").write_text("x = 1\n")

        reset_for_resume(repo)

        assert repo.dirty_files() == []
        assert RESUME_STASH_MESSAGE in git(repo.root, "stash", "list")

    def test_clean_tree_only_resets(self, repo: GitRepo) -> None:
        """A clean tree creates no stash."""
        reset_for_resume(repo)
        assert git(repo.root, "stash", "list") == ""


class TestApplySavedSettings:
    """Tests for apply_saved_settings function."""

    def test_saved_values_fill_in(self, run_log: RunLog, repo: GitRepo) -> None:
        """Target branch and max loop come from the markers."""
        settings = Settings(target_branch="main", max_loop=1)

        apply_saved_settings(run_log, settings, repo, explicit_target=False, explicit_max_loop=False)

        assert settings.target_branch == "develop"
        assert settings.max_loop == SAVED_MAX_LOOP

    def test_explicit_values_win(self, run_log: RunLog, repo: GitRepo) -> None:
        """Command-line values override saved ones."""
        git(repo.root, "branch", "main", "develop")
        settings = Settings(target_branch="main", max_loop=EXPLICIT_MAX_LOOP)

        apply_saved_settings(run_log, settings, repo, explicit_target=True, explicit_max_loop=True)

        assert settings.target_branch == "main"
        assert settings.max_loop == EXPLICIT_MAX_LOOP

    def test_scope_mismatch(self, run_log: RunLog, repo: GitRepo) -> None:
        """Resuming with another scope is refused."""
        settings = Settings(scope="module")
        with pytest.raises(ValueError, match="--scope micro --resume"):
            apply_saved_settings(run_log, settings, repo, explicit_target=False, explicit_max_loop=False)

    def test_missing_target(self, run_log: RunLog, repo: GitRepo) -> None:
        """A deleted target branch is an error."""
        settings = Settings(target_branch="gone")
        with pytest.raises(ValueError, match="does not exist"):
            apply_saved_settings(run_log, settings, repo, explicit_target=True, explicit_max_loop=False)


class TestCheckResumePoint:
    """Tests for check_resume_point function."""

    def test_within_cap(self) -> None:
        """A resume point inside the cap is accepted."""
        check_resume_point(ResumeState(ResumeStatus.RESUMABLE, resume_from=2), 2)

    def test_beyond_cap(self) -> None:
        """A resume point past the cap suggests a larger --max-loop."""
        with pytest.raises(ValueError, match="N >= 3"):
            check_resume_point(ResumeState(ResumeStatus.RESUMABLE, resume_from=3), 2)
