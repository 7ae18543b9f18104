"""Detect where an interrupted run should pick up, and prepare the tree for it."""

from dataclasses import dataclass
from enum import StrEnum

from review_loop.config import Settings
from review_loop.extract import extract_json_from_file
from review_loop.git_ops import RESUME_STASH_MESSAGE, GitRepo
from review_loop.run_log import RunLog

# Final statuses after which there is nothing left to resume.
COMPLETED_STATUSES = frozenset({"clean-pass", "no-diff", "dry-run-stop", "max-iterations-reached"})


class ResumeStatus(StrEnum):
    """Coarse state of a previous run."""

    COMPLETED = "completed"
    RESUMABLE = "resumable"
    NO_LOGS = "no-logs"


@dataclass(frozen=True)
class ResumeState:
    """Where to resume a run. Derived from the logs, never persisted."""

    status: ResumeStatus
    resume_from: int = 1
    reuse_review: bool = False
    prev_status: str | None = None


def detect_state(run_log: RunLog, commit_pattern: str, repo: GitRepo) -> ResumeState:
    """Work out where a previous run stopped.

    The highest iteration N with a review file is the candidate. If a commit
    whose subject starts with ``"{commit_pattern} {N} "`` exists since the
    run's start commit, iteration N finished and the run resumes at N+1.
    Otherwise iteration N is redone, reusing its review when it still parses.

    Args:
        run_log: Log directory of the previous run
        commit_pattern: Subject prefix of iteration commits
        repo: Repository wrapper

    Returns:
        Resume state

    """
    prev_status = run_log.read_final_status()
    if prev_status in COMPLETED_STATUSES:
        return ResumeState(ResumeStatus.COMPLETED, prev_status=prev_status)

    iterations = run_log.review_iterations()
    if not iterations:
        return ResumeState(ResumeStatus.NO_LOGS)

    last = iterations[-1]
    start_commit = run_log.read_markers().start_commit
    revision_range = f"{start_commit}..HEAD" if start_commit else "HEAD"
    marker = f"{commit_pattern} {last} "
    if any(subject.startswith(marker) for subject in repo.commit_subjects(revision_range)):
        return ResumeState(ResumeStatus.RESUMABLE, resume_from=last + 1, prev_status=prev_status)

    reuse = extract_json_from_file(run_log.review_file(last)).found
    return ResumeState(
        ResumeStatus.RESUMABLE,
        resume_from=last,
        reuse_review=reuse,
        prev_status=prev_status,
    )


def validate_resume_branch(run_log: RunLog, repo: GitRepo, *, dry_run: bool) -> str:
    """Check that the repository is on the branch the previous run used.

    Returns:
        The recorded branch

    Raises:
        ValueError: If there is nothing to resume or the branch does not match

    """
    expected = run_log.read_markers().branch
    if not expected:
        message = "No prior run logs found. Cannot resume (missing branch.txt)."
        raise ValueError(message)

    current = repo.current_branch()
    if current != expected:
        message = (
            f"Resume expects branch '{expected}' but currently on '{current}'.\n"
            f"  git checkout {expected}"
        )
        raise ValueError(message)

    if not dry_run and not expected.startswith("refactor/"):
        message = (
            f"Previous run used branch '{expected}' (not a refactor/* branch). "
            "A non-dry-run resume requires a refactor/* branch; "
            "run without --resume to start a fresh refactoring run."
        )
        raise ValueError(message)

    return expected


def reset_for_resume(repo: GitRepo) -> None:
    """Stash anything uncommitted, then drop partial edits of the interrupted run.

    The stash keeps changes recoverable via ``git stash list`` in case they
    did not come from the interrupted run.

    Raises:
        ValueError: If the safety stash could not be created

    """
    if repo.dirty_files():
        repo.logger.info("Stashing uncommitted changes before resume reset...")
        if not repo.stash_push(RESUME_STASH_MESSAGE):
            message = "Failed to stash uncommitted changes. Aborting resume to prevent data loss."
            raise ValueError(message)

    repo.logger.info("Resetting partial edits from interrupted run...")
    repo.reset_tracked()


def apply_saved_settings(
    run_log: RunLog,
    settings: Settings,
    repo: GitRepo,
    *,
    explicit_target: bool,
    explicit_max_loop: bool,
) -> None:
    """Restore target branch and iteration cap from the previous run and check the scope.

    Values given explicitly on the command line win over saved ones. The
    scope must match the saved scope.

    Raises:
        ValueError: If the saved target is gone or the scope differs

    """
    markers = run_log.read_markers()

    if markers.target_branch and not explicit_target:
        settings.target_branch = markers.target_branch
    if not repo.ref_exists(settings.target_branch):
        message = f"Saved target branch '{settings.target_branch}' does not exist."
        raise ValueError(message)

    if markers.scope and settings.scope != markers.scope:
        message = (
            f"Resume expects scope '{markers.scope}' but got '{settings.scope}'.\n"
            f"  Use: --scope {markers.scope} --resume"
        )
        raise ValueError(message)

    if markers.max_loop is not None and not explicit_max_loop:
        settings.max_loop = markers.max_loop


def check_resume_point(state: ResumeState, max_loop: int) -> None:
    """Reject a resume point beyond the iteration cap.

    Raises:
        ValueError: If ``state.resume_from`` exceeds ``max_loop``

    """
    if state.resume_from > max_loop:
        message = (
            f"Resume point ({state.resume_from}) exceeds max-loop ({max_loop}).\n"
            f"  Use: --max-loop N --resume (where N >= {state.resume_from})"
        )
        raise ValueError(message)
