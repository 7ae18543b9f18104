"""Constants and message generators for user-facing messages."""

from collections.abc import Iterable

REVIEW_COMMIT_PATTERN = "fix(ai-review): apply iteration"
ALLOWLISTED_DIRTY_FILES = (".gitignore", ".reviewlooprc", ".refactorsuggestrc")

FIX_NITS_GUIDELINES = """\
6. **Fix nits and potential issues**: Beyond verifying the original fixes, also flag:
   - Style inconsistencies in the changed code (naming, formatting)
   - Potential edge cases or error handling gaps
   - Minor improvements that are low-risk and localized to the changed files
   - Do NOT flag issues in unchanged code, only in files touched by the diff"""


def git_diff_instructions(start_sha: str) -> str:
    """Return git diff instructions for showing changes.

    Args:
        start_sha: Starting git commit SHA

    Returns:
        Instruction string

    """
    return f"To see all changes made: git diff {start_sha}"


def git_checkout_instructions(start_sha: str) -> str:
    """Return git checkout instructions for rolling back changes.

    Args:
        start_sha: Starting git commit SHA

    Returns:
        Instruction string

    """
    return f"To revert all changes:   git checkout {start_sha} -- ."


def refactor_commit_pattern(scope: str) -> str:
    """Return the subject prefix of refactor-mode iteration commits."""
    return f"refactor(ai-{scope}): apply iteration"


def flatten_self_review_summary(lines: Iterable[str]) -> str:
    """Join self-review summary lines into a single ``; ``-separated line."""
    return "; ".join(line for line in lines if line)


def review_commit_message(iteration: int, max_loop: int, self_review: Iterable[str] = ()) -> str:
    """Return the commit message for a review-mode iteration.

    Args:
        iteration: Outer iteration number
        max_loop: Iteration cap
        self_review: Self-review summary lines (may be empty)

    Returns:
        Commit message

    """
    message = (
        f"{REVIEW_COMMIT_PATTERN} {iteration} fixes\n\n"
        f"Auto-generated by review-loop (iteration {iteration}/{max_loop})"
    )
    summary = flatten_self_review_summary(self_review)
    if summary:
        message += f"\nSelf-review: {summary}"
    return message


def refactor_commit_message(
    scope: str,
    iteration: int,
    max_loop: int,
    self_review: Iterable[str] = (),
) -> str:
    """Return the commit message for a refactor-mode iteration.

    Args:
        scope: Refactoring scope
        iteration: Outer iteration number
        max_loop: Iteration cap
        self_review: Self-review summary lines (may be empty)

    Returns:
        Commit message

    """
    message = (
        f"{refactor_commit_pattern(scope)} {iteration} changes\n\n"
        f"Auto-generated by refactor-suggest (scope: {scope}, iteration {iteration}/{max_loop})"
    )
    summary = flatten_self_review_summary(self_review)
    if summary:
        message += f"\nSelf-review: {summary}"
    return message


def self_review_commit_message(sub_iteration: int) -> str:
    """Return the commit message for a per-sub-iteration self-review commit."""
    return f"fix(ai-review): apply self-review sub-iteration {sub_iteration}"


def refactor_branch_name(scope: str, timestamp: str) -> str:
    """Return the name of a fresh refactoring branch."""
    return f"refactor/{scope}-{timestamp}"


def dirty_tree_error(command: str) -> str:
    """Return the error shown when the working tree is not clean."""
    return (
        f"Working tree is not clean. Commit or stash your changes before running {command}.\n\n"
        "  git stash        # stash changes\n"
        "  git commit -am … # or commit them"
    )


def all_clear_comment(iteration: int) -> str:
    """Return the PR comment posted when a review finds nothing."""
    return f"### AI Review: Iteration {iteration} ✅\n\nNo issues found. Patch is correct."


def draft_pr_title(scope: str) -> str:
    """Return the title of the draft PR opened after a refactor run."""
    return f"refactor({scope}): AI-suggested {scope}-level improvements"


def draft_pr_body(scope: str, max_loop: int, final_status: str) -> str:
    """Return the body of the draft PR opened after a refactor run."""
    return (
        f"## Refactoring: {scope} scope\n\n"
        "Auto-generated by `refactor-suggest`.\n\n"
        f"- **Scope**: {scope}\n"
        f"- **Iterations**: {max_loop}\n"
        f"- **Final status**: {final_status}"
    )


def stash_conflict_error() -> str:
    """Return the error shown when allowlisted edits cannot be restored."""
    return (
        "Failed to restore stashed .gitignore/.reviewlooprc/.refactorsuggestrc edits. "
        "Check 'git stash list' and resolve manually (git stash show, git stash drop)."
    )
