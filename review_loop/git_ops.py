"""Git plumbing: repository wrapper, allowlisted stashes and commit/push."""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from review_loop.messages import ALLOWLISTED_DIRTY_FILES
from review_loop.snapshot import WorktreeSnapshot, changed_files_since, dirty_files
from review_loop.utils import run_command

ALLOWLIST_STASH_MESSAGE = "review-loop: allowlisted local edits"
RESUME_STASH_MESSAGE = "refactor-suggest: pre-resume safety stash"


class StashConflictError(RuntimeError):
    """Raised when stashed local edits cannot be stashed or restored cleanly."""


class GitRepo:
    """Thin wrapper around the ``git`` CLI for one repository.

    Every method maps to one or two git commands. Failures are reported
    through return values, as with ``run_command``, except where a caller
    cannot sensibly continue.
    """

    def __init__(self, root: Path, logger: logging.Logger) -> None:
        """Initialize the wrapper.

        Args:
            root: Repository root
            logger: Logger instance for output

        """
        self.root = root
        self.logger = logger

    def git(self, *args: str, input_text: str | None = None) -> tuple[int, str, str]:
        """Run ``git <args>`` in the repository."""
        return run_command(["git", *args], cwd=self.root, input_text=input_text)

    def output(self, *args: str) -> str | None:
        """Return stripped stdout of a git command, or None if it failed."""
        returncode, stdout, _ = self.git(*args)
        if returncode != 0:
            return None
        return stdout.strip()

    def is_work_tree(self) -> bool:
        """Whether the root is inside a git work tree."""
        return self.output("rev-parse", "--is-inside-work-tree") == "true"

    def current_branch(self) -> str:
        """Return the checked-out branch name ("HEAD" when detached)."""
        return self.output("rev-parse", "--abbrev-ref", "HEAD") or "HEAD"

    def head_sha(self) -> str | None:
        """Return the SHA of HEAD."""
        return self.output("rev-parse", "HEAD")

    def ref_exists(self, ref: str) -> bool:
        """Whether ``ref`` resolves to a commit."""
        returncode, _, _ = self.git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        return returncode == 0

    def merge_base(self, first: str, second: str) -> str | None:
        """Return the merge base of two refs."""
        return self.output("merge-base", first, second)

    def has_branch_diff(self, target: str, branch: str) -> bool:
        """Whether ``target...branch`` has any changes."""
        returncode, _, _ = self.git("diff", "--quiet", f"{target}...{branch}")
        return returncode != 0

    def branch_diff(self, target: str, branch: str) -> str:
        """Return the diff of ``branch`` against its merge base with ``target``."""
        _, stdout, _ = self.git("diff", f"{target}...{branch}")
        return stdout

    def dirty_files(self) -> list[str]:
        """Return modified, staged and untracked paths."""
        return dirty_files(self.root)

    def untracked_files(self) -> list[str]:
        """Return untracked, non-ignored paths."""
        _, stdout, _ = self.git("ls-files", "-z", "--others", "--exclude-standard")
        return [path for path in stdout.split("\0") if path]

    def dirty_outside(self, allowlist: Iterable[str] = ALLOWLISTED_DIRTY_FILES) -> list[str]:
        """Return dirty paths that are not in ``allowlist``."""
        allowed = set(allowlist)
        return [path for path in self.dirty_files() if path not in allowed]

    def tracked_files(self) -> list[str]:
        """Return every tracked path."""
        _, stdout, _ = self.git("ls-files", "-z")
        return [path for path in stdout.split("\0") if path]

    def commit_subjects(self, revision_range: str) -> list[str]:
        """Return commit subjects in ``revision_range``, newest first."""
        returncode, stdout, _ = self.git("log", "--format=%s", revision_range)
        if returncode != 0:
            return []
        return [line for line in stdout.splitlines() if line]

    def commits_ahead(self, base: str, branch: str) -> int:
        """Return how many commits ``branch`` has that ``base`` does not."""
        count = self.output("rev-list", "--count", f"{base}..{branch}")
        return int(count) if count and count.isdigit() else 0

    def has_upstream(self) -> bool:
        """Whether the current branch tracks a remote branch."""
        returncode, _, _ = self.git("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}")
        return returncode == 0

    def push_remote(self) -> str | None:
        """Return the remote to push to: ``origin`` if present, else the first one."""
        remotes = (self.output("remote") or "").split()
        if not remotes:
            return None
        return "origin" if "origin" in remotes else remotes[0]

    def push(self, branch: str | None) -> bool:
        """Push the current branch, setting an upstream when there is none.

        Args:
            branch: Branch name used when an upstream has to be created

        Returns:
            True if something was pushed

        """
        if self.has_upstream():
            self.logger.info("Pushing to remote...")
            returncode, _, stderr = self.git("push")
        else:
            remote = self.push_remote()
            if not remote or not branch:
                self.logger.warning("No upstream or remote configured; skipping push.")
                return False
            self.logger.info("Setting upstream %s/%s and pushing...", remote, branch)
            returncode, _, stderr = self.git("push", "-u", remote, branch)

        if returncode != 0:
            self.logger.warning("Push failed (non-fatal): %s", stderr.strip())
            return False
        self.logger.info("Pushed.")
        return True

    def checkout_new_branch(self, branch: str, start_point: str) -> bool:
        """Create and check out ``branch`` from ``start_point``."""
        returncode, _, stderr = self.git("checkout", "-b", branch, start_point)
        if returncode != 0:
            self.logger.error("Failed to create branch %s: %s", branch, stderr.strip())
            return False
        return True

    def stash_push(self, message: str, paths: Sequence[str] = ()) -> bool:
        """Stash local changes (including untracked files), optionally limited to ``paths``."""
        args = ["stash", "push", "--quiet", "--include-untracked", "-m", message]
        if paths:
            args.extend(["--", *paths])
        returncode, _, stderr = self.git(*args)
        if returncode != 0:
            self.logger.error("git stash push failed: %s", stderr.strip())
            return False
        return True

    def stash_pop(self) -> bool:
        """Restore the most recent stash."""
        returncode, _, stderr = self.git("stash", "pop", "--quiet")
        if returncode != 0:
            self.logger.error("git stash pop failed: %s", stderr.strip())
            return False
        return True

    def reset_tracked(self) -> None:
        """Discard edits to tracked files."""
        self.git("reset", "--quiet", "--hard", "HEAD")

    def diff_head(self, paths: Sequence[str]) -> str:
        """Return ``git diff HEAD`` for ``paths``, untracked files included.

        Untracked paths are marked intent-to-add for the duration of the diff
        and unmarked afterwards, so the index is left as it was.
        """
        if not paths:
            return ""
        untracked = set(self.untracked_files())
        new_paths = [path for path in paths if path in untracked]
        self._intent_to_add(new_paths)
        try:
            _, stdout, _ = self.git("diff", "HEAD", "--", *paths)
        finally:
            self._unstage(new_paths)
        return stdout

    def diff_since(self, base: str, exclude: Sequence[str] = ()) -> str:
        """Return the working tree diff against ``base``, untracked files included."""
        new_paths = self.untracked_files()
        self._intent_to_add(new_paths)
        try:
            args = ["diff", base]
            if exclude:
                args.extend(["--", ".", *(f":(exclude){prefix.rstrip('/')}" for prefix in exclude)])
            _, stdout, _ = self.git(*args)
        finally:
            self._unstage(new_paths)
        return stdout

    def _intent_to_add(self, paths: Sequence[str]) -> None:
        if paths:
            self.git("add", "--intent-to-add", "--", *paths)

    def _unstage(self, paths: Sequence[str]) -> None:
        if paths:
            self.git("reset", "--quiet", "--", *paths)


def stash_allowlisted(repo: GitRepo, paths: Sequence[str] = ALLOWLISTED_DIRTY_FILES) -> bool:
    """Stash dirty allowlisted files so they stay out of agent commits.

    Args:
        repo: Repository wrapper
        paths: Allowlisted paths

    Returns:
        True if something was stashed (and must be restored later)

    Raises:
        StashConflictError: If the stash could not be created

    """
    dirty = set(repo.dirty_files())
    to_stash = [path for path in paths if path in dirty]
    if not to_stash:
        return False

    if not repo.stash_push(ALLOWLIST_STASH_MESSAGE, to_stash):
        message = f"Failed to stash allowlisted files: {', '.join(to_stash)}"
        raise StashConflictError(message)
    repo.logger.debug("Stashed allowlisted local edits: %s", ", ".join(to_stash))
    return True


def unstash_allowlisted(repo: GitRepo) -> None:
    """Restore edits stashed by ``stash_allowlisted``.

    Raises:
        StashConflictError: If the stash does not apply cleanly

    """
    if not repo.stash_pop():
        message = "Stash pop conflict while restoring allowlisted files"
        raise StashConflictError(message)


@dataclass(frozen=True)
class CommitOutcome:
    """Result of ``commit_and_push``."""

    committed: bool
    files: tuple[str, ...] = ()
    sha: str | None = None
    pushed: bool = False
    error: str | None = None


def commit_and_push(
    repo: GitRepo,
    baseline: WorktreeSnapshot,
    message: str,
    branch_hint: str | None,
    exclude_prefixes: Iterable[str] = (),
) -> CommitOutcome:
    """Commit exactly the files changed since ``baseline`` and push them.

    Pre-existing local edits recorded in the snapshot are never included.
    Pushing is best effort and never turns a successful commit into a
    failure.

    Args:
        repo: Repository wrapper
        baseline: Snapshot taken before the agent edited anything
        message: Commit message
        branch_hint: Branch to push when no upstream is configured
        exclude_prefixes: Engine-owned path prefixes to leave out

    Returns:
        What was committed and whether it was pushed

    """
    files = changed_files_since(repo.root, baseline, exclude_prefixes)
    if not files:
        repo.logger.info("No file changes after fix: nothing to commit.")
        return CommitOutcome(committed=False)

    pathspec = "\0".join(files)
    pathspec_args = ("--pathspec-from-file=-", "--pathspec-file-nul")

    repo.logger.info("Committing %s file(s)...", len(files))
    repo.git("reset", "--quiet", *pathspec_args, "HEAD", input_text=pathspec)
    returncode, _, stderr = repo.git("add", *pathspec_args, input_text=pathspec)
    if returncode == 0:
        returncode, _, stderr = repo.git("commit", "-m", message, *pathspec_args, input_text=pathspec)
    if returncode != 0:
        error = stderr.strip() or f"git exited with status {returncode}"
        repo.logger.error("Commit failed: %s", error)
        return CommitOutcome(committed=False, files=tuple(files), error=error)

    repo.logger.info("Committed.")
    pushed = repo.push(branch_hint)
    return CommitOutcome(committed=True, files=tuple(files), sha=repo.head_sha(), pushed=pushed)
