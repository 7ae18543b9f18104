"""Outer loops: review-fix (``review-loop``), refactor-fix (``refactor-suggest``)
and the standalone self-review."""

import json
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import pydantic as pyd
from rich.prompt import Confirm

from review_loop.agents import EditorAgent, ReviewerAgent
from review_loop.budget import Agent, BudgetGatekeeper
from review_loop.config import Paths, RunMode, Settings
from review_loop.context import RunContext, review_json
from review_loop.extract import ExtractionStatus, JsonExtractionError, extract_json_from_file
from review_loop.git_ops import (
    GitRepo,
    StashConflictError,
    commit_and_push,
    stash_allowlisted,
    unstash_allowlisted,
)
from review_loop.messages import (
    dirty_tree_error,
    git_checkout_instructions,
    git_diff_instructions,
    refactor_branch_name,
    refactor_commit_message,
    refactor_commit_pattern,
    review_commit_message,
    stash_conflict_error,
)
from review_loop.models import (
    CODE_CLEAN,
    PATCH_CORRECT,
    RefactoringPlan,
    ReviewResult,
    parse_review,
)
from review_loop.pr import PrInfo, PullRequestManager, build_iteration_comment
from review_loop.prompts import (
    FIX_EXECUTE_TEMPLATE,
    FIX_OPINION_TEMPLATE,
    REFACTOR_FIX_EXECUTE_TEMPLATE,
    REFACTOR_FIX_OPINION_TEMPLATE,
    REVIEW_TEMPLATE,
    refactor_template,
)
from review_loop.resume import (
    COMPLETED_STATUSES,
    ResumeState,
    ResumeStatus,
    apply_saved_settings,
    check_resume_point,
    detect_state,
    reset_for_resume,
    validate_resume_branch,
)
from review_loop.retry import Clock, RetryExecutor, SystemClock
from review_loop.run_log import IterationRecord, RunLog, RunMarkers, RunSummary
from review_loop.self_review import (
    RefixPayloadHook,
    SelfReviewLoop,
    SelfReviewOptions,
    SelfReviewReport,
    inject_refactoring_plan,
)
from review_loop.snapshot import WorktreeSnapshot, take_snapshot
from review_loop.utils import configure_logger

BANNER = "═" * 55
RULE = "─" * 55
PLAN_CONFIRM_SCOPES = frozenset({"layer", "full"})
NOT_REVIEWED = "not reviewed"

# Asked before a layer or full plan is applied.
PlanConfirmer = Callable[[RefactoringPlan | None], bool]


class FinalStatus(StrEnum):
    """How a run ended. Exactly one is recorded in the run summary."""

    CLEAN_PASS = "clean-pass"
    NO_DIFF = "no-diff"
    DRY_RUN_STOP = "dry-run-stop"
    MAX_ITERATIONS_REACHED = "max-iterations-reached"
    AUTO_COMMIT_DISABLED = "auto-commit-disabled"
    PARSE_ERROR = "parse-error"
    AGENT_CALL_ERROR = "agent-call-error"
    USER_ABORTED_PLAN = "user-aborted-plan"
    BUDGET_TIMEOUT = "budget-timeout"
    STASH_CONFLICT = "stash-conflict"
    COMMIT_FAILED = "commit-failed"

    @property
    def exit_code(self) -> int:
        """Process exit code for this status."""
        return 1 if self in _FAILURE_STATUSES else 0


_FAILURE_STATUSES = frozenset(
    {
        FinalStatus.PARSE_ERROR,
        FinalStatus.AGENT_CALL_ERROR,
        FinalStatus.BUDGET_TIMEOUT,
        FinalStatus.STASH_CONFLICT,
        FinalStatus.COMMIT_FAILED,
    },
)


@dataclass(frozen=True)
class RunResult:
    """Outcome of a loop run."""

    status: FinalStatus
    summary_file: Path | None = None

    @property
    def exit_code(self) -> int:
        """Process exit code."""
        return self.status.exit_code


def confirm_plan(plan: RefactoringPlan | None) -> bool:
    """Ask on the terminal whether to apply a refactoring plan."""
    steps = len(plan.steps) if plan is not None else 0
    return Confirm.ask(f"  Apply this plan ({steps} steps)?", default=False)


class LoopRunner:
    """Shared machinery of the review and refactor loops.

    Subclasses supply the review prompt, the clean verdict and the fix
    templates; this class owns the review → fix → self-review → commit
    sequence of a single iteration.
    """

    mode: RunMode = RunMode.REVIEW
    title = "Review Loop Summary"
    clean_verdict = PATCH_CORRECT
    opinion_template = FIX_OPINION_TEMPLATE
    execute_template = FIX_EXECUTE_TEMPLATE
    fix_label = "fix"
    refix_hook: RefixPayloadHook | None = None

    def __init__(
        self,
        settings: Settings,
        paths: Paths,
        *,
        clock: Clock | None = None,
        gatekeeper: BudgetGatekeeper | None = None,
        pr_manager: PullRequestManager | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            settings: Configuration settings
            paths: Path management
            clock: Time source for retries and budget waits
            gatekeeper: Budget gatekeeper (a default one is built otherwise)
            pr_manager: PR manager (a default one is built otherwise)

        """
        self.settings = settings
        self.paths = paths
        self.project_root = paths.project_root
        self.clock = clock or SystemClock()
        paths.ensure_state_dir()

        session_log = None
        if settings.debug:
            session_log = paths.state_dir / f"session-{self.clock.wall_time():%Y%m%d-%H%M%S}.log"
        self.logger = configure_logger(paths.run_log, session_log, debug=settings.debug)

        self.repo = GitRepo(self.project_root, self.logger)
        self.run_log = RunLog(paths.log_dir_for(self.mode))
        executor = RetryExecutor(
            self.logger,
            max_wait=settings.retry_max_wait,
            initial_wait=settings.retry_initial_wait,
            clock=self.clock,
            cwd=self.project_root,
            diagnostic_log=self.run_log.agent_log,
        )
        self.reviewer = ReviewerAgent(executor, self.logger, settings.reviewer_cmd)
        self.editor = EditorAgent(executor, self.logger, settings.editor_cmd)
        self.gatekeeper = gatekeeper or BudgetGatekeeper(self.logger, clock=self.clock)
        self.pr = pr_manager or PullRequestManager(self.project_root, self.logger)
        self.failed_iteration: int | None = None

    # Setup helpers
    def check_repository(self) -> None:
        """Validate that we run inside a git repo with an existing target branch.

        Raises:
            ValueError: If either check fails

        """
        if not self.repo.is_work_tree():
            message = "Not inside a git repository."
            raise ValueError(message)
        if not self.repo.ref_exists(self.settings.target_branch):
            message = f"Target branch '{self.settings.target_branch}' does not exist."
            raise ValueError(message)

    def check_clean_tree(self, command: str) -> None:
        """Refuse to apply fixes on top of unrelated local changes.

        Raises:
            ValueError: If anything besides the allowlisted files is dirty

        """
        if self.repo.dirty_outside():
            raise ValueError(dirty_tree_error(command))

    def make_context(self, current_branch: str) -> RunContext:
        """Build the run context for this run."""
        return RunContext(
            settings=self.settings,
            paths=self.paths,
            repo=self.repo,
            run_log=self.run_log,
            mode=self.mode,
            current_branch=current_branch,
            target_branch=self.settings.target_branch,
            logger=self.logger,
        )

    # One iteration
    def obtain_review(
        self,
        ctx: RunContext,
        iteration: int,
        prompt: str,
        *,
        reuse: bool = False,
    ) -> ReviewResult | FinalStatus:
        """Run (or reuse) the reviewing agent and parse its findings.

        Returns:
            The parsed review, or the status that ends the run

        """
        review_file = self.run_log.review_file(iteration)

        if reuse and review_file.is_file():
            self.logger.info("[resume] Reusing saved review: %s", review_file)
        else:
            if not self.gatekeeper.wait_for_budget(
                Agent.REVIEWER,
                self.settings.budget_scope,
                self.settings.budget_max_wait,
            ):
                self.logger.error("Reviewer budget timeout before review (iteration %s).", iteration)
                return FinalStatus.BUDGET_TIMEOUT

            self.logger.info("Running review (iteration %s)...", iteration)
            result = self.reviewer.review(prompt, review_file)
            if not result.ok:
                self.logger.error(
                    "Review failed (iteration %s, %s). See %s for details.",
                    iteration,
                    result.error_class,
                    self.run_log.agent_log,
                )
                return FinalStatus.AGENT_CALL_ERROR

        extraction = extract_json_from_file(review_file)
        if extraction.status is ExtractionStatus.NOT_FOUND:
            self.logger.warning("Review output file not found (%s). The reviewer may have failed.", review_file)
            return FinalStatus.PARSE_ERROR
        if extraction.status is ExtractionStatus.UNPARSABLE:
            self.logger.warning("Could not parse review output as JSON. See %s for details.", review_file)
            return FinalStatus.PARSE_ERROR

        try:
            review = parse_review(extraction.payload, self.project_root)
        except JsonExtractionError as exc:
            self.logger.warning("%s. See %s for details.", exc, review_file)
            return FinalStatus.PARSE_ERROR

        self.logger.info("Findings: %s | Overall: %s", len(review.findings), review.overall_correctness)
        return review

    def fix_and_commit(
        self,
        ctx: RunContext,
        record: IterationRecord,
        review: ReviewResult,
        commit_message: Callable[[list[str]], str] | None,
    ) -> tuple[FinalStatus | None, SelfReviewReport]:
        """Fix the findings, self-review the fix and commit it.

        Allowlisted local edits are stashed for the duration so they can
        never end up in the commit.

        Args:
            ctx: Run context
            record: Iteration record to fill in
            review: Findings to fix
            commit_message: Builds the commit message from self-review lines;
                None skips the commit

        Returns:
            (status that ends the run or None to continue, self-review report)

        """
        try:
            stashed = stash_allowlisted(self.repo)
        except StashConflictError as exc:
            self.logger.error("%s", exc)
            return FinalStatus.STASH_CONFLICT, SelfReviewReport()

        outcome: tuple[FinalStatus | None, SelfReviewReport] = (None, SelfReviewReport())
        restored = True
        try:
            outcome = self._apply_fix(ctx, record, review, commit_message)
        finally:
            if stashed:
                try:
                    unstash_allowlisted(self.repo)
                except StashConflictError:
                    self.logger.error(stash_conflict_error())
                    restored = False

        if not restored:
            return FinalStatus.STASH_CONFLICT, outcome[1]
        return outcome

    def _apply_fix(
        self,
        ctx: RunContext,
        record: IterationRecord,
        review: ReviewResult,
        commit_message: Callable[[list[str]], str] | None,
    ) -> tuple[FinalStatus | None, SelfReviewReport]:
        iteration = record.iteration
        baseline = take_snapshot(self.project_root)
        report = SelfReviewReport()

        if not self.gatekeeper.wait_for_budget(
            Agent.EDITOR,
            self.settings.budget_scope,
            self.settings.budget_max_wait,
        ):
            self.logger.error("Editor budget timeout before fix (iteration %s).", iteration)
            return FinalStatus.BUDGET_TIMEOUT, report

        opinion_file = self.run_log.opinion_file(iteration)
        fix_file = self.run_log.fix_file(iteration)
        record.opinion_file = str(opinion_file)
        record.fix_file = str(fix_file)
        fix = self.editor.two_step_fix(
            ctx.render(self.opinion_template, review_json=review_json(review)),
            ctx.render(self.execute_template),
            opinion_file,
            fix_file,
            label=self.fix_label,
        )
        if not fix.ok:
            return FinalStatus.AGENT_CALL_ERROR, report

        if self.settings.max_subloop > 0:
            report = SelfReviewLoop(ctx, self.editor, self.gatekeeper).run(
                SelfReviewOptions(
                    iteration=iteration,
                    original_review=review,
                    baseline=baseline,
                    max_sub_iterations=self.settings.max_subloop,
                    fix_nits=self.settings.fix_nits,
                    opinion_template=self.opinion_template,
                    execute_template=self.execute_template,
                    refix_hook=self.refix_hook,
                ),
            )
            record.self_review = [item.to_entry() for item in report.records]

        if commit_message is None:
            self.logger.info("Auto-commit is disabled: skipping commit and push.")
            return None, report

        committed = commit_and_push(
            self.repo,
            baseline,
            commit_message(report.summary_lines),
            ctx.current_branch,
            ctx.exclude_prefixes,
        )
        if committed.error is not None:
            self.logger.error("Commit failed (iteration %s): the fix is left uncommitted.", iteration)
            self.failed_iteration = iteration
            return FinalStatus.COMMIT_FAILED, report
        record.commit = committed.sha
        return None, report

    def finish(self, ctx: RunContext | None, status: FinalStatus, extra_lines: list[str] | None = None) -> RunResult:
        """Write the run summary and print the closing banner."""
        branch = ctx.current_branch if ctx else self.repo.current_branch()
        summary_file = self.run_log.write_summary(
            RunSummary(
                title=self.title,
                final_status=str(status),
                branch=branch,
                target_branch=self.settings.target_branch,
                max_loop=self.settings.max_loop,
                scope=self.settings.scope if self.mode is RunMode.REFACTOR else None,
            ),
            extra_lines=[*(extra_lines or []), *self._failure_lines()],
        )
        self.logger.info(BANNER)
        self.logger.info(" Done. Status: %s", status)
        self.logger.info(" Summary: %s", summary_file)
        self.logger.info(BANNER)
        return RunResult(status, summary_file)

    def _failure_lines(self) -> list[str]:
        if self.failed_iteration is None:
            return []
        return [f"- **Failed iteration**: {self.failed_iteration}"]

    def _iteration_header(self, iteration: int) -> None:
        self.logger.info(RULE)
        self.logger.info(" Iteration %s / %s", iteration, self.settings.max_loop)
        self.logger.info(RULE)


class ReviewLoopRunner(LoopRunner):
    """Review the branch diff, fix findings, repeat until clean."""

    def run(self) -> RunResult:
        """Run the review-fix loop.

        Returns:
            Final status and summary location

        """
        self.check_repository()
        if not self.settings.dry_run:
            self.check_clean_tree("review-loop")

        current_branch = self.repo.current_branch()
        self.paths.ensure_state_dir()
        self.run_log.ensure()
        self.run_log.clear()
        start_sha = self.repo.head_sha()
        self.run_log.write_markers(
            RunMarkers(
                branch=current_branch,
                start_commit=start_sha,
                target_branch=self.settings.target_branch,
                max_loop=self.settings.max_loop,
            ),
        )
        ctx = self.make_context(current_branch)

        pr_info = self.pr.get_pr_info(current_branch)
        if pr_info is not None:
            self.logger.info("Detected PR #%s for branch %s", pr_info.number, current_branch)
        else:
            self.logger.info("No open PR detected: PR comments will be skipped.")

        self.logger.info(BANNER)
        self.logger.info(" Review Loop: %s → %s", current_branch, self.settings.target_branch)
        self.logger.info(
            " Max iterations: %s | Sub-loops: %s | Dry-run: %s",
            self.settings.max_loop,
            self.settings.max_subloop,
            self.settings.dry_run,
        )
        self.logger.info(BANNER)

        status = self._run_iterations(ctx, pr_info)
        result = self.finish(ctx, status)
        if start_sha and self.repo.head_sha() != start_sha:
            self.logger.info(git_diff_instructions(start_sha))
            self.logger.info(git_checkout_instructions(start_sha))
        return result

    def _run_iterations(self, ctx: RunContext, pr_info: PrInfo | None) -> FinalStatus:
        max_loop = self.settings.max_loop or 1
        for iteration in range(1, max_loop + 1):
            self._iteration_header(iteration)
            status = self._run_iteration(ctx, iteration, pr_info)
            if status is not None:
                return status
        return FinalStatus.MAX_ITERATIONS_REACHED

    def _run_iteration(self, ctx: RunContext, iteration: int, pr_info: PrInfo | None) -> FinalStatus | None:
        if not self.repo.has_branch_diff(self.settings.target_branch, ctx.current_branch):
            self.logger.info(
                "No diff between %s and %s. Nothing to review.",
                self.settings.target_branch,
                ctx.current_branch,
            )
            return FinalStatus.NO_DIFF

        review = self.obtain_review(ctx, iteration, ctx.render(REVIEW_TEMPLATE, iteration=iteration))
        if isinstance(review, FinalStatus):
            return review

        record = IterationRecord(
            iteration=iteration,
            review_file=str(self.run_log.review_file(iteration)),
            findings_count=len(review.findings),
            verdict=review.overall_correctness,
            review=review.to_payload(),
        )
        status = self._handle_review(ctx, record, review, pr_info)
        record.outcome = str(status) if status is not None else "continue"
        self.run_log.write_iteration(record)
        return status

    def _handle_review(
        self,
        ctx: RunContext,
        record: IterationRecord,
        review: ReviewResult,
        pr_info: PrInfo | None,
    ) -> FinalStatus | None:
        iteration = record.iteration
        if review.is_clean(self.clean_verdict):
            self.logger.info("All clear: no issues found.")
            if pr_info is not None:
                self.pr.post_all_clear(pr_info, iteration)
            return FinalStatus.CLEAN_PASS

        if self.settings.dry_run:
            self.logger.info("Dry-run mode: skipping fixes.")
            return FinalStatus.DRY_RUN_STOP

        max_loop = self.settings.max_loop or 1
        commit_message = None
        if self.settings.auto_commit:

            def commit_message(lines: list[str]) -> str:
                return review_commit_message(iteration, max_loop, lines)

        status, report = self.fix_and_commit(ctx, record, review, commit_message)
        if status is not None:
            return status

        if not self.settings.auto_commit:
            return FinalStatus.AUTO_COMMIT_DISABLED

        if pr_info is not None:
            self.pr.post_comment(
                pr_info,
                build_iteration_comment(
                    iteration,
                    max_loop,
                    review,
                    self.run_log.fix_file(iteration),
                    self.run_log.opinion_file(iteration),
                    report.summary_lines,
                    self.settings.max_subloop,
                ),
            )
        return None


class RefactorRunner(LoopRunner):
    """Ask for refactorings at a given scope and apply them on a fresh branch."""

    mode = RunMode.REFACTOR
    title = "Refactor Suggest Summary"
    clean_verdict = CODE_CLEAN
    opinion_template = REFACTOR_FIX_OPINION_TEMPLATE
    execute_template = REFACTOR_FIX_EXECUTE_TEMPLATE
    fix_label = "refactor-fix"
    refix_hook = staticmethod(inject_refactoring_plan)

    def __init__(
        self,
        settings: Settings,
        paths: Paths,
        *,
        resume: bool = False,
        explicit_target: bool = False,
        explicit_max_loop: bool = False,
        confirm: PlanConfirmer | None = None,
        clock: Clock | None = None,
        gatekeeper: BudgetGatekeeper | None = None,
        pr_manager: PullRequestManager | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            settings: Configuration settings
            paths: Path management
            resume: Continue the previous run instead of starting a new one
            explicit_target: Target branch was given on the command line
            explicit_max_loop: Iteration cap was given on the command line
            confirm: Asks whether to apply a layer/full plan
            clock: Time source
            gatekeeper: Budget gatekeeper
            pr_manager: PR manager

        """
        super().__init__(settings, paths, clock=clock, gatekeeper=gatekeeper, pr_manager=pr_manager)
        self.resume = resume
        self.explicit_target = explicit_target
        self.explicit_max_loop = explicit_max_loop
        self.confirm = confirm or confirm_plan

    @property
    def extra_summary_lines(self) -> list[str]:
        """Summary lines specific to refactoring runs."""
        return [f"- **Scope**: {self.settings.scope}"]

    def run(self) -> RunResult:
        """Run the refactor-fix loop.

        Returns:
            Final status and summary location

        """
        self.check_repository()
        if self.resume:
            completed = self._prepare_resume()
            if completed is not None:
                return RunResult(completed, self.run_log.summary_md)

        if not self.settings.dry_run:
            self.check_clean_tree("refactor-suggest")

        current_branch = self.repo.current_branch()
        if not self.settings.dry_run and not self.resume:
            created = self._create_branch()
            if isinstance(created, FinalStatus):
                return self.finish(None, created, self.extra_summary_lines)
            current_branch = created
        elif self.settings.dry_run:
            self.logger.info("Dry-run mode: staying on %s", current_branch)
        else:
            self.logger.info("Resume mode: staying on %s", current_branch)

        self.paths.ensure_state_dir()
        self.run_log.ensure()
        if not self.resume:
            self.run_log.clear()
            self.run_log.write_markers(
                RunMarkers(
                    branch=current_branch,
                    start_commit=self.repo.head_sha(),
                    target_branch=self.settings.target_branch,
                    scope=self.settings.scope,
                    max_loop=self.settings.max_loop,
                ),
            )
        ctx = self.make_context(current_branch)

        state = ResumeState(ResumeStatus.RESUMABLE)
        if self.resume:
            apply_saved_settings(
                self.run_log,
                self.settings,
                self.repo,
                explicit_target=self.explicit_target,
                explicit_max_loop=self.explicit_max_loop,
            )
            ctx = self.make_context(current_branch)
            state = detect_state(self.run_log, refactor_commit_pattern(self.settings.scope), self.repo)
            if state.status is ResumeStatus.COMPLETED:
                self.logger.info("Previous run completed with status: %s. Nothing to resume.", state.prev_status)
                return self.finish(ctx, FinalStatus(state.prev_status), self.extra_summary_lines)
            if state.status is ResumeStatus.NO_LOGS:
                message = f"No previous logs found in {self.run_log.log_dir}. Nothing to resume."
                raise ValueError(message)
            self.logger.info(
                "Resuming from iteration %s (reuse_review=%s)", state.resume_from, state.reuse_review
            )
        check_resume_point(state, self.settings.max_loop or 1)

        self.logger.info(BANNER)
        self.logger.info(
            " Refactor Suggest: scope=%s | branch=%s → %s",
            self.settings.scope,
            current_branch,
            self.settings.target_branch,
        )
        self.logger.info(
            " Max iterations: %s | Sub-loops: %s | Dry-run: %s",
            self.settings.max_loop,
            self.settings.max_subloop,
            self.settings.dry_run,
        )
        self.logger.info(BANNER)

        status = self._run_iterations(ctx, state)
        if self.settings.create_pr and not self.settings.dry_run and status in (
            FinalStatus.MAX_ITERATIONS_REACHED,
            FinalStatus.CLEAN_PASS,
        ):
            self._open_draft_pr(ctx, status)
        return self.finish(ctx, status, self.extra_summary_lines)

    def _prepare_resume(self) -> FinalStatus | None:
        """Validate the resume branch and reset partial edits.

        Returns:
            The previous final status when that run already completed
        """
        validate_resume_branch(self.run_log, self.repo, dry_run=self.settings.dry_run)
        previous = self.run_log.read_final_status()
        if previous in COMPLETED_STATUSES:
            self.logger.info("Previous run already completed (status: %s). Nothing to resume.", previous)
            return FinalStatus(previous)
        if not self.settings.dry_run:
            reset_for_resume(self.repo)
        return None

    def _create_branch(self) -> str | FinalStatus:
        """Create the refactoring branch from the target branch.

        Returns:
            The new branch name, or STASH_CONFLICT if local edits could not be restored

        Raises:
            ValueError: If the branch cannot be created

        """
        try:
            stashed = stash_allowlisted(self.repo)
        except StashConflictError as exc:
            raise ValueError(str(exc)) from exc

        branch = refactor_branch_name(self.settings.scope, f"{self.clock.wall_time():%Y%m%d-%H%M%S}")
        self.logger.info("Creating branch: %s (from %s)", branch, self.settings.target_branch)
        if not self.repo.checkout_new_branch(branch, self.settings.target_branch):
            if stashed:
                self.repo.stash_pop()
            message = f"Failed to create branch {branch}"
            raise ValueError(message)

        if stashed:
            try:
                unstash_allowlisted(self.repo)
            except StashConflictError:
                self.logger.error(stash_conflict_error())
                return FinalStatus.STASH_CONFLICT
        return branch

    def _write_source_files(self) -> Path:
        path = self.run_log.source_files
        files = self.repo.tracked_files()
        path.write_text("".join(f"{name}\n" for name in files), encoding="utf-8")
        self.logger.debug("Collected %s source files into %s", len(files), path)
        return path

    def _run_iterations(self, ctx: RunContext, state: ResumeState) -> FinalStatus:
        max_loop = self.settings.max_loop or 1
        for iteration in range(1, max_loop + 1):
            self._iteration_header(iteration)
            if iteration < state.resume_from:
                self.logger.info("[resume] Skipping iteration %s (already completed).", iteration)
                continue
            reuse = self.resume and state.reuse_review and iteration == state.resume_from
            status = self._run_iteration(ctx, iteration, reuse=reuse)
            if status is not None:
                return status
        return FinalStatus.MAX_ITERATIONS_REACHED

    def _run_iteration(self, ctx: RunContext, iteration: int, *, reuse: bool) -> FinalStatus | None:
        source_files = self._write_source_files()
        prompt = ctx.render(
            refactor_template(self.settings.scope),
            iteration=iteration,
            source_files_path=str(source_files),
        )
        review = self.obtain_review(ctx, iteration, prompt, reuse=reuse)
        if isinstance(review, FinalStatus):
            return review

        record = IterationRecord(
            iteration=iteration,
            review_file=str(self.run_log.review_file(iteration)),
            findings_count=len(review.findings),
            verdict=review.overall_correctness,
            review=review.to_payload(),
        )
        status = self._handle_review(ctx, record, review)
        record.outcome = str(status) if status is not None else "continue"
        self.run_log.write_iteration(record)
        return status

    def _handle_review(self, ctx: RunContext, record: IterationRecord, review: ReviewResult) -> FinalStatus | None:
        if review.is_clean(self.clean_verdict):
            self.logger.info("All clear: no refactoring opportunities found.")
            return FinalStatus.CLEAN_PASS

        if self.settings.dry_run:
            self.logger.info("Dry-run mode: skipping fixes.")
            return FinalStatus.DRY_RUN_STOP

        if self.settings.scope in PLAN_CONFIRM_SCOPES and not self.settings.auto_approve:
            self.logger.info("Refactoring plan:")
            plan = review.refactoring_plan or RefactoringPlan()
            for line in plan.describe():
                self.logger.info("  %s", line)
            if not self.confirm(review.refactoring_plan):
                self.logger.info("Aborted by user.")
                return FinalStatus.USER_ABORTED_PLAN

        scope = self.settings.scope
        iteration = record.iteration
        max_loop = self.settings.max_loop or 1

        def commit_message(lines: list[str]) -> str:
            return refactor_commit_message(scope, iteration, max_loop, lines)

        status, _ = self.fix_and_commit(ctx, record, review, commit_message)
        return status

    def _open_draft_pr(self, ctx: RunContext, status: FinalStatus) -> None:
        if not self.pr.available:
            self.logger.warning("'gh' is not installed: skipping draft PR creation.")
            return
        if self.repo.commits_ahead(self.settings.target_branch, ctx.current_branch) == 0:
            self.logger.info("No refactoring commits: skipping PR creation.")
            return
        if not self.repo.has_upstream() and not self.repo.push(ctx.current_branch):
            self.logger.warning("Branch could not be pushed: skipping PR creation.")
            return
        self.pr.create_draft_pr(
            self.settings.scope,
            self.settings.target_branch,
            self.settings.max_loop or 1,
            str(status),
        )


class SelfReviewRunner(LoopRunner):
    """Self-review uncommitted changes (or a branch diff) outside the main loops."""

    def __init__(
        self,
        settings: Settings,
        paths: Paths,
        *,
        target: str | None = None,
        log_dir: Path | None = None,
        iteration: int = 1,
        refactoring_plan: Path | None = None,
        clock: Clock | None = None,
        gatekeeper: BudgetGatekeeper | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            settings: Configuration settings
            paths: Path management
            target: Branch to diff against when the tree is clean
            log_dir: Log directory (a temporary one is used and removed otherwise)
            iteration: Iteration number used in log file names
            refactoring_plan: JSON file with a refactoring plan to carry into re-fixes
            clock: Time source
            gatekeeper: Budget gatekeeper

        """
        super().__init__(settings, paths, clock=clock, gatekeeper=gatekeeper)
        self.target = target
        self.iteration = iteration
        self.refactoring_plan = refactoring_plan
        self.auto_log_dir = log_dir is None
        self.run_log = RunLog(log_dir or Path(tempfile.mkdtemp(prefix="review-loop-self-review-")))
        self.editor.executor.diagnostic_log = self.run_log.agent_log

    def run(self) -> SelfReviewReport:
        """Run the initial review and the self-review sub-loop.

        Returns:
            The sub-loop report

        Raises:
            ValueError: If there is nothing to review or an input is invalid

        """
        try:
            return self._run()
        finally:
            if self.auto_log_dir:
                shutil.rmtree(self.run_log.log_dir, ignore_errors=True)

    def _run(self) -> SelfReviewReport:
        if not self.repo.is_work_tree():
            message = "Not inside a git repository."
            raise ValueError(message)
        if self.settings.max_subloop <= 0:
            message = f"--max-subloop must be a positive integer, got '{self.settings.max_subloop}'."
            raise ValueError(message)

        plan = self._load_plan()
        current_branch = self.repo.current_branch()
        self.settings.target_branch = self.target or current_branch
        branch_mode = not self.repo.dirty_files()
        if branch_mode:
            self._check_branch_mode(current_branch)

        self.run_log.ensure()
        ctx = self.make_context(current_branch)

        if branch_mode:
            diff = self.repo.branch_diff(self.settings.target_branch, current_branch)
        else:
            diff = self.repo.diff_since("HEAD", exclude=ctx.exclude_prefixes)
        review = self._initial_review(ctx, diff)
        if plan is not None:
            review = review.with_plan(plan)

        initial_diff = None
        diff_base = None
        if branch_mode:
            initial_diff = self.run_log.log_dir / "branch-diff.diff"
            initial_diff.write_text(diff, encoding="utf-8")
            diff_base = self.repo.merge_base(self.settings.target_branch, current_branch)

        mode_label = (
            f"branch diff ({self.settings.target_branch}...{current_branch})"
            if branch_mode
            else "uncommitted changes"
        )
        self.logger.info(BANNER)
        self.logger.info(" Self-Review: %s (target: %s)", current_branch, self.settings.target_branch)
        self.logger.info(" Mode: %s", mode_label)
        self.logger.info(
            " Max sub-iterations: %s | Dry-run: %s | Fix-nits: %s",
            self.settings.max_subloop,
            self.settings.dry_run,
            self.settings.fix_nits,
        )
        self.logger.info(BANNER)

        commit_baseline = None
        if branch_mode and not self.settings.dry_run:
            commit_baseline = take_snapshot(self.project_root)

        report = SelfReviewLoop(ctx, self.editor, self.gatekeeper).run(
            SelfReviewOptions(
                iteration=self.iteration,
                original_review=review,
                baseline=WorktreeSnapshot(),
                max_sub_iterations=self.settings.max_subloop,
                dry_run=self.settings.dry_run,
                fix_nits=self.settings.fix_nits,
                refix_hook=inject_refactoring_plan if plan is not None else None,
                commit_baseline=commit_baseline,
                initial_diff=initial_diff,
                diff_base=diff_base,
            ),
        )

        self.logger.info(BANNER)
        if report.summary_lines:
            self.logger.info(" Self-Review Summary:")
            for line in report.summary_lines:
                self.logger.info("  %s", line)
        else:
            self.logger.info(" No self-review iterations executed.")
        self.logger.info(" Logs: %s", self.run_log.log_dir)
        self.logger.info(BANNER)
        return report

    def _load_plan(self) -> RefactoringPlan | None:
        if self.refactoring_plan is None:
            return None
        if not self.refactoring_plan.is_file():
            message = f"Refactoring plan file not found: {self.refactoring_plan}"
            raise ValueError(message)
        try:
            return RefactoringPlan.model_validate(json.loads(self.refactoring_plan.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, pyd.ValidationError) as exc:
            message = f"Invalid JSON in refactoring plan file: {self.refactoring_plan}"
            raise ValueError(message) from exc

    def _check_branch_mode(self, current_branch: str) -> None:
        target = self.settings.target_branch
        if target == current_branch:
            message = (
                "Working tree is clean and no target branch specified.\n"
                "Use -t <branch> to review branch diff, or make changes first."
            )
            raise ValueError(message)
        if self.repo.merge_base(target, current_branch) is None:
            message = (
                f"Cannot find merge-base between '{target}' and '{current_branch}'. "
                f"Check that '{target}' is a valid branch/ref."
            )
            raise ValueError(message)
        if not self.repo.has_branch_diff(target, current_branch):
            message = f"No diff between {target} and {current_branch}: nothing to review."
            raise ValueError(message)

    def _initial_review(self, ctx: RunContext, diff: str) -> ReviewResult:
        """Have the editing agent review the diff before the sub-loop starts.

        Falls back to an empty review when the call fails in any way.
        """
        fallback = ReviewResult(overall_correctness=NOT_REVIEWED)
        prompt = f"{ctx.render(REVIEW_TEMPLATE, iteration=0)}\n\n## Diff\n\n```diff\n{diff}\n```"

        if not self.gatekeeper.wait_for_budget(
            Agent.EDITOR,
            self.settings.budget_scope,
            self.settings.budget_max_wait,
        ):
            self.logger.warning("Editor budget timeout before initial review.")
            return fallback

        self.logger.info("Running initial review...")
        output_file = self.run_log.log_dir / "review-initial.json"
        result = self.editor.critique(prompt, output_file, label="initial review")
        if not result.ok:
            self.logger.warning("Initial review failed. Falling back to empty findings.")
            return fallback

        extraction = extract_json_from_file(output_file)
        if not extraction.found:
            self.logger.warning("Could not parse initial review output. Falling back to empty findings.")
            return fallback
        try:
            review = parse_review(extraction.payload, self.project_root)
        except JsonExtractionError:
            self.logger.warning("Could not parse initial review output. Falling back to empty findings.")
            return fallback

        self.logger.info("Initial review: %s findings", len(review.findings))
        return review
