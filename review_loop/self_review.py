"""Self-review sub-loop: the editing agent checks and corrects its own fix.

After a fix, the editing agent is shown the diff of exactly the files it
changed together with the original findings. If it still finds problems it
runs another two-step fix, up to a fixed number of sub-iterations. Every
failure in here is non-fatal: the fixes already applied are kept.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from review_loop.agents import EditorAgent
from review_loop.budget import Agent, BudgetGatekeeper
from review_loop.context import RunContext, review_json
from review_loop.extract import JsonExtractionError, extract_json_from_file
from review_loop.git_ops import commit_and_push
from review_loop.messages import FIX_NITS_GUIDELINES, self_review_commit_message
from review_loop.models import PATCH_CORRECT, ReviewResult, parse_review
from review_loop.prompts import FIX_EXECUTE_TEMPLATE, FIX_OPINION_TEMPLATE, SELF_REVIEW_TEMPLATE
from review_loop.run_log import SubIterationEntry
from review_loop.snapshot import WorktreeSnapshot, changed_files_since, take_snapshot

# (self-review result, original review) -> payload handed to the re-fix
RefixPayloadHook = Callable[[ReviewResult, ReviewResult], ReviewResult]


def inject_refactoring_plan(self_review: ReviewResult, original: ReviewResult) -> ReviewResult:
    """Carry the original refactoring plan over into a self-review payload."""
    return self_review.with_plan(original.refactoring_plan)


class SubIterationOutcome(StrEnum):
    """How a self-review sub-iteration ended."""

    NO_CHANGES = "no changes"
    BUDGET_TIMEOUT = "budget timeout"
    REVIEW_FAILED = "self-review failed"
    EMPTY_OUTPUT = "empty output"
    PARSE_ERROR = "parse error"
    PASSED = "passed"
    DRY_RUN = "dry-run"
    REFIX_FAILED = "re-fix failed"
    REFIXED = "re-fixed"


@dataclass(frozen=True)
class SubIterationRecord:
    """Result of one sub-iteration."""

    sub_iteration: int
    outcome: SubIterationOutcome
    findings_count: int | None = None
    verdict: str | None = None

    def summary_line(self) -> str | None:
        """Return the line recorded in commit messages and PR comments."""
        prefix = f"Sub-iteration {self.sub_iteration}"
        match self.outcome:
            case SubIterationOutcome.NO_CHANGES | SubIterationOutcome.BUDGET_TIMEOUT:
                return None
            case (
                SubIterationOutcome.REVIEW_FAILED
                | SubIterationOutcome.EMPTY_OUTPUT
                | SubIterationOutcome.PARSE_ERROR
            ):
                return f"{prefix}: {self.outcome}"
            case _:
                return f"{prefix}: {self.findings_count} findings, {self.outcome}"

    def to_entry(self) -> SubIterationEntry:
        """Convert to the iteration-log representation."""
        return SubIterationEntry(
            sub_iteration=self.sub_iteration,
            outcome=str(self.outcome),
            findings_count=self.findings_count,
            verdict=self.verdict,
        )


@dataclass
class SelfReviewReport:
    """Everything the sub-loop did for one outer iteration."""

    records: list[SubIterationRecord] = field(default_factory=list)

    @property
    def summary_lines(self) -> list[str]:
        """Non-empty summary lines in sub-iteration order."""
        return [line for record in self.records if (line := record.summary_line())]

    @property
    def passed(self) -> bool:
        """Whether the last sub-iteration ended with a clean review."""
        return bool(self.records) and self.records[-1].outcome is SubIterationOutcome.PASSED

    def render(self) -> str:
        """Render the summary as one line per sub-iteration."""
        return "\n".join(self.summary_lines)


@dataclass(frozen=True)
class SelfReviewOptions:
    """Parameters of one sub-loop run."""

    iteration: int
    original_review: ReviewResult
    baseline: WorktreeSnapshot
    max_sub_iterations: int
    dry_run: bool = False
    fix_nits: bool = False
    opinion_template: str = FIX_OPINION_TEMPLATE
    execute_template: str = FIX_EXECUTE_TEMPLATE
    refix_hook: RefixPayloadHook | None = None
    # Commit after each successful re-fix, relative to this snapshot.
    commit_baseline: WorktreeSnapshot | None = None
    # Branch-diff mode: pre-generated first diff, later diffs against diff_base.
    initial_diff: Path | None = None
    diff_base: str | None = None


class SelfReviewLoop:
    """Bounded reviewing → re-fixing loop run by the editing agent."""

    def __init__(self, ctx: RunContext, editor: EditorAgent, gatekeeper: BudgetGatekeeper) -> None:
        """Initialize the loop.

        Args:
            ctx: Run context
            editor: Editing agent
            gatekeeper: Budget gatekeeper consulted before each critique

        """
        self.ctx = ctx
        self.editor = editor
        self.gatekeeper = gatekeeper
        self.logger = ctx.logger

    def run(self, options: SelfReviewOptions) -> SelfReviewReport:
        """Run up to ``options.max_sub_iterations`` sub-iterations.

        Args:
            options: Sub-loop parameters

        Returns:
            Report of every sub-iteration that ran

        """
        report = SelfReviewReport()
        commit_baseline = options.commit_baseline

        for sub in range(1, options.max_sub_iterations + 1):
            record, commit_baseline = self._run_sub_iteration(options, sub, commit_baseline)
            report.records.append(record)
            if record.outcome is not SubIterationOutcome.REFIXED:
                break

        return report

    def _run_sub_iteration(
        self,
        options: SelfReviewOptions,
        sub: int,
        commit_baseline: WorktreeSnapshot | None,
    ) -> tuple[SubIterationRecord, WorktreeSnapshot | None]:
        iteration = options.iteration
        run_log = self.ctx.run_log

        diff_file = run_log.diff_file(iteration, sub)
        if not self._write_diff(options, sub, diff_file):
            self.logger.info("No working tree changes to self-review; skipping.")
            return SubIterationRecord(sub, SubIterationOutcome.NO_CHANGES), commit_baseline

        if not self.gatekeeper.wait_for_budget(
            Agent.EDITOR,
            self.ctx.settings.budget_scope,
            self.ctx.settings.budget_max_wait,
        ):
            self.logger.warning("Editor budget timeout before self-review.")
            return SubIterationRecord(sub, SubIterationOutcome.BUDGET_TIMEOUT), commit_baseline

        self.logger.info(
            "Running self-review (sub-iteration %s/%s)...", sub, options.max_sub_iterations
        )
        prompt = self.ctx.render(
            SELF_REVIEW_TEMPLATE,
            iteration=iteration,
            review_json=review_json(options.original_review),
            diff_file=str(diff_file),
            extra_review_guidelines=FIX_NITS_GUIDELINES if options.fix_nits else "",
        )
        output_file = run_log.self_review_file(iteration, sub)
        result = self.editor.critique(prompt, output_file, label="self-review")

        if not result.ok:
            self.logger.warning(
                "Self-review failed (sub-iteration %s). Continuing with current fixes.", sub
            )
            return SubIterationRecord(sub, SubIterationOutcome.REVIEW_FAILED), commit_baseline

        if not output_file.is_file() or not output_file.read_text(encoding="utf-8").strip():
            self.logger.warning(
                "Self-review produced empty output (sub-iteration %s). Continuing with current fixes.",
                sub,
            )
            return SubIterationRecord(sub, SubIterationOutcome.EMPTY_OUTPUT), commit_baseline

        review = self._parse(output_file)
        if review is None:
            self.logger.warning(
                "Could not parse self-review output (%s). Continuing with current fixes.", output_file
            )
            return SubIterationRecord(sub, SubIterationOutcome.PARSE_ERROR), commit_baseline

        findings = len(review.findings)
        verdict = review.overall_correctness
        self.logger.info("Self-review: %s findings | %s", findings, verdict)

        if review.is_clean(PATCH_CORRECT):
            self.logger.info("Self-review passed: fixes are clean.")
            return SubIterationRecord(sub, SubIterationOutcome.PASSED, findings, verdict), commit_baseline

        if options.dry_run:
            self.logger.info("Self-review dry-run: skipping re-fix.")
            return SubIterationRecord(sub, SubIterationOutcome.DRY_RUN, findings, verdict), commit_baseline

        payload = options.refix_hook(review, options.original_review) if options.refix_hook else review
        refix = self.editor.two_step_fix(
            self.ctx.render(options.opinion_template, review_json=review_json(payload)),
            self.ctx.render(options.execute_template),
            run_log.refix_opinion_file(iteration, sub),
            run_log.refix_file(iteration, sub),
            label="re-fix",
        )
        if not refix.ok:
            return (
                SubIterationRecord(sub, SubIterationOutcome.REFIX_FAILED, findings, verdict),
                commit_baseline,
            )

        if commit_baseline is not None:
            commit_baseline = self._commit_sub_iteration(sub, commit_baseline)

        return SubIterationRecord(sub, SubIterationOutcome.REFIXED, findings, verdict), commit_baseline

    def _parse(self, output_file: Path) -> ReviewResult | None:
        extraction = extract_json_from_file(output_file)
        if not extraction.found:
            return None
        try:
            return parse_review(extraction.payload, self.ctx.repo.root)
        except JsonExtractionError:
            return None

    def _write_diff(self, options: SelfReviewOptions, sub: int, diff_file: Path) -> bool:
        """Write the diff to review into ``diff_file``; return False when there is none."""
        repo = self.ctx.repo

        if sub == 1 and options.initial_diff is not None and options.initial_diff.is_file():
            diff = options.initial_diff.read_text(encoding="utf-8")
        elif options.diff_base is not None:
            diff = repo.diff_since(options.diff_base, exclude=self.ctx.exclude_prefixes)
        else:
            files = changed_files_since(repo.root, options.baseline, self.ctx.exclude_prefixes)
            diff = repo.diff_head(files)

        if not diff.strip():
            return False
        diff_file.parent.mkdir(parents=True, exist_ok=True)
        diff_file.write_text(diff, encoding="utf-8")
        return True

    def _commit_sub_iteration(self, sub: int, baseline: WorktreeSnapshot) -> WorktreeSnapshot:
        outcome = commit_and_push(
            self.ctx.repo,
            baseline,
            self_review_commit_message(sub),
            self.ctx.current_branch,
            self.ctx.exclude_prefixes,
        )
        if outcome.error:
            self.logger.warning("Commit failed (sub-iteration %s). Continuing.", sub)
            return baseline
        return take_snapshot(self.ctx.repo.root)
