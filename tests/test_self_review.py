"""Tests for self_review module."""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from review_loop.config import Paths, RunMode, Settings
from review_loop.context import RunContext
from review_loop.git_ops import GitRepo
from review_loop.messages import self_review_commit_message
from review_loop.models import RefactoringPlan, ReviewResult
from review_loop.retry import AgentCallResult
from review_loop.run_log import RunLog
from review_loop.self_review import (
    SelfReviewLoop,
    SelfReviewOptions,
    SubIterationOutcome,
    SubIterationRecord,
    inject_refactoring_plan,
)
from review_loop.snapshot import WorktreeSnapshot, take_snapshot

OK = AgentCallResult(0, "", "")
FAILED = AgentCallResult(1, "", "boom")
CLEAN = json.dumps({"findings": [], "overall_correctness": "patch is correct"})
DIRTY = json.dumps(
    {
        "findings": [{"title": "Off-by-one in add", "body": "Still subtracts"}],
        "overall_correctness": "patch is incorrect",
    },
)
ORIGINAL = ReviewResult.model_validate(
    {"findings": [{"title": "add subtracts"}], "overall_correctness": "patch is incorrect"},
)
TWO_SUBS = 2
THREE_SUBS = 3


@pytest.fixture
def ctx(git_repo: Path, tmp_path: Path) -> RunContext:
    """Run context on the feature branch with logs outside the repository."""
    logger = logging.getLogger("review-loop-test")
    return RunContext(
        settings=Settings(),
        paths=Paths(git_repo),
        repo=GitRepo(git_repo, logger),
        run_log=RunLog(tmp_path / "logs"),
        mode=RunMode.REVIEW,
        current_branch="feature",
        target_branch="develop",
        logger=logger,
    )


@pytest.fixture
def gatekeeper() -> MagicMock:
    """Gatekeeper that always has budget."""
    gate = MagicMock()
    gate.wait_for_budget.return_value = True
    return gate


def _critic(*responses: str) -> Callable[..., AgentCallResult]:
    """Return a critique side effect writing each response in turn."""
    queue = list(responses)

    def critique(prompt: str, output_file: Path, label: str = "") -> AgentCallResult:  # noqa: ARG001
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(queue.pop(0))
        return OK

    return critique


def _fixer(repo_root: Path) -> Callable[..., AgentCallResult]:
    """Return a two-step-fix side effect that edits app.py."""

    def two_step_fix(opinion: str, execute: str, opinion_file: Path, fix_file: Path, label: str = "") -> AgentCallResult:  # noqa: ARG001
        app = repo_root / "app.py"
        app.write_text(app.read_text() + "# fixed\n")
        return OK

    return two_step_fix


def _options(
    baseline: WorktreeSnapshot,
    *,
    max_sub_iterations: int = THREE_SUBS,
    dry_run: bool = False,
    commit_baseline: WorktreeSnapshot | None = None,
) -> SelfReviewOptions:
    return SelfReviewOptions(
        iteration=1,
        original_review=ORIGINAL,
        baseline=baseline,
        max_sub_iterations=max_sub_iterations,
        dry_run=dry_run,
        commit_baseline=commit_baseline,
    )


def _agent_edit(repo_root: Path) -> None:
    (repo_root / "app.py").write_text("def add(a, b):\n    return a + b\n")


class TestSubIterationRecord:
    """Tests for SubIterationRecord summary lines."""

    @pytest.mark.parametrize(
        ("record", "expected"),
        [
            (SubIterationRecord(1, SubIterationOutcome.PASSED, 0, "patch is correct"), "Sub-iteration 1: 0 findings, passed"),
            (SubIterationRecord(2, SubIterationOutcome.REFIXED, 3, "patch is incorrect"), "Sub-iteration 2: 3 findings, re-fixed"),
            (SubIterationRecord(1, SubIterationOutcome.DRY_RUN, 1, "patch is incorrect"), "Sub-iteration 1: 1 findings, dry-run"),
            (SubIterationRecord(1, SubIterationOutcome.PARSE_ERROR), "Sub-iteration 1: parse error"),
            (SubIterationRecord(1, SubIterationOutcome.REVIEW_FAILED), "Sub-iteration 1: self-review failed"),
            (SubIterationRecord(1, SubIterationOutcome.NO_CHANGES), None),
            (SubIterationRecord(1, SubIterationOutcome.BUDGET_TIMEOUT), None),
        ],
    )
    def test_summary_line(self, record: SubIterationRecord, expected: str | None) -> None:
        """Each outcome has a fixed summary line, or none."""
        assert record.summary_line() == expected

    def test_to_entry(self) -> None:
        """Records convert to iteration-log entries."""
        entry = SubIterationRecord(1, SubIterationOutcome.REFIXED, 2, "patch is incorrect").to_entry()
        assert entry.outcome == "re-fixed"
        assert entry.findings_count == TWO_SUBS


class TestInjectRefactoringPlan:
    """Tests for inject_refactoring_plan hook."""

    def test_plan_carried_over(self) -> None:
        """The original plan is attached to the self-review payload."""
        plan = RefactoringPlan(summary="Split the service layer")
        original = ReviewResult(refactoring_plan=plan)
        self_review = ReviewResult(overall_correctness="needs refactoring")

        assert inject_refactoring_plan(self_review, original).refactoring_plan == plan

    def test_no_plan(self) -> None:
        """Without an original plan the payload is unchanged."""
        self_review = ReviewResult(overall_correctness="needs refactoring")
        assert inject_refactoring_plan(self_review, ReviewResult()) is self_review


class TestSelfReviewLoop:
    """Tests for SelfReviewLoop.run."""

    def test_no_changes_skips_review(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """Without agent changes there is nothing to review."""
        editor = MagicMock()
        baseline = take_snapshot(ctx.repo.root)

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline))

        assert [r.outcome for r in report.records] == [SubIterationOutcome.NO_CHANGES]
        editor.critique.assert_not_called()
        assert report.summary_lines == []

    def test_clean_self_review_passes(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """A clean critique ends the loop after one sub-iteration."""
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.side_effect = _critic(CLEAN)

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline))

        assert report.passed
        assert report.render() == "Sub-iteration 1: 0 findings, passed"
        diff = ctx.run_log.diff_file(1, 1).read_text()
        assert "+    return a + b" in diff
        prompt = editor.critique.call_args.args[0]
        assert str(ctx.run_log.diff_file(1, 1)) in prompt
        assert "add subtracts" in prompt

    def test_findings_trigger_refix(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """Findings are re-fixed and reviewed again."""
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.side_effect = _critic(DIRTY, CLEAN)
        editor.two_step_fix.side_effect = _fixer(ctx.repo.root)

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline))

        assert [r.outcome for r in report.records] == [SubIterationOutcome.REFIXED, SubIterationOutcome.PASSED]
        assert report.summary_lines == ["Sub-iteration 1: 1 findings, re-fixed", "Sub-iteration 2: 0 findings, passed"]
        opinion_prompt = editor.two_step_fix.call_args.args[0]
        assert "Off-by-one in add" in opinion_prompt
        assert "# fixed" in ctx.run_log.diff_file(1, 2).read_text()

    def test_stops_at_sub_iteration_cap(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """The loop never exceeds the sub-iteration cap."""
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.side_effect = _critic(DIRTY, DIRTY)
        editor.two_step_fix.side_effect = _fixer(ctx.repo.root)

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline, max_sub_iterations=TWO_SUBS))

        assert len(report.records) == TWO_SUBS
        assert not report.passed

    def test_dry_run_skips_refix(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """Dry runs report findings without editing."""
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.side_effect = _critic(DIRTY)

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline, dry_run=True))

        assert report.records[-1].outcome is SubIterationOutcome.DRY_RUN
        editor.two_step_fix.assert_not_called()

    def test_budget_timeout(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """A budget timeout ends the loop silently."""
        gatekeeper.wait_for_budget.return_value = False
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline))

        assert report.records[-1].outcome is SubIterationOutcome.BUDGET_TIMEOUT
        assert report.summary_lines == []
        editor.critique.assert_not_called()

    def test_failed_and_unparsable_critiques(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """Failures are recorded and the loop stops without raising."""
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.return_value = FAILED

        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline))
        assert report.render() == "Sub-iteration 1: self-review failed"

        editor.critique.side_effect = _critic("I could not decide.")
        report = SelfReviewLoop(ctx, editor, gatekeeper).run(_options(baseline))
        assert report.render() == "Sub-iteration 1: parse error"

    def test_refix_hook_injects_plan(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """The refix hook decides what the re-fix sees."""
        plan = RefactoringPlan(summary="Extract the arithmetic module")
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.side_effect = _critic(DIRTY, CLEAN)
        editor.two_step_fix.side_effect = _fixer(ctx.repo.root)

        options = SelfReviewOptions(
            iteration=1,
            original_review=ORIGINAL.with_plan(plan),
            baseline=baseline,
            max_sub_iterations=THREE_SUBS,
            refix_hook=inject_refactoring_plan,
        )

        SelfReviewLoop(ctx, editor, gatekeeper).run(options)

        assert "Extract the arithmetic module" in editor.two_step_fix.call_args.args[0]

    def test_commits_each_refix(self, ctx: RunContext, gatekeeper: MagicMock) -> None:
        """With a commit baseline every successful re-fix is committed."""
        baseline = take_snapshot(ctx.repo.root)
        _agent_edit(ctx.repo.root)
        editor = MagicMock()
        editor.critique.side_effect = _critic(DIRTY, CLEAN)
        editor.two_step_fix.side_effect = _fixer(ctx.repo.root)

        SelfReviewLoop(ctx, editor, gatekeeper).run(
            _options(baseline, commit_baseline=take_snapshot(ctx.repo.root)),
        )

        assert ctx.repo.commit_subjects("-1") == [self_review_commit_message(1)]
