"""Tests for run_log module."""

import json
from pathlib import Path

import pytest

from review_loop.run_log import (
    IterationRecord,
    RunLog,
    RunMarkers,
    RunSummary,
    SubIterationEntry,
)

MAX_LOOP = 3
TWO_FINDINGS = 2


def _review(findings: int, verdict: str) -> str:
    return json.dumps({"findings": [{"title": f"f{i}"} for i in range(findings)], "overall_correctness": verdict})


class TestMarkers:
    """Tests for marker files."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """Markers are written one per file and read back."""
        run_log = RunLog(tmp_path / "refactor")
        markers = RunMarkers(
            branch="refactor/micro-20260301-120000",
            start_commit="abc123",
            target_branch="develop",
            scope="micro",
            max_loop=MAX_LOOP,
        )

        run_log.write_markers(markers)

        assert (run_log.log_dir / "branch.txt").read_text() == "refactor/micro-20260301-120000\n"
        assert (run_log.log_dir / "max-loop.txt").read_text() == "3\n"
        assert run_log.read_markers() == markers

    def test_unset_markers_not_written(self, tmp_path: Path) -> None:
        """Markers left as None produce no file."""
        run_log = RunLog(tmp_path)
        run_log.write_markers(RunMarkers(branch="feature"))

        assert not (tmp_path / "scope.txt").exists()
        assert run_log.read_markers().scope is None

    def test_invalid_marker_raises(self, tmp_path: Path) -> None:
        """A corrupt max-loop marker is reported."""
        (tmp_path / "max-loop.txt").write_text("many\n")
        with pytest.raises(ValueError, match="Invalid resume marker"):
            RunLog(tmp_path).read_markers()


class TestIterations:
    """Tests for iteration records."""

    def test_write_and_read_record(self, tmp_path: Path) -> None:
        """Iteration records round-trip as JSON."""
        run_log = RunLog(tmp_path)
        record = IterationRecord(
            iteration=1,
            review_file=str(run_log.review_file(1)),
            findings_count=TWO_FINDINGS,
            verdict="patch is incorrect",
            self_review=[SubIterationEntry(sub_iteration=1, outcome="passed", findings_count=0)],
            outcome="continue",
        )

        path = run_log.write_iteration(record)

        assert path.name == "iteration-1.json"
        assert run_log.read_iteration(1) == record
        assert run_log.read_iteration(2) is None

    def test_review_iterations_sorted(self, tmp_path: Path) -> None:
        """Only review-N.json files count, numerically sorted."""
        for name in ("review-10.json", "review-2.json", "review-initial.json", "iteration-3.json"):
            (tmp_path / name).write_text("{}")
        assert RunLog(tmp_path).review_iterations() == [2, 10]

    def test_missing_directory(self, tmp_path: Path) -> None:
        """A missing run directory has no iterations."""
        assert RunLog(tmp_path / "nope").review_iterations() == []

    def test_clear_removes_stale_artifacts(self, tmp_path: Path) -> None:
        """Clearing removes iteration artefacts but keeps the agent log."""
        for name in ("review-1.json", "fix-1.md", "diff-1-1.diff", "summary.md", "agent.log"):
            (tmp_path / name).write_text("x")

        RunLog(tmp_path).clear()

        assert sorted(path.name for path in tmp_path.iterdir()) == ["agent.log"]


class TestSummary:
    """Tests for summary output."""

    def test_summary_from_records(self, tmp_path: Path) -> None:
        """Iterations are summarised from their structured records."""
        run_log = RunLog(tmp_path)
        for iteration, findings, verdict, self_review in (
            (
                1,
                TWO_FINDINGS,
                "patch is incorrect",
                [SubIterationEntry(sub_iteration=1, outcome="passed", findings_count=0, verdict="patch is correct")],
            ),
            (2, 0, "patch is correct", []),
        ):
            run_log.review_file(iteration).write_text(_review(findings, verdict))
            run_log.write_iteration(
                IterationRecord(
                    iteration=iteration,
                    review_file=str(run_log.review_file(iteration)),
                    findings_count=findings,
                    verdict=verdict,
                    self_review=self_review,
                ),
            )

        path = run_log.write_summary(
            RunSummary(
                title="Review Loop Summary",
                final_status="clean-pass",
                branch="feature",
                target_branch="develop",
                max_loop=MAX_LOOP,
            ),
        )

        text = path.read_text()
        assert text.startswith("# Review Loop Summary\n")
        assert "- **Final status**: clean-pass" in text
        assert "- **Iteration 1**: 2 findings, verdict: patch is incorrect" in text
        assert "  - Sub-iteration 1: 0 findings, verdict: patch is correct (passed)" in text
        assert "- **Iteration 2**: 0 findings, verdict: patch is correct" in text

        data = json.loads(run_log.summary_json.read_text())
        assert data["final_status"] == "clean-pass"
        assert len(data["iterations"]) == TWO_FINDINGS
        assert run_log.read_final_status() == "clean-pass"

    def test_raw_review_files_are_not_reparsed(self, tmp_path: Path) -> None:
        """The record is the source of truth even if the raw agent output changes."""
        run_log = RunLog(tmp_path)
        run_log.review_file(1).write_text("The reviewer said: " + _review(TWO_FINDINGS, "patch is incorrect"))
        run_log.self_review_file(1, 1).write_text(_review(0, "patch is correct"))
        run_log.write_iteration(
            IterationRecord(iteration=1, review_file=str(run_log.review_file(1)), findings_count=1, verdict="v"),
        )

        summaries = run_log.iteration_summaries()

        assert [(item.findings_count, item.verdict, item.sub_iterations) for item in summaries] == [(1, "v", [])]

    def test_extra_lines_and_recorded_sub_iterations(self, tmp_path: Path) -> None:
        """Recorded sub-iteration outcomes are listed; extra lines follow the title."""
        run_log = RunLog(tmp_path)
        run_log.review_file(1).write_text(_review(1, "needs refactoring"))
        run_log.write_iteration(
            IterationRecord(
                iteration=1,
                review_file=str(run_log.review_file(1)),
                self_review=[SubIterationEntry(sub_iteration=1, outcome="re-fixed", findings_count=1)],
            ),
        )

        run_log.write_summary(
            RunSummary(
                title="Refactor Suggest Summary",
                final_status="max-iterations-reached",
                branch="refactor/micro-x",
                target_branch="develop",
                scope="micro",
            ),
            extra_lines=["- **Scope**: micro"],
        )

        lines = run_log.summary_md.read_text().splitlines()
        assert lines[2] == "- **Scope**: micro"
        assert "  - Sub-iteration 1: 1 findings, verdict: ? (re-fixed)" in lines

    def test_unparsable_review_counts_unknown(self, tmp_path: Path) -> None:
        """An iteration that stopped before its record was written is summarised with question marks."""
        run_log = RunLog(tmp_path)
        run_log.review_file(1).write_text("garbage")

        run_log.write_summary(
            RunSummary(title="T", final_status="parse-error", branch="b", target_branch="t"),
        )

        assert "- **Iteration 1**: ? findings, verdict: ?" in run_log.summary_md.read_text()

    def test_no_previous_summary(self, tmp_path: Path) -> None:
        """Without a summary there is no previous status."""
        assert RunLog(tmp_path).read_final_status() is None
