"""Per-run log directory: iteration records, marker files and the summary."""

import re
from datetime import UTC, datetime
from pathlib import Path

import pydantic as pyd

_REVIEW_FILE_PATTERN = re.compile(r"^review-(\d+)\.json$")
_STALE_PATTERNS = (
    "review-*.json",
    "iteration-*.json",
    "fix-*.md",
    "opinion-*.md",
    "self-review-*.json",
    "diff-*.diff",
    "refix-*.md",
    "refix-opinion-*.md",
    "summary.md",
    "summary.json",
    "source-files.txt",
)


class SubIterationEntry(pyd.BaseModel):
    """Outcome of one self-review sub-iteration."""

    sub_iteration: int
    outcome: str
    findings_count: int | None = None
    verdict: str | None = None


class IterationRecord(pyd.BaseModel):
    """Structured record of one outer iteration."""

    iteration: int
    started_at: datetime = pyd.Field(default_factory=lambda: datetime.now(UTC))
    review_file: str
    findings_count: int | None = None
    verdict: str | None = None
    review: dict | None = None
    opinion_file: str | None = None
    fix_file: str | None = None
    self_review: list[SubIterationEntry] = pyd.Field(default_factory=list)
    commit: str | None = None
    outcome: str | None = None


class RunMarkers(pyd.BaseModel):
    """Values saved at the start of a run so it can be resumed."""

    branch: str | None = None
    start_commit: str | None = None
    target_branch: str | None = None
    scope: str | None = None
    max_loop: int | None = None


class IterationSummary(pyd.BaseModel):
    """Finding count and verdict of one iteration, for the run summary."""

    iteration: int
    findings_count: int | None = None
    verdict: str | None = None
    sub_iterations: list[SubIterationEntry] = pyd.Field(default_factory=list)


class RunSummary(pyd.BaseModel):
    """Machine-readable run summary (``summary.json``)."""

    title: str
    final_status: str
    branch: str
    target_branch: str
    max_loop: int | None = None
    scope: str | None = None
    timestamp: datetime = pyd.Field(default_factory=lambda: datetime.now(UTC))
    iterations: list[IterationSummary] = pyd.Field(default_factory=list)


_MARKER_FILES = {
    "branch": "branch.txt",
    "start_commit": "start-commit.txt",
    "target_branch": "target-branch.txt",
    "scope": "scope.txt",
    "max_loop": "max-loop.txt",
}


class RunLog:
    """File layout of one run directory."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir

    def ensure(self) -> None:
        """Create the run directory."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def clear(self) -> None:
        """Remove iteration artefacts left by a previous run."""
        for pattern in _STALE_PATTERNS:
            for path in self.log_dir.glob(pattern):
                path.unlink(missing_ok=True)

    # File names
    def review_file(self, iteration: int) -> Path:
        return self.log_dir / f"review-{iteration}.json"

    def iteration_file(self, iteration: int) -> Path:
        return self.log_dir / f"iteration-{iteration}.json"

    def opinion_file(self, iteration: int) -> Path:
        return self.log_dir / f"opinion-{iteration}.md"

    def fix_file(self, iteration: int) -> Path:
        return self.log_dir / f"fix-{iteration}.md"

    def self_review_file(self, iteration: int, sub_iteration: int) -> Path:
        return self.log_dir / f"self-review-{iteration}-{sub_iteration}.json"

    def diff_file(self, iteration: int, sub_iteration: int) -> Path:
        return self.log_dir / f"diff-{iteration}-{sub_iteration}.diff"

    def refix_opinion_file(self, iteration: int, sub_iteration: int) -> Path:
        return self.log_dir / f"refix-opinion-{iteration}-{sub_iteration}.md"

    def refix_file(self, iteration: int, sub_iteration: int) -> Path:
        return self.log_dir / f"refix-{iteration}-{sub_iteration}.md"

    @property
    def summary_md(self) -> Path:
        return self.log_dir / "summary.md"

    @property
    def summary_json(self) -> Path:
        return self.log_dir / "summary.json"

    @property
    def agent_log(self) -> Path:
        return self.log_dir / "agent.log"

    @property
    def source_files(self) -> Path:
        return self.log_dir / "source-files.txt"

    # Markers
    def write_markers(self, markers: RunMarkers) -> None:
        """Write each set marker value to its own file."""
        self.ensure()
        for field, filename in _MARKER_FILES.items():
            value = getattr(markers, field)
            if value is not None:
                (self.log_dir / filename).write_text(f"{value}\n", encoding="utf-8")

    def read_markers(self) -> RunMarkers:
        """Read marker files; missing or empty files yield None."""
        values: dict[str, str] = {}
        for field, filename in _MARKER_FILES.items():
            path = self.log_dir / filename
            if path.is_file():
                text = path.read_text(encoding="utf-8").strip()
                if text:
                    values[field] = text
        try:
            return RunMarkers.model_validate(values)
        except pyd.ValidationError as exc:
            message = f"Invalid resume marker in {self.log_dir}: {exc}"
            raise ValueError(message) from exc

    # Iterations
    def write_iteration(self, record: IterationRecord) -> Path:
        """Write the structured record of one outer iteration."""
        self.ensure()
        path = self.iteration_file(record.iteration)
        path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        return path

    def read_iteration(self, iteration: int) -> IterationRecord | None:
        """Read an iteration record, if present and valid."""
        path = self.iteration_file(iteration)
        if not path.is_file():
            return None
        try:
            return IterationRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except pyd.ValidationError:
            return None

    def review_iterations(self) -> list[int]:
        """Return the iteration numbers that have a review file, ascending."""
        if not self.log_dir.is_dir():
            return []
        found = []
        for path in self.log_dir.iterdir():
            match = _REVIEW_FILE_PATTERN.match(path.name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def iteration_summaries(self) -> list[IterationSummary]:
        """Collect finding counts and verdicts from the iteration records.

        An iteration whose review was logged but never recorded (the run
        stopped on it) is listed with unknown counts.
        """
        summaries = []
        for iteration in self.review_iterations():
            record = self.read_iteration(iteration)
            if record is None:
                summaries.append(IterationSummary(iteration=iteration))
                continue
            summaries.append(
                IterationSummary(
                    iteration=iteration,
                    findings_count=record.findings_count,
                    verdict=record.verdict,
                    sub_iterations=record.self_review,
                ),
            )
        return summaries

    # Summary
    def write_summary(self, summary: RunSummary, extra_lines: list[str] | None = None) -> Path:
        """Write ``summary.json`` and the human-readable ``summary.md``.

        Args:
            summary: Run summary (iterations are filled in from the logs when empty)
            extra_lines: Markdown bullet lines inserted after the title

        Returns:
            Path to summary.md

        """
        self.ensure()
        if not summary.iterations:
            summary = summary.model_copy(update={"iterations": self.iteration_summaries()})

        self.summary_json.write_text(summary.model_dump_json(indent=2), encoding="utf-8")

        lines = [f"# {summary.title}", ""]
        lines.extend(extra_lines or [])
        lines.extend(
            [
                f"- **Branch**: {summary.branch} → {summary.target_branch}",
                f"- **Max iterations**: {summary.max_loop if summary.max_loop is not None else '-'}",
                f"- **Final status**: {summary.final_status}",
                f"- **Timestamp**: {summary.timestamp:%Y-%m-%dT%H:%M:%SZ}",
                "",
                "## Iteration Logs",
                "",
            ],
        )
        for item in summary.iterations:
            lines.append(
                f"- **Iteration {item.iteration}**: {_count(item.findings_count)} findings, "
                f"verdict: {item.verdict or '?'}",
            )
            lines.extend(
                f"  - Sub-iteration {sub.sub_iteration}: {_count(sub.findings_count)} findings, "
                f"verdict: {sub.verdict or '?'} ({sub.outcome})"
                for sub in item.sub_iterations
            )

        self.summary_md.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return self.summary_md

    def read_final_status(self) -> str | None:
        """Return the final status recorded by a previous run, if any."""
        if not self.summary_json.is_file():
            return None
        try:
            summary = RunSummary.model_validate_json(self.summary_json.read_text(encoding="utf-8"))
        except pyd.ValidationError:
            return None
        return summary.final_status


def _count(value: int | None) -> str:
    return "?" if value is None else str(value)
