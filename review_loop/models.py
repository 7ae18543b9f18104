"""Typed review payloads returned by the agents."""

from pathlib import Path
from typing import Any

import pydantic as pyd

from review_loop.extract import JsonExtractionError

PATCH_CORRECT = "patch is correct"
PATCH_INCORRECT = "patch is incorrect"
CODE_CLEAN = "code is clean"
NEEDS_REFACTORING = "needs refactoring"


class LineRange(pyd.BaseModel):
    """Inclusive line span of a finding."""

    model_config = pyd.ConfigDict(frozen=True)

    start: int
    end: int


class CodeLocation(pyd.BaseModel):
    """Where a finding applies, relative to the repository root."""

    model_config = pyd.ConfigDict(frozen=True, extra="ignore")

    file_path: str
    line_range: LineRange | None = None

    @pyd.model_validator(mode="before")
    @classmethod
    def _normalise_path(cls, data: Any, info: pyd.ValidationInfo) -> Any:
        """Accept ``absolute_file_path`` and strip the repository root prefix."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        absolute = data.pop("absolute_file_path", None)
        path = data.get("file_path") or absolute
        repo_root = (info.context or {}).get("repo_root")
        if isinstance(path, str) and repo_root:
            prefix = f"{str(repo_root).rstrip('/')}/"
            path = path.removeprefix(prefix)
        data["file_path"] = path
        return data


class Finding(pyd.BaseModel):
    """One issue reported by a reviewing agent."""

    model_config = pyd.ConfigDict(frozen=True, extra="ignore")

    title: str
    body: str = ""
    confidence_score: float = pyd.Field(default=0.0, ge=0.0, le=1.0)
    priority: int | None = pyd.Field(default=None, ge=0, le=3)
    code_location: CodeLocation | None = None

    @property
    def location(self) -> str:
        """``path:line`` label for tables and logs."""
        if self.code_location is None:
            return "?"
        if self.code_location.line_range is None:
            return self.code_location.file_path
        return f"{self.code_location.file_path}:{self.code_location.line_range.start}"


class RefactoringStep(pyd.BaseModel):
    """A single step of a refactoring plan."""

    model_config = pyd.ConfigDict(frozen=True, extra="ignore")

    order: int
    description: str
    files: list[str] = pyd.Field(default_factory=list)


class RefactoringPlan(pyd.BaseModel):
    """Plan attached to layer/full-scope refactoring reviews."""

    model_config = pyd.ConfigDict(frozen=True, extra="ignore")

    summary: str = ""
    steps: list[RefactoringStep] = pyd.Field(default_factory=list)
    estimated_blast_radius: str = ""

    def describe(self) -> list[str]:
        """Render the plan for confirmation prompts."""
        lines = [
            f"Summary: {self.summary or 'N/A'}",
            f"Blast radius: {self.estimated_blast_radius or 'N/A'}",
            "Steps:",
        ]
        lines.extend(
            f"  {step.order}. {step.description} [{', '.join(step.files)}]" for step in self.steps
        )
        return lines


class ReviewResult(pyd.BaseModel):
    """Structured output of one review (or self-review) call."""

    model_config = pyd.ConfigDict(frozen=True, extra="ignore")

    findings: list[Finding] = pyd.Field(default_factory=list)
    overall_correctness: str = ""
    overall_explanation: str = ""
    overall_confidence_score: float | None = None
    refactoring_plan: RefactoringPlan | None = None

    def is_clean(self, verdict: str) -> bool:
        """Return whether there are no findings and the verdict is ``verdict``."""
        return not self.findings and self.overall_correctness == verdict

    def with_plan(self, plan: RefactoringPlan | None) -> "ReviewResult":
        """Return a copy carrying ``plan`` (unchanged if ``plan`` is None)."""
        if plan is None:
            return self
        return self.model_copy(update={"refactoring_plan": plan})

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-ready dict handed to prompts and logs."""
        return self.model_dump(mode="json", exclude_none=True)


def parse_review(payload: Any, repo_root: Path | None = None) -> ReviewResult:
    """Validate an extracted JSON value as a review result.

    Args:
        payload: Value returned by ``extract_json``
        repo_root: Repository root used to relativise absolute paths

    Returns:
        Parsed review result

    Raises:
        JsonExtractionError: If the value does not match the review schema

    """
    try:
        return ReviewResult.model_validate(payload, context={"repo_root": repo_root})
    except pyd.ValidationError as exc:
        message = f"Review payload does not match the expected schema: {exc}"
        raise JsonExtractionError(message) from exc
