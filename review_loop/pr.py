"""Pull-request side effects: iteration comments and draft PRs.

Everything here is best effort. A missing ``gh`` CLI, a branch without a PR
or a failed API call is logged and otherwise ignored.
"""

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from review_loop.messages import all_clear_comment, draft_pr_body, draft_pr_title
from review_loop.models import ReviewResult
from review_loop.utils import run_command

OPINION_EXCERPT_CHARS = 2000
FIX_SUMMARY_HEADING = "## Fix Summary"


@dataclass(frozen=True)
class PrInfo:
    """PR information from GitHub."""

    number: int
    url: str


def extract_fix_summary(fix_transcript: str) -> str:
    """Return the ``## Fix Summary`` section of a fix transcript.

    The section runs until the next ``## `` heading or the end of the text.
    """
    lines = fix_transcript.splitlines()
    for index, line in enumerate(lines):
        if line.strip() == FIX_SUMMARY_HEADING:
            body = []
            for following in lines[index + 1 :]:
                if following.startswith("## "):
                    break
                body.append(following)
            return "\n".join(body).strip()
    return ""


def build_iteration_comment(
    iteration: int,
    max_loop: int,
    review: ReviewResult,
    fix_file: Path | None = None,
    opinion_file: Path | None = None,
    self_review_lines: list[str] | None = None,
    max_subloop: int = 0,
) -> str:
    """Build the PR comment summarising one review-fix iteration.

    Args:
        iteration: Outer iteration number
        max_loop: Iteration cap
        review: Parsed review of this iteration
        fix_file: Execute-step transcript
        opinion_file: Opinion-step transcript
        self_review_lines: Self-review summary lines
        max_subloop: Self-review sub-iteration cap

    Returns:
        Markdown comment body

    """
    parts = [
        f"### AI Review: Iteration {iteration} / {max_loop}",
        "",
        f"**Overall**: {review.overall_correctness} ({len(review.findings)} findings)",
        "",
        "<details>",
        "<summary>Review Findings</summary>",
        "",
        "| Finding | Confidence | Location |",
        "|---------|-----------|----------|",
    ]
    parts.extend(
        f"| {finding.title} | {finding.confidence_score} | `{finding.location}` |"
        for finding in review.findings
    )
    parts.extend(["", "</details>", ""])

    fix_summary = ""
    if fix_file is not None and fix_file.is_file():
        fix_summary = extract_fix_summary(fix_file.read_text(encoding="utf-8"))
    parts.extend(["<details>", "<summary>Fix Actions</summary>", "", fix_summary, "", "</details>"])

    if opinion_file is not None and opinion_file.is_file():
        opinion = opinion_file.read_text(encoding="utf-8")[:OPINION_EXCERPT_CHARS]
        if opinion.strip():
            parts.extend(["", "<details>", "<summary>Opinion</summary>", "", opinion, "", "</details>"])

    if self_review_lines:
        parts.extend(
            [
                "",
                "<details>",
                f"<summary>Self-Review ({max_subloop} max sub-iterations)</summary>",
                "",
                *self_review_lines,
                "</details>",
            ],
        )

    return "\n".join(parts) + "\n"


class PullRequestManager:
    """Posts comments on and opens pull requests with the ``gh`` CLI."""

    def __init__(self, project_root: Path, logger: logging.Logger) -> None:
        """Initialize the manager.

        Args:
            project_root: Project root directory
            logger: Logger instance for output

        """
        self.project_root = project_root
        self.logger = logger

    @property
    def available(self) -> bool:
        """Whether the ``gh`` CLI is installed."""
        return shutil.which("gh") is not None

    def get_pr_info(self, branch: str) -> PrInfo | None:
        """Get the open PR for ``branch``, if any."""
        if not self.available:
            return None

        returncode, stdout, _ = run_command(
            ["gh", "pr", "view", branch, "--json", "number,url"],
            cwd=self.project_root,
        )
        if returncode != 0:
            return None
        try:
            data = json.loads(stdout)
            return PrInfo(number=int(data["number"]), url=str(data.get("url", "")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            self.logger.debug("Unexpected gh pr view output: %s", stdout)
            return None

    def post_comment(self, pr: PrInfo, body: str) -> bool:
        """Post ``body`` as a comment on ``pr``."""
        self.logger.info("Posting PR comment...")
        returncode, _, stderr = run_command(
            ["gh", "pr", "comment", str(pr.number), "--body-file", "-"],
            cwd=self.project_root,
            input_text=body,
        )
        if returncode != 0:
            self.logger.warning("Failed to post PR comment (non-fatal): %s", stderr.strip())
            return False
        self.logger.info("PR comment posted.")
        return True

    def post_all_clear(self, pr: PrInfo, iteration: int) -> bool:
        """Post the "no issues found" comment."""
        return self.post_comment(pr, all_clear_comment(iteration))

    def create_draft_pr(self, scope: str, target_branch: str, max_loop: int, final_status: str) -> bool:
        """Open a draft PR for a refactoring branch."""
        self.logger.info("Creating draft PR...")
        returncode, stdout, stderr = run_command(
            [
                "gh",
                "pr",
                "create",
                "--draft",
                "--title",
                draft_pr_title(scope),
                "--body",
                draft_pr_body(scope, max_loop, final_status),
                "--base",
                target_branch,
            ],
            cwd=self.project_root,
        )
        if returncode != 0:
            self.logger.warning("Failed to create draft PR (non-fatal): %s", stderr.strip())
            return False
        self.logger.info("Draft PR created: %s", stdout.strip())
        return True
