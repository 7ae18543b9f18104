"""Explicit per-run context shared by the loop components."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from review_loop.config import Paths, RunMode, Settings
from review_loop.git_ops import GitRepo
from review_loop.models import ReviewResult
from review_loop.prompts import TemplateContextValue, render_prompt
from review_loop.run_log import RunLog


@dataclass
class RunContext:
    """Everything a loop component needs to know about the current run.

    Passed explicitly to every component instead of being read from
    process-wide state.
    """

    settings: Settings
    paths: Paths
    repo: GitRepo
    run_log: RunLog
    mode: RunMode
    current_branch: str
    target_branch: str
    logger: logging.Logger

    @property
    def log_dir(self) -> Path:
        """Directory of this run's logs."""
        return self.run_log.log_dir

    @property
    def exclude_prefixes(self) -> tuple[str, ...]:
        """Repository-relative prefixes owned by the engine."""
        prefixes = [self.paths.state_prefix]
        try:
            relative = self.log_dir.resolve().relative_to(self.repo.root.resolve())
        except ValueError:
            relative = None
        if relative is not None and relative.parts:
            prefixes.append(f"{relative.as_posix()}/")
        return tuple(dict.fromkeys(prefixes))

    def render(self, template_name: str, **context: TemplateContextValue) -> str:
        """Render a prompt with the branch names filled in."""
        return render_prompt(
            template_name,
            prompts_dir=self.settings.prompts_dir,
            current_branch=self.current_branch,
            target_branch=self.target_branch,
            **context,
        )


def review_json(review: ReviewResult) -> str:
    """Serialize a review for embedding in a prompt."""
    return json.dumps(review.to_payload(), indent=2)
