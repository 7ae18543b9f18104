"""Configuration management for review-loop."""

import re
import shutil
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import pydantic as pyd
from pydantic_settings import BaseSettings, SettingsConfigDict

from review_loop.utils import run_command

SCOPES = ("micro", "module", "layer", "full")
BOOLEAN_RC_KEYS = frozenset({"DRY_RUN", "AUTO_COMMIT", "AUTO_APPROVE", "CREATE_PR", "FIX_NITS"})

REVIEW_RC_FILE = ".reviewlooprc"
REFACTOR_RC_FILE = ".refactorsuggestrc"

REVIEW_RC_KEYS = frozenset(
    {
        "TARGET_BRANCH",
        "MAX_LOOP",
        "MAX_SUBLOOP",
        "DRY_RUN",
        "AUTO_COMMIT",
        "PROMPTS_DIR",
        "RETRY_MAX_WAIT",
        "RETRY_INITIAL_WAIT",
        "BUDGET_SCOPE",
    },
)
REFACTOR_RC_KEYS = frozenset(
    {
        "SCOPE",
        "TARGET_BRANCH",
        "MAX_LOOP",
        "MAX_SUBLOOP",
        "DRY_RUN",
        "AUTO_APPROVE",
        "CREATE_PR",
        "PROMPTS_DIR",
        "RETRY_MAX_WAIT",
        "RETRY_INITIAL_WAIT",
    },
)

_RC_LINE_PATTERN = re.compile(r"""^\s*([A-Z_]+)=["']?([^"']*)["']?\s*$""")


class RunMode(StrEnum):
    """The two iteration kinds the engine knows how to drive."""

    REVIEW = "review"
    REFACTOR = "refactor"


class Settings(BaseSettings):
    """Configuration settings for review-loop."""

    # Branches
    target_branch: str = pyd.Field(
        default="develop",
        alias="REVIEW_LOOP_TARGET_BRANCH",
        description="Branch to diff against (review) or branch from (refactor)",
    )

    # Iteration limits
    max_loop: int | None = pyd.Field(
        default=None,
        alias="REVIEW_LOOP_MAX_LOOP",
        description="Maximum outer iterations",
    )

    max_subloop: int = pyd.Field(
        default=4,
        alias="REVIEW_LOOP_MAX_SUBLOOP",
        description="Maximum self-review sub-iterations per fix (0 disables)",
    )

    # Behaviour flags
    dry_run: bool = pyd.Field(
        default=False,
        alias="REVIEW_LOOP_DRY_RUN",
        description="Review only, never edit",
    )

    auto_commit: bool = pyd.Field(
        default=True,
        alias="REVIEW_LOOP_AUTO_COMMIT",
        description="Commit and push fixes after every iteration",
    )

    fix_nits: bool = pyd.Field(
        default=False,
        alias="REVIEW_LOOP_FIX_NITS",
        description="Ask the self-review to flag nits in changed files too",
    )

    # Refactor mode
    scope: str = pyd.Field(
        default="micro",
        alias="REVIEW_LOOP_SCOPE",
        description="Refactoring scope: micro, module, layer or full",
    )

    auto_approve: bool = pyd.Field(
        default=False,
        alias="REVIEW_LOOP_AUTO_APPROVE",
        description="Skip plan confirmation for layer/full scope",
    )

    create_pr: bool = pyd.Field(
        default=False,
        alias="REVIEW_LOOP_CREATE_PR",
        description="Open a draft PR after a refactor run",
    )

    # Retry and budget
    retry_max_wait: int = pyd.Field(
        default=600,
        alias="REVIEW_LOOP_RETRY_MAX_WAIT",
        description="Maximum total backoff per agent call in seconds",
    )

    retry_initial_wait: int = pyd.Field(
        default=30,
        alias="REVIEW_LOOP_RETRY_INITIAL_WAIT",
        description="First backoff delay in seconds",
    )

    budget_scope: str = pyd.Field(
        default="module",
        alias="REVIEW_LOOP_BUDGET_SCOPE",
        description="Scope used for pre-flight budget checks in review mode",
    )

    budget_max_wait: int = pyd.Field(
        default=600,
        alias="REVIEW_LOOP_BUDGET_MAX_WAIT",
        description="Maximum time to wait for rate budget in seconds",
    )

    # Agents
    reviewer_cmd: str = pyd.Field(
        default="codex",
        alias="REVIEW_LOOP_REVIEWER_CMD",
        description="Reviewing agent executable",
    )

    editor_cmd: str = pyd.Field(
        default="claude",
        alias="REVIEW_LOOP_EDITOR_CMD",
        description="Editing agent executable",
    )

    prompts_dir: Path | None = pyd.Field(
        default=None,
        alias="REVIEW_LOOP_PROMPTS_DIR",
        description="Directory of prompt templates overriding the bundled ones",
    )

    # Debug mode
    debug: bool = pyd.Field(
        default=False,
        alias="REVIEW_LOOP_DEBUG",
        description="Enable debug mode with timestamped session logs",
    )

    model_config = SettingsConfigDict(
        env_prefix="REVIEW_LOOP_",
        extra="ignore",
        populate_by_name=True,
    )

    def validate_limits(self, *, require_max_loop: bool = True) -> None:
        """Validate iteration limits, scopes and wait budgets.

        Args:
            require_max_loop: Whether a missing max_loop is an error

        Raises:
            ValueError: If any value is out of range

        """
        if self.max_loop is None:
            if require_max_loop:
                message = "-n / --max-loop is required."
                raise ValueError(message)
        elif self.max_loop <= 0:
            message = f"--max-loop must be a positive integer, got '{self.max_loop}'."
            raise ValueError(message)

        if self.max_subloop < 0:
            message = f"--max-subloop must be a non-negative integer, got '{self.max_subloop}'."
            raise ValueError(message)

        for name, value in (("scope", self.scope), ("budget scope", self.budget_scope)):
            if value not in SCOPES:
                message = f"{name} must be one of: {', '.join(SCOPES)}. Got '{value}'."
                raise ValueError(message)

        if self.retry_max_wait < 0 or self.retry_initial_wait <= 0 or self.budget_max_wait < 0:
            message = "Retry and budget waits must be positive numbers of seconds."
            raise ValueError(message)


@dataclass(frozen=True)
class CliOptions:
    """CLI override options for Settings.

    Groups all CLI-provided overrides into a single object so that the
    command functions stay small.
    """

    target_branch: str | None = None
    max_loop: int | None = None
    max_subloop: int | None = None
    dry_run: bool | None = None
    auto_commit: bool | None = None
    fix_nits: bool = False
    scope: str | None = None
    budget_scope: str | None = None
    auto_approve: bool = False
    create_pr: bool = False
    debug: bool = False


def load_rc_file(path: Path | None, allowed_keys: frozenset[str]) -> tuple[dict[str, str], list[str]]:
    """Read a whitelisted KEY=VALUE rc file.

    The file is never executed. Blank lines and ``#`` comments are skipped,
    surrounding quotes are stripped, and any line that is not an allowed
    assignment is reported back instead of being applied.

    Args:
        path: Path to the rc file (missing files yield no values)
        allowed_keys: Upper-case keys that may be set

    Returns:
        Tuple of (settings values keyed by field name, ignored lines)

    Raises:
        ValueError: If a boolean key has a value other than true/false

    """
    values: dict[str, str] = {}
    ignored: list[str] = []
    if path is None or not path.is_file():
        return values, ignored

    with path.open(encoding="utf-8") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            match = _RC_LINE_PATTERN.match(line)
            if not match or match.group(1) not in allowed_keys:
                ignored.append(line)
                continue
            key, value = match.group(1), match.group(2).rstrip()
            if key in BOOLEAN_RC_KEYS and value not in ("true", "false"):
                message = f"{key} must be 'true' or 'false', got '{value}' (in {path.name})."
                raise ValueError(message)
            if key == "SCOPE" and value not in SCOPES:
                message = (
                    f"SCOPE must be one of: {', '.join(SCOPES)}. Got '{value}' (in {path.name})."
                )
                raise ValueError(message)
            values[key.lower()] = value

    return values, ignored


def get_settings(
    options: CliOptions | None = None,
    rc_values: dict[str, str] | None = None,
    *,
    require_max_loop: bool = True,
) -> Settings:
    """Create Settings from defaults, environment, rc file and CLI flags.

    Later layers win: defaults < environment < rc file < CLI flags.

    Args:
        options: CLI override options grouped into a dataclass
        rc_values: Values read by ``load_rc_file``
        require_max_loop: Whether max_loop must end up set

    Returns:
        Validated Settings instance

    """
    settings = Settings(**(rc_values or {}))

    if options is not None:
        _apply_cli_options(settings, options)

    settings.validate_limits(require_max_loop=require_max_loop)
    return settings


def _apply_cli_options(settings: Settings, options: CliOptions) -> None:
    """Apply CLI options to Settings instance.

    Args:
        settings: Settings instance to modify
        options: CLI options to apply

    """
    _apply_value_options(settings, options)
    _apply_boolean_flags(settings, options)


def _apply_value_options(settings: Settings, options: CliOptions) -> None:
    """Apply valued CLI options.

    Args:
        settings: Settings instance to modify
        options: CLI options to apply

    """
    if options.target_branch is not None:
        settings.target_branch = options.target_branch
    if options.max_loop is not None:
        settings.max_loop = options.max_loop
    if options.max_subloop is not None:
        settings.max_subloop = options.max_subloop
    if options.scope is not None:
        settings.scope = options.scope
    if options.budget_scope is not None:
        settings.budget_scope = options.budget_scope


def _apply_boolean_flags(settings: Settings, options: CliOptions) -> None:
    """Apply boolean flag CLI options.

    Args:
        settings: Settings instance to modify
        options: CLI options to apply

    """
    if options.dry_run is not None:
        settings.dry_run = options.dry_run
    if options.auto_commit is not None:
        settings.auto_commit = options.auto_commit
    if options.fix_nits:
        settings.fix_nits = True
    if options.auto_approve:
        settings.auto_approve = True
    if options.create_pr:
        settings.create_pr = True
    if options.debug:
        settings.debug = True


class Paths:
    """Path management for review-loop."""

    def __init__(self, project_root: Path | None = None) -> None:
        """Initialize paths.

        Args:
            project_root: Project root directory (defaults to git root or cwd)

        """
        self.project_root = project_root or self._find_project_root()
        self.state_dir = self.project_root / ".review-loop"
        self.logs_dir = self.state_dir / "logs"
        self.run_log = self.state_dir / "review-loop.log"
        self.review_rc_file = self.project_root / REVIEW_RC_FILE
        self.refactor_rc_file = self.project_root / REFACTOR_RC_FILE

    @staticmethod
    def _find_project_root() -> Path:
        """Find project root directory.

        Returns:
            Path to project root

        """
        git_path = shutil.which("git")
        if git_path:
            returncode, stdout, _ = run_command([git_path, "rev-parse", "--show-toplevel"])
            if returncode == 0 and stdout.strip():
                return Path(stdout.strip())

        return Path.cwd()

    def log_dir_for(self, mode: RunMode) -> Path:
        """Return the run directory for an iteration kind.

        Args:
            mode: Review or refactor

        Returns:
            Directory holding that mode's iteration logs

        """
        return self.logs_dir / mode.value

    @property
    def state_prefix(self) -> str:
        """Repository-relative prefix of every engine-owned path."""
        return f"{self.state_dir.name}/"

    def ensure_state_dir(self) -> None:
        """Ensure .review-loop directory exists and is ignored by git.

        The directory carries its own ``.gitignore`` so the user's ignore
        file is never edited.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)

        gitignore = self.state_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n", encoding="utf-8")
