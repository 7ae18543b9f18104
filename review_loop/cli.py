"""Command-line interface for review-loop."""

import shutil
import sys
import traceback
from collections.abc import Callable
from pathlib import Path

import click
from rich.console import Console

from review_loop.budget import Agent, BudgetGatekeeper, format_budget_report
from review_loop.config import (
    REFACTOR_RC_KEYS,
    REVIEW_RC_KEYS,
    SCOPES,
    CliOptions,
    Paths,
    Settings,
    get_settings,
    load_rc_file,
)
from review_loop.retry import SystemClock
from review_loop.runner import RefactorRunner, ReviewLoopRunner, SelfReviewRunner
from review_loop.utils import configure_logger, is_running_in_dev_mode

console = Console()

CliValue = str | int | bool | None


def _handle_errors(debug: bool, action: Callable[[], int]) -> None:
    """Run ``action`` and exit with its code, reporting errors the same way for every command."""
    try:
        exit_code = action()
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        if debug:
            console.print(traceback.format_exc())
        sys.exit(1)
    sys.exit(exit_code)


def _common_options(func: Callable) -> Callable:
    """Options shared by the review-loop and refactor-suggest commands."""
    decorators = [
        click.option("-t", "--target", "target_branch", help="Target branch to diff against (default: develop)"),
        click.option("-n", "--max-loop", type=int, help="Maximum outer iterations"),
        click.option("--max-subloop", type=int, help="Maximum self-review sub-iterations (default: 4)"),
        click.option("--no-self-review", is_flag=True, help="Skip the self-review sub-loop"),
        click.option("--dry-run/--no-dry-run", default=None, help="Review only, never fix"),
        click.option("--fix-nits", is_flag=True, help="Also fix low-priority findings during self-review"),
        click.option(
            "--budget-scope",
            type=click.Choice(SCOPES),
            help="Scope used for pre-flight budget checks",
        ),
        click.option(
            "-d",
            "--debug",
            is_flag=True,
            help="Enable debug mode (timestamped session logs and verbose logging)",
            envvar="REVIEW_LOOP_DEBUG",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@click.command()
@_common_options
@click.option("--auto-commit/--no-auto-commit", default=None, help="Commit and push each iteration (default: on)")
@click.version_option(package_name="review-loop")
def review_loop_main(**kwargs: CliValue) -> None:
    r"""Review the current branch, fix the findings, repeat until clean.

    \f
    review-loop drives two AI coding agents against a git repository:
    1. The reviewing agent reviews the diff against the target branch
    2. The editing agent forms an opinion on the findings and fixes them
    3. The editing agent self-reviews its own fix (sub-loop)
    4. The fix is committed and pushed, and the PR gets a comment
    5. Repeats until the review is clean or the iteration cap is reached

    Examples:
      # Up to three review-fix iterations against main
      review-loop -t main -n 3

      # Review only
      review-loop -n 1 --dry-run

    """
    debug = bool(kwargs.get("debug", False))
    _handle_errors(debug, lambda: _run_review_loop(_build_cli_options(kwargs)))


@click.command()
@_common_options
@click.option("--scope", type=click.Choice(SCOPES), help="Refactoring scope (default: micro)")
@click.option("--auto-approve", is_flag=True, help="Apply layer/full plans without asking")
@click.option("--create-pr", is_flag=True, help="Open a draft PR when the run ends")
@click.option("--resume", is_flag=True, help="Continue the previous refactoring run")
@click.version_option(package_name="review-loop")
def refactor_main(**kwargs: CliValue) -> None:
    r"""Ask for refactorings at a scope and apply them on a new branch.

    \f
    Examples:
      # One micro-refactoring pass
      refactor-suggest

      # Module-level refactorings, three passes, draft PR at the end
      refactor-suggest --scope module -n 3 --create-pr

      # Pick up an interrupted run
      refactor-suggest --scope module --resume

    """
    debug = bool(kwargs.get("debug", False))
    resume = bool(kwargs.get("resume", False))
    _handle_errors(debug, lambda: _run_refactor(_build_cli_options(kwargs), resume=resume))


@click.command()
@click.option("-t", "--target", "target_branch", help="Review the diff against this branch when the tree is clean")
@click.option("--max-subloop", type=int, default=4, show_default=True, help="Maximum sub-iterations")
@click.option("--dry-run", is_flag=True, help="Review only, never re-fix")
@click.option("--fix-nits", is_flag=True, help="Also fix low-priority findings")
@click.option(
    "--refactoring-plan",
    type=click.Path(path_type=Path, dir_okay=False),
    help="JSON refactoring plan to carry into re-fixes",
)
@click.option(
    "--log-dir",
    type=click.Path(path_type=Path, file_okay=False),
    help="Keep logs here (default: a temporary directory removed afterwards)",
)
@click.option("--iteration", type=int, default=1, show_default=True, help="Iteration number used in log names")
@click.option("-d", "--debug", is_flag=True, help="Enable verbose logging", envvar="REVIEW_LOOP_DEBUG")
@click.version_option(package_name="review-loop")
def self_review_main(**kwargs: CliValue) -> None:
    r"""Self-review uncommitted changes, or a branch diff with -t.

    \f
    Examples:
      # Check the edits in the working tree
      self-review

      # Review and fix everything since develop, committing each re-fix
      self-review -t develop

    """
    debug = bool(kwargs.get("debug", False))
    _handle_errors(debug, lambda: _run_self_review(kwargs))


@click.command()
@click.option(
    "--agent",
    type=click.Choice([agent.value for agent in Agent]),
    help="Only report this agent (default: both)",
)
@click.option("--scope", type=click.Choice(SCOPES), help="Exit 1 unless the budget allows this scope")
@click.option("-d", "--debug", is_flag=True, help="Enable verbose logging")
def budget_main(**kwargs: CliValue) -> None:
    """Show the rate-limit budget of the agents."""
    debug = bool(kwargs.get("debug", False))
    _handle_errors(debug, lambda: _run_budget(kwargs))


def _build_cli_options(kwargs: dict[str, CliValue]) -> CliOptions:
    """Build CliOptions from Click's keyword arguments.

    Click guarantees value types via each option's ``type=`` parameter,
    so the casts below are safe.

    Args:
        kwargs: Keyword arguments injected by Click decorators

    Returns:
        CliOptions with CLI-provided overrides

    """
    target_branch = kwargs.get("target_branch")
    max_loop = kwargs.get("max_loop")
    max_subloop = kwargs.get("max_subloop")
    dry_run = kwargs.get("dry_run")
    auto_commit = kwargs.get("auto_commit")
    scope = kwargs.get("scope")
    budget_scope = kwargs.get("budget_scope")

    if kwargs.get("no_self_review"):
        max_subloop = 0

    return CliOptions(
        target_branch=str(target_branch) if target_branch is not None else None,
        max_loop=int(max_loop) if max_loop is not None else None,
        max_subloop=int(max_subloop) if max_subloop is not None else None,
        dry_run=bool(dry_run) if dry_run is not None else None,
        auto_commit=bool(auto_commit) if auto_commit is not None else None,
        fix_nits=bool(kwargs.get("fix_nits", False)),
        scope=str(scope) if scope is not None else None,
        budget_scope=str(budget_scope) if budget_scope is not None else None,
        auto_approve=bool(kwargs.get("auto_approve", False)),
        create_pr=bool(kwargs.get("create_pr", False)),
        debug=bool(kwargs.get("debug", False)),
    )


def _load_settings(
    options: CliOptions,
    rc_file: Path,
    allowed_keys: frozenset[str],
    paths: Paths,
    *,
    require_max_loop: bool,
) -> Settings:
    """Layer rc file and CLI options into Settings and resolve relative paths."""
    rc_values, ignored = load_rc_file(rc_file, allowed_keys)
    for line in ignored:
        console.print(f"[yellow]Warning: ignoring unsupported line in {rc_file.name}: {line}[/yellow]")

    settings = get_settings(options, rc_values, require_max_loop=require_max_loop)
    if settings.prompts_dir is not None and not settings.prompts_dir.is_absolute():
        settings.prompts_dir = paths.project_root / settings.prompts_dir
    return settings


def _check_tools(*commands: str) -> None:
    """Fail early when a required executable is not on PATH.

    Raises:
        ValueError: Naming the first missing command

    """
    for command in commands:
        if shutil.which(command) is None:
            message = f"'{command}' command not found. Please install it first."
            raise ValueError(message)


def _show_dev_mode() -> None:
    if is_running_in_dev_mode():
        console.print("[cyan]⚡ Running in DEV mode (editable install)[/cyan]")


def _run_review_loop(options: CliOptions) -> int:
    """Run the review-fix loop.

    Args:
        options: CLI options grouped into a dataclass

    Returns:
        Exit code of the run

    """
    _show_dev_mode()
    paths = Paths()
    settings = _load_settings(options, paths.review_rc_file, REVIEW_RC_KEYS, paths, require_max_loop=True)
    _check_tools("git", settings.reviewer_cmd, settings.editor_cmd)

    runner = ReviewLoopRunner(settings, paths)
    return runner.run().exit_code


def _run_refactor(options: CliOptions, *, resume: bool) -> int:
    """Run the refactor-fix loop.

    Args:
        options: CLI options grouped into a dataclass
        resume: Continue the previous run

    Returns:
        Exit code of the run

    """
    _show_dev_mode()
    paths = Paths()
    settings = _load_settings(options, paths.refactor_rc_file, REFACTOR_RC_KEYS, paths, require_max_loop=False)
    if settings.max_loop is None:
        settings.max_loop = 1
    _check_tools("git", settings.reviewer_cmd, settings.editor_cmd)

    runner = RefactorRunner(
        settings,
        paths,
        resume=resume,
        explicit_target=options.target_branch is not None,
        explicit_max_loop=options.max_loop is not None,
    )
    return runner.run().exit_code


def _run_self_review(kwargs: dict[str, CliValue]) -> int:
    """Run the standalone self-review sub-loop.

    Args:
        kwargs: Keyword arguments injected by Click decorators

    Returns:
        Always 0; sub-iteration failures are reported but not fatal

    """
    _show_dev_mode()
    options = CliOptions(
        max_subloop=int(kwargs.get("max_subloop") or 0),
        dry_run=bool(kwargs.get("dry_run", False)),
        fix_nits=bool(kwargs.get("fix_nits", False)),
        debug=bool(kwargs.get("debug", False)),
    )
    paths = Paths()
    settings = get_settings(options, require_max_loop=False)
    _check_tools("git", settings.editor_cmd)

    target = kwargs.get("target_branch")
    log_dir = kwargs.get("log_dir")
    plan = kwargs.get("refactoring_plan")
    runner = SelfReviewRunner(
        settings,
        paths,
        target=str(target) if target is not None else None,
        log_dir=log_dir if isinstance(log_dir, Path) else None,
        iteration=int(kwargs.get("iteration") or 1),
        refactoring_plan=plan if isinstance(plan, Path) else None,
    )
    runner.run()
    return 0


def _run_budget(kwargs: dict[str, CliValue]) -> int:
    """Print the budget report.

    Args:
        kwargs: Keyword arguments injected by Click decorators

    Returns:
        1 if ``--scope`` was given and any reported agent lacks budget for it

    """
    logger = configure_logger(debug=bool(kwargs.get("debug", False)))
    clock = SystemClock()
    gatekeeper = BudgetGatekeeper(logger, clock=clock)
    agent = kwargs.get("agent")
    agents = [Agent(agent)] if agent else list(Agent)
    scope = kwargs.get("scope")

    exit_code = 0
    for current in agents:
        status = gatekeeper.fetch(current)
        for line in format_budget_report(current, status, clock.wall_time()):
            console.print(line)
        if scope and not gatekeeper.sufficient(str(scope), status):
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    review_loop_main()
