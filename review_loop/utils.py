"""Logging, subprocess and hashing helpers shared by review-loop."""

import hashlib
import importlib.metadata
import json
import logging
import shlex
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

console = Console()
LOG_FORMAT = "[%(asctime)s] [review-loop] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOGGER_NAME = "review_loop"
DISTRIBUTION_NAME = "review-loop"
COMMAND_SYNTAX_ERROR = 2
COMMAND_NOT_FOUND = 127


def _installed_editable(dist: importlib.metadata.Distribution) -> bool:
    """Read the PEP 610 ``direct_url.json`` of ``dist`` for the editable flag."""
    dist_path = getattr(dist, "_path", None)
    if not dist_path:
        return False
    direct_url = Path(dist_path) / "direct_url.json"
    try:
        data = json.loads(direct_url.read_text())
    except (OSError, json.JSONDecodeError):
        return False
    return data.get("dir_info", {}).get("editable") is True


def is_running_in_dev_mode() -> bool:
    """Check whether review-loop runs from an editable install or a source checkout.

    Returns:
        True for editable installs and imports from outside site-packages

    """
    try:
        dist = importlib.metadata.distribution(DISTRIBUTION_NAME)
    except (importlib.metadata.PackageNotFoundError, OSError, ValueError):
        return False

    if _installed_editable(dist):
        return True

    module_file = getattr(sys.modules.get("review_loop"), "__file__", None)
    if not module_file:
        return False
    location = str(Path(module_file).resolve())
    return "site-packages" not in location and "dist-packages" not in location


def configure_logger(
    run_log: Path | None = None,
    session_log: Path | None = None,
    *,
    debug: bool = False,
) -> logging.Logger:
    """Configure and return the project logger.

    Args:
        run_log: Path to the persistent review-loop.log file
        session_log: Path to the per-session log file
        debug: Enable debug mode

    Returns:
        Configured logger instance

    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    rich_handler = RichHandler(
        console=console,
        show_time=False,
        show_level=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    rich_handler.setFormatter(formatter)
    logger.addHandler(rich_handler)

    for log_file in (run_log, session_log):
        if not log_file:
            continue
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def format_duration(total_seconds: int) -> str:
    """Format duration in seconds to human-readable string.

    Args:
        total_seconds: Duration in seconds

    Returns:
        Formatted duration string

    """
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def run_command(
    command: str | list[str],
    cwd: Path | None = None,
    *,
    input_text: str | None = None,
) -> tuple[int, str, str]:
    """Run a command without invoking a shell and capture its output.

    String commands are tokenized with ``shlex.split``. Agent prompts go
    through ``input_text`` or as a single argv element, never through a
    shell. A non-zero exit never raises, and output bytes that are not
    valid UTF-8 are replaced rather than raising.

    Args:
        command: Command to run as a string or argv list
        cwd: Working directory
        input_text: Text piped to the command's stdin (stdin is closed otherwise)

    Returns:
        Tuple of (exit_code, stdout, stderr); 127 if the executable is missing,
        2 if the command cannot be tokenized

    """
    try:
        args = shlex.split(command) if isinstance(command, str) else command
    except ValueError as exc:
        return (COMMAND_SYNTAX_ERROR, "", f"Invalid command syntax: {exc}")

    if not args:
        return (COMMAND_SYNTAX_ERROR, "", "No command provided")

    try:
        result = subprocess.run(  # noqa: S603  # args are tokenized argv with shell disabled.
            args,
            cwd=cwd,
            input=input_text,
            stdin=subprocess.DEVNULL if input_text is None else None,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except FileNotFoundError:
        return (COMMAND_NOT_FOUND, "", f"Command not found: {args[0]}")
    return (result.returncode, result.stdout or "", result.stderr or "")


def get_git_revision_hash(file_path: Path, cwd: Path | None = None) -> str:
    """Fingerprint a file the way git would.

    Args:
        file_path: Path to file
        cwd: Repository root used to run git

    Returns:
        Git blob hash, a sha256 digest when git cannot hash the file, or
        ``no_file_<name>`` for a missing file

    """
    if not file_path.exists():
        return f"no_file_{file_path.name}"

    returncode, stdout, _ = run_command(["git", "hash-object", str(file_path)], cwd=cwd)
    if returncode == 0 and stdout.strip():
        return stdout.strip()
    return hashlib.sha256(file_path.read_bytes()).hexdigest()
