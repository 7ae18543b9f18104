"""Error classification and retry-with-backoff for agent CLI calls.

Agent CLIs fail for reasons that range from "try again in a minute" (rate
limits, overload, 5xx) to "this will never work" (bad credentials). The
executor in this module retries only the first kind, with exponential
backoff bounded by a wall-clock budget, and gives up immediately on
everything else.
"""

import logging
import re
import shlex
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from review_loop.utils import run_command

CLASSIFY_SAMPLE_BYTES = 4096
DEFAULT_MAX_WAIT = 600
DEFAULT_INITIAL_WAIT = 30
MAX_BACKOFF_DELAY = 300

_TRANSIENT_PATTERN = re.compile(
    r"rate.limit|too many requests|(^|[^0-9])429([^0-9]|$)|overloaded|"
    r"(^|[^0-9])529([^0-9]|$)|(^|[^0-9])50[03]([^0-9]|$)|internal server error|"
    r"capacity|token.*limit|quota.*exceeded|temporarily unavailable",
    re.MULTILINE,
)
_PERMANENT_PATTERN = re.compile(
    r"auth.*fail|unauthorized|(^|[^0-9])403([^0-9]|$)|forbidden|invalid.*api.key|"
    r"permission denied",
    re.MULTILINE,
)


class ErrorClass(StrEnum):
    """Category of a failed agent call."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


def classify_error(output: bytes | str, exit_code: int) -> ErrorClass:
    """Classify a failed call from its exit code and captured output.

    Only the first ``CLASSIFY_SAMPLE_BYTES`` bytes of output are inspected.
    Transient patterns are checked before permanent ones, so output that
    mentions both (e.g. a 403 page that also says "rate limit") is treated
    as transient.

    Args:
        output: Captured stdout/stderr of the failed call
        exit_code: Process exit code

    Returns:
        The error category

    """
    sample = output.encode("utf-8", errors="replace") if isinstance(output, str) else output
    head = sample[:CLASSIFY_SAMPLE_BYTES].decode("utf-8", errors="ignore")
    text = f"exit={exit_code}\n{head}".lower()

    if _TRANSIENT_PATTERN.search(text):
        return ErrorClass.TRANSIENT
    if _PERMANENT_PATTERN.search(text):
        return ErrorClass.PERMANENT
    return ErrorClass.UNKNOWN


class Clock(Protocol):
    """Time source used by anything that waits."""

    def wall_time(self) -> datetime:
        """Return the current timezone-aware UTC time."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block for the given number of seconds."""
        ...


class SystemClock:
    """Clock backed by the ``time`` module."""

    def wall_time(self) -> datetime:
        """Return the current UTC time."""
        return datetime.now(UTC)

    def sleep(self, seconds: float) -> None:
        """Sleep with ``time.sleep``."""
        time.sleep(seconds)


@dataclass
class BackoffState:
    """Bookkeeping for one retry sequence.

    Each individual sleep is capped at ``max_delay`` and clamped to the time
    left in ``max_wait``, so the accumulated sleep never exceeds ``max_wait``.
    """

    max_wait: int = DEFAULT_MAX_WAIT
    next_delay: int = DEFAULT_INITIAL_WAIT
    max_delay: int = MAX_BACKOFF_DELAY
    attempt: int = 1
    elapsed: int = 0

    @property
    def exhausted(self) -> bool:
        """Whether the wait budget is used up."""
        return self.elapsed >= self.max_wait

    def next_sleep(self) -> int:
        """Return how long to sleep before the next attempt."""
        return max(0, min(self.next_delay, self.max_delay, self.max_wait - self.elapsed))

    def record_sleep(self, seconds: int) -> None:
        """Account for a completed sleep and double the next delay."""
        self.elapsed += seconds
        self.next_delay *= 2
        self.attempt += 1


@dataclass(frozen=True)
class AgentCallResult:
    """Outcome of a (possibly retried) agent invocation."""

    returncode: int
    stdout: str
    stderr: str
    attempts: int = 1
    error_class: ErrorClass | None = None
    history: tuple[int, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        """Whether the final attempt succeeded."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr of the final attempt."""
        return f"{self.stdout}{self.stderr}"


class RetryExecutor:
    """Run an agent command, retrying transient failures with backoff."""

    def __init__(
        self,
        logger: logging.Logger,
        *,
        max_wait: int = DEFAULT_MAX_WAIT,
        initial_wait: int = DEFAULT_INITIAL_WAIT,
        clock: Clock | None = None,
        cwd: Path | None = None,
        diagnostic_log: Path | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            logger: Logger instance for output
            max_wait: Maximum accumulated backoff per call in seconds
            initial_wait: First backoff delay in seconds
            clock: Time source (defaults to the system clock)
            cwd: Working directory for the command
            diagnostic_log: File every attempt's output is appended to

        """
        self.logger = logger
        self.max_wait = max_wait
        self.initial_wait = initial_wait
        self.clock = clock or SystemClock()
        self.cwd = cwd
        self.diagnostic_log = diagnostic_log

    def run(
        self,
        command: list[str],
        *,
        label: str,
        input_text: str | None = None,
        classify_stderr_only: bool = False,
    ) -> AgentCallResult:
        """Run ``command`` until it succeeds, fails for good, or time runs out.

        Args:
            command: Agent argv
            label: Short name used in log lines (e.g. "self-review")
            input_text: Prompt piped to stdin; replayed verbatim on every attempt
            classify_stderr_only: Classify failures from stderr alone, for agents
                whose stdout carries the model's answer

        Returns:
            Result of the last attempt

        """
        payload = input_text
        state = BackoffState(max_wait=self.max_wait, next_delay=self.initial_wait)
        history: list[int] = []

        while True:
            returncode, stdout, stderr = run_command(command, cwd=self.cwd, input_text=payload)
            history.append(returncode)
            self._record_attempt(label, state.attempt, command, returncode, stdout, stderr)

            if returncode == 0:
                return AgentCallResult(
                    returncode, stdout, stderr, attempts=state.attempt, history=tuple(history)
                )

            sample = stderr if classify_stderr_only else f"{stdout}{stderr}"
            error_class = classify_error(sample, returncode)
            failure = AgentCallResult(
                returncode,
                stdout,
                stderr,
                attempts=state.attempt,
                error_class=error_class,
                history=tuple(history),
            )

            if error_class is not ErrorClass.TRANSIENT:
                self.logger.error(
                    "[%s] Non-transient error (%s, exit=%s). Giving up.",
                    label,
                    error_class,
                    returncode,
                )
                return failure

            if state.exhausted:
                self.logger.error(
                    "[%s] Retry timeout (%s/%ss). Giving up.",
                    label,
                    state.elapsed,
                    state.max_wait,
                )
                return failure

            delay = state.next_sleep()
            self.logger.warning(
                "[%s] Transient error (exit=%s). Retry #%s in %ss...",
                label,
                returncode,
                state.attempt + 1,
                delay,
            )
            self.clock.sleep(delay)
            state.record_sleep(delay)

    def _record_attempt(
        self,
        label: str,
        attempt: int,
        command: list[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        """Append one attempt's output to the diagnostic log."""
        if not self.diagnostic_log:
            return

        self.diagnostic_log.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self.diagnostic_log.open("a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] {label} attempt {attempt}\n")
            f.write(f"Command: {shlex.join(command)}\n")
            f.write(f"Exit code: {returncode}\n")
            if stdout:
                f.write(f"STDOUT:\n{stdout}\n")
            if stderr:
                f.write(f"STDERR:\n{stderr}\n")
            f.write("\n")
