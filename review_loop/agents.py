"""Invocation of the reviewing agent (codex) and the editing agent (claude)."""

import logging
import uuid
from pathlib import Path

from review_loop.retry import AgentCallResult, RetryExecutor

READ_ONLY_TOOLS = "Read,Glob,Grep"
EDIT_TOOLS = "Edit,Read,Glob,Grep,Bash"


class ReviewerAgent:
    """Runs the read-only reviewing agent."""

    def __init__(self, executor: RetryExecutor, logger: logging.Logger, command: str = "codex") -> None:
        """Initialize the agent.

        Args:
            executor: Retry executor for the agent CLI
            logger: Logger instance for output
            command: Reviewer executable

        """
        self.executor = executor
        self.logger = logger
        self.command = command

    def review(self, prompt: str, output_file: Path, *, label: str = "review") -> AgentCallResult:
        """Run a review and let the agent write its final message to ``output_file``.

        Any stale output file is removed first so a failed call can never be
        mistaken for a fresh result.
        """
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.unlink(missing_ok=True)
        command = [self.command, "exec", "--sandbox", "read-only", "-o", str(output_file), prompt]
        return self.executor.run(command, label=label, classify_stderr_only=True)


class EditorAgent:
    """Runs the editing agent in read-only or editing mode."""

    def __init__(self, executor: RetryExecutor, logger: logging.Logger, command: str = "claude") -> None:
        """Initialize the agent.

        Args:
            executor: Retry executor for the agent CLI
            logger: Logger instance for output
            command: Editor executable

        """
        self.executor = executor
        self.logger = logger
        self.command = command

    def critique(self, prompt: str, output_file: Path, *, label: str = "self-review") -> AgentCallResult:
        """Ask the agent for a read-only review and save its answer to ``output_file``."""
        command = [self.command, "-p", "-", "--allowedTools", READ_ONLY_TOOLS]
        result = self.executor.run(command, label=label, input_text=prompt)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(result.stdout if result.ok else result.output, encoding="utf-8")
        return result

    def two_step_fix(
        self,
        opinion_prompt: str,
        execute_prompt: str,
        opinion_file: Path,
        fix_file: Path,
        *,
        label: str = "fix",
    ) -> AgentCallResult:
        """Run the opinion step (read-only) then the execute step (editing) in one session.

        Args:
            opinion_prompt: Prompt carrying the findings to assess
            execute_prompt: Prompt telling the agent to apply its plan
            opinion_file: Where the opinion transcript is saved
            fix_file: Where the execute transcript is saved
            label: Name used in log lines ("fix", "re-fix", ...)

        Returns:
            Result of the failing step, or of the execute step on success

        """
        session_id = str(uuid.uuid4())
        opinion_file.parent.mkdir(parents=True, exist_ok=True)

        self.logger.info("Running %s (step 1: opinion)...", label)
        opinion = self.executor.run(
            [self.command, "-p", "-", "--session-id", session_id, "--allowedTools", READ_ONLY_TOOLS],
            label=f"{label} opinion",
            input_text=opinion_prompt,
        )
        opinion_file.write_text(opinion.output, encoding="utf-8")
        if not opinion.ok:
            self.logger.error("%s opinion failed. See %s for details.", label, opinion_file)
            return opinion
        self.logger.info("Opinion saved to %s", opinion_file)

        self.logger.info("Running %s (step 2: execute)...", label)
        execute = self.executor.run(
            [self.command, "-p", "-", "--resume", session_id, "--allowedTools", EDIT_TOOLS],
            label=f"{label} execute",
            input_text=execute_prompt,
        )
        fix_file.write_text(execute.output, encoding="utf-8")
        if not execute.ok:
            self.logger.error("%s execute failed. See %s for details.", label, fix_file)
            return execute
        self.logger.info("%s log saved to %s", label, fix_file)
        return execute
