"""Tests for agents module."""

from pathlib import Path
from unittest.mock import MagicMock

from review_loop.agents import EDIT_TOOLS, READ_ONLY_TOOLS, EditorAgent, ReviewerAgent
from review_loop.retry import AgentCallResult

OK = AgentCallResult(0, "agent output", "")
FAILED = AgentCallResult(1, "partial", " error", error_class=None)
TWO_CALLS = 2


class TestReviewerAgent:
    """Tests for ReviewerAgent."""

    def test_review_command(self, tmp_path: Path) -> None:
        """The reviewer runs read-only and writes to the output file."""
        executor = MagicMock()
        executor.run.return_value = OK
        output_file = tmp_path / "logs" / "review-1.json"
        output_file.parent.mkdir()
        output_file.write_text("stale")

        result = ReviewerAgent(executor, MagicMock()).review("the prompt", output_file)

        assert result.ok
        assert not output_file.exists()
        command = executor.run.call_args.args[0]
        assert command == ["codex", "exec", "--sandbox", "read-only", "-o", str(output_file), "the prompt"]
        assert executor.run.call_args.kwargs["classify_stderr_only"] is True

    def test_custom_command(self, tmp_path: Path) -> None:
        """The executable can be overridden."""
        executor = MagicMock()
        executor.run.return_value = OK

        ReviewerAgent(executor, MagicMock(), "/opt/bin/codex").review("p", tmp_path / "r.json")

        assert executor.run.call_args.args[0][0] == "/opt/bin/codex"


class TestEditorAgent:
    """Tests for EditorAgent."""

    def test_critique_saves_stdout(self, tmp_path: Path) -> None:
        """A read-only critique saves the agent's answer."""
        executor = MagicMock()
        executor.run.return_value = OK
        output_file = tmp_path / "self-review-1-1.json"

        EditorAgent(executor, MagicMock()).critique("prompt", output_file)

        assert output_file.read_text() == "agent output"
        command = executor.run.call_args.args[0]
        assert command == ["claude", "-p", "-", "--allowedTools", READ_ONLY_TOOLS]
        assert executor.run.call_args.kwargs["input_text"] == "prompt"

    def test_critique_failure_saves_all_output(self, tmp_path: Path) -> None:
        """On failure the combined output is kept for diagnosis."""
        executor = MagicMock()
        executor.run.return_value = FAILED
        output_file = tmp_path / "self-review-1-1.json"

        result = EditorAgent(executor, MagicMock()).critique("prompt", output_file)

        assert not result.ok
        assert output_file.read_text() == "partial error"

    def test_two_step_fix_shares_session(self, tmp_path: Path) -> None:
        """The execute step resumes the opinion step's session with edit tools."""
        executor = MagicMock()
        executor.run.side_effect = [AgentCallResult(0, "opinion text", ""), AgentCallResult(0, "fixed", "")]
        opinion_file = tmp_path / "opinion-1.md"
        fix_file = tmp_path / "fix-1.md"

        result = EditorAgent(executor, MagicMock()).two_step_fix("opinion?", "execute!", opinion_file, fix_file)

        assert result.ok
        assert opinion_file.read_text() == "opinion text"
        assert fix_file.read_text() == "fixed"
        first, second = (call.args[0] for call in executor.run.call_args_list)
        session_id = first[first.index("--session-id") + 1]
        assert second[second.index("--resume") + 1] == session_id
        assert first[-1] == READ_ONLY_TOOLS
        assert second[-1] == EDIT_TOOLS

    def test_two_step_fix_stops_after_failed_opinion(self, tmp_path: Path) -> None:
        """A failed opinion step skips the execute step."""
        executor = MagicMock()
        executor.run.return_value = FAILED

        result = EditorAgent(executor, MagicMock()).two_step_fix(
            "opinion?", "execute!", tmp_path / "opinion-1.md", tmp_path / "fix-1.md"
        )

        assert not result.ok
        assert executor.run.call_count == 1
        assert not (tmp_path / "fix-1.md").exists()

    def test_two_step_fix_reports_failed_execute(self, tmp_path: Path) -> None:
        """A failed execute step is returned."""
        executor = MagicMock()
        executor.run.side_effect = [OK, FAILED]

        result = EditorAgent(executor, MagicMock()).two_step_fix(
            "opinion?", "execute!", tmp_path / "opinion-1.md", tmp_path / "fix-1.md"
        )

        assert not result.ok
        assert executor.run.call_count == TWO_CALLS
