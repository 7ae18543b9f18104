"""Tests for extract module."""

from pathlib import Path

import pytest

from review_loop.extract import (
    ExtractionStatus,
    JsonExtractionError,
    extract_json,
    extract_json_from_file,
)

PAYLOAD = {"findings": [], "overall_correctness": "patch is correct"}


class TestExtractJson:
    """Tests for extract_json function."""

    def test_plain_json(self) -> None:
        """A bare JSON document parses directly."""
        assert extract_json('{"findings": [], "overall_correctness": "patch is correct"}') == PAYLOAD

    def test_fenced_block(self) -> None:
        """JSON inside a fenced block surrounded by prose is recovered."""
        text = (
            "Here is my review.\n\n"
            "```json\n"
            '{"findings": [], "overall_correctness": "patch is correct"}\n'
            "```\n\n"
            "Let me know if you need more."
        )
        assert extract_json(text) == PAYLOAD

    def test_brace_span(self) -> None:
        """Without a fence the outermost braces are tried."""
        text = 'Result: {"findings": [], "overall_correctness": "patch is correct"} -- end'
        assert extract_json(text) == PAYLOAD

    def test_invalid_fence_falls_back_to_braces(self) -> None:
        """A fenced block that is not JSON does not stop the brace fallback."""
        text = '```\nnot json\n```\n{"findings": [], "overall_correctness": "patch is correct"}'
        assert extract_json(text) == PAYLOAD

    def test_nothing_parsable(self) -> None:
        """Prose without JSON raises."""
        with pytest.raises(JsonExtractionError):
            extract_json("I could not review this change.")

    def test_empty_text(self) -> None:
        """Empty output raises."""
        with pytest.raises(JsonExtractionError):
            extract_json("   \n")


class TestExtractJsonFromFile:
    """Tests for extract_json_from_file function."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file is NOT_FOUND."""
        extraction = extract_json_from_file(tmp_path / "review-1.json")
        assert extraction.status is ExtractionStatus.NOT_FOUND
        assert not extraction.found

    def test_garbage_file(self, tmp_path: Path) -> None:
        """Unparsable output is UNPARSABLE."""
        path = tmp_path / "review-1.json"
        path.write_text("Sorry, something went wrong.")
        assert extract_json_from_file(path).status is ExtractionStatus.UNPARSABLE

    def test_found(self, tmp_path: Path) -> None:
        """Parsable output carries the payload."""
        path = tmp_path / "review-1.json"
        path.write_text('```json\n{"findings": [], "overall_correctness": "patch is correct"}\n```\n')

        extraction = extract_json_from_file(path)

        assert extraction.found
        assert extraction.payload == PAYLOAD
