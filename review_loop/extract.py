"""Recover a JSON document from free-form agent output."""

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*$")
_FENCE_CLOSE = "```"


class JsonExtractionError(ValueError):
    """Raised when no parsable JSON value can be found in agent output."""


class ExtractionStatus(StrEnum):
    """Outcome of reading JSON from an output file."""

    FOUND = "found"
    NOT_FOUND = "not-found"
    UNPARSABLE = "unparsable"


@dataclass(frozen=True)
class Extraction:
    """Result of ``extract_json_from_file``."""

    status: ExtractionStatus
    payload: Any = None

    @property
    def found(self) -> bool:
        """Whether a JSON value was recovered."""
        return self.status is ExtractionStatus.FOUND


def _fenced_block(text: str) -> str | None:
    """Return the body of the first fenced code block, if any."""
    body: list[str] = []
    inside = False
    for line in text.splitlines():
        stripped = line.strip()
        if not inside and _FENCE_OPEN.match(stripped):
            inside = True
            continue
        if inside:
            if stripped == _FENCE_CLOSE:
                return "\n".join(body)
            body.append(line)
    return None


def _brace_span(text: str) -> str | None:
    """Return the text from the first ``{`` to the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def extract_json(text: str) -> Any:
    """Extract a JSON value from agent output.

    Tries, in order: the whole text, the first fenced code block, and the
    span from the first ``{`` to the last ``}``.

    Args:
        text: Raw agent output

    Returns:
        The decoded JSON value

    Raises:
        JsonExtractionError: If none of the candidates parses

    """
    for candidate in (text, _fenced_block(text), _brace_span(text)):
        if candidate is None or not candidate.strip():
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    message = "No parsable JSON found in agent output"
    raise JsonExtractionError(message)


def extract_json_from_file(path: Path) -> Extraction:
    """Extract JSON from an agent output file.

    A missing file is reported as ``NOT_FOUND`` so callers can tell "the
    agent produced nothing" apart from "the agent produced garbage".

    Args:
        path: Output file to read

    Returns:
        Extraction result

    """
    if not path.is_file():
        return Extraction(ExtractionStatus.NOT_FOUND)

    try:
        payload = extract_json(path.read_text(encoding="utf-8", errors="replace"))
    except JsonExtractionError:
        return Extraction(ExtractionStatus.UNPARSABLE)
    return Extraction(ExtractionStatus.FOUND, payload)
