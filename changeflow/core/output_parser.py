"""Parse worker output and extract structured data.

Worker stdout is free text: a pre-work section, explanations, code blocks
and, somewhere near the end, a JSON object listing the artifacts produced.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import WorkerOutputParseError
from .worker import WorkerOutput

PRE_WORK_SECTIONS = ("pre_work", "pre_work_report", "prework")
COMPLETION_MARKERS = (
    r"\bphase\s+complete\b",
    r"\bwork\s+complete\b",
    r"\bdone\b",
    r"\bcompleted\b",
)
TEST_SUMMARY_PATTERN = r"\b\d+\s+(?:tests?\s+)?(?:passed|failed)\b|\btests?:\s*\d+"
FENCE_PATTERN = re.compile(r"^\s*```\s*([\w+-]*)\s*$")


class OutputParser:
    """Parse worker output and extract structured content."""

    @staticmethod
    def extract_json(output: str, strict: bool = True) -> Dict[str, Any]:
        """Extract the JSON object reported by a worker.

        The last fenced ``json`` block wins; without one, the widest
        ``{...}`` span is tried.

        Args:
            output: Raw worker output
            strict: If True, raise when no JSON object is found.
                   If False, return an empty dict instead.

        Returns:
            Parsed JSON object

        Raises:
            WorkerOutputParseError: If no JSON object can be parsed (strict only)
        """
        if not output or not output.strip():
            if strict:
                raise WorkerOutputParseError("Output is empty")
            return {}

        # 1. Fenced json (or untagged) blocks, last one first
        blocks = [body for lang, body in _fenced_blocks(output) if lang in ("", "json")]
        for block in reversed(blocks):
            try:
                parsed = json.loads(block)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

        # 2. Raw object
        obj_start = output.find("{")
        obj_end = output.rfind("}")
        if obj_start != -1 and obj_end > obj_start:
            try:
                parsed = json.loads(output[obj_start : obj_end + 1])
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                pass

        # 3. Last line that is a standalone object
        for line in reversed(output.splitlines()):
            stripped = line.strip()
            if stripped.startswith("{") and stripped.endswith("}"):
                try:
                    parsed = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    return parsed

        if strict:
            raise WorkerOutputParseError(
                f"No valid JSON found in output. Output preview: {output[:200]}..."
            )
        return {}

    @staticmethod
    def extract_code_blocks(output: str, language: Optional[str] = None) -> List[str]:
        """Extract fenced code blocks, optionally for one language."""
        return [
            body
            for lang, body in _fenced_blocks(output)
            if language is None or lang == language.lower()
        ]

    @staticmethod
    def normalize_heading(heading: str) -> str:
        """'Pre-work Report' -> 'pre_work_report'."""
        return re.sub(r"[^a-z0-9]+", "_", heading.strip().lower()).strip("_")

    @staticmethod
    def extract_sections(output: str) -> Dict[str, str]:
        """Split markdown text into sections keyed by normalized heading.

        Any heading level counts. Text before the first heading is stored
        under ``preamble``.
        """
        sections: Dict[str, str] = {}
        current_section = "preamble"
        current_content: List[str] = []

        for line in output.split("\n"):
            heading = re.match(r"^#{1,6}\s+(.+?)\s*#*\s*$", line)
            if heading:
                if current_content:
                    sections[current_section] = "\n".join(current_content).strip()
                current_section = OutputParser.normalize_heading(heading.group(1))
                current_content = []
            else:
                current_content.append(line)

        if current_content:
            sections[current_section] = "\n".join(current_content).strip()

        return sections

    @staticmethod
    def has_completion_marker(text: str) -> bool:
        lowered = text.lower()
        return any(re.search(p, lowered) for p in COMPLETION_MARKERS)

    @staticmethod
    def has_test_summary(text: str) -> bool:
        return re.search(TEST_SUMMARY_PATTERN, text.lower()) is not None

    @staticmethod
    def parse_worker_output(output: str) -> WorkerOutput:
        """Turn raw subprocess stdout into a ``WorkerOutput``.

        Raises:
            WorkerOutputParseError: If the trailing JSON object is missing or
                its ``artifacts`` field is not a list of strings
        """
        cleaned = OutputParser.sanitize_output(output, max_length=None)
        data = OutputParser.extract_json(cleaned, strict=True)

        artifacts = data.get("artifacts", [])
        if not isinstance(artifacts, list) or not all(isinstance(a, str) for a in artifacts):
            raise WorkerOutputParseError("'artifacts' must be a list of strings")

        sections = OutputParser.extract_sections(cleaned)
        pre_work = data.get("pre_work_report") or ""
        if not pre_work:
            for key in PRE_WORK_SECTIONS:
                if key in sections:
                    pre_work = sections[key]
                    break

        summary = data.get("summary") or sections.get("summary", "")

        return WorkerOutput(
            pre_work_report=pre_work,
            artifacts=artifacts,
            summary=str(summary),
            raw_output=cleaned,
        )

    @staticmethod
    def sanitize_output(output: str, max_length: Optional[int] = 10000) -> str:
        """Strip ANSI escapes and optionally truncate for display."""
        if not output:
            return ""

        ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
        cleaned = ansi_escape.sub("", output)

        if max_length is not None and len(cleaned) > max_length:
            cleaned = cleaned[:max_length] + f"\n... (truncated {len(cleaned) - max_length} characters)"

        return cleaned.strip()


def _fenced_blocks(output: str) -> List[Tuple[str, str]]:
    """Closed fenced blocks as (language, body) pairs, in order.

    Fences alternate open and close, so a closing fence is never mistaken
    for the start of the next block. An unclosed trailing block is dropped.
    """
    blocks: List[Tuple[str, str]] = []
    language: Optional[str] = None
    body: List[str] = []

    for line in output.splitlines():
        fence = FENCE_PATTERN.match(line)
        if language is None:
            if fence:
                language = fence.group(1).lower()
                body = []
        elif fence and not fence.group(1):
            blocks.append((language, "\n".join(body).strip()))
            language = None
        else:
            body.append(line)

    return blocks
