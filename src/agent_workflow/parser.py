from __future__ import annotations

import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import OutputParseError
from .models import ImplementationSummary, Plan, PRSplitResult, RefactoringSummary

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_BLOCK_RE = re.compile(r"```json\s*\n(.*?)```", flags=re.DOTALL)
_REFUSAL_PATTERNS = ("i cannot", "i apologize", "i'm unable", "unfortunately,")
_PREVIEW_CHARS = 500


def truncate_output(output: str, max_len: int = _PREVIEW_CHARS) -> str:
    if not output:
        return "(empty output)"
    if len(output) <= max_len:
        return output
    return f"{output[:max_len]}...\n(truncated, showing first {max_len} chars)"


def is_text_only_response(output: str) -> bool:
    """Heuristic for agent replies that ignored the JSON contract.

    Refusal phrases always count. Otherwise any brace or bracket means the
    reply might still carry JSON.
    """
    lowered = output.lower()
    if any(pattern in lowered for pattern in _REFUSAL_PATTERNS):
        return True
    if "{" in output or "[" in output:
        return False
    has_headers = "#" in output
    has_sentences = "." in output and len(output) > 50
    return (has_headers or has_sentences) and output.count("\n") > 2


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


class OutputParser:
    """Turns raw agent output into validated phase models."""

    def extract_json(self, output: str) -> str:
        """Return the JSON document carried by ``output``.

        Accepts, in order: a CLI ``result`` envelope (its ``structured_output``
        or the JSON inside its ``result`` text), a bare JSON document, or the
        first valid fenced ```json block.
        """
        trimmed = output.strip()
        if is_text_only_response(trimmed):
            raise OutputParseError(
                "text-only response detected: agent returned text instead of the required JSON format.\n\n"
                f"Agent output preview:\n{truncate_output(output)}"
            )

        document = _loads(trimmed)
        if document is not None:
            if isinstance(document, dict) and document.get("type") == "result":
                structured = document.get("structured_output")
                if structured:
                    return json.dumps(structured)
                result_text = document.get("result")
                if isinstance(result_text, str) and result_text.strip():
                    return self.extract_json(result_text)
            return trimmed

        blocks = [block.strip() for block in _JSON_BLOCK_RE.findall(output)]
        if not blocks:
            raise OutputParseError(
                f"no JSON blocks found in output.\n\nAgent output preview:\n{truncate_output(output)}"
            )
        for block in blocks:
            if block and _loads(block) is not None:
                return block
        raise OutputParseError(f"no valid JSON found in output.\n\nAgent output preview:\n{truncate_output(output)}")

    def _parse(self, json_text: str, schema: type[ModelT], label: str) -> ModelT:
        try:
            parsed = schema.model_validate_json(json_text)
        except ValidationError as exc:
            raise OutputParseError(f"failed to parse {label}: {exc}") from exc
        if not getattr(parsed, "summary", "").strip():
            raise OutputParseError(f"failed to parse {label}: missing required field 'summary'")
        return parsed

    def parse_plan(self, json_text: str) -> Plan:
        return self._parse(json_text, Plan, "plan")

    def parse_implementation_summary(self, json_text: str) -> ImplementationSummary:
        return self._parse(json_text, ImplementationSummary, "implementation summary")

    def parse_refactoring_summary(self, json_text: str) -> RefactoringSummary:
        return self._parse(json_text, RefactoringSummary, "refactoring summary")

    def parse_pr_split_result(self, json_text: str) -> PRSplitResult:
        return self._parse(json_text, PRSplitResult, "PR split result")
