"""Best-effort JSON extraction from free-form LLM text.

Each attempt takes the raw text and either returns the decoded value or
raises ``ValueError``; ``parse_llm_output`` walks them in order.
"""
import json
import re
from typing import Any, Callable, List

FENCED_BLOCK = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n?([\s\S]*?)```")


def parse_strict(text: str) -> Any:
    return json.loads(text.strip())


def parse_fenced_block(text: str) -> Any:
    for match in FENCED_BLOCK.finditer(text):
        body = match.group(1).strip()
        if not body:
            continue
        try:
            return json.loads(body)
        except ValueError:
            continue
    raise ValueError("No JSON code block found")


def parse_braced_span(text: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object span found")
    return json.loads(text[start:end + 1])


PARSE_ATTEMPTS: List[Callable[[str], Any]] = [parse_strict, parse_fenced_block, parse_braced_span]


def parse_llm_output(value: Any) -> Any:
    """Return the first successful parse, or the input unchanged."""
    if not isinstance(value, str):
        return value
    for attempt in PARSE_ATTEMPTS:
        try:
            return attempt(value)
        except ValueError:
            continue
    return value
