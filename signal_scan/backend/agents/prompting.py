import re
from typing import Any, Dict, Mapping, Optional

MAX_FIELD_CHARS = 10_000

FORM_TOKEN = re.compile(r"\{\{\s*\$form\.([a-zA-Z0-9_]+)\s*\}\}")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
WHITESPACE = re.compile(r"\s+")


def sanitize_field(value: Any, max_length: int = MAX_FIELD_CHARS) -> str:
    """Flatten a form value into a single safe line for prompt interpolation."""
    if value is None:
        return ""
    text = CONTROL_CHARS.sub("", str(value))
    text = WHITESPACE.sub(" ", text).strip()
    return text[:max_length]


def sanitize_inputs(form_inputs: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {key: sanitize_field(value) for key, value in (form_inputs or {}).items()}


def interpolate_prompt(template: str, inputs: Optional[Mapping[str, Any]]) -> str:
    """Replace ``{{ $form.<field> }}`` tokens; unknown fields become empty strings."""
    inputs = inputs or {}

    def _replace(match: "re.Match[str]") -> str:
        return sanitize_field(inputs.get(match.group(1)))

    return FORM_TOKEN.sub(_replace, template or "")
