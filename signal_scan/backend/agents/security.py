"""Scrubbing for anything that leaves the process: failure messages and log previews."""
import json
import re
from typing import Any

MAX_ERROR_CHARS = 500
# regexes only ever see this multiple of the output length
SCAN_WINDOW_FACTOR = 4

# --- Error scrubbing ---

SECRET_PATTERNS = [
    # connection strings first, they can contain paths and keys
    (re.compile(r"\b(?:mongodb(?:\+srv)?|postgres(?:ql)?|mysql|redis|rediss|amqp|sqlite)(?:\+\w+)?://\S+", re.IGNORECASE), "[connection]"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{6,}"), "[key]"),
    (re.compile(r"\b(?:re|rk|pk)_[A-Za-z0-9_]{16,}"), "[key]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]{12,}"), "Bearer [key]"),
    (re.compile(r"(?:[A-Za-z]:)?(?:[\\/][\w.\-@]+){1,32}\.(?:py|pyc|js|ts|json|ya?ml|env|cfg|ini|txt|log|sqlite|db)\b"), "[file]"),
]


def scrub_secrets(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def scrub_error_message(error: Any, max_length: int = MAX_ERROR_CHARS) -> str:
    """Render an exception (or message) safe for storage in a failure record."""
    if error is None:
        return "An error occurred"
    message = str(error) or error.__class__.__name__
    return scrub_secrets(message[: max_length * SCAN_WINDOW_FACTOR])[:max_length]


# --- PII Redaction (Simple Pattern-Based) ---

PII_PATTERNS = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b",
    "phone": r"\b(\+\d{1,2}\s?)?(\d{3}[-.\s]??\d{3}[-.\s]??\d{4}|\(\d{3}\)\s*\d{3}[-.\s]??\d{4})\b",
}


def redact_pii_simple(text: str) -> str:
    redacted = text
    for pii_type, pattern in PII_PATTERNS.items():
        redacted = re.sub(pattern, f"[{pii_type.upper()}_REDACTED]", redacted, flags=re.IGNORECASE)
    return redacted


def sanitize_for_logging(data: Any, max_length: int = 500) -> str:
    """Sanitize data for safe logging (scrub secrets, redact PII, truncate)."""
    try:
        text = data if isinstance(data, str) else json.dumps(data)
    except (TypeError, ValueError):
        return "[UNSERIALIZABLE]"
    redacted = redact_pii_simple(scrub_secrets(text[: max_length * SCAN_WINDOW_FACTOR]))
    if len(redacted) > max_length:
        redacted = redacted[:max_length] + "... [truncated]"
    return redacted
