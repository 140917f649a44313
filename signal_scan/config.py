import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

DEFAULT_MODEL = "gpt-5.2"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_TIMEOUT_MS = 60000
DEFAULT_SIZE_THRESHOLD_CHARS = 12000

REASONING_EFFORTS = {"low", "medium", "high"}
VERBOSITY_LEVELS = {"low", "medium", "high"}


class Settings(BaseModel):
    db_url: str = "sqlite:///db.sqlite"
    log_level: str = "INFO"
    llm_timeout_ms: int = DEFAULT_TIMEOUT_MS
    openai_api_key: Optional[str] = None
    resend_api_key: Optional[str] = None
    email_from: Optional[str] = None
    email_to_owners: List[str] = Field(default_factory=list)
    frontend_origin: str = "http://localhost:5173"


class LlmSettings(BaseModel):
    """Effective LLM configuration handed to the scan agent."""

    model_fixed: Optional[str] = None
    temperature: Optional[float] = None
    reasoning_effort: Optional[str] = None
    source: str = "env"


def parse_recipients(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        db_url=os.getenv("DB_URL", "sqlite:///db.sqlite"),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        llm_timeout_ms=_int_env("LLM_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        resend_api_key=os.getenv("RESEND_API_KEY"),
        email_from=os.getenv("EMAIL_FROM"),
        email_to_owners=parse_recipients(os.getenv("EMAIL_TO_OWNERS")),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:5173"),
    )


# --- LLM fallbacks ---

def normalize_model_name(value: Optional[str]) -> str:
    raw = str(value or "").strip()
    if raw.startswith("openai:"):
        return raw[len("openai:"):].strip()
    return raw


def normalize_reasoning_effort(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip().lower()
    if not raw or raw == "none":
        return None
    if raw == "xhigh":
        return "high"
    return raw if raw in REASONING_EFFORTS else None


def normalize_verbosity(value: Optional[str]) -> Optional[str]:
    raw = str(value or "").strip().lower()
    return raw if raw in VERBOSITY_LEVELS else None


def resolve_temperature(value: Optional[object]) -> float:
    """Parse a temperature; invalid or out-of-range values fall back to the default."""
    if value is None or value == "":
        return DEFAULT_TEMPERATURE
    try:
        temperature = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TEMPERATURE
    if temperature != temperature or temperature < 0 or temperature > 2:
        return DEFAULT_TEMPERATURE
    return temperature


def env_fixed_model() -> str:
    return normalize_model_name(os.getenv("LLM_MODEL_FIXED") or os.getenv("LLM_MODEL"))


def env_sized_models() -> tuple:
    return (
        normalize_model_name(os.getenv("LLM_MODEL_SMALL")),
        normalize_model_name(os.getenv("LLM_MODEL_LARGE")),
    )


def env_size_threshold() -> int:
    return _int_env("LLM_SIZE_THRESHOLD_CHARS", DEFAULT_SIZE_THRESHOLD_CHARS)


def env_verbosity() -> Optional[str]:
    return normalize_verbosity(os.getenv("LLM_VERBOSITY"))


def env_max_output_tokens() -> Optional[int]:
    value = _int_env("LLM_MAX_OUTPUT_TOKENS", 0)
    return value if value > 0 else None


def llm_settings_from_env() -> LlmSettings:
    return LlmSettings(
        model_fixed=env_fixed_model() or None,
        temperature=resolve_temperature(os.getenv("LLM_TEMPERATURE")),
        reasoning_effort=normalize_reasoning_effort(os.getenv("LLM_REASONING_EFFORT")),
        source="env",
    )
