from typing import Optional

import structlog
from sqlalchemy.orm import Session

from signal_scan.config import (
    LlmSettings,
    llm_settings_from_env,
    normalize_model_name,
    resolve_temperature,
)
from signal_scan.database import crud, models

log = structlog.get_logger()


def merge_with_env_fallback(record: Optional[models.LlmConfig]) -> LlmSettings:
    """Stored global config wins field by field; NULL columns inherit the environment."""
    fallback = llm_settings_from_env()
    if record is None:
        return fallback

    model_fixed = normalize_model_name(record.model_fixed) or fallback.model_fixed
    temperature = resolve_temperature(record.temperature) if record.temperature is not None else fallback.temperature
    reasoning_effort = record.reasoning_effort if record.reasoning_effort is not None else fallback.reasoning_effort

    return LlmSettings(
        model_fixed=model_fixed,
        temperature=temperature,
        reasoning_effort=reasoning_effort,
        source="db",
    )


def get_llm_settings(db: Session) -> LlmSettings:
    settings = merge_with_env_fallback(crud.get_llm_config(db))
    log.debug("llm_settings_resolved", source=settings.source, model=settings.model_fixed)
    return settings
