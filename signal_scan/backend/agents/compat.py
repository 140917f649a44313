"""Model compatibility policy and effective LLM configuration.

Everything here is pure apart from environment fallbacks read through
``signal_scan.config``; no network calls.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from signal_scan.config import (
    DEFAULT_MODEL,
    LlmSettings,
    env_fixed_model,
    env_max_output_tokens,
    env_size_threshold,
    env_sized_models,
    env_verbosity,
    llm_settings_from_env,
    normalize_model_name,
    normalize_reasoning_effort,
    resolve_temperature,
)

log = structlog.get_logger()

SAFE_FALLBACK_MODEL = DEFAULT_MODEL

API_STYLE_CHAT = "chat"
API_STYLE_RESPONSES = "responses"

TEMPERATURE_ALWAYS = "always"
TEMPERATURE_WITHOUT_REASONING = "without_reasoning"
TEMPERATURE_NEVER = "never"


@dataclass(frozen=True)
class ModelRule:
    pattern: str
    api_style: str = API_STYLE_CHAT
    temperature: str = TEMPERATURE_ALWAYS
    reasoning: bool = False
    verbosity: bool = False
    disabled: bool = False


# First match wins. Patterns are matched against the lower-cased model name.
MODEL_RULES: Tuple[ModelRule, ...] = (
    ModelRule(r"(^|[-_.])pro($|[-_.])", disabled=True),
    ModelRule(r"codex", disabled=True),
    ModelRule(r"^gpt-5\.\d", API_STYLE_RESPONSES, TEMPERATURE_WITHOUT_REASONING, reasoning=True, verbosity=True),
    ModelRule(r"^gpt-5", API_STYLE_RESPONSES, TEMPERATURE_NEVER, reasoning=True, verbosity=True),
    ModelRule(r"^o\d", API_STYLE_RESPONSES, TEMPERATURE_NEVER, reasoning=True),
)
DEFAULT_RULE = ModelRule(r".*")


@dataclass(frozen=True)
class ModelConfig:
    model_name: str
    api_style: str
    temperature: Optional[float]
    reasoning_effort: Optional[str]
    verbosity: Optional[str]
    max_output_tokens: Optional[int]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "api_style": self.api_style,
            "temperature": self.temperature,
            "reasoning_effort": self.reasoning_effort,
            "verbosity": self.verbosity,
            "max_output_tokens": self.max_output_tokens,
        }


def lookup_rule(model_name: str) -> ModelRule:
    name = normalize_model_name(model_name).lower()
    for rule in MODEL_RULES:
        if re.search(rule.pattern, name):
            return rule
    return DEFAULT_RULE


def classify_api_style(model_name: str) -> str:
    return lookup_rule(model_name).api_style


def is_model_disabled(model_name: str) -> bool:
    return lookup_rule(model_name).disabled


def supports_temperature(model_name: str, reasoning_effort: Optional[str] = None) -> bool:
    policy = lookup_rule(model_name).temperature
    if policy == TEMPERATURE_NEVER:
        return False
    if policy == TEMPERATURE_WITHOUT_REASONING:
        return not reasoning_effort
    return True


def prompt_size(system_prompt: str, user_prompt: str, form_inputs: Optional[Mapping[str, Any]]) -> int:
    size = len(system_prompt or "") + len(user_prompt or "")
    for value in (form_inputs or {}).values():
        if value is not None:
            size += len(str(value))
    return size


def choose_model_name(
    settings: LlmSettings,
    system_prompt: str,
    user_prompt: str,
    form_inputs: Optional[Mapping[str, Any]],
) -> str:
    """Fixed model from settings or env, else the size heuristic, else the default."""
    fixed = normalize_model_name(settings.model_fixed) or env_fixed_model()
    if fixed:
        return fixed

    small, large = env_sized_models()
    if small or large:
        size = prompt_size(system_prompt, user_prompt, form_inputs)
        threshold = env_size_threshold()
        picked = large if size > threshold and large else (small or large)
        log.info("llm_model_sized", size=size, threshold=threshold, model=picked)
        return picked

    return DEFAULT_MODEL


def resolve_model_config(
    settings: Optional[LlmSettings],
    system_prompt: str = "",
    user_prompt: str = "",
    form_inputs: Optional[Mapping[str, Any]] = None,
) -> ModelConfig:
    settings = settings or llm_settings_from_env()
    requested = choose_model_name(settings, system_prompt, user_prompt, form_inputs)

    model_name = requested
    if is_model_disabled(requested):
        log.warning("llm_model_downgraded", requested=requested, model=SAFE_FALLBACK_MODEL)
        model_name = SAFE_FALLBACK_MODEL

    rule = lookup_rule(model_name)
    reasoning_effort = normalize_reasoning_effort(settings.reasoning_effort) if rule.reasoning else None

    temperature: Optional[float] = resolve_temperature(settings.temperature)
    if not supports_temperature(model_name, reasoning_effort):
        temperature = None

    verbosity = env_verbosity() if rule.verbosity else None

    return ModelConfig(
        model_name=model_name,
        api_style=rule.api_style,
        temperature=temperature,
        reasoning_effort=reasoning_effort,
        verbosity=verbosity,
        max_output_tokens=env_max_output_tokens(),
    )
