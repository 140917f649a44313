import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError
from typing_extensions import TypedDict

from signal_scan.config import LlmSettings

from .compat import ModelConfig, resolve_model_config
from .llm import LlmRequest, LlmTransport, invoke_with_fallbacks, select_transport
from .parsing import parse_llm_output
from .prompting import interpolate_prompt, sanitize_inputs
from .schemas import ScanInputs, ScanOutput
from .security import sanitize_for_logging

log = structlog.get_logger()

INVALID_INPUT_ERROR = "Invalid scan agent input."
PARSE_ERROR = "Failed to parse LLM output"
SCHEMA_ERROR = "LLM output did not match schema."
UNKNOWN_ERROR = "Unknown error"


class Stage(str, Enum):
    VALIDATE_INPUT = "validate_input"
    SELECT_MODEL = "select_model"
    INTERPOLATE = "interpolate"
    INVOKE_LLM = "invoke_llm"
    PARSE_OUTPUT = "parse_output"
    VALIDATE_OUTPUT = "validate_output"
    ERROR = "error"
    DONE = "done"


class AgentRunState(TypedDict):
    system_prompt: str
    user_prompt: str
    form_inputs: Dict[str, Any]
    sanitized_inputs: Dict[str, str]
    llm_settings: Optional[LlmSettings]
    model_config: Optional[ModelConfig]
    transport: Optional[LlmTransport]
    rendered_prompt: Optional[str]
    raw_output: Optional[str]
    parsed_output: Any
    output: Optional[Dict[str, Any]]
    token_usage: Optional[Dict[str, Optional[int]]]
    stage: str
    error: Optional[str]
    model_name: Optional[str]
    temperature: Optional[float]


@dataclass
class ScanAgentResult:
    output: Optional[Dict[str, Any]]
    raw_output: Optional[str]
    token_usage: Optional[Dict[str, Optional[int]]]
    error: Optional[str]
    stage: str
    model_name: Optional[str]
    temperature: Optional[float]

    @property
    def ok(self) -> bool:
        return self.error is None and self.output is not None


def _fail(state: AgentRunState, stage: Stage, error: str) -> AgentRunState:
    state["stage"] = stage.value
    state["error"] = error
    return state


# --- Stages ---

def validate_input(state: AgentRunState) -> AgentRunState:
    state["stage"] = Stage.VALIDATE_INPUT.value
    if not (state["system_prompt"] or "").strip() or not (state["user_prompt"] or "").strip():
        log.warning("scan_agent_input_rejected", reason="empty_prompt")
        return _fail(state, Stage.VALIDATE_INPUT, INVALID_INPUT_ERROR)
    try:
        validated = ScanInputs.model_validate(state["form_inputs"] or {})
    except ValidationError as exc:
        log.warning("scan_agent_input_rejected", reason="schema", fields=[".".join(map(str, e["loc"])) for e in exc.errors()])
        return _fail(state, Stage.VALIDATE_INPUT, INVALID_INPUT_ERROR)
    state["form_inputs"] = validated.model_dump()
    return state


def select_model(state: AgentRunState) -> AgentRunState:
    state["stage"] = Stage.SELECT_MODEL.value
    config = state["model_config"] or resolve_model_config(
        state["llm_settings"], state["system_prompt"], state["user_prompt"], state["form_inputs"]
    )
    state["model_config"] = config
    state["model_name"] = config.model_name
    state["temperature"] = config.temperature
    log.info("scan_agent_model_selected", **config.as_dict())
    return state


def interpolate(state: AgentRunState) -> AgentRunState:
    state["stage"] = Stage.INTERPOLATE.value
    state["sanitized_inputs"] = sanitize_inputs(state["form_inputs"])
    state["rendered_prompt"] = interpolate_prompt(state["user_prompt"], state["sanitized_inputs"])
    return state


async def invoke_llm(state: AgentRunState) -> AgentRunState:
    state["stage"] = Stage.INVOKE_LLM.value
    config = state["model_config"]
    transport = state["transport"] or select_transport(config.model_name)
    request = LlmRequest.from_config(config, state["system_prompt"], state["rendered_prompt"] or "")
    started = time.monotonic()
    try:
        response = await invoke_with_fallbacks(transport, request)
    except Exception as exc:  # noqa: BLE001
        log.error("scan_agent_llm_failed", model=config.model_name, error=sanitize_for_logging(str(exc)))
        return _fail(state, Stage.INVOKE_LLM, str(exc) or "LLM invocation failed")
    state["raw_output"] = response.text
    state["token_usage"] = response.usage
    if response.request is not None:
        state["temperature"] = response.request.temperature
    log.info(
        "scan_agent_llm_completed",
        model=config.model_name,
        api_style=transport.api_style,
        duration_ms=int((time.monotonic() - started) * 1000),
        chars=len(response.text or ""),
    )
    return state


def parse_output(state: AgentRunState) -> AgentRunState:
    state["stage"] = Stage.PARSE_OUTPUT.value
    try:
        state["parsed_output"] = parse_llm_output(state["raw_output"])
    except Exception as exc:  # noqa: BLE001
        log.error("scan_agent_parse_failed", error=str(exc))
        return _fail(state, Stage.PARSE_OUTPUT, PARSE_ERROR)
    return state


def validate_output(state: AgentRunState) -> AgentRunState:
    state["stage"] = Stage.VALIDATE_OUTPUT.value
    try:
        output = ScanOutput.model_validate(state["parsed_output"])
    except ValidationError as exc:
        log.warning(
            "scan_agent_output_rejected",
            errors=[".".join(map(str, e["loc"])) or e["type"] for e in exc.errors()],
            raw_preview=sanitize_for_logging(state["raw_output"] or "", max_length=200),
        )
        state["output"] = None
        return _fail(state, Stage.VALIDATE_OUTPUT, SCHEMA_ERROR)
    state["output"] = output.model_dump()
    return state


def error_terminal(state: AgentRunState) -> AgentRunState:
    if not state["error"]:
        state["error"] = UNKNOWN_ERROR
    if not state["stage"] or state["stage"] == Stage.DONE.value:
        state["stage"] = Stage.ERROR.value
    state["output"] = None
    return state


STAGES: List[Callable[[AgentRunState], Any]] = [
    validate_input,
    select_model,
    interpolate,
    invoke_llm,
    parse_output,
    validate_output,
]


def initial_state(
    system_prompt: str,
    user_prompt: str,
    form_inputs: Optional[Dict[str, Any]],
    llm_settings: Optional[LlmSettings] = None,
    transport: Optional[LlmTransport] = None,
    model_config: Optional[ModelConfig] = None,
) -> AgentRunState:
    return {
        "system_prompt": system_prompt or "",
        "user_prompt": user_prompt or "",
        "form_inputs": dict(form_inputs or {}),
        "sanitized_inputs": {},
        "llm_settings": llm_settings,
        "model_config": model_config,
        "transport": transport,
        "rendered_prompt": None,
        "raw_output": None,
        "parsed_output": None,
        "output": None,
        "token_usage": None,
        "stage": Stage.VALIDATE_INPUT.value,
        "error": None,
        "model_name": None,
        "temperature": None,
    }


async def run_scan_agent(
    system_prompt: str,
    user_prompt: str,
    form_inputs: Optional[Dict[str, Any]],
    llm_config: Optional[LlmSettings] = None,
    transport: Optional[LlmTransport] = None,
    model_config: Optional[ModelConfig] = None,
) -> ScanAgentResult:
    """Drive prompts and form inputs through the fixed stage list.

    Never raises for expected failures; the result carries either a
    schema-valid ``output`` or an ``error`` plus the stage that produced it.
    A pre-resolved ``model_config`` skips model selection from ``llm_config``.
    """
    state = initial_state(system_prompt, user_prompt, form_inputs, llm_config, transport, model_config)
    for stage in STAGES:
        result = stage(state)
        state = await result if hasattr(result, "__await__") else result
        if state["error"]:
            state = error_terminal(state)
            break
    else:
        state["stage"] = Stage.DONE.value

    return ScanAgentResult(
        output=state["output"],
        raw_output=state["raw_output"],
        token_usage=state["token_usage"],
        error=state["error"],
        stage=state["stage"],
        model_name=state["model_name"],
        temperature=state["temperature"],
    )
