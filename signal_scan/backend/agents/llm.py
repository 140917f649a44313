"""LLM transports for the scan agent.

Two request shapes are supported: chat completions (system + user
messages) and the Responses API (instructions + input). Both go through
``langchain_openai.ChatOpenAI``; which one a model gets is decided by
``compat.classify_api_style``.
"""
import os
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .compat import API_STYLE_RESPONSES, ModelConfig, classify_api_style
from .security import sanitize_for_logging

log = structlog.get_logger()

JSON_RESPONSE_FORMAT = {"type": "json_object"}


@dataclass(frozen=True)
class LlmRequest:
    model: str
    system_prompt: str
    user_prompt: str
    temperature: Optional[float] = None
    json_mode: bool = True
    reasoning_effort: Optional[str] = None
    verbosity: Optional[str] = None
    max_output_tokens: Optional[int] = None

    @classmethod
    def from_config(cls, config: ModelConfig, system_prompt: str, user_prompt: str) -> "LlmRequest":
        return cls(
            model=config.model_name,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=config.temperature,
            reasoning_effort=config.reasoning_effort,
            verbosity=config.verbosity,
            max_output_tokens=config.max_output_tokens,
        )

    def is_plainest(self) -> bool:
        return self.temperature is None and not self.json_mode


@dataclass
class LlmResponse:
    text: str
    usage: Optional[Dict[str, Optional[int]]] = None
    # the request that produced this response, after any downgrades
    request: Optional[LlmRequest] = None


class LlmTransport:
    """Strategy interface: one provider call, no retries."""

    api_style = ""

    async def invoke(self, request: LlmRequest) -> LlmResponse:
        raise NotImplementedError


def _api_key() -> str:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY not set")
    return api_key


def message_text(message: Any) -> str:
    """Flatten AIMessage content (string or list of content blocks) to text."""
    content = message.content if hasattr(message, "content") else message
    if isinstance(content, list):
        chunks: List[str] = []
        for part in content:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
        return "".join(chunks)
    return "" if content is None else str(content)


def extract_usage(message: Any) -> Optional[Dict[str, Optional[int]]]:
    usage = getattr(message, "usage_metadata", None)
    if usage:
        return {
            "prompt_tokens": usage.get("input_tokens"),
            "completion_tokens": usage.get("output_tokens"),
            "total_tokens": usage.get("total_tokens"),
        }
    metadata = getattr(message, "response_metadata", None) or {}
    token_usage = metadata.get("token_usage") or metadata.get("usage")
    if isinstance(token_usage, dict):
        return {
            "prompt_tokens": token_usage.get("prompt_tokens", token_usage.get("input_tokens")),
            "completion_tokens": token_usage.get("completion_tokens", token_usage.get("output_tokens")),
            "total_tokens": token_usage.get("total_tokens"),
        }
    return None


class ChatCompletionTransport(LlmTransport):
    api_style = "chat"

    def build_llm(self, request: LlmRequest) -> ChatOpenAI:
        kwargs: Dict[str, Any] = {"model": request.model, "api_key": _api_key()}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_output_tokens:
            kwargs["max_tokens"] = request.max_output_tokens
        if request.json_mode:
            kwargs["model_kwargs"] = {"response_format": JSON_RESPONSE_FORMAT}
        return ChatOpenAI(**kwargs)

    async def invoke(self, request: LlmRequest) -> LlmResponse:
        llm = self.build_llm(request)
        messages = [SystemMessage(content=request.system_prompt), HumanMessage(content=request.user_prompt)]
        resp = await llm.ainvoke(messages)
        return LlmResponse(text=message_text(resp), usage=extract_usage(resp))


class ResponsesTransport(LlmTransport):
    api_style = "responses"

    def build_llm(self, request: LlmRequest) -> ChatOpenAI:
        kwargs: Dict[str, Any] = {"model": request.model, "api_key": _api_key(), "use_responses_api": True}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_output_tokens:
            kwargs["max_tokens"] = request.max_output_tokens
        if request.reasoning_effort:
            kwargs["reasoning"] = {"effort": request.reasoning_effort}
        return ChatOpenAI(**kwargs)

    def call_options(self, request: LlmRequest) -> Dict[str, Any]:
        text: Dict[str, Any] = {}
        if request.json_mode:
            text["format"] = JSON_RESPONSE_FORMAT
        if request.verbosity:
            text["verbosity"] = request.verbosity
        options: Dict[str, Any] = {"instructions": request.system_prompt}
        if text:
            options["text"] = text
        return options

    async def invoke(self, request: LlmRequest) -> LlmResponse:
        llm = self.build_llm(request)
        resp = await llm.ainvoke([HumanMessage(content=request.user_prompt)], **self.call_options(request))
        return LlmResponse(text=message_text(resp), usage=extract_usage(resp))


def select_transport(model_name: str) -> LlmTransport:
    if classify_api_style(model_name) == API_STYLE_RESPONSES:
        return ResponsesTransport()
    return ChatCompletionTransport()


# --- Provider error classification ---

_REJECTION_WORDS = ("unsupported", "not supported", "does not support", "invalid", "not allowed", "only the default")


def _error_text(exc: BaseException) -> str:
    return str(exc).lower()


def rejects_temperature(exc: BaseException) -> bool:
    text = _error_text(exc)
    return "temperature" in text and any(word in text for word in _REJECTION_WORDS)


def rejects_response_format(exc: BaseException) -> bool:
    text = _error_text(exc)
    mentions = any(key in text for key in ("response_format", "text.format", "json_object", "json mode"))
    return mentions and any(word in text for word in _REJECTION_WORDS)


def is_bad_request(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None) or getattr(getattr(exc, "response", None), "status_code", None)
    return status == 400 or exc.__class__.__name__ == "BadRequestError"


def downgrade_request(request: LlmRequest, exc: BaseException) -> Optional[LlmRequest]:
    """Next, strictly plainer request to try after ``exc``, or None to give up."""
    if request.temperature is not None and rejects_temperature(exc):
        return replace(request, temperature=None)
    if request.json_mode and rejects_response_format(exc):
        return replace(request, json_mode=False)
    if not request.is_plainest() and is_bad_request(exc):
        return replace(request, temperature=None, json_mode=False)
    return None


async def invoke_with_fallbacks(transport: LlmTransport, request: LlmRequest) -> LlmResponse:
    """Call the provider, stripping rejected parameters one retry at a time.

    The returned response carries the request that was finally accepted.
    """
    while True:
        try:
            response = await transport.invoke(request)
        except Exception as exc:  # noqa: BLE001
            next_request = downgrade_request(request, exc)
            if next_request is None:
                raise
            log.warning(
                "llm_request_downgraded",
                model=request.model,
                api_style=transport.api_style,
                temperature_dropped=request.temperature is not None and next_request.temperature is None,
                json_mode_dropped=request.json_mode and not next_request.json_mode,
                error=sanitize_for_logging(str(exc), max_length=200),
            )
            request = next_request
            continue
        response.request = request
        return response
