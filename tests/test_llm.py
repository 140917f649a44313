import asyncio

import pytest
from langchain_core.messages import AIMessage

from signal_scan.backend.agents.llm import (
    ChatCompletionTransport,
    LlmRequest,
    LlmResponse,
    LlmTransport,
    ResponsesTransport,
    downgrade_request,
    extract_usage,
    invoke_with_fallbacks,
    message_text,
    rejects_response_format,
    rejects_temperature,
    select_transport,
)


class ProviderError(Exception):
    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.status_code = status_code


class ScriptedTransport(LlmTransport):
    """Raises the queued errors in order, then answers."""

    api_style = "chat"

    def __init__(self, errors=None, text='{"ok": true}'):
        self.errors = list(errors or [])
        self.text = text
        self.requests = []

    async def invoke(self, request):
        self.requests.append(request)
        if self.errors:
            raise self.errors.pop(0)
        return LlmResponse(text=self.text, usage={"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3})


TEMPERATURE_ERROR = ProviderError(
    "Error code: 400 - Unsupported value: 'temperature' does not support 0.2 with this model. "
    "Only the default (1) value is supported."
)
FORMAT_ERROR = ProviderError("Error code: 400 - Invalid parameter: 'response_format' of type 'json_object' is not supported with this model.")


def _request(**overrides):
    params = {"model": "gpt-4o", "system_prompt": "sys", "user_prompt": "user", "temperature": 0.2}
    params.update(overrides)
    return LlmRequest(**params)


def test_error_classifiers():
    assert rejects_temperature(TEMPERATURE_ERROR)
    assert not rejects_temperature(FORMAT_ERROR)
    assert rejects_response_format(FORMAT_ERROR)
    assert not rejects_response_format(TEMPERATURE_ERROR)


def test_retry_without_temperature_keeps_other_settings():
    transport = ScriptedTransport(errors=[TEMPERATURE_ERROR])
    response = asyncio.run(invoke_with_fallbacks(transport, _request(max_output_tokens=500)))

    assert response.text == '{"ok": true}'
    assert len(transport.requests) == 2
    retry = transport.requests[1]
    assert retry.temperature is None
    assert retry.json_mode is True
    assert retry.max_output_tokens == 500
    assert response.request == retry


def test_retry_without_response_format():
    transport = ScriptedTransport(errors=[FORMAT_ERROR])
    asyncio.run(invoke_with_fallbacks(transport, _request()))

    assert [r.json_mode for r in transport.requests] == [True, False]
    assert transport.requests[1].temperature == 0.2


def test_both_rejections_end_at_plainest_shape():
    transport = ScriptedTransport(errors=[FORMAT_ERROR, TEMPERATURE_ERROR])
    asyncio.run(invoke_with_fallbacks(transport, _request()))

    assert len(transport.requests) == 3
    assert transport.requests[-1].is_plainest()


def test_unclassified_bad_request_falls_back_to_plainest():
    transport = ScriptedTransport(errors=[ProviderError("Error code: 400 - something odd")])
    asyncio.run(invoke_with_fallbacks(transport, _request()))

    assert len(transport.requests) == 2
    assert transport.requests[1].is_plainest()


def test_gives_up_when_plainest_request_fails():
    error = ProviderError("Error code: 400 - still broken")
    transport = ScriptedTransport(errors=[ProviderError("Error code: 400 - broken"), error])
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(invoke_with_fallbacks(transport, _request()))
    assert excinfo.value is error
    assert len(transport.requests) == 2


def test_non_parameter_errors_are_not_retried():
    transport = ScriptedTransport(errors=[ProviderError("Rate limit reached", status_code=429)])
    with pytest.raises(ProviderError):
        asyncio.run(invoke_with_fallbacks(transport, _request()))
    assert len(transport.requests) == 1


def test_downgrade_returns_none_when_nothing_left_to_strip():
    assert downgrade_request(_request(temperature=None, json_mode=False), TEMPERATURE_ERROR) is None


def test_select_transport_by_model_family():
    assert isinstance(select_transport("gpt-4o-mini"), ChatCompletionTransport)
    assert isinstance(select_transport("gpt-5.2"), ResponsesTransport)
    assert isinstance(select_transport("o3"), ResponsesTransport)


def test_responses_call_options():
    transport = ResponsesTransport()
    options = transport.call_options(_request(model="gpt-5.2", verbosity="low"))
    assert options == {"instructions": "sys", "text": {"format": {"type": "json_object"}, "verbosity": "low"}}

    plain = transport.call_options(_request(model="gpt-5.2", json_mode=False))
    assert plain == {"instructions": "sys"}


def test_transport_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ChatCompletionTransport().build_llm(_request())


def test_message_text_joins_content_blocks():
    message = AIMessage(content=[{"type": "text", "text": '{"a":'}, {"type": "text", "text": " 1}"}])
    assert message_text(message) == '{"a": 1}'
    assert message_text(AIMessage(content="plain")) == "plain"


def test_extract_usage_from_usage_metadata():
    message = AIMessage(
        content="x",
        usage_metadata={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
    )
    assert extract_usage(message) == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
    assert extract_usage(AIMessage(content="x")) is None
