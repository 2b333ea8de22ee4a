import asyncio
import logging
from types import SimpleNamespace

import httpx
import openai
import pytest

from nl2soql.pipeline.errors import ChatError, ModelUnavailableError
from nl2soql.pipeline.logging_config import LOG_FORMAT, get_logger, setup_logging
from nl2soql.pipeline.openai_client import (
    OpenAIChatProvider,
    ToolCall,
    chat_complete,
    reset_usage_log,
    to_chat_response,
    tool_result_message,
    usage_totals,
)


def _raw(content="", tool_calls=None, usage=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


class _Completions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def create(self, **params):
        self.calls.append(params)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(*outcomes):
    completions = _Completions(outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_tool_calls_are_parsed_into_canonical_form():
    fn = SimpleNamespace(name="validate_soql", arguments='{"soql": "SELECT Id FROM Account"}')
    bad = SimpleNamespace(name="ground_value", arguments="not json")
    raw = _raw(
        "  thinking  ",
        [SimpleNamespace(id="c1", function=fn), SimpleNamespace(id="c2", function=bad)],
    )

    response = to_chat_response(raw)

    assert response.content == "thinking"
    assert response.tool_calls[0] == ToolCall("c1", "validate_soql", {"soql": "SELECT Id FROM Account"})
    assert response.tool_calls[1].arguments == {}


def test_usage_is_accumulated():
    reset_usage_log()
    usage = SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)

    to_chat_response(_raw("a", usage=usage))
    to_chat_response(_raw("b", usage=usage))

    assert usage_totals() == {"prompt_tokens": 20, "completion_tokens": 10, "total_tokens": 30}


def test_provider_forwards_tools_and_token_limit():
    client, completions = _client(_raw("```sql\nSELECT Id FROM Lead\n```"))
    provider = OpenAIChatProvider("gpt-4o-mini", client=client)
    tools = [{"type": "function", "function": {"name": "validate_soql"}}]

    response = asyncio.run(provider.complete([{"role": "user", "content": "hi"}], tools=tools, max_tokens=50))

    assert response.content.startswith("```sql")
    assert completions.calls[0]["max_tokens"] == 50
    assert completions.calls[0]["tools"] == tools
    assert completions.calls[0]["model"] == "gpt-4o-mini"


def test_chat_complete_strips_fences():
    client, completions = _client(_raw("```sql\nSELECT Id FROM Lead\n```"))

    text = asyncio.run(chat_complete(OpenAIChatProvider(client=client), "system", "user", max_tokens=20))

    assert text == "SELECT Id FROM Lead"
    assert [m["role"] for m in completions.calls[0]["messages"]] == ["system", "user"]
    assert "tools" not in completions.calls[0]


def test_vendor_errors_become_chat_errors():
    error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    client, completions = _client(error)

    with pytest.raises(ChatError):
        asyncio.run(OpenAIChatProvider(client=client).complete([{"role": "user", "content": "hi"}]))

    assert len(completions.calls) == 3


def _bad_request(message):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return openai.BadRequestError(message, response=httpx.Response(400, request=request), body=None)


def test_parameter_quirks_are_learned_in_sequence():
    client, completions = _client(
        _bad_request("Unsupported parameter: 'max_tokens' is not supported with this model. Use 'max_completion_tokens' instead."),
        _bad_request("Unsupported value: 'temperature' does not support 0.0 with this model. Only the default (1) value is supported."),
        _raw("SELECT Id FROM Lead"),
    )
    provider = OpenAIChatProvider("o-series-mini", client=client)

    response = asyncio.run(provider.complete([{"role": "user", "content": "hi"}], max_tokens=40))
    asyncio.run(provider.complete([{"role": "user", "content": "again"}], max_tokens=40))

    assert response.content == "SELECT Id FROM Lead"
    assert len(completions.calls) == 4
    assert completions.calls[2]["max_completion_tokens"] == 40
    assert "max_tokens" not in completions.calls[2]
    assert "temperature" not in completions.calls[2]
    assert completions.calls[3]["max_completion_tokens"] == 40
    assert "temperature" not in completions.calls[3]


def test_other_bad_requests_are_not_retried():
    client, completions = _client(_bad_request("The model 'gpt-nope' does not exist"))

    with pytest.raises(ModelUnavailableError):
        asyncio.run(OpenAIChatProvider("gpt-nope", client=client).complete([{"role": "user", "content": "hi"}]))

    assert len(completions.calls) == 1


def test_known_models_start_with_their_parameters():
    client, completions = _client(_raw("ok"))

    asyncio.run(OpenAIChatProvider("gpt-5-nano", client=client).complete([{"role": "user", "content": "hi"}], max_tokens=30))

    assert completions.calls[0]["max_completion_tokens"] == 30
    assert "temperature" not in completions.calls[0]


def test_tool_result_message():
    message = tool_result_message(ToolCall("c9", "ground_value"), {"success": True})

    assert message == {"role": "tool", "tool_call_id": "c9", "content": '{"success": true}'}


def test_logging_helpers():
    setup_logging("debug")
    logger = get_logger("nl2soql.test", "warning")

    assert logger.level == logging.WARNING
    assert "%(levelname)s" in LOG_FORMAT
