"""Tests for agents/tool_runner.py -- provider clients and helpers.

Covers:
- classify_provider_error: exception / message to ExecutionErrorKind
- normalize_tool_args and the message format helpers
- LiteLLMToolRunner: initialization, completion parsing, local tool execution
- MockToolRunner: scripted responses and echo fallback
"""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agents.tool_runner import (
    CompletionResponse,
    LiteLLMToolRunner,
    MockToolRunner,
    ProviderError,
    ToolExecutionError,
    ToolRunnerClient,
    classify_provider_error,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    normalize_tool_args,
)
from models.execution import ExecutionErrorKind
from tests.conftest import make_completion, make_tool_call

WEATHER_PARAMS = {"type": "object", "properties": {"city": {"type": "string"}}}


def _model_response(content: str | None, tool_calls: list[Any] | None = None) -> MagicMock:
    """Build an object shaped like a LiteLLM ModelResponse."""
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


def _raw_tool_call(call_id: str, name: str, arguments: str) -> MagicMock:
    tool_call = MagicMock()
    tool_call.id = call_id
    tool_call.function.name = name
    tool_call.function.arguments = arguments
    return tool_call


# =========================================================================
# classify_provider_error
# =========================================================================


class TestClassifyProviderError:
    def test_provider_error_keeps_kind(self) -> None:
        error = ProviderError(ExecutionErrorKind.INVALID_CREDENTIAL, "nope")
        assert classify_provider_error(error) == ExecutionErrorKind.INVALID_CREDENTIAL

    def test_tool_execution_error(self) -> None:
        assert classify_provider_error(ToolExecutionError("boom")) == ExecutionErrorKind.TOOL_EXECUTION_FAILED

    def test_timeouts(self) -> None:
        assert classify_provider_error(TimeoutError()) == ExecutionErrorKind.TIMED_OUT
        assert classify_provider_error(asyncio.TimeoutError()) == ExecutionErrorKind.TIMED_OUT

    def test_quota_checked_before_rate_limit(self) -> None:
        error = Exception("Error code: 429 - You exceeded your current quota, insufficient_quota")
        assert classify_provider_error(error) == ExecutionErrorKind.PROVIDER_QUOTA_EXCEEDED

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Incorrect API key provided: sk-****", ExecutionErrorKind.INVALID_CREDENTIAL),
            ("Error code: 401 - unauthorized", ExecutionErrorKind.INVALID_CREDENTIAL),
            ("Rate limit reached for gpt-4o", ExecutionErrorKind.RATE_LIMITED),
            ("Too Many Requests", ExecutionErrorKind.RATE_LIMITED),
            ("Internal server error", ExecutionErrorKind.UNKNOWN_PROVIDER_ERROR),
        ],
    )
    def test_message_markers(self, message: str, expected: ExecutionErrorKind) -> None:
        assert classify_provider_error(Exception(message)) == expected


# =========================================================================
# Helpers
# =========================================================================


class TestNormalizeToolArgs:
    def test_dict_passthrough(self) -> None:
        args = {"city": "Lima"}
        assert normalize_tool_args(args) is args

    def test_json_object_string(self) -> None:
        assert normalize_tool_args('{"city": "Lima"}') == {"city": "Lima"}

    def test_json_non_object(self) -> None:
        assert normalize_tool_args("[1, 2]") == {"value": [1, 2]}

    def test_invalid_json(self) -> None:
        assert normalize_tool_args("{city: Lima") == {"raw": "{city: Lima"}

    def test_none(self) -> None:
        assert normalize_tool_args(None) == {}

    def test_primitive(self) -> None:
        assert normalize_tool_args(42) == {"value": 42}


class TestFormatHelpers:
    def test_tool_result(self) -> None:
        assert format_tool_result_for_llm("call_1", "sunny") == {
            "role": "tool",
            "tool_call_id": "call_1",
            "content": "sunny",
        }

    def test_assistant_message_with_tools(self) -> None:
        message = format_assistant_message_with_tools(
            "Looking it up", [make_tool_call("weather", {"city": "Lima"}, call_id="call_7")]
        )
        assert message["role"] == "assistant"
        assert message["content"] == "Looking it up"
        call = message["tool_calls"][0]
        assert call["id"] == "call_7"
        assert call["type"] == "function"
        assert call["function"]["name"] == "weather"
        assert json.loads(call["function"]["arguments"]) == {"city": "Lima"}

    def test_assistant_message_without_tools(self) -> None:
        assert format_assistant_message_with_tools("Done", []) == {
            "role": "assistant",
            "content": "Done",
        }

    def test_completion_has_tool_calls(self) -> None:
        assert not make_completion("plain").has_tool_calls
        assert make_completion(tool_calls=[make_tool_call("weather", {})]).has_tool_calls


# =========================================================================
# LiteLLMToolRunner
# =========================================================================


class TestLiteLLMInitialize:
    async def test_initialize(self) -> None:
        runner = LiteLLMToolRunner()
        assert await runner.initialize("sk-test", "", {"app": "workflow-builder"}) is True
        assert runner.is_initialized()
        assert runner.metadata == {"app": "workflow-builder"}

    async def test_missing_provider_key(self) -> None:
        runner = LiteLLMToolRunner()
        assert await runner.initialize("", "th-test") is False
        assert not runner.is_initialized()

    async def test_tools_require_tool_provider_key(self) -> None:
        runner = LiteLLMToolRunner()
        runner.register_tool("weather", "Current weather", WEATHER_PARAMS, lambda city: "sunny")
        assert await runner.initialize("sk-test", "") is False
        assert await runner.initialize("sk-test", "th-test") is True

    def test_satisfies_protocol(self) -> None:
        assert isinstance(LiteLLMToolRunner(), ToolRunnerClient)
        assert isinstance(MockToolRunner(), ToolRunnerClient)


class TestLiteLLMTools:
    async def test_list_tools(self) -> None:
        runner = LiteLLMToolRunner()
        runner.register_tool("weather", "Current weather", WEATHER_PARAMS, lambda city: "sunny")
        tools = await runner.list_tools()
        assert tools == [
            {
                "type": "function",
                "function": {
                    "name": "weather",
                    "description": "Current weather",
                    "parameters": WEATHER_PARAMS,
                },
            }
        ]

    async def test_run_sync_and_async_handlers(self) -> None:
        async def forecast(city: str, days: int) -> dict[str, Any]:
            return {"city": city, "days": days}

        runner = LiteLLMToolRunner()
        runner.register_tool("weather", "Current weather", WEATHER_PARAMS, lambda city: f"sunny in {city}")
        runner.register_tool("forecast", "Forecast", WEATHER_PARAMS, forecast)
        response = make_completion(
            tool_calls=[
                make_tool_call("weather", {"city": "Lima"}, call_id="call_1"),
                make_tool_call("forecast", {"city": "Lima", "days": 3}, call_id="call_2"),
            ]
        )

        results = await runner.run_tools(response)

        assert results[0] == format_tool_result_for_llm("call_1", "sunny in Lima")
        assert results[1]["tool_call_id"] == "call_2"
        assert json.loads(results[1]["content"]) == {"city": "Lima", "days": 3}

    async def test_unknown_tool(self) -> None:
        runner = LiteLLMToolRunner()
        with pytest.raises(ToolExecutionError, match="Unknown tool: ghost"):
            await runner.run_tools(make_completion(tool_calls=[make_tool_call("ghost", {})]))

    async def test_failing_handler(self) -> None:
        def broken(city: str) -> str:
            raise RuntimeError("service down")

        runner = LiteLLMToolRunner()
        runner.register_tool("weather", "Current weather", WEATHER_PARAMS, broken)
        with pytest.raises(ToolExecutionError, match="service down") as exc_info:
            await runner.run_tools(make_completion(tool_calls=[make_tool_call("weather", {"city": "Lima"})]))
        assert exc_info.value.kind == ExecutionErrorKind.TOOL_EXECUTION_FAILED


class TestLiteLLMComplete:
    async def test_not_initialized(self) -> None:
        runner = LiteLLMToolRunner()
        with pytest.raises(ProviderError) as exc_info:
            await runner.complete([{"role": "user", "content": "hi"}], "gpt-4o-mini")
        assert exc_info.value.kind == ExecutionErrorKind.INVALID_CREDENTIAL

    async def test_plain_completion(self) -> None:
        runner = LiteLLMToolRunner(request_timeout_seconds=30)
        await runner.initialize("sk-test", "")
        mock_acompletion = AsyncMock(return_value=_model_response("Hello there"))

        with patch("agents.tool_runner.acompletion", mock_acompletion):
            response = await runner.complete([{"role": "user", "content": "hi"}], "gpt-4o-mini")

        assert response.content == "Hello there"
        assert response.tool_calls == []
        assert response.model == "gpt-4o-mini"
        kwargs = mock_acompletion.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["timeout"] == 30
        assert "tools" not in kwargs

    async def test_tool_calls_parsed(self) -> None:
        runner = LiteLLMToolRunner()
        await runner.initialize("sk-test", "")
        raw = _model_response(
            None,
            tool_calls=[
                _raw_tool_call("call_1", "weather", '{"city": "Lima"}'),
                _raw_tool_call("call_2", "weather", "not json"),
            ],
        )
        tools = [{"type": "function", "function": {"name": "weather"}}]
        mock_acompletion = AsyncMock(return_value=raw)

        with patch("agents.tool_runner.acompletion", mock_acompletion):
            response = await runner.complete([], "gpt-4o", tools=tools)

        assert response.content == ""
        assert [(c.id, c.name, c.args) for c in response.tool_calls] == [
            ("call_1", "weather", {"city": "Lima"}),
            ("call_2", "weather", {"raw": "not json"}),
        ]
        assert mock_acompletion.await_args.kwargs["tools"] == tools
        assert mock_acompletion.await_args.kwargs["tool_choice"] == "auto"

    async def test_provider_failure_is_classified(self) -> None:
        runner = LiteLLMToolRunner()
        await runner.initialize("sk-test", "")
        mock_acompletion = AsyncMock(side_effect=Exception("Rate limit reached for requests"))

        with patch("agents.tool_runner.acompletion", mock_acompletion):
            with pytest.raises(ProviderError) as exc_info:
                await runner.complete([{"role": "user", "content": "hi"}], "gpt-4o-mini")

        assert exc_info.value.kind == ExecutionErrorKind.RATE_LIMITED


# =========================================================================
# MockToolRunner
# =========================================================================


class TestMockToolRunner:
    async def test_scripted_then_echo(self) -> None:
        runner = MockToolRunner(responses=[make_completion("scripted")])
        messages = [{"role": "user", "content": "ping"}]

        first = await runner.complete(messages, "gpt-4o-mini")
        second = await runner.complete(messages, "gpt-4o-mini")

        assert first.content == "scripted"
        assert second.content == "Echo: ping"
        assert len(runner.call_history) == 2

    async def test_exception_is_raised(self) -> None:
        runner = MockToolRunner(responses=[ValueError("scripted failure")])
        with pytest.raises(ValueError, match="scripted failure"):
            await runner.complete([], "gpt-4o-mini")

    async def test_tool_results(self) -> None:
        runner = MockToolRunner(tool_results={"weather": "sunny"})
        response = make_completion(tool_calls=[make_tool_call("weather", {})])
        assert await runner.run_tools(response) == [format_tool_result_for_llm("tc_1", "sunny")]
        assert runner.tool_run_history == [response]

    async def test_reset(self) -> None:
        runner = MockToolRunner(responses=[make_completion("again")])
        await runner.complete([], "gpt-4o-mini")
        runner.reset()
        assert runner.call_history == []
        assert (await runner.complete([], "gpt-4o-mini")).content == "again"

    async def test_initialize_result(self) -> None:
        runner = MockToolRunner(initialize_result=False)
        assert await runner.initialize("sk", "th") is False
        assert not runner.is_initialized()

    async def test_returns_response_object(self) -> None:
        response = CompletionResponse(content="typed", model="gpt-4o")
        runner = MockToolRunner(responses=[response])
        assert await runner.complete([], "gpt-4o") is response
