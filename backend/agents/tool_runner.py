"""Tool-augmented LLM provider clients.

This module provides:
- ToolRunnerClient: the contract the execution engine depends on
- ProviderError / ToolExecutionError: provider failures carrying their
  classification
- classify_provider_error: the single place where provider exceptions and
  error messages are mapped to an ExecutionErrorKind
- LiteLLMToolRunner: completion through LiteLLM with locally registered tools
- MockToolRunner: scripted responses for tests and offline use
"""

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    Timeout,
)

from config import settings
from models.execution import ExecutionErrorKind

logger = structlog.get_logger()

ToolHandler = Callable[..., Any] | Callable[..., Awaitable[Any]]

_QUOTA_MARKERS = ("insufficient_quota", "exceeded your current quota", "quota exceeded")
_CREDENTIAL_MARKERS = ("invalid_api_key", "incorrect api key", "invalid api key", "401")
_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "too many requests", "429")


class ProviderError(Exception):
    """A classified failure from the LLM or tool provider.

    Attributes:
        kind: The classification used to mark the failed run unit
    """

    def __init__(self, kind: ExecutionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ToolExecutionError(ProviderError):
    """Raised when a requested tool is unknown or its handler fails."""

    def __init__(self, message: str) -> None:
        super().__init__(ExecutionErrorKind.TOOL_EXECUTION_FAILED, message)


def classify_provider_error(error: BaseException) -> ExecutionErrorKind:
    """Map a provider exception to an ExecutionErrorKind.

    Quota exhaustion is reported by providers as a rate-limit response, so
    it is checked before the rate-limit class.
    """
    if isinstance(error, ProviderError):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, Timeout)):
        return ExecutionErrorKind.TIMED_OUT

    message = str(error).lower()
    if any(marker in message for marker in _QUOTA_MARKERS):
        return ExecutionErrorKind.PROVIDER_QUOTA_EXCEEDED
    if isinstance(error, (AuthenticationError, PermissionDeniedError)) or any(
        marker in message for marker in _CREDENTIAL_MARKERS
    ):
        return ExecutionErrorKind.INVALID_CREDENTIAL
    if isinstance(error, RateLimitError) or any(
        marker in message for marker in _RATE_LIMIT_MARKERS
    ):
        return ExecutionErrorKind.RATE_LIMITED
    return ExecutionErrorKind.UNKNOWN_PROVIDER_ERROR


@dataclass
class ToolCallData:
    """A tool call requested by the model.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class CompletionResponse:
    """Structured response from one completion request.

    Attributes:
        content: The text content of the response
        tool_calls: Tool calls requested by the model, possibly empty
        model: Model that produced the response
        raw_response: The provider's original response object
    """

    content: str
    tool_calls: list[ToolCallData] = field(default_factory=list)
    model: str = ""
    raw_response: Any = field(default=None, repr=False)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@runtime_checkable
class ToolRunnerClient(Protocol):
    """LLM completion plus tool invocation, as used by the execution engine."""

    async def initialize(
        self,
        provider_key: str,
        tool_provider_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool: ...

    def is_initialized(self) -> bool: ...

    async def list_tools(self) -> list[dict[str, Any]]: ...

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResponse: ...

    async def run_tools(self, response: CompletionResponse) -> list[dict[str, Any]]: ...


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays,
    primitives, or partially valid strings).
    """
    if isinstance(raw_args, dict):
        return raw_args
    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    if raw_args is None:
        return {}
    return {"value": raw_args}


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """Format a tool result as a tool-role message."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that includes tool calls."""
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]
    return message


@dataclass
class _RegisteredTool:
    definition: dict[str, Any]
    handler: ToolHandler


class LiteLLMToolRunner:
    """ToolRunnerClient backed by LiteLLM with a local tool registry.

    Completions go to whichever provider LiteLLM resolves from the model
    name, authenticated with the key given to ``initialize``. Tools are
    Python callables registered with ``register_tool``; each handler receives
    the tool-call arguments as keyword arguments and may be sync or async.

    Attributes:
        metadata: Opaque metadata passed at initialization
    """

    def __init__(self, request_timeout_seconds: int | None = None) -> None:
        self._tools: dict[str, _RegisteredTool] = {}
        self._provider_key: str | None = None
        self._tool_provider_key: str | None = None
        self._initialized = False
        self.metadata: dict[str, Any] = {}
        self.request_timeout_seconds = (
            request_timeout_seconds
            if request_timeout_seconds is not None
            else settings.llm_request_timeout_seconds
        )

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
    ) -> None:
        """Register a tool the model may call."""
        self._tools[name] = _RegisteredTool(
            definition={
                "type": "function",
                "function": {
                    "name": name,
                    "description": description,
                    "parameters": parameters,
                },
            },
            handler=handler,
        )
        logger.debug("tool_registered", tool=name)

    async def initialize(
        self,
        provider_key: str,
        tool_provider_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Store credentials for subsequent calls.

        Returns False when no provider key is available; the tool provider
        key is required only when tools are registered.
        """
        if not provider_key:
            logger.warning("tool_runner_init_failed", reason="missing_provider_key")
            return False
        if self._tools and not tool_provider_key:
            logger.warning("tool_runner_init_failed", reason="missing_tool_provider_key")
            return False

        self._provider_key = provider_key
        self._tool_provider_key = tool_provider_key
        self.metadata = dict(metadata or {})
        self._initialized = True
        logger.info("tool_runner_initialized", tool_count=len(self._tools))
        return True

    def is_initialized(self) -> bool:
        return self._initialized

    async def list_tools(self) -> list[dict[str, Any]]:
        return [tool.definition for tool in self._tools.values()]

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResponse:
        """Request one completion.

        Raises:
            ProviderError: With the classified failure kind
        """
        if not self._initialized:
            raise ProviderError(
                ExecutionErrorKind.INVALID_CREDENTIAL, "Tool runner is not initialized"
            )

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "api_key": self._provider_key,
            "timeout": self.request_timeout_seconds,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            kind = classify_provider_error(e)
            logger.error(
                "completion_failed",
                model=model,
                error_type=type(e).__name__,
                error_kind=kind.value,
                error=str(e),
            )
            raise ProviderError(kind, str(e)) from e

        return self._parse_response(response, model)

    def _parse_response(self, response: ModelResponse, model: str) -> CompletionResponse:
        message = response.choices[0].message
        tool_calls = [
            ToolCallData(
                id=tc.id,
                name=tc.function.name,
                args=normalize_tool_args(tc.function.arguments),
            )
            for tc in (message.tool_calls or [])
        ]
        return CompletionResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            model=model,
            raw_response=response,
        )

    async def run_tools(self, response: CompletionResponse) -> list[dict[str, Any]]:
        """Execute every tool call in a completion.

        Returns:
            Tool-role messages, one per call, in call order

        Raises:
            ToolExecutionError: If a tool is unknown or its handler raises
        """
        results: list[dict[str, Any]] = []
        for call in response.tool_calls:
            tool = self._tools.get(call.name)
            if tool is None:
                raise ToolExecutionError(f"Unknown tool: {call.name}")
            try:
                outcome = tool.handler(**call.args)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception as e:
                logger.error("tool_execution_failed", tool=call.name, error=str(e))
                raise ToolExecutionError(f"Tool {call.name} failed: {e}") from e

            content = outcome if isinstance(outcome, str) else json.dumps(outcome, default=str)
            results.append(format_tool_result_for_llm(call.id, content))
            logger.info("tool_executed", tool=call.name, result_length=len(content))
        return results


class MockToolRunner:
    """ToolRunnerClient with predefined responses, for tests and offline use.

    ``responses`` are returned in order; an Exception in the list is raised
    instead of returned. When the list is exhausted the last user message is
    echoed back. ``tool_results`` maps tool names to their canned output.

    Usage:
        >>> runner = MockToolRunner(responses=[CompletionResponse(content="Hi")])
        >>> await runner.initialize("key", "tool-key")
        >>> response = await runner.complete(messages=[...], model="gpt-4o-mini")
    """

    def __init__(
        self,
        responses: list[CompletionResponse | Exception] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_results: dict[str, str] | None = None,
        initialize_result: bool = True,
    ) -> None:
        self.responses = list(responses) if responses else []
        self.tools = list(tools) if tools else []
        self.tool_results = dict(tool_results or {})
        self.initialize_result = initialize_result
        self.call_history: list[dict[str, Any]] = []
        self.tool_run_history: list[CompletionResponse] = []
        self._initialized = False
        self._response_index = 0

    async def initialize(
        self,
        provider_key: str,
        tool_provider_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        self._initialized = self.initialize_result
        return self.initialize_result

    def is_initialized(self) -> bool:
        return self._initialized

    async def list_tools(self) -> list[dict[str, Any]]:
        return list(self.tools)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResponse:
        self.call_history.append({
            "messages": [dict(m) for m in messages],
            "model": model,
            "tools": tools,
        })

        if self._response_index >= len(self.responses):
            last_user = next(
                (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
                "",
            )
            return CompletionResponse(content=f"Echo: {last_user}", model=model)

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, Exception):
            raise response

        logger.debug(
            "mock_completion",
            response_index=self._response_index - 1,
            content_preview=response.content[:50],
            tool_calls=len(response.tool_calls),
        )
        return response

    async def run_tools(self, response: CompletionResponse) -> list[dict[str, Any]]:
        self.tool_run_history.append(response)
        results = []
        for call in response.tool_calls:
            if call.name not in self.tool_results:
                raise ToolExecutionError(f"Unknown tool: {call.name}")
            results.append(format_tool_result_for_llm(call.id, self.tool_results[call.name]))
        return results

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
        self.tool_run_history.clear()
