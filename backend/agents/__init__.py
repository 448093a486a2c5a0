"""Agent definitions and the provider clients that run them.

This module exports the key components needed for agent execution:
- AgentConfigService for parsing, validating and serializing YAML agents
- Prompt placeholder extraction and substitution helpers
- The ToolRunnerClient contract with LiteLLM-backed and mock implementations
"""

from agents.config_service import (
    AgentConfigService,
    ParseError,
    extract_prompt_variables,
    infer_type,
    stringify_value,
)
from agents.tool_runner import (
    CompletionResponse,
    LiteLLMToolRunner,
    MockToolRunner,
    ProviderError,
    ToolCallData,
    ToolExecutionError,
    ToolRunnerClient,
    classify_provider_error,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)

__all__ = [
    # Agent definitions
    "AgentConfigService",
    "ParseError",
    "extract_prompt_variables",
    "infer_type",
    "stringify_value",
    # Provider clients
    "CompletionResponse",
    "LiteLLMToolRunner",
    "MockToolRunner",
    "ProviderError",
    "ToolCallData",
    "ToolExecutionError",
    "ToolRunnerClient",
    "classify_provider_error",
    "format_assistant_message_with_tools",
    "format_tool_result_for_llm",
]
