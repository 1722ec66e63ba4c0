"""
Completion-service side of Switchboard MCP: transcript models, providers
and the tool-use loop.
"""

from .messages import CompletionResponse, TextBlock, ToolResultBlock, ToolUseBlock, Turn, render_tool_result
from .completion import AnthropicProvider, CompletionProvider, create_completion_provider
from .tool_loop import MAX_ITERATIONS, QueryContext, ToolLoop

__all__ = [
    "CompletionResponse",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "Turn",
    "render_tool_result",
    "AnthropicProvider",
    "CompletionProvider",
    "create_completion_provider",
    "MAX_ITERATIONS",
    "QueryContext",
    "ToolLoop",
]
