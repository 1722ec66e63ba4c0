"""
Transcript and completion-service message models.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from mcp.types import CallToolResult
from pydantic import BaseModel, Field


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """A tool invocation requested by the completion service."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = None


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


class Turn(BaseModel):
    """One entry of a query transcript."""

    role: Literal["user", "assistant"]
    content: Union[str, List[ContentBlock]]

    @classmethod
    def user_text(cls, text: str) -> "Turn":
        return cls(role="user", content=text)

    @classmethod
    def tool_result(cls, tool_use_id: str, content: str, is_error: bool = False) -> "Turn":
        return cls(
            role="user",
            content=[ToolResultBlock(tool_use_id=tool_use_id, content=content, is_error=is_error)],
        )

    @property
    def is_tool_error(self) -> bool:
        return isinstance(self.content, list) and any(
            isinstance(block, ToolResultBlock) and block.is_error for block in self.content
        )


class CompletionResponse(BaseModel):
    """Response of one completion-service call."""

    content: List[Union[TextBlock, ToolUseBlock]] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


def render_tool_result(result: CallToolResult) -> str:
    """
    Flatten a tool result into text for the transcript.
    """
    structured = getattr(result, "structuredContent", None)
    if structured is not None and not result.content:
        return json.dumps(structured)

    parts = []
    for item in result.content:
        if getattr(item, "type", None) == "text":
            parts.append(item.text)
        else:
            parts.append(f"[Non-text content: {type(item).__name__}]")
    return "\n".join(parts)
