"""
Completion-service providers used by the tool loop.
"""

from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from switchboard_mcp.agents.messages import CompletionResponse, Turn
from switchboard_mcp.config import CompletionSettings
from switchboard_mcp.errors import CompletionServiceError
from switchboard_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class CompletionProvider:
    """Base class for completion providers."""

    async def complete(
        self,
        model: str,
        transcript: List[Turn],
        tools: List[Dict[str, Any]],
        max_tokens: int,
        system: Optional[str] = None,
    ) -> CompletionResponse:
        """
        Ask the completion service for the next assistant turn.

        Args:
            model: Model identifier.
            transcript: Conversation so far, oldest first.
            tools: Sanitized tool declarations.
            max_tokens: Maximum tokens to generate.
            system: Optional system prompt.

        Returns:
            The parsed response.

        Raises:
            CompletionServiceError: If the call fails.
        """
        raise NotImplementedError("Subclasses must implement complete()")


def build_messages(transcript: List[Turn]) -> List[Dict[str, Any]]:
    """
    Convert transcript turns to API messages.

    Consecutive turns of the same role are merged into one message, so
    per-invocation tool result turns travel together after the assistant
    turn that requested them.
    """
    messages: List[Dict[str, Any]] = []
    for turn in transcript:
        if isinstance(turn.content, str):
            blocks = [{"type": "text", "text": turn.content}]
        else:
            blocks = [block.model_dump(exclude_none=True) for block in turn.content]

        if messages and messages[-1]["role"] == turn.role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": turn.role, "content": blocks})
    return messages


def parse_response(payload: Dict[str, Any]) -> CompletionResponse:
    """
    Parse a messages API payload, ignoring block types the loop does not use.
    """
    blocks = [
        block
        for block in payload.get("content") or []
        if isinstance(block, dict) and block.get("type") in ("text", "tool_use")
    ]
    try:
        return CompletionResponse(
            content=blocks,
            stop_reason=payload.get("stop_reason"),
            usage=payload.get("usage") or {},
        )
    except ValidationError as e:
        raise CompletionServiceError(f"Unexpected completion response format: {e}") from e


class AnthropicProvider(CompletionProvider):
    """Anthropic messages API provider."""

    def __init__(self, api_key: str, api_base: Optional[str] = None):
        self.api_key = api_key
        self.api_base = (api_base or "https://api.anthropic.com/v1").rstrip("/")

    async def complete(
        self,
        model: str,
        transcript: List[Turn],
        tools: List[Dict[str, Any]],
        max_tokens: int,
        system: Optional[str] = None,
    ) -> CompletionResponse:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
        }

        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": build_messages(transcript),
        }
        if tools:
            payload["tools"] = tools
        if system:
            payload["system"] = system

        logger.debug(
            "Calling completion service",
            data={"model": model, "turns": len(transcript), "tools": len(tools)},
        )

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.api_base}/messages",
                    headers=headers,
                    json=payload,
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise CompletionServiceError(
                            f"Anthropic API error: {response.status} - {error_text}"
                        )
                    result = await response.json()
        except aiohttp.ClientError as e:
            raise CompletionServiceError(f"Anthropic API request failed: {e}") from e

        return parse_response(result)


def create_completion_provider(settings: CompletionSettings) -> CompletionProvider:
    """
    Create a completion provider from settings.

    Raises:
        CompletionServiceError: If no API key is configured.
        ValueError: If the provider is not supported.
    """
    if settings.provider != "anthropic":
        raise ValueError(f"Unsupported completion provider: {settings.provider}")
    if not settings.api_key:
        raise CompletionServiceError("Completion service API key not configured")
    return AnthropicProvider(api_key=settings.api_key, api_base=settings.api_base)
