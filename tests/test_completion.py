"""Tests for completion-service payload handling."""

import pytest

from switchboard_mcp.agents.completion import (
    AnthropicProvider,
    build_messages,
    create_completion_provider,
    parse_response,
)
from switchboard_mcp.agents.messages import TextBlock, ToolUseBlock, Turn
from switchboard_mcp.config import CompletionSettings
from switchboard_mcp.errors import CompletionServiceError


class TestBuildMessages:
    def test_text_turn_becomes_text_block(self):
        messages = build_messages([Turn.user_text("hello")])

        assert messages == [{"role": "user", "content": [{"type": "text", "text": "hello"}]}]

    def test_consecutive_tool_results_are_merged(self):
        transcript = [
            Turn.user_text("q"),
            Turn(
                role="assistant",
                content=[
                    ToolUseBlock(id="t1", name="a", input={}),
                    ToolUseBlock(id="t2", name="b", input={"x": 1}),
                ],
            ),
            Turn.tool_result("t1", "one"),
            Turn.tool_result("t2", "boom", is_error=True),
        ]

        messages = build_messages(transcript)

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "one", "is_error": False},
            {"type": "tool_result", "tool_use_id": "t2", "content": "boom", "is_error": True},
        ]
        assert messages[1]["content"][1] == {"type": "tool_use", "id": "t2", "name": "b", "input": {"x": 1}}

    def test_does_not_modify_transcript(self):
        transcript = [Turn.user_text("a"), Turn.user_text("b")]

        build_messages(transcript)

        assert [turn.content for turn in transcript] == ["a", "b"]


class TestParseResponse:
    def test_text_and_tool_use_blocks(self):
        response = parse_response(
            {
                "content": [
                    {"type": "text", "text": "Checking"},
                    {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": "x"}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 10, "output_tokens": 5},
            }
        )

        assert isinstance(response.content[0], TextBlock)
        assert response.tool_uses == [ToolUseBlock(id="t1", name="lookup", input={"q": "x"})]
        assert response.stop_reason == "tool_use"
        assert response.usage["output_tokens"] == 5

    def test_unknown_block_types_are_ignored(self):
        response = parse_response({"content": [{"type": "thinking", "thinking": "..."}, {"type": "text", "text": "hi"}]})

        assert response.content == [TextBlock(text="hi")]

    def test_malformed_block_raises(self):
        with pytest.raises(CompletionServiceError):
            parse_response({"content": [{"type": "tool_use", "name": "missing-id"}]})


class TestCreateCompletionProvider:
    def test_anthropic_provider(self):
        provider = create_completion_provider(
            CompletionSettings(api_key="sk-test", api_base="https://proxy.example.com/v1/")
        )

        assert isinstance(provider, AnthropicProvider)
        assert provider.api_key == "sk-test"
        assert provider.api_base == "https://proxy.example.com/v1"

    def test_missing_api_key(self):
        with pytest.raises(CompletionServiceError):
            create_completion_provider(CompletionSettings())
