"""
Bounded tool-use loop between the completion service and one MCP server.
"""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from mcp.types import Tool

from switchboard_mcp.agents.completion import CompletionProvider
from switchboard_mcp.agents.messages import (
    CompletionResponse,
    TextBlock,
    ToolUseBlock,
    Turn,
    render_tool_result,
)
from switchboard_mcp.errors import SwitchboardError, ToolValidationError
from switchboard_mcp.mcp.schema import restore_argument_keys, tool_declarations
from switchboard_mcp.utils.logging import get_logger

if TYPE_CHECKING:
    from switchboard_mcp.mcp.server_connection import ServerConnection

logger = get_logger(__name__)

MAX_ITERATIONS = 5

UpdateCallback = Callable[[str], None]


@dataclass
class QueryContext:
    """State of one query. Not kept once the query is answered."""

    transcript: List[Turn]
    tools: List[Dict[str, Any]]
    schemas: Dict[str, Any]
    iteration: int = 0
    output: List[str] = field(default_factory=list)

    @property
    def result(self) -> str:
        return "\n".join(self.output)


class ToolLoop:
    """
    Alternate completion calls and tool invocations until the completion
    service stops asking for tools or the iteration ceiling is reached.

    Text is emitted to the update callback as soon as it arrives. A failed
    tool call becomes an error turn in the transcript and the loop goes on;
    a failed completion call ends the query.
    """

    def __init__(
        self,
        connection: "ServerConnection",
        provider: CompletionProvider,
        model: str,
        max_tokens: int = 1000,
        max_iterations: int = MAX_ITERATIONS,
        system_prompt: Optional[str] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.connection = connection
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt

    def initialize_context(self, query: str, tools: List[Tool]) -> QueryContext:
        return QueryContext(
            transcript=[Turn.user_text(query)],
            tools=tool_declarations(tools),
            schemas={tool.name: tool.inputSchema for tool in tools},
        )

    async def run(self, query: str, tools: List[Tool], on_update: Optional[UpdateCallback] = None) -> str:
        """
        Answer ``query`` and return the accumulated output.
        """
        context = await self.execute(query, tools, on_update)
        return context.result

    async def execute(
        self, query: str, tools: List[Tool], on_update: Optional[UpdateCallback] = None
    ) -> QueryContext:
        """
        Run the loop and return the finished query context.
        """
        context = self.initialize_context(query, tools)
        logger.info(
            f"Processing query with {len(context.tools)} tools",
            data={"server_name": self.connection.server_name, "max_iterations": self.max_iterations},
        )

        while True:
            context.iteration += 1
            try:
                response = await self.provider.complete(
                    model=self.model,
                    transcript=context.transcript,
                    tools=context.tools,
                    max_tokens=self.max_tokens,
                    system=self.system_prompt,
                )
            except Exception as e:
                logger.error(f"Completion call failed: {e}", exc_info=not isinstance(e, SwitchboardError))
                self._emit(context, f"[API Error: {e}]", on_update)
                break

            tool_uses = self._process_response(response, context, on_update)
            if not tool_uses:
                break

            logger.info(f"Iteration {context.iteration}: {len(tool_uses)} tool calls")
            for tool_use in tool_uses:
                await self._invoke_tool(tool_use, context, on_update)

            if context.iteration >= self.max_iterations:
                logger.warning(f"Hit maximum iterations ({self.max_iterations}) with tool calls pending")
                warning = "[Warning: Reached max iterations]"
                context.transcript.append(Turn(role="assistant", content=warning))
                self._emit(context, warning, on_update)
                break

        return context

    def _process_response(
        self,
        response: CompletionResponse,
        context: QueryContext,
        on_update: Optional[UpdateCallback],
    ) -> List[ToolUseBlock]:
        tool_uses = []
        for block in response.content:
            if isinstance(block, TextBlock):
                self._emit(context, block.text, on_update)
            elif isinstance(block, ToolUseBlock):
                tool_uses.append(block)

        if response.content:
            context.transcript.append(Turn(role="assistant", content=list(response.content)))
        return tool_uses

    async def _invoke_tool(
        self,
        tool_use: ToolUseBlock,
        context: QueryContext,
        on_update: Optional[UpdateCallback],
    ) -> None:
        self._emit(
            context,
            f"[Calling tool {tool_use.name} with args {json.dumps(tool_use.input, default=str)}]",
            on_update,
        )

        if not isinstance(tool_use.input, dict):
            error: SwitchboardError = ToolValidationError(
                f"Tool input must be an object, got {type(tool_use.input).__name__}"
            )
        else:
            arguments = restore_argument_keys(tool_use.input, context.schemas.get(tool_use.name))
            result = await self.connection.call_tool(tool_use.name, arguments)
            if result.ok:
                context.transcript.append(
                    Turn.tool_result(tool_use.id, render_tool_result(result.value))
                )
                return
            error = result.error

        logger.warning(f"Tool {tool_use.name} failed: {error}")
        self._emit(context, f"[Tool {tool_use.name} failed: {error}]", on_update)
        context.transcript.append(Turn.tool_result(tool_use.id, f"Error: {error}", is_error=True))

    @staticmethod
    def _emit(context: QueryContext, text: str, on_update: Optional[UpdateCallback]) -> None:
        if not text:
            return
        context.output.append(text)
        if on_update:
            on_update(text)
