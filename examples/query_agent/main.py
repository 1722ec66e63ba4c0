"""
Query agent example for Switchboard MCP.

Connects to every server in switchboard_mcp.config.yaml, prints the
connection table and answers a query, streaming output as it arrives.
Set ANTHROPIC_API_KEY in the environment or a .env file first.
"""

import asyncio
import os
import sys

from rich.console import Console
from rich.table import Table

from switchboard_mcp import SwitchboardApp

console = Console()


def print_snapshot(registry) -> None:
    table = Table(title="MCP servers")
    table.add_column("Name")
    table.add_column("Transport")
    table.add_column("URL")
    table.add_column("State")
    for info in registry.snapshot():
        table.add_row(info.name, info.config.transport, info.config.url, info.state.value)
    console.print(table)


async def main():
    """Run the query agent example."""
    config_path = os.path.join(os.path.dirname(__file__), "switchboard_mcp.config.yaml")
    query = " ".join(sys.argv[1:]) or "What tools do you have, and what can you do with them?"

    app = SwitchboardApp(
        name="query_agent",
        config_path=config_path,
        on_state_change=lambda name, state: console.print(f"[dim]{name} is now {state.value}[/dim]"),
    )

    async with app.run() as registry:
        await registry.connect_all()
        print_snapshot(registry)

        for server_tools in await registry.get_all_tools():
            console.print(f"{server_tools.server_name}: {len(server_tools.tools)} tools")

        try:
            await registry.process_query(query, on_update=lambda text: console.print(text, markup=False))
        except Exception as e:
            console.print(f"[red]Query failed:[/red] {e}")


if __name__ == "__main__":
    asyncio.run(main())
