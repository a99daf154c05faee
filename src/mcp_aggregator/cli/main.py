"""
Main CLI interface for MCP Aggregator.

Runs the aggregating gateway and offers one-shot commands to inspect the
aggregated tool set, call a tool and show downstream server status.
"""

import asyncio
import json
import signal
import sys
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from mcp_aggregator import __version__
from mcp_aggregator.cli.helpers import handle_errors
from mcp_aggregator.core.aggregator import Aggregator
from mcp_aggregator.server.sse import SseServer
from mcp_aggregator.server.stdio import StdioServer
from mcp_aggregator.utils.config import DEFAULT_CONFIG_FILES, AggregatorConfig, load_config
from mcp_aggregator.utils.logging import get_logger, setup_logging

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self, config: AggregatorConfig):
        self.config = config

    def create_aggregator(self, **overrides: Any) -> Aggregator:
        config = self.config.model_copy(update={k: v for k, v in overrides.items() if v is not None})
        return Aggregator(config)


async def _with_aggregator(aggregator: Aggregator, action: Callable[[Aggregator], Awaitable[Any]]) -> Any:
    """Build the registry once (no polling), run ``action`` and shut down."""
    await aggregator.start(poll=False)
    try:
        return await action(aggregator)
    finally:
        await aggregator.stop()


@click.group()
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug logging"
)
@click.option(
    "--config", "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Additional TOML configuration file"
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    help="Directory holding configuration.json and processes.json"
)
@click.version_option(version=__version__, prog_name="MCP Aggregator")
@click.pass_context
def cli(ctx: click.Context, debug: bool, config_file: Optional[str], data_dir: Optional[str]):
    """
    Aggregate running MCP tool servers behind one endpoint.

    Every tool of every running downstream server is exposed as
    SERVER/TOOL, and calls are routed to the owning server.
    """
    config_files = DEFAULT_CONFIG_FILES + [config_file] if config_file else None
    config = load_config(config_files, data_dir=data_dir, debug=True if debug else None)

    log_config = config.logging
    setup_logging(
        enabled=log_config.enabled,
        level="DEBUG" if config.debug else log_config.level,
        console_level="DEBUG" if config.debug else log_config.console_level,
        log_file=config.get_log_file(),
        format_type=log_config.format_type,
        enable_rich=log_config.enable_rich,
        max_bytes=log_config.max_bytes,
        backup_count=log_config.backup_count,
        suppress_http=log_config.suppress_http,
    )

    ctx.obj = CLIContext(config)


@cli.command()
@click.option(
    "--transport", "-t",
    type=click.Choice(["stdio", "sse"], case_sensitive=False),
    help="Exposed transport"
)
@click.option("--host", "-h", help="SSE server host")
@click.option("--port", "-p", type=int, help="SSE server port")
@click.option("--poll-interval", type=float, help="Seconds between topology checks")
@click.pass_obj
@handle_errors
def serve(
    context: CLIContext,
    transport: Optional[str],
    host: Optional[str],
    port: Optional[int],
    poll_interval: Optional[float],
):
    """Run the aggregator until interrupted."""
    aggregator = context.create_aggregator(
        transport=transport.lower() if transport else None,
        host=host,
        port=port,
        poll_interval=poll_interval,
    )
    config = aggregator.config

    async def run():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handling for {sig} not available")

        if config.transport == "sse":
            err_console.print(f"[blue]Starting {config.server_name} on http://{config.host}:{config.port}{config.sse_endpoint}[/blue]")
            await SseServer(aggregator).run_forever(stop_event)
            return

        err_console.print(f"[blue]Starting {config.server_name} on stdio[/blue]")
        serve_task = asyncio.create_task(StdioServer(aggregator).serve())
        stop_task = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        stop_task.cancel()
        if serve_task not in done:
            serve_task.cancel()
        try:
            await serve_task
        except asyncio.CancelledError:
            pass

    asyncio.run(run())
    err_console.print("[yellow]Aggregator stopped[/yellow]")


@cli.command()
@click.option(
    "--output-format", "-o",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format"
)
@click.pass_obj
@handle_errors
def tools(context: CLIContext, output_format: str):
    """List the aggregated tools of all running servers."""

    async def collect(aggregator: Aggregator):
        return aggregator.registry.live, aggregator.surface.tool_definitions()

    registry, definitions = asyncio.run(_with_aggregator(context.create_aggregator(), collect))

    if output_format == "json":
        console.print_json(json.dumps(definitions))
        return

    if not definitions:
        console.print("[yellow]No tools available[/yellow]")
        console.print("[dim]Start downstream servers and try again[/dim]")
        return

    table = Table(
        title=f"Aggregated Tools ({len(definitions)} from {len(registry.source_server_names)} server(s))",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan"
    )
    table.add_column("Tool", style="green")
    table.add_column("Parameters", style="blue")
    table.add_column("Description", style="dim", max_width=60)

    for definition in definitions:
        properties = definition["inputSchema"].get("properties")
        params = ", ".join(properties) if properties else ("any" if properties is None else "-")
        table.add_row(definition["name"], params, definition["description"])

    console.print(table)

    if registry.failed_servers:
        console.print(f"[yellow]Unreachable servers: {', '.join(sorted(registry.failed_servers))}[/yellow]")


@cli.command()
@click.argument("name")
@click.argument("data", required=False, default="{}")
@click.pass_obj
@handle_errors
def call(context: CLIContext, name: str, data: str):
    """
    Call tool NAME (SERVER/TOOL) with DATA.

    DATA starting with '{' is parsed as a JSON object; any other text is
    sent as {"query": DATA}.
    """

    async def invoke(aggregator: Aggregator):
        return await aggregator.router.call_json(name, data)

    outcome = asyncio.run(_with_aggregator(context.create_aggregator(), invoke))

    if outcome.success:
        console.print_json(json.dumps(outcome.result))
        return

    err_console.print(f"[red]{outcome.error.type}: {outcome.error.message}[/red]")
    available = outcome.error.details.get("available_tools")
    if available:
        err_console.print(f"[dim]Available tools: {', '.join(available)}[/dim]")
    sys.exit(1)


@cli.command()
@click.pass_obj
@handle_errors
def status(context: CLIContext):
    """Show downstream server status from the process directory."""
    aggregator = context.create_aggregator()
    servers = asyncio.run(aggregator.directory.list_servers())

    if not servers:
        console.print("[yellow]No downstream servers known[/yellow]")
        return

    table = Table(
        title=f"Downstream Servers ({len(servers)} total)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan"
    )
    table.add_column("Name", style="green")
    table.add_column("Status", style="white")
    table.add_column("PID", style="blue")
    table.add_column("Memory", style="dim")
    table.add_column("CPU", style="dim")
    table.add_column("Uptime", style="dim")

    for server in servers:
        table.add_row(
            server.name,
            "✅ Online" if server.is_online else "❌ Offline",
            str(server.pid) if server.pid else "-",
            server.memory or "-",
            server.cpu or "-",
            server.uptime or "-",
        )

    console.print(table)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
