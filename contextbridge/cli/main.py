"""
ContextBridge CLI - Run one query against a tool provider.

Spawns the provider script, gathers tool results and asks the reasoning
backend, printing the answer. Exit code 0 on success, 1 on any failure.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from contextbridge import __version__
from contextbridge.core.session import Session, SessionResult
from contextbridge.mcp.registry import DiscoveryError
from contextbridge.mcp.transport import SpawnError
from contextbridge.providers.base import ProviderFactory
from contextbridge.validation.config import Config, ConfigError, ServerConfig, ToolPlan

console = Console()
err_console = Console(stderr=True)

DEFAULT_QUERY = "What can you tell me about the weather in New York and what's 15 + 25?"

INTERPRETERS = {
    ".py": sys.executable,
    ".js": "node",
    ".mjs": "node",
    ".cjs": "node",
}


def setup_logging(verbose: bool) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose, rich_tracebacks=True)],
        force=True,
    )
    if not verbose:
        for noisy in ("httpx", "httpcore", "anthropic", "openai"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def build_server_config(script: str, interpreter: Optional[str] = None) -> ServerConfig:
    """Work out how to launch ``script``."""
    path = Path(script).resolve()
    if interpreter is None:
        interpreter = INTERPRETERS.get(path.suffix.lower())
    if interpreter is None:
        return ServerConfig(command=str(path))
    return ServerConfig(command=interpreter, args=[str(path)])


def parse_call(value: str) -> ToolPlan:
    """Parse ``TOOL=JSON`` (or bare ``TOOL``) into a plan entry."""
    name, sep, raw_args = value.partition("=")
    name = name.strip()
    if not name:
        raise click.BadParameter(f"missing tool name in {value!r}")
    if not sep:
        return ToolPlan(tool=name)
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"arguments for {name} are not valid JSON: {e}")
    if not isinstance(arguments, dict):
        raise click.BadParameter(f"arguments for {name} must be a JSON object")
    return ToolPlan(tool=name, arguments=arguments)


def _load_config(config_path: Optional[str]) -> Config:
    try:
        return Config.load(Path(config_path) if config_path else None)
    except ConfigError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def _print_result(result: SessionResult) -> None:
    if result.outcomes:
        table = Table(title="Tool calls", show_lines=False)
        table.add_column("Tool", style="cyan")
        table.add_column("Arguments")
        table.add_column("Outcome")
        for plan, outcome in result.outcomes:
            status = "[green]ok[/green]" if outcome.ok else f"[yellow]{escape(outcome.message)}[/yellow]"
            table.add_row(escape(plan.tool), escape(json.dumps(plan.arguments, default=str)), status)
        console.print(table)

    if result.ok:
        console.print(Panel(
            escape(result.response.content.strip()),
            title=f"{result.response.provider} · {result.response.model}",
            border_style="green",
        ))
    else:
        console.print(Panel(escape(result.error_label), title="Failed", border_style="red"))


@click.group()
@click.version_option(__version__, prog_name="contextbridge")
def cli() -> None:
    """
    ContextBridge - fold MCP tool results into an LLM prompt.

    \b
    Examples:
        contextbridge query server.py "What's 15 + 25?"
        contextbridge query server.js --call get-weather='{"location": "Paris"}'
        contextbridge tools server.py
    """


@cli.command()
@click.argument("server_script", type=click.Path(exists=True, dir_okay=False))
@click.argument("query", required=False, default=DEFAULT_QUERY)
@click.option("--model", "-m", help="Model, e.g. claude-3-haiku-20240307 or openai/gpt-4o")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Extra config file")
@click.option("--call", "calls", multiple=True, help="Tool to invoke as TOOL=JSON; replaces the configured plan")
@click.option("--timeout", type=float, help="Per-invocation timeout in seconds")
@click.option("--concurrent/--sequential", default=None, help="Dispatch tool calls concurrently")
@click.option("--interpreter", help="Program used to run SERVER_SCRIPT")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def query(
    server_script: str,
    query: str,
    model: Optional[str],
    config_path: Optional[str],
    calls: Tuple[str, ...],
    timeout: Optional[float],
    concurrent: Optional[bool],
    interpreter: Optional[str],
    verbose: bool,
) -> None:
    """Run QUERY against the tools offered by SERVER_SCRIPT."""
    setup_logging(verbose)
    config = _load_config(config_path)
    config.override("agent", model=model)
    config.override("session", invocation_timeout=timeout, concurrent=concurrent)
    if calls:
        config.set_plan([plan.model_dump() for plan in (parse_call(c) for c in calls)])

    try:
        settings = config.merged
        provider = ProviderFactory.create(settings.agent.model, config)
        provider.require_credentials()
    except ConfigError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    server = build_server_config(server_script, interpreter)
    console.print(f"[dim]Server:[/dim] {escape(' '.join([server.command] + server.args))}")
    console.print(f"[dim]Query:[/dim] {escape(query)}")

    session = Session(server, provider, settings.session)
    with console.status("[bold blue]Working...[/bold blue]"):
        result = asyncio.run(session.run(query, settings.plan))

    _print_result(result)
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.argument("server_script", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Extra config file")
@click.option("--interpreter", help="Program used to run SERVER_SCRIPT")
@click.option("--schema", is_flag=True, help="Show parameters for every tool")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def tools(
    server_script: str,
    config_path: Optional[str],
    interpreter: Optional[str],
    schema: bool,
    verbose: bool,
) -> None:
    """List the tools SERVER_SCRIPT offers."""
    setup_logging(verbose)
    config = _load_config(config_path)
    try:
        settings = config.merged.session
    except ConfigError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    session = Session(build_server_config(server_script, interpreter), settings=settings)

    async def _discover() -> List[str]:
        async with session:
            if schema:
                return [tool.full_schema_text() for tool in session.registry.list_tools()]
            return [session.registry.build_prompt_fragment()]

    try:
        lines = asyncio.run(_discover())
    except (SpawnError, DiscoveryError) as e:
        console.print(Panel(escape(f"{type(e).__name__}: {e}"), title="Failed", border_style="red"))
        sys.exit(1)

    output = "\n\n".join(line for line in lines if line)
    if output:
        console.print(output, markup=False)
    else:
        console.print("[dim]Provider offers no tools.[/dim]")


@cli.command("demo-server")
def demo_server() -> None:
    """Run the bundled demo tool provider on stdio."""
    from contextbridge.demo.server import main as serve_demo

    serve_demo()


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
