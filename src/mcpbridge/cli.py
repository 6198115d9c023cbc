"""
Command line interface for managing and exercising MCP servers.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mcpbridge import __version__
from mcpbridge.core.app import MCPBridgeApp
from mcpbridge.logging_setup import setup_logging
from mcpbridge.mcp.errors import MCPError
from mcpbridge.mcp.templates import get_all_templates, get_template_by_id, validate_template_env_vars
from mcpbridge.mcp.tools import MCPToolManager

console = Console()
err_console = Console(stderr=True)


def _print_json(data: Any) -> None:
    # Plain print so the output stays machine-readable.
    print(json.dumps(data, indent=2, default=str))


async def cmd_list(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    configs = app.mcp.get_available_servers()
    if not configs:
        console.print(f"No MCP servers configured in {app.mcp.configs.config_dir}", markup=False)
        return 0

    table = Table(title="MCP servers")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Command")
    for config in configs:
        state = "[green]enabled[/green]" if config.enabled else "[dim]disabled[/dim]"
        table.add_row(escape(config.name), state, escape(" ".join([config.command, *config.args])))
    console.print(table)
    return 0


async def cmd_templates(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    table = Table(title="Server templates")
    table.add_column("Id", style="cyan")
    table.add_column("Category")
    table.add_column("Description")
    table.add_column("Missing env", style="yellow")
    for template in get_all_templates():
        env = validate_template_env_vars(template)
        table.add_row(template.id, template.category, template.description, ", ".join(env["missing"]))
    console.print(table)

    suggestions = app.mcp.discover_relevant_servers()
    if suggestions:
        console.print("\n[bold]Suggested for this directory:[/bold]")
        for template, reason in suggestions:
            console.print(f"  [cyan]{template.id:<22}[/cyan] {reason}")
    return 0


async def cmd_add_template(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    template = get_template_by_id(args.template_id)
    if template is None:
        err_console.print(f"Unknown template: {args.template_id}", markup=False)
        return 2
    config = await app.mcp.add_server_from_template(template, args.name)
    env = validate_template_env_vars(template)
    console.print(f"Added '{config.name}' (disabled) to {app.mcp.configs.get_config_path(config.name)}", markup=False)
    if not env["valid"]:
        console.print(f"[yellow]Set these environment variables before enabling:[/yellow] {', '.join(env['missing'])}")
    return 0


async def cmd_remove(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    if not await app.mcp.configs.remove_config(args.name):
        err_console.print(f"No MCP server named '{args.name}'", markup=False)
        return 1
    console.print(f"Removed '{args.name}'", markup=False)
    return 0


async def cmd_tools(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    await app.mcp.enable_server(args.name)
    table = Table(title=f"Tools from '{args.name}'")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Parameters")
    for definition in app.tools.list_tools():
        params = "\n".join(
            f"{p.name} ({p.type}{', required' if p.required else ''})" for p in definition.parameters
        )
        table.add_row(definition.name, escape(definition.description), escape(params))
    console.print(table)
    return 0


async def cmd_call(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    try:
        arguments: Dict[str, Any] = json.loads(args.args) if args.args else {}
    except json.JSONDecodeError as e:
        err_console.print(f"--args is not valid JSON: {e}", markup=False)
        return 2
    if not isinstance(arguments, dict):
        err_console.print("--args must be a JSON object", markup=False)
        return 2

    await app.mcp.enable_server(args.server)
    results = await app.mcp.execute_server_tools(args.server, [{"name": args.tool, "arguments": arguments}])
    if args.json:
        _print_json([r.to_dict() for r in results])
    else:
        console.print(MCPToolManager.format_tool_results(results), markup=False, highlight=False)
    return 0 if all(r.success for r in results) else 1


async def cmd_health(app: MCPBridgeApp, args: argparse.Namespace) -> int:
    await app.mcp.enable_configured_servers()
    health = await app.mcp.check_health()
    _print_json([h.model_dump(mode="json") for h in health])
    return 0 if all(h.status == "healthy" for h in health) else 1


COMMANDS = {
    "list": cmd_list,
    "templates": cmd_templates,
    "add-template": cmd_add_template,
    "remove": cmd_remove,
    "tools": cmd_tools,
    "call": cmd_call,
    "health": cmd_health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcpbridge", description="Manage and call MCP tool servers")
    parser.add_argument("--config", type=str, default=None, help="Path to application config file")
    parser.add_argument("--config-dir", type=str, default=None, help="Directory of per-server MCP configs")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-dir", type=str, default=None, help="Also write rotating logs to this directory")
    parser.add_argument("--version", action="version", version=f"mcpbridge {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List configured servers")
    sub.add_parser("templates", help="List built-in server templates")

    p = sub.add_parser("add-template", help="Create a server config from a template")
    p.add_argument("template_id")
    p.add_argument("--name", default=None, help="Server name (defaults to the template id)")

    p = sub.add_parser("remove", help="Delete a server config")
    p.add_argument("name")

    p = sub.add_parser("tools", help="Start a server and list its tools")
    p.add_argument("name")

    p = sub.add_parser("call", help="Call one tool on a server")
    p.add_argument("server")
    p.add_argument("tool")
    p.add_argument("--args", default=None, help="JSON object of tool arguments")
    p.add_argument("--json", action="store_true", help="Print raw results as JSON")

    sub.add_parser("health", help="Start enabled servers and ping them")
    return parser


async def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, log_dir=args.log_dir, level="WARNING")

    app = MCPBridgeApp(args.config, config_dir=args.config_dir)
    try:
        await app.startup()
        # Reconfigure from settings; command line flags take precedence.
        setup_logging(
            debug=args.debug or bool(app.config.get("app.debug")),
            log_dir=args.log_dir or app.config.get("logging.dir"),
            level=str(app.config.get("logging.level") or "WARNING"),
        )
        return await COMMANDS[args.command](app, args)
    except MCPError as e:
        logger.error(str(e))
        return 1
    finally:
        await app.shutdown()


def cli() -> None:
    """CLI entry point."""
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(130)
