"""Main CLI entry point for mcps.

Thin front-end over the background daemon: every command that talks to a
backend goes through the control protocol, starting the daemon on demand.
"""

import asyncio
import json
import sys
import traceback
from typing import Any, Dict, List, Optional, Tuple

import click
import structlog

from . import __version__
from .config import ConfigStore, ConfigurationError, Settings, load_settings
from .config.logging import configure_logging
from .management import (
    DaemonAlreadyRunningError,
    DaemonLauncher,
    PoolError,
)
from .server import run_daemon

logger = structlog.get_logger(__name__)


class CLIError(Exception):
    """Base CLI error with user-friendly messages."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


def handle_cli_error(error: Exception, ctx: Optional[click.Context] = None):
    """Print an error the way users should see it and exit non-zero."""
    if isinstance(error, (CLIError, PoolError)):
        click.echo(f"Error: {error.message}", err=True)
        if error.suggestion:
            click.echo(f"Suggestion: {error.suggestion}", err=True)
    elif isinstance(error, ConfigurationError):
        click.echo(f"Configuration error: {error}", err=True)
    elif isinstance(error, click.ClickException):
        error.show()
    else:
        verbose = bool(ctx and ctx.obj and ctx.obj.get("verbose"))
        click.echo(f"Unexpected error: {error}", err=True)
        if verbose:
            click.echo(traceback.format_exc(), err=True)
        else:
            click.echo("Run with --verbose for detailed error information", err=True)

    sys.exit(1)


def parse_tool_arguments(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into tool arguments.

    Values are parsed as JSON when possible (numbers, booleans, objects),
    otherwise kept as strings. Pairs without ``=`` or with an empty key are
    rejected.
    """
    params: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw_value = pair.partition("=")
        if not sep or not key:
            raise CLIError(
                f"Invalid argument: {pair}",
                "Arguments are key=value pairs, e.g. message=\"hello world\"",
            )
        try:
            params[key] = json.loads(raw_value)
        except ValueError:
            params[key] = raw_value
    return params


def format_tool_result(result: Any) -> List[str]:
    """Render a tool result as printable lines."""
    if not isinstance(result, dict) or "content" not in result:
        return [json.dumps(result, indent=2)]

    lines = []
    for item in result.get("content") or []:
        item_type = item.get("type")
        if item_type == "text":
            lines.append(item.get("text", ""))
        elif item_type == "image":
            lines.append(f"[Image: {item.get('mimeType')}]")
        elif item_type == "resource":
            lines.append(f"[Resource: {(item.get('resource') or {}).get('uri')}]")
    return lines


def _describe_property(key: str, value: Dict[str, Any], required: bool, indent: int) -> List[str]:
    pad = "  " * indent
    mark = "*" if required else ""
    desc = f" ({value['description']})" if value.get("description") else ""

    if value.get("type") == "object" and value.get("properties"):
        lines = [f"{pad}{key}{mark}: object{desc}"]
        nested_required = value.get("required") or []
        for nested_key, nested_value in value["properties"].items():
            lines.extend(
                _describe_property(nested_key, nested_value, nested_key in nested_required, indent + 1)
            )
        return lines

    type_info = value.get("type") or "any"
    if type_info == "array" and value.get("items"):
        type_info = f"array of {value['items'].get('type') or 'any'}"
    if value.get("enum"):
        enum_values = ", ".join(
            f'"{v}"' if isinstance(v, str) else str(v) for v in value["enum"]
        )
        type_info += f" [{enum_values}]"
    return [f"{pad}{key}{mark}: {type_info}{desc}"]


def format_tools(server_name: str, tools: List[Dict[str, Any]]) -> List[str]:
    """Render tool descriptions with their argument schemas."""
    lines = [f"Available Tools for {server_name}:"]
    for tool in tools:
        lines.append("")
        lines.append(f"- {tool.get('name')}")
        if tool.get("description"):
            lines.append(f"  {tool['description']}")
        lines.append("  Arguments:")
        schema = tool.get("inputSchema") or {}
        properties = schema.get("properties")
        if not properties:
            lines.append("    None")
            continue
        required = schema.get("required") or []
        for key, value in properties.items():
            lines.extend(_describe_property(key, value, key in required, 2))
    return lines


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _launcher(ctx: click.Context) -> DaemonLauncher:
    settings = _settings(ctx)
    return DaemonLauncher(
        host=settings.daemon.host,
        port=settings.daemon.port,
        verbose=settings.daemon.verbose,
        log_dir=settings.log_dir,
        poll_interval=settings.daemon.poll_interval,
    )


def _start_timeout(ctx: click.Context) -> float:
    settings = _settings(ctx)
    configured = ConfigStore(settings.config_file).daemon_timeout
    return configured if configured is not None else settings.daemon.start_timeout


async def _ensure(ctx: click.Context) -> DaemonLauncher:
    launcher = _launcher(ctx)
    await launcher.ensure_daemon(_start_timeout(ctx))
    return launcher


@click.group()
@click.version_option(version=__version__, prog_name="mcps")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output with detailed logging",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Daemon control port (default: 4100 or $MCPS_PORT)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, port: Optional[int]):
    """mcps - keep MCP servers warm behind a local daemon.

    \b
    Examples:
      mcps servers
      mcps tools my-server
      mcps call my-server echo message="Hello World"
      mcps status
    """
    ctx.ensure_object(dict)
    settings = load_settings()
    if port is not None:
        settings.daemon.port = port
    if verbose:
        settings.daemon.verbose = True

    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = settings.daemon.verbose

    # keep command output clean unless asked for detail
    if ctx.invoked_subcommand != "daemon":
        configure_logging("DEBUG" if settings.daemon.verbose else "WARNING")


@cli.command()
@click.pass_context
def daemon(ctx: click.Context):
    """Run the daemon in the foreground."""
    settings = _settings(ctx)
    configure_logging(
        level=settings.log_level,
        log_file=settings.logging.file_path,
        json_logs=settings.logging.json_format,
    )
    try:
        asyncio.run(run_daemon(settings))
    except DaemonAlreadyRunningError as error:
        # losing a start race is not a failure
        click.echo(error.message, err=True)
    except KeyboardInterrupt:
        pass
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.pass_context
def start(ctx: click.Context):
    """Start the daemon in the background if it is not running."""
    try:
        launcher = _launcher(ctx)
        if asyncio.run(launcher.is_running()):
            click.echo(f"Daemon already running on port {launcher.port}")
            return
        asyncio.run(launcher.start_daemon(_start_timeout(ctx)))
        click.echo(f"Daemon started on port {launcher.port}")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.pass_context
def stop(ctx: click.Context):
    """Stop the running daemon."""
    try:
        if asyncio.run(_launcher(ctx).stop_daemon()):
            click.echo("Daemon stopping")
        else:
            click.echo("Daemon is not running")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show daemon status and live connections."""
    try:
        launcher = _launcher(ctx)
        info = asyncio.run(launcher.get_status())
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    if info is None:
        click.echo(f"Daemon is not running (port {launcher.port})")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(info, indent=2))
        return

    state = "initializing" if info.get("initializing") else "ready"
    click.echo(
        f"Daemon running (version {info.get('version')}, pid {info.get('pid')}, "
        f"port {launcher.port}, {state})"
    )
    connections = info.get("connections") or []
    if not connections:
        click.echo("No active connections")
        return
    click.echo("Connections:")
    for conn in connections:
        count = conn.get("toolsCount")
        tools = f"{count} tools" if count is not None else "tools unknown"
        click.echo(f"  {conn.get('name')}: {conn.get('status')} ({tools})")


@cli.command()
@click.argument("server", required=False)
@click.pass_context
def restart(ctx: click.Context, server: Optional[str]):
    """Restart one backend connection, or all of them."""

    async def _restart() -> Dict[str, Any]:
        launcher = await _ensure(ctx)
        return await launcher.restart(server)

    try:
        data = asyncio.run(_restart())
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    click.echo(data.get("message", "Restarted"))
    report = data.get("report") or {}
    for name in report.get("failed") or []:
        click.echo(f"  failed: {name}", err=True)


@cli.command()
@click.argument("server")
@click.argument("tool")
@click.argument("args", nargs=-1)
@click.pass_context
def call(ctx: click.Context, server: str, tool: str, args: Tuple[str, ...]):
    """Call TOOL on SERVER with key=value arguments.

    \b
    Examples:
      mcps call my-server echo message="Hello World"
      mcps call my-server add a=10 b=20
      mcps call my-server createUser user='{"name":"Alice","age":30}'

    Values are parsed as JSON when possible, otherwise used as strings.
    """

    async def _call() -> Any:
        launcher = await _ensure(ctx)
        return await launcher.call_tool(server, tool, params)

    try:
        params = parse_tool_arguments(args)
        result = asyncio.run(_call())
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    for line in format_tool_result(result):
        click.echo(line)
    if isinstance(result, dict) and result.get("isError"):
        sys.exit(1)


@cli.command()
@click.argument("server")
@click.option("--simple", "-s", is_flag=True, help="Show only tool names")
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON")
@click.option("--tool", "-t", "filters", multiple=True, help="Filter tools by name")
@click.pass_context
def tools(ctx: click.Context, server: str, simple: bool, as_json: bool, filters: Tuple[str, ...]):
    """List the tools SERVER offers."""

    async def _list() -> List[Dict[str, Any]]:
        launcher = await _ensure(ctx)
        return await launcher.list_tools(server)

    try:
        if ConfigStore(_settings(ctx).config_file).get(server) is None:
            raise CLIError(f'Server "{server}" not found in config.')
        found = asyncio.run(_list())
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    if filters:
        lowered = [f.lower() for f in filters]
        found = [t for t in found if any(f in str(t.get("name", "")).lower() for f in lowered)]

    if not found:
        click.echo("No tools found.")
        return
    if as_json:
        click.echo(json.dumps(found, indent=2))
    elif simple:
        for tool in found:
            click.echo(tool.get("name"))
        click.echo(f"\nTotal: {len(found)} tool(s)")
    else:
        for line in format_tools(server, found):
            click.echo(line)


@cli.command()
@click.pass_context
def servers(ctx: click.Context):
    """List configured backends."""
    descriptors = ConfigStore(_settings(ctx).config_file).list()
    if not descriptors:
        click.echo("No servers configured.")
        return

    rows = []
    for descriptor in descriptors:
        if descriptor.command:
            target = " ".join([descriptor.command, *descriptor.args])
        else:
            target = descriptor.url or ""
        rows.append((descriptor.name, descriptor.kind.value, "yes" if descriptor.enabled else "no", target))

    name_width = max(4, *(len(r[0]) for r in rows))
    kind_width = max(4, *(len(r[1]) for r in rows))
    click.echo(f"{'NAME'.ljust(name_width)}  {'TYPE'.ljust(kind_width)}  ENABLED  COMMAND/URL")
    for name, kind, enabled, target in rows:
        click.echo(f"{name.ljust(name_width)}  {kind.ljust(kind_width)}  {enabled.ljust(7)}  {target}")


def parse_env_pairs(pairs: Tuple[str, ...]) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` pairs into an environment map."""
    env: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise CLIError(
                f"Invalid environment variable: {pair}",
                "Use KEY=VALUE, e.g. --env GITHUB_TOKEN='$GITHUB_TOKEN'",
            )
        env[key] = value
    return env


@cli.command()
@click.argument("name")
@click.argument("command_args", nargs=-1)
@click.option(
    "--type",
    "server_type",
    type=click.Choice(["stdio", "sse", "http"]),
    default="stdio",
    show_default=True,
    help="How the server is reached",
)
@click.option("--command", help="Executable to launch (stdio)")
@click.option("--url", help="Endpoint URL (sse, http)")
@click.option("--env", "env_pairs", multiple=True, help="Environment variable KEY=VALUE (repeatable)")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    command_args: Tuple[str, ...],
    server_type: str,
    command: Optional[str],
    url: Optional[str],
    env_pairs: Tuple[str, ...],
):
    """Add server NAME to the config.

    \b
    Examples:
      mcps add git --command uvx mcp-server-git
      mcps add files --command npx -- -y @modelcontextprotocol/server-filesystem /tmp
      mcps add search --type http --url http://localhost:8000/mcp
    """
    try:
        if server_type == "stdio":
            if not command:
                raise CLIError("Command is required for stdio servers", "Pass --command")
            entry: Dict[str, Any] = {"type": "stdio", "command": command, "args": list(command_args)}
            env = parse_env_pairs(env_pairs)
            if env:
                entry["env"] = env
        else:
            if not url:
                raise CLIError(f"URL is required for {server_type} servers", "Pass --url")
            entry = {"type": server_type, "url": url}

        ConfigStore(_settings(ctx).config_file).add(name, entry)
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    click.echo(f'Server "{name}" added successfully.')


@cli.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str):
    """Remove server NAME from the config."""
    try:
        ConfigStore(_settings(ctx).config_file).remove(name)
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    click.echo(f'Server "{name}" removed.')


cli.add_command(remove, name="rm")


@cli.command()
@click.argument("name", required=False)
@click.argument("command_args", nargs=-1)
@click.option("--command", help="New executable")
@click.option("--url", help="New endpoint URL")
@click.pass_context
def update(
    ctx: click.Context,
    name: Optional[str],
    command_args: Tuple[str, ...],
    command: Optional[str],
    url: Optional[str],
):
    """Update server NAME in the config, or reconnect every server.

    Trailing arguments replace the server's argument list. Without NAME the
    running daemon reconnects all servers.
    """
    if name is None:
        ctx.invoke(restart, server=None)
        return

    updates: Dict[str, Any] = {}
    if command:
        updates["command"] = command
    if command_args:
        updates["args"] = list(command_args)
    if url:
        updates["url"] = url

    if not updates:
        click.echo("No updates provided.")
        click.echo("Use: mcps update <server> --command <cmd> [args...]")
        return

    try:
        ConfigStore(_settings(ctx).config_file).update(name, updates)
    except Exception as error:
        handle_cli_error(error, ctx)
        return

    click.echo(f'Server "{name}" updated.')
    click.echo("Restart the connection to apply changes: mcps restart " + name)


if __name__ == "__main__":
    cli()
