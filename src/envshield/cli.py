"""CLI for envshield - run commands with secrets an AI agent never sees."""

import argparse
import logging
import shlex
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import (
    LOCAL_CONFIG_NAME,
    DEFAULT_CONFIG_TEMPLATE,
    ConfigError,
    get_global_config_file,
    load_config,
)
from .secrets import EnvshieldError
from .server import create_server, serve_stdio

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool) -> None:
    """Send log records, including security warnings, to stderr via rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def cmd_status(args):
    """Show configuration and which secret files are present."""
    console.print("[bold]envshield status[/bold]\n")

    try:
        config = load_config(args.project_dir)
    except ConfigError as e:
        console.print(f"[red]Config Error:[/red] {e}")
        return 1

    table = Table(show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    global_file = get_global_config_file()
    local_file = args.project_dir / LOCAL_CONFIG_NAME
    table.add_row(
        "global config",
        f"{global_file} " + ("[green](found)[/green]" if global_file.exists() else "[dim](none)[/dim]"),
    )
    table.add_row(
        "project config",
        f"{local_file} " + ("[green](found)[/green]" if local_file.exists() else "[dim](none)[/dim]"),
    )
    for env_file in config.env_files:
        present = (args.project_dir / env_file).is_file()
        table.add_row(
            "secrets file",
            f"{env_file} " + ("[green](found)[/green]" if present else "[yellow](missing)[/yellow]"),
        )
    table.add_row("redact mode", config.redact_mode)
    table.add_row("custom patterns", str(len(config.redact_patterns)))
    table.add_row("blocked commands", ", ".join(config.blocked_commands) or "[dim](none)[/dim]")
    rate_limit = config.rate_limit
    table.add_row(
        "rate limit",
        f"{rate_limit.max_requests} per {rate_limit.window_ms} ms"
        if rate_limit.enabled
        else "[dim]disabled[/dim]",
    )

    console.print(table)
    return 0


def cmd_init(args):
    """Write a default project config file."""
    config_file = args.project_dir / LOCAL_CONFIG_NAME

    if config_file.exists() and not args.force:
        console.print(f"[yellow]Warning:[/yellow] File already exists: {config_file}")
        console.print("[dim]Use --force to overwrite[/dim]")
        return 1

    config_file.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    console.print(f"[green]Initialized:[/green] {config_file}")
    console.print(f"[dim]Edit {LOCAL_CONFIG_NAME} to customize behavior[/dim]")
    return 0


def cmd_list(args):
    """List all secret names (values never shown - safe for LLM)."""
    try:
        server = create_server(args.project_dir)
    except EnvshieldError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    names = server.secrets.names()
    if not names:
        console.print("[dim]No secrets found.[/dim]")
        return 0

    table = Table(title="Available Secrets", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Active source", style="green")
    table.add_column("Defined in", style="dim")

    for name in names:
        table.add_row(name, server.secrets.active_source(name), ", ".join(server.secrets.sources(name)))

    console.print(table)
    console.print(f"\n[dim]Total: {len(names)} secrets[/dim]")
    return 0


def cmd_check(args):
    """Check whether a secret exists and where it is defined."""
    try:
        server = create_server(args.project_dir)
    except EnvshieldError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    info = server.check_secret_exists(args.name)
    if not info["exists"]:
        console.print(f"[red]Not found:[/red] {args.name}")
        console.print("[dim]Use 'envshield list' to see available secrets[/dim]")
        return 1

    console.print(f"[cyan]{args.name}:[/cyan] active in {info['activeSource']}")
    console.print(f"[dim]Defined in: {', '.join(info['sources'])}[/dim]")
    return 0


def cmd_exec(args):
    """
    Execute a command with secrets injected as environment variables.

    Output is scrubbed of secret values before it is printed. A single
    argument is run as shell text, so quote it to defer $VAR expansion to
    the child. Several arguments are re-quoted and run as one argv.

    Example:
        envshield exec --secret API_KEY -- 'curl -H "Authorization: $API_KEY" https://api.example.com'
    """
    # Strip leading '--' separator if present (argparse.REMAINDER includes it)
    command = args.exec_command
    if command and command[0] == "--":
        command = command[1:]

    if not command:
        err_console.print("[red]Error:[/red] No command specified")
        return 1

    try:
        server = create_server(args.project_dir)
    except EnvshieldError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 1

    result = server.run_with_secrets(
        command=command[0] if len(command) == 1 else shlex.join(command),
        secrets=args.secret,
        timeout=args.timeout,
        workingDir=args.cwd,
    )

    sys.stdout.write(result["stdout"])
    sys.stderr.write(result["stderr"])
    if result["redactedCount"]:
        err_console.print(f"[dim]Redacted {result['redactedCount']} secret occurrence(s)[/dim]")
    return result["exitCode"]


def cmd_serve(args):
    """Serve tool requests over stdio."""
    try:
        server = create_server(args.project_dir)
    except EnvshieldError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 1

    serve_stdio(server)
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="envshield",
        description="Run commands with secrets injected - without leaking them to LLM context",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  envshield status                          # Show configuration
  envshield init                            # Write .envshield.yaml
  envshield list                            # List secret names (safe for LLM)
  envshield check API_KEY                   # Where is API_KEY defined?
  envshield exec --secret API_KEY -- ./deploy.sh
  envshield serve                           # JSON tool server on stdio

LLM Safety:
  - 'list' and 'check' never print values
  - 'exec' injects secrets and scrubs them from the output

Environment:
  ENVSHIELD_CONFIG    Override global config file
  XDG_CONFIG_HOME     Base directory for the global config
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-C", "--project-dir", type=Path, default=Path.cwd(),
                        help="Project directory (default: current directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # status
    subparsers.add_parser("status", help="Show configuration")

    # init
    init_parser = subparsers.add_parser("init", help="Write default project config")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing file")

    # list
    subparsers.add_parser("list", help="List secret names (safe for LLM)")

    # check
    check_parser = subparsers.add_parser("check", help="Check if a secret exists")
    check_parser.add_argument("name", help="Secret name")

    # exec
    exec_parser = subparsers.add_parser("exec", help="Run command with secrets injected")
    exec_parser.add_argument("--secret", action="append", default=[], metavar="NAME",
                             help="Secret to inject as env var (can repeat)")
    exec_parser.add_argument("--timeout", type=int, default=None, metavar="MS",
                             help="Timeout in milliseconds (default: 30000)")
    exec_parser.add_argument("--cwd", help="Working directory for the command")
    exec_parser.add_argument("exec_command", nargs=argparse.REMAINDER, help="Command to run")

    # serve
    subparsers.add_parser("serve", help="Serve tool requests over stdio")

    args = parser.parse_args(argv)
    args.project_dir = Path(args.project_dir).expanduser()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    handlers = {
        "status": cmd_status,
        "init": cmd_init,
        "list": cmd_list,
        "check": cmd_check,
        "exec": cmd_exec,
        "serve": cmd_serve,
    }
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
