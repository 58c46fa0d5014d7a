"""steelcut CLI entry point."""

import asyncio
import configparser
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from steelcut import __version__
from steelcut.config import (
    FleetConfig,
    credentials_from_env,
    load_config,
    load_inventory,
)
from steelcut.dialer import AsyncSSHDialer
from steelcut.errors import SteelcutError
from steelcut.executor import CommandManager
from steelcut.host import Host
from steelcut.hostgroup import HostGroup
from steelcut.models import CommandRequest, Credentials, DispatchResults, HostConfig


app = typer.Typer(
    name="steelcut",
    help="steelcut: run commands across a fleet of Unix hosts.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def _configure_logging(debug: bool) -> None:
    """Send log records to stderr through rich.

    Args:
        debug: Log at DEBUG instead of INFO.
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    # Reason: asyncssh logs every connection and channel at INFO.
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if debug else logging.WARNING)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"steelcut {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Fleet config file (TOML)."
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging."),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """steelcut: run commands across a fleet of Unix hosts."""
    _configure_logging(debug)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except (OSError, ValueError, ValidationError) as exc:
        typer.echo(f"Error: could not load config: {exc}", err=True)
        raise typer.Exit(code=1)


def _gather_credentials(
    user: str, ask_password: bool, ask_keypass: bool, ask_sudo_password: bool
) -> Credentials:
    """Collect secrets from STEELCUT_* variables, prompting where requested.

    A secret found in the environment is used as is; otherwise the operator
    is prompted only for the secrets whose flag was given.
    """
    from_env = credentials_from_env(user)

    def _pick(current: Optional[SecretStr], ask: bool, prompt: str) -> Optional[str]:
        if current is not None:
            return current.get_secret_value()
        if ask:
            return typer.prompt(prompt, hide_input=True)
        return None

    return Credentials(
        user=user,
        password=_pick(from_env.password, ask_password, "SSH password"),
        key_passphrase=_pick(from_env.key_passphrase, ask_keypass, "SSH key passphrase"),
        sudo_password=_pick(from_env.sudo_password, ask_sudo_password, "Sudo password"),
    )


def _select_hosts(
    config: FleetConfig, hosts: list[str], groups: list[str], inventory: Optional[Path]
) -> list[str]:
    """Resolve --host/--group/--inventory into hostnames, exiting on errors."""
    if inventory is not None:
        try:
            extra = load_inventory(inventory)
        except (OSError, configparser.Error) as exc:
            typer.echo(f"Error: could not read inventory: {exc}", err=True)
            raise typer.Exit(code=1)
        config = config.model_copy(update={"groups": {**config.groups, **extra}})
        # Reason: an inventory without --group means "every host in it".
        if not groups and not hosts:
            groups = list(extra)

    try:
        selected = config.resolve_hosts(hosts, groups)
    except KeyError as exc:
        typer.echo(f"Error: {exc.args[0]}", err=True)
        raise typer.Exit(code=1)

    # Reason: with nothing selected anywhere, act on the local machine.
    return selected or ["localhost"]


def _build_group(config: FleetConfig, hostnames: list[str], credentials: Credentials) -> HostGroup:
    dialer = AsyncSSHDialer()
    signatures = config.signature_table()
    group = HostGroup()
    for hostname in hostnames:
        host_config = HostConfig(hostname=hostname, port=config.port, credentials=credentials)
        manager = CommandManager(host_config, dialer=dialer, signatures=signatures)
        group.add_host(Host(host_config, manager))
    return group


def _render_results(results: DispatchResults) -> Table:
    table = Table()
    table.add_column("Host")
    table.add_column("Exit")
    table.add_column("Time")
    table.add_column("Output")

    for hostname in results.hostnames:
        slot = results[hostname]
        exit_code = str(slot.result.exit_code) if slot.result else "-"
        duration = f"{slot.result.duration:.2f}s" if slot.result else "-"
        if slot.error is not None:
            output = f"[red]{escape(str(slot.error))}[/red]"
            if slot.result and slot.result.stderr:
                output += "\n" + escape(slot.result.stderr.rstrip())
        else:
            output = escape(slot.result.stdout.rstrip())
        table.add_row(hostname, exit_code, duration, output)
    return table


@app.command("exec")
def exec_command(
    ctx: typer.Context,
    command: Optional[list[str]] = typer.Argument(None, help="Command line to run."),
    host: list[str] = typer.Option([], "--host", "-H", help="Target host (repeatable)."),
    group: list[str] = typer.Option([], "--group", "-g", help="Target host group (repeatable)."),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="INI inventory of host groups."),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Login user."),
    sudo: bool = typer.Option(False, "--sudo", help="Run the command with sudo."),
    password: bool = typer.Option(False, "--password", help="Prompt for the SSH password."),
    sudo_password: bool = typer.Option(False, "--sudo-password", help="Prompt for the sudo password."),
    keypass: bool = typer.Option(False, "--keypass", help="Prompt for the SSH key passphrase."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-n", min=1, help="Maximum hosts in flight."),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Timeout in seconds."),
    script: Optional[Path] = typer.Option(None, "--script", help="Send this file's content as the command."),
) -> None:
    """Run a command on every selected host and print one row per host.

    Exits 1 when any host failed, after printing every host's outcome.
    """
    config: FleetConfig = ctx.obj["config"]

    if script is not None:
        try:
            line = script.read_text()
        except OSError as exc:
            typer.echo(f"Error: could not read script: {exc}", err=True)
            raise typer.Exit(code=1)
    else:
        line = " ".join(command or [])
    if not line.strip():
        typer.echo("Error: no command given.", err=True)
        raise typer.Exit(code=1)

    hostnames = _select_hosts(config, host, group, inventory)
    credentials = _gather_credentials(user or config.user, password, keypass, sudo_password)
    fleet = _build_group(config, hostnames, credentials)

    request = CommandRequest.parse(line, sudo=sudo)
    try:
        results = asyncio.run(
            fleet.run_on_all(
                request,
                concurrency or config.concurrency,
                timeout=timeout if timeout is not None else config.timeout,
            )
        )
    except SteelcutError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    console.print(_render_results(results))

    if results.failed:
        console.print(f"{len(results.failed)} of {len(results)} hosts failed.")
        raise typer.Exit(code=1)


@app.command("detect")
def detect_command(
    ctx: typer.Context,
    host: list[str] = typer.Option([], "--host", "-H", help="Target host (repeatable)."),
    group: list[str] = typer.Option([], "--group", "-g", help="Target host group (repeatable)."),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="INI inventory of host groups."),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Login user."),
    password: bool = typer.Option(False, "--password", help="Prompt for the SSH password."),
    keypass: bool = typer.Option(False, "--keypass", help="Prompt for the SSH key passphrase."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-n", min=1, help="Maximum hosts in flight."),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Timeout in seconds."),
) -> None:
    """Detect each host's OS family and the tools used to manage it."""
    config: FleetConfig = ctx.obj["config"]
    hostnames = _select_hosts(config, host, group, inventory)
    credentials = _gather_credentials(user or config.user, password, keypass, False)
    fleet = _build_group(config, hostnames, credentials)

    detected = asyncio.run(
        fleet.detect_all(
            concurrency or config.concurrency,
            timeout=timeout if timeout is not None else config.timeout,
        )
    )

    table = Table()
    table.add_column("Host")
    table.add_column("OS")
    table.add_column("Packages")
    table.add_column("Services")

    failed = 0
    for hostname in sorted(detected):
        outcome = detected[hostname]
        if isinstance(outcome, BaseException):
            failed += 1
            message = str(outcome) or type(outcome).__name__
            table.add_row(hostname, f"[red]{escape(message)}[/red]", "", "")
            continue
        caps = outcome.capabilities
        table.add_row(
            hostname, outcome.os_family.value, caps.package_manager or "-", caps.service_manager or "-"
        )

    console.print(table)
    if failed:
        console.print(f"{failed} of {len(detected)} hosts failed.")
        raise typer.Exit(code=1)


@app.command("upgrade")
def upgrade_command(
    ctx: typer.Context,
    host: list[str] = typer.Option([], "--host", "-H", help="Target host (repeatable)."),
    group: list[str] = typer.Option([], "--group", "-g", help="Target host group (repeatable)."),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="INI inventory of host groups."),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Login user."),
    password: bool = typer.Option(False, "--password", help="Prompt for the SSH password."),
    sudo_password: bool = typer.Option(False, "--sudo-password", help="Prompt for the sudo password."),
    keypass: bool = typer.Option(False, "--keypass", help="Prompt for the SSH key passphrase."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-n", min=1, help="Maximum hosts in flight."),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Timeout in seconds."),
) -> None:
    """Upgrade all packages on every selected host with its package manager.

    Each host's OS family is detected first; the upgrade runs under sudo
    except where the package manager refuses root (Homebrew).
    """
    config: FleetConfig = ctx.obj["config"]
    hostnames = _select_hosts(config, host, group, inventory)
    credentials = _gather_credentials(user or config.user, password, keypass, sudo_password)
    fleet = _build_group(config, hostnames, credentials)

    results = asyncio.run(
        fleet.upgrade_all(
            concurrency or config.concurrency,
            timeout=timeout if timeout is not None else config.timeout,
        )
    )

    console.print(_render_results(results))

    if results.failed:
        console.print(f"{len(results.failed)} of {len(results)} hosts failed.")
        raise typer.Exit(code=1)
