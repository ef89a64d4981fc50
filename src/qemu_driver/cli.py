"""Command-line interface for qemu-driver.

CONFIG is an InstanceConfig as JSON.

Usage:
    qemu-driver run instance.json                     # Start, wait, stop on Ctrl-C
    qemu-driver snapshot list instance.json           # Snapshots of a stopped VM
    qemu-driver snapshot create instance.json before-upgrade --running
    qemu-driver display password instance.json s3cret
"""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, NoReturn

import click
from pydantic import ValidationError

from qemu_driver import DriverError, InstanceConfig, QemuDriver, ShutdownFailed, __version__
from qemu_driver._logging import configure_logging

# Exit codes following Unix conventions (usage errors exit 2 via click)
EXIT_SUCCESS = 0
EXIT_DRIVER_ERROR = 125

CONFIG_ARG = click.argument("config_path", metavar="CONFIG", type=click.Path(exists=True, dir_okay=False, path_type=Path))
RUNNING_OPT = click.option("--running", is_flag=True, help="VM is running (use QMP instead of qemu-img)")


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def load_config(path: Path) -> InstanceConfig:
    """Read an InstanceConfig JSON file.

    Raises:
        click.UsageError: File is not a valid instance configuration
    """
    try:
        return InstanceConfig.model_validate_json(path.read_text())
    except ValidationError as e:
        raise click.UsageError(f"Invalid instance configuration {path}:\n{e}") from e


def run_driver_call(coro: Coroutine[Any, Any, int]) -> NoReturn:
    """Run ``coro`` and exit; DriverError maps to EXIT_DRIVER_ERROR."""
    try:
        exit_code = asyncio.run(coro)
    except DriverError as e:
        click.echo(format_error(type(e).__name__, e.message), err=True)
        exit_code = EXIT_DRIVER_ERROR
    sys.exit(exit_code)


async def run_instance(config: InstanceConfig) -> int:
    """Start the instance, wait for QEMU to exit or a stop signal, then stop."""
    driver = QemuDriver(config)
    completion = await driver.start()
    click.echo(click.style(f"✓ {config.name} started", fg="green"), err=True)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    stop_task = asyncio.create_task(stop_requested.wait())
    exit_task = asyncio.create_task(completion.wait())
    try:
        await asyncio.wait({stop_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (stop_task, exit_task):
            task.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    try:
        result = await driver.stop()
    except ShutdownFailed as e:
        click.echo(
            format_error("Shutdown failed", e.message, [str(err) for err in e.errors[1:]] or None),
            err=True,
        )
        return EXIT_DRIVER_ERROR

    failure = completion.value() if completion.done() else None
    if failure is not None and not stop_requested.is_set():
        click.echo(format_error("QEMU failed", str(failure)), err=True)
        return EXIT_DRIVER_ERROR

    path = "forced" if result.forced else "graceful"
    click.echo(click.style(f"✓ {config.name} stopped ({path})", fg="green", dim=True), err=True)
    for degraded in result.degraded:
        click.echo(click.style(f"  warning: {degraded}", fg="yellow"), err=True)
    return EXIT_SUCCESS


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Log child process output")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-driver")
def main(verbose: bool, quiet: bool) -> None:
    """Supervise QEMU virtual machines."""
    configure_logging(level="DEBUG" if verbose else "INFO", quiet=quiet)


@main.command()
@CONFIG_ARG
def run(config_path: Path) -> NoReturn:
    """Start the VM described by CONFIG and stop it on SIGINT/SIGTERM."""
    run_driver_call(run_instance(load_config(config_path)))


@main.group()
def snapshot() -> None:
    """Manage snapshots of an instance's disk."""


async def _snapshot_op(config: InstanceConfig, operation: str, tag: str, running: bool) -> int:
    driver = QemuDriver(config)
    method = getattr(driver, f"{operation}_snapshot")
    await method(tag, running=running)
    click.echo(f"{operation}: {tag}")
    return EXIT_SUCCESS


@snapshot.command("create")
@CONFIG_ARG
@click.argument("tag")
@RUNNING_OPT
def snapshot_create(config_path: Path, tag: str, running: bool) -> NoReturn:
    """Save a snapshot named TAG."""
    run_driver_call(_snapshot_op(load_config(config_path), "create", tag, running))


@snapshot.command("apply")
@CONFIG_ARG
@click.argument("tag")
@RUNNING_OPT
def snapshot_apply(config_path: Path, tag: str, running: bool) -> NoReturn:
    """Restore the snapshot named TAG."""
    run_driver_call(_snapshot_op(load_config(config_path), "apply", tag, running))


@snapshot.command("delete")
@CONFIG_ARG
@click.argument("tag")
@RUNNING_OPT
def snapshot_delete(config_path: Path, tag: str, running: bool) -> NoReturn:
    """Delete the snapshot named TAG."""
    run_driver_call(_snapshot_op(load_config(config_path), "delete", tag, running))


async def _snapshot_list(config: InstanceConfig, running: bool) -> int:
    snapshots = await QemuDriver(config).list_snapshots(running=running)
    for snap in snapshots:
        click.echo(f"{snap.id}\t{snap.tag}")
    return EXIT_SUCCESS


@snapshot.command("list")
@CONFIG_ARG
@RUNNING_OPT
def snapshot_list(config_path: Path, running: bool) -> NoReturn:
    """List snapshots (ID and TAG, tab separated)."""
    run_driver_call(_snapshot_list(load_config(config_path), running))


@main.group()
def display() -> None:
    """VNC display of a running instance."""


async def _display_password(config: InstanceConfig, password: str) -> int:
    await QemuDriver(config).change_display_password(password)
    return EXIT_SUCCESS


async def _display_info(config: InstanceConfig) -> int:
    click.echo(await QemuDriver(config).get_display_connection())
    return EXIT_SUCCESS


@display.command("password")
@CONFIG_ARG
@click.argument("password")
def display_password(config_path: Path, password: str) -> NoReturn:
    """Set the VNC password."""
    run_driver_call(_display_password(load_config(config_path), password))


@display.command("info")
@CONFIG_ARG
def display_info(config_path: Path) -> NoReturn:
    """Print the VNC service (port)."""
    run_driver_call(_display_info(load_config(config_path)))


if __name__ == "__main__":
    main()
