"""compak CLI: a package manager for Docker Compose applications.

Entry point for the ``compak`` command-line tool. Registers all
subcommands under a single Click group.

Commands:
    install    Add packages (NAME[@CONSTRAINT]) to the project.
    upgrade    Move installed packages to newer versions.
    uninstall  Remove packages and their orphaned dependencies.
    update     Re-resolve every requested package.
    list       Show the packages in the lockfile.
    status     Compare installed packages with the registry and disk.
    search     Query the registry.
    extract    Unpack a package without installing it.
    publish    Push a package source directory to the registry.

Usage::

    compak install postgres@^15.0.0 --set postgres.POSTGRES_PASSWORD=secret
    compak --project ./stack upgrade postgres
    compak --registry https://registry.example.com search cache
    compak publish ./packages/redis
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
from rich.logging import RichHandler

from compak import __version__
from compak.cli.install_cmd import (
    install_command,
    uninstall_command,
    update_command,
    upgrade_command,
)
from compak.cli.output import err_console
from compak.cli.package_cmd import extract_command, publish_command
from compak.cli.query_cmd import list_command, search_command, status_command
from compak.cli.state import CliState


def configure_logging(verbose: bool) -> None:
    """Send compak's log records to stderr through rich."""
    handler = RichHandler(console=err_console, show_path=False, show_time=verbose)
    root = logging.getLogger("compak")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


@click.group()
@click.version_option(version=__version__, prog_name="compak")
@click.option(
    "--project", "-C",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="Compose project directory.",
)
@click.option(
    "--registry", "-r",
    default=None,
    help="Registry path or URL (overrides COMPAK_REGISTRY and the config file).",
)
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (default: ~/.compak/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output.")
@click.pass_context
def cli(
    ctx: click.Context,
    project: str,
    registry: str | None,
    config_path: str | None,
    verbose: bool,
) -> None:
    """compak: install, upgrade and remove Docker Compose packages.

    Resolves package dependencies, records them in compak.lock and merges
    package compose fragments into an override file, atomically.
    """
    configure_logging(verbose)
    ctx.obj = CliState(
        project_dir=Path(project),
        registry_url=registry,
        config_path=Path(config_path) if config_path else None,
    )


# Register all subcommands
cli.add_command(install_command)
cli.add_command(upgrade_command)
cli.add_command(uninstall_command)
cli.add_command(update_command)
cli.add_command(list_command)
cli.add_command(status_command)
cli.add_command(search_command)
cli.add_command(extract_command)
cli.add_command(publish_command)
