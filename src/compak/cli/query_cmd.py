"""Read-only commands: list, status, search."""

from __future__ import annotations

import sys

import click

from compak.cli.output import (
    installed_as_json,
    print_installed,
    print_json,
    print_search_results,
    print_status,
)
from compak.cli.state import CliState, pass_state, run_async
from compak.core.install.engine import InstalledPackage
from compak.registry import RegistryClient


@click.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
@pass_state
def list_command(state: CliState, as_json: bool) -> None:
    """List the packages recorded in the project lockfile."""

    async def _installed(registry: RegistryClient) -> list[InstalledPackage]:
        return state.engine(registry).list_installed()

    packages = run_async(state, _installed)
    if as_json:
        print_json(installed_as_json(packages))
    else:
        print_installed(packages)


@click.command("status")
@pass_state
def status_command(state: CliState) -> None:
    """Compare installed packages with the registry and the project files.

    Exit code 0 when the project files match the lockfile, 1 on drift.
    """
    status = run_async(state, lambda registry: state.engine(registry).status())
    print_status(status)
    sys.exit(0 if status.drift.is_clean else 1)


@click.command("search")
@click.argument("query", default="")
@click.option("--limit", default=20, type=click.IntRange(min=1), help="Max results (default 20).")
@pass_state
def search_command(state: CliState, query: str, limit: int) -> None:
    """Search the registry by package name or description."""
    results = run_async(state, lambda registry: registry.search(query, limit=limit))
    print_search_results(results)
