"""Rich output formatting helpers for the compak CLI.

Plans are rendered as a change table (``+`` install, ``~`` upgrade or
downgrade, ``-`` remove), installed packages and status as tables, and
errors in red on stderr.
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from compak.core.install.engine import InstalledPackage, InstallPlan, ProjectStatus
from compak.core.lockfile.models import PackageChange
from compak.core.manifest.models import Manifest
from compak.exceptions import CommitError, CompakError, ConflictError, ValidationError
from compak.registry.base import SearchResult

console = Console()
err_console = Console(stderr=True)

_CHANGE_STYLES: dict[str, str] = {
    "install": "green",
    "upgrade": "cyan",
    "downgrade": "yellow",
    "reinstall": "cyan",
    "remove": "red",
}


def _change_kind(change: PackageChange) -> str:
    if change.before is None:
        return "install"
    if change.after is None:
        return "remove"
    if change.is_reinstall:
        return "reinstall"
    return "downgrade" if change.is_downgrade else "upgrade"


def print_plan(plan: InstallPlan, *, dry_run: bool = False) -> None:
    """Print the changes of a plan, or that there is nothing to do.

    Args:
        plan: The planned or committed operation.
        dry_run: Label the output as a preview.
    """
    changes = plan.diff.changed
    if not changes and not plan.reconfigure:
        console.print("[dim]Nothing to do; the project is up to date.[/dim]")
        return

    title = "Planned changes" if dry_run else "Changes"
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Package", style="bold")
    table.add_column("Action", justify="center")
    table.add_column("From", style="dim")
    table.add_column("To")
    for change in changes:
        kind = _change_kind(change)
        table.add_row(
            change.name,
            Text(kind, style=_CHANGE_STYLES[kind]),
            str(change.before) if change.before else "-",
            str(change.after) if change.after else "-",
        )
    for name in plan.reconfigure:
        table.add_row(
            name, Text("reconfigure", style="magenta"), str(plan.resolved[name]), str(plan.resolved[name])
        )
    console.print(table)

    if dry_run:
        console.print("[dim]Dry run: nothing was written.[/dim]")
    else:
        console.print(
            f"[green]Done[/green] ({len(changes) + len(plan.reconfigure)} change(s), "
            f"transaction {plan.transaction_id})"
        )


def print_installed(packages: list[InstalledPackage]) -> None:
    """Print the installed packages table."""
    if not packages:
        console.print("[dim]No packages installed.[/dim]")
        return
    table = Table(title="Installed packages", show_header=True, header_style="bold")
    table.add_column("Package", style="bold")
    table.add_column("Version")
    table.add_column("Requested", style="dim")
    table.add_column("Compose file", style="dim")
    for pkg in packages:
        table.add_row(
            pkg.name,
            pkg.version,
            pkg.requested if pkg.requested is not None else "(dependency)",
            pkg.compose_file or "-",
        )
    console.print(table)


def installed_as_json(packages: list[InstalledPackage]) -> list[dict[str, Any]]:
    return [
        {
            "name": p.name,
            "version": p.version,
            "requested": p.requested,
            "digest": p.digest,
            "compose_file": p.compose_file,
            "dependencies": p.dependencies,
        }
        for p in packages
    ]


def print_status(status: ProjectStatus) -> None:
    """Print installed vs. latest versions, then any drift."""
    if status.packages:
        table = Table(title="Package status", show_header=True, header_style="bold")
        table.add_column("Package", style="bold")
        table.add_column("Installed")
        table.add_column("Latest")
        table.add_column("State", justify="center")
        for pkg in status.packages:
            if pkg.error:
                state = Text("unavailable", style="yellow")
            elif pkg.outdated:
                state = Text("outdated", style="cyan")
            else:
                state = Text("current", style="green")
            table.add_row(
                pkg.name,
                str(pkg.installed),
                str(pkg.latest) if pkg.latest else "-",
                state,
            )
        console.print(table)
    else:
        console.print("[dim]No packages installed.[/dim]")

    if status.drift.is_clean:
        console.print("[green]Project files match the lockfile.[/green]")
    else:
        lines = "\n".join(f"- {line}" for line in status.drift.summary())
        console.print(Panel(Text(lines), title="Drift", style="yellow"))
    for leftover in status.leftover_staging:
        console.print(f"[yellow]Leftover staging area: {leftover}[/yellow]")


def print_search_results(results: list[SearchResult]) -> None:
    if not results:
        console.print("[dim]No packages found.[/dim]")
        return
    table = Table(title="Search results", show_header=True, header_style="bold")
    table.add_column("Package", style="bold")
    table.add_column("Version")
    table.add_column("Description")
    for result in results:
        table.add_row(result.name, result.version, result.description)
    console.print(table)


def print_extracted(manifest: Manifest, files: list[str], dest: str) -> None:
    console.print(f"Extracted [bold]{manifest.id}[/bold] into {dest} ({len(files)} file(s))")


def print_published(manifest: Manifest, location: str) -> None:
    console.print(
        Panel(
            f"[bold]{manifest.id}[/bold]\n{manifest.digest}",
            title=f"Published to {location}",
        )
    )


def print_error(exc: CompakError) -> None:
    """Print a compak error in red, with any details or conflict causes."""
    err_console.print(Text.assemble(("Error: ", "bold red"), str(exc)))
    lines: list[str] = []
    if isinstance(exc, ConflictError):
        lines = [str(cause) for cause in exc.causes]
    elif isinstance(exc, ValidationError):
        lines = list(exc.details)
    for line in lines:
        err_console.print(Text(f"  - {line}", style="red"))
    if isinstance(exc, CommitError):
        err_console.print(
            Text(
                "  The project may be partially updated; inspect "
                f"{exc.staging_dir} to recover.",
                style="yellow",
            )
        )


def print_json(data: Any) -> None:
    """Print data as formatted JSON to stdout."""
    console.print_json(json.dumps(data, default=str))
