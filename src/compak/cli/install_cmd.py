"""Commands that change a project: install, upgrade, uninstall, update.

Each runs one transaction against the project and prints the applied
changes. ``--dry-run`` prints the plan and writes nothing.

Exit Codes:
    0 - Applied (or nothing to do).
    1 - The operation failed; the lockfile is unchanged.
    2 - Invalid command-line usage.
"""

from __future__ import annotations

import click

from compak.cli.output import print_plan
from compak.cli.state import CliState, pass_state, reporting_errors, run_async
from compak.config import UPDATE_STRATEGIES
from compak.core.install.engine import parse_request

_dry_run_option = click.option(
    "--dry-run", is_flag=True, default=False, help="Show the plan without applying it."
)


def parse_values(assignments: tuple[str, ...]) -> dict[str, dict[str, str]]:
    """Parse ``--set PACKAGE.KEY=VALUE`` options into per-package values.

    Raises:
        click.BadParameter: If an assignment is not of that form.
    """
    values: dict[str, dict[str, str]] = {}
    for item in assignments:
        target, sep, value = item.partition("=")
        # Package names may contain dots; parameter names may not.
        package, dot, key = target.rpartition(".")
        if not sep or not dot or not package or not key:
            raise click.BadParameter(
                f"expected PACKAGE.KEY=VALUE, got {item!r}", param_hint="--set"
            )
        values.setdefault(package, {})[key] = value
    return values


@click.command("install")
@click.argument("packages", nargs=-1, required=True)
@click.option(
    "--set", "assignments", multiple=True, metavar="PACKAGE.KEY=VALUE",
    help="Set a package parameter (repeatable).",
)
@_dry_run_option
@pass_state
def install_command(
    state: CliState, packages: tuple[str, ...], assignments: tuple[str, ...], dry_run: bool
) -> None:
    """Install PACKAGES (each NAME or NAME@CONSTRAINT) into the project.

    Examples:

        compak install postgres@^15.0.0

        compak install web --set web.PORT=8080
    """
    values = parse_values(assignments)
    with reporting_errors():
        requests = [parse_request(p) for p in packages]
    plan = run_async(
        state,
        lambda registry: state.engine(registry).install(requests, values, dry_run=dry_run),
    )
    print_plan(plan, dry_run=dry_run)


@click.command("upgrade")
@click.argument("packages", nargs=-1, required=True)
@click.option("--to", "constraint", default=None, help="New constraint for the packages.")
@_dry_run_option
@pass_state
def upgrade_command(
    state: CliState, packages: tuple[str, ...], constraint: str | None, dry_run: bool
) -> None:
    """Upgrade installed PACKAGES to the newest allowed versions."""
    plan = run_async(
        state,
        lambda registry: state.engine(registry).upgrade(
            packages, constraint, dry_run=dry_run
        ),
    )
    print_plan(plan, dry_run=dry_run)


@click.command("uninstall")
@click.argument("packages", nargs=-1, required=True)
@_dry_run_option
@pass_state
def uninstall_command(state: CliState, packages: tuple[str, ...], dry_run: bool) -> None:
    """Remove PACKAGES and the dependencies nothing else needs."""
    plan = run_async(
        state,
        lambda registry: state.engine(registry).uninstall(packages, dry_run=dry_run),
    )
    print_plan(plan, dry_run=dry_run)


@click.command("update")
@click.option(
    "--strategy",
    type=click.Choice(UPDATE_STRATEGIES),
    default=None,
    help="'requested' re-resolves from the requested ranges; "
    "'locked-floor' never goes below the locked versions.",
)
@_dry_run_option
@pass_state
def update_command(state: CliState, strategy: str | None, dry_run: bool) -> None:
    """Re-resolve every requested package within its constraints."""
    plan = run_async(
        state,
        lambda registry: state.engine(registry).update(strategy, dry_run=dry_run),
    )
    print_plan(plan, dry_run=dry_run)
