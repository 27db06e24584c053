"""Commands that work on package content: extract and publish."""

from __future__ import annotations

from pathlib import Path

import click

from compak.cli.output import print_extracted, print_published
from compak.cli.state import CliState, pass_state, reporting_errors, run_async
from compak.core.install.engine import parse_request, publish_directory
from compak.registry import RegistryClient


@click.command("extract")
@click.argument("package")
@click.argument("dest", type=click.Path(file_okay=False))
@pass_state
def extract_command(state: CliState, package: str, dest: str) -> None:
    """Unpack PACKAGE (NAME or NAME@CONSTRAINT) into DEST without installing it."""
    with reporting_errors():
        name, constraint = parse_request(package)
    manifest, files = run_async(
        state,
        lambda registry: state.engine(registry).extract(name, constraint, Path(dest)),
    )
    print_extracted(manifest, files, dest)


@click.command("publish")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@pass_state
def publish_command(state: CliState, directory: str) -> None:
    """Pack the package source in DIRECTORY and publish it to the registry."""

    async def _publish(registry: RegistryClient):
        manifest = await publish_directory(registry, Path(directory))
        return manifest, registry.location

    manifest, location = run_async(state, _publish)
    print_published(manifest, location)
