"""Shared CLI state: configuration, registry and engine construction.

The top-level group stores a ``CliState`` on the click context; each
command receives it through ``pass_state`` and runs its engine operation
with ``run_async``, which maps every ``CompakError`` to a red message and
exit code 1.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterator, TypeVar

import click

from compak.config import CompakConfig
from compak.core.install.engine import InstallEngine
from compak.exceptions import CompakError, ValidationError
from compak.registry import RegistryClient, open_registry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Conventional exit status for SIGINT.
EXIT_INTERRUPTED = 130


@dataclass
class CliState:
    """Options given to the ``compak`` group.

    Attributes:
        project_dir: The compose project to operate on.
        registry_url: ``--registry`` override, if any.
        config_path: ``--config`` override, if any.
    """

    project_dir: Path
    registry_url: str | None = None
    config_path: Path | None = None
    _config: CompakConfig | None = field(default=None, repr=False)

    @property
    def config(self) -> CompakConfig:
        """Effective configuration (loaded once, flags applied last)."""
        if self._config is None:
            loaded = CompakConfig.load(self.config_path)
            self._config = loaded.with_overrides(registry_url=self.registry_url)
        return self._config

    def open_registry(self) -> RegistryClient:
        config = self.config
        try:
            return open_registry(
                config.registry,
                timeout=config.timeout,
                max_retries=config.max_retries,
                backoff_base=config.backoff_base,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def engine(self, registry: RegistryClient) -> InstallEngine:
        return InstallEngine(self.project_dir, registry, self.config)


pass_state = click.make_pass_decorator(CliState)


@contextlib.contextmanager
def reporting_errors() -> Iterator[None]:
    """Turn compak errors and interrupts into exit codes."""
    from compak.cli.output import err_console, print_error

    try:
        yield
    except CompakError as exc:
        logger.debug("Command failed", exc_info=True)
        print_error(exc)
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted; nothing was committed.[/yellow]")
        sys.exit(EXIT_INTERRUPTED)


def run_async(state: CliState, operation: Callable[[RegistryClient], Awaitable[T]]) -> T:
    """Open the registry, await ``operation(registry)``, close the registry.

    Interrupting a running operation cancels it; an uncommitted transaction
    rolls back on the way out.
    """

    async def _main() -> T:
        async with state.open_registry() as registry:
            return await operation(registry)

    with reporting_errors():
        result = asyncio.run(_main())
    return result
