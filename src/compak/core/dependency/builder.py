"""Dependency graph builder.

Assembles the transitive closure of a request into a ``DependencyGraph``
by breadth-first traversal over the registry:

1. Every newly seen package has its version list fetched once.
2. Every new constraint arriving at a package has the manifests of the
   versions it admits fetched (unless already fetched).
3. The dependencies of each fetched manifest become new constraint
   sources for the next level.

Fetches within a level run concurrently, bounded by ``max_workers``.
Their results are applied in sorted submission order, so the resulting
graph is identical whatever order the fetches complete in.

A failed fetch only rules out the branch that needed it: the error, with
package context attached, is recorded on the graph node and surfaces from
the resolver only if no selection avoids it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Iterable, TypeVar

from compak.core.dependency.constraints import (
    REQUEST_SOURCE,
    ConstraintSource,
    Version,
    VersionConstraint,
)
from compak.core.dependency.graph import DependencyGraph
from compak.exceptions import (
    CompakError,
    MalformedManifestError,
    NotFoundError,
    PackageNotFoundError,
    RegistryError,
)
from compak.registry.base import RegistryClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GraphBuilder:
    """Builds dependency graphs by querying a registry.

    Args:
        registry: The registry to fetch versions and manifests from.
        max_workers: Maximum number of fetches in flight at once.
    """

    def __init__(self, registry: RegistryClient, max_workers: int = 8) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._registry = registry
        self._max_workers = max_workers

    async def build(
        self, requested: Iterable[tuple[str, VersionConstraint]]
    ) -> DependencyGraph:
        """Build the graph for a set of requested packages.

        Fetch failures do not raise. A missing package, a registry failure
        that outlasted the registry's own retries, or an invalid or
        mismatched manifest is recorded on its node (see
        ``DependencyGraph.set_failure``).

        Args:
            requested: (name, constraint) pairs the user asked for.

        Returns:
            The populated ``DependencyGraph``.
        """
        graph = DependencyGraph()
        semaphore = asyncio.Semaphore(self._max_workers)
        arrivals: list[tuple[str, ConstraintSource]] = []
        for name, constraint in requested:
            if graph.add_request(name, constraint):
                arrivals.append((name, ConstraintSource(constraint, REQUEST_SOURCE)))

        listed: set[str] = set()
        fetched: set[tuple[str, Version]] = set()
        level = 0

        while arrivals:
            level += 1
            arrivals.sort(key=lambda a: (a[0], a[1].sort_key()))
            logger.debug("Graph level %d: %d new constraint(s)", level, len(arrivals))

            # Step 1: version lists for packages seen for the first time.
            new_names = sorted({name for name, _ in arrivals} - listed)
            version_lists = await self._gather(
                semaphore,
                [self._registry.fetch_versions(name) for name in new_names],
            )
            for name, result in zip(new_names, version_lists):
                listed.add(name)
                if isinstance(result, BaseException):
                    error = self._fetch_error(result, graph, name)
                    graph.set_failure(name, error)
                    logger.debug("No versions for %s: %s", name, error)
                elif not result:
                    graph.set_failure(
                        name, PackageNotFoundError(name, self._requester(graph, name))
                    )
                else:
                    graph.set_versions(name, list(result))

            # Step 2: manifests for versions admitted by the new constraints.
            wanted: list[tuple[str, Version]] = []
            for name, source in arrivals:
                for version in graph.get_versions(name):
                    key = (name, version)
                    if key not in fetched and source.constraint.satisfies(version):
                        fetched.add(key)
                        wanted.append(key)
            wanted.sort(key=lambda k: k[1], reverse=True)
            wanted.sort(key=lambda k: k[0])
            manifests = await self._gather(
                semaphore,
                [self._registry.fetch_manifest(n, v) for n, v in wanted],
            )

            # Step 3: apply in order; dependencies become the next level.
            arrivals = []
            for (name, version), result in zip(wanted, manifests):
                if isinstance(result, BaseException):
                    error = self._fetch_error(result, graph, name, version)
                    graph.set_failure(name, error, version)
                    logger.warning("Skipping %s@%s: %s", name, version, error)
                    continue
                if result.name != name or result.version != version:
                    graph.set_failure(
                        name,
                        MalformedManifestError(
                            f"registry returned manifest for {result.id}",
                            name,
                            str(version),
                        ),
                        version,
                    )
                    continue
                graph.add_manifest(result)
                for dep in result.dependencies:
                    source = ConstraintSource(dep.constraint, (name, version))
                    if graph.add_constraint(dep.name, source):
                        arrivals.append((dep.name, source))

        for cycle in graph.detect_cycles():
            logger.debug("Cycle among fetched manifests: %s", " -> ".join(cycle))

        logger.info(
            "Dependency graph built: %d package(s), %d manifest(s) fetched",
            len(graph),
            len(fetched),
        )
        return graph

    async def _gather(
        self, semaphore: asyncio.Semaphore, coros: list[Awaitable[T]]
    ) -> list[T | BaseException]:
        async def _bounded(coro: Awaitable[T]) -> T:
            async with semaphore:
                return await coro

        return await asyncio.gather(
            *(_bounded(c) for c in coros), return_exceptions=True
        )

    @staticmethod
    def _requester(graph: DependencyGraph, name: str) -> str:
        dependents = graph.dependents(name)
        return ", ".join(dependents) if dependents else "<request>"

    def _fetch_error(
        self,
        exc: BaseException,
        graph: DependencyGraph,
        name: str,
        version: Version | None = None,
    ) -> CompakError:
        """Return a fetch failure with package context attached.

        Cancellation and other non-``Exception`` errors are re-raised.
        """
        if not isinstance(exc, Exception):
            raise exc
        if isinstance(exc, NotFoundError):
            if version is None:
                error: CompakError = PackageNotFoundError(name, self._requester(graph, name))
            else:
                error = RegistryError(
                    f"manifest listed but not retrievable: {exc}", name, str(version)
                )
        elif isinstance(exc, RegistryError):
            if exc.package is None:
                error = type(exc)(str(exc), name, str(version) if version else None)
            else:
                error = exc
        elif isinstance(exc, CompakError):
            error = exc
        else:
            error = RegistryError(
                f"unexpected registry failure: {exc}",
                name,
                str(version) if version else None,
            )
        if error is not exc:
            error.__cause__ = exc
        return error
