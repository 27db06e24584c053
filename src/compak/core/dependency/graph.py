"""Dependency graph data structure and graph algorithms.

A node is a package name. Each node accumulates the constraints imposed on
it by every source that depends on it (the user request or a specific
package-version), the versions the registry knows for it, and the
manifests fetched for the versions that are candidates for selection.
Fetch failures are recorded on the node they concern rather than raised,
so a package or version the registry could not serve only rules out the
selections that need it. The graph also provides cycle detection.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping

from compak.core.dependency.constraints import (
    REQUEST_SOURCE,
    ConstraintSource,
    Version,
    VersionConstraint,
)

if TYPE_CHECKING:
    from compak.core.manifest.models import Manifest
    from compak.exceptions import CompakError


# ---------------------------------------------------------------------------
# PackageNode: A vertex in the graph
# ---------------------------------------------------------------------------


@dataclass
class PackageNode:
    """A package in the dependency graph.

    Attributes:
        name: Package name.
        sources: Constraints imposed on this package, in arrival order.
        versions: Every version the registry lists, newest first.
        manifests: Manifests fetched for candidate versions.
        error: Why the version list could not be fetched, if it could not.
        failed: Versions whose manifest could not be fetched, with the
            reason.
    """

    name: str
    sources: list[ConstraintSource] = field(default_factory=list)
    versions: list[Version] = field(default_factory=list)
    manifests: dict[Version, Manifest] = field(default_factory=dict)
    error: CompakError | None = None
    failed: dict[Version, CompakError] = field(default_factory=dict)

    @property
    def available(self) -> list[Version]:
        """Listed versions that did not fail to fetch, newest first."""
        if self.error is not None:
            return []
        return [v for v in self.versions if v not in self.failed]

    @property
    def candidates(self) -> list[Version]:
        """Versions with a fetched manifest, newest first."""
        return sorted(self.manifests, reverse=True)

    def satisfying(self, constraints: list[VersionConstraint]) -> list[Version]:
        """Candidates satisfying every constraint in *constraints*, newest first."""
        return [
            v for v in self.candidates if all(c.satisfies(v) for c in constraints)
        ]


# ---------------------------------------------------------------------------
# DependencyGraph
# ---------------------------------------------------------------------------


class DependencyGraph:
    """The dependency graph for one resolution request.

    The graph is built incrementally: a node comes into existence together
    with its first constraint source (``add_constraint``), so every node
    always has at least one contributing source.

    Thread safety: This class is NOT thread-safe. The builder mutates it
    from a single task.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, PackageNode] = {}
        self._requested: dict[str, VersionConstraint] = {}

    @property
    def packages(self) -> list[str]:
        """Sorted names of all nodes."""
        return sorted(self._nodes)

    @property
    def requested(self) -> dict[str, VersionConstraint]:
        """The root constraints (what the user asked for)."""
        return dict(self._requested)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, name: str) -> PackageNode:
        """Return the node for *name*.

        Raises:
            KeyError: If the package is not in the graph.
        """
        return self._nodes[name]

    def add_request(self, name: str, constraint: VersionConstraint) -> bool:
        """Record a root constraint from the user request."""
        if name in self._requested:
            self._requested[name] = self._requested[name].intersect(constraint)
        else:
            self._requested[name] = constraint
        return self.add_constraint(name, ConstraintSource(constraint, REQUEST_SOURCE))

    def add_constraint(self, name: str, source: ConstraintSource) -> bool:
        """Accumulate a constraint on *name*, creating the node if needed.

        Returns:
            True if the constraint source was new.
        """
        node = self._nodes.get(name)
        if node is None:
            node = PackageNode(name=name)
            self._nodes[name] = node
        if source in node.sources:
            return False
        node.sources.append(source)
        return True

    def set_versions(self, name: str, versions: list[Version]) -> None:
        self._nodes[name].versions = sorted(set(versions), reverse=True)

    def add_manifest(self, manifest: Manifest) -> None:
        self._nodes[manifest.name].manifests[manifest.version] = manifest

    def set_failure(
        self, name: str, error: CompakError, version: Version | None = None
    ) -> None:
        """Record that *name* (or one of its versions) could not be fetched."""
        node = self._nodes[name]
        if version is None:
            node.error = error
        else:
            node.failed[version] = error

    def failure_for(
        self, name: str, constraints: Iterable[VersionConstraint]
    ) -> CompakError | None:
        """The fetch failure that kept *name* from satisfying *constraints*.

        That is the package-level failure, or else the failure of the
        highest failed version admitted by every constraint. None if no
        recorded failure is relevant.
        """
        node = self._nodes.get(name)
        if node is None:
            return None
        if node.error is not None:
            return node.error
        constraints = list(constraints)
        for version in sorted(node.failed, reverse=True):
            if all(c.satisfies(version) for c in constraints):
                return node.failed[version]
        return None

    def get_manifest(self, name: str, version: Version) -> Manifest | None:
        node = self._nodes.get(name)
        return node.manifests.get(version) if node else None

    def get_versions(self, name: str) -> list[Version]:
        """Known versions of *name*, newest first. Empty if unknown."""
        node = self._nodes.get(name)
        return list(node.versions) if node else []

    def detect_cycles(self) -> list[list[str]]:
        """Detect name-level cycles among every fetched manifest.

        Such a cycle does not make resolution fail by itself: the resolver
        only rejects selections that contain one.

        Returns:
            A list of cycles, each a list of names forming the cycle path
            (e.g. ["a", "b", "a"]). Empty if the graph is acyclic.
        """
        adjacency: dict[str, set[str]] = defaultdict(set)
        for name, node in self._nodes.items():
            for manifest in node.manifests.values():
                for dep in manifest.dependencies:
                    adjacency[name].add(dep.name)
        return find_cycles({name: adjacency.get(name, set()) for name in self._nodes})

    def dependents(self, name: str) -> list[str]:
        """Labels of every source that constrains *name*, sorted."""
        node = self._nodes.get(name)
        if node is None:
            return []
        return sorted({s.label for s in node.sources})


# ---------------------------------------------------------------------------
# Cycle detection
# ---------------------------------------------------------------------------


def find_cycles(adjacency: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Detect circular dependencies using DFS coloring.

    Traversal order is sorted so the reported cycles are deterministic.

    Args:
        adjacency: Package name -> names it depends on.

    Returns:
        A list of cycles, each a list of names forming the cycle path
        (e.g. ["a", "b", "a"]). Empty if there is none.
    """
    adj = {name: sorted(set(deps)) for name, deps in adjacency.items()}
    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = {s: WHITE for s in adj}
    cycles: list[list[str]] = []

    # Iterative DFS; the explicit path doubles as the in-progress set.
    for root in sorted(adj):
        if color[root] != WHITE:
            continue
        path: list[str] = [root]
        stack = [iter(adj[root])]
        color[root] = GRAY
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            state = color.get(child, WHITE)
            if state == GRAY:
                cycles.append(path[path.index(child):] + [child])
            elif state == WHITE:
                color[child] = GRAY
                path.append(child)
                stack.append(iter(adj.get(child, ())))
    return cycles
