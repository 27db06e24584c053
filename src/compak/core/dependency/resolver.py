"""Backtracking dependency resolution.

Selects one version per required package such that every constraint
imposed by the request and by the selected manifests holds, preferring the
highest version of each package.

The search keeps its partial assignments on an explicit stack of choice
points ``(package, ordered candidates, next index, base assignment)``
rather than on the Python call stack:

1. The pending package with the fewest feasible candidates is decided
   next; ties are broken by package name.
2. Candidates are tried highest first (a preferred version, such as the
   currently locked one, goes first when it is feasible).
3. A state in which some package has no feasible version, or whose
   selected versions depend on each other in a cycle, is a dead end. Its
   minimal cause is computed from the constraints active at that point,
   and the partial assignment responsible for it is memoized as a
   *nogood*. Any later state containing a nogood is pruned at once.
4. A package or version the registry failed to serve has no feasible
   version, so only the selections that need it are ruled out.
5. When the stack empties, the search trace is explained: a recorded
   fetch failure first, then a cycle, then the first constraint-level
   dead end as a ``ConflictError``.

Every iteration is over sorted data, so identical graphs always give an
identical result or an identical conflict report.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator

from compak.core.dependency.constraints import (
    ConstraintSource,
    Version,
    VersionConstraint,
)
from compak.core.dependency.graph import DependencyGraph, find_cycles
from compak.exceptions import (
    CompakError,
    ConflictCause,
    ConflictError,
    CyclicDependencyError,
)

if TYPE_CHECKING:
    from compak.core.manifest.models import Manifest

logger = logging.getLogger(__name__)

# Pseudo-source for a version the search itself selected.
SELECTED_SOURCE = "<selected>"


# ---------------------------------------------------------------------------
# ResolvedSet: the output of dependency resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedSet(Mapping):
    """Result of a successful resolution: package name -> chosen version.

    Iteration is in package-name order. The selected manifest of each
    package is available through :meth:`manifest`.
    """

    versions: Mapping[str, Version] = field(default_factory=dict)
    manifests: Mapping[str, Manifest] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "versions", dict(sorted(self.versions.items())))
        object.__setattr__(self, "manifests", dict(sorted(self.manifests.items())))

    def __getitem__(self, name: str) -> Version:
        return self.versions[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.versions)

    def __len__(self) -> int:
        return len(self.versions)

    def manifest(self, name: str) -> Manifest:
        return self.manifests[name]

    def edges(self) -> list[tuple[str, str, VersionConstraint]]:
        """Every (dependent, dependency, constraint) edge of the selection."""
        return [
            (name, dep.name, dep.constraint)
            for name, manifest in self.manifests.items()
            for dep in manifest.dependencies
        ]

    def dependencies_of(self, name: str) -> dict[str, Version]:
        """Resolved versions of the direct dependencies of *name*."""
        return {
            dep.name: self.versions[dep.name]
            for dep in self.manifests[name].dependencies
            if dep.name in self.versions
        }

    def as_strings(self) -> dict[str, str]:
        return {name: str(v) for name, v in self.versions.items()}


# ---------------------------------------------------------------------------
# Search bookkeeping
# ---------------------------------------------------------------------------

Assignment = dict[str, Version]
Nogood = frozenset[tuple[str, Version]]


@dataclass
class _ChoicePoint:
    package: str
    candidates: list[Version]
    index: int
    base: Assignment


@dataclass(frozen=True)
class _DeadEnd:
    """A package left without a feasible version, with its minimal cause.

    A cycle among selected versions is a dead end too: ``cycle`` holds
    its path and ``members`` the selected versions forming it.
    """

    package: str
    causes: tuple[ConstraintSource, ...]
    pin: Version | None = None
    cycle: tuple[str, ...] = ()
    members: tuple[tuple[str, Version], ...] = ()

    @property
    def constraint_level(self) -> bool:
        return self.pin is None and not self.cycle

    def to_conflict(self) -> ConflictError:
        causes = [
            ConflictCause(self.package, str(s.constraint), s.label)
            for s in self.causes
        ]
        if self.pin is not None:
            causes.append(ConflictCause(self.package, f"=={self.pin}", SELECTED_SOURCE))
        return ConflictError(self.package, tuple(causes))


# ---------------------------------------------------------------------------
# DependencyResolver
# ---------------------------------------------------------------------------


class DependencyResolver:
    """Backtracking resolver over a ``DependencyGraph``.

    Args:
        graph: The dependency graph to resolve.
        preferred: Optional package -> version mapping tried first when
            feasible (used to keep locked versions stable).
    """

    def __init__(
        self,
        graph: DependencyGraph,
        preferred: Mapping[str, Version] | None = None,
    ) -> None:
        self._graph = graph
        self._preferred = dict(preferred or {})
        self._roots: dict[str, list[ConstraintSource]] = {}
        for name in graph.packages:
            roots = [s for s in graph.node(name).sources if not isinstance(s.source, tuple)]
            if roots:
                self._roots[name] = roots
        self.steps = 0

    def resolve(self) -> ResolvedSet:
        """Run the search.

        Returns:
            The ``ResolvedSet`` of the highest feasible assignment.

        Raises:
            ConflictError: If no assignment satisfies every constraint.
            CyclicDependencyError: If every assignment that satisfies the
                constraints contains a cycle.
            PackageNotFoundError: If no assignment avoids a package the
                registry does not have (``RegistryError`` if the registry
                failed to serve it).
        """
        stack: list[_ChoicePoint] = []
        nogoods: list[Nogood] = []
        trace: list[_DeadEnd] = []
        assignment: Assignment = {}
        self.steps = 0

        while True:
            self.steps += 1
            items = set(assignment.items())
            pruned = any(ng <= items for ng in nogoods)
            dead_end: _DeadEnd | None = None
            decision: tuple[str, list[Version]] | None = None

            if not pruned:
                dead_end, decision = self._evaluate(assignment)
                if dead_end is not None:
                    trace.append(dead_end)
                    nogoods.append(self._nogood(dead_end))
                    logger.debug(
                        "Dead end at %s (assignment: %s)",
                        dead_end.package,
                        _fmt(assignment),
                    )
                elif decision is None:
                    logger.debug("Resolved in %d step(s): %s", self.steps, _fmt(assignment))
                    return self._result(assignment)

            if decision is not None:
                package, candidates = decision
                stack.append(_ChoicePoint(package, candidates, 0, dict(assignment)))
                assignment[package] = candidates[0]
                logger.debug("Try %s@%s", package, candidates[0])
                continue

            # Backtrack to the nearest choice point with an untried candidate.
            while stack:
                point = stack[-1]
                point.index += 1
                if point.index < len(point.candidates):
                    assignment = dict(point.base)
                    assignment[point.package] = point.candidates[point.index]
                    logger.debug(
                        "Backtrack: try %s@%s", point.package, assignment[point.package]
                    )
                    break
                stack.pop()
                nogoods.append(frozenset(point.base.items()))
            else:
                raise self._explain(trace)

    # -- State evaluation ---------------------------------------------------

    def _active(self, assignment: Assignment) -> dict[str, list[ConstraintSource]]:
        """Constraints in force for *assignment*, per package, sorted."""
        active: dict[str, list[ConstraintSource]] = {
            name: list(sources) for name, sources in self._roots.items()
        }
        for name in sorted(assignment):
            version = assignment[name]
            manifest = self._graph.get_manifest(name, version)
            for dep in manifest.dependencies:
                active.setdefault(dep.name, []).append(
                    ConstraintSource(dep.constraint, (name, version))
                )
        return {
            name: sorted(sources, key=ConstraintSource.sort_key)
            for name, sources in sorted(active.items())
        }

    def _evaluate(
        self, assignment: Assignment
    ) -> tuple[_DeadEnd | None, tuple[str, list[Version]] | None]:
        """Classify a state: dead end, next decision, or complete (both None)."""
        active = self._active(assignment)

        # An assigned version violated by a constraint added after it.
        for name, sources in active.items():
            pin = assignment.get(name)
            if pin is not None and not all(s.constraint.satisfies(pin) for s in sources):
                return self._dead_end(name, sources, pin), None

        cycle = self._selected_cycle(assignment)
        if cycle:
            members = tuple((n, assignment[n]) for n in sorted(set(cycle)))
            return _DeadEnd(cycle[0], (), cycle=tuple(cycle), members=members), None

        best: tuple[int, str, list[Version]] | None = None
        for name, sources in active.items():
            if name in assignment:
                continue
            node = self._graph.node(name)
            feasible = node.satisfying([s.constraint for s in sources])
            if not feasible:
                return self._dead_end(name, sources), None
            if best is None or len(feasible) < best[0]:
                best = (len(feasible), name, feasible)

        if best is None:
            return None, None
        _, name, feasible = best
        preferred = self._preferred.get(name)
        if preferred is not None and preferred in feasible:
            feasible = [preferred] + [v for v in feasible if v != preferred]
        return None, (name, feasible)

    def _selected_cycle(self, assignment: Assignment) -> list[str]:
        adjacency = {
            name: [
                dep.name
                for dep in self._graph.get_manifest(name, version).dependencies
                if dep.name in assignment
            ]
            for name, version in assignment.items()
        }
        cycles = find_cycles(adjacency)
        return cycles[0] if cycles else []

    # -- Conflict analysis --------------------------------------------------

    def _admits(
        self, name: str, sources: list[ConstraintSource], pin: Version | None
    ) -> bool:
        """True if some version of *name* satisfies every source."""
        if pin is not None:
            return all(s.constraint.satisfies(pin) for s in sources)
        return any(
            all(s.constraint.satisfies(v) for s in sources)
            for v in self._graph.node(name).available
        )

    def _minimize(
        self, name: str, sources: list[ConstraintSource], pin: Version | None
    ) -> tuple[ConstraintSource, ...]:
        """Deletion-based minimal subset of *sources* still admitting nothing."""
        kept = list(sources)
        for source in list(kept):
            trial = [s for s in kept if s is not source]
            if not self._admits(name, trial, pin):
                kept = trial
        return tuple(kept)

    def _dead_end(
        self,
        name: str,
        sources: list[ConstraintSource],
        pin: Version | None = None,
    ) -> _DeadEnd:
        if not self._graph.node(name).available:
            # Nothing to choose from: any one requiring source is the cause.
            roots = [s for s in sources if not isinstance(s.source, tuple)]
            return _DeadEnd(name, tuple(roots[:1] or sources[:1]))
        if pin is not None and not self._admits(name, sources, None):
            pin = None
        return _DeadEnd(name, self._minimize(name, sources, pin), pin)

    @staticmethod
    def _nogood(dead_end: _DeadEnd) -> Nogood:
        if dead_end.cycle:
            return frozenset(dead_end.members)
        members = {s.source for s in dead_end.causes if isinstance(s.source, tuple)}
        if dead_end.pin is not None:
            members.add((dead_end.package, dead_end.pin))
        return frozenset(members)

    def _explain(self, trace: list[_DeadEnd]) -> CompakError:
        for dead_end in trace:
            if dead_end.constraint_level:
                failure = self._graph.failure_for(
                    dead_end.package, [s.constraint for s in dead_end.causes]
                )
                if failure is not None:
                    return failure
        for dead_end in trace:
            if dead_end.cycle:
                return CyclicDependencyError(list(dead_end.cycle))
        for dead_end in trace:
            if dead_end.constraint_level:
                return dead_end.to_conflict()
        if trace:
            return trace[0].to_conflict()
        # Unreachable: exhausting the stack requires at least one dead end.
        return ConflictError("<request>", ())  # pragma: no cover

    def _result(self, assignment: Assignment) -> ResolvedSet:
        return ResolvedSet(
            versions=dict(assignment),
            manifests={
                name: self._graph.get_manifest(name, version)
                for name, version in assignment.items()
            },
        )


def _fmt(assignment: Assignment) -> str:
    return ", ".join(f"{n}@{v}" for n, v in sorted(assignment.items())) or "-"


def resolve(
    graph: DependencyGraph, preferred: Mapping[str, Version] | None = None
) -> ResolvedSet:
    """Convenience wrapper: ``DependencyResolver(graph, preferred).resolve()``."""
    return DependencyResolver(graph, preferred).resolve()
