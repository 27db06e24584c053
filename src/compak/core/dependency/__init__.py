"""Dependency graph construction and version resolution.

This package turns a request (package names with version constraints) into
one concrete version per required package:

- ``constraints``: ``Version``, ``VersionConstraint``, ``Dependency`` and
  ``ConstraintSource`` value types.
- ``graph``: the ``DependencyGraph`` with accumulated constraints per node.
- ``builder``: ``GraphBuilder``, which fills the graph from a registry.
- ``resolver``: ``DependencyResolver``, the backtracking search producing a
  ``ResolvedSet`` or raising ``ConflictError``.

All public names are re-exported here so callers can write
``from compak.core.dependency import X``.
"""

from compak.core.dependency.constraints import (
    REQUEST_SOURCE,
    ConstraintSource,
    Dependency,
    Version,
    VersionConstraint,
    parse_version,
    sort_versions,
)
from compak.core.dependency.graph import (
    DependencyGraph,
    PackageNode,
)
from compak.core.dependency.builder import GraphBuilder
from compak.core.dependency.resolver import (
    DependencyResolver,
    ResolvedSet,
    resolve,
)

__all__ = [
    "REQUEST_SOURCE",
    "ConstraintSource",
    "Dependency",
    "Version",
    "VersionConstraint",
    "parse_version",
    "sort_versions",
    "DependencyGraph",
    "PackageNode",
    "GraphBuilder",
    "DependencyResolver",
    "ResolvedSet",
    "resolve",
]
