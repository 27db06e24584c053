"""Lockfile factory: constructing lockfiles from resolution results.

``from_resolution`` turns the ``ResolvedSet`` produced by the resolver,
plus what the installer wrote for each package, into the new ``Lockfile``
that a transaction commits::

    resolved = DependencyResolver(graph).resolve()
    lockfile = Lockfile.from_resolution(resolved, requested, files=..., values=...)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

from compak.core.lockfile.models import LockEntry

if TYPE_CHECKING:
    from compak.core.dependency.resolver import ResolvedSet


def _from_resolution(
    cls: type,
    resolved: ResolvedSet,
    requested: Mapping[str, str],
    files: Mapping[str, list[str]] | None = None,
    values: Mapping[str, Mapping[str, str]] | None = None,
    compose_files: Mapping[str, str] | None = None,
    update_strategy: str = "requested",
) -> Any:
    """Create a lockfile from a resolved set.

    Args:
        resolved: The resolver output.
        requested: The user's constraints (name -> raw constraint).
        files: Project-relative paths written per package.
        values: Parameter values used per package.
        compose_files: Override file each package contributes to.
        update_strategy: Recorded in the metadata section.

    Returns:
        A new ``Lockfile`` with one entry per resolved package.
    """
    lf = cls()
    for name, constraint in sorted(requested.items()):
        lf.set_requested(name, constraint)

    for name, version in resolved.items():
        manifest = resolved.manifest(name)
        lf.add_entry(
            LockEntry(
                name=name,
                version=str(version),
                digest=manifest.digest,
                files=list((files or {}).get(name, [])),
                dependencies={
                    dep: str(v) for dep, v in resolved.dependencies_of(name).items()
                },
                values=dict((values or {}).get(name, {})),
                compose_file=(compose_files or {}).get(name, ""),
            )
        )
    lf.metadata.update_strategy = update_strategy
    return lf
