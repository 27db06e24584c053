"""Shared helpers for lockfile tests."""

from __future__ import annotations

from compak.core.dependency import ResolvedSet, Version
from compak.core.lockfile import LockEntry, Lockfile
from compak.core.manifest import parse_manifest
from tests.helpers import manifest_doc


def digest_of(char: str) -> str:
    """A well-formed digest made of one repeated hex character."""
    return "sha256:" + char * 64


def make_entry(
    name: str = "web",
    version: str = "1.0.0",
    digest: str | None = None,
    files: list[str] | None = None,
    dependencies: dict[str, str] | None = None,
    values: dict[str, str] | None = None,
    compose_file: str = "",
) -> LockEntry:
    """Convenience factory for LockEntry instances."""
    return LockEntry(
        name=name,
        version=version,
        digest=digest_of("a") if digest is None else digest,
        files=files or [],
        dependencies=dependencies or {},
        values=values or {},
        compose_file=compose_file,
    )


def make_lockfile(*entries: LockEntry, requested: dict[str, str] | None = None) -> Lockfile:
    """Build a Lockfile pre-populated with the given entries."""
    lf = Lockfile()
    for entry in entries:
        lf.add_entry(entry)
    for name, constraint in (requested or {}).items():
        lf.set_requested(name, constraint)
    return lf


def make_resolved(
    versions: dict[str, str],
    digests: dict[str, str] | None = None,
    dependencies: dict[str, dict[str, str]] | None = None,
) -> ResolvedSet:
    """A ResolvedSet over synthetic manifests."""
    manifests = {}
    for name, version in versions.items():
        doc = manifest_doc(name, version, dependencies=(dependencies or {}).get(name))
        doc["digest"] = (digests or {}).get(name, digest_of("a"))
        manifests[name] = parse_manifest(doc)
    return ResolvedSet(
        versions={name: Version.parse(v) for name, v in versions.items()},
        manifests=manifests,
    )
