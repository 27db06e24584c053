"""Test helpers: an in-memory registry and manifest builders."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from compak.core.dependency.constraints import Version
from compak.core.manifest import Manifest
from compak.exceptions import IntegrityError, NotFoundError, RegistryError
from compak.registry.base import (
    PackageContent,
    RegistryClient,
    SearchResult,
    compute_digest,
)

BASE_COMPOSE = "services:\n  db:\n    image: postgres:16\n"


class FakeRegistry(RegistryClient):
    """In-memory registry that records every call.

    ``fail(kind, name, exc)`` makes the next matching call raise *exc*;
    ``kind`` is one of "versions", "manifest", "content".
    """

    def __init__(self) -> None:
        self.manifests: dict[str, dict[Version, Manifest]] = {}
        self.contents: dict[tuple[str, Version], bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], Exception] = {}

    @property
    def location(self) -> str:
        return "memory://registry"

    def add(self, manifest: Manifest, content: bytes = b"") -> Manifest:
        self.manifests.setdefault(manifest.name, {})[manifest.version] = manifest
        self.contents[(manifest.name, manifest.version)] = content
        return manifest

    def fail(self, kind: str, name: str, exc: Exception) -> None:
        self._failures[(kind, name)] = exc

    def _record(self, kind: str, name: str) -> None:
        self.calls.append((kind, name))
        exc = self._failures.pop((kind, name), None)
        if exc is not None:
            raise exc

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    async def fetch_versions(self, name: str) -> list[Version]:
        self._record("versions", name)
        if name not in self.manifests:
            raise NotFoundError("no such package", name)
        return list(self.manifests[name])

    async def fetch_manifest(self, name: str, version: Version) -> Manifest:
        self._record("manifest", name)
        try:
            return self.manifests[name][version]
        except KeyError:
            raise NotFoundError("no such version", name, str(version)) from None

    async def fetch_content(self, name: str, version: Version) -> PackageContent:
        self._record("content", name)
        data = self.contents.get((name, version))
        if data is None:
            raise NotFoundError("no content", name, str(version))
        return PackageContent(data=data, digest=compute_digest(data))

    async def search(self, query: str = "", *, limit: int = 20) -> list[SearchResult]:
        results = []
        for name in sorted(self.manifests):
            latest = self.manifests[name][max(self.manifests[name])]
            if query in name or query in latest.description:
                results.append(SearchResult(name, str(latest.version), latest.description))
        return results[:limit]

    async def publish(self, manifest: Manifest, content: bytes) -> Manifest:
        digest = compute_digest(content)
        if manifest.digest and manifest.digest != digest:
            raise IntegrityError(f"{manifest.id}: digest mismatch")
        if manifest.version in self.manifests.get(manifest.name, {}):
            raise RegistryError("version already published", manifest.name)
        return self.add(manifest.with_digest(digest), content)


def manifest_doc(
    name: str,
    version: str = "1.0.0",
    *,
    dependencies: dict[str, str] | None = None,
    compose: dict[str, Any] | None = None,
    parameters: dict[str, Any] | None = None,
    values: dict[str, str] | None = None,
    description: str = "",
) -> dict[str, Any]:
    """Build a manifest document (the ``package.yaml`` mapping)."""
    doc: dict[str, Any] = {"name": name, "version": version}
    if description:
        doc["description"] = description
    if dependencies:
        doc["dependencies"] = dependencies
    if compose is not None:
        doc["compose"] = compose
    if parameters:
        doc["parameters"] = parameters
    if values:
        doc["values"] = values
    return doc


def snapshot(root: Path) -> dict[str, bytes]:
    """Every file under *root* (relative path -> bytes), lock file excluded."""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and p.name != "project.lock"
    }
