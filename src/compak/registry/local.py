"""Directory-backed registry.

Layout::

    <root>/
      <name>/
        <version>/
          package.yaml       # manifest, digest filled in
          content.tar.gz     # content archive

Used for offline work, ``file://`` registries and as the default registry
under ``~/.compak/registry``. Published versions are immutable.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import yaml

from compak.core.dependency.constraints import Version
from compak.core.manifest.models import Manifest
from compak.core.manifest.parser import parse_manifest, validate_package_name
from compak.exceptions import (
    IntegrityError,
    MalformedManifestError,
    NotFoundError,
    RegistryError,
    UnavailableError,
)
from compak.fsio import atomic_write
from compak.registry.base import (
    PackageContent,
    RegistryClient,
    SearchResult,
    compute_digest,
)

logger = logging.getLogger(__name__)

MANIFEST_FILE = "package.yaml"
CONTENT_FILE = "content.tar.gz"


class LocalRegistry(RegistryClient):
    """Registry stored in a local directory tree.

    Args:
        root: The registry root directory. Created on first publish.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()

    @property
    def location(self) -> str:
        return str(self.root)

    def _package_dir(self, name: str) -> Path:
        try:
            validate_package_name(name)
        except ValueError as exc:
            raise NotFoundError(str(exc), name) from exc
        return self.root / name

    def _version_dir(self, name: str, version: Version) -> Path:
        return self._package_dir(name) / str(version)

    @staticmethod
    def _read(path: Path, name: str, version: Version | None = None) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(
                f"{path.name} not found", name, str(version) if version else None
            ) from exc
        except OSError as exc:
            raise UnavailableError(
                f"cannot read {path}: {exc}", name, str(version) if version else None
            ) from exc

    # -- Fetching -------------------------------------------------------------

    async def fetch_versions(self, name: str) -> list[Version]:
        return await asyncio.to_thread(self._list_versions, name)

    def _list_versions(self, name: str) -> list[Version]:
        pkg_dir = self._package_dir(name)
        if not pkg_dir.is_dir():
            raise NotFoundError("no such package", name)
        versions: list[Version] = []
        for child in sorted(pkg_dir.iterdir()):
            if not (child / MANIFEST_FILE).is_file():
                continue
            try:
                versions.append(Version.parse(child.name))
            except ValueError:
                logger.warning("Ignoring non-version entry %s in registry", child)
        return sorted(versions, reverse=True)

    async def fetch_manifest(self, name: str, version: Version) -> Manifest:
        path = self._version_dir(name, version) / MANIFEST_FILE
        raw = await asyncio.to_thread(self._read, path, name, version)
        manifest = parse_manifest(raw)
        if manifest.name != name or manifest.version != version:
            raise MalformedManifestError(
                f"stored manifest declares {manifest.id}", name, str(version)
            )
        return manifest

    async def fetch_content(self, name: str, version: Version) -> PackageContent:
        path = self._version_dir(name, version) / CONTENT_FILE
        data = await asyncio.to_thread(self._read, path, name, version)
        return PackageContent(data=data, digest=compute_digest(data))

    # -- Search -------------------------------------------------------------

    async def search(self, query: str = "", *, limit: int = 20) -> list[SearchResult]:
        return await asyncio.to_thread(self._search, query, limit)

    def _search(self, query: str, limit: int) -> list[SearchResult]:
        if not self.root.is_dir():
            return []
        needle = query.lower()
        results: list[SearchResult] = []
        for pkg_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            if len(results) >= limit:
                break
            try:
                versions = self._list_versions(pkg_dir.name)
            except NotFoundError:
                continue
            if not versions:
                continue
            stable = [v for v in versions if not v.is_prerelease]
            latest = (stable or versions)[0]
            try:
                manifest = parse_manifest(
                    (pkg_dir / str(latest) / MANIFEST_FILE).read_bytes()
                )
            except (OSError, MalformedManifestError):
                logger.warning("Skipping unreadable manifest for %s", pkg_dir.name, exc_info=True)
                continue
            if needle and needle not in manifest.name and needle not in manifest.description.lower():
                continue
            results.append(
                SearchResult(
                    name=manifest.name,
                    version=str(manifest.version),
                    description=manifest.description,
                    author=manifest.author,
                    homepage=manifest.homepage,
                )
            )
        return results

    # -- Publishing ---------------------------------------------------------

    async def publish(self, manifest: Manifest, content: bytes) -> Manifest:
        return await asyncio.to_thread(self._publish, manifest, content)

    def _publish(self, manifest: Manifest, content: bytes) -> Manifest:
        digest = compute_digest(content)
        if manifest.digest and manifest.digest != digest:
            raise IntegrityError(
                f"{manifest.id}: manifest digest {manifest.digest} does not "
                f"match content digest {digest}"
            )
        target = self._version_dir(manifest.name, manifest.version)
        if (target / MANIFEST_FILE).exists():
            raise RegistryError(
                "version already published", manifest.name, str(manifest.version)
            )
        stamped = manifest.with_digest(digest)
        document = yaml.safe_dump(stamped.to_dict(), sort_keys=False, default_flow_style=False)
        try:
            # Content first: a version is only listed once its manifest exists.
            atomic_write(target / CONTENT_FILE, content)
            atomic_write(target / MANIFEST_FILE, document)
        except OSError as exc:
            raise RegistryError(
                f"cannot write to {target}: {exc}", manifest.name, str(manifest.version)
            ) from exc
        logger.info("Published %s to %s", stamped.id, self.root)
        return stamped
