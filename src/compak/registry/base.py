"""Registry client interface and shared data models.

Defines the ``RegistryClient`` abstract base class that every registry
backend (directory, HTTP) implements, along with the ``PackageContent`` and
``SearchResult`` models. The engine only ever talks to this interface.

All methods are coroutines so that the graph builder can issue fetches
for independent packages concurrently.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from compak.core.dependency.constraints import Version
    from compak.core.manifest.models import Manifest

logger = logging.getLogger(__name__)


def compute_digest(content: str | bytes) -> str:
    """Compute the SHA-256 digest of package content.

    Returns:
        Digest string in ``sha256:<64-hex-chars>`` format.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PackageContent:
    """A package content archive as served by the registry.

    Attributes:
        data: Raw archive bytes (gzip-compressed tar).
        digest: Digest the registry claims for ``data``.
    """

    data: bytes
    digest: str

    def verify(self) -> bool:
        """True if ``data`` hashes to ``digest``."""
        return compute_digest(self.data) == self.digest


@dataclass(frozen=True)
class SearchResult:
    """A single package returned by a registry search.

    Attributes:
        name: Package name.
        version: Latest version string.
        description: Short description from the manifest.
        author: Author or maintainer name.
        homepage: Project homepage, if any.
    """

    name: str
    version: str
    description: str = ""
    author: str = ""
    homepage: str = ""


# ---------------------------------------------------------------------------
# Abstract registry client
# ---------------------------------------------------------------------------


class RegistryClient(ABC):
    """Abstract base class for package registries.

    Implementations raise ``NotFoundError`` for unknown packages/versions
    and ``UnavailableError`` for transient failures, both carrying the
    package (and version) context.
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of this registry (path or URL)."""

    @abstractmethod
    async def fetch_versions(self, name: str) -> list[Version]:
        """Return every published version of *name* (any order)."""

    @abstractmethod
    async def fetch_manifest(self, name: str, version: Version) -> Manifest:
        """Return the manifest of *name* at *version*."""

    @abstractmethod
    async def fetch_content(self, name: str, version: Version) -> PackageContent:
        """Return the content archive of *name* at *version*."""

    @abstractmethod
    async def search(self, query: str = "", *, limit: int = 20) -> list[SearchResult]:
        """Return packages whose name or description contains *query*."""

    @abstractmethod
    async def publish(self, manifest: Manifest, content: bytes) -> Manifest:
        """Push a manifest and its content archive.

        Returns:
            The manifest as stored, with its digest filled in.
        """

    async def latest_version(self, name: str) -> Version | None:
        """Highest non-pre-release version of *name* (or highest overall)."""
        versions = sorted(await self.fetch_versions(name), reverse=True)
        if not versions:
            return None
        stable = [v for v in versions if not v.is_prerelease]
        return stable[0] if stable else versions[0]

    async def aclose(self) -> None:
        """Release any held resources."""

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
