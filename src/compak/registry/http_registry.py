"""HTTP registry backend.

Speaks a small JSON protocol::

    GET  /packages/{name}                      -> {"versions": ["1.0.0", ...]}
    GET  /packages/{name}/{version}            -> manifest document
    GET  /packages/{name}/{version}/content    -> archive bytes
                                                  (header X-Content-Digest)
    GET  /search?q=...&limit=...               -> {"results": [...]}
    PUT  /packages/{name}/{version}            <- {"manifest": ..., "content": base64}

Usage::

    async with HttpRegistry("https://registry.example.com") as registry:
        versions = await registry.fetch_versions("web")
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from compak.core.dependency.constraints import Version
from compak.core.manifest.models import Manifest
from compak.core.manifest.parser import parse_manifest
from compak.exceptions import IntegrityError, MalformedManifestError, RegistryError
from compak.registry.base import (
    PackageContent,
    RegistryClient,
    SearchResult,
    compute_digest,
)
from compak.registry.http_client import DEFAULT_TIMEOUT, RegistryHttpClient

logger = logging.getLogger(__name__)

DIGEST_HEADER = "X-Content-Digest"


class HttpRegistry(RegistryClient):
    """Registry client for a compak HTTP registry."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        **client_kwargs: Any,
    ) -> None:
        self._http = RegistryHttpClient(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff_base=backoff_base,
            transport=transport,
            **client_kwargs,
        )

    @property
    def location(self) -> str:
        return self._http.base_url

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch_versions(self, name: str) -> list[Version]:
        data = await self._http.get_json(f"packages/{name}", package=name)
        raw = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            raise RegistryError("malformed version list", name)
        versions: list[Version] = []
        for item in raw:
            try:
                versions.append(Version.parse(str(item)))
            except ValueError as exc:
                raise MalformedManifestError(str(exc), name) from exc
        logger.info("Fetched %d version(s) of %s", len(versions), name)
        return versions

    async def fetch_manifest(self, name: str, version: Version) -> Manifest:
        data = await self._http.get_json(
            f"packages/{name}/{version}", package=name, version=str(version)
        )
        if not isinstance(data, dict):
            raise MalformedManifestError("manifest must be a mapping", name, str(version))
        return parse_manifest(data)

    async def fetch_content(self, name: str, version: Version) -> PackageContent:
        resp = await self._http.get_bytes(
            f"packages/{name}/{version}/content", package=name, version=str(version)
        )
        data = resp.content
        digest = resp.headers.get(DIGEST_HEADER) or compute_digest(data)
        logger.info("Fetched content of %s@%s (%d bytes)", name, version, len(data))
        return PackageContent(data=data, digest=digest)

    async def search(self, query: str = "", *, limit: int = 20) -> list[SearchResult]:
        data = await self._http.get_json(
            "search", params={"q": query, "limit": str(limit)}
        )
        items = data.get("results", []) if isinstance(data, dict) else data
        results: list[SearchResult] = []
        for item in items or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            results.append(
                SearchResult(
                    name=str(item["name"]),
                    version=str(item.get("version", "")),
                    description=str(item.get("description", "") or ""),
                    author=str(item.get("author", "") or ""),
                    homepage=str(item.get("homepage", "") or ""),
                )
            )
        return results[:limit]

    async def publish(self, manifest: Manifest, content: bytes) -> Manifest:
        digest = compute_digest(content)
        if manifest.digest and manifest.digest != digest:
            raise IntegrityError(
                f"{manifest.id}: manifest digest {manifest.digest} does not "
                f"match content digest {digest}"
            )
        stamped = manifest.with_digest(digest)
        payload = {
            "manifest": stamped.to_dict(),
            "content": base64.b64encode(content).decode("ascii"),
        }
        resp = await self._http.request(
            "PUT",
            f"packages/{manifest.name}/{manifest.version}",
            package=manifest.name,
            version=str(manifest.version),
            json=payload,
        )
        logger.info("Published %s to %s", stamped.id, self.location)
        if resp.content:
            try:
                return parse_manifest(resp.json())
            except ValueError:
                logger.debug("Publish response for %s is not JSON", stamped.id)
        return stamped
