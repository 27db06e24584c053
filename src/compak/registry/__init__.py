"""Package registries: where manifests and content archives come from.

Provides the abstract ``RegistryClient`` and two backends: a directory
registry and an HTTP registry.

Public API::

    from compak.registry import RegistryClient, open_registry
    from compak.registry.local import LocalRegistry
    from compak.registry.http_registry import HttpRegistry
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from compak.registry.base import (
    PackageContent,
    RegistryClient,
    SearchResult,
    compute_digest,
)


def open_registry(url: str, **http_options: Any) -> RegistryClient:
    """Open the registry at *url*.

    ``http://`` and ``https://`` URLs give an ``HttpRegistry`` (configured
    with *http_options*); ``file://`` URLs and plain paths give a
    ``LocalRegistry``.

    Raises:
        ValueError: For any other URL scheme.
    """
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https"):
        from compak.registry.http_registry import HttpRegistry

        return HttpRegistry(url, **http_options)

    from compak.registry.local import LocalRegistry

    if parsed.scheme == "file":
        return LocalRegistry(Path(unquote(parsed.path)))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ValueError(f"Unsupported registry URL scheme: {parsed.scheme!r}")
    return LocalRegistry(Path(url))


__all__ = [
    "PackageContent",
    "RegistryClient",
    "SearchResult",
    "compute_digest",
    "open_registry",
]
