"""Shared fixtures for compak tests.

Provides an in-memory registry (``FakeRegistry``), a package factory that
publishes real content archives into it, and a scratch compose project.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from compak.config import CompakConfig
from compak.core.install.content import build_archive
from compak.core.install.engine import InstallEngine
from compak.core.manifest import Manifest, parse_manifest
from compak.registry.base import compute_digest
from tests.helpers import BASE_COMPOSE, FakeRegistry, manifest_doc


@pytest.fixture
def registry() -> FakeRegistry:
    """An empty in-memory registry."""
    return FakeRegistry()


@pytest.fixture
def make_package(registry: FakeRegistry, tmp_path_factory: pytest.TempPathFactory):
    """Factory publishing a package (manifest + real archive) to ``registry``.

    Keyword arguments are those of ``manifest_doc`` plus ``files``, a
    mapping of relative path to text content (default: one README).
    """

    def _make(
        name: str,
        version: str = "1.0.0",
        *,
        files: dict[str, str] | None = None,
        **doc_kwargs: Any,
    ) -> Manifest:
        source = tmp_path_factory.mktemp(f"src-{name}")
        if files is None:
            files = {"README.md": f"{name} {version}\n"}
        for rel, text in files.items():
            path = source / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text)
        data = build_archive(source)
        manifest = parse_manifest(manifest_doc(name, version, **doc_kwargs))
        return registry.add(manifest.with_digest(compute_digest(data)), data)

    return _make


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A compose project directory with a user-owned base file."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "docker-compose.yml").write_text(BASE_COMPOSE)
    return root


@pytest.fixture
def config(tmp_path: Path) -> CompakConfig:
    return CompakConfig(state_dir=tmp_path / "home", max_workers=4)


@pytest.fixture
def engine(project: Path, registry: FakeRegistry, config: CompakConfig) -> InstallEngine:
    return InstallEngine(project, registry, config)
