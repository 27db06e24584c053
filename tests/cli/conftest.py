"""Shared fixtures for CLI tests.

Every test gets an isolated ``COMPAK_HOME``, a compose project and an
empty directory registry. ``write_package`` lays out a package source
directory that ``compak publish`` accepts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from click.testing import CliRunner, Result

from compak.cli.main import cli
from tests.helpers import BASE_COMPOSE, manifest_doc


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("COMPAK_HOME", str(home))
    for var in ("COMPAK_REGISTRY", "COMPAK_MAX_WORKERS", "COMPAK_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "docker-compose.yml").write_text(BASE_COMPOSE)
    return root


@pytest.fixture
def registry_dir(tmp_path: Path) -> Path:
    return tmp_path / "registry"


@pytest.fixture
def write_package(tmp_path: Path):
    """Factory creating a package source directory; returns its path."""

    def _write(name: str, version: str = "1.0.0", **doc_kwargs: Any) -> Path:
        source = tmp_path / "sources" / f"{name}-{version}"
        source.mkdir(parents=True)
        doc = manifest_doc(name, version, **doc_kwargs)
        (source / "package.yaml").write_text(yaml.safe_dump(doc))
        (source / "README.md").write_text(f"{name} {version}\n")
        return source

    return _write


@pytest.fixture
def compak(runner: CliRunner, project: Path, registry_dir: Path):
    """Invoke ``compak -C <project> -r <registry> ARGS...``."""

    def _invoke(*args: str) -> Result:
        return runner.invoke(
            cli, ["-C", str(project), "-r", str(registry_dir), *args]
        )

    return _invoke


@pytest.fixture
def published(compak, write_package) -> None:
    """Publish web 1.0.0 (depending on net ^2.0.0) and net 2.1.0."""
    for source in (
        write_package("net", "2.1.0", description="Shared network"),
        write_package(
            "web",
            "1.0.0",
            description="Nginx front end",
            dependencies={"net": "^2.0.0"},
            compose={"services": {"app": {"image": "nginx"}}},
            parameters={"PORT": {"default": 8080}},
        ),
    ):
        result = compak("publish", str(source))
        assert result.exit_code == 0, result.output
