"""Tests for compak configuration loading.

Verifies:
- Defaults and the derived registry location.
- Layering: config file, then ``COMPAK_*`` environment variables.
- Every invalid setting is reported at once.
- Broken config files raise ValidationError.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from compak.config import CompakConfig
from compak.exceptions import ValidationError


class TestDefaults:
    def test_defaults(self, tmp_path: Path) -> None:
        config = CompakConfig.load(environ={"COMPAK_HOME": str(tmp_path)})
        assert config.state_dir == tmp_path
        assert config.override_file == "docker-compose.compak.yml"
        assert config.lockfile_name == "compak.lock"
        assert config.update_strategy == "requested"
        assert config.max_workers == 8

    def test_registry_defaults_to_state_dir(self, tmp_path: Path) -> None:
        config = CompakConfig(state_dir=tmp_path)
        assert config.registry == str(tmp_path / "registry")
        assert CompakConfig(state_dir=tmp_path, registry_url="https://r.example").registry == (
            "https://r.example"
        )


class TestLoad:
    def test_file_then_environment(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text(
            "timeout: 5\nmax_workers: 2\nregistry_url: /srv/packages\n"
        )
        config = CompakConfig.load(
            environ={"COMPAK_HOME": str(tmp_path), "COMPAK_MAX_WORKERS": "6"}
        )
        assert config.timeout == 5.0
        assert config.max_workers == 6
        assert config.registry_url == "/srv/packages"

    def test_environment_registry(self, tmp_path: Path) -> None:
        config = CompakConfig.load(
            environ={"COMPAK_HOME": str(tmp_path), "COMPAK_REGISTRY": "http://reg:8080"}
        )
        assert config.registry == "http://reg:8080"

    def test_explicit_path(self, tmp_path: Path) -> None:
        path = tmp_path / "custom.yaml"
        path.write_text("update_strategy: locked-floor\n")
        config = CompakConfig.load(path, environ={"COMPAK_HOME": str(tmp_path / "home")})
        assert config.update_strategy == "locked-floor"

    def test_empty_file(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("")
        assert CompakConfig.load(environ={"COMPAK_HOME": str(tmp_path)}).timeout == 30.0

    def test_unknown_keys_kept_as_extra(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("colour: blue\n")
        config = CompakConfig.load(environ={"COMPAK_HOME": str(tmp_path)})
        assert config.extra == {"colour": "blue"}

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("timeout: [1\n")
        with pytest.raises(ValidationError, match="Invalid config file"):
            CompakConfig.load(environ={"COMPAK_HOME": str(tmp_path)})

    def test_non_mapping_file(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("- a\n- b\n")
        with pytest.raises(ValidationError, match="must contain a mapping"):
            CompakConfig.load(environ={"COMPAK_HOME": str(tmp_path)})

    def test_unconvertible_value(self, tmp_path: Path) -> None:
        (tmp_path / "config.yaml").write_text("timeout: soon\n")
        with pytest.raises(ValidationError, match="Invalid configuration"):
            CompakConfig.load(environ={"COMPAK_HOME": str(tmp_path)})


class TestValidation:
    def test_every_problem_reported(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError) as info:
            CompakConfig(
                state_dir=tmp_path,
                timeout=0,
                max_workers=0,
                update_strategy="newest",
                override_file="/abs.yml",
            )
        details = "\n".join(info.value.details)
        assert "timeout must be positive" in details
        assert "max_workers must be >= 1" in details
        assert "update_strategy must be one of" in details
        assert "override_file must be a relative path" in details

    def test_with_overrides(self, tmp_path: Path) -> None:
        config = CompakConfig(state_dir=tmp_path)
        assert config.with_overrides(registry_url=None) is config
        changed = config.with_overrides(registry_url="/r", max_workers=3)
        assert changed.registry == "/r"
        assert changed.max_workers == 3
        assert config.max_workers == 8

    def test_with_overrides_validates(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            CompakConfig(state_dir=tmp_path).with_overrides(max_workers=0)
