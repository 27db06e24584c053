"""Tests for LockfileManager: persistence and drift detection."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from compak.core.install.compose import OverrideDocument
from compak.core.lockfile import LockfileManager
from compak.core.manifest import ComposeFragment
from compak.exceptions import CorruptLockfileError, LockfileError

from tests.core.lockfile.conftest import make_entry, make_lockfile

OVERRIDE = "docker-compose.compak.yml"


def _write_override(project: Path, *packages: str) -> None:
    document = OverrideDocument({}, OVERRIDE)
    for name in packages:
        document.add(name, ComposeFragment(sections={"services": {"app": {"image": name}}}))
    (project / OVERRIDE).write_text(document.to_yaml())


class TestPersistence:
    def test_missing_lockfile_loads_empty(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path)
        assert not manager.exists()
        assert len(manager.load()) == 0

    def test_save_then_load(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path)
        lf = make_lockfile(make_entry("web"), requested={"web": "*"})
        manager.save(lf)
        assert manager.exists()
        assert manager.load() == lf
        assert manager.path.read_text().endswith("\n")

    def test_save_leaves_no_temporary_files(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path, "custom.lock")
        manager.save(make_lockfile(make_entry()))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["custom.lock"]

    def test_invalid_lockfile_not_saved(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path)
        lf = make_lockfile(make_entry(dependencies={"ghost": "1.0.0"}))
        with pytest.raises(LockfileError, match="refusing to save"):
            manager.save(lf)
        assert not manager.exists()

    def test_corrupt_lockfile_refused(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path)
        manager.path.write_text('{"lockfile_version": "1", "packages": [')
        with pytest.raises(CorruptLockfileError):
            manager.load()

    def test_inconsistent_lockfile_refused(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path)
        lf = make_lockfile(make_entry())
        data = lf.to_json().replace('"total_packages": 1', '"total_packages": 5')
        manager.path.write_text(data)
        with pytest.raises(CorruptLockfileError, match="failed validation"):
            manager.load()

    def test_binary_lockfile_refused(self, tmp_path: Path) -> None:
        manager = LockfileManager(tmp_path)
        manager.path.write_bytes(b"\xff\xfe\x00")
        with pytest.raises(CorruptLockfileError, match="UTF-8"):
            manager.load()


class TestDrift:
    """detect_drift compares the lockfile with the project directory."""

    def test_clean_project(self, tmp_path: Path) -> None:
        (tmp_path / "compak" / "web").mkdir(parents=True)
        (tmp_path / "compak" / "web" / "a.conf").write_text("x")
        _write_override(tmp_path, "web")
        lf = make_lockfile(
            make_entry("web", files=["compak/web/a.conf"], compose_file=OVERRIDE)
        )
        report = LockfileManager(tmp_path).detect_drift(lf)
        assert report.is_clean
        assert report.summary() == []

    def test_missing_file_reported(self, tmp_path: Path) -> None:
        lf = make_lockfile(make_entry("web", files=["compak/web/a.conf"]))
        report = LockfileManager(tmp_path).detect_drift(lf)
        assert report.missing_files == [("web", "compak/web/a.conf")]
        assert report.summary() == ["web: missing compak/web/a.conf"]

    def test_unmanaged_package_reported(self, tmp_path: Path) -> None:
        _write_override(tmp_path, "web", "stray")
        lf = make_lockfile(make_entry("web", compose_file=OVERRIDE))
        report = LockfileManager(tmp_path).detect_drift(lf)
        assert report.unmanaged_packages == ["stray"]
        assert not report.is_clean

    def test_unlocked_override_file_inspected_on_request(self, tmp_path: Path) -> None:
        _write_override(tmp_path, "stray")
        manager = LockfileManager(tmp_path)
        assert manager.detect_drift(make_lockfile()).is_clean
        report = manager.detect_drift(make_lockfile(), override_files=[OVERRIDE])
        assert report.unmanaged_packages == ["stray"]

    def test_hand_removed_key_reported(self, tmp_path: Path) -> None:
        _write_override(tmp_path, "web")
        data = yaml.safe_load((tmp_path / OVERRIDE).read_text())
        del data["services"]["web__app"]
        (tmp_path / OVERRIDE).write_text(yaml.safe_dump(data))
        lf = make_lockfile(make_entry("web", compose_file=OVERRIDE))
        report = LockfileManager(tmp_path).detect_drift(lf)
        assert any("web__app is missing" in m for m in report.ownership_mismatches)

    def test_locked_package_absent_from_override(self, tmp_path: Path) -> None:
        (tmp_path / OVERRIDE).write_text("services: {}\n")
        lf = make_lockfile(make_entry("web", compose_file=OVERRIDE))
        report = LockfileManager(tmp_path).detect_drift(lf)
        assert report.ownership_mismatches == [
            f"web: locked to {OVERRIDE} but owns nothing there"
        ]

    def test_unreadable_override_reported(self, tmp_path: Path) -> None:
        (tmp_path / OVERRIDE).write_text("- not\n- a mapping\n")
        lf = make_lockfile(make_entry("web", compose_file=OVERRIDE))
        report = LockfileManager(tmp_path).detect_drift(lf)
        assert len(report.ownership_mismatches) == 1
        assert report.ownership_mismatches[0].startswith(f"{OVERRIDE}:")
