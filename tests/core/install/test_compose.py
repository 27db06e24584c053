"""Tests for compose fragment namespacing and override-file merging.

Verifies that:
- Mergeable keys are namespaced and references inside a fragment follow.
- References to keys outside the fragment are left alone.
- Conflicting contributions are refused without touching the document.
- Identical reserved values are co-owned; user keys are never removed.
- Removing a package deletes exactly the keys it owns.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from compak.core.install.compose import (
    OWNERSHIP_KEY,
    OverrideDocument,
    namespace_fragment,
    namespaced,
)
from compak.core.manifest import ComposeFragment
from compak.exceptions import FilesystemError, MergeConflictError


def _fragment(**sections: object) -> ComposeFragment:
    return ComposeFragment(sections=sections)


# ===========================================================================
# Namespacing
# ===========================================================================


class TestNamespaceFragment:
    def test_keys_and_references_rewritten(self) -> None:
        fragment = _fragment(
            services={
                "app": {
                    "image": "nginx",
                    "depends_on": ["db", "external"],
                    "networks": ["front"],
                    "volumes": ["data:/var/lib/data", "./local:/srv"],
                    "configs": [{"source": "cfg", "target": "/etc/cfg"}],
                    "secrets": ["token"],
                },
                "db": {"image": "postgres", "network_mode": "service:app"},
            },
            networks={"front": {}},
            volumes={"data": {}},
            configs={"cfg": {"file": "./cfg"}},
            secrets={"token": {"file": "./token"}},
        )
        result = namespace_fragment("web", fragment)
        app = result["services"]["web__app"]
        assert sorted(result["services"]) == ["web__app", "web__db"]
        assert app["depends_on"] == ["web__db", "external"]
        assert app["networks"] == ["web__front"]
        assert app["volumes"] == ["web__data:/var/lib/data", "./local:/srv"]
        assert app["configs"] == [{"source": "web__cfg", "target": "/etc/cfg"}]
        assert app["secrets"] == ["web__token"]
        assert result["services"]["web__db"]["network_mode"] == "service:web__app"
        assert list(result["networks"]) == ["web__front"]
        assert list(result["volumes"]) == ["web__data"]

    def test_long_form_depends_on_and_networks(self) -> None:
        fragment = _fragment(
            services={
                "app": {
                    "depends_on": {"db": {"condition": "service_healthy"}},
                    "networks": {"front": {"aliases": ["app"]}},
                },
                "db": {},
            },
            networks={"front": {}},
        )
        app = namespace_fragment("web", fragment)["services"]["web__app"]
        assert app["depends_on"] == {"web__db": {"condition": "service_healthy"}}
        assert app["networks"] == {"web__front": {"aliases": ["app"]}}

    def test_reserved_keys_pass_through(self) -> None:
        result = namespace_fragment("web", _fragment(name="shop", services={"a": {}}))
        assert result["name"] == "shop"
        assert namespaced("web", "a") in result["services"]

    def test_fragment_not_mutated(self) -> None:
        fragment = _fragment(services={"app": {"depends_on": ["db"]}, "db": {}})
        namespace_fragment("web", fragment)
        assert fragment.sections["services"]["app"]["depends_on"] == ["db"]


# ===========================================================================
# OverrideDocument
# ===========================================================================


class TestOverrideDocument:
    def test_add_records_ownership(self) -> None:
        doc = OverrideDocument({}, "override.yml")
        doc.add("web", _fragment(services={"app": {}}, volumes={"data": {}}))
        assert doc.packages == ["web"]
        assert doc.owned("web") == {"services": ["web__app"], "volumes": ["web__data"]}
        data = doc.to_dict()
        assert data[OWNERSHIP_KEY] == {"web": doc.owned("web")}
        assert "web__app" in data["services"]

    def test_user_keys_survive_add_and_remove(self) -> None:
        user = {"services": {"proxy": {"image": "traefik"}}, "volumes": {"certs": {}}}
        doc = OverrideDocument(user, "override.yml")
        doc.add("web", _fragment(services={"app": {}}))
        doc.remove("web")
        assert doc.to_dict() == user

    def test_remove_keeps_other_package(self) -> None:
        doc = OverrideDocument({}, "override.yml")
        doc.add("web", _fragment(services={"app": {}}, networks={"net": {}}))
        doc.add("api", _fragment(services={"app": {}}))
        assert doc.remove("web") is True
        assert doc.remove("web") is False
        data = doc.to_dict()
        assert list(data["services"]) == ["api__app"]
        assert "networks" not in data
        assert doc.packages == ["api"]

    def test_readd_replaces_previous_contribution(self) -> None:
        doc = OverrideDocument({}, "override.yml")
        doc.add("web", _fragment(services={"old": {}}))
        doc.add("web", _fragment(services={"new": {}}))
        assert list(doc.to_dict()["services"]) == ["web__new"]

    def test_conflicting_readd_keeps_previous_contribution(self) -> None:
        doc = OverrideDocument({}, "o.yml")
        doc.add("a", _fragment(name="shop"))
        doc.add("b", _fragment(services={"app": {}}))
        before = doc.to_dict()
        with pytest.raises(MergeConflictError):
            doc.add("b", _fragment(name="other", services={"worker": {}}))
        assert doc.to_dict() == before
        assert doc.owned("b") == {"services": ["b__app"]}

    def test_readd_may_change_its_own_reserved_value(self) -> None:
        doc = OverrideDocument({}, "o.yml")
        doc.add("a", _fragment(name="shop"))
        doc.add("a", _fragment(name="store"))
        assert doc.to_dict()["name"] == "store"

    def test_namespaced_collision_with_user_key(self) -> None:
        doc = OverrideDocument({"services": {"web__app": {"image": "mine"}}}, "o.yml")
        with pytest.raises(MergeConflictError) as excinfo:
            doc.add("web", _fragment(services={"app": {}}))
        assert excinfo.value.key == "services.web__app"
        assert excinfo.value.packages == ["<user>", "web"]

    def test_reserved_key_conflict_leaves_document_unchanged(self) -> None:
        doc = OverrideDocument({}, "o.yml")
        doc.add("a", _fragment(name="shop"))
        before = doc.to_dict()
        with pytest.raises(MergeConflictError) as excinfo:
            doc.add("b", _fragment(name="other", services={"x": {}}))
        assert excinfo.value.packages == ["a", "b"]
        assert doc.to_dict() == before

    def test_identical_reserved_value_is_co_owned(self) -> None:
        doc = OverrideDocument({}, "o.yml")
        doc.add("a", _fragment(name="shop"))
        doc.add("b", _fragment(name="shop"))
        doc.remove("a")
        assert doc.to_dict()["name"] == "shop"
        doc.remove("b")
        assert "name" not in doc.to_dict()
        assert doc.is_empty

    def test_identical_user_value_stays_with_user(self) -> None:
        doc = OverrideDocument({"name": "shop"}, "o.yml")
        doc.add("a", _fragment(name="shop"))
        assert doc.packages == []
        doc.remove("a")
        assert doc.to_dict() == {"name": "shop"}

    def test_user_reserved_value_conflict(self) -> None:
        doc = OverrideDocument({"name": "mine"}, "o.yml")
        with pytest.raises(MergeConflictError, match="<user>"):
            doc.add("a", _fragment(name="shop"))

    def test_missing_keys(self) -> None:
        doc = OverrideDocument({}, "o.yml")
        doc.add("web", _fragment(name="shop", services={"app": {}}))
        data = doc.to_dict()
        del data["services"]
        del data["name"]
        assert OverrideDocument(data, "o.yml").missing_keys("web") == ["name", "services.web__app"]


class TestOverrideFiles:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        doc = OverrideDocument.load(tmp_path / "absent.yml")
        assert doc.is_empty
        assert doc.file == "absent.yml"

    def test_yaml_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "o.yml"
        doc = OverrideDocument({"services": {"proxy": {}}}, "o.yml")
        doc.add("web", _fragment(services={"app": {"image": "nginx"}}))
        path.write_text(doc.to_yaml())
        loaded = OverrideDocument.load(path)
        assert loaded.to_dict() == doc.to_dict()
        assert yaml.safe_load(path.read_text())["services"]["web__app"] == {"image": "nginx"}

    def test_empty_file_is_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "o.yml"
        path.write_text("")
        assert OverrideDocument.load(path).is_empty

    def test_non_mapping_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "o.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(FilesystemError, match="mapping"):
            OverrideDocument.load(path)

    def test_bad_ownership_region_rejected(self) -> None:
        with pytest.raises(FilesystemError, match=OWNERSHIP_KEY):
            OverrideDocument({OWNERSHIP_KEY: ["web"]}, "o.yml")
