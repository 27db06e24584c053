"""Structured merge of package compose fragments into override files.

An override file is an ordinary compose YAML document that
``docker compose -f docker-compose.yml -f <override>`` layers over the
user's base file. Several packages (and the user) may contribute to the
same override file, so the installer only ever touches what it owns:

- Keys of the mergeable sections (``services``, ``networks``, ``volumes``,
  ``configs``, ``secrets``) are namespaced as ``<package>__<key>``, and
  references between them inside one fragment are rewritten to match.
- Any other top-level key is *reserved*. A package may set it when nobody
  else holds a different value; identical values are co-owned.
- The managed region is the top-level ``x-compak`` extension key, which
  maps each package to the keys it owns. Compose ignores ``x-`` keys.

Removing a package deletes exactly its owned keys and leaves user keys and
other packages' keys intact.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

from compak.core.manifest.models import MERGEABLE_SECTIONS, ComposeFragment
from compak.exceptions import FilesystemError, MergeConflictError

logger = logging.getLogger(__name__)

OWNERSHIP_KEY = "x-compak"
RESERVED = "reserved"
USER_OWNER = "<user>"

_SEPARATOR = "__"


def namespaced(package: str, key: str) -> str:
    """Return the namespaced form of *key* for *package*."""
    return f"{package}{_SEPARATOR}{key}"


# ---------------------------------------------------------------------------
# Reference rewriting
# ---------------------------------------------------------------------------


def _rename(value: Any, local: set[str], package: str) -> Any:
    if isinstance(value, str) and value in local:
        return namespaced(package, value)
    return value


def _rename_prefix(entry: str, local: set[str], package: str) -> str:
    """Rename the ``name`` part of ``name:rest`` strings."""
    head, sep, rest = entry.partition(":")
    if head in local:
        return namespaced(package, head) + sep + rest
    return entry


def _rename_keys_or_items(value: Any, local: set[str], package: str) -> Any:
    """Rename list items or mapping keys (``depends_on``, ``networks``)."""
    if isinstance(value, list):
        return [_rename(v, local, package) for v in value]
    if isinstance(value, dict):
        return {_rename(k, local, package): v for k, v in value.items()}
    return value


def _rename_sources(value: Any, local: set[str], package: str) -> Any:
    """Rename ``configs`` / ``secrets`` service entries (short or long syntax)."""
    if not isinstance(value, list):
        return value
    result = []
    for item in value:
        if isinstance(item, str):
            result.append(_rename(item, local, package))
        elif isinstance(item, dict) and "source" in item:
            item = dict(item)
            item["source"] = _rename(item["source"], local, package)
            result.append(item)
        else:
            result.append(item)
    return result


def _rename_volume_mounts(value: Any, local: set[str], package: str) -> Any:
    if not isinstance(value, list):
        return value
    result = []
    for item in value:
        if isinstance(item, str):
            result.append(_rename_prefix(item, local, package))
        elif isinstance(item, dict) and item.get("type", "volume") == "volume" and "source" in item:
            item = dict(item)
            item["source"] = _rename(item["source"], local, package)
            result.append(item)
        else:
            result.append(item)
    return result


def _rewrite_service(
    service: Any, local: dict[str, set[str]], package: str
) -> Any:
    if not isinstance(service, dict):
        return service
    service = dict(service)
    services = local.get("services", set())
    if "depends_on" in service:
        service["depends_on"] = _rename_keys_or_items(service["depends_on"], services, package)
    if "links" in service and isinstance(service["links"], list):
        service["links"] = [
            _rename_prefix(v, services, package) if isinstance(v, str) else v
            for v in service["links"]
        ]
    if "volumes_from" in service and isinstance(service["volumes_from"], list):
        service["volumes_from"] = [
            _rename_prefix(v, services, package) if isinstance(v, str) else v
            for v in service["volumes_from"]
        ]
    mode = service.get("network_mode")
    if isinstance(mode, str) and mode.startswith("service:"):
        service["network_mode"] = "service:" + _rename(mode[len("service:"):], services, package)
    if "networks" in service:
        service["networks"] = _rename_keys_or_items(
            service["networks"], local.get("networks", set()), package
        )
    if "volumes" in service:
        service["volumes"] = _rename_volume_mounts(
            service["volumes"], local.get("volumes", set()), package
        )
    for section in ("configs", "secrets"):
        if section in service:
            service[section] = _rename_sources(
                service[section], local.get(section, set()), package
            )
    return service


def namespace_fragment(package: str, fragment: ComposeFragment) -> dict[str, Any]:
    """Return the fragment's sections with keys and references namespaced.

    Reserved (non-mergeable) keys are returned unchanged.
    """
    sections = copy.deepcopy(dict(fragment.sections))
    local = {
        section: set(sections.get(section) or {})
        for section in MERGEABLE_SECTIONS
    }
    result: dict[str, Any] = {}
    for key, value in sections.items():
        if key not in MERGEABLE_SECTIONS:
            result[key] = value
            continue
        entries: dict[str, Any] = {}
        for name, body in (value or {}).items():
            if key == "services":
                body = _rewrite_service(body, local, package)
            entries[namespaced(package, name)] = body
        result[key] = entries
    return result


# ---------------------------------------------------------------------------
# OverrideDocument: one override file and its managed region
# ---------------------------------------------------------------------------


class OverrideDocument:
    """An override file being edited in memory.

    Args:
        data: The parsed YAML mapping (copied).
        file: Project-relative file name, used in error messages.
    """

    def __init__(self, data: dict[str, Any] | None = None, file: str = "") -> None:
        self.file = file
        self._data: dict[str, Any] = copy.deepcopy(data or {})
        owners = self._data.get(OWNERSHIP_KEY, {})
        if owners is None:
            owners = {}
        if not isinstance(owners, dict):
            raise FilesystemError(f"{file}: {OWNERSHIP_KEY!r} must be a mapping")
        self._data[OWNERSHIP_KEY] = owners

    @classmethod
    def load(cls, path: Path, file: str = "") -> OverrideDocument:
        """Read *path*; a missing file is an empty document.

        Raises:
            FilesystemError: If the file is not a YAML mapping.
        """
        label = file or path.name
        if not path.exists():
            return cls({}, label)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise FilesystemError(f"cannot read override file {label}: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise FilesystemError(f"override file {label} must contain a mapping")
        return cls(data, label)

    # -- Ownership ----------------------------------------------------------

    @property
    def _owners(self) -> dict[str, dict[str, list[str]]]:
        return self._data[OWNERSHIP_KEY]

    @property
    def packages(self) -> list[str]:
        """Packages that own keys in this file, sorted."""
        return sorted(self._owners)

    def owned(self, package: str) -> dict[str, list[str]]:
        """Section -> owned keys for *package* (``reserved`` for top-level)."""
        return copy.deepcopy(self._owners.get(package, {}))

    def _owner_of(self, section: str, key: str) -> str | None:
        for package in sorted(self._owners):
            if key in self._owners[package].get(section, []):
                return package
        return None

    def _reserved_owners(self, key: str) -> list[str]:
        return sorted(
            p for p, owned in self._owners.items() if key in owned.get(RESERVED, [])
        )

    def missing_keys(self, package: str) -> list[str]:
        """Owned keys of *package* that are no longer in the document."""
        missing: list[str] = []
        for section, keys in sorted(self._owners.get(package, {}).items()):
            for key in keys:
                if section == RESERVED:
                    if key not in self._data:
                        missing.append(key)
                elif key not in (self._data.get(section) or {}):
                    missing.append(f"{section}.{key}")
        return missing

    # -- Editing ------------------------------------------------------------

    def add(self, package: str, fragment: ComposeFragment) -> None:
        """Merge *fragment* as *package*'s contribution.

        Any previous contribution of *package* is replaced. The merge is
        worked out on a copy, so on a conflict the document, including that
        previous contribution, is unchanged.

        Raises:
            MergeConflictError: On a reserved key held with a different
                value, or a namespaced key owned by someone else.
        """
        staged = OverrideDocument(self._data, self.file)
        staged.remove(package)
        staged._merge(package, fragment)
        self._data = staged._data

    def _merge(self, package: str, fragment: ComposeFragment) -> None:
        contribution = namespace_fragment(package, fragment)
        owned: dict[str, list[str]] = {}

        # Check everything before mutating.
        for key, value in contribution.items():
            if key in MERGEABLE_SECTIONS:
                existing = self._data.get(key) or {}
                if not isinstance(existing, dict):
                    raise MergeConflictError(key, self.file, sorted([USER_OWNER, package]))
                for name in value:
                    if name in existing:
                        holder = self._owner_of(key, name) or USER_OWNER
                        raise MergeConflictError(
                            f"{key}.{name}", self.file, sorted([holder, package])
                        )
            elif key in self._data and self._data[key] != value:
                holders = self._reserved_owners(key) or [USER_OWNER]
                raise MergeConflictError(key, self.file, sorted(set(holders) | {package}))

        for key, value in contribution.items():
            if key in MERGEABLE_SECTIONS:
                if not value:
                    continue
                section = self._data.get(key)
                if not isinstance(section, dict):
                    section = {}
                    self._data[key] = section
                section.update(value)
                owned[key] = sorted(value)
            else:
                if key in self._data and not self._reserved_owners(key):
                    # Identical user value: the user keeps ownership.
                    continue
                self._data[key] = value
                owned.setdefault(RESERVED, []).append(key)

        if owned:
            if RESERVED in owned:
                owned[RESERVED].sort()
            self._owners[package] = owned
            logger.debug("Merged %s into %s: %s", package, self.file, owned)

    def remove(self, package: str) -> bool:
        """Remove every key *package* owns. Returns True if it owned any."""
        owned = self._owners.pop(package, None)
        if not owned:
            return False
        for section, keys in owned.items():
            if section == RESERVED:
                for key in keys:
                    if not self._reserved_owners(key):
                        self._data.pop(key, None)
                continue
            entries = self._data.get(section)
            if not isinstance(entries, dict):
                continue
            for key in keys:
                entries.pop(key, None)
            if not entries:
                del self._data[section]
        logger.debug("Removed %s from %s", package, self.file)
        return True

    # -- Output -------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        """True if nothing but an empty managed region remains."""
        return all(k == OWNERSHIP_KEY for k in self._data) and not self._owners

    def to_dict(self) -> dict[str, Any]:
        data = {k: copy.deepcopy(v) for k, v in self._data.items() if k != OWNERSHIP_KEY}
        if self._owners:
            data[OWNERSHIP_KEY] = {p: copy.deepcopy(self._owners[p]) for p in sorted(self._owners)}
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
