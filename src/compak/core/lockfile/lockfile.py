"""Lockfile core class: entry management and serialization.

The ``Lockfile`` class is the central data structure representing a
``compak.lock`` file. It provides:

- **Entry management:** add, get, remove and list installed packages.
- **Requested set:** the user's own constraints, kept verbatim.
- **Serialization:** deterministic ``to_dict`` and ``to_json``.

Determinism guarantee: entries are sorted by name, all dictionary keys are
sorted, and no timestamp is written. Two lockfiles with the same content
always produce byte-identical JSON, so the file diffs cleanly under version
control.

References
----------
.. [npm-lock] npm documentation. "package-lock.json." File format
   guaranteeing deterministic installs across environments.
"""

from __future__ import annotations

import json
from typing import Any

from compak.core.lockfile.models import LockEntry, LockfileMetadata


class Lockfile:
    """Record of what is installed in one compose project.

    Example::

        lf = Lockfile()
        lf.set_requested("web", "^1.0.0")
        lf.add_entry(LockEntry(name="web", version="1.2.0", digest="sha256:..."))
        text = lf.to_json()
    """

    LOCKFILE_VERSION: str = "1"

    def __init__(self) -> None:
        self._entries: dict[str, LockEntry] = {}
        self._requested: dict[str, str] = {}
        self._metadata = LockfileMetadata()

    # -- Entry management ---------------------------------------------------

    def add_entry(self, entry: LockEntry) -> None:
        """Add or replace the entry for ``entry.name``."""
        self._entries[entry.name] = entry
        self._metadata.total_packages = len(self._entries)

    def get_entry(self, name: str) -> LockEntry | None:
        return self._entries.get(name)

    def remove_entry(self, name: str) -> LockEntry | None:
        entry = self._entries.pop(name, None)
        self._metadata.total_packages = len(self._entries)
        return entry

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[LockEntry]:
        """Entries sorted by package name."""
        return [self._entries[name] for name in sorted(self._entries)]

    @property
    def names(self) -> list[str]:
        return sorted(self._entries)

    # -- Requested set ------------------------------------------------------

    @property
    def requested(self) -> dict[str, str]:
        """Package name -> constraint string, as the user asked for it."""
        return dict(sorted(self._requested.items()))

    def set_requested(self, name: str, constraint: str) -> None:
        self._requested[name] = constraint

    def is_requested(self, name: str) -> bool:
        return name in self._requested

    # -- Metadata access ----------------------------------------------------

    @property
    def metadata(self) -> LockfileMetadata:
        return self._metadata

    @metadata.setter
    def metadata(self, value: LockfileMetadata) -> None:
        self._metadata = value

    # -- Serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict matching the lockfile schema.

        Returns:
            A dictionary suitable for JSON serialization.
        """
        packages: dict[str, Any] = {}
        for entry in self.entries:
            packages[entry.name] = {
                "version": entry.version,
                "digest": entry.digest,
                "files": list(entry.files),
                "dependencies": dict(sorted(entry.dependencies.items())),
                "values": dict(sorted(entry.values.items())),
                "compose_file": entry.compose_file,
            }
        return {
            "lockfile_version": self.LOCKFILE_VERSION,
            "generated_by": "compak",
            "requested": self.requested,
            "packages": packages,
            "metadata": {
                "total_packages": self._metadata.total_packages,
                "update_strategy": self._metadata.update_strategy,
            },
        }

    def to_json(self, indent: int = 2) -> str:
        """Serialize to a deterministic JSON string ending in a newline."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True) + "\n"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Lockfile):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"Lockfile({', '.join(f'{e.name}@{e.version}' for e in self.entries)})"

    def copy(self) -> Lockfile:
        """Return an independent deep copy."""
        return type(self).from_dict(self.to_dict())  # type: ignore[attr-defined]
