"""Lockfile operations: deserialization, validation, and diffing.

This module extends the ``Lockfile`` class (defined in ``lockfile.py``) with
classmethods and instance methods for:

- **Deserialization:** ``from_dict``, ``from_json``, ``read`` (disk).
- **Validation:** internal consistency checks (dependencies, digests, DAG).

It also provides ``diff``, the pure comparison of a lockfile against a
proposed ``ResolvedSet``.

The methods are attached to the ``Lockfile`` class at import time (in
``__init__.py``) so that callers see a single unified API.
"""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from compak.core.dependency.constraints import Version
from compak.core.lockfile.models import (
    LockDiff,
    LockEntry,
    LockfileMetadata,
    PackageChange,
    _DIGEST_RE,
)
from compak.exceptions import CorruptLockfileError

if TYPE_CHECKING:
    from compak.core.dependency.resolver import ResolvedSet
    from compak.core.lockfile.lockfile import Lockfile


def _expect(value: Any, kind: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(value, kind):
        raise CorruptLockfileError(f"lockfile field {where} has the wrong type")
    return value


def _str_map(value: Any, where: str) -> dict[str, str]:
    _expect(value, dict, where)
    for k, v in value.items():
        if not isinstance(k, str) or not isinstance(v, str):
            raise CorruptLockfileError(f"lockfile field {where} must map strings to strings")
    return dict(value)


def _from_dict(cls: type, data: dict[str, Any]) -> Any:
    """Deserialize a lockfile from a dict (parsed JSON).

    Accepts the dict format produced by ``to_dict()``.

    Raises:
        CorruptLockfileError: If the schema or ``lockfile_version`` is
            not the expected one.
    """
    _expect(data, dict, "<root>")
    version = data.get("lockfile_version")
    if version != cls.LOCKFILE_VERSION:
        raise CorruptLockfileError(f"unsupported lockfile_version {version!r}")

    lf = cls()
    for name, constraint in _str_map(data.get("requested", {}), "requested").items():
        lf.set_requested(name, constraint)

    packages = _expect(data.get("packages", {}), dict, "packages")
    for name, entry in packages.items():
        where = f"packages.{name}"
        _expect(entry, dict, where)
        files = _expect(entry.get("files", []), list, f"{where}.files")
        if any(not isinstance(f, str) for f in files):
            raise CorruptLockfileError(f"lockfile field {where}.files must list strings")
        lf.add_entry(
            LockEntry(
                name=name,
                version=_expect(entry.get("version", ""), str, f"{where}.version"),
                digest=_expect(entry.get("digest", ""), str, f"{where}.digest"),
                files=list(files),
                dependencies=_str_map(entry.get("dependencies", {}), f"{where}.dependencies"),
                values=_str_map(entry.get("values", {}), f"{where}.values"),
                compose_file=_expect(
                    entry.get("compose_file", ""), str, f"{where}.compose_file"
                ),
            )
        )

    meta = _expect(data.get("metadata", {}), dict, "metadata")
    total = meta.get("total_packages", len(lf))
    if not isinstance(total, int) or isinstance(total, bool):
        raise CorruptLockfileError("lockfile field metadata.total_packages must be an integer")
    lf.metadata = LockfileMetadata(
        total_packages=total,
        update_strategy=_expect(
            meta.get("update_strategy", "requested"), str, "metadata.update_strategy"
        ),
    )
    return lf


def _from_json(cls: type, json_str: str) -> Any:
    """Deserialize from a JSON string.

    Raises:
        CorruptLockfileError: If the string is not valid JSON or does not
            match the schema.
    """
    try:
        data = json.loads(json_str)
    except ValueError as exc:
        raise CorruptLockfileError(f"lockfile is not valid JSON: {exc}") from exc
    return cls.from_dict(data)


def _read(cls: type, path: Path) -> Any:
    """Read a lockfile from disk.

    Raises:
        FileNotFoundError: If the file does not exist.
        CorruptLockfileError: If the content cannot be trusted.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptLockfileError(f"{path} is not UTF-8 text") from exc
    return cls.from_json(text)


def _validate(self: Any) -> list[str]:
    """Validate the lockfile for internal consistency.

    Performs the following checks:

    1. **Versions:** every entry version parses as a semantic version.
    2. **Dependency completeness:** every dependency refers to a locked
       package at exactly the locked version.
    3. **No circular dependencies** among locked packages.
    4. **Digest format:** ``sha256:<64-hex-chars>``.
    5. **Files:** relative paths without ``..``.
    6. **Requested set:** every requested package is locked.
    7. **Metadata consistency:** ``total_packages`` matches the entry count.

    Returns:
        List of validation error messages. Empty means the lockfile is
        valid.
    """
    errors: list[str] = []
    entries: dict[str, LockEntry] = {e.name: e for e in self.entries}

    for name, entry in entries.items():
        try:
            Version.parse(entry.version)
        except ValueError:
            errors.append(f"Package {name!r} has invalid version {entry.version!r}")

    for name, entry in entries.items():
        for dep_name, dep_version in sorted(entry.dependencies.items()):
            locked = entries.get(dep_name)
            if locked is None:
                errors.append(
                    f"Package {name!r} depends on {dep_name!r} which is "
                    f"not in the lockfile"
                )
            elif locked.version != dep_version:
                errors.append(
                    f"Package {name!r} depends on {dep_name}@{dep_version} but "
                    f"{dep_name}@{locked.version} is locked"
                )

    # DFS coloring over the dependency mappings.
    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = {name: WHITE for name in entries}

    def _dfs(u: str) -> bool:
        color[u] = GRAY
        for dep_name in sorted(entries[u].dependencies):
            if dep_name not in color:
                continue  # Already reported as missing dependency
            if color[dep_name] == GRAY:
                errors.append(
                    f"Circular dependency detected involving {u!r} and {dep_name!r}"
                )
                return True
            if color[dep_name] == WHITE and _dfs(dep_name):
                return True
        color[u] = BLACK
        return False

    for name in sorted(entries):
        if color[name] == WHITE:
            _dfs(name)

    for name, entry in entries.items():
        if entry.digest and not _DIGEST_RE.match(entry.digest):
            errors.append(f"Package {name!r} has invalid digest {entry.digest!r}")
        for path in entry.files + ([entry.compose_file] if entry.compose_file else []):
            pure = PurePosixPath(path)
            if not path or pure.is_absolute() or ".." in pure.parts:
                errors.append(f"Package {name!r} lists unsafe path {path!r}")

    for name in self.requested:
        if name not in entries:
            errors.append(f"Requested package {name!r} is not in the lockfile")

    if self.metadata.total_packages != len(entries):
        errors.append(
            f"Metadata total_packages ({self.metadata.total_packages}) "
            f"does not match actual count ({len(entries)})"
        )

    return errors


def diff(current: Lockfile, proposed: ResolvedSet) -> LockDiff:
    """Compare the installed state with a proposed resolution.

    Pure and total: every package in either input lands in exactly one of
    ``to_install``, ``to_upgrade``, ``to_remove`` or ``unchanged``. A
    version change in either direction is an upgrade (downgrades are
    flagged, not rejected); an equal version with a different content
    digest is an upgrade as well.
    """
    to_install: list[PackageChange] = []
    to_upgrade: list[PackageChange] = []
    to_remove: list[PackageChange] = []
    unchanged: list[PackageChange] = []

    for name in sorted(set(current.names) | set(proposed)):
        entry = current.get_entry(name)
        if name not in proposed:
            to_remove.append(
                PackageChange(name, before=entry.parsed_version, before_digest=entry.digest)
            )
            continue
        manifest = proposed.manifest(name)
        after = proposed[name]
        if entry is None:
            to_install.append(PackageChange(name, after=after, after_digest=manifest.digest))
            continue
        change = PackageChange(
            name,
            before=entry.parsed_version,
            after=after,
            before_digest=entry.digest,
            after_digest=manifest.digest,
        )
        if change.before == after and entry.digest == manifest.digest:
            unchanged.append(change)
        else:
            to_upgrade.append(change)

    return LockDiff(
        to_install=tuple(to_install),
        to_upgrade=tuple(to_upgrade),
        to_remove=tuple(to_remove),
        unchanged=tuple(unchanged),
    )
