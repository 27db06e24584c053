"""Lockfile data models: LockEntry, LockfileMetadata, diff and drift results.

Pure data holders (dataclasses) with no business logic, safe to import
without circular-dependency concerns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from compak.core.dependency.constraints import Version

# ---------------------------------------------------------------------------
# Content digest format: "sha256:<64-hex-characters>"
# ---------------------------------------------------------------------------

_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


# ---------------------------------------------------------------------------
# LockEntry: A single entry in the lockfile
# ---------------------------------------------------------------------------


@dataclass
class LockEntry:
    """One installed package.

    Attributes:
        name: Package name (e.g., "web").
        version: Installed semantic version (e.g., "1.2.3").
        digest: Content archive digest in "sha256:<hex>" format.
        files: Paths written into the project for this package, relative
            to the project root. Kept sorted and unique.
        dependencies: Mapping of dependency name to installed version.
        values: User-supplied parameter values (defaults are not stored).
        compose_file: Override file the package contributes to, or "".
    """

    name: str
    version: str
    digest: str = ""
    files: list[str] = field(default_factory=list)
    dependencies: dict[str, str] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)
    compose_file: str = ""

    def __post_init__(self) -> None:
        self.files = sorted(set(self.files))

    @property
    def parsed_version(self) -> Version:
        return Version.parse(self.version)


# ---------------------------------------------------------------------------
# LockfileMetadata: Top-level metadata section
# ---------------------------------------------------------------------------


@dataclass
class LockfileMetadata:
    """Metadata section of the lockfile.

    Attributes:
        total_packages: Expected number of package entries. Used during
            validation to detect incomplete writes.
        update_strategy: Strategy of the last resolution ("requested" or
            "locked-floor").
    """

    total_packages: int = 0
    update_strategy: str = "requested"


# ---------------------------------------------------------------------------
# Diff results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PackageChange:
    """How one package differs between the lockfile and a proposed set.

    Attributes:
        name: Package name.
        before: Locked version, or None when newly installed.
        after: Proposed version, or None when removed.
        before_digest: Locked content digest.
        after_digest: Proposed content digest.
    """

    name: str
    before: Version | None = None
    after: Version | None = None
    before_digest: str = ""
    after_digest: str = ""

    @property
    def is_downgrade(self) -> bool:
        return (
            self.before is not None
            and self.after is not None
            and self.after < self.before
        )

    @property
    def is_reinstall(self) -> bool:
        """Same version, different content digest."""
        return self.before is not None and self.before == self.after

    def __str__(self) -> str:
        if self.before is None:
            return f"+ {self.name} {self.after}"
        if self.after is None:
            return f"- {self.name} {self.before}"
        if self.before == self.after:
            return f"  {self.name} {self.after}"
        return f"~ {self.name} {self.before} -> {self.after}"


@dataclass(frozen=True)
class LockDiff:
    """Classification of every package into exactly one category.

    All tuples are sorted by package name.
    """

    to_install: tuple[PackageChange, ...] = ()
    to_upgrade: tuple[PackageChange, ...] = ()
    to_remove: tuple[PackageChange, ...] = ()
    unchanged: tuple[PackageChange, ...] = ()

    @property
    def is_empty(self) -> bool:
        """True if applying the diff would change nothing."""
        return not (self.to_install or self.to_upgrade or self.to_remove)

    @property
    def changed(self) -> tuple[PackageChange, ...]:
        return tuple(
            sorted(
                self.to_install + self.to_upgrade + self.to_remove,
                key=lambda c: c.name,
            )
        )

    @property
    def names(self) -> list[str]:
        """Every package name in the diff, sorted."""
        return sorted(
            c.name
            for c in self.to_install + self.to_upgrade + self.to_remove + self.unchanged
        )


# ---------------------------------------------------------------------------
# Drift report
# ---------------------------------------------------------------------------


@dataclass
class DriftReport:
    """Disagreements between the lockfile and the live project directory.

    Attributes:
        missing_files: (package, relative path) pairs listed in the
            lockfile but absent on disk.
        ownership_mismatches: Human-readable descriptions of override-file
            ownership entries that disagree with the lockfile.
        unmanaged_packages: Packages that own keys in an override file but
            are not in the lockfile.
    """

    missing_files: list[tuple[str, str]] = field(default_factory=list)
    ownership_mismatches: list[str] = field(default_factory=list)
    unmanaged_packages: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (
            self.missing_files or self.ownership_mismatches or self.unmanaged_packages
        )

    def summary(self) -> list[str]:
        lines = [f"{pkg}: missing {path}" for pkg, path in self.missing_files]
        lines.extend(self.ownership_mismatches)
        lines.extend(
            f"{pkg}: present in an override file but not locked"
            for pkg in self.unmanaged_packages
        )
        return lines
