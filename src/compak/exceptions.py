"""compak exception hierarchy.

All public exceptions inherit from CompakError, giving callers a single
base class to catch when they want to handle any compak-specific failure
without swallowing unrelated errors.

Errors raised by leaf components (manifest parsing, registry fetches) carry
the package name and version they concern, so that no bare low-level error
reaches the caller without that context.
"""

from __future__ import annotations

from dataclasses import dataclass


class CompakError(Exception):
    """Base exception for all compak errors."""


def _context(package: str | None, version: str | None) -> str:
    if package and version:
        return f"{package}@{version}"
    return package or ""


class MalformedManifestError(CompakError):
    """Raised when a package manifest fails validation.

    Non-retryable. Covers unparsable versions or constraints, duplicate
    dependency keys, invalid package names, and malformed compose fragments.
    """

    def __init__(
        self,
        message: str,
        package: str | None = None,
        version: str | None = None,
    ) -> None:
        ctx = _context(package, version)
        super().__init__(f"{ctx}: {message}" if ctx else message)
        self.package = package
        self.version = version


class RegistryError(CompakError):
    """Raised when the registry cannot serve a request.

    Carries the package/version the request was about. Subclasses separate
    transient failures (``UnavailableError``) from missing data
    (``NotFoundError``).
    """

    def __init__(
        self,
        message: str,
        package: str | None = None,
        version: str | None = None,
    ) -> None:
        ctx = _context(package, version)
        super().__init__(f"{ctx}: {message}" if ctx else message)
        self.package = package
        self.version = version


class UnavailableError(RegistryError):
    """Transient registry failure (timeout, connection error, 5xx). Retryable."""


class NotFoundError(RegistryError):
    """The registry has no such package or version."""


class PackageNotFoundError(CompakError):
    """A requested or depended-upon package does not exist in the registry."""

    def __init__(self, package: str, required_by: str = "<request>") -> None:
        super().__init__(
            f"Package {package!r} not found in registry "
            f"(required by {required_by})"
        )
        self.package = package
        self.required_by = required_by


class ResolutionError(CompakError):
    """Raised when dependency resolution fails.

    Covers unsatisfiable version constraints and circular dependencies.
    """


@dataclass(frozen=True)
class ConflictCause:
    """One constraint that contributes to a conflict.

    Attributes:
        package: The package the constraint applies to.
        constraint: The raw constraint string.
        source: Who imposed it: ``"<request>"`` or ``"name@version"``.
    """

    package: str
    constraint: str
    source: str

    def __str__(self) -> str:
        return f"{self.source} requires {self.package} {self.constraint}"


class ConflictError(ResolutionError):
    """No assignment of versions satisfies every constraint.

    Attributes:
        package: The package where the search ran out of candidates.
        causes: Minimal set of constraints that jointly leave no version
            of ``package`` satisfiable.
    """

    def __init__(self, package: str, causes: tuple[ConflictCause, ...]) -> None:
        lines = "; ".join(str(c) for c in causes)
        super().__init__(
            f"No version of {package!r} satisfies all constraints: {lines}"
        )
        self.package = package
        self.causes = causes

    @property
    def contributors(self) -> list[str]:
        """Sorted list of sources that contributed to the conflict."""
        return sorted({c.source for c in self.causes})


class CyclicDependencyError(ResolutionError):
    """The dependency graph contains a cycle (e.g. A -> B -> A)."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Circular dependency: " + " -> ".join(cycle))
        self.cycle = cycle


class LockfileError(CompakError):
    """Raised for lockfile read/write failures."""


class CorruptLockfileError(LockfileError):
    """The lockfile exists but cannot be trusted. compak refuses to proceed."""


class MergeConflictError(CompakError):
    """Two contributors collide on a compose key that cannot be merged."""

    def __init__(self, key: str, file: str, packages: list[str]) -> None:
        super().__init__(
            f"Merge conflict on {key!r} in {file}: "
            f"contributed by {', '.join(packages)}"
        )
        self.key = key
        self.file = file
        self.packages = packages


class FilesystemError(CompakError):
    """A filesystem operation failed while staging a transaction.

    The transaction is rolled back before this error surfaces.
    """


class CommitError(FilesystemError):
    """A live-file swap failed mid-commit. Manual recovery is required.

    Attributes:
        staging_dir: The staging area kept on disk for recovery.
    """

    def __init__(self, message: str, staging_dir: str) -> None:
        super().__init__(f"{message} (staged files kept in {staging_dir})")
        self.staging_dir = staging_dir


class IntegrityError(CompakError):
    """Downloaded package content does not match its declared digest."""


class TransactionCancelledError(CompakError):
    """The transaction was cancelled before commit and rolled back."""


class ValidationError(CompakError):
    """Invalid user input: package requests, parameter values, configuration."""

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class NotInstalledError(ValidationError):
    """The named package is not installed in the project."""
