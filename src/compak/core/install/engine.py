"""Installation engine: the operations behind every compak command.

``InstallEngine`` ties the pieces together for one compose project::

    request -> GraphBuilder -> DependencyResolver -> LockfileManager.diff
            -> Transaction (stage, commit) -> files + new lockfile

Every mutating operation (``install``, ``upgrade``, ``uninstall``,
``update``) runs under the exclusive project lock, so operations on one
project never overlap. Each accepts ``dry_run=True`` to stop after planning.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Mapping

from compak.config import UPDATE_STRATEGIES, CompakConfig
from compak.core.dependency.builder import GraphBuilder
from compak.core.dependency.constraints import Version, VersionConstraint
from compak.core.dependency.resolver import DependencyResolver, ResolvedSet
from compak.core.install.compose import OverrideDocument
from compak.core.install.content import (
    ENV_FILE,
    extract_archive,
    pack_directory,
    render_env,
    resolve_values,
)
from compak.core.install.transaction import (
    STATE_DIR,
    Transaction,
    leftover_staging,
    project_lock,
)
from compak.core.lockfile import (
    DriftReport,
    LockDiff,
    Lockfile,
    LockfileManager,
)
from compak.core.manifest.models import Manifest
from compak.core.manifest.parser import validate_package_name
from compak.exceptions import (
    FilesystemError,
    IntegrityError,
    NotInstalledError,
    PackageNotFoundError,
    RegistryError,
    ValidationError,
)
from compak.registry.base import RegistryClient, compute_digest

logger = logging.getLogger(__name__)

PACKAGES_DIR = f"{STATE_DIR}/packages"

_REQUEST_RE = re.compile(r"^(?P<name>[^@\s]+)(?:@(?P<constraint>.*))?$")


def parse_request(text: str) -> tuple[str, str]:
    """Split ``name[@constraint]`` into (name, constraint).

    Raises:
        ValidationError: If the name or constraint is invalid.
    """
    m = _REQUEST_RE.match(text.strip())
    if not m:
        raise ValidationError(f"Invalid package request {text!r}")
    name = m.group("name")
    constraint = (m.group("constraint") or "*").strip() or "*"
    try:
        validate_package_name(name)
        VersionConstraint(constraint)
    except ValueError as exc:
        raise ValidationError(f"Invalid package request {text!r}: {exc}") from exc
    return name, constraint


def package_dir(name: str) -> str:
    """Project-relative directory holding *name*'s extracted content."""
    return f"{PACKAGES_DIR}/{name}"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstallPlan:
    """What an operation will do (or did, once ``committed``).

    Attributes:
        requested: The requested set after the operation.
        resolved: The resolver's selection.
        diff: Classification against the current lockfile.
        values: Parameter values supplied per package.
        reconfigure: Unchanged packages re-staged because their values
            changed.
        lockfile: The lockfile the operation commits.
        committed: True once applied.
        transaction_id: Id of the applying transaction, if any.
    """

    requested: dict[str, str]
    resolved: ResolvedSet
    diff: LockDiff
    values: dict[str, dict[str, str]] = field(default_factory=dict)
    reconfigure: tuple[str, ...] = ()
    lockfile: Lockfile | None = None
    committed: bool = False
    transaction_id: str = ""

    @property
    def is_noop(self) -> bool:
        return self.diff.is_empty and not self.reconfigure


@dataclass(frozen=True)
class InstalledPackage:
    name: str
    version: str
    requested: str | None
    digest: str
    compose_file: str
    dependencies: dict[str, str]


@dataclass(frozen=True)
class PackageStatus:
    """Installed vs. latest registry version of one package."""

    name: str
    installed: Version
    latest: Version | None
    requested: str | None = None
    error: str = ""

    @property
    def outdated(self) -> bool:
        return self.latest is not None and self.latest > self.installed


@dataclass(frozen=True)
class ProjectStatus:
    packages: tuple[PackageStatus, ...]
    drift: DriftReport
    leftover_staging: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# InstallEngine
# ---------------------------------------------------------------------------


class InstallEngine:
    """Installs packages from a registry into one compose project.

    Args:
        project_dir: The compose project root.
        registry: Where manifests and content come from.
        config: Settings (defaults to ``CompakConfig()``).
    """

    def __init__(
        self,
        project_dir: Path,
        registry: RegistryClient,
        config: CompakConfig | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.registry = registry
        self.config = config or CompakConfig()
        self.lockfiles = LockfileManager(self.project_dir, self.config.lockfile_name)
        self.current: Transaction | None = None

    # -- Public operations --------------------------------------------------

    async def install(
        self,
        requests: Iterable[tuple[str, str]] | Mapping[str, str],
        values: Mapping[str, Mapping[str, str]] | None = None,
        *,
        dry_run: bool = False,
    ) -> InstallPlan:
        """Add packages to the project (or tighten existing requests).

        Locked versions are kept wherever they still satisfy the
        constraints.

        Args:
            requests: (name, constraint) pairs.
            values: Parameter values per package name.
            dry_run: Plan only; write nothing.
        """
        pairs = list(requests.items()) if isinstance(requests, Mapping) else list(requests)
        if not pairs:
            raise ValidationError("Nothing to install")
        for name, constraint in pairs:
            parse_request(f"{name}@{constraint}")

        async with self._maybe_locked(dry_run):
            lockfile = self.lockfiles.load()
            requested = lockfile.requested
            for name, constraint in pairs:
                previous = requested.get(name)
                if previous is not None and previous not in ("*", "") and previous != constraint:
                    constraint = VersionConstraint(previous).intersect(
                        VersionConstraint(constraint)
                    ).raw
                requested[name] = constraint
            unknown = sorted(set(values or {}) - {n for n, _ in pairs} - set(lockfile.names))
            if unknown:
                raise ValidationError(
                    "Values given for packages that are neither requested nor installed",
                    details=unknown,
                )
            plan = await self._plan(
                lockfile,
                requested,
                preferred=self._locked_versions(lockfile),
                values=values,
            )
            return await self._execute(lockfile, plan, dry_run)

    async def plan(
        self,
        requests: Iterable[tuple[str, str]] | Mapping[str, str],
        values: Mapping[str, Mapping[str, str]] | None = None,
    ) -> InstallPlan:
        """Dry run of :meth:`install`."""
        return await self.install(requests, values, dry_run=True)

    async def upgrade(
        self,
        names: Iterable[str],
        constraint: str | None = None,
        *,
        dry_run: bool = False,
    ) -> InstallPlan:
        """Move the named packages to the highest version allowed.

        A requested package's constraint is replaced by *constraint*
        (default ``*``). Other packages keep their locked versions where
        possible.

        Raises:
            NotInstalledError: If a name is not installed.
        """
        names = sorted(set(names))
        if constraint is not None:
            parse_request(f"upgrade@{constraint}")
        async with self._maybe_locked(dry_run):
            lockfile = self.lockfiles.load()
            self._require_installed(lockfile, names)
            requested = lockfile.requested
            for name in names:
                if lockfile.is_requested(name):
                    requested[name] = constraint or "*"
            preferred = {
                n: v for n, v in self._locked_versions(lockfile).items() if n not in names
            }
            plan = await self._plan(lockfile, requested, preferred=preferred)
            return await self._execute(lockfile, plan, dry_run)

    async def uninstall(self, names: Iterable[str], *, dry_run: bool = False) -> InstallPlan:
        """Remove packages, and any dependency no longer needed.

        Raises:
            NotInstalledError: If a name is not installed.
            ValidationError: If a name is only installed as a dependency.
        """
        names = sorted(set(names))
        async with self._maybe_locked(dry_run):
            lockfile = self.lockfiles.load()
            self._require_installed(lockfile, names)
            for name in names:
                if not lockfile.is_requested(name):
                    dependents = sorted(
                        e.name for e in lockfile.entries if name in e.dependencies
                    )
                    raise ValidationError(
                        f"{name!r} is installed as a dependency of "
                        f"{', '.join(dependents) or 'another package'}; uninstall that instead"
                    )
            requested = {n: c for n, c in lockfile.requested.items() if n not in names}
            plan = await self._plan(
                lockfile, requested, preferred=self._locked_versions(lockfile)
            )
            return await self._execute(lockfile, plan, dry_run)

    async def update(
        self, strategy: str | None = None, *, dry_run: bool = False
    ) -> InstallPlan:
        """Re-resolve every requested package within its constraints.

        Args:
            strategy: ``"requested"`` re-resolves from the requested ranges;
                ``"locked-floor"`` also keeps each locked version as a
                minimum. Defaults to ``config.update_strategy``.
        """
        strategy = strategy or self.config.update_strategy
        if strategy not in UPDATE_STRATEGIES:
            raise ValidationError(
                f"Unknown update strategy {strategy!r}",
                details=list(UPDATE_STRATEGIES),
            )
        async with self._maybe_locked(dry_run):
            lockfile = self.lockfiles.load()
            requested = lockfile.requested
            floors: dict[str, str] = {}
            if strategy == "locked-floor":
                for name in requested:
                    entry = lockfile.get_entry(name)
                    if entry is not None:
                        floors[name] = f">={entry.version}"
            plan = await self._plan(
                lockfile, requested, floors=floors, strategy=strategy
            )
            return await self._execute(lockfile, plan, dry_run)

    def list_installed(self) -> list[InstalledPackage]:
        """Installed packages, sorted by name."""
        lockfile = self.lockfiles.load()
        requested = lockfile.requested
        return [
            InstalledPackage(
                name=e.name,
                version=e.version,
                requested=requested.get(e.name),
                digest=e.digest,
                compose_file=e.compose_file,
                dependencies=dict(e.dependencies),
            )
            for e in lockfile.entries
        ]

    async def status(self) -> ProjectStatus:
        """Compare installed versions with the registry and the disk."""
        lockfile = self.lockfiles.load()
        requested = lockfile.requested
        entries = lockfile.entries
        semaphore = asyncio.Semaphore(self.config.max_workers)

        async def _latest(name: str) -> Version | None:
            async with semaphore:
                return await self.registry.latest_version(name)

        latest = await asyncio.gather(
            *(_latest(e.name) for e in entries), return_exceptions=True
        )
        packages = []
        for entry, result in zip(entries, latest):
            error = ""
            if isinstance(result, RegistryError):
                error, result = str(result), None
            elif isinstance(result, BaseException):
                raise result
            packages.append(
                PackageStatus(
                    name=entry.name,
                    installed=entry.parsed_version,
                    latest=result,
                    requested=requested.get(entry.name),
                    error=error,
                )
            )
        drift = self.lockfiles.detect_drift(lockfile, [self.config.override_file])
        leftovers = tuple(
            str(p.relative_to(self.project_dir)) for p in leftover_staging(self.project_dir)
        )
        if leftovers:
            logger.warning("Staging areas left by failed commits: %s", ", ".join(leftovers))
        return ProjectStatus(tuple(packages), drift, leftovers)

    async def extract(
        self, name: str, constraint: str = "*", dest: Path | None = None
    ) -> tuple[Manifest, list[str]]:
        """Unpack a package's content into *dest* without installing it.

        Returns:
            The manifest of the chosen version and the extracted files.

        Raises:
            PackageNotFoundError: If no version satisfies *constraint*.
            IntegrityError: If the content does not match its digest.
        """
        name, constraint = parse_request(f"{name}@{constraint}")
        wanted = VersionConstraint(constraint)
        versions = sorted(await self.registry.fetch_versions(name), reverse=True)
        matching = [v for v in versions if wanted.satisfies(v)]
        if not matching:
            raise PackageNotFoundError(f"{name}@{constraint}")
        manifest = await self.registry.fetch_manifest(name, matching[0])
        data = await self._fetch_verified(manifest)
        target = Path(dest) if dest is not None else Path.cwd() / name
        files = await asyncio.to_thread(extract_archive, data, target, manifest.id)
        logger.info("Extracted %s into %s", manifest.id, target)
        return manifest, files

    def cancel(self) -> bool:
        """Cancel the running transaction, if it has not begun committing."""
        if self.current is None:
            return False
        return self.current.cancel()

    # -- Planning -----------------------------------------------------------

    def _maybe_locked(self, dry_run: bool):
        if dry_run:
            return contextlib.nullcontext()
        return project_lock(self.project_dir)

    @staticmethod
    def _locked_versions(lockfile: Lockfile) -> dict[str, Version]:
        return {e.name: e.parsed_version for e in lockfile.entries}

    @staticmethod
    def _require_installed(lockfile: Lockfile, names: list[str]) -> None:
        missing = [n for n in names if n not in lockfile]
        if missing:
            raise NotInstalledError(
                f"Not installed: {', '.join(missing)}", details=missing
            )

    async def _resolve(
        self,
        requested: Mapping[str, str],
        preferred: Mapping[str, Version] | None = None,
        floors: Mapping[str, str] | None = None,
    ) -> ResolvedSet:
        if not requested:
            return ResolvedSet()
        roots = []
        for name, raw in sorted(requested.items()):
            constraint = VersionConstraint(raw)
            if floors and name in floors:
                constraint = constraint.intersect(VersionConstraint(floors[name]))
            roots.append((name, constraint))
        builder = GraphBuilder(self.registry, max_workers=self.config.max_workers)
        graph = await builder.build(roots)
        resolver = DependencyResolver(graph, preferred=preferred)
        resolved = resolver.resolve()
        logger.info(
            "Resolved %d package(s) in %d step(s)", len(resolved), resolver.steps
        )
        return resolved

    async def _plan(
        self,
        lockfile: Lockfile,
        requested: dict[str, str],
        *,
        preferred: Mapping[str, Version] | None = None,
        floors: Mapping[str, str] | None = None,
        values: Mapping[str, Mapping[str, str]] | None = None,
        strategy: str | None = None,
    ) -> InstallPlan:
        resolved = await self._resolve(requested, preferred, floors)
        diff = self.lockfiles.diff(lockfile, resolved)

        unchanged = {c.name for c in diff.unchanged}
        supplied: dict[str, dict[str, str]] = {}
        reconfigure: list[str] = []
        for name in resolved:
            entry = lockfile.get_entry(name)
            previous = dict(entry.values) if entry is not None else {}
            merged = {**previous, **dict((values or {}).get(name, {}))}
            # Validate now so a bad value fails before anything is fetched.
            resolve_values(resolved.manifest(name), merged)
            supplied[name] = merged
            if name in unchanged and merged != previous:
                reconfigure.append(name)

        files: dict[str, list[str]] = {}
        compose_files: dict[str, str] = {}
        for name in resolved:
            entry = lockfile.get_entry(name)
            manifest = resolved.manifest(name)
            if entry is not None and name in unchanged:
                files[name] = list(entry.files)
                compose_files[name] = entry.compose_file
            else:
                # Filled in while staging.
                files[name] = []
                compose_files[name] = self._compose_target(manifest)

        new_lockfile = Lockfile.from_resolution(  # type: ignore[attr-defined]
            resolved,
            requested,
            files=files,
            values=supplied,
            compose_files=compose_files,
            update_strategy=strategy or lockfile.metadata.update_strategy,
        )
        plan = InstallPlan(
            requested=dict(sorted(requested.items())),
            resolved=resolved,
            diff=diff,
            values=supplied,
            reconfigure=tuple(sorted(reconfigure)),
            lockfile=new_lockfile,
        )
        for change in diff.changed:
            logger.info("Plan: %s", change)
        return plan

    def _compose_target(self, manifest: Manifest) -> str:
        if manifest.compose.is_empty:
            return ""
        target = manifest.compose.file or self.config.override_file
        if target == self.config.lockfile_name or Path(target).parts[:1] == (STATE_DIR,):
            raise ValidationError(
                f"{manifest.id}: compose file {target!r} would overwrite compak state"
            )
        return target

    # -- Execution ----------------------------------------------------------

    async def _execute(self, current: Lockfile, plan: InstallPlan, dry_run: bool) -> InstallPlan:
        if dry_run:
            return plan
        if plan.is_noop and plan.lockfile == current:
            logger.info("Nothing to do")
            return plan

        txn = Transaction(self.project_dir)
        self.current = txn
        try:
            with txn:
                new_lockfile = await self._stage(txn, current, plan)
                txn.mark_staged()
                txn.commit(lambda: self.lockfiles.save(new_lockfile))
        finally:
            self.current = None
        return replace(plan, lockfile=new_lockfile, committed=True, transaction_id=txn.id)

    async def _fetch_verified(self, manifest: Manifest) -> bytes:
        content = await self.registry.fetch_content(manifest.name, manifest.version)
        actual = compute_digest(content.data)
        if not manifest.digest or actual != manifest.digest:
            raise IntegrityError(
                f"{manifest.id}: content digest {actual} does not match "
                f"manifest digest {manifest.digest or '<none>'}"
            )
        return content.data

    async def _stage(self, txn: Transaction, current: Lockfile, plan: InstallPlan) -> Lockfile:
        diff = plan.diff
        resolved = plan.resolved
        lockfile = plan.lockfile.copy()
        rewrite = sorted(
            {c.name for c in diff.to_install + diff.to_upgrade} | set(plan.reconfigure)
        )
        departing = {c.name for c in diff.to_upgrade + diff.to_remove} | set(plan.reconfigure)

        # Content: fetch concurrently, extract each package into staging.
        semaphore = asyncio.Semaphore(self.config.max_workers)

        async def _stage_package(name: str) -> list[str]:
            manifest = resolved.manifest(name)
            async with semaphore:
                txn.check_cancelled()
                data = await self._fetch_verified(manifest)
            txn.check_cancelled()
            base = package_dir(name)
            extracted = await asyncio.to_thread(
                extract_archive, data, txn.staged_path(base), manifest.id
            )
            values = resolve_values(manifest, plan.values.get(name, {}))
            env_path = txn.staged_path(f"{base}/{ENV_FILE}")
            try:
                env_path.parent.mkdir(parents=True, exist_ok=True)
                env_path.write_text(render_env(manifest, values), encoding="utf-8")
            except OSError as exc:
                raise FilesystemError(f"cannot stage {env_path.name} for {manifest.id}: {exc}") from exc
            return [f"{base}/{f}" for f in extracted] + [f"{base}/{ENV_FILE}"]

        results = await asyncio.gather(
            *(_stage_package(n) for n in rewrite), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        for name, written in zip(rewrite, results):
            for path in written:
                txn.add_write(path)
            entry = lockfile.get_entry(name)
            entry.files = sorted(set(written))
            logger.info("Staged %s (%d file(s))", resolved.manifest(name).id, len(written))

        # Files of departing packages that the new state does not keep.
        keep = {path for e in lockfile.entries for path in e.files}
        for name in sorted(departing):
            old = current.get_entry(name)
            for path in old.files if old else []:
                if path not in keep:
                    txn.stage_delete(path)

        # Override files: drop departing contributions, merge new ones.
        targets: dict[str, set[str]] = {}
        for name in sorted(departing):
            old = current.get_entry(name)
            if old is not None and old.compose_file:
                targets.setdefault(old.compose_file, set())
        for name in rewrite:
            target = lockfile.get_entry(name).compose_file
            if target:
                targets.setdefault(target, set()).add(name)

        for rel in sorted(targets):
            document = OverrideDocument.load(self.project_dir / rel, rel)
            for name in sorted(departing):
                document.remove(name)
            for name in sorted(targets[rel]):
                document.add(name, resolved.manifest(name).compose)
                if name not in document.packages:
                    # Every key it contributes is already held by the user.
                    lockfile.get_entry(name).compose_file = ""
            content = None if document.is_empty else document.to_yaml()
            txn.stage_compose(rel, content, tuple(document.packages))
        return lockfile


async def publish_directory(registry: RegistryClient, source_dir: Path) -> Manifest:
    """Pack a package source directory and publish it to *registry*.

    Returns:
        The published manifest, digest included.
    """
    manifest, data = await asyncio.to_thread(pack_directory, Path(source_dir))
    published = await registry.publish(manifest, data)
    logger.info("Published %s (%d bytes) to %s", published.id, len(data), registry.location)
    return published
