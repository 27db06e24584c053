"""Lockfile manager: the project's persisted record of what is installed.

``LockfileManager`` owns the ``compak.lock`` file of one project:

- ``load`` refuses to proceed on a lockfile it cannot trust.
- ``save`` replaces the file atomically.
- ``diff`` classifies a proposed resolution against the installed state.
- ``detect_drift`` compares the lockfile with the live project directory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from compak.core.lockfile.lockfile import Lockfile
from compak.core.lockfile.models import DriftReport, LockDiff
from compak.core.lockfile.operations import diff as _diff
from compak.exceptions import CompakError, CorruptLockfileError, LockfileError
from compak.fsio import atomic_write

if TYPE_CHECKING:
    from compak.core.dependency.resolver import ResolvedSet

logger = logging.getLogger(__name__)

DEFAULT_LOCKFILE_NAME = "compak.lock"


class LockfileManager:
    """Load, save, diff and check the lockfile of one project.

    Args:
        project_dir: The compose project root.
        lockfile_name: Lockfile name inside ``project_dir``.
    """

    def __init__(self, project_dir: Path, lockfile_name: str = DEFAULT_LOCKFILE_NAME) -> None:
        self.project_dir = Path(project_dir)
        self.path = self.project_dir / lockfile_name

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Lockfile:
        """Read the lockfile.

        Returns:
            The stored ``Lockfile``, or an empty one if none exists yet.

        Raises:
            CorruptLockfileError: If the file is unreadable, not valid JSON,
                has an unknown schema version, or fails validation.
        """
        if not self.path.exists():
            logger.debug("No lockfile at %s; starting empty", self.path)
            return Lockfile()
        try:
            lockfile = Lockfile.read(self.path)  # type: ignore[attr-defined]
        except OSError as exc:
            raise CorruptLockfileError(f"cannot read {self.path}: {exc}") from exc
        errors = lockfile.validate()
        if errors:
            raise CorruptLockfileError(
                f"{self.path} failed validation: " + "; ".join(errors)
            )
        return lockfile

    def save(self, lockfile: Lockfile) -> None:
        """Write *lockfile* atomically (temp file + rename).

        Raises:
            LockfileError: If the lockfile is internally inconsistent or
                cannot be written.
        """
        errors = lockfile.validate()
        if errors:
            raise LockfileError("refusing to save invalid lockfile: " + "; ".join(errors))
        try:
            atomic_write(self.path, lockfile.to_json())
        except OSError as exc:
            raise LockfileError(f"cannot write {self.path}: {exc}") from exc
        logger.info("Lockfile saved: %s (%d package(s))", self.path, len(lockfile))

    @staticmethod
    def diff(current: Lockfile, proposed: ResolvedSet) -> LockDiff:
        """See :func:`compak.core.lockfile.operations.diff`."""
        return _diff(current, proposed)

    def detect_drift(
        self, lockfile: Lockfile, override_files: Iterable[str] = ()
    ) -> DriftReport:
        """Compare the lockfile with the files actually in the project.

        Args:
            lockfile: The lockfile to check.
            override_files: Extra override files to inspect for packages
                the lockfile does not know about.

        Returns:
            A ``DriftReport``; ``is_clean`` when everything agrees.
        """
        from compak.core.install.compose import OverrideDocument

        report = DriftReport()
        for entry in lockfile.entries:
            for rel in entry.files:
                if not (self.project_dir / rel).is_file():
                    report.missing_files.append((entry.name, rel))

        files = sorted(
            {e.compose_file for e in lockfile.entries if e.compose_file}
            | set(override_files)
        )
        for rel in files:
            path = self.project_dir / rel
            try:
                document = OverrideDocument.load(path, rel)
            except CompakError as exc:
                report.ownership_mismatches.append(f"{rel}: {exc}")
                continue
            for name in document.packages:
                entry = lockfile.get_entry(name)
                if entry is None:
                    if name not in report.unmanaged_packages:
                        report.unmanaged_packages.append(name)
                elif entry.compose_file != rel:
                    report.ownership_mismatches.append(
                        f"{name}: owns keys in {rel} but is locked to "
                        f"{entry.compose_file or 'no override file'}"
                    )
                for key in document.missing_keys(name):
                    report.ownership_mismatches.append(
                        f"{name}: owned key {key} is missing from {rel}"
                    )
            for entry in lockfile.entries:
                if entry.compose_file == rel and entry.name not in document.packages:
                    report.ownership_mismatches.append(
                        f"{entry.name}: locked to {rel} but owns nothing there"
                    )

        report.unmanaged_packages.sort()
        if not report.is_clean:
            logger.warning("Project drift detected in %s", self.project_dir)
        return report
