"""compak lockfile: reproducible, diffable record of installed packages.

The package is split into focused submodules:

- ``models``: Data classes (``LockEntry``, ``LockfileMetadata``,
  ``PackageChange``, ``LockDiff``, ``DriftReport``).
- ``lockfile``: The ``Lockfile`` class with entry management and
  serialization.
- ``operations``: Deserialization (``from_dict``, ``from_json``, ``read``),
  validation, and ``diff`` against a resolved set.
- ``factory``: ``from_resolution``, building a lockfile from resolver output.
- ``manager``: ``LockfileManager``, the project-level load/save/drift API.
"""

# Re-export data models
from compak.core.lockfile.models import (
    DriftReport,
    LockDiff,
    LockEntry,
    LockfileMetadata,
    PackageChange,
)

# Re-export the Lockfile class
from compak.core.lockfile.lockfile import Lockfile

# Attach operations to Lockfile as methods/classmethods
from compak.core.lockfile import operations as _ops
from compak.core.lockfile import factory as _factory

Lockfile.from_dict = classmethod(_ops._from_dict)
Lockfile.from_json = classmethod(_ops._from_json)
Lockfile.read = classmethod(_ops._read)
Lockfile.validate = _ops._validate
Lockfile.from_resolution = classmethod(_factory._from_resolution)

from compak.core.lockfile.manager import LockfileManager  # noqa: E402
from compak.core.lockfile.operations import diff  # noqa: E402

__all__ = [
    "DriftReport",
    "LockDiff",
    "LockEntry",
    "Lockfile",
    "LockfileManager",
    "LockfileMetadata",
    "PackageChange",
    "diff",
]
