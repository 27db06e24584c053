"""Installation: override-file merging, package content, transactions.

- ``compose``: ``OverrideDocument``, the ownership-tracked override file.
- ``content``: Reproducible content archives, safe extraction, ``.env``.
- ``transaction``: Stage/commit/rollback against a project directory.
- ``engine``: ``InstallEngine``, the operations behind each command.
"""

from __future__ import annotations

from compak.core.install.compose import (
    OWNERSHIP_KEY,
    OverrideDocument,
    namespace_fragment,
    namespaced,
)
from compak.core.install.content import (
    build_archive,
    extract_archive,
    pack_directory,
    render_env,
    resolve_values,
)
from compak.core.install.engine import (
    InstalledPackage,
    InstallEngine,
    InstallPlan,
    PackageStatus,
    ProjectStatus,
    package_dir,
    parse_request,
    publish_directory,
)
from compak.core.install.transaction import (
    Transaction,
    TransactionState,
    leftover_staging,
    project_lock,
)

__all__ = [
    "OWNERSHIP_KEY",
    "InstallEngine",
    "InstallPlan",
    "InstalledPackage",
    "OverrideDocument",
    "PackageStatus",
    "ProjectStatus",
    "Transaction",
    "TransactionState",
    "build_archive",
    "extract_archive",
    "leftover_staging",
    "namespace_fragment",
    "namespaced",
    "pack_directory",
    "package_dir",
    "parse_request",
    "project_lock",
    "publish_directory",
    "render_env",
    "resolve_values",
]
