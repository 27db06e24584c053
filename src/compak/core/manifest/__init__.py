"""Package manifests: identity, version, dependencies, compose fragment.

Public API::

    from compak.core.manifest import Manifest, parse_manifest
"""

from __future__ import annotations

from compak.core.manifest.models import (
    MERGEABLE_SECTIONS,
    ComposeFragment,
    Manifest,
    Parameter,
)
from compak.core.manifest.parser import (
    MANIFEST_FILENAMES,
    find_manifest_file,
    load_manifest_file,
    parse_manifest,
    validate_package_name,
    validate_relative_path,
)

__all__ = [
    "MERGEABLE_SECTIONS",
    "MANIFEST_FILENAMES",
    "ComposeFragment",
    "Manifest",
    "Parameter",
    "find_manifest_file",
    "load_manifest_file",
    "parse_manifest",
    "validate_package_name",
    "validate_relative_path",
]
