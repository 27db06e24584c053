"""Manifest data models.

Pure data holders describing one package version: its identity, its
dependency constraints, the digest of its content archive, and the compose
fragment it contributes to the project. Instances are immutable once built.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

from compak.core.dependency.constraints import Dependency, Version

# Compose top-level sections whose keys are namespaced per package and merged.
MERGEABLE_SECTIONS: tuple[str, ...] = (
    "services",
    "networks",
    "volumes",
    "configs",
    "secrets",
)


@dataclass(frozen=True)
class Parameter:
    """A configurable value a package exposes (rendered into its ``.env``).

    Attributes:
        description: Human-readable help text.
        type: Declared value type (informational, e.g. "string", "port").
        default: Value used when the user supplies none.
        required: If True, installation fails unless a value is supplied
            or ``default`` is non-empty.
    """

    description: str = ""
    type: str = "string"
    default: str = ""
    required: bool = False


@dataclass(frozen=True)
class ComposeFragment:
    """The compose content a package contributes.

    Attributes:
        file: Override file (relative to the project root) to merge into.
            Empty means the configured default override file.
        sections: Top-level compose keys to contribute. Keys of the
            mergeable sections are namespaced by package; any other key is
            reserved and must not collide with another contributor.
    """

    file: str = ""
    sections: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "sections", MappingProxyType(copy.deepcopy(dict(self.sections)))
        )

    @property
    def is_empty(self) -> bool:
        return not any(self.sections.values())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(dict(self.sections))
        if self.file:
            data["file"] = self.file
        return data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ComposeFragment):
            return NotImplemented
        return self.file == other.file and dict(self.sections) == dict(other.sections)

    def __hash__(self) -> int:
        return hash((self.file, tuple(sorted(self.sections))))


@dataclass(frozen=True)
class Manifest:
    """The metadata record for one package version.

    Attributes:
        name: Package identifier.
        version: Package version.
        dependencies: Ordered dependency edges, unique by name.
        digest: Content archive digest in ``sha256:<hex>`` form (empty for
            a package being prepared for publishing).
        compose: Compose fragment contributed to the project.
        description, author, license, homepage, repository: Descriptive
            metadata shown by ``search`` and ``list``.
        parameters: Values the package can be configured with.
        values: Default parameter values shipped with the package.
    """

    name: str
    version: Version
    dependencies: tuple[Dependency, ...] = ()
    digest: str = ""
    compose: ComposeFragment = field(default_factory=ComposeFragment)
    description: str = ""
    author: str = ""
    license: str = ""
    homepage: str = ""
    repository: str = ""
    parameters: Mapping[str, Parameter] = field(default_factory=dict)
    values: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def __hash__(self) -> int:
        return hash((self.name, self.version, self.digest))

    @property
    def id(self) -> str:
        return f"{self.name}@{self.version}"

    def dependency(self, name: str) -> Dependency | None:
        for dep in self.dependencies:
            if dep.name == name:
                return dep
        return None

    def with_digest(self, digest: str) -> Manifest:
        """Return a copy of this manifest carrying *digest*."""
        return replace(self, digest=digest)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the manifest document format (see ``parse_manifest``)."""
        data: dict[str, Any] = {
            "name": self.name,
            "version": str(self.version),
        }
        for key in ("description", "author", "license", "homepage", "repository"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.dependencies:
            data["dependencies"] = {
                d.name: d.constraint.raw for d in self.dependencies
            }
        if self.digest:
            data["digest"] = self.digest
        compose = self.compose.to_dict()
        if compose:
            data["compose"] = compose
        if self.parameters:
            data["parameters"] = {
                name: {
                    "description": p.description,
                    "type": p.type,
                    "default": p.default,
                    "required": p.required,
                }
                for name, p in self.parameters.items()
            }
        if self.values:
            data["values"] = dict(self.values)
        return data
