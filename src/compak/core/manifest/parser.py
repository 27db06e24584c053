"""Manifest parsing and validation.

``parse_manifest`` turns a raw manifest (a mapping, or YAML/JSON text) into
an immutable :class:`Manifest`, or raises ``MalformedManifestError``. The
document format, shared by ``package.yaml`` files and the registry::

    name: web
    version: 1.2.0
    description: Nginx front end
    dependencies:
      net: ">=2.0.0,<3.0.0"
    digest: sha256:...
    compose:
      file: docker-compose.compak.yml
      services:
        app:
          image: nginx:alpine
    parameters:
      PORT: {description: Host port, default: "8080"}

``dependencies`` may also be a list of ``{name, constraint}`` mappings.
Either way a dependency name may appear only once; repeated declarations
must be combined into a single constraint.
"""

from __future__ import annotations

import json
import re
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

import yaml

from compak.core.dependency.constraints import Dependency, Version, VersionConstraint
from compak.core.manifest.models import (
    MERGEABLE_SECTIONS,
    ComposeFragment,
    Manifest,
    Parameter,
)
from compak.exceptions import MalformedManifestError

MANIFEST_FILENAMES: tuple[str, ...] = ("package.yaml", "package.yml", "package.json")

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,99}$")
_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
_METADATA_FIELDS = ("description", "author", "license", "homepage", "repository")
# Files a compose fragment may not target: the user's own compose files and
# the files and state directory compak manages.
_PROTECTED_COMPOSE_TARGETS = frozenset(
    {
        "docker-compose.yml",
        "docker-compose.yaml",
        "docker-compose.override.yml",
        "docker-compose.override.yaml",
        "compose.yml",
        "compose.yaml",
        "compose.override.yml",
        "compose.override.yaml",
        "compak.lock",
        ".env",
    }
)
_PROTECTED_COMPOSE_DIR = ".compak"


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting."""


def _construct_unique_mapping(loader: yaml.SafeLoader, node: yaml.MappingNode, deep: bool = False):
    loader.flatten_mapping(node)
    seen: set[Any] = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in seen:
            raise yaml.constructor.ConstructorError(
                None, None, f"duplicate key {key!r}", key_node.start_mark
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


def _reject_duplicate_pairs(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate key {key!r}")
        result[key] = value
    return result


def load_document(raw: str | bytes) -> Any:
    """Load a YAML or JSON document, rejecting duplicate keys.

    Raises:
        MalformedManifestError: If the text cannot be parsed.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedManifestError(f"manifest is not UTF-8: {exc}")
    stripped = raw.lstrip()
    try:
        if stripped.startswith("{"):
            return json.loads(raw, object_pairs_hook=_reject_duplicate_pairs)
        return yaml.load(raw, Loader=_UniqueKeyLoader)  # noqa: S506 - SafeLoader subclass
    except (ValueError, yaml.YAMLError) as exc:
        raise MalformedManifestError(f"cannot parse manifest: {exc}")


def validate_package_name(name: Any) -> str:
    """Return *name* if it is a valid package identifier.

    Raises:
        ValueError: If the name is empty, too long, or contains path
            separators, ``..`` or characters outside ``[a-z0-9._-]``.
    """
    if not isinstance(name, str) or not name:
        raise ValueError("package name cannot be empty")
    if ".." in name or "/" in name or "\\" in name:
        raise ValueError(f"package name {name!r} contains invalid characters")
    if not _NAME_RE.match(name):
        raise ValueError(
            f"package name {name!r} must be lowercase alphanumerics, '.', '_' "
            "or '-' (at most 100 characters)"
        )
    return name


def validate_relative_path(path: str) -> str:
    """Return *path* if it is relative and free of traversal.

    Raises:
        ValueError: If the path is absolute or contains ``..``.
    """
    if not path or "\\" in path:
        raise ValueError(f"invalid path {path!r}")
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"path {path!r} must be relative without '..'")
    return str(pure)


def _str_field(data: Mapping[str, Any], key: str, ctx: tuple[str | None, str | None]) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, (str, int, float)):
        raise MalformedManifestError(f"field {key!r} must be a string", *ctx)
    return str(value)


def _parse_dependencies(raw: Any, ctx: tuple[str | None, str | None]) -> tuple[Dependency, ...]:
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        items = [(name, constraint) for name, constraint in raw.items()]
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise MalformedManifestError(
                    "dependency list entries need a 'name'", *ctx
                )
            items.append((entry["name"], entry.get("constraint", "*")))
    else:
        raise MalformedManifestError("'dependencies' must be a mapping or list", *ctx)

    deps: list[Dependency] = []
    seen: set[str] = set()
    for name, constraint in items:
        try:
            validate_package_name(name)
        except ValueError as exc:
            raise MalformedManifestError(f"dependency: {exc}", *ctx)
        if name in seen:
            raise MalformedManifestError(
                f"duplicate dependency {name!r}; combine the constraints "
                "into a single entry",
                *ctx,
            )
        seen.add(name)
        if constraint is None:
            constraint = "*"
        if not isinstance(constraint, str):
            constraint = str(constraint)
        try:
            parsed = VersionConstraint(constraint)
        except ValueError as exc:
            raise MalformedManifestError(f"dependency {name!r}: {exc}", *ctx)
        deps.append(Dependency(name=name, constraint=parsed))
    return tuple(deps)


def _parse_compose(raw: Any, ctx: tuple[str | None, str | None]) -> ComposeFragment:
    if raw is None:
        return ComposeFragment()
    if not isinstance(raw, Mapping):
        raise MalformedManifestError("'compose' must be a mapping", *ctx)
    sections = dict(raw)
    target = sections.pop("file", "") or ""
    if target:
        try:
            target = validate_relative_path(str(target))
        except ValueError as exc:
            raise MalformedManifestError(f"compose file: {exc}", *ctx)
        parts = PurePosixPath(target).parts
        if (
            not parts
            or target in _PROTECTED_COMPOSE_TARGETS
            or parts[0] == _PROTECTED_COMPOSE_DIR
        ):
            raise MalformedManifestError(
                f"compose file {target!r} is not a package override file", *ctx
            )
    for key, value in sections.items():
        if not isinstance(key, str) or key.startswith("x-compak"):
            raise MalformedManifestError(f"invalid compose key {key!r}", *ctx)
        if key in MERGEABLE_SECTIONS:
            if value is None:
                sections[key] = {}
            elif not isinstance(value, Mapping):
                raise MalformedManifestError(f"compose {key!r} must be a mapping", *ctx)
            elif any(not isinstance(k, str) for k in value):
                raise MalformedManifestError(f"compose {key!r} keys must be strings", *ctx)
    return ComposeFragment(file=target, sections=sections)


def _parse_parameters(raw: Any, ctx: tuple[str | None, str | None]) -> dict[str, Parameter]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise MalformedManifestError("'parameters' must be a mapping", *ctx)
    params: dict[str, Parameter] = {}
    for name, spec in raw.items():
        if not isinstance(name, str) or not name or "." in name:
            raise MalformedManifestError(f"invalid parameter name {name!r}", *ctx)
        spec = spec or {}
        if not isinstance(spec, Mapping):
            raise MalformedManifestError(f"parameter {name!r} must be a mapping", *ctx)
        required = spec.get("required", False)
        if not isinstance(required, bool):
            raise MalformedManifestError(
                f"parameter {name!r}: 'required' must be a boolean", *ctx
            )
        default = spec.get("default", "")
        params[name] = Parameter(
            description=str(spec.get("description", "") or ""),
            type=str(spec.get("type", "string") or "string"),
            default="" if default is None else str(default),
            required=required,
        )
    return params


def _parse_values(raw: Any, ctx: tuple[str | None, str | None]) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise MalformedManifestError("'values' must be a mapping", *ctx)
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def parse_manifest(raw: Mapping[str, Any] | str | bytes) -> Manifest:
    """Parse and validate a package manifest.

    Args:
        raw: A mapping, or YAML / JSON text of one.

    Returns:
        The immutable ``Manifest``.

    Raises:
        MalformedManifestError: If any validity rule is violated.
    """
    data = load_document(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(data, Mapping):
        raise MalformedManifestError("manifest must be a mapping")

    name = data.get("name")
    raw_version = data.get("version")
    ctx: tuple[str | None, str | None] = (
        name if isinstance(name, str) else None,
        str(raw_version) if raw_version is not None else None,
    )

    try:
        validate_package_name(name)
    except ValueError as exc:
        raise MalformedManifestError(str(exc), *ctx)
    if raw_version is None:
        raise MalformedManifestError("missing 'version'", *ctx)
    try:
        version = Version.parse(str(raw_version))
    except ValueError as exc:
        raise MalformedManifestError(str(exc), *ctx)

    dependencies = _parse_dependencies(data.get("dependencies"), ctx)
    if any(dep.name == name for dep in dependencies):
        raise MalformedManifestError("package cannot depend on itself", *ctx)

    digest = _str_field(data, "digest", ctx)
    if digest and not _DIGEST_RE.match(digest):
        raise MalformedManifestError(f"invalid digest {digest!r}", *ctx)

    metadata = {key: _str_field(data, key, ctx) for key in _METADATA_FIELDS}

    return Manifest(
        name=name,
        version=version,
        dependencies=dependencies,
        digest=digest,
        compose=_parse_compose(data.get("compose"), ctx),
        parameters=_parse_parameters(data.get("parameters"), ctx),
        values=_parse_values(data.get("values"), ctx),
        **metadata,
    )


def find_manifest_file(directory: Path) -> Path:
    """Locate the manifest file in a package source directory.

    Raises:
        MalformedManifestError: If none of ``MANIFEST_FILENAMES`` exists.
    """
    for filename in MANIFEST_FILENAMES:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    raise MalformedManifestError(
        f"{' or '.join(MANIFEST_FILENAMES)} not found in {directory}"
    )


def load_manifest_file(directory: Path) -> Manifest:
    """Read and parse the manifest of a package source directory."""
    path = find_manifest_file(directory)
    return parse_manifest(path.read_bytes())
