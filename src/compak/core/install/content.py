"""Package content archives and per-package environment files.

A content archive is a gzip-compressed tar of a package's source directory
(everything except the manifest file). Archives are built byte-for-byte
reproducibly: members are sorted, and timestamps, owners and permissions
beyond the executable bit are normalised. The same directory therefore
always yields the same digest.

Extraction refuses absolute paths, ``..`` components, links and device
files before anything is written.
"""

from __future__ import annotations

import gzip
import io
import logging
import re
import tarfile
from pathlib import Path, PurePosixPath
from typing import Mapping

from compak.core.manifest.models import Manifest
from compak.core.manifest.parser import MANIFEST_FILENAMES, load_manifest_file
from compak.exceptions import FilesystemError, ValidationError
from compak.registry.base import compute_digest

logger = logging.getLogger(__name__)

ENV_FILE = ".env"

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ENV_SAFE_RE = re.compile(r"^[A-Za-z0-9_./:@%+,=-]*$")


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if info.isdir():
        info.mode = 0o755
    else:
        info.mode = 0o755 if info.mode & 0o111 else 0o644
    return info


def build_archive(source_dir: Path, exclude: tuple[str, ...] = MANIFEST_FILENAMES) -> bytes:
    """Pack *source_dir* into a reproducible ``tar.gz``.

    Args:
        source_dir: Package source directory.
        exclude: Top-level file names to leave out (the manifest files).

    Raises:
        FilesystemError: If the directory contains links or unreadable files.
    """
    paths = sorted(
        p for p in source_dir.rglob("*")
        if not (p.parent == source_dir and p.name in exclude)
    )
    raw = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for path in paths:
                arcname = path.relative_to(source_dir).as_posix()
                if path.is_symlink():
                    raise FilesystemError(f"links are not allowed in packages: {arcname}")
                try:
                    if path.is_dir():
                        tar.addfile(_normalise(tar.gettarinfo(str(path), arcname)))
                    else:
                        with path.open("rb") as f:
                            tar.addfile(_normalise(tar.gettarinfo(str(path), arcname)), f)
                except OSError as exc:
                    raise FilesystemError(f"cannot pack {arcname}: {exc}") from exc
    return raw.getvalue()


def _checked_members(tar: tarfile.TarFile, label: str) -> list[tarfile.TarInfo]:
    members = []
    for member in tar.getmembers():
        pure = PurePosixPath(member.name)
        if pure.is_absolute() or ".." in pure.parts or not member.name:
            raise FilesystemError(f"{label}: unsafe archive path {member.name!r}")
        if not (member.isfile() or member.isdir()):
            raise FilesystemError(f"{label}: unsupported archive member {member.name!r}")
        if member.isfile() and pure.as_posix() == ENV_FILE:
            raise FilesystemError(f"{label}: archive may not contain {ENV_FILE}")
        members.append(member)
    return members


def archive_files(data: bytes, label: str = "archive") -> list[str]:
    """Sorted relative paths of the regular files in an archive.

    Raises:
        FilesystemError: If the archive is unreadable or unsafe.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            members = _checked_members(tar, label)
    except tarfile.TarError as exc:
        raise FilesystemError(f"{label}: corrupt archive: {exc}") from exc
    return sorted(PurePosixPath(m.name).as_posix() for m in members if m.isfile())


def extract_archive(data: bytes, dest: Path, label: str = "archive") -> list[str]:
    """Safely extract an archive into *dest*.

    Returns:
        Sorted paths of the extracted regular files, relative to *dest*.

    Raises:
        FilesystemError: If the archive is corrupt or unsafe, or on I/O
            failure.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            members = _checked_members(tar, label)
            dest.mkdir(parents=True, exist_ok=True)
            tar.extractall(path=str(dest), members=members, filter="data")  # noqa: S202
    except tarfile.TarError as exc:
        raise FilesystemError(f"{label}: corrupt archive: {exc}") from exc
    except OSError as exc:
        raise FilesystemError(f"{label}: extraction failed: {exc}") from exc
    files = sorted(PurePosixPath(m.name).as_posix() for m in members if m.isfile())
    logger.debug("Extracted %d file(s) from %s into %s", len(files), label, dest)
    return files


def pack_directory(source_dir: Path) -> tuple[Manifest, bytes]:
    """Build the publishable form of a package source directory.

    Returns:
        The manifest with its digest set to the archive's, and the archive.
    """
    manifest = load_manifest_file(source_dir)
    data = build_archive(source_dir)
    return manifest.with_digest(compute_digest(data)), data


# ---------------------------------------------------------------------------
# Parameter values and .env rendering
# ---------------------------------------------------------------------------


def resolve_values(manifest: Manifest, supplied: Mapping[str, str] | None = None) -> dict[str, str]:
    """Merge parameter defaults, packaged values and user-supplied values.

    Later sources win: parameter ``default``, then the manifest's
    ``values``, then *supplied*.

    Raises:
        ValidationError: If a supplied key is not a declared parameter or
            a required parameter ends up empty.
    """
    supplied = dict(supplied or {})
    values: dict[str, str] = {
        name: param.default for name, param in manifest.parameters.items()
    }
    values.update(manifest.values)

    problems: list[str] = []
    for key in sorted(supplied):
        if manifest.parameters and key not in manifest.parameters:
            problems.append(f"{manifest.name}: unknown parameter {key!r}")
        elif not _ENV_KEY_RE.match(key):
            problems.append(f"{manifest.name}: invalid parameter name {key!r}")
    values.update(supplied)
    for name, param in sorted(manifest.parameters.items()):
        if param.required and not values.get(name):
            problems.append(f"{manifest.name}: parameter {name!r} is required")
    if problems:
        raise ValidationError(f"Invalid values for {manifest.id}", details=problems)
    return dict(sorted(values.items()))


def _quote(value: str) -> str:
    if _ENV_SAFE_RE.match(value):
        return value
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("\n", "\\n")
    )
    return f'"{escaped}"'


def render_env(manifest: Manifest, values: Mapping[str, str]) -> str:
    """Render a package's ``.env`` file (sorted, one ``KEY=value`` per line)."""
    lines = [f"# {manifest.id}"]
    for key in sorted(values):
        param = manifest.parameters.get(key)
        if param is not None and param.description:
            lines.append(f"# {param.description}")
        lines.append(f"{key}={_quote(values[key])}")
    return "\n".join(lines) + "\n"
