"""Small filesystem helpers shared by the lockfile, registry and installer."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str | bytes) -> None:
    """Write *content* to *path* atomically.

    The data goes to a temporary file in the same directory, which then
    replaces the target with ``os.replace``. Readers see either the old
    file or the new one, never a partial write.

    Raises:
        OSError: If the write or the rename fails. The temporary file is
            removed first.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, str(path))
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            logger.debug("Could not remove temporary file %s", tmp)
        raise


def prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove *start* and its empty parents, up to but excluding *stop*."""
    current = start
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent
