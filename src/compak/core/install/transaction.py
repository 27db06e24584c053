"""Installation transactions: stage, then commit or roll back.

A ``Transaction`` moves through::

    PLANNED --> STAGED --> COMMITTED
        \\          \\
         +----------+--> ROLLED_BACK

While ``PLANNED`` every write goes into a private staging area
(``<project>/.compak/staging/<txn-id>/``); no live file is touched. Once
staging completes the transaction is ``STAGED``. ``commit`` then swaps each
staged file into place with ``os.replace`` (atomic per file), unlinks the
files being deleted and only then persists the new lockfile. A crash at
any point of the swap leaves every individual file either old or new, and
the old lockfile authoritative.

The swap is a critical section: it holds a process-wide lock, is never
interleaved with another transaction's swap, and ignores cancellation.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import shutil
import threading
import uuid
import weakref
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Callable

from compak.exceptions import (
    CommitError,
    CompakError,
    FilesystemError,
    TransactionCancelledError,
)
from compak.fsio import prune_empty_dirs

logger = logging.getLogger(__name__)

STATE_DIR = ".compak"
STAGING_DIR = "staging"
PROJECT_LOCK = "project.lock"

# Serializes the swap step of every transaction in this process.
_COMMIT_LOCK = threading.Lock()


class TransactionState(Enum):
    PLANNED = "planned"
    STAGED = "staged"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WriteFile:
    """Replace (or create) ``path`` with the staged file."""

    path: str
    staged: Path


@dataclass(frozen=True)
class DeleteFile:
    """Remove ``path`` from the project."""

    path: str


@dataclass(frozen=True)
class MergeCompose:
    """Replace an override file with its merged form.

    ``staged`` is None when the merged document is empty and the file is
    to be removed.
    """

    path: str
    staged: Path | None
    packages: tuple[str, ...] = ()


Operation = WriteFile | DeleteFile | MergeCompose


def _check_relative(path: str) -> str:
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or ".." in pure.parts:
        raise FilesystemError(f"refusing to touch path outside the project: {path!r}")
    return pure.as_posix()


# Per event loop, per project: queues operations of one process before
# they reach the file lock.
_LOOP_LOCKS: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[Path, asyncio.Lock]
] = weakref.WeakKeyDictionary()

LOCK_POLL_INTERVAL = 0.05


def _loop_lock(project_dir: Path) -> asyncio.Lock:
    locks = _LOOP_LOCKS.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(project_dir.resolve(), asyncio.Lock())


@contextlib.asynccontextmanager
async def project_lock(
    project_dir: Path, poll_interval: float = LOCK_POLL_INTERVAL
) -> AsyncIterator[None]:
    """Hold the exclusive per-project lock (``.compak/project.lock``).

    Serializes whole install/upgrade/uninstall operations. Tasks of one
    event loop queue on an ``asyncio.Lock``; other processes are kept out
    by ``flock``, polled without blocking so the loop keeps running.
    """
    project_dir = Path(project_dir)
    async with _loop_lock(project_dir):
        lock_path = project_dir / STATE_DIR / PROJECT_LOCK
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+") as lock_file:
            waited = False
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not waited:
                        logger.info("Waiting for the lock on %s", project_dir)
                        waited = True
                    await asyncio.sleep(poll_interval)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class Transaction:
    """One atomic install/upgrade/uninstall against a project directory.

    Args:
        project_dir: The compose project root.
        txn_id: Identifier used for the staging directory (random if
            omitted).

    Usage::

        with Transaction(project) as txn:
            txn.stage_bytes("docker-compose.compak.yml", data)
            txn.mark_staged()
            txn.commit(lambda: manager.save(new_lockfile))

    Leaving the ``with`` block with an exception before commit rolls back.
    """

    def __init__(self, project_dir: Path, txn_id: str | None = None) -> None:
        self.project_dir = Path(project_dir)
        self.id = txn_id or uuid.uuid4().hex[:12]
        self.staging_dir = self.project_dir / STATE_DIR / STAGING_DIR / self.id
        self.state = TransactionState.PLANNED
        self.operations: list[Operation] = []
        self._cancelled = threading.Event()
        self._committing = False
        logger.info("Transaction %s planned in %s", self.id, self.project_dir)

    # -- Context manager ----------------------------------------------------

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self.state in (
            TransactionState.PLANNED,
            TransactionState.STAGED,
        ) and not isinstance(exc, CommitError):
            self.rollback()

    # -- Cancellation -------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            False if the commit has already begun (the request is
            ignored), True otherwise. A cancelled transaction rolls back at
            its next staging step or when ``commit`` is called
            (see ``check_cancelled``).
        """
        if self._committing or self.state is TransactionState.COMMITTED:
            logger.warning("Transaction %s is committing; cancel ignored", self.id)
            return False
        self._cancelled.set()
        logger.info("Transaction %s cancellation requested", self.id)
        return True

    def check_cancelled(self) -> None:
        """Raise if cancellation was requested.

        The ``with`` block then rolls the transaction back.
        """
        if self.cancelled:
            raise TransactionCancelledError(f"Transaction {self.id} was cancelled")

    # -- Staging ------------------------------------------------------------

    def _require(self, *states: TransactionState) -> None:
        if self.state not in states:
            raise CompakError(
                f"Transaction {self.id} is {self.state.value}; expected "
                + " or ".join(s.value for s in states)
            )

    def staged_path(self, path: str) -> Path:
        """Location inside the staging area for project path *path*."""
        return self.staging_dir / "files" / _check_relative(path)

    def stage_bytes(self, path: str, data: bytes | str) -> WriteFile:
        """Stage new content for project-relative *path*.

        Raises:
            FilesystemError: If the staging write fails.
            TransactionCancelledError: If cancellation was requested.
        """
        self._require(TransactionState.PLANNED)
        self.check_cancelled()
        target = self.staged_path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(data, str):
                target.write_text(data, encoding="utf-8")
            else:
                target.write_bytes(data)
        except OSError as exc:
            raise FilesystemError(f"cannot stage {path}: {exc}") from exc
        return self.add_write(path)

    def add_write(self, path: str) -> WriteFile:
        """Record a file already placed at ``staged_path(path)``."""
        self._require(TransactionState.PLANNED)
        op = WriteFile(_check_relative(path), self.staged_path(path))
        self.operations.append(op)
        return op

    def stage_delete(self, path: str) -> DeleteFile:
        self._require(TransactionState.PLANNED)
        self.check_cancelled()
        op = DeleteFile(_check_relative(path))
        self.operations.append(op)
        return op

    def stage_compose(self, path: str, content: str | None, packages: tuple[str, ...] = ()) -> MergeCompose:
        """Stage a merged override file (``content=None`` removes it)."""
        self._require(TransactionState.PLANNED)
        self.check_cancelled()
        staged: Path | None = None
        if content is not None:
            staged = self.staged_path(path)
            try:
                staged.parent.mkdir(parents=True, exist_ok=True)
                staged.write_text(content, encoding="utf-8")
            except OSError as exc:
                raise FilesystemError(f"cannot stage {path}: {exc}") from exc
        op = MergeCompose(_check_relative(path), staged, tuple(sorted(packages)))
        self.operations.append(op)
        return op

    def mark_staged(self) -> None:
        self._require(TransactionState.PLANNED)
        self.check_cancelled()
        self.state = TransactionState.STAGED
        logger.info("Transaction %s staged: %d operation(s)", self.id, len(self.operations))

    # -- Commit / rollback --------------------------------------------------

    def _ordered(self) -> list[Operation]:
        # Writes first, then deletions; each group in path order.
        writes = [
            op for op in self.operations
            if isinstance(op, WriteFile) or (isinstance(op, MergeCompose) and op.staged)
        ]
        deletes = [op for op in self.operations if op not in writes]
        return sorted(writes, key=lambda o: o.path) + sorted(deletes, key=lambda o: o.path)

    def _swap(self, op: Operation) -> None:
        live = self.project_dir / op.path
        staged = op.staged if not isinstance(op, DeleteFile) else None
        if staged is not None:
            live.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staged, live)
        else:
            try:
                os.unlink(live)
            except FileNotFoundError:
                logger.debug("Already absent: %s", op.path)
            prune_empty_dirs(live.parent, self.project_dir)

    def commit(self, persist: Callable[[], None]) -> None:
        """Swap every staged change into place, then call *persist*.

        Args:
            persist: Saves the new lockfile; runs only after every swap
                succeeded.

        Raises:
            TransactionCancelledError: If cancelled before the swap began.
            CommitError: If a swap or the lockfile save fails. The staging
                area is kept for manual recovery.
        """
        self._require(TransactionState.STAGED)
        self.check_cancelled()
        with _COMMIT_LOCK:
            self._committing = True
            try:
                for op in self._ordered():
                    self._swap(op)
                persist()
            except (OSError, CompakError) as exc:
                logger.error("Transaction %s failed during commit: %s", self.id, exc)
                raise CommitError(
                    f"Commit of transaction {self.id} failed: {exc}",
                    str(self.staging_dir),
                ) from exc
            finally:
                self._committing = False
            self.state = TransactionState.COMMITTED
        self._discard_staging()
        logger.info("Transaction %s committed", self.id)

    def rollback(self) -> None:
        """Discard the staging area; no live file has been touched.

        Raises:
            CompakError: If the transaction already committed.
        """
        if self.state is TransactionState.ROLLED_BACK:
            return
        self._require(TransactionState.PLANNED, TransactionState.STAGED)
        self._discard_staging()
        self.state = TransactionState.ROLLED_BACK
        logger.info("Transaction %s rolled back", self.id)

    def _discard_staging(self) -> None:
        shutil.rmtree(self.staging_dir, ignore_errors=True)
        prune_empty_dirs(self.staging_dir.parent, self.project_dir / STATE_DIR)


def leftover_staging(project_dir: Path) -> list[Path]:
    """Staging areas left behind by failed commits, sorted."""
    root = project_dir / STATE_DIR / STAGING_DIR
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.is_dir())
