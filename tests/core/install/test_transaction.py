"""Tests for Transaction: staging, commit, rollback and cancellation.

The crash tests make ``os.replace`` fail part-way through the swap and
check that every live file is either entirely old or entirely new, that
the lockfile callback never ran, and that the staging area survives for
recovery.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from pathlib import Path

import pytest

from compak.core.install.transaction import (
    Transaction,
    TransactionState,
    leftover_staging,
    project_lock,
)
from compak.exceptions import (
    CommitError,
    CompakError,
    FilesystemError,
    TransactionCancelledError,
)
from tests.helpers import snapshot


@pytest.fixture
def live(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "conf").mkdir(parents=True)
    (root / "conf" / "a.txt").write_text("old a")
    (root / "conf" / "b.txt").write_text("old b")
    (root / "gone.txt").write_text("delete me")
    return root


def _stage_all(txn: Transaction) -> None:
    txn.stage_bytes("conf/a.txt", "new a")
    txn.stage_bytes("conf/b.txt", b"new b")
    txn.stage_bytes("extra/c.txt", "new c")
    txn.stage_delete("gone.txt")
    txn.stage_compose("override.yml", "services: {}\n", ("web",))


class TestCommit:
    def test_commit_applies_everything(self, live: Path) -> None:
        persisted = []
        with Transaction(live) as txn:
            _stage_all(txn)
            txn.mark_staged()
            txn.commit(lambda: persisted.append(True))
        assert txn.state is TransactionState.COMMITTED
        assert persisted == [True]
        assert (live / "conf" / "a.txt").read_text() == "new a"
        assert (live / "extra" / "c.txt").read_text() == "new c"
        assert (live / "override.yml").exists()
        assert not (live / "gone.txt").exists()
        assert leftover_staging(live) == []

    def test_staged_files_invisible_before_commit(self, live: Path) -> None:
        before = snapshot(live)
        txn = Transaction(live)
        _stage_all(txn)
        txn.mark_staged()
        assert {k: v for k, v in snapshot(live).items() if ".compak" not in k} == before
        txn.rollback()

    def test_deleting_last_file_prunes_directory(self, live: Path) -> None:
        with Transaction(live) as txn:
            txn.stage_delete("conf/a.txt")
            txn.stage_delete("conf/b.txt")
            txn.mark_staged()
            txn.commit(lambda: None)
        assert not (live / "conf").exists()

    def test_compose_removal(self, live: Path) -> None:
        (live / "override.yml").write_text("x: 1\n")
        with Transaction(live) as txn:
            txn.stage_compose("override.yml", None)
            txn.mark_staged()
            txn.commit(lambda: None)
        assert not (live / "override.yml").exists()

    def test_commit_requires_staged_state(self, live: Path) -> None:
        txn = Transaction(live)
        with pytest.raises(CompakError, match="expected staged"):
            txn.commit(lambda: None)

    def test_paths_outside_project_refused(self, live: Path) -> None:
        txn = Transaction(live)
        for bad in ("../evil.txt", "/etc/passwd", ""):
            with pytest.raises(FilesystemError, match="outside the project"):
                txn.stage_bytes(bad, "x")


class TestRollback:
    def test_exception_rolls_back_byte_identical(self, live: Path) -> None:
        before = snapshot(live)
        with pytest.raises(RuntimeError):
            with Transaction(live) as txn:
                _stage_all(txn)
                raise RuntimeError("boom")
        assert txn.state is TransactionState.ROLLED_BACK
        assert snapshot(live) == before
        assert not (live / ".compak" / "staging").exists()

    def test_rollback_is_idempotent(self, live: Path) -> None:
        txn = Transaction(live)
        txn.rollback()
        txn.rollback()
        assert txn.state is TransactionState.ROLLED_BACK

    def test_rollback_after_commit_refused(self, live: Path) -> None:
        txn = Transaction(live)
        txn.mark_staged()
        txn.commit(lambda: None)
        with pytest.raises(CompakError):
            txn.rollback()


class TestCrashDuringCommit:
    @pytest.mark.parametrize("fail_at", [1, 2, 3, 4])
    def test_each_file_old_or_new(
        self, live: Path, monkeypatch: pytest.MonkeyPatch, fail_at: int
    ) -> None:
        old = snapshot(live)
        real_replace = os.replace
        calls = {"n": 0}

        def flaky_replace(src, dst):
            calls["n"] += 1
            if calls["n"] == fail_at:
                raise OSError("disk full")
            return real_replace(src, dst)

        persisted = []
        txn = Transaction(live)
        _stage_all(txn)
        txn.mark_staged()
        monkeypatch.setattr("compak.core.install.transaction.os.replace", flaky_replace)
        with pytest.raises(CommitError) as excinfo:
            with txn:
                txn.commit(lambda: persisted.append(True))
        monkeypatch.undo()

        assert persisted == []
        assert txn.state is TransactionState.STAGED
        new = {
            "conf/a.txt": b"new a",
            "conf/b.txt": b"new b",
            "extra/c.txt": b"new c",
            "override.yml": b"services: {}\n",
        }
        for rel, content in new.items():
            path = live / rel
            if path.exists():
                assert path.read_bytes() in (old.get(rel), content)
        assert (live / "gone.txt").read_text() == "delete me"
        assert Path(excinfo.value.staging_dir) in leftover_staging(live)

    def test_failing_persist_is_a_commit_error(self, live: Path) -> None:
        def persist() -> None:
            raise OSError("read-only filesystem")

        txn = Transaction(live)
        txn.mark_staged()
        with pytest.raises(CommitError, match="read-only"):
            txn.commit(persist)


class TestCancellation:
    def test_cancel_before_staging_step(self, live: Path) -> None:
        before = snapshot(live)
        with pytest.raises(TransactionCancelledError):
            with Transaction(live) as txn:
                txn.stage_bytes("conf/a.txt", "new a")
                assert txn.cancel() is True
                txn.stage_bytes("conf/b.txt", "new b")
        assert txn.state is TransactionState.ROLLED_BACK
        assert snapshot(live) == before

    def test_cancel_before_commit(self, live: Path) -> None:
        with pytest.raises(TransactionCancelledError):
            with Transaction(live) as txn:
                txn.stage_bytes("conf/a.txt", "new a")
                txn.mark_staged()
                txn.cancel()
                txn.commit(lambda: None)
        assert (live / "conf" / "a.txt").read_text() == "old a"

    def test_cancel_during_commit_ignored(self, live: Path) -> None:
        txn = Transaction(live)
        txn.mark_staged()
        results = []
        txn.commit(lambda: results.append(txn.cancel()))
        assert results == [False]
        assert txn.state is TransactionState.COMMITTED


class TestProjectLock:
    def test_lock_is_reusable(self, tmp_path: Path) -> None:
        async def _twice() -> None:
            async with project_lock(tmp_path):
                pass
            async with project_lock(tmp_path):
                assert (tmp_path / ".compak" / "project.lock").exists()

        asyncio.run(_twice())

    def test_tasks_in_one_loop_queue(self, tmp_path: Path) -> None:
        events: list[str] = []

        async def _hold(label: str) -> None:
            async with project_lock(tmp_path):
                events.append(f"enter {label}")
                await asyncio.sleep(0.01)
                events.append(f"exit {label}")

        async def _both() -> None:
            await asyncio.wait_for(asyncio.gather(_hold("a"), _hold("b")), timeout=10)

        asyncio.run(_both())
        assert events == ["enter a", "exit a", "enter b", "exit b"]

    def test_waits_for_foreign_holder_without_blocking_loop(self, tmp_path: Path) -> None:
        lock_path = tmp_path / ".compak" / "project.lock"
        lock_path.parent.mkdir(parents=True)
        async def _scenario() -> list[str]:
            events: list[str] = []
            inside = asyncio.Event()
            with open(lock_path, "a+") as foreign:
                fcntl.flock(foreign.fileno(), fcntl.LOCK_EX)

                async def _take() -> None:
                    async with project_lock(tmp_path, poll_interval=0.01):
                        events.append("acquired")
                        inside.set()

                task = asyncio.create_task(_take())
                await asyncio.sleep(0.05)
                events.append("loop still running")
                fcntl.flock(foreign.fileno(), fcntl.LOCK_UN)
                await asyncio.wait_for(inside.wait(), timeout=10)
                await task
            return events

        assert asyncio.run(_scenario()) == ["loop still running", "acquired"]
