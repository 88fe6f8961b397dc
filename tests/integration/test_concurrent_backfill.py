"""Integration tests: concurrent units of work on one pallet database.

Each worker thread opens its own PalletStore (SQLite connections are bound
to the thread that created them) against a shared file database.

Covers:
    - A backfill started while an open_pallet unit of work is stalled blocks
      until that unit commits, then sees its shape as in use.
    - Two backfills racing over the same pallets label each exactly once.
    - A waiter with a short lock timeout fails with TransientStoreError and
      commits nothing.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from palletshape.jobs.backfill import BackfillJob
from palletshape.shapes.allocator import ShapeAllocator
from palletshape.shapes.candidates import ShapeChoice
from palletshape.store.coordinator import ShapeTransaction, TransientStoreError
from palletshape.store.pallets import PalletStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_T0 = datetime(2025, 7, 31, 8, 0, tzinfo=timezone.utc)
_JOIN_TIMEOUT = 10.0


class _Worker(threading.Thread):
    """Thread that keeps the return value or exception of *fn*."""

    def __init__(self, fn: Callable[[], Any]) -> None:
        super().__init__(daemon=True)
        self._fn = fn
        self.result: Any = None
        self.error: Exception | None = None

    def run(self) -> None:
        try:
            self.result = self._fn()
        except Exception as exc:  # handed back to the test thread
            self.error = exc

    def outcome(self) -> Any:
        self.join(_JOIN_TIMEOUT)
        assert not self.is_alive(), "worker did not finish"
        if self.error is not None:
            raise self.error
        return self.result


class _PausingAllocator(ShapeAllocator):
    """Allocator that parks inside the unit of work until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.proceed = threading.Event()

    def allocate(self, tx: ShapeTransaction) -> ShapeChoice:
        self.entered.set()
        if not self.proceed.wait(_JOIN_TIMEOUT):
            raise RuntimeError("allocator was never released")
        return super().allocate(tx)


def _seed(db_path: Path, shapes: list[str | None]) -> tuple[int, list[int]]:
    """Create the database; return the factory id and the pallet ids."""
    store = PalletStore(db_path=db_path)
    factory = store.add_factory("A1")
    ids = [
        store.add_pallet(
            f"PAL-{n:03d}", factory, "12345", shape=shape, created_at=_T0 + timedelta(minutes=n)
        ).id
        for n, shape in enumerate(shapes, start=1)
    ]
    store.close()
    return factory, ids


def _open_pallet(db_path: Path, factory: int, allocator: ShapeAllocator) -> Callable[[], Any]:
    def _run() -> Any:
        store = PalletStore(db_path=db_path, allocator=allocator)
        try:
            return store.open_pallet(factory, "12345")
        finally:
            store.close()

    return _run


def _backfill(
    db_path: Path, lock_timeout_seconds: float = 5.0, barrier: threading.Barrier | None = None
) -> Callable[[], Any]:
    def _run() -> Any:
        store = PalletStore(db_path=db_path, lock_timeout_seconds=lock_timeout_seconds)
        try:
            if barrier is not None:
                barrier.wait(_JOIN_TIMEOUT)
            return BackfillJob(store.coordinator).run()
        finally:
            store.close()

    return _run


def _read_state(db_path: Path) -> tuple[dict[int, str | None], list[str]]:
    """Return every pallet's shape and the non-blank shapes of open pallets."""
    store = PalletStore(db_path=db_path)
    try:
        rows = store._conn.execute("SELECT id, shape FROM pallet ORDER BY id").fetchall()
        open_shapes = [p.shape for p in store.list_open_pallets() if p.shape and p.shape.strip()]
        return {row["id"]: row["shape"] for row in rows}, open_shapes
    finally:
        store.close()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_backfill_waits_for_stalled_open_pallet(tmp_path: Path):
    """The backfill blocks behind a stalled unit of work and sees its shape."""
    db_path = tmp_path / "pallets.db"
    factory, (held, *unlabelled) = _seed(db_path, ["star", None, None, None])
    allocator = _PausingAllocator()

    opener = _Worker(_open_pallet(db_path, factory, allocator))
    opener.start()
    assert allocator.entered.wait(_JOIN_TIMEOUT)

    backfill = _Worker(_backfill(db_path))
    backfill.start()
    backfill.join(0.2)
    assert backfill.is_alive(), "backfill ran while another unit of work held the lock"

    allocator.proceed.set()
    opened = opener.outcome()
    result = backfill.outcome()

    assert opened.shape == "triangle_up"
    assert result.processed == 3
    shapes, open_shapes = _read_state(db_path)
    assert [shapes[pid] for pid in unlabelled] == ["triangle_right", "triangle_left", "triangle_down"]
    assert shapes[held] == "star"
    assert len(open_shapes) == len(set(open_shapes))


def test_racing_backfills_label_each_pallet_once(tmp_path: Path):
    """Two jobs started together split the work without duplicates."""
    db_path = tmp_path / "pallets.db"
    _, ids = _seed(db_path, [None] * 20)
    barrier = threading.Barrier(2)

    workers = [_Worker(_backfill(db_path, barrier=barrier)) for _ in range(2)]
    for worker in workers:
        worker.start()
    processed = sorted(worker.outcome().processed for worker in workers)

    assert processed == [0, 20]
    shapes, open_shapes = _read_state(db_path)
    assert all(shapes[pid] for pid in ids)
    assert len(open_shapes) == len(set(open_shapes)) == 20


def test_short_lock_timeout_raises_transient_error(tmp_path: Path):
    """A waiter gives up with TransientStoreError and changes nothing."""
    db_path = tmp_path / "pallets.db"
    factory, ids = _seed(db_path, [None, None])
    allocator = _PausingAllocator()

    opener = _Worker(_open_pallet(db_path, factory, allocator))
    opener.start()
    assert allocator.entered.wait(_JOIN_TIMEOUT)

    waiter = _Worker(_backfill(db_path, lock_timeout_seconds=0.1))
    waiter.start()
    try:
        with pytest.raises(TransientStoreError):
            waiter.outcome()
    finally:
        allocator.proceed.set()

    assert opener.outcome().shape == "star"
    shapes, _ = _read_state(db_path)
    assert [shapes[pid] for pid in ids] == [None, None]
