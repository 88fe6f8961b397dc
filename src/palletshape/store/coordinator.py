"""Exclusive unit of work for shape assignment.

:class:`AssignmentCoordinator` runs a caller-supplied function inside one
``BEGIN IMMEDIATE`` SQLite transaction and hands it a
:class:`ShapeTransaction`, the only object allowed to write shapes.  Either
every write made inside the function commits together, or the whole
transaction is rolled back and the original exception propagates.

Locking protocol
----------------
SQLite has no per-row ``FOR UPDATE``; ``BEGIN IMMEDIATE`` reserves the whole
database for writing, so a second coordinator on another connection blocks
(up to the connection's busy timeout) until the first commits or rolls back.
Inside the unit of work every caller must still follow the row protocol that
keeps the design deadlock-free on a row-locking store:

- lock the rows you will mutate before mutating them
  (:meth:`ShapeTransaction.lock_unlabeled_open_pallets`,
  :meth:`ShapeTransaction.lock_pallets`, :meth:`ShapeTransaction.insert_pallet`);
- lock them in ascending ``(created_at, id)`` order, never going back to a
  row that sorts before one already locked;
- keep them locked until the unit of work ends.

Violations raise :class:`LockProtocolError`.  A stalled unit of work blocks
every other coordinator on the same database until the busy timeout expires;
there is no other cancellation.

Read-your-own-writes
--------------------
:meth:`ShapeTransaction.read_open_shapes` runs on the transaction's own
connection, so a shape assigned earlier in the same unit of work is already
in the in-use set when the next shape is chosen.  Allocation correctness
depends on this.

Error taxonomy
--------------
- :class:`TransientStoreError` -- lock acquisition or connection failure, or
  a database file SQLite cannot read (corrupt, not a database).
- :class:`PersistenceWriteError` -- a write was rejected (constraint,
  missing row).
- :class:`LockProtocolError` -- the locking protocol above was not followed.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")

#: Sort key of a locked row: ``(created_at, id)``.
_LockKey = tuple[str, int]


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class ShapeStoreError(RuntimeError):
    """Base class for failures inside a shape-assignment unit of work."""


class TransientStoreError(ShapeStoreError):
    """The store could not be reached or the write lock was not acquired.

    The unit of work is aborted; the whole job may be retried later.
    """


class PersistenceWriteError(ShapeStoreError):
    """A write inside the unit of work was rejected.

    Raised for constraint violations (including two open pallets sharing a
    shape) and for writes that matched no row.  The entire unit of work is
    rolled back.
    """


class LockProtocolError(ShapeStoreError):
    """A caller broke the lock-ordering protocol of :class:`ShapeTransaction`."""


# ---------------------------------------------------------------------------
# ShapeTransaction
# ---------------------------------------------------------------------------


class ShapeTransaction:
    """Handle for reads and shape writes inside one exclusive unit of work.

    Instances are created by :meth:`AssignmentCoordinator.run_exclusive` and
    become unusable once the unit of work commits or rolls back.

    Args:
        conn: The connection that owns the open transaction.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._locked: set[int] = set()
        self._horizon: _LockKey | None = None
        self._active = True

    @property
    def connection(self) -> sqlite3.Connection:
        """The connection the unit of work runs on, for collaborator reads."""
        self._ensure_active()
        return self._conn

    @property
    def locked_ids(self) -> frozenset[int]:
        return frozenset(self._locked)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_open_shapes(self) -> set[str]:
        """Return the non-null shapes of every open pallet.

        Reflects shapes assigned earlier in this unit of work.
        """
        cur = self._execute(
            "SELECT shape FROM pallet WHERE status = 'open' AND shape IS NOT NULL"
        )
        return {row[0] for row in cur.fetchall()}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_unlabeled_open_pallets(self) -> list[int]:
        """Lock every open pallet without a shape, oldest first.

        A shape that is ``NULL`` or only whitespace counts as missing.

        Returns:
            Pallet ids ordered by ascending ``created_at`` (ties by ``id``).
            This is the processing order callers must keep.

        Raises:
            LockProtocolError: If a returned row sorts before a row already
                locked in this unit of work.
        """
        cur = self._execute(
            """
            SELECT id, created_at
            FROM pallet
            WHERE status = 'open' AND (shape IS NULL OR TRIM(shape) = '')
            ORDER BY created_at ASC, id ASC
            """
        )
        return self._acquire([(row[1], row[0]) for row in cur.fetchall()])

    def lock_pallets(self, pallet_ids: Iterable[int]) -> list[int]:
        """Lock the given pallets in ascending ``(created_at, id)`` order.

        Args:
            pallet_ids: Ids of existing pallets the caller will mutate.

        Returns:
            The ids in the order they were locked.

        Raises:
            KeyError: If any id does not exist.
            LockProtocolError: If the ordering rule would be broken.
        """
        wanted = sorted(set(pallet_ids))
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        cur = self._execute(
            f"SELECT id, created_at FROM pallet WHERE id IN ({placeholders})"  # noqa: S608
            " ORDER BY created_at ASC, id ASC",
            tuple(wanted),
        )
        rows = [(row[1], row[0]) for row in cur.fetchall()]
        missing = set(wanted) - {pallet_id for _, pallet_id in rows}
        if missing:
            raise KeyError(f"Unknown pallet ids: {sorted(missing)}")
        return self._acquire(rows)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_pallet(
        self,
        pallet_number: str,
        factory_id: int,
        dpn: str,
        created_at: str,
        *,
        status: str = "open",
        shape: str | None = None,
    ) -> int:
        """Insert a pallet inside the unit of work and lock the new row.

        Returns:
            The new pallet id.

        Raises:
            PersistenceWriteError: If the insert violates a constraint.
            LockProtocolError: If the new row sorts before a locked row.
        """
        cur = self._write(
            """
            INSERT INTO pallet (pallet_number, factory_id, dpn, status, shape, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (pallet_number, factory_id, dpn, status, shape, created_at),
        )
        pallet_id = cur.lastrowid
        if pallet_id is None:
            raise PersistenceWriteError(f"Insert of pallet {pallet_number!r} returned no row id")
        self._acquire([(created_at, pallet_id)])
        return pallet_id

    def assign(self, pallet_id: int, shape: str) -> None:
        """Write *shape* to a pallet locked in this unit of work.

        Raises:
            LockProtocolError: If *pallet_id* was not locked first.
            PersistenceWriteError: If the write is rejected or matches no row.
        """
        self._ensure_active()
        if pallet_id not in self._locked:
            raise LockProtocolError(
                f"Pallet {pallet_id} must be locked in this unit of work before assigning a shape"
            )
        cur = self._write(
            "UPDATE pallet SET shape = ? WHERE id = ?",
            (shape, pallet_id),
        )
        if cur.rowcount != 1:
            raise PersistenceWriteError(f"Pallet {pallet_id} vanished before shape {shape!r} was written")
        logger.debug("Assigned shape %r to pallet %d", shape, pallet_id)

    def release(self, pallet_id: int, released_at: str, doa_number: str | None = None) -> None:
        """Move a locked open pallet to ``released``, freeing its shape.

        Raises:
            LockProtocolError: If *pallet_id* was not locked first.
            PersistenceWriteError: If the pallet is not open any more.
        """
        self._ensure_active()
        if pallet_id not in self._locked:
            raise LockProtocolError(f"Pallet {pallet_id} must be locked in this unit of work before release")
        cur = self._write(
            """
            UPDATE pallet SET status = 'released', released_at = ?, doa_number = ?
            WHERE id = ? AND status = 'open'
            """,
            (released_at, doa_number, pallet_id),
        )
        if cur.rowcount != 1:
            raise PersistenceWriteError(f"Pallet {pallet_id} is not open")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _close(self) -> None:
        self._active = False

    def _ensure_active(self) -> None:
        if not self._active:
            raise LockProtocolError("This unit of work has already ended")

    def _acquire(self, keys: list[_LockKey]) -> list[int]:
        """Record *keys* as locked, enforcing ascending lock order."""
        fresh = sorted(key for key in keys if key[1] not in self._locked)
        if fresh and self._horizon is not None and fresh[0] < self._horizon:
            raise LockProtocolError(
                f"Pallet {fresh[0][1]} (created {fresh[0][0]}) sorts before pallet "
                f"{self._horizon[1]} (created {self._horizon[0]}), which is already locked"
            )
        for key in fresh:
            self._locked.add(key[1])
        if fresh:
            self._horizon = fresh[-1]
        return [pallet_id for _, pallet_id in sorted(keys)]

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        self._ensure_active()
        try:
            return self._conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            raise TransientStoreError(f"Pallet store unavailable: {exc}") from exc

    def _write(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Cursor:
        try:
            return self._execute(sql, params)
        except sqlite3.IntegrityError as exc:
            raise PersistenceWriteError(f"Write rejected by the pallet store: {exc}") from exc


# ---------------------------------------------------------------------------
# AssignmentCoordinator
# ---------------------------------------------------------------------------


class AssignmentCoordinator:
    """Runs shape-assignment work inside one exclusive SQLite transaction.

    The connection must be opened with ``isolation_level=None`` so that this
    class, not the :mod:`sqlite3` module, decides where transactions begin
    and end.  Its ``timeout`` is the lock wait: a second coordinator blocks
    at most that long before :class:`TransientStoreError` is raised.

    Args:
        conn: An open SQLite connection in manual transaction mode.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def run_exclusive(self, work: Callable[[ShapeTransaction], R], *, dry_run: bool = False) -> R:
        """Run *work* in one atomic, isolated unit of work.

        Args:
            work: Function receiving the :class:`ShapeTransaction`.  Its
                return value is returned unchanged.
            dry_run: When ``True`` the unit of work is rolled back even if
                *work* succeeds.

        Returns:
            Whatever *work* returned.

        Raises:
            TransientStoreError: If the write lock cannot be acquired or the
                commit fails.
            LockProtocolError: If the connection is already inside a
                transaction.
            Exception: Anything raised by *work*, after a full rollback.
        """
        if self._conn.in_transaction:
            raise LockProtocolError("A unit of work is already open on this connection")

        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.DatabaseError as exc:
            raise TransientStoreError(f"Could not acquire the pallet write lock: {exc}") from exc

        tx = ShapeTransaction(self._conn)
        committed = False
        try:
            result = work(tx)
            if dry_run:
                logger.info("Dry run: discarding %d locked pallet(s)", len(tx.locked_ids))
            else:
                self._commit()
                committed = True
        finally:
            tx._close()
            if not committed:
                self._rollback()
        return result

    def _commit(self) -> None:
        try:
            self._conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            raise PersistenceWriteError(f"Commit rejected by the pallet store: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            raise TransientStoreError(f"Commit failed: {exc}") from exc

    def _rollback(self) -> None:
        # SQLite may already have rolled back on some errors.
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")
            logger.info("Unit of work rolled back")
