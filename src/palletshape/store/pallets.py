"""PalletStore: SQLite-backed persistence for pallets and their shapes.

This module implements the :class:`PalletStore` class and the Pydantic
model :class:`Pallet` that crosses the store / job / CLI boundary.

Schema overview (pallets.db)
----------------------------
- ``factory`` -- factory codes used in pallet numbers.
- ``pallet``  -- one row per pallet.  ``status`` is ``'open'`` or
  ``'released'``; ``shape`` is ``NULL`` (or blank) until a shape is
  allocated; ``created_at`` is an ISO 8601 UTC string with microseconds, so
  lexicographic order is creation order.

Design notes
-------------
- Among open pallets no two non-blank shapes may be equal.  The partial
  unique index ``idx_pallet_open_shape`` enforces this when a unit of work
  writes, so a colliding shape aborts the transaction instead of committing.
- Releasing a pallet keeps its shape for history; because the index only
  covers open rows the shape becomes free for other open pallets.
- Every write goes through :class:`~palletshape.store.coordinator.AssignmentCoordinator`
  except :meth:`PalletStore.add_factory`, which touches no pallet row.
- The connection is opened with ``isolation_level=None``; transactions are
  opened explicitly by the coordinator.
- All SQL uses parameterised ``?`` placeholders.
- Pallet numbers follow ``PAL-<factory code>-<dpn>-<MMDDYY><NN>`` where
  ``NN`` counts pallets of the same factory and dpn created that UTC day.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, field_validator

from palletshape.shapes.allocator import ShapeAllocator
from palletshape.store.coordinator import (
    AssignmentCoordinator,
    ShapeTransaction,
    TransientStoreError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Allowed values for the ``pallet.status`` column.
PALLET_STATUSES: frozenset[str] = frozenset({"open", "released"})

#: Status whose rows take part in shape uniqueness.
OPEN_STATUS: str = "open"

#: Default seconds a connection waits on another writer's lock.
DEFAULT_LOCK_TIMEOUT: float = 5.0

_PALLET_COLUMNS: str = (
    "id, pallet_number, factory_id, dpn, status, shape, locked, "
    "created_at, released_at, doa_number"
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class Pallet(BaseModel):
    """A pallet row as read from the store.

    Attributes
    ----------
    id:
        Primary key; never changes.
    pallet_number:
        Human-facing number, e.g. ``"PAL-A1-12345-07312501"``.
    factory_id:
        The factory the pallet belongs to.
    dpn:
        Part number the pallet is segregated by.
    status:
        ``"open"`` or ``"released"``.
    shape:
        Allocated shape label, or ``None`` if not yet assigned.
    locked:
        Group lock flag maintained by external collaborators.
    created_at:
        ISO 8601 UTC creation timestamp; the backfill processing order.
    released_at:
        ISO 8601 UTC release timestamp, or ``None`` while open.
    doa_number:
        Release paperwork number, if one was recorded.
    """

    id: int
    pallet_number: str
    factory_id: int
    dpn: str
    status: str = OPEN_STATUS
    shape: str | None = None
    locked: bool = False
    created_at: str
    released_at: str | None = None
    doa_number: str | None = None

    @field_validator("status")
    @classmethod
    def _validate_status(cls, v: str) -> str:
        """Validate that *status* is one of :data:`PALLET_STATUSES`.

        Raises
        ------
        ValueError
            If *v* is not an allowed status.
        """
        if v not in PALLET_STATUSES:
            raise ValueError(f"status must be one of {sorted(PALLET_STATUSES)}, got {v!r}")
        return v

    @property
    def is_open(self) -> bool:
        return self.status == OPEN_STATUS

    @property
    def has_shape(self) -> bool:
        return bool(self.shape and self.shape.strip())


# ---------------------------------------------------------------------------
# PalletStore
# ---------------------------------------------------------------------------


class PalletStore:
    """Persistent SQLite storage for pallets.

    On initialisation the database is created (if it does not exist) with
    the ``factory`` and ``pallet`` tables and their indexes.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Pass ``Path(":memory:")`` for
        tests that use a single connection.
    lock_timeout_seconds:
        How long a unit of work waits for another connection's write lock
        before failing with
        :class:`~palletshape.store.coordinator.TransientStoreError`.
    clock:
        Returns the current time; defaults to ``datetime.now(timezone.utc)``.
        Inject a fixed clock in tests.
    allocator:
        Shape allocator used by :meth:`open_pallet`.
    """

    def __init__(
        self,
        db_path: Path,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
        allocator: ShapeAllocator | None = None,
    ) -> None:
        self._db_path: Path = db_path
        self._clock: Callable[[], datetime] = clock or _utc_now
        self._allocator: ShapeAllocator = allocator or ShapeAllocator()
        try:
            self._conn: sqlite3.Connection = self._open_connection(db_path, lock_timeout_seconds)
        except sqlite3.DatabaseError as exc:
            raise TransientStoreError(f"Could not open pallet store at {db_path}: {exc}") from exc
        try:
            self._init_schema()
        except sqlite3.DatabaseError as exc:
            self._conn.close()
            raise TransientStoreError(f"Could not open pallet store at {db_path}: {exc}") from exc
        self._coordinator = AssignmentCoordinator(self._conn)

    @property
    def coordinator(self) -> AssignmentCoordinator:
        """The unit-of-work coordinator bound to this store's connection."""
        return self._coordinator

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_factory(self, code: str) -> int:
        """Register a factory and return its id.

        Parameters
        ----------
        code:
            Short factory code used in pallet numbers (e.g. ``"A1"``).

        Raises
        ------
        ValueError
            If *code* is blank or already registered.
        """
        if not code or not code.strip():
            raise ValueError("Factory code must be a non-empty string.")
        try:
            cur = self._conn.execute("INSERT INTO factory (code) VALUES (?)", (code,))
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Factory code {code!r} already exists") from exc
        factory_id = cur.lastrowid
        if factory_id is None:
            raise RuntimeError(f"Insert of factory {code!r} returned no row id")
        logger.info("Registered factory %s as id %d", code, factory_id)
        return factory_id

    def add_pallet(
        self,
        pallet_number: str,
        factory_id: int,
        dpn: str,
        *,
        shape: str | None = None,
        status: str = OPEN_STATUS,
        created_at: datetime | None = None,
    ) -> Pallet:
        """Insert a pallet record exactly as given, without allocating a shape.

        Used to load existing pallets (for example rows created before
        shapes existed) that the backfill job will later label.

        Parameters
        ----------
        pallet_number:
            Unique pallet number.
        factory_id:
            Id of a registered factory.
        dpn:
            Part number.
        shape:
            Optional pre-existing shape.
        status:
            ``"open"`` or ``"released"``.
        created_at:
            Creation time; defaults to the store clock.

        Returns
        -------
        Pallet
            The stored pallet.

        Raises
        ------
        ValueError
            If *status* is not an allowed value.
        PersistenceWriteError
            If a constraint rejects the row (duplicate number, unknown
            factory, shape already held by an open pallet).
        """
        if status not in PALLET_STATUSES:
            raise ValueError(f"status must be one of {sorted(PALLET_STATUSES)}, got {status!r}")
        timestamp = _format_timestamp(created_at or self._clock())

        def _insert(tx: ShapeTransaction) -> int:
            return tx.insert_pallet(
                pallet_number, factory_id, dpn, timestamp, status=status, shape=shape
            )

        pallet_id = self._coordinator.run_exclusive(_insert)
        return self._require_pallet(pallet_id)

    def open_pallet(self, factory_id: int, dpn: str) -> Pallet:
        """Create a new open pallet with a generated number and a fresh shape.

        Number generation, insert, and shape allocation happen in one unit
        of work, so concurrent callers cannot receive the same number or
        shape.
        The date part of the number and its daily sequence use the UTC day.

        Parameters
        ----------
        factory_id:
            Id of a registered factory.
        dpn:
            Part number the pallet is segregated by.

        Returns
        -------
        Pallet
            The new pallet, with ``shape`` set.

        Raises
        ------
        ValueError
            If *dpn* is blank or *factory_id* is unknown.
        """
        if not dpn or not dpn.strip():
            raise ValueError(f"Cannot open a pallet for factory {factory_id}: dpn is missing")

        created = self._clock()

        def _open(tx: ShapeTransaction) -> int:
            code = _factory_code(tx.connection, factory_id)
            number = _next_pallet_number(tx.connection, factory_id, code, dpn, created)
            pallet_id = tx.insert_pallet(number, factory_id, dpn, _format_timestamp(created))
            choice = self._allocator.allocate(tx)
            tx.assign(pallet_id, choice.shape)
            logger.info("Opened pallet %s with shape %r", number, choice.shape)
            return pallet_id

        pallet_id = self._coordinator.run_exclusive(_open)
        return self._require_pallet(pallet_id)

    def release_pallet(self, pallet_id: int, doa_number: str | None = None) -> Pallet:
        """Mark an open pallet as released, freeing its shape for reuse.

        The shape stays on the released row for history.

        Parameters
        ----------
        pallet_id:
            The pallet to release.
        doa_number:
            Optional release paperwork number.

        Returns
        -------
        Pallet
            The released pallet.

        Raises
        ------
        KeyError
            If *pallet_id* does not exist.
        ValueError
            If the pallet is not open.
        """
        released_at = _format_timestamp(self._clock())

        def _release(tx: ShapeTransaction) -> None:
            tx.lock_pallets([pallet_id])
            row = tx.connection.execute(
                "SELECT status FROM pallet WHERE id = ?", (pallet_id,)
            ).fetchone()
            if row["status"] != OPEN_STATUS:
                raise ValueError(f"Pallet {pallet_id} is {row['status']!r}, not open")
            tx.release(pallet_id, released_at, doa_number)

        self._coordinator.run_exclusive(_release)
        logger.info("Released pallet %d", pallet_id)
        return self._require_pallet(pallet_id)

    def get_pallet(self, pallet_id: int) -> Pallet | None:
        """Return the pallet with *pallet_id*, or ``None`` if it does not exist."""
        row = self._conn.execute(
            f"SELECT {_PALLET_COLUMNS} FROM pallet WHERE id = ?",  # noqa: S608
            (pallet_id,),
        ).fetchone()
        return _row_to_pallet(row) if row is not None else None

    def list_open_pallets(self) -> list[Pallet]:
        """Return every open pallet, oldest first."""
        rows = self._conn.execute(
            f"SELECT {_PALLET_COLUMNS} FROM pallet"  # noqa: S608
            " WHERE status = 'open' ORDER BY created_at ASC, id ASC"
        ).fetchall()
        return [_row_to_pallet(row) for row in rows]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _open_connection(db_path: Path, lock_timeout_seconds: float) -> sqlite3.Connection:
        """Open a SQLite connection in manual transaction mode and set pragmas.

        ``timeout`` doubles as the wait for another connection's write lock.
        """
        conn = sqlite3.connect(str(db_path), timeout=lock_timeout_seconds, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.DatabaseError:
            conn.close()
            raise
        return conn

    def _init_schema(self) -> None:
        """Create the tables and indexes if they do not exist.

        Indexes created:
        - ``idx_pallet_open_shape`` -- partial unique index on ``shape`` over
          open pallets with a non-blank shape.
        - ``idx_pallet_status_created`` on ``pallet(status, created_at)`` for
          the oldest-first scan of open pallets.
        """
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS factory (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pallet (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pallet_number TEXT NOT NULL UNIQUE,
                factory_id INTEGER NOT NULL,
                dpn TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open'
                    CHECK(status IN ('open','released')),
                shape TEXT,
                locked INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                released_at TEXT,
                doa_number TEXT,
                FOREIGN KEY (factory_id) REFERENCES factory(id)
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_pallet_open_shape ON pallet(shape)
            WHERE status = 'open' AND shape IS NOT NULL AND TRIM(shape) <> ''
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_pallet_status_created ON pallet(status, created_at)"
        )

    def _require_pallet(self, pallet_id: int) -> Pallet:
        pallet = self.get_pallet(pallet_id)
        if pallet is None:
            raise KeyError(f"Unknown pallet id: {pallet_id}")
        return pallet


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    """Return *moment* in UTC; naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _format_timestamp(moment: datetime) -> str:
    """Render *moment* as a sortable ISO 8601 UTC string."""
    return _as_utc(moment).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _factory_code(conn: sqlite3.Connection, factory_id: int) -> str:
    row = conn.execute("SELECT code FROM factory WHERE id = ?", (factory_id,)).fetchone()
    if row is None:
        raise ValueError(f"Factory with id {factory_id} not found")
    code: str = row["code"]
    return code


def _next_pallet_number(
    conn: sqlite3.Connection, factory_id: int, factory_code: str, dpn: str, created: datetime
) -> str:
    """Build ``PAL-<code>-<dpn>-<MMDDYY><NN>`` for a pallet created at *created*.

    ``NN`` is one more than the number of pallets already created for the
    same factory and dpn on that day, zero-padded to two digits.  The day is
    the UTC calendar day, not the server's local date, so the sequence
    restarts at midnight UTC wherever the store runs.
    """
    day = _format_timestamp(created)[:10]
    row = conn.execute(
        """
        SELECT COUNT(*) FROM pallet
        WHERE factory_id = ? AND dpn = ? AND substr(created_at, 1, 10) = ?
        """,
        (factory_id, dpn, day),
    ).fetchone()
    count: int = row[0] if row else 0
    date_str = _as_utc(created).strftime("%m%d%y")
    return f"PAL-{factory_code}-{dpn}-{date_str}{count + 1:02d}"


def _row_to_pallet(row: sqlite3.Row) -> Pallet:
    record: dict[str, Any] = dict(row)
    record["locked"] = bool(record["locked"])
    return Pallet(**record)
