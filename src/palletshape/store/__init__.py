"""Pallet store subpackage for palletshape.

Persists pallets to a SQLite database (pallets.db) and provides the
exclusive unit of work through which shapes are assigned.
"""

from palletshape.store.coordinator import (
    AssignmentCoordinator,
    LockProtocolError,
    PersistenceWriteError,
    ShapeStoreError,
    ShapeTransaction,
    TransientStoreError,
)
from palletshape.store.pallets import Pallet, PalletStore

__all__: list[str] = [
    "AssignmentCoordinator",
    "LockProtocolError",
    "Pallet",
    "PalletStore",
    "PersistenceWriteError",
    "ShapeStoreError",
    "ShapeTransaction",
    "TransientStoreError",
]
