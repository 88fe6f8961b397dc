"""Backfill job: give every open pallet without a shape its shape.

Runs as one exclusive unit of work:

1. Lock every open pallet whose shape is ``NULL`` or blank, oldest
   ``created_at`` first.
2. For each pallet in that order, re-read the shapes held by open pallets,
   allocate the next free one, and write it.  The shape just written is part
   of the in-use set for the next pallet.
3. Commit and report how many pallets were labelled.

Any failure rolls back every assignment made by the run and propagates to
the caller; there are no retries.  Pallets that already carry a shape are
never revisited, so running the job again after success or failure is safe.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from palletshape.shapes.allocator import ShapeAllocator
from palletshape.store.coordinator import AssignmentCoordinator, ShapeTransaction

logger = logging.getLogger(__name__)


class BackfillResult(BaseModel):
    """Summary of a completed backfill run.

    Attributes:
        processed: Number of pallets that received a shape.
        assignments: Pallet id to assigned shape, in processing order.
        fallback_pallet_ids: Pallets whose shape came from the unconditional
            fallback and may collide with another open pallet.
        dry_run: ``True`` if the assignments were rolled back on purpose.
    """

    processed: int
    assignments: dict[int, str] = {}
    fallback_pallet_ids: list[int] = []
    dry_run: bool = False


class BackfillJob:
    """Assigns shapes to every unlabelled open pallet in one transaction.

    Args:
        coordinator: Coordinator bound to the pallet store's connection.
        allocator: Shape allocator; defaults to the standard vocabulary.
    """

    def __init__(
        self,
        coordinator: AssignmentCoordinator,
        allocator: ShapeAllocator | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._allocator = allocator or ShapeAllocator()

    def run(self, *, dry_run: bool = False) -> BackfillResult:
        """Run the backfill once.

        Args:
            dry_run: Compute and write the assignments, then roll them back.

        Returns:
            A :class:`BackfillResult`; ``processed`` is the count of pallets
            labelled (or that would have been, for a dry run).

        Raises:
            ShapeStoreError: If the store fails; nothing is committed.
        """
        result = self._coordinator.run_exclusive(
            lambda tx: self._backfill(tx, dry_run), dry_run=dry_run
        )
        if dry_run:
            logger.info("Dry run: would backfill %d open pallets with shapes.", result.processed)
        else:
            logger.info("Backfilled %d open pallets with shapes.", result.processed)
        if result.fallback_pallet_ids:
            logger.warning(
                "%d pallet(s) received the fallback shape: %s",
                len(result.fallback_pallet_ids),
                result.fallback_pallet_ids,
            )
        return result

    def _backfill(self, tx: ShapeTransaction, dry_run: bool) -> BackfillResult:
        pallet_ids = tx.lock_unlabeled_open_pallets()
        logger.debug("Locked %d unlabelled open pallet(s)", len(pallet_ids))

        assignments: dict[int, str] = {}
        fallbacks: list[int] = []
        for pallet_id in pallet_ids:
            choice = self._allocator.allocate(tx)
            tx.assign(pallet_id, choice.shape)
            assignments[pallet_id] = choice.shape
            if choice.fallback:
                fallbacks.append(pallet_id)

        return BackfillResult(
            processed=len(pallet_ids),
            assignments=assignments,
            fallback_pallet_ids=fallbacks,
            dry_run=dry_run,
        )
