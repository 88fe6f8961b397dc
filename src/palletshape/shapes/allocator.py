"""Shape allocator: the single path from stored state to a chosen shape.

Callers never assemble the in-use set themselves.  :class:`ShapeAllocator`
reads it from the live unit of work through
:meth:`~palletshape.store.coordinator.ShapeTransaction.read_open_shapes`, so
every allocation sees the shapes written earlier in the same transaction.
Nothing is persisted here; the caller writes the chosen shape.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from palletshape.shapes.candidates import ShapeChoice, choose_next_shape, next_shape
from palletshape.shapes.vocabulary import SHAPE_PRIORITY

if TYPE_CHECKING:
    from palletshape.store.coordinator import ShapeTransaction

logger = logging.getLogger(__name__)


def allocate_shape(open_shapes: Iterable[str]) -> str:
    """Return the next free shape given the shapes held by open pallets."""
    return next_shape(open_shapes)


class ShapeAllocator:
    """Chooses shapes for open pallets inside an exclusive unit of work.

    Args:
        vocabulary: Base shapes in priority order.  Defaults to
            :data:`~palletshape.shapes.vocabulary.SHAPE_PRIORITY`.
    """

    def __init__(self, vocabulary: tuple[str, ...] = SHAPE_PRIORITY) -> None:
        if not vocabulary:
            raise ValueError("vocabulary must contain at least one base shape")
        self._vocabulary = vocabulary

    @property
    def vocabulary(self) -> tuple[str, ...]:
        return self._vocabulary

    def allocate(self, tx: ShapeTransaction) -> ShapeChoice:
        """Choose the next free shape for the open pallets visible to *tx*.

        Args:
            tx: The active unit of work.  Its in-use set includes shapes
                assigned earlier in the same transaction.

        Returns:
            The :class:`~palletshape.shapes.candidates.ShapeChoice`.  A
            fallback choice is logged at WARNING level because it may
            collide with a shape already held by an open pallet.
        """
        open_shapes = tx.read_open_shapes()
        choice = choose_next_shape(open_shapes, self._vocabulary)
        if choice.fallback:
            logger.warning(
                "Shape candidates exhausted with %d shapes in use; falling back to %r, "
                "which may already be held by an open pallet",
                len(open_shapes),
                choice.shape,
            )
        else:
            logger.debug("Allocated shape %r (%d shapes in use)", choice.shape, len(open_shapes))
        return choice
