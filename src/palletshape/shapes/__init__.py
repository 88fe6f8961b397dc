"""Shape vocabulary and allocation subpackage for palletshape.

Public API
----------
SHAPE_PRIORITY
    The ten base shapes in allocation priority order.
parse_shape
    Classifies a stored label as a base, suffixed, or unrecognised shape.
choose_next_shape / next_shape
    Pure next-free-shape computation over an in-use set.
ShapeAllocator
    Reads the in-use set from a unit of work and picks the next shape.
"""

from palletshape.shapes.allocator import ShapeAllocator, allocate_shape
from palletshape.shapes.candidates import ShapeChoice, choose_next_shape, next_shape
from palletshape.shapes.vocabulary import (
    SHAPE_PRIORITY,
    BaseShape,
    SuffixedShape,
    UnrecognizedShape,
    parse_shape,
)

__all__: list[str] = [
    "SHAPE_PRIORITY",
    "BaseShape",
    "ShapeAllocator",
    "ShapeChoice",
    "SuffixedShape",
    "UnrecognizedShape",
    "allocate_shape",
    "choose_next_shape",
    "next_shape",
    "parse_shape",
]
