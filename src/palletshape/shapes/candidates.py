"""Next-free-shape candidate generation.

Given the set of shapes currently held by open pallets, pick the preferred
label nobody is using:

1. The first vocabulary entry not in use.
2. Otherwise, for every base, the next overflow suffix: one past the highest
   ``"<base>-<n>"`` already in use, never below 2.
3. The first ``"<base>-<next suffix>"`` in vocabulary order not in use.
4. If nothing survives step 3, the hard-coded ``"<first entry>-2"``.

Step 4 is returned unconditionally and may already be in use when the
in-use set holds labels the parser could not attribute to a base.  The
result is flagged as a fallback so callers can warn about it; uniqueness
among open pallets is then enforced by the store at commit time.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from palletshape.shapes.vocabulary import SHAPE_PRIORITY, SuffixedShape, parse_shape

#: Lowest overflow suffix ever produced.
_FIRST_SUFFIX: int = 2


@dataclass(frozen=True)
class ShapeChoice:
    """A chosen shape and whether it came from the unconditional fallback."""

    shape: str
    fallback: bool = False


def choose_next_shape(
    in_use: Iterable[str], vocabulary: tuple[str, ...] = SHAPE_PRIORITY
) -> ShapeChoice:
    """Return the preferred shape not present in *in_use*.

    Args:
        in_use: Shapes currently held by open pallets.
        vocabulary: Base shapes in priority order.

    Returns:
        A :class:`ShapeChoice`; ``fallback`` is ``True`` only when step 4 of
        the module-level algorithm produced the label.

    Raises:
        ValueError: If *vocabulary* is empty.
    """
    if not vocabulary:
        raise ValueError("vocabulary must contain at least one base shape")

    used = set(in_use)

    for base in vocabulary:
        if base not in used:
            return ShapeChoice(shape=base)

    next_suffix: dict[str, int] = {base: _FIRST_SUFFIX for base in vocabulary}
    for label in used:
        parsed = parse_shape(label, vocabulary)
        if isinstance(parsed, SuffixedShape):
            next_suffix[parsed.base] = max(next_suffix[parsed.base], parsed.suffix + 1)

    for base in vocabulary:
        candidate = f"{base}-{next_suffix[base]}"
        if candidate not in used:
            return ShapeChoice(shape=candidate)

    return ShapeChoice(shape=f"{vocabulary[0]}-{_FIRST_SUFFIX}", fallback=True)


def next_shape(in_use: Iterable[str], vocabulary: tuple[str, ...] = SHAPE_PRIORITY) -> str:
    """Return only the label chosen by :func:`choose_next_shape`."""
    return choose_next_shape(in_use, vocabulary).shape
