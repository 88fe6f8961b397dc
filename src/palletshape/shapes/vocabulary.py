"""Shape vocabulary and label parser.

``SHAPE_PRIORITY`` is the fixed, ordered list of base shapes handed out to
open pallets.  Its order is the allocation preference: the first entry not
already used by an open pallet wins.

Once every base shape is taken, overflow labels of the form
``"<base>-<n>"`` (``n >= 2``) are produced.  :func:`parse_shape` classifies an
arbitrary stored label into one of three tagged results so the candidate
generator never pattern-matches label strings itself:

- :class:`BaseShape` -- exactly a vocabulary entry.
- :class:`SuffixedShape` -- ``"<vocabulary entry>-<digits>"``.
- :class:`UnrecognizedShape` -- anything else (hand-entered data, blanks,
  unknown bases, non-integer suffixes).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

#: Base shapes in allocation priority order.
SHAPE_PRIORITY: tuple[str, ...] = (
    "star",
    "triangle_up",
    "triangle_right",
    "triangle_left",
    "triangle_down",
    "circle",
    "square",
    "diamond",
    "pentagon",
    "hexagon",
)

#: Greedy split of ``"<base>-<digits>"``; the base may itself contain hyphens.
#: Applied with ``fullmatch`` so a trailing newline is not accepted.
_SUFFIXED_PATTERN: re.Pattern[str] = re.compile(r"^(.+)-([0-9]+)$")


@dataclass(frozen=True)
class BaseShape:
    """A label that is exactly one vocabulary entry."""

    base: str


@dataclass(frozen=True)
class SuffixedShape:
    """An overflow label ``"<base>-<suffix>"`` whose base is in the vocabulary."""

    base: str
    suffix: int


@dataclass(frozen=True)
class UnrecognizedShape:
    """A label outside the allocator's label space."""

    raw: str


ParsedShape = BaseShape | SuffixedShape | UnrecognizedShape


def parse_shape(label: str, vocabulary: tuple[str, ...] = SHAPE_PRIORITY) -> ParsedShape:
    """Classify *label* against *vocabulary*.

    Args:
        label: A stored shape string.
        vocabulary: The base shapes to recognise.

    Returns:
        :class:`BaseShape` if *label* is a vocabulary entry,
        :class:`SuffixedShape` if it is ``"<entry>-<digits>"`` (any integer
        suffix, including ``0`` and ``1``), otherwise
        :class:`UnrecognizedShape`.
    """
    if label in vocabulary:
        return BaseShape(base=label)

    match = _SUFFIXED_PATTERN.fullmatch(label)
    if match is None:
        return UnrecognizedShape(raw=label)

    base, digits = match.group(1), match.group(2)
    if base not in vocabulary:
        return UnrecognizedShape(raw=label)
    return SuffixedShape(base=base, suffix=int(digits))
