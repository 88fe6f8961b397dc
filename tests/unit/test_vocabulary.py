"""Tests for the shape vocabulary and label parser.

Covers:
    - SHAPE_PRIORITY holds exactly ten base shapes in the documented order.
    - parse_shape classifies base, suffixed, and unrecognised labels.
    - Suffix parsing only accepts vocabulary bases and ASCII integer suffixes.
"""

from __future__ import annotations

import dataclasses

import pytest

from palletshape.shapes.vocabulary import (
    SHAPE_PRIORITY,
    BaseShape,
    SuffixedShape,
    UnrecognizedShape,
    parse_shape,
)

# ---------------------------------------------------------------------------
# SHAPE_PRIORITY
# ---------------------------------------------------------------------------


def test_priority_order_is_exact():
    """The allocation preference order is part of the contract."""
    assert SHAPE_PRIORITY == (
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


def test_priority_has_ten_unique_entries():
    """Ten distinct base shapes."""
    assert len(SHAPE_PRIORITY) == 10
    assert len(set(SHAPE_PRIORITY)) == 10


def test_priority_is_immutable():
    """A tuple cannot be reordered or extended at runtime."""
    assert isinstance(SHAPE_PRIORITY, tuple)
    with pytest.raises(TypeError):
        SHAPE_PRIORITY[0] = "hexagon"  # type: ignore[index]


# ---------------------------------------------------------------------------
# parse_shape
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("label", SHAPE_PRIORITY)
def test_every_base_parses_as_base(label: str):
    """Every vocabulary entry parses as BaseShape."""
    assert parse_shape(label) == BaseShape(base=label)


@pytest.mark.parametrize(
    "label, base, suffix",
    [
        ("star-2", "star", 2),
        ("star-3", "star", 3),
        ("triangle_up-12", "triangle_up", 12),
        ("hexagon-007", "hexagon", 7),
        ("star-0", "star", 0),
        ("star-1", "star", 1),
    ],
)
def test_suffixed_labels(label: str, base: str, suffix: int):
    """'<base>-<digits>' with a vocabulary base parses as SuffixedShape."""
    assert parse_shape(label) == SuffixedShape(base=base, suffix=suffix)


@pytest.mark.parametrize(
    "label",
    [
        "",
        "   ",
        " star",
        "STAR",
        "octagon",
        "octagon-2",
        "star-",
        "star-x",
        "star-2a",
        "star--2",
        "star-2-3",
        "star-3\n",
        "star\n-3",
        "star-٣",
        "-2",
    ],
)
def test_unrecognized_labels(label: str):
    """Anything outside the allocator's label space is UnrecognizedShape."""
    assert parse_shape(label) == UnrecognizedShape(raw=label)


def test_parse_with_custom_vocabulary():
    """The vocabulary is a parameter; entries outside it are not recognised."""
    vocab = ("red", "green")
    assert parse_shape("green", vocab) == BaseShape(base="green")
    assert parse_shape("red-4", vocab) == SuffixedShape(base="red", suffix=4)
    assert parse_shape("star", vocab) == UnrecognizedShape(raw="star")


def test_parsed_results_are_frozen():
    """Parsed results are immutable value objects."""
    parsed = parse_shape("star-2")
    with pytest.raises(dataclasses.FrozenInstanceError):
        parsed.suffix = 9  # type: ignore[misc, union-attr]
