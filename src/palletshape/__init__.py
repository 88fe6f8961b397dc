"""palletshape: shape labels for open pallets.

This package provides the shape vocabulary and allocation algorithm, the
SQLite-backed pallet store with its exclusive unit-of-work coordinator, and
the backfill job that labels every open pallet still missing a shape.
"""

__version__ = "0.1.0"
__all__: list[str] = []
