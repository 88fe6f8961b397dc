"""Batch jobs for palletshape.

Currently a single job, :class:`BackfillJob`, which labels every open pallet
still missing a shape.
"""

from palletshape.jobs.backfill import BackfillJob, BackfillResult

__all__: list[str] = ["BackfillJob", "BackfillResult"]
