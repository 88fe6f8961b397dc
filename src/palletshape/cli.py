"""Command-line entry point for the shape backfill job.

Usage::

    palletshape-backfill [--db PATH] [--dry-run] [--log-level LEVEL]
    python -m palletshape [--db PATH] [--dry-run] [--log-level LEVEL]

Exits ``0`` after a successful run (the count of labelled pallets is logged)
and ``1`` when the store fails; in that case nothing was committed.
"""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

from palletshape.config import LOG_LEVELS, AppConfig, get_config
from palletshape.jobs.backfill import BackfillJob
from palletshape.store.coordinator import ShapeStoreError
from palletshape.store.pallets import PalletStore

logger = logging.getLogger(__name__)

_LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="palletshape-backfill",
        description="Assign shapes to every open pallet that does not have one.",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the pallet SQLite database (default: PALLET_DB_PATH or data/pallets.db).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the assignments, log them, and roll everything back.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=sorted(LOG_LEVELS),
        help="Logging level (default: LOG_LEVEL or INFO).",
    )
    return parser


def main(argv: Sequence[str] | None = None, config: AppConfig | None = None) -> int:
    """Run one backfill and return the process exit status.

    Args:
        argv: Command-line arguments; defaults to ``sys.argv[1:]``.
        config: Pre-built configuration; defaults to :func:`get_config`.

    Returns:
        ``0`` on success, ``1`` if the run failed and was rolled back.
    """
    args = build_parser().parse_args(argv)
    cfg = config or get_config()
    if args.log_level is not None:
        cfg = cfg.model_copy(update={"log_level": args.log_level})
    logging.basicConfig(level=cfg.log_level, format=_LOG_FORMAT)

    db_path: Path = args.db if args.db is not None else cfg.pallet_db_path
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        store = PalletStore(db_path=db_path, lock_timeout_seconds=cfg.lock_timeout_seconds)
    except ShapeStoreError as exc:
        logger.error("Shape backfill could not start: %s", exc)
        return 1

    try:
        result = BackfillJob(store.coordinator).run(dry_run=args.dry_run)
    except ShapeStoreError as exc:
        logger.error("Shape backfill failed and was rolled back: %s", exc)
        return 1
    finally:
        store.close()

    for pallet_id, shape in result.assignments.items():
        logger.debug("pallet %d -> %s", pallet_id, shape)
    return 0
