#!/usr/bin/env python3
# backend/scripts/run_catalog_sync.py
"""
Run a catalog sync pass from a scheduler (cron, systemd timer, CI job).

    python backend/scripts/run_catalog_sync.py identity
    python backend/scripts/run_catalog_sync.py images --start-page 7
    python backend/scripts/run_catalog_sync.py prune
    python backend/scripts/run_catalog_sync.py all

Prints each pass result as JSON. Exit codes:
    0 - every pass ran (possibly partially; see resume_page / warnings)
    1 - the remote listing was unavailable, nothing was done for that pass
    2 - invalid arguments
"""
import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

# Make the 'coinfolio' package importable when run as a script
backend_dir = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_dir))

from coinfolio.database import SessionLocal
from coinfolio.dependencies import get_sync_engine
from coinfolio.models import CatalogSyncKind
from coinfolio.services.exceptions import CatalogError
from coinfolio.utils.context import set_correlation_id
from coinfolio.utils.logging import setup_logging

logger = logging.getLogger(__name__)

PASSES = ("identity", "images", "prune")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Synchronize the coin catalog with CoinGecko")
    parser.add_argument("pass_name", choices=PASSES + ("all",), help="Which pass to run")
    parser.add_argument(
        "--start-page",
        type=int,
        default=None,
        help="Image sync: first page to fetch (default: resume page of the last run, else 1)",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


def run_pass(engine, db, pass_name: str, start_page: int | None):
    if pass_name == "identity":
        return engine.sync_catalog_identity(db)
    if pass_name == "images":
        if start_page is None:
            start_page = _stored_resume_page(engine, db)
        return engine.sync_catalog_images(db, start_page=start_page)
    return engine.prune_orphaned_catalog_entries(db)


def _stored_resume_page(engine, db) -> int:
    state = engine.get_sync_state(db, CatalogSyncKind.IMAGES)
    if state is not None and state.resume_page:
        logger.info(f"Resuming image sync from stored page {state.resume_page}")
        return state.resume_page
    return 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)
    set_correlation_id(f"cron-{args.pass_name}")

    if args.start_page is not None and args.start_page < 1:
        logger.error("--start-page must be >= 1")
        return 2

    engine = get_sync_engine()
    passes = PASSES if args.pass_name == "all" else (args.pass_name,)
    exit_code = 0

    db = SessionLocal()
    try:
        for pass_name in passes:
            try:
                result = run_pass(engine, db, pass_name, args.start_page)
            except CatalogError as e:
                logger.error(f"{pass_name} pass skipped: {e}")
                exit_code = 1
                continue
            print(json.dumps({"pass": pass_name, **asdict(result)}, default=str, indent=2))
    finally:
        db.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
