#!/usr/bin/env python
"""
Retry deals that failed during a previous sync.
Run with: cd backend; python scripts/retry_failed_deals.py failed-deals.txt
      or: cd backend; python scripts/retry_failed_deals.py --from-last-run
Requires DATABASE_URL and PIPEDRIVE_API_TOKEN in .env.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import settings
from app.database import SessionLocal
from app.schemas.sync import SyncResult
from app.services.engine_factory import sync_engine_session
from app.services.flow_repository import FlowMetricsRepository
from app.services.sync_service import DEFAULT_BATCH_SIZE, DEFAULT_MAX_RETRIES

log = logging.getLogger("retry_failed_deals")

RETRY_OUTPUT_FILE = "failed-deals-retry.txt"


def read_deal_ids(path: Path) -> List[int]:
    """One deal id per line; blank lines are ignored."""
    if not path.exists():
        raise FileNotFoundError(f"Failed deals file not found: {path}")
    deal_ids = []
    for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        if not line.isdigit():
            raise ValueError(f"Invalid deal id on line {line_number}: {line!r}")
        deal_ids.append(int(line))
    return deal_ids


def deal_ids_from_last_run() -> List[int]:
    db = SessionLocal()
    try:
        runs = FlowMetricsRepository(db).get_recent_sync_history(1)
    finally:
        db.close()
    if not runs:
        return []
    log.info(f"Using failed deals of sync run {runs[0].id} ({runs[0].sync_type}, {runs[0].status})")
    return [int(deal_id) for deal_id in runs[0].failed_deals or []]


def write_failed_deals(deal_ids: List[int], path: Path) -> None:
    path.write_text("".join(f"{deal_id}\n" for deal_id in deal_ids), encoding="utf-8")


def print_summary(result: SyncResult) -> None:
    print("=" * 50)
    print(f"Total deals:      {result.total_deals}")
    print(f"Successful:       {result.successful_deals}")
    print(f"Still failing:    {len(result.failed_deals)}")
    print(f"Success rate:     {result.success_rate}")
    print(f"Duration:         {result.duration_ms / 1000:.1f}s")
    for error in result.errors:
        print(f"  {error}")
    print("=" * 50)


async def retry(deal_ids: List[int], batch_size: int, max_retries: int) -> SyncResult:
    async with sync_engine_session() as engine:
        return await engine.retry_deals(deal_ids, batch_size=batch_size, max_retries=max_retries)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Retry Pipedrive deals whose flow sync failed.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("file", nargs="?", type=Path, help="file with one failed deal id per line")
    source.add_argument("--from-last-run", action="store_true", help="retry the failed deals of the newest sync run")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, choices=range(1, 41), metavar="1-40")
    parser.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
    parser.add_argument("--output", type=Path, default=Path(RETRY_OUTPUT_FILE), help="where still-failing ids are written")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)-8s - %(message)s'
    )

    if not settings.pipedrive_api_token:
        log.error("PIPEDRIVE_API_TOKEN is not configured")
        return 1

    deal_ids = deal_ids_from_last_run() if args.from_last_run else read_deal_ids(args.file)
    if not deal_ids:
        print("No failed deals to retry")
        return 0

    print(f"Retrying {len(deal_ids)} deals")
    result = asyncio.run(retry(deal_ids, args.batch_size, args.max_retries))
    print_summary(result)

    if result.failed_deals:
        write_failed_deals(result.failed_deals, args.output)
        print(f"Still-failing deal ids written to {args.output}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
