#!/usr/bin/env python3
"""
Nightly Verification - Re-run extraction for bills that still need review

Re-queues documents stuck in 'processing' by a crashed worker, then re-runs
the pipeline for recent documents missing a bill date or total (or still
flagged for review), within the per-document daily attempt cap.

Usage:
    python nightly_verification.py --limit 25 --days 30
    python nightly_verification.py --scope missing_dates --skip-sweep
"""

import argparse
import json
import sys
from billbook.core.config import settings
from billbook.core.logging import setup_logging
from billbook.models.bill import REPROCESS_SCOPES
from billbook.services.reprocess import reverify_documents, sweep_stale_processing
from billbook.services.storage import SQLiteBillStore


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Re-verify bills that are missing dates/totals or need review'
    )
    parser.add_argument(
        '--limit',
        type=int,
        default=settings.nightly_reverify_limit,
        help=f'Maximum documents to reprocess (default: {settings.nightly_reverify_limit})'
    )
    parser.add_argument(
        '--days',
        type=int,
        default=settings.nightly_reverify_days,
        help=f'Only documents uploaded in the last N days (default: {settings.nightly_reverify_days})'
    )
    parser.add_argument(
        '--scope',
        choices=REPROCESS_SCOPES,
        default='needs_review',
        help='Which documents to select (default: needs_review)'
    )
    parser.add_argument(
        '--db',
        default=settings.database_path,
        help=f'SQLite database path (default: {settings.database_path})'
    )
    parser.add_argument(
        '--skip-sweep',
        action='store_true',
        help='Do not re-queue documents stuck in processing'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the summary as JSON'
    )

    args = parser.parse_args(argv)
    setup_logging()
    store = SQLiteBillStore(args.db)

    requeued = [] if args.skip_sweep else sweep_stale_processing(store)
    summary = reverify_documents(store, scope=args.scope, limit=args.limit, days=args.days)

    if args.json:
        print(json.dumps({"requeued": requeued, **summary.to_dict()}, indent=2))
        return 0

    print("="*70)
    print("NIGHTLY VERIFICATION")
    print("="*70)
    print(f"Database: {args.db}")
    print(f"Scope: {args.scope} (last {args.days} days, limit {args.limit})")
    print(f"Stale documents re-queued: {len(requeued)}")
    print()
    print(f"Selected:        {summary.selected}")
    print(f"Processed:       {summary.processed}")
    print(f"Manual required: {summary.manual_required}")
    print(f"Errors:          {summary.errors}")
    print(f"Skipped:         {summary.skipped}")
    print("="*70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
