#!/usr/bin/env python3
"""
Calculate commissions for sales that never got one.

Typical causes are sales imported before a plan existed, or a plan that
was inactive when the sale was recorded.

Usage:
    python scripts/backfill_missing_commissions.py
    python scripts/backfill_missing_commissions.py --organization <org-id> --limit 500
"""

import argparse
import json
import logging
import sys
from pathlib import Path

script_dir = Path(__file__).resolve().parent
sys.path.insert(0, str(script_dir.parent))

from app.core.database import SessionLocal, load_models
from app.core.logging import configure_logging
from app.services.commission_service import CommissionService

logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Backfill missing commission calculations")
    parser.add_argument("--organization", help="Only backfill one organization")
    parser.add_argument("--limit", type=int, help="Maximum number of transactions to process")
    return parser.parse_args()


def main():
    args = parse_args()
    configure_logging()
    load_models()

    db = SessionLocal()
    try:
        summary = CommissionService.backfill_missing(db, organization_id=args.organization, limit=args.limit)
    finally:
        db.close()

    logger.info(f"Created {summary['created']} commission(s), {summary['still_missing']} sale(s) still unmatched")
    print(json.dumps(summary, indent=2))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
