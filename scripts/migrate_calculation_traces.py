#!/usr/bin/env python3
"""
Upgrade stored commission calculation traces to the current schema.

Older releases stored either flat metadata (basis, basisAmount,
selectedRule, matchedRules) or a camelCase trace (engineVersion,
ruleTrace). Explanations only read the current schema, so run this once
after deploying. Re-running is safe: current traces are skipped.

Usage:
    python scripts/migrate_calculation_traces.py --dry-run
    python scripts/migrate_calculation_traces.py --organization <org-id>
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
from app.services.trace_migration_service import TraceMigrationService

logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Migrate commission calculation traces")
    parser.add_argument("--organization", help="Only migrate one organization")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--batch-size", type=int, help="Rows per commit")
    return parser.parse_args()


def main():
    args = parse_args()
    configure_logging()
    load_models()

    db = SessionLocal()
    try:
        summary = TraceMigrationService.migrate_traces(
            db,
            organization_id=args.organization,
            dry_run=args.dry_run,
            batch_size=args.batch_size
        )
    finally:
        db.close()

    print(json.dumps({"dry_run": args.dry_run, **summary}, indent=2))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
