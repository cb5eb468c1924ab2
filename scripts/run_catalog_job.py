#!/usr/bin/env python3
"""
Run a catalog job once, in the foreground (same code path as the Celery tasks, same lock).
Run from the project root: python -m scripts.run_catalog_job reconcile
or: PYTHONPATH=. python scripts/run_catalog_job.py sync --product-id 10001 --product-id 10002
"""
import argparse
import json
import os
import sys

# project root on PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.logging import configure_logging
from app.workers.tasks.catalog import run_full_sync, run_reconciliation


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    sub = parser.add_subparsers(dest="job", required=True)
    sub.add_parser("reconcile", help="stock/price reconciliation")
    sync = sub.add_parser("sync", help="catalog sync")
    sync.add_argument("--incremental", action="store_true", help="only write changed products, keep vanished ones")
    sync.add_argument("--no-relationships", action="store_true")
    sync.add_argument("--product-id", action="append", dest="product_ids")
    sync.add_argument("--category", action="append", dest="categories")
    args = parser.parse_args()

    configure_logging()
    if args.job == "reconcile":
        result = run_reconciliation()
    else:
        result = run_full_sync(
            full_sync=not args.incremental,
            include_relationships=not args.no_relationships,
            product_ids=args.product_ids,
            categories=args.categories,
        )
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
