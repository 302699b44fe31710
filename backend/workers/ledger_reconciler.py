#!/usr/bin/env python3
"""
Ledger reconciler.

Replays `stock_movements` per product and compares the result with
`products.stock_qty`. Read-only and safe to run against production.

  python3 -m backend.workers.ledger_reconciler --db postgresql://... [--product-id 12] [--loop]

Exit status is 1 when any product does not reconcile (single run only).
"""
import argparse
import json
import os
import sys
import time

import psycopg
from psycopg.rows import dict_row

# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.logs import json_log  # noqa: E402
from backend.app.reconciliation import reconcile_all, reconcile_product  # noqa: E402

DB_URL_DEFAULT = os.getenv("DATABASE_URL") or "postgresql://localhost/backoffice"


def get_conn(db_url):
    return psycopg.connect(db_url, row_factory=dict_row)


def run_once(db_url: str, product_id=None, limit=None) -> dict:
    with get_conn(db_url) as conn:
        # Read-only: every statement sees one snapshot of balances and movements.
        with conn.transaction():
            conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
            with conn.cursor() as cur:
                if product_id is not None:
                    r = reconcile_product(cur, product_id)
                    return {"checked": 1, "mismatched": 0 if r["ok"] else 1, "products": [] if r["ok"] else [r]}
                return reconcile_all(cur, limit=limit)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--product-id", type=int, default=None)
    parser.add_argument("--limit", type=int, default=None, help="Max products per run (default: all)")
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=300.0, help="Seconds to sleep between loops")
    args = parser.parse_args()

    if args.loop:
        while True:
            try:
                report = run_once(args.db, args.product_id, args.limit)
                json_log("info", "ledger.reconcile.run", checked=report["checked"], mismatched=report["mismatched"])
            except psycopg.Error as ex:
                json_log("error", "ledger.reconcile.failed", error=str(ex))
            time.sleep(args.sleep)

    report = run_once(args.db, args.product_id, args.limit)
    print(json.dumps(report, default=str, indent=2))
    if report["mismatched"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
