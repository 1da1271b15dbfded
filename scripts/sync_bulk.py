"""Import quarterly SEC structured data sets (13F and Forms 3/4/5).

Usage:
  python scripts/sync_bulk.py --form 13F
  python scripts/sync_bulk.py --form 345 --quarter 2024-Q1
  python scripts/sync_bulk.py --form 13F --start 2020-Q1
  python scripts/sync_bulk.py --form 13F --all
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from ownership_platform.config import load_config
from ownership_platform.db import Gateway
from ownership_platform.sec.edgar import SecClient
from ownership_platform.sync.bulk import BulkSync, quarters_to_sync
from ownership_platform.sync.state import get_backfill_progress


def main() -> None:
    p = argparse.ArgumentParser(description="Bulk import of SEC quarterly data set archives.")
    p.add_argument("--form", choices=["13F", "345"], default="13F")
    g = p.add_mutually_exclusive_group()
    g.add_argument("--quarter", type=str, help="Single quarter, e.g. 2024-Q1")
    g.add_argument("--start", type=str, help="Import from this quarter through the current one")
    g.add_argument("--all", action="store_true", help="Import every quarter since 2013-Q2")
    p.add_argument("--status", action="store_true", help="Show backfill progress and exit")
    args = p.parse_args()

    cfg = load_config()
    cfg.require_credentials()
    gw = Gateway.from_config(cfg)
    gw.init_schema()

    if args.status:
        for q in get_backfill_progress(gw, args.form):
            line = f"{q.quarter} {q.status:<12} files={q.files_processed}/{q.total_files}"
            if q.error:
                line += f" error={q.error}"
            print(line)
        return

    quarters = quarters_to_sync(quarter=args.quarter, start=args.start, all_=args.all)
    bulk = BulkSync(gw, SecClient.from_config(cfg), cfg)
    results = bulk.run(args.form, quarters)

    failed = 0
    for r in results:
        if r.error:
            failed += 1
            print(f"{r.form_family} {r.quarter}: FAILED {r.error}")
        else:
            print(f"{r.form_family} {r.quarter}: inserted={r.total_inserted} skipped_rows={r.skipped_rows}")
    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
