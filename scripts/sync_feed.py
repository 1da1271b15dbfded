"""Pull new filings from the EDGAR current-filings feeds.

Usage:
  python scripts/sync_feed.py --source schedule13
  python scripts/sync_feed.py --source all --dry-run
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from ownership_platform.config import load_config
from ownership_platform.db import Gateway
from ownership_platform.sec.edgar import SecClient
from ownership_platform.sync.incremental import PROCESSORS, FeedSync


def main() -> None:
    p = argparse.ArgumentParser(description="Incremental sync from the EDGAR Atom feeds.")
    p.add_argument("--source", choices=sorted(PROCESSORS) + ["all"], default="all")
    p.add_argument("--dry-run", action="store_true", help="Report what would be processed without fetching or writing")
    p.add_argument("--force", action="store_true", help="Ignore the saved resume point")
    p.add_argument("--count", type=int, default=None, help="Entries per feed (default from config)")
    args = p.parse_args()

    cfg = load_config()
    cfg.require_credentials()
    gw = Gateway.from_config(cfg)
    gw.init_schema()
    client = SecClient.from_config(cfg)

    sources = sorted(PROCESSORS) if args.source == "all" else [args.source]
    failed = 0
    for source in sources:
        try:
            result = FeedSync.for_source(source, gw, client).run(
                dry_run=args.dry_run,
                force=args.force,
                count=int(args.count or cfg.FEED_ENTRY_COUNT),
            )
        except Exception as e:
            failed += 1
            print(f"[{source}] FAILED: {type(e).__name__}: {e}")
            continue
        print(
            f"[{source}] processed={result.processed} skipped={result.skipped} "
            f"errors={result.errors} {result.message}"
        )

    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
