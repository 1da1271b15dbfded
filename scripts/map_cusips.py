"""Resolve CUSIPs to tickers through OpenFIGI.

Usage:
  python scripts/map_cusips.py 037833100 594918104
  python scripts/map_cusips.py --unmapped --limit 500
  python scripts/map_cusips.py --clear-expired
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from ownership_platform.config import load_config
from ownership_platform.db import Gateway
from ownership_platform.resolve.openfigi import CusipResolver
from ownership_platform.validators import is_valid_cusip, validate_limit


def _unmapped_cusips(gw: Gateway, limit: int) -> list[str]:
    rows = gw.query(
        """
        SELECT h.cusip, SUM(h.value) AS total_value
        FROM holdings_13f h
        LEFT JOIN cusip_mappings m ON m.cusip = h.cusip
        WHERE m.cusip IS NULL
        GROUP BY h.cusip
        ORDER BY total_value DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [r["cusip"] for r in rows if is_valid_cusip(r["cusip"])]


def main() -> None:
    p = argparse.ArgumentParser(description="Map CUSIPs to tickers and cache the results.")
    p.add_argument("cusips", nargs="*", help="CUSIPs to map")
    p.add_argument("--unmapped", action="store_true", help="Map held CUSIPs with no cached mapping, largest value first")
    p.add_argument("--limit", type=int, default=250)
    p.add_argument("--clear-expired", action="store_true", help="Drop error mappings whose retry time has passed")
    args = p.parse_args()

    cfg = load_config()
    cfg.require_credentials()
    gw = Gateway.from_config(cfg)
    gw.init_schema()
    resolver = CusipResolver.from_config(gw, cfg)

    if args.clear_expired:
        print(f"Cleared {resolver.clear_expired_errors()} expired error mappings")

    cusips = list(args.cusips)
    if args.unmapped:
        cusips.extend(_unmapped_cusips(gw, validate_limit(args.limit)))
    if not cusips:
        if not args.clear_expired:
            p.error("Nothing to map: pass CUSIPs or --unmapped")
        return

    mappings = resolver.map_cusips(cusips)
    for cusip, m in sorted(mappings.items()):
        if m.is_error:
            print(f"{cusip}  -  ({m.error})")
        else:
            print(f"{cusip}  {m.ticker or '-'}  {m.name or ''}  {m.exch_code or ''}")
    print(f"Stats: {resolver.cache_stats()}")


if __name__ == "__main__":
    main()
