import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from ownership_platform.analytics.alerts import AlertParams, AlertService
from ownership_platform.config import load_config
from ownership_platform.db import Gateway
from ownership_platform.resolve.filer_names import FilerNameResolver
from ownership_platform.sec.edgar import SecClient


def _money(v: float) -> str:
    if v >= 1e9:
        return f"${v / 1e9:.1f}B"
    if v >= 1e6:
        return f"${v / 1e6:.1f}M"
    return f"${v / 1e3:.0f}K"


def main() -> None:
    p = argparse.ArgumentParser(description="Print institutional accumulation alerts.")
    p.add_argument("--min-change", type=float, default=None)
    p.add_argument("--max-change", type=float, default=None)
    p.add_argument("--min-start-value", type=float, default=None)
    p.add_argument("--lookback-months", type=int, default=None)
    p.add_argument("--only-mapped", action="store_true", help="Only securities with a plain 1-5 letter ticker")
    p.add_argument("--limit", type=int, default=50)
    args = p.parse_args()

    cfg = load_config()
    cfg.require_credentials()
    gw = Gateway.from_config(cfg)

    base = AlertParams.from_config(cfg)
    params = AlertParams(
        min_change=args.min_change if args.min_change is not None else base.min_change,
        max_change=args.max_change if args.max_change is not None else base.max_change,
        min_start_value=args.min_start_value if args.min_start_value is not None else base.min_start_value,
        lookback_months=args.lookback_months or base.lookback_months,
        only_mapped=args.only_mapped or base.only_mapped,
    )

    names = FilerNameResolver(gw, SecClient.from_config(cfg))
    service = AlertService(gw, ttl_seconds=cfg.ALERT_CACHE_TTL_SECONDS, names=names)
    alerts = service.get_alerts(params, limit=args.limit)
    if not alerts:
        print("No alerts.")
        return

    for a in alerts:
        momentum = f"{a.momentum:.2f}x" if a.momentum is not None else "-"
        print(
            f"#{a.id:<4} {a.ticker:<8} {a.change_multiple:6.1f}x  "
            f"{_money(a.previous_value)} -> {_money(a.current_value)}  "
            f"({a.start_quarter}..{a.end_quarter}, momentum {momentum})  "
            f"largest: {a.largest_holder_name or '-'}"
        )


if __name__ == "__main__":
    main()
