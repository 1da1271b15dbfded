"""Accumulation alerts: securities whose total institutional value grew by a
large multiple over the lookback window.

Detected alert lists are cached whole per parameter set and recomputed on
expiry. Acknowledging an alert flips the flag on the cached object only, so an
acknowledgement lasts until that cache entry expires or is cleared. That needs
a cache that keeps values by reference, so only the in-memory backend is
accepted.
"""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ownership_platform.analytics.holdings import COUNTED_LINE_SQL, LATEST_FILING_SQL
from ownership_platform.cache import Cache, MemoryBackend
from ownership_platform.errors import ValidationError
from ownership_platform.models import Alert
from ownership_platform.util.time import utcnow_iso
from ownership_platform.validators import is_plain_ticker, pad_cik, validate_limit


def _debug(msg: str) -> None:
    print(f"[alerts] {msg}")


DEFAULT_CACHE_TTL_SECONDS = 900
MAX_CANDIDATES = 500
_IN_CHUNK = 500
_CACHE_PREFIX = "alerts"


@dataclass(frozen=True)
class AlertParams:
    min_change: float = 5.0
    max_change: float | None = None
    min_start_value: float = 1_000_000
    lookback_months: int = 24
    only_mapped: bool = False

    def __post_init__(self) -> None:
        if self.min_change <= 0:
            raise ValidationError(f"min_change must be positive: {self.min_change}")
        if self.max_change is not None and self.max_change < self.min_change:
            raise ValidationError(f"max_change {self.max_change} is below min_change {self.min_change}")
        if self.lookback_months < 1:
            raise ValidationError(f"lookback_months must be at least 1: {self.lookback_months}")

    @classmethod
    def from_config(cls, cfg: Any) -> "AlertParams":
        return cls(
            min_change=cfg.ALERT_MIN_CHANGE,
            max_change=cfg.ALERT_MAX_CHANGE,
            min_start_value=cfg.ALERT_MIN_START_VALUE,
            lookback_months=cfg.ALERT_LOOKBACK_MONTHS,
            only_mapped=cfg.ALERT_ONLY_MAPPED,
        )

    @property
    def cache_key(self) -> Tuple[Any, ...]:
        return (
            _CACHE_PREFIX,
            self.min_change,
            self.max_change,
            self.min_start_value,
            self.lookback_months,
            self.only_mapped,
        )


def evaluate_candidate(
    start_value: float,
    end_value: float,
    params: AlertParams,
    ticker: str | None = None,
) -> Optional[float]:
    """Change multiple when the security qualifies, else None."""
    if start_value <= 0 or start_value < params.min_start_value:
        return None
    multiple = float(end_value) / float(start_value)
    if multiple < params.min_change:
        return None
    if params.max_change is not None and multiple > params.max_change:
        return None
    if params.only_mapped and not is_plain_ticker(ticker):
        return None
    return multiple


def _chunks(items: List[str], size: int = _IN_CHUNK) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class AlertService:
    def __init__(
        self,
        gateway: Any,
        cache: Cache | None = None,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        *,
        names: Any = None,
    ):
        self.gateway = gateway
        self.cache = cache if cache is not None else Cache()
        if not isinstance(self.cache.backend, MemoryBackend):
            raise ValidationError("AlertService needs an in-memory cache; acknowledgements live on the cached alerts")
        self.ttl_seconds = ttl_seconds
        self.names = names
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # -----------------
    # Queries
    # -----------------
    def _quarters(self) -> List[str]:
        rows = self.gateway.query(
            "SELECT DISTINCT report_quarter AS quarter FROM submissions_13f "
            "WHERE report_quarter IS NOT NULL ORDER BY report_quarter DESC"
        )
        return [r["quarter"] for r in rows]

    def _totals(self, quarter: str) -> Dict[str, Tuple[str | None, int]]:
        rows = self.gateway.query(
            f"""
            SELECT h.cusip, MAX(h.name_of_issuer) AS name_of_issuer, SUM(h.value) AS total_value
            FROM holdings_13f h
            JOIN submissions_13f s ON s.accession_number = h.accession_number
            WHERE s.report_quarter = ? AND {COUNTED_LINE_SQL} AND {LATEST_FILING_SQL}
            GROUP BY h.cusip
            """,
            (quarter,),
        )
        return {r["cusip"]: (r["name_of_issuer"], int(r["total_value"] or 0)) for r in rows}

    def _tickers(self, cusips: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for chunk in _chunks(cusips):
            marks = ", ".join(["?"] * len(chunk))
            rows = self.gateway.query(
                f"SELECT cusip, ticker FROM cusip_mappings WHERE error IS NULL AND ticker IS NOT NULL AND cusip IN ({marks})",
                chunk,
            )
            for r in rows:
                out[r["cusip"]] = r["ticker"]
        return out

    def _holders(self, quarter: str, cusips: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Per-CUSIP holder totals at `quarter`, largest first."""
        out: Dict[str, List[Dict[str, Any]]] = {}
        for chunk in _chunks(cusips):
            marks = ", ".join(["?"] * len(chunk))
            rows = self.gateway.query(
                f"""
                SELECT h.cusip, s.cik, MAX(s.filer_name) AS filer_name, SUM(h.value) AS holder_value
                FROM holdings_13f h
                JOIN submissions_13f s ON s.accession_number = h.accession_number
                WHERE s.report_quarter = ? AND h.cusip IN ({marks})
                  AND {COUNTED_LINE_SQL} AND {LATEST_FILING_SQL}
                GROUP BY h.cusip, s.cik
                """,
                [quarter, *chunk],
            )
            for r in rows:
                out.setdefault(r["cusip"], []).append(dict(r))
        for holders in out.values():
            holders.sort(key=lambda r: (int(r["holder_value"] or 0), str(r["cik"])), reverse=True)
        return out

    def _holder_name(self, cik: str, filer_name: str | None, resolved: Dict[str, str]) -> str:
        return filer_name or resolved.get(cik) or pad_cik(cik)

    # -----------------
    # Detection
    # -----------------
    def detect(self, params: AlertParams | None = None) -> List[Alert]:
        p = params or AlertParams()
        quarters = self._quarters()
        window = quarters[: math.ceil(p.lookback_months / 3)]
        if len(window) < 2:
            _debug("Not enough quarters for alert detection")
            return []

        end_q, start_q = window[0], window[-1]
        prior_q = window[1]
        _debug(f"Comparing {start_q} to {end_q} (min {p.min_change}x, max {p.max_change}, floor {p.min_start_value})")

        end_totals = self._totals(end_q)
        start_totals = self._totals(start_q)
        prior_totals = end_totals if prior_q == end_q else self._totals(prior_q)

        common = sorted(c for c in end_totals if c in start_totals)
        tickers = self._tickers(common)

        candidates: List[Tuple[str, float]] = []
        for cusip in common:
            multiple = evaluate_candidate(start_totals[cusip][1], end_totals[cusip][1], p, tickers.get(cusip))
            if multiple is not None:
                candidates.append((cusip, multiple))
        candidates.sort(key=lambda t: t[1], reverse=True)
        candidates = candidates[:MAX_CANDIDATES]

        holders = self._holders(end_q, [c for c, _ in candidates])
        unnamed = sorted({str(h[0]["cik"]) for h in holders.values() if h and not h[0]["filer_name"]})
        resolved: Dict[str, str] = {}
        if unnamed and self.names is not None:
            resolved = self.names.get_names(unnamed, fetch_missing=False)

        now = utcnow_iso()
        alerts: List[Alert] = []
        for cusip, multiple in candidates:
            issuer_name, current_value = end_totals[cusip]
            previous_value = start_totals[cusip][1]
            prior_value = (prior_totals.get(cusip) or (None, 0))[1]
            top = holders.get(cusip) or []
            largest = top[0] if top else None
            largest_cik = str(largest["cik"]) if largest else None
            alerts.append(
                Alert(
                    id=next(self._ids),
                    cusip=cusip,
                    ticker=tickers.get(cusip) or cusip[:6],
                    issuer_name=issuer_name,
                    previous_value=previous_value,
                    current_value=current_value,
                    change_multiple=multiple,
                    lookback_months=p.lookback_months,
                    start_quarter=start_q,
                    end_quarter=end_q,
                    momentum=(current_value / prior_value) if prior_value > 0 else None,
                    holder_count=len(top),
                    largest_holder_cik=largest_cik,
                    largest_holder_name=(
                        self._holder_name(largest_cik, largest["filer_name"], resolved) if largest else None
                    ),
                    largest_holder_value=int(largest["holder_value"] or 0) if largest else 0,
                    detected_at=now,
                )
            )

        alerts.sort(key=lambda a: (a.momentum if a.momentum is not None else 0.0, a.change_multiple), reverse=True)
        _debug(f"Detected {len(alerts)} alerts comparing {start_q} to {end_q}")
        return alerts

    # -----------------
    # Cached access
    # -----------------
    def _cached(self, params: AlertParams) -> List[Alert]:
        with self._lock:
            alerts = self.cache.get(params.cache_key)
            if alerts is None:
                alerts = self.detect(params)
                self.cache.put(params.cache_key, alerts, ttl_seconds=self.ttl_seconds)
            return alerts

    def get_alerts(
        self,
        params: AlertParams | None = None,
        limit: int = 50,
        include_acknowledged: bool = False,
    ) -> List[Alert]:
        validate_limit(limit)
        alerts = self._cached(params or AlertParams())
        if not include_acknowledged:
            alerts = [a for a in alerts if not a.acknowledged]
        return alerts[:limit]

    def acknowledge(self, alert_id: int) -> bool:
        """Mark a cached alert acknowledged; False when no cached alert has that id."""
        for key in self.cache.keys():
            if not key.startswith(_CACHE_PREFIX + "|"):
                continue
            for alert in self.cache.get(key) or []:
                if alert.id == alert_id:
                    alert.acknowledged = True
                    return True
        return False

    def stats(self, params: AlertParams | None = None) -> Dict[str, Any]:
        alerts = self._cached(params or AlertParams())
        open_alerts = [a for a in alerts if not a.acknowledged]
        return {
            "total": len(alerts),
            "unacknowledged": len(open_alerts),
            "top_alerts": open_alerts[:5],
        }

    def clear(self) -> None:
        with self._lock:
            for key in self.cache.keys():
                if key.startswith(_CACHE_PREFIX + "|"):
                    self.cache.invalidate(key)
            self._ids = itertools.count(1)
