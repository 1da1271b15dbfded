"""Institutional ownership metrics for one security (CUSIP).

Position policy, shared with the alert detector:
- One 13F per filer per quarter: the latest holdings report (by filing date,
  then accession) replaces earlier ones for the same filer and quarter.
- A holder's position sums its SOLE, DFND and OTR lines.
- Cross-holder totals skip OTR lines that name an other manager, since the
  named manager reports the same shares in its own filing.
- PUT/CALL lines are option notional, not positions; they feed only the
  put/call ratio.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ownership_platform.errors import ValidationError
from ownership_platform.validators import pad_cik, validate_cusip, validate_limit, validate_quarter


def _debug(msg: str) -> None:
    print(f"[holdings] {msg}")


# Share changes within +-5% count as UNCHANGED.
CHANGE_THRESHOLD_PCT = 5.0

CHANGE_TYPES = ("NEW", "ADDED", "REDUCED", "UNCHANGED", "CLOSED")

SENTIMENT_BASELINE = 50.0
VALUE_CHANGE_CAP = 50.0
VALUE_CHANGE_WEIGHT = 0.5
OWNER_COUNT_WEIGHT = 25.0
CONCENTRATION_WEIGHT = 15.0
NEW_VS_CLOSED_WEIGHT = 10.0
BULLISH_THRESHOLD = 60
BEARISH_THRESHOLD = 40

# The filer's latest holdings report for the quarter (notices carry no lines).
LATEST_FILING_SQL = """
s.accession_number = (
    SELECT s2.accession_number FROM submissions_13f s2
    WHERE s2.cik = s.cik AND s2.report_quarter = s.report_quarter
      AND (s2.submission_type IS NULL OR s2.submission_type LIKE '13F-HR%')
    ORDER BY s2.filing_date DESC, s2.accession_number DESC
    LIMIT 1
)
"""

# Lines that count toward totals across holders.
COUNTED_LINE_SQL = "h.put_call IS NULL AND NOT (h.investment_discretion = 'OTR' AND COALESCE(h.other_manager, '') <> '')"


@dataclass(frozen=True)
class HolderPosition:
    cik: str
    name: str
    accession_number: str
    filing_date: str | None
    shares: int
    value: int
    counted_value: int  # value net of OTR lines reported again by another manager


@dataclass(frozen=True)
class HolderChange:
    cik: str
    name: str
    previous_shares: int | None
    current_shares: int | None
    value: int
    change_type: str
    change_percent: float | None


@dataclass(frozen=True)
class ConcentrationMetrics:
    top10_concentration: float  # percent of total value
    herfindahl_index: float  # 0..10000
    largest_holder_percent: float
    largest_holder_name: str | None
    holder_count: int


@dataclass(frozen=True)
class SentimentComponents:
    value_change: float = 0.0  # clamped value-weighted percent change
    owner_count_change: float = 0.0
    concentration: float = 0.0
    new_vs_closed: float = 0.0


@dataclass(frozen=True)
class SentimentScore:
    score: int
    signal: str
    components: SentimentComponents


@dataclass(frozen=True)
class OwnershipHistoryEntry:
    quarter: str
    new_positions: int
    added_positions: int
    reduced_positions: int
    closed_positions: int
    total_holders: int
    total_value: int


# ---------------------------------------------------------------------------
# Pure metrics
# ---------------------------------------------------------------------------


def change_percent(previous_shares: int | None, current_shares: int | None) -> float | None:
    if not previous_shares:
        return 100.0 if current_shares else None
    return (float(current_shares or 0) - previous_shares) / previous_shares * 100.0


def classify_change(previous_shares: int | None, current_shares: int | None) -> str:
    """NEW / CLOSED / ADDED / REDUCED / UNCHANGED for one holder between two quarters."""
    had = bool(previous_shares)
    has = bool(current_shares)
    if not had and not has:
        raise ValidationError("No position in either quarter")
    if not had:
        return "NEW"
    if not has:
        return "CLOSED"
    pct = change_percent(previous_shares, current_shares) or 0.0
    if pct > CHANGE_THRESHOLD_PCT:
        return "ADDED"
    if pct < -CHANGE_THRESHOLD_PCT:
        return "REDUCED"
    return "UNCHANGED"


def compute_concentration(holders: Iterable[Tuple[str | None, float]]) -> ConcentrationMetrics:
    """Concentration of (name, value) pairs, one pair per holder."""
    ranked = sorted(((name, float(value or 0)) for name, value in holders), key=lambda p: p[1], reverse=True)
    total = sum(v for _, v in ranked)
    if not ranked or total <= 0:
        return ConcentrationMetrics(0.0, 0.0, 0.0, ranked[0][0] if ranked else None, len(ranked))

    top10 = sum(v for _, v in ranked[:10])
    hhi = sum((v / total * 100.0) ** 2 for _, v in ranked)
    name, largest = ranked[0]
    return ConcentrationMetrics(
        top10_concentration=top10 / total * 100.0,
        herfindahl_index=hhi,
        largest_holder_percent=largest / total * 100.0,
        largest_holder_name=name,
        holder_count=len(ranked),
    )


def score_sentiment(components: SentimentComponents) -> SentimentScore:
    raw = (
        SENTIMENT_BASELINE
        + components.value_change * VALUE_CHANGE_WEIGHT
        + components.owner_count_change
        + components.concentration
        + components.new_vs_closed
    )
    score = int(round(max(0.0, min(100.0, raw))))
    if score >= BULLISH_THRESHOLD:
        signal = "BULLISH"
    elif score <= BEARISH_THRESHOLD:
        signal = "BEARISH"
    else:
        signal = "NEUTRAL"
    return SentimentScore(score=score, signal=signal, components=components)


def build_sentiment_components(changes: Sequence[HolderChange]) -> SentimentComponents:
    """Weighted components from one quarter's holder changes (closed holders included)."""
    counts = {t: 0 for t in CHANGE_TYPES}
    for c in changes:
        counts[c.change_type] += 1

    current = [c for c in changes if c.change_type != "CLOSED"]
    if not current:
        return SentimentComponents()

    positive = counts["NEW"] + counts["ADDED"]
    negative = counts["CLOSED"] + counts["REDUCED"]
    moved = positive + negative
    net_ratio = (positive - negative) / moved if moved else 0.0

    total_value = sum(c.value for c in current)
    weighted_pct = (
        sum(c.value * (c.change_percent or 0.0) for c in current) / total_value if total_value > 0 else 0.0
    )

    hhi = compute_concentration((c.name, c.value) for c in current).herfindahl_index

    opened_closed = counts["NEW"] + counts["CLOSED"]
    balance = (counts["NEW"] - counts["CLOSED"]) / opened_closed if opened_closed else 0.0

    return SentimentComponents(
        value_change=max(-VALUE_CHANGE_CAP, min(VALUE_CHANGE_CAP, weighted_pct)),
        owner_count_change=net_ratio * OWNER_COUNT_WEIGHT,
        concentration=(1 - hhi / 10000.0) * CONCENTRATION_WEIGHT,
        new_vs_closed=balance * NEW_VS_CLOSED_WEIGHT,
    )


def put_call_ratio(lines: Iterable[Mapping[str, Any]]) -> float | None:
    """PUT notional over CALL notional; None when there is no CALL notional."""
    puts = 0
    calls = 0
    for line in lines:
        kind = (line.get("put_call") or "").upper()
        if kind == "PUT":
            puts += int(line.get("value") or 0)
        elif kind == "CALL":
            calls += int(line.get("value") or 0)
    if calls <= 0:
        return None
    return puts / calls


def _counts_toward_total(line: Mapping[str, Any]) -> bool:
    return not (line.get("investment_discretion") == "OTR" and (line.get("other_manager") or "").strip())


# ---------------------------------------------------------------------------
# Store-backed queries
# ---------------------------------------------------------------------------


class HoldingsAnalytics:
    def __init__(self, gateway: Any, names: Any = None):
        self.gateway = gateway
        self.names = names

    def quarters_for_cusip(self, cusip: str) -> List[str]:
        """Quarters with holdings of this CUSIP, newest first."""
        c = validate_cusip(cusip)
        rows = self.gateway.query(
            """
            SELECT DISTINCT s.report_quarter AS quarter
            FROM holdings_13f h
            JOIN submissions_13f s ON s.accession_number = h.accession_number
            WHERE h.cusip = ? AND s.report_quarter IS NOT NULL
            ORDER BY s.report_quarter DESC
            """,
            (c,),
        )
        return [r["quarter"] for r in rows]

    def _lines(self, cusip: str, quarter: str) -> List[Dict[str, Any]]:
        return self.gateway.query(
            f"""
            SELECT s.cik, s.accession_number, s.filing_date, s.filer_name,
                   h.value, h.shares, h.put_call, h.investment_discretion, h.other_manager
            FROM holdings_13f h
            JOIN submissions_13f s ON s.accession_number = h.accession_number
            WHERE h.cusip = ? AND s.report_quarter = ? AND {LATEST_FILING_SQL}
            """,
            (cusip, quarter),
        )

    def _display_names(self, rows: Sequence[Mapping[str, Any]]) -> Dict[str, str]:
        names: Dict[str, str] = {}
        unnamed: List[str] = []
        for r in rows:
            cik = str(r["cik"])
            if r.get("filer_name"):
                names[cik] = r["filer_name"]
            elif cik not in unnamed:
                unnamed.append(cik)
        unnamed = [c for c in unnamed if c not in names]
        if unnamed and self.names is not None:
            names.update(self.names.get_names(unnamed, fetch_missing=False))
        for c in unnamed:
            names.setdefault(c, pad_cik(c))
        return names

    def holders_for_quarter(self, cusip: str, quarter: str) -> List[HolderPosition]:
        """One position per filer, largest value first."""
        c = validate_cusip(cusip)
        q = validate_quarter(quarter)
        rows = [r for r in self._lines(c, q) if not r.get("put_call")]
        names = self._display_names(rows)

        agg: Dict[str, Dict[str, Any]] = {}
        for r in rows:
            cik = str(r["cik"])
            a = agg.setdefault(
                cik,
                {"accession": r["accession_number"], "filing_date": r["filing_date"], "shares": 0, "value": 0, "counted": 0},
            )
            a["shares"] += int(r["shares"] or 0)
            a["value"] += int(r["value"] or 0)
            if _counts_toward_total(r):
                a["counted"] += int(r["value"] or 0)

        positions = [
            HolderPosition(
                cik=cik,
                name=names.get(cik, pad_cik(cik)),
                accession_number=a["accession"],
                filing_date=a["filing_date"],
                shares=a["shares"],
                value=a["value"],
                counted_value=a["counted"],
            )
            for cik, a in agg.items()
        ]
        positions.sort(key=lambda p: p.value, reverse=True)
        return positions

    def _resolve_quarters(self, cusip: str, quarter: str | None) -> Tuple[Optional[str], Optional[str]]:
        quarters = self.quarters_for_cusip(cusip)
        if not quarters:
            return None, None
        if quarter is None:
            current = quarters[0]
        else:
            current = validate_quarter(quarter)
        older = [q for q in quarters if q < current]
        return current, (older[0] if older else None)

    def _changes(self, cusip: str, current_q: str, previous_q: str | None) -> List[HolderChange]:
        current = {p.cik: p for p in self.holders_for_quarter(cusip, current_q)}
        previous = {p.cik: p for p in self.holders_for_quarter(cusip, previous_q)} if previous_q else {}

        out: List[HolderChange] = []
        for cik, p in current.items():
            prev = previous.get(cik)
            prev_shares = prev.shares if prev else None
            out.append(
                HolderChange(
                    cik=cik,
                    name=p.name,
                    previous_shares=prev_shares,
                    current_shares=p.shares,
                    value=p.counted_value,
                    change_type=classify_change(prev_shares, p.shares) if (prev_shares or p.shares) else "UNCHANGED",
                    change_percent=change_percent(prev_shares, p.shares),
                )
            )
        for cik, prev in previous.items():
            if cik not in current:
                out.append(
                    HolderChange(
                        cik=cik,
                        name=prev.name,
                        previous_shares=prev.shares,
                        current_shares=None,
                        value=0,
                        change_type="CLOSED",
                        change_percent=-100.0,
                    )
                )
        return out

    def holder_changes(self, cusip: str, quarter: str | None = None) -> List[HolderChange]:
        """Changes against the previous quarter with data; all NEW when there is none."""
        c = validate_cusip(cusip)
        current_q, previous_q = self._resolve_quarters(c, quarter)
        if current_q is None:
            return []
        return self._changes(c, current_q, previous_q)

    def concentration(self, cusip: str, quarter: str | None = None) -> Optional[ConcentrationMetrics]:
        c = validate_cusip(cusip)
        current_q, _ = self._resolve_quarters(c, quarter)
        if current_q is None:
            return None
        holders = self.holders_for_quarter(c, current_q)
        if not holders:
            return None
        return compute_concentration((p.name, p.counted_value) for p in holders)

    def sentiment(self, cusip: str) -> Optional[SentimentScore]:
        c = validate_cusip(cusip)
        current_q, previous_q = self._resolve_quarters(c, None)
        if current_q is None:
            return None
        changes = self._changes(c, current_q, previous_q)
        if not changes:
            return None
        return score_sentiment(build_sentiment_components(changes))

    def put_call(self, cusip: str) -> Optional[float]:
        """Put/call ratio for the latest quarter with data."""
        c = validate_cusip(cusip)
        current_q, _ = self._resolve_quarters(c, None)
        if current_q is None:
            return None
        return put_call_ratio(self._lines(c, current_q))

    def ownership_history(self, cusip: str, limit: int = 8) -> List[OwnershipHistoryEntry]:
        """Per-quarter holder flow for the most recent `limit` quarters, oldest first."""
        c = validate_cusip(cusip)
        validate_limit(limit)
        quarters = sorted(self.quarters_for_cusip(c)[:limit])

        history: List[OwnershipHistoryEntry] = []
        previous: Dict[str, HolderPosition] = {}
        for i, q in enumerate(quarters):
            current = {p.cik: p for p in self.holders_for_quarter(c, q)}
            counts = {t: 0 for t in CHANGE_TYPES}
            if i == 0:
                counts["NEW"] = len(current)
            else:
                for cik, p in current.items():
                    prev = previous.get(cik)
                    prev_shares = prev.shares if prev else None
                    if prev_shares or p.shares:
                        counts[classify_change(prev_shares, p.shares)] += 1
                counts["CLOSED"] = sum(1 for cik in previous if cik not in current)
            history.append(
                OwnershipHistoryEntry(
                    quarter=q,
                    new_positions=counts["NEW"],
                    added_positions=counts["ADDED"],
                    reduced_positions=counts["REDUCED"],
                    closed_positions=counts["CLOSED"],
                    total_holders=len(current),
                    total_value=sum(p.counted_value for p in current.values()),
                )
            )
            previous = current
        _debug(f"History for {c}: {len(history)} quarters")
        return history
