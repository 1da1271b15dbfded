from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import List, Tuple

from ownership_platform.errors import ValidationError
from ownership_platform.util.time import parse_sec_date
from ownership_platform.validators import validate_quarter

# 13F reports are due within 45 days of quarter end.
FILING_LAG_DAYS = 45

# Filings accepted on or after this date report VALUE in whole dollars;
# earlier filings report thousands.
VALUE_UNIT_CHANGE_DATE = date(2023, 1, 3)


def quarter_label(d: date) -> str:
    return f"{d.year}-Q{(d.month - 1) // 3 + 1}"


def parse_quarter(value: str) -> Tuple[int, int]:
    label = validate_quarter(value)
    return int(label[:4]), int(label[-1])


def quarter_for_period(period_of_report: str | date | None) -> str | None:
    """Quarter label of a report-period date (e.g. 31-MAR-2024 -> 2024-Q1)."""
    d = parse_sec_date(period_of_report)
    return quarter_label(d) if d else None


def infer_quarter_from_filing_date(filing_date: str | date | None) -> str | None:
    """Reporting quarter implied by a filing date under the 45-day lag.

    15-JAN-2024 -> 2023-Q4, 10-MAR-2024 -> 2024-Q1.
    """
    d = parse_sec_date(filing_date)
    if d is None:
        return None
    return quarter_label(d - timedelta(days=FILING_LAG_DAYS))


def report_quarter(period_of_report: str | date | None, filing_date: str | date | None) -> str | None:
    return quarter_for_period(period_of_report) or infer_quarter_from_filing_date(filing_date)


def previous_quarter(label: str) -> str:
    year, q = parse_quarter(label)
    if q == 1:
        return f"{year - 1}-Q4"
    return f"{year}-Q{q - 1}"


def next_quarter(label: str) -> str:
    year, q = parse_quarter(label)
    if q == 4:
        return f"{year + 1}-Q1"
    return f"{year}-Q{q + 1}"


def quarter_range(start: str, end: str) -> List[str]:
    """Inclusive list of quarter labels from start to end."""
    out: List[str] = []
    cur = validate_quarter(start)
    stop = validate_quarter(end)
    if cur > stop:
        raise ValidationError(f"Quarter range start {start} is after end {end}")
    while cur <= stop:
        out.append(cur)
        cur = next_quarter(cur)
    return out


def current_quarter(today: date | None = None) -> str:
    return quarter_label(today or date.today())


def normalize_value(raw_value: int | Decimal | float | None, filing_date: str | date | None) -> int:
    """Convert a reported 13F VALUE to whole dollars.

    Unknown filing dates are treated as the current (whole dollar) era.
    """
    if raw_value is None:
        return 0
    v = int(raw_value)
    d = parse_sec_date(filing_date)
    if d is not None and d < VALUE_UNIT_CHANGE_DATE:
        return v * 1000
    return v
