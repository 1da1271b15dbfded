from __future__ import annotations

from datetime import date, datetime, timezone


def utcnow_iso() -> str:
    """Current UTC time as ISO-8601 string with Z."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def today_iso() -> str:
    return datetime.now(timezone.utc).date().isoformat()


_MONTHS = {
    "JAN": 1,
    "FEB": 2,
    "MAR": 3,
    "APR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AUG": 8,
    "SEP": 9,
    "OCT": 10,
    "NOV": 11,
    "DEC": 12,
}


def parse_sec_date(value: str | date | None) -> date | None:
    """Parse the date shapes that appear in SEC data.

    Accepts YYYY-MM-DD (optionally with a time part), YYYYMMDD, DD-MMM-YYYY
    (bulk data sets), MM-DD-YYYY (13F primary documents) and MM/DD/YYYY.
    Returns None for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if not s:
        return None

    try:
        if len(s) >= 10 and s[4] == "-" and s[7] == "-":
            return date(int(s[0:4]), int(s[5:7]), int(s[8:10]))
        if len(s) == 10 and s[2] == "-" and s[5] == "-":
            return date(int(s[6:10]), int(s[0:2]), int(s[3:5]))
        if len(s) == 8 and s.isdigit():
            return date(int(s[0:4]), int(s[4:6]), int(s[6:8]))
        if len(s) == 11 and s[2] == "-" and s[6] == "-":
            month = _MONTHS.get(s[3:6].upper())
            if month is None:
                return None
            return date(int(s[7:11]), month, int(s[0:2]))
        if s.count("/") == 2:
            m, d, y = s.split("/")
            return date(int(y), int(m), int(d))
    except ValueError:
        return None
    return None


def to_iso_date(value: str | date | None) -> str | None:
    d = parse_sec_date(value)
    return d.isoformat() if d else None
