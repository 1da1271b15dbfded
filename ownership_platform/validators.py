"""Input validation for anything that can reach SQL construction.

Every function here either returns a normalized value or raises
ValidationError. Nothing is silently coerced.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from ownership_platform.errors import ValidationError

_CUSIP_RE = re.compile(r"^[A-Z0-9]{9}$")
_CIK_RE = re.compile(r"^\d{1,10}$")
_QUARTER_RE = re.compile(r"^(\d{4})-?Q([1-4])$", re.IGNORECASE)
_TICKER_RE = re.compile(r"^[A-Z]{1,5}(\.[A-Z])?$")
_PLAIN_TICKER_RE = re.compile(r"^[A-Z]{1,5}$")
_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_ACCESSION_RE = re.compile(r"^\d{10}-\d{2}-\d{6}$")

MIN_QUARTER_YEAR = 1990
MAX_QUARTER_YEAR = 2050
MAX_LIMIT = 1000

# CUSIP check-digit values for the three special characters.
_SPECIAL_CHARS = {"*": 36, "@": 37, "#": 38}


def cusip_check_digit(base: str) -> int:
    """Check digit for the first 8 characters of a CUSIP (modulus 10, double-add-double)."""
    total = 0
    for i, ch in enumerate(base[:8].upper()):
        if ch.isdigit():
            v = int(ch)
        elif "A" <= ch <= "Z":
            v = ord(ch) - ord("A") + 10
        elif ch in _SPECIAL_CHARS:
            v = _SPECIAL_CHARS[ch]
        else:
            raise ValidationError(f"Invalid CUSIP character: {ch!r}")
        if i % 2 == 1:
            v *= 2
        total += v // 10 + v % 10
    return (10 - total % 10) % 10


def is_valid_cusip(value: object) -> bool:
    if not isinstance(value, str):
        return False
    return bool(_CUSIP_RE.match(value.strip().upper()))


def validate_cusip(value: object) -> str:
    """Return the uppercased CUSIP or raise.

    Only the shape is enforced (9 alphanumerics). Real-world 13F data carries
    CUSIPs with wrong check digits, so `cusip_check_digit` is informational.
    """
    if not isinstance(value, str):
        raise ValidationError(f"CUSIP must be a string, got {type(value).__name__}")
    s = value.strip().upper()
    if not _CUSIP_RE.match(s):
        raise ValidationError(f"Invalid CUSIP: {value!r}")
    return s


def has_valid_check_digit(cusip: str) -> bool:
    s = validate_cusip(cusip)
    return cusip_check_digit(s[:8]) == int(s[8]) if s[8].isdigit() else False


def validate_cik(value: object) -> str:
    """Return the CIK with leading zeros trimmed (comparison form)."""
    s = str(value).strip() if isinstance(value, (str, int)) else ""
    if not _CIK_RE.match(s):
        raise ValidationError(f"Invalid CIK: {value!r}")
    return s.lstrip("0") or "0"


def normalize_cik(value: object) -> str:
    return validate_cik(value)


def pad_cik(value: object) -> str:
    """Zero-padded 10-digit CIK, the form used in archive URLs."""
    return validate_cik(value).zfill(10)


def validate_quarter(value: object) -> str:
    """Return the canonical 'YYYY-QN' label."""
    m = _QUARTER_RE.match(str(value or "").strip())
    if not m:
        raise ValidationError(f"Invalid quarter: {value!r} (expected YYYY-QN)")
    year = int(m.group(1))
    if year < MIN_QUARTER_YEAR or year > MAX_QUARTER_YEAR:
        raise ValidationError(f"Quarter year out of range: {year}")
    return f"{year}-Q{m.group(2)}"


def validate_ticker(value: object) -> str:
    s = str(value or "").strip().upper()
    if not _TICKER_RE.match(s):
        raise ValidationError(f"Invalid ticker: {value!r}")
    return s


def is_plain_ticker(value: Optional[str]) -> bool:
    """1-5 uppercase letters, no class suffix."""
    return bool(value) and bool(_PLAIN_TICKER_RE.match(str(value)))


def validate_limit(value: object, maximum: int = MAX_LIMIT) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Limit must be an integer, got {value!r}")
    if value < 1 or value > maximum:
        raise ValidationError(f"Limit out of range 1..{maximum}: {value}")
    return value


def validate_identifier(value: object) -> str:
    s = str(value or "")
    if not _IDENTIFIER_RE.match(s):
        raise ValidationError(f"Invalid SQL identifier: {value!r}")
    return s


def validate_accession(value: object) -> str:
    s = str(value or "").strip()
    if not _ACCESSION_RE.match(s):
        raise ValidationError(f"Invalid accession number: {value!r}")
    return s


def validate_table(value: object, allowed: Iterable[str]) -> str:
    """Bare table name from the allow-list. A `db.` style prefix is ignored."""
    bare = validate_identifier(str(value or "").rsplit(".", 1)[-1])
    if bare not in allowed:
        raise ValidationError(f"Table not allowed: {value!r}")
    return bare
