from __future__ import annotations

import html
import re
from decimal import Decimal, InvalidOperation


def normalize_cusip(raw: str | None) -> str | None:
    """Strip whitespace, uppercase, keep the first 9 characters.

    This only shapes the value; validation happens in `validators`.
    """
    if raw is None:
        return None
    s = re.sub(r"\s+", "", str(raw)).upper()[:9]
    return s or None


def cik_path_component(cik: str) -> str:
    # EDGAR archive paths use the integer CIK without leading zeros
    return str(int(str(cik).strip()))


def accession_nodash(accession_number: str) -> str:
    return str(accession_number or "").replace("-", "").strip()


def decode_entities(text: str | None) -> str:
    if not text:
        return ""
    return html.unescape(text)


def clean_text(text: str | None) -> str | None:
    """Decode entities and collapse whitespace. Empty becomes None."""
    if text is None:
        return None
    s = " ".join(decode_entities(text).split())
    return s or None


def parse_int(raw: str | int | None, default: int = 0) -> int:
    """Exact integer parse of SEC numeric text ("123,456,789" -> 123456789).

    Decimal is used so large share counts never pass through a float.
    """
    if raw is None:
        return default
    if isinstance(raw, int):
        return raw
    t = str(raw).strip().replace(",", "").replace("$", "")
    if not t:
        return default
    try:
        return int(Decimal(t))
    except (InvalidOperation, ValueError):
        return default


def parse_decimal(raw: str | None) -> float | None:
    if raw is None:
        return None
    t = str(raw).strip().replace(",", "").replace("$", "").rstrip("%")
    if not t:
        return None
    try:
        return float(Decimal(t))
    except (InvalidOperation, ValueError):
        return None


def trim_cik(cik: str | int | None) -> str | None:
    """CIK without leading zeros (the comparison form); None unless all digits."""
    if cik is None:
        return None
    s = str(cik).strip()
    if not s.isdigit():
        return None
    return s.lstrip("0") or "0"
