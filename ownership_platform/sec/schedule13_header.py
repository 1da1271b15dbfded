"""Schedule 13D/13G parsing from the full submission text.

Most 13D/G filings before the structured XML era are HTML or plain text. The
SEC-HEADER block is reliable; the body is not, so CUSIP, class title, percent
and share count come from ordered extractor chains: each extractor is a small
optional-match function and the first structurally valid hit wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ownership_platform.util.normalization import clean_text, parse_decimal, parse_int, trim_cik
from ownership_platform.util.time import to_iso_date, utcnow_iso


def _debug(msg: str) -> None:
    print(f"[schedule13] {msg}")


Extractor = Callable[[str], Optional[Any]]

_HEADER_RE = re.compile(r"<SEC-HEADER>([\s\S]*?)</SEC-HEADER>", re.IGNORECASE)
_KEY_VALUE_RE = re.compile(r"^([A-Z][A-Z\s]+?):\s*(.*)$")
_VALID_CUSIP_RE = re.compile(r"^[A-Z0-9]{6}[A-Z0-9]{2}[0-9]$")

_SECTIONS = {
    "SUBJECT COMPANY": "SUBJECT_",
    "FILED BY": "FILEDBY_",
}


@dataclass(frozen=True)
class Schedule13Header:
    accession_number: str
    form_type: str
    filing_date: str  # YYYY-MM-DD
    issuer_cik: str | None
    issuer_name: str
    issuer_sic: str | None
    filed_by_cik: str | None
    filed_by_name: str
    cusip: str | None
    securities_class_title: str | None
    percent_of_class: float | None
    shares_owned: int | None


# ---------------------------------------------------------------------------
# Extractor chains
# ---------------------------------------------------------------------------


def regex_extractor(
    pattern: str,
    *,
    flags: int = 0,
    convert: Callable[[str], Any] = lambda s: s,
    accept: Callable[[Any], bool] = lambda v: v is not None,
) -> Extractor:
    """Build an extractor: search `pattern`, convert group 1, keep it if accepted."""
    rx = re.compile(pattern, flags)

    def extract(text: str) -> Optional[Any]:
        m = rx.search(text)
        if not m:
            return None
        try:
            value = convert(m.group(1))
        except (TypeError, ValueError):
            return None
        return value if accept(value) else None

    extract.__name__ = f"extract_{pattern[:24]}"
    return extract


def first_match(chain: Sequence[Extractor], text: str) -> Optional[Any]:
    for extractor in chain:
        value = extractor(text)
        if value is not None:
            return value
    return None


def _cusip(raw: str) -> str:
    return raw.strip().upper()


def _is_cusip(v: str) -> bool:
    return bool(_VALID_CUSIP_RE.match(v))


def _title(raw: str) -> str | None:
    return clean_text(raw)


def _percent(raw: str) -> float | None:
    return parse_decimal(raw)


def _shares(raw: str) -> int:
    return parse_int(raw)


CUSIP_EXTRACTORS: List[Extractor] = [
    regex_extractor(
        r"\(CUSIP\s*Number\)</[^>]+>[\s\S]{0,500}?([A-Z0-9]{6}[A-Z0-9]{2}[0-9])",
        flags=re.IGNORECASE,
        convert=_cusip,
        accept=_is_cusip,
    ),
    regex_extractor(
        r"text-align:\s*center[^>]*>\s*([A-Z0-9]{6}[A-Z0-9]{2}[0-9])\s*<",
        flags=re.IGNORECASE,
        convert=_cusip,
        accept=_is_cusip,
    ),
    regex_extractor(
        r"CUSIP[:\s#No.]+([A-Z0-9]{6}[A-Z0-9]{2}[0-9])\b",
        flags=re.IGNORECASE,
        convert=_cusip,
        accept=_is_cusip,
    ),
    regex_extractor(r">([A-Z][0-9]{5}[A-Z0-9]{2}[0-9])<", convert=_cusip, accept=_is_cusip),
]

CLASS_TITLE_EXTRACTORS: List[Extractor] = [
    regex_extractor(
        r"Title of Class of Securities[^>]*>[\s\S]*?<[^>]+>([^<]+)<",
        flags=re.IGNORECASE,
        convert=_title,
    ),
    regex_extractor(
        r"\(Title of Class[^)]*\)[\s\S]*?([A-Za-z][^<\n]{5,50})",
        flags=re.IGNORECASE,
        convert=_title,
    ),
    regex_extractor(
        r"Class of Securities[:\s]*([A-Za-z][^\n<]{5,50})",
        flags=re.IGNORECASE,
        convert=_title,
    ),
]


def _valid_percent(v: float | None) -> bool:
    return v is not None and 0 <= v <= 100


PERCENT_EXTRACTORS: List[Extractor] = [
    regex_extractor(r"Percent of Class[^:]*:\s*([\d.]+)\s*%", flags=re.IGNORECASE, convert=_percent, accept=_valid_percent),
    regex_extractor(r"Item\s*(?:11|9)[^%]*?([\d.]+)\s*%", flags=re.IGNORECASE, convert=_percent, accept=_valid_percent),
    regex_extractor(r"Aggregate Amount[^%]*?([\d.]+)\s*%", flags=re.IGNORECASE, convert=_percent, accept=_valid_percent),
]

SHARES_EXTRACTORS: List[Extractor] = [
    regex_extractor(r"Aggregate Amount[^:]*:\s*([\d,]+)", flags=re.IGNORECASE, convert=_shares, accept=lambda v: v > 0),
    regex_extractor(r"Total Shares[^:]*:\s*([\d,]+)", flags=re.IGNORECASE, convert=_shares, accept=lambda v: v > 0),
    regex_extractor(r"Number of Shares[^:]*:\s*([\d,]+)", flags=re.IGNORECASE, convert=_shares, accept=lambda v: v > 0),
]


# ---------------------------------------------------------------------------
# Header block
# ---------------------------------------------------------------------------


def parse_header_fields(text: str) -> Dict[str, str]:
    """Flatten the SEC-HEADER into KEY -> value.

    Keys under "SUBJECT COMPANY:" get a SUBJECT_ prefix and keys under
    "FILED BY:" a FILEDBY_ prefix; first occurrence wins.
    """
    m = _HEADER_RE.search(text)
    block = m.group(1) if m else text

    fields: Dict[str, str] = {}
    prefix = ""
    for raw_line in block.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        section = line.rstrip(":").strip().upper()
        if line.endswith(":") and section in _SECTIONS:
            prefix = _SECTIONS[section]
            continue
        kv = _KEY_VALUE_RE.match(line)
        if not kv:
            continue
        key = prefix + kv.group(1).strip()
        value = kv.group(2).strip()
        if key not in fields:
            fields[key] = value
    return fields


def _body(text: str) -> str:
    idx = text.upper().find("<HTML")
    return text[idx:] if idx >= 0 else text


def parse_schedule13_header(text: str, accession_number: str) -> Optional[Schedule13Header]:
    """Parse a 13D/G submission. Returns None for non-13 forms or unusable input."""
    if not text:
        _debug(f"Empty submission text for {accession_number}")
        return None

    try:
        fields = parse_header_fields(text)
    except Exception as e:
        _debug(f"Header scan failed for {accession_number}: {e}")
        return None

    form_type = fields.get("CONFORMED SUBMISSION TYPE", "").strip()
    if "13" not in form_type:
        # Not a 13-series form (a normal outcome for mixed feeds).
        return None

    filing_date = to_iso_date(fields.get("FILED AS OF DATE"))
    if not filing_date:
        _debug(f"No FILED AS OF DATE for {accession_number}")
        return None

    body = _body(text)
    return Schedule13Header(
        accession_number=accession_number,
        form_type=form_type,
        filing_date=filing_date,
        issuer_cik=fields.get("SUBJECT_CENTRAL INDEX KEY") or None,
        issuer_name=fields.get("SUBJECT_COMPANY CONFORMED NAME") or "Unknown Issuer",
        issuer_sic=fields.get("SUBJECT_STANDARD INDUSTRIAL CLASSIFICATION") or None,
        filed_by_cik=fields.get("FILEDBY_CENTRAL INDEX KEY") or None,
        filed_by_name=fields.get("FILEDBY_COMPANY CONFORMED NAME") or "Unknown Filer",
        cusip=first_match(CUSIP_EXTRACTORS, body),
        securities_class_title=first_match(CLASS_TITLE_EXTRACTORS, body),
        percent_of_class=first_match(PERCENT_EXTRACTORS, body),
        shares_owned=first_match(SHARES_EXTRACTORS, body),
    )


FILING_13DG_COLUMNS = (
    "accession_number",
    "form_type",
    "filing_date",
    "issuer_cik",
    "issuer_name",
    "issuer_sic",
    "issuer_cusip",
    "filed_by_cik",
    "filed_by_name",
    "securities_class_title",
    "percent_of_class",
    "shares_owned",
    "amendment_no",
    "previous_accession_number",
    "date_of_event",
    "purpose_of_transaction",
    "source_of_funds",
    "sole_voting_power",
    "shared_voting_power",
    "sole_dispositive_power",
    "shared_dispositive_power",
    "reporting_person_count",
    "intent_flags",
    "created_at",
)


def blank_13dg_record() -> Dict[str, Any]:
    """Every filings_13dg column present, so header- and XML-sourced rows batch together."""
    return {c: None for c in FILING_13DG_COLUMNS}


def header_to_record(header: Schedule13Header) -> Dict[str, Any]:
    """Row for filings_13dg."""
    record = blank_13dg_record()
    record.update({
        "accession_number": header.accession_number,
        "form_type": header.form_type,
        "filing_date": header.filing_date,
        "issuer_cik": trim_cik(header.issuer_cik),
        "issuer_name": header.issuer_name,
        "issuer_sic": header.issuer_sic,
        "issuer_cusip": header.cusip,
        "filed_by_cik": trim_cik(header.filed_by_cik),
        "filed_by_name": header.filed_by_name,
        "securities_class_title": header.securities_class_title,
        "percent_of_class": header.percent_of_class or 0,
        "shares_owned": header.shares_owned or 0,
        "created_at": utcnow_iso(),
    })
    return record
