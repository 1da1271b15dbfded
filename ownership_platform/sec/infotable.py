"""13F parsing: the information table (holdings) and the primary document (cover).

Filers produce these documents with many different tools, so tag names are
matched on their local name, case-insensitively, whatever the namespace
prefix. Documents ElementTree refuses (undeclared prefixes, stray '&') go
through a regex scan that yields the same field map.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from xml.etree import ElementTree as ET

from ownership_platform.models import DISCRETION_CODES, PUT_CALL_CODES, HoldingLine
from ownership_platform.util.normalization import clean_text, normalize_cusip, parse_int
from ownership_platform.util.time import to_iso_date
from ownership_platform.validators import is_valid_cusip


def _debug(msg: str) -> None:
    print(f"[infotable] {msg}")


_INFOTABLE_BLOCK_RE = re.compile(
    r"<(?:\w+:)?infoTable\b[^>]*>([\s\S]*?)</(?:\w+:)?infoTable>",
    re.IGNORECASE,
)
_LEAF_RE = re.compile(r"<(?:[\w.-]+:)?([\w.-]+)(?:\s[^>]*)?>([^<]*)</", re.IGNORECASE)


@dataclass(frozen=True)
class PrimaryDocInfo:
    period_of_report: str | None
    filer_name: str | None
    submission_type: str | None
    report_calendar_or_quarter: str | None


def _strip_ns(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _flatten(el: ET.Element) -> Dict[str, str]:
    """Map lowercase local tag name -> stripped text (first occurrence wins)."""
    out: Dict[str, str] = {}
    for sub in el.iter():
        name = _strip_ns(sub.tag).lower()
        text = (sub.text or "").strip()
        if name not in out or (not out[name] and text):
            out[name] = text
    return out


def _flatten_regex(block: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for m in _LEAF_RE.finditer(block):
        name = m.group(1).lower()
        text = m.group(2).strip()
        if name not in out or (not out[name] and text):
            out[name] = text
    return out


def _field_maps_etree(xml_text: str) -> List[Dict[str, str]]:
    root = ET.fromstring(xml_text)
    return [_flatten(el) for el in root.iter() if _strip_ns(el.tag).lower() == "infotable"]


def _field_maps_regex(xml_text: str) -> List[Dict[str, str]]:
    return [_flatten_regex(m.group(1)) for m in _INFOTABLE_BLOCK_RE.finditer(xml_text)]


def _discretion(raw: str | None, accession_number: str) -> str | None:
    code = (raw or "").strip().upper()
    if not code:
        return None
    if code not in DISCRETION_CODES:
        _debug(f"Unknown investment discretion {raw!r} in {accession_number}; stored as NULL")
        return None
    return code


def _put_call(raw: str | None) -> str | None:
    v = (raw or "").strip().upper()
    return v if v in PUT_CALL_CODES else None


def _line_from_fields(fields: Dict[str, str], accession_number: str, sk: int) -> HoldingLine:
    shares_text = fields.get("sshprnamt") or fields.get("shrsorprnamt")
    return HoldingLine(
        accession_number=accession_number,
        infotable_sk=sk,
        cusip=normalize_cusip(fields.get("cusip")),
        name_of_issuer=clean_text(fields.get("nameofissuer")),
        title_of_class=clean_text(fields.get("titleofclass")),
        value=parse_int(fields.get("value")),
        shares=parse_int(shares_text),
        share_type=(fields.get("sshprnamttype") or "SH").strip().upper() or "SH",
        put_call=_put_call(fields.get("putcall")),
        investment_discretion=_discretion(fields.get("investmentdiscretion"), accession_number),
        other_manager=clean_text(fields.get("othermanager")),
        voting_sole=parse_int(fields.get("sole")),
        voting_shared=parse_int(fields.get("shared")),
        voting_none=parse_int(fields.get("none")),
    )


def parse_infotable_xml(xml_text: str, accession_number: str) -> List[HoldingLine]:
    """Parse a 13F information table into HoldingLines, in document order.

    Never raises: malformed input yields [] and a diagnostic line. Entries
    without a valid 9-character CUSIP are dropped; the survivors keep their
    document position as infotable_sk.
    """
    if not xml_text or not xml_text.strip():
        _debug(f"Empty information table for {accession_number}")
        return []

    try:
        field_maps = _field_maps_etree(xml_text.strip())
    except ET.ParseError as e:
        _debug(f"XML parse failed for {accession_number} ({e}); falling back to regex scan")
        field_maps = _field_maps_regex(xml_text)

    lines: List[HoldingLine] = []
    dropped = 0
    for i, fields in enumerate(field_maps, start=1):
        try:
            line = _line_from_fields(fields, accession_number, i)
        except Exception as e:
            _debug(f"Skipping malformed infoTable #{i} in {accession_number}: {e}")
            dropped += 1
            continue
        if not is_valid_cusip(line.cusip):
            _debug(f"Skipping infoTable #{i} in {accession_number}: invalid CUSIP {fields.get('cusip')!r}")
            dropped += 1
            continue
        lines.append(line)

    if dropped:
        _debug(f"Dropped {dropped} of {len(field_maps)} infoTable entries for {accession_number}")

    if not lines:
        _debug(f"No infoTable entries found for {accession_number}")
    return lines


def _first_tag_text(xml_text: str, local_name: str) -> Optional[str]:
    m = re.search(
        rf"<(?:[\w.-]+:)?{local_name}\b[^>]*>\s*([^<]*?)\s*</",
        xml_text,
        flags=re.IGNORECASE,
    )
    return clean_text(m.group(1)) if m else None


def parse_primary_doc(xml_text: str) -> PrimaryDocInfo:
    """Cover data from a 13F primary_doc.xml."""
    text = xml_text or ""
    manager = re.search(
        r"<(?:[\w.-]+:)?filingManager\b[^>]*>[\s\S]*?<(?:[\w.-]+:)?name\b[^>]*>\s*([^<]*?)\s*</",
        text,
        flags=re.IGNORECASE,
    )
    return PrimaryDocInfo(
        period_of_report=to_iso_date(_first_tag_text(text, "periodOfReport")),
        filer_name=clean_text(manager.group(1)) if manager else None,
        submission_type=_first_tag_text(text, "submissionType"),
        report_calendar_or_quarter=to_iso_date(_first_tag_text(text, "reportCalendarOrQuarter")),
    )


def find_primary_document(names: Sequence[str]) -> Optional[str]:
    for n in names:
        low = n.lower()
        if low.endswith(".xml") and ("primary" in low or low.startswith("form13f")):
            return n
    return None


def find_infotable_document(names: Sequence[str]) -> Optional[str]:
    """The information table is the XML that is not the primary document."""
    primary = find_primary_document(names)
    xmls = [n for n in names if n.lower().endswith(".xml") and n != primary]
    for n in xmls:
        low = n.lower()
        if "infotable" in low or "information" in low or "table" in low:
            return n
    return xmls[0] if xmls else None
