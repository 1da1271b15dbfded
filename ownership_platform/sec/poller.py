from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List
from urllib.parse import urlencode

from ownership_platform.util.normalization import decode_entities


def _debug(msg: str) -> None:
    print(f"[poller] {msg}")


FEED_BASE_URL = "https://www.sec.gov/cgi-bin/browse-edgar"

SCHEDULE13_FORM_TYPES = ("SC 13D", "SC 13D/A", "SC 13G", "SC 13G/A")
FORM13F_FORM_TYPES = ("13F-HR", "13F-HR/A")
FORM345_FORM_TYPES = ("3", "4", "5")

_ENTRY_RE = re.compile(r"<entry>([\s\S]*?)</entry>")
_TITLE_RE = re.compile(r"<title>([^<]+)</title>")
# "4 - HANDLER RICHARD B (0001211677) (Reporting)"
_TITLE_PARTS_RE = re.compile(r"^(.+?)\s+-\s+(.+?)\s*\((\d+)\)")
_LINK_RE = re.compile(r"<link[^>]+href=\"([^\"]+)\"")
_SUMMARY_RE = re.compile(r"<summary[^>]*>([\s\S]*?)</summary>")
_FILED_RE = re.compile(r"Filed:(?:&lt;/b&gt;|</b>)\s*(\d{4}-\d{2}-\d{2})")
_ACCNO_RE = re.compile(r"AccNo:(?:&lt;/b&gt;|</b>)\s*(\d{10}-\d{2}-\d{6})")
_SIZE_RE = re.compile(r"Size:(?:&lt;/b&gt;|</b>)\s*([^<&\n]+)")
_UPDATED_RE = re.compile(r"<updated>([^<]+)</updated>")
_CATEGORY_RE = re.compile(r"<category[^>]+term=\"([^\"]+)\"")


@dataclass(frozen=True)
class FeedEntry:
    form_type: str
    title: str
    company_name: str
    cik: str
    accession_number: str
    filing_date: str
    updated: str
    link: str
    size: str


def feed_url(form_type: str, count: int = 100) -> str:
    """EDGAR "current filings" Atom feed for one form type."""
    params = {
        "action": "getcurrent",
        "type": form_type,
        "count": str(int(count)),
        "owner": "include",
        "output": "atom",
    }
    return f"{FEED_BASE_URL}?{urlencode(params)}"


def parse_atom_feed(xml_text: str) -> List[FeedEntry]:
    """Entries of an EDGAR Atom feed.

    Entries without an accession number or CIK are dropped. The feed's summary
    element is HTML-escaped, so its labels are matched in both encodings.
    """
    entries: List[FeedEntry] = []
    for m in _ENTRY_RE.finditer(xml_text or ""):
        block = m.group(1)

        title_m = _TITLE_RE.search(block)
        title = decode_entities(title_m.group(1)).strip() if title_m else ""
        parts = _TITLE_PARTS_RE.match(title)
        title_form = parts.group(1).strip() if parts else ""
        company = parts.group(2).strip() if parts else ""
        cik = parts.group(3) if parts else ""

        summary_m = _SUMMARY_RE.search(block)
        summary = summary_m.group(1) if summary_m else ""
        filed_m = _FILED_RE.search(summary)
        acc_m = _ACCNO_RE.search(summary)
        size_m = _SIZE_RE.search(summary)

        link_m = _LINK_RE.search(block)
        updated_m = _UPDATED_RE.search(block)
        category_m = _CATEGORY_RE.search(block)

        accession = acc_m.group(1) if acc_m else ""
        if not accession or not cik:
            continue

        entries.append(
            FeedEntry(
                form_type=(category_m.group(1) if category_m else "") or title_form,
                title=title,
                company_name=company,
                cik=cik,
                accession_number=accession,
                filing_date=filed_m.group(1) if filed_m else "",
                updated=updated_m.group(1).strip() if updated_m else "",
                link=decode_entities(link_m.group(1)) if link_m else "",
                size=size_m.group(1).strip() if size_m else "",
            )
        )
    return entries


def fetch_feed(client, form_type: str, count: int = 100) -> List[FeedEntry]:
    url = feed_url(form_type, count)
    text = client.get_text(url, accept="application/atom+xml, application/xml, text/xml")
    entries = parse_atom_feed(text)
    _debug(f"{form_type}: {len(entries)} entries")
    return entries
