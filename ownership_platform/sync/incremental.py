"""Incremental sync from the EDGAR "current filings" Atom feeds.

One `FeedSync` per source. A run reads the resume point from `sync_state`,
pulls every feed for the source's form types, processes the entries it has not
seen yet in filing-date order, and writes all records in one transaction at
the end. Per-entry failures are counted and skipped; anything else marks the
source failed and propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ownership_platform.errors import MalformedInputError, OwnershipPlatformError
from ownership_platform.models import Filing
from ownership_platform.schema import NATURAL_KEYS
from ownership_platform.sec.edgar import filing_document_url, submission_text_url
from ownership_platform.sec.form345 import filing_to_rows, find_ownership_document, parse_form345_xml
from ownership_platform.sec.infotable import (
    find_infotable_document,
    find_primary_document,
    parse_infotable_xml,
    parse_primary_doc,
)
from ownership_platform.sec.poller import (
    FORM13F_FORM_TYPES,
    FORM345_FORM_TYPES,
    SCHEDULE13_FORM_TYPES,
    FeedEntry,
    fetch_feed,
)
from ownership_platform.sec.schedule13_header import header_to_record, parse_schedule13_header
from ownership_platform.sec.schedule13_xml import filing_to_records, parse_schedule13_xml
from ownership_platform.sync.state import get_sync_state, mark_sync_complete, mark_sync_failed, mark_sync_started
from ownership_platform.util.normalization import trim_cik
from ownership_platform.util.time import today_iso, utcnow_iso


def _debug(msg: str) -> None:
    print(f"[incremental] {msg}")


Rows = Dict[str, List[Dict[str, Any]]]


@dataclass
class SyncResult:
    source: str
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    dry_run: bool = False
    message: str = ""


# ---------------------------------------------------------------------------
# Processors: one feed entry -> rows per table (parent tables first)
# ---------------------------------------------------------------------------


class Schedule13Processor:
    source = "schedule13"
    form_types = SCHEDULE13_FORM_TYPES

    def _structured(self, client: Any, entry: FeedEntry) -> Optional[Rows]:
        try:
            names = client.fetch_filing_index(entry.cik, entry.accession_number)
        except OwnershipPlatformError as e:
            _debug(f"No filing index for {entry.accession_number}: {e}")
            return None
        xmls = [n for n in names if n.lower().endswith(".xml")]
        doc = next((n for n in xmls if n.lower() == "primary_doc.xml"), xmls[0] if xmls else None)
        if doc is None:
            return None
        text = client.get_text(filing_document_url(entry.cik, entry.accession_number, doc))
        filing = parse_schedule13_xml(text, entry.accession_number, entry.filing_date)
        if filing is None:
            return None
        record, persons = filing_to_records(filing)
        return {"filings_13dg": [record], "schedule13_reporting_persons": persons}

    def process(self, client: Any, entry: FeedEntry) -> Rows:
        text = client.get_text(submission_text_url(entry.cik, entry.accession_number))
        header = parse_schedule13_header(text, entry.accession_number)
        if header is not None and header.cusip:
            return {"filings_13dg": [header_to_record(header)]}

        # HTML/text bodies without a recognizable CUSIP: try the structured document.
        structured = self._structured(client, entry)
        if structured is not None:
            return structured
        if header is not None:
            return {"filings_13dg": [header_to_record(header)]}
        raise MalformedInputError(f"Unparseable Schedule 13 submission {entry.accession_number}")


class Form13FProcessor:
    source = "13f"
    form_types = FORM13F_FORM_TYPES

    def process(self, client: Any, entry: FeedEntry) -> Rows:
        cik = trim_cik(entry.cik)
        if cik is None:
            raise MalformedInputError(f"Bad CIK {entry.cik!r} for {entry.accession_number}")
        names = client.fetch_filing_index(cik, entry.accession_number)

        period = None
        filer_name = None
        primary = find_primary_document(names)
        if primary:
            try:
                info = parse_primary_doc(client.get_text(filing_document_url(cik, entry.accession_number, primary)))
                period, filer_name = info.period_of_report, info.filer_name
            except OwnershipPlatformError as e:
                _debug(f"Primary document unavailable for {entry.accession_number}: {e}")

        lines = []
        infotable = find_infotable_document(names)
        if infotable:
            xml_text = client.get_text(filing_document_url(cik, entry.accession_number, infotable))
            lines = parse_infotable_xml(xml_text, entry.accession_number)

        filing = Filing(
            accession_number=entry.accession_number,
            cik=cik,
            form_type=entry.form_type,
            filing_date=entry.filing_date or None,
            period_of_report=period,
            filer_name=filer_name or entry.company_name or None,
        )
        now = utcnow_iso()
        return {
            "submissions_13f": [filing.to_row(now)],
            "holdings_13f": [line.to_row(filing.filing_date, now) for line in lines],
        }


class Form345Processor:
    source = "form345"
    form_types = FORM345_FORM_TYPES

    def process(self, client: Any, entry: FeedEntry) -> Rows:
        names = client.fetch_filing_index(entry.cik, entry.accession_number)
        doc = find_ownership_document(names)
        if doc is None:
            raise MalformedInputError(f"No ownership document in {entry.accession_number}")
        text = client.get_text(filing_document_url(entry.cik, entry.accession_number, doc))
        filing = parse_form345_xml(text, entry.accession_number, entry.filing_date)
        if filing is None:
            raise MalformedInputError(f"Unparseable ownership document in {entry.accession_number}")
        return filing_to_rows(filing)


PROCESSORS = {p.source: p for p in (Schedule13Processor, Form13FProcessor, Form345Processor)}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class FeedSync:
    def __init__(
        self,
        gateway: Any,
        client: Any,
        processor: Any,
        *,
        source: str | None = None,
        form_types: Sequence[str] | None = None,
    ):
        self.gateway = gateway
        self.client = client
        self.processor = processor
        self.source = source or processor.source
        self.form_types = tuple(form_types or processor.form_types)

    @classmethod
    def for_source(cls, source: str, gateway: Any, client: Any) -> "FeedSync":
        if source not in PROCESSORS:
            raise ValueError(f"Unknown feed source {source!r}; expected one of {sorted(PROCESSORS)}")
        return cls(gateway, client, PROCESSORS[source]())

    def _fetch_entries(self, count: int) -> List[FeedEntry]:
        entries: List[FeedEntry] = []
        for form_type in self.form_types:
            try:
                entries.extend(fetch_feed(self.client, form_type, count))
            except OwnershipPlatformError as e:
                _debug(f"Feed {form_type!r} failed, skipping: {e}")
        return entries

    def _write(self, batches: Rows) -> None:
        with self.gateway.transaction() as tx:
            for table, rows in batches.items():
                if rows:
                    tx.upsert_rows(table, rows, NATURAL_KEYS[table])
                    _debug(f"Wrote {len(rows)} rows to {table}")

    def run(self, dry_run: bool = False, force: bool = False, count: int = 100) -> SyncResult:
        result = SyncResult(source=self.source, dry_run=dry_run)
        state = get_sync_state(self.gateway, self.source)
        last_accession = state.last_accession_number if state else None

        if not dry_run:
            mark_sync_started(self.gateway, self.source)

        try:
            entries = self._fetch_entries(count)
            if not entries:
                if not dry_run:
                    mark_sync_complete(self.gateway, self.source, today_iso(), last_accession)
                result.message = "No entries found in feeds"
                return result

            unique: Dict[str, FeedEntry] = {}
            for e in entries:
                unique.setdefault(e.accession_number, e)
            # Same-day filings are ordered by their feed timestamp so the resume
            # point stays a stable position across runs.
            ordered = sorted(unique.values(), key=lambda e: (e.filing_date, e.updated, e.accession_number))

            start = 0
            if last_accession and not force:
                for i, e in enumerate(ordered):
                    if e.accession_number == last_accession:
                        start = i + 1
                        break
            result.skipped = start

            if dry_run:
                result.processed = len(ordered) - start
                result.message = f"Dry run: would process {result.processed} filings, skip {start}"
                return result

            batches: Rows = {}
            latest_date = state.last_processed_date if state else None
            latest_accession = last_accession
            for entry in ordered[start:]:
                try:
                    rows = self.processor.process(self.client, entry)
                except Exception as e:
                    result.errors += 1
                    _debug(f"Error processing {entry.accession_number}: {type(e).__name__}: {e}")
                    continue
                for table, table_rows in rows.items():
                    batches.setdefault(table, []).extend(table_rows)
                if entry.filing_date and (latest_date is None or entry.filing_date > latest_date):
                    latest_date = entry.filing_date
                latest_accession = entry.accession_number
                result.processed += 1
                if result.processed % 10 == 0:
                    _debug(f"{self.source}: processed {result.processed} filings...")

            self._write(batches)
            mark_sync_complete(self.gateway, self.source, latest_date, latest_accession)
            result.message = f"Processed {result.processed}, failed {result.errors}, skipped {result.skipped}"
            _debug(result.message)
            return result
        except Exception as e:
            if not dry_run:
                mark_sync_failed(self.gateway, self.source, f"{type(e).__name__}: {e}")
            raise
