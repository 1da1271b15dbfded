"""Quarterly bulk import from the SEC structured data sets (13F and Forms 3/4/5).

Each quarter is one ZIP of tab-separated files. Archives are cached under
DATA_DIR, extracted into a temporary directory that is always removed, and
loaded with insert-or-ignore on natural keys, so importing the same archive
twice leaves the store unchanged.
"""

from __future__ import annotations

import csv
import os
import tempfile
import zipfile
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ownership_platform.errors import MalformedInputError, ValidationError
from ownership_platform.models import DISCRETION_CODES, PUT_CALL_CODES
from ownership_platform.schema import NATURAL_KEYS
from ownership_platform.sec.edgar import SEC_BASE_URL
from ownership_platform.sync.state import init_backfill_progress, update_quarter_progress
from ownership_platform.util.normalization import clean_text, normalize_cusip, parse_decimal, parse_int, trim_cik
from ownership_platform.util.quarters import (
    current_quarter,
    parse_quarter,
    previous_quarter,
    quarter_range,
    report_quarter,
    normalize_value,
)
from ownership_platform.util.time import to_iso_date, utcnow_iso
from ownership_platform.validators import is_valid_cusip, validate_quarter


def _debug(msg: str) -> None:
    print(f"[bulk] {msg}")


FORM13F_ARCHIVE_URL = SEC_BASE_URL + "/files/structureddata/data/form-13f-data-sets/{year}q{quarter}_form13f.zip"
FORM345_ARCHIVE_URL = SEC_BASE_URL + "/files/structureddata/data/form-345-data-sets/{year}q{quarter}_form345.zip"

# First quarter of the 13F structured data sets.
BULK_START_QUARTER = "2013-Q2"

FLUSH_ROWS = 5000
# Families with quarterly structured data sets.
BULK_FORM_FAMILIES = ("13F", "345")

FORM13F_FILES = ("SUBMISSION.tsv", "COVERPAGE.tsv", "INFOTABLE.tsv")

# file -> (table, columns). Columns are the lowercased TSV headers we keep.
FORM345_FILES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "SUBMISSION.tsv": (
        "form345_submissions",
        (
            "accession_number",
            "filing_date",
            "period_of_report",
            "document_type",
            "issuercik",
            "issuername",
            "issuertradingsymbol",
            "no_securities_owned",
            "not_subject_sec16",
            "remarks",
        ),
    ),
    "REPORTINGOWNER.tsv": (
        "form345_reporting_owners",
        (
            "accession_number",
            "rptownercik",
            "rptownername",
            "rptowner_relationship",
            "rptowner_title",
            "rptowner_street1",
            "rptowner_street2",
            "rptowner_city",
            "rptowner_state",
            "rptowner_zipcode",
        ),
    ),
    "NONDERIV_TRANS.tsv": (
        "form345_nonderiv_trans",
        (
            "accession_number",
            "nonderiv_trans_sk",
            "security_title",
            "trans_date",
            "trans_code",
            "trans_shares",
            "trans_pricepershare",
            "trans_acquired_disp_cd",
            "shrs_ownd_folwng_trans",
            "direct_indirect_ownership",
            "nature_of_ownership",
        ),
    ),
    "NONDERIV_HOLDING.tsv": (
        "form345_nonderiv_holding",
        (
            "accession_number",
            "nonderiv_holding_sk",
            "security_title",
            "shrs_ownd_folwng_trans",
            "direct_indirect_ownership",
            "nature_of_ownership",
        ),
    ),
    "DERIV_TRANS.tsv": (
        "form345_deriv_trans",
        (
            "accession_number",
            "deriv_trans_sk",
            "security_title",
            "conv_exercise_price",
            "trans_date",
            "trans_code",
            "trans_shares",
            "trans_pricepershare",
            "trans_acquired_disp_cd",
            "exercise_date",
            "expiration_date",
            "undlyng_sec_title",
            "undlyng_sec_shares",
            "shrs_ownd_folwng_trans",
            "direct_indirect_ownership",
        ),
    ),
    "DERIV_HOLDING.tsv": (
        "form345_deriv_holding",
        (
            "accession_number",
            "deriv_holding_sk",
            "security_title",
            "conv_exercise_price",
            "exercise_date",
            "expiration_date",
            "undlyng_sec_title",
            "undlyng_sec_shares",
            "shrs_ownd_folwng_trans",
            "direct_indirect_ownership",
        ),
    ),
}

# The SEC data set misspells this header.
_HEADER_ALIASES = {"excercise_date": "exercise_date"}

_DATE_COLUMNS = {"filing_date", "period_of_report", "trans_date", "exercise_date", "expiration_date"}
_NUMERIC_COLUMNS = {
    "trans_shares",
    "trans_pricepershare",
    "shrs_ownd_folwng_trans",
    "conv_exercise_price",
    "undlyng_sec_shares",
}
_INT_COLUMNS = {"nonderiv_trans_sk", "nonderiv_holding_sk", "deriv_trans_sk", "deriv_holding_sk"}
_CIK_COLUMNS = {"issuercik", "rptownercik"}


@dataclass
class BulkResult:
    form_family: str
    quarter: str
    inserted: Dict[str, int] = field(default_factory=dict)
    skipped_rows: int = 0
    error: str | None = None

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())


# ---------------------------------------------------------------------------
# Quarter selection
# ---------------------------------------------------------------------------


def quarters_to_sync(
    quarter: str | None = None,
    start: str | None = None,
    all_: bool = False,
    today: date | None = None,
) -> List[str]:
    """One quarter, a range up to now, everything since BULK_START_QUARTER, or current + previous."""
    now_q = current_quarter(today)
    if quarter:
        return [validate_quarter(quarter)]
    if all_:
        return quarter_range(BULK_START_QUARTER, now_q)
    if start:
        return quarter_range(start, now_q)
    return [previous_quarter(now_q), now_q]


# ---------------------------------------------------------------------------
# Archive handling
# ---------------------------------------------------------------------------


def safe_extract(zip_path: str, dest_dir: str, wanted: Sequence[str] | None = None) -> Dict[str, str]:
    """Extract members into dest_dir; returns base name -> extracted path.

    `wanted` names are matched case-insensitively on the member's base name.
    A member whose path would land outside dest_dir aborts the extraction.
    """
    root = os.path.realpath(dest_dir)
    wanted_lower = {w.lower() for w in wanted} if wanted else None
    out: Dict[str, str] = {}
    with zipfile.ZipFile(zip_path) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            target = os.path.realpath(os.path.join(root, info.filename))
            if os.path.commonpath([root, target]) != root:
                raise MalformedInputError(f"Path traversal detected: {info.filename!r} escapes {dest_dir}")
            base = os.path.basename(info.filename)
            if wanted_lower is not None and base.lower() not in wanted_lower:
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with zf.open(info) as src, open(target, "wb") as dst:
                while True:
                    chunk = src.read(1024 * 1024)
                    if not chunk:
                        break
                    dst.write(chunk)
            out[base.upper().replace(".TSV", ".tsv")] = target
    return out


def iter_tsv(path: str) -> Iterator[Dict[str, str]]:
    """Rows of an SEC data set TSV with lowercased header names."""
    with open(path, "r", encoding="utf-8", errors="replace", newline="") as f:
        reader = csv.reader(f, delimiter="\t", quoting=csv.QUOTE_NONE)
        header = next(reader, None)
        if header is None:
            return
        cols = [_HEADER_ALIASES.get(h.strip().lower(), h.strip().lower()) for h in header]
        for values in reader:
            if not values:
                continue
            yield {c: (values[i] if i < len(values) else "") for i, c in enumerate(cols)}


def _convert_345(col: str, raw: str | None) -> Any:
    if raw is None or not str(raw).strip():
        return None
    if col in _DATE_COLUMNS:
        return to_iso_date(raw)
    if col in _NUMERIC_COLUMNS:
        return parse_decimal(raw)
    if col in _INT_COLUMNS:
        return parse_int(raw)
    if col in _CIK_COLUMNS:
        return trim_cik(raw)
    return str(raw).strip()


def _holding_row(raw: Dict[str, str], filing_date: str | None, now: str) -> Optional[Dict[str, Any]]:
    cusip = normalize_cusip(raw.get("cusip"))
    if not cusip or not is_valid_cusip(cusip):
        return None
    discretion = (raw.get("investmentdiscretion") or "").strip().upper()
    put_call = (raw.get("putcall") or "").strip().upper()
    return {
        "accession_number": raw.get("accession_number", "").strip(),
        "infotable_sk": parse_int(raw.get("infotable_sk")),
        "cusip": cusip,
        "name_of_issuer": clean_text(raw.get("nameofissuer")),
        "title_of_class": clean_text(raw.get("titleofclass")),
        "value": normalize_value(parse_int(raw.get("value")), filing_date),
        "shares": parse_int(raw.get("sshprnamt")),
        "share_type": (raw.get("sshprnamttype") or "SH").strip().upper() or "SH",
        "put_call": put_call if put_call in PUT_CALL_CODES else None,
        "investment_discretion": discretion if discretion in DISCRETION_CODES else None,
        "other_manager": clean_text(raw.get("othermanager")),
        "voting_sole": parse_int(raw.get("voting_auth_sole")),
        "voting_shared": parse_int(raw.get("voting_auth_shared")),
        "voting_none": parse_int(raw.get("voting_auth_none")),
        "created_at": now,
    }


class BulkSync:
    def __init__(self, gateway: Any, client: Any, cfg: Any = None, *, data_dir: str | None = None):
        self.gateway = gateway
        self.client = client
        self.data_dir = data_dir or (cfg.DATA_DIR if cfg is not None else "./data/backfill")

    def _archive(self, url: str) -> str:
        path = os.path.join(self.data_dir, "raw", url.rsplit("/", 1)[-1])
        if os.path.exists(path):
            _debug(f"Using cached archive {path}")
            return path
        return self.client.download_file(url, path)

    def _flush(self, table: str, rows: List[Dict[str, Any]], result: BulkResult) -> None:
        if rows:
            n = self.gateway.insert_or_ignore(table, rows)
            result.inserted[table] = result.inserted.get(table, 0) + n
            rows.clear()

    def _run_quarter(
        self,
        family: str,
        label: str,
        url_template: str,
        wanted: Sequence[str],
        load: Callable[[Dict[str, str], BulkResult, Callable[[int], None]], None],
    ) -> BulkResult:
        q = validate_quarter(label)
        year, quarter = parse_quarter(q)
        result = BulkResult(form_family=family, quarter=q)
        init_backfill_progress(self.gateway, family, [q])
        try:
            update_quarter_progress(self.gateway, family, q, status="downloading")
            archive = self._archive(url_template.format(year=year, quarter=quarter))

            update_quarter_progress(self.gateway, family, q, status="extracting")
            with tempfile.TemporaryDirectory(prefix=f"bulk-{family}-{q}-") as tmp:
                files = safe_extract(archive, tmp, wanted)
                missing = [w for w in wanted if w not in files]
                if missing:
                    raise MalformedInputError(f"Archive {archive} is missing {missing}")

                update_quarter_progress(
                    self.gateway, family, q, status="processing", files_processed=0, total_files=len(files)
                )

                def progress(done: int) -> None:
                    update_quarter_progress(self.gateway, family, q, files_processed=done)

                load(files, result, progress)

            update_quarter_progress(self.gateway, family, q, status="complete")
            _debug(f"{family} {q}: inserted {result.inserted}, skipped {result.skipped_rows}")
            return result
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            update_quarter_progress(self.gateway, family, q, status="failed", error=result.error)
            raise

    # -----------------
    # 13F
    # -----------------
    def _load_13f(self, files: Dict[str, str], result: BulkResult, progress: Callable[[int], None]) -> None:
        now = utcnow_iso()

        names: Dict[str, str] = {}
        for raw in iter_tsv(files["COVERPAGE.tsv"]):
            acc = raw.get("accession_number", "").strip()
            if acc and raw.get("filingmanager_name"):
                names[acc] = clean_text(raw["filingmanager_name"]) or ""

        filing_dates: Dict[str, str | None] = {}
        batch: List[Dict[str, Any]] = []
        for raw in iter_tsv(files["SUBMISSION.tsv"]):
            acc = raw.get("accession_number", "").strip()
            cik = trim_cik(raw.get("cik"))
            if not acc or cik is None:
                result.skipped_rows += 1
                continue
            filing_date = to_iso_date(raw.get("filing_date"))
            period = to_iso_date(raw.get("periodofreport"))
            filing_dates[acc] = filing_date
            batch.append(
                {
                    "accession_number": acc,
                    "cik": cik,
                    "submission_type": (raw.get("submissiontype") or "").strip() or None,
                    "period_of_report": period,
                    "report_quarter": report_quarter(period, filing_date),
                    "filing_date": filing_date,
                    "filer_name": names.get(acc) or None,
                    "created_at": now,
                }
            )
            if len(batch) >= FLUSH_ROWS:
                self._flush("submissions_13f", batch, result)
        self._flush("submissions_13f", batch, result)
        progress(2)

        for raw in iter_tsv(files["INFOTABLE.tsv"]):
            acc = raw.get("accession_number", "").strip()
            row = _holding_row(raw, filing_dates.get(acc), now) if acc else None
            if row is None:
                result.skipped_rows += 1
                continue
            batch.append(row)
            if len(batch) >= FLUSH_ROWS:
                self._flush("holdings_13f", batch, result)
        self._flush("holdings_13f", batch, result)
        progress(3)

    def sync_13f_quarter(self, year: int, quarter: int) -> BulkResult:
        return self._run_quarter("13F", f"{year}-Q{quarter}", FORM13F_ARCHIVE_URL, FORM13F_FILES, self._load_13f)

    # -----------------
    # Forms 3/4/5
    # -----------------
    def _load_345(self, files: Dict[str, str], result: BulkResult, progress: Callable[[int], None]) -> None:
        done = 0
        for name, (table, columns) in FORM345_FILES.items():
            batch: List[Dict[str, Any]] = []
            for raw in iter_tsv(files[name]):
                row = {c: _convert_345(c, raw.get(c)) for c in columns}
                if any(row.get(k) is None for k in NATURAL_KEYS[table]):
                    result.skipped_rows += 1
                    continue
                batch.append(row)
                if len(batch) >= FLUSH_ROWS:
                    self._flush(table, batch, result)
            self._flush(table, batch, result)
            done += 1
            progress(done)

    def sync_form345_quarter(self, year: int, quarter: int) -> BulkResult:
        return self._run_quarter("345", f"{year}-Q{quarter}", FORM345_ARCHIVE_URL, tuple(FORM345_FILES), self._load_345)

    # -----------------
    # Multi-quarter runs
    # -----------------
    def run(self, form_family: str, quarters: Sequence[str]) -> List[BulkResult]:
        """Import each quarter in turn; a failed quarter is recorded and the run moves on."""
        family = (form_family or "").strip().upper()
        if family not in BULK_FORM_FAMILIES:
            raise ValidationError(f"Unknown form family {form_family!r}; expected one of {BULK_FORM_FAMILIES}")
        sync = self.sync_13f_quarter if family == "13F" else self.sync_form345_quarter
        results: List[BulkResult] = []
        for q in quarters:
            try:
                results.append(sync(*parse_quarter(q)))
            except Exception as e:
                _debug(f"{family} {q} failed: {type(e).__name__}: {e}")
                results.append(BulkResult(form_family=family, quarter=q, error=str(e)))
        return results
