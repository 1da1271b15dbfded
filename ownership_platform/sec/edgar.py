from __future__ import annotations

import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from ownership_platform.errors import SecRequestError, TransientIOError
from ownership_platform.util.normalization import accession_nodash, cik_path_component


SEC_BASE_URL = "https://www.sec.gov"
SEC_DATA_URL = "https://data.sec.gov"

# Statuses worth another attempt; anything else non-200 fails immediately.
_RETRY_STATUSES = (429, 500, 502, 503, 504)
_DEFAULT_RETRY_AFTER_SECONDS = 60


def _debug(msg: str) -> None:
    print(f"[sec] {msg}")


@dataclass(frozen=True)
class FormIndexEntry:
    form_type: str
    company_name: str
    cik: str
    date_filed: str
    file_name: str


# Per-process polite throttling for SEC endpoints.
_SEC_LAST_REQUEST_MONO: float = 0.0
_SEC_LOCK = threading.Lock()


def _throttle(min_interval_seconds: float | None) -> None:
    if not min_interval_seconds or min_interval_seconds <= 0:
        return
    global _SEC_LAST_REQUEST_MONO
    with _SEC_LOCK:
        now = time.monotonic()
        dt = now - _SEC_LAST_REQUEST_MONO
        if dt < min_interval_seconds:
            time.sleep(min_interval_seconds - dt)
        _SEC_LAST_REQUEST_MONO = time.monotonic()


def _retry_after(resp: Any) -> float:
    raw = (getattr(resp, "headers", None) or {}).get("Retry-After")
    try:
        return float(int(str(raw).strip()))
    except (TypeError, ValueError):
        return float(_DEFAULT_RETRY_AFTER_SECONDS)


# -----------------
# Archive URLs
# -----------------
def filing_base_url(cik: str, accession_number: str) -> str:
    return f"{SEC_BASE_URL}/Archives/edgar/data/{cik_path_component(cik)}/{accession_nodash(accession_number)}/"


def filing_index_url(cik: str, accession_number: str) -> str:
    return filing_base_url(cik, accession_number) + "index.json"


def submission_text_url(cik: str, accession_number: str) -> str:
    return filing_base_url(cik, accession_number) + f"{accession_number}.txt"


def filing_document_url(cik: str, accession_number: str, document: str) -> str:
    return filing_base_url(cik, accession_number) + document


def submissions_json_url(padded_cik: str) -> str:
    return f"{SEC_DATA_URL}/submissions/CIK{padded_cik}.json"


class SecClient:
    """Polite EDGAR HTTP client.

    Every request carries the configured User-Agent, waits for the shared
    throttle, holds one of `max_concurrency` slots, and is retried on
    429/5xx (honouring Retry-After) and connection errors with exponential
    backoff. Exhausted retries raise TransientIOError; other non-200 responses
    raise SecRequestError straight away.
    """

    def __init__(
        self,
        user_agent: str,
        *,
        min_interval_seconds: float | None = 0.12,
        max_concurrency: int = 10,
        max_retries: int = 3,
        timeout: float = 60,
        http_get: Callable[..., Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.user_agent = user_agent
        self.min_interval_seconds = min_interval_seconds
        self.max_retries = max_retries
        self.timeout = timeout
        self._get = http_get or requests.get
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max(1, int(max_concurrency)))

    @classmethod
    def from_config(cls, cfg: Any) -> "SecClient":
        return cls(
            cfg.SEC_USER_AGENT,
            min_interval_seconds=cfg.SEC_MIN_INTERVAL_SECONDS,
            max_concurrency=cfg.SEC_MAX_CONCURRENCY,
            max_retries=cfg.SEC_MAX_RETRIES,
        )

    def _request(self, url: str, *, accept: str | None = None, stream: bool = False) -> Any:
        headers = {"User-Agent": self.user_agent, "Accept": accept or "application/json, text/plain, */*"}
        last_err: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            delay = float(2**attempt)
            with self._slots:
                _throttle(self.min_interval_seconds)
                _debug(f"GET {url}")
                try:
                    r = self._get(url, headers=headers, timeout=self.timeout, stream=stream)
                except requests.RequestException as e:
                    last_err = e
                    r = None
            if r is not None:
                if r.status_code == 200:
                    return r
                if r.status_code not in _RETRY_STATUSES:
                    raise SecRequestError(url, r.status_code, r.text if not stream else "")
                last_err = SecRequestError(url, r.status_code)
                if r.status_code in (429, 503):
                    delay = _retry_after(r)
            if attempt < self.max_retries:
                _debug(f"Attempt {attempt + 1}/{self.max_retries + 1} failed for {url}: {last_err}; retrying in {delay:.0f}s")
                self._sleep(delay)
        raise TransientIOError(f"SEC request failed after {self.max_retries + 1} attempts: {url}: {last_err}")

    def get_text(self, url: str, *, accept: str | None = None) -> str:
        return self._request(url, accept=accept).text

    def get_json(self, url: str) -> Dict[str, Any]:
        return self._request(url, accept="application/json").json()

    def download_file(self, url: str, dest: str, chunk_size: int = 1024 * 1024) -> str:
        """Stream `url` to `dest`. Written to a temp file first, renamed on success."""
        dest_dir = os.path.dirname(os.path.abspath(dest))
        os.makedirs(dest_dir, exist_ok=True)
        r = self._request(url, stream=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".download-", dir=dest_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in r.iter_content(chunk_size=chunk_size):
                    if chunk:
                        f.write(chunk)
            os.replace(tmp_path, dest)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        _debug(f"Downloaded {url} -> {dest}")
        return dest

    # -----------------
    # EDGAR helpers
    # -----------------
    def fetch_filing_index(self, cik: str, accession_number: str) -> List[str]:
        """File names listed in a filing's index.json."""
        idx = self.get_json(filing_index_url(cik, accession_number))
        items = (idx.get("directory") or {}).get("item") or []
        return [str(it.get("name") or "").strip() for it in items if str(it.get("name") or "").strip()]

    def fetch_form_index(self, year: int, quarter: int) -> List[FormIndexEntry]:
        url = f"{SEC_BASE_URL}/Archives/edgar/full-index/{int(year)}/QTR{int(quarter)}/form.idx"
        return parse_form_index(self.get_text(url))


def parse_form_index(index_text: str) -> List[FormIndexEntry]:
    """Parse an EDGAR form.idx listing.

    Data starts after the dashed separator line. Columns are fixed width but
    long company names overflow, so fields are split on runs of 2+ spaces.
    """
    lines = (index_text or "").splitlines()
    start = 0
    for i, line in enumerate(lines):
        if line.startswith("---"):
            start = i + 1
            break

    entries: List[FormIndexEntry] = []
    for line in lines[start:]:
        parts = [p.strip() for p in re.split(r"\s{2,}", line.strip())]
        if len(parts) < 5:
            continue
        entries.append(
            FormIndexEntry(
                form_type=parts[0],
                company_name=parts[1],
                cik=parts[2],
                date_filed=parts[3],
                file_name=parts[4],
            )
        )
    return entries

