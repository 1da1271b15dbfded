"""CUSIP -> ticker resolution through the OpenFIGI mapping API.

Results (including failures) are cached in memory and in the durable
`cusip_mappings` table. Failures carry an expiry: "no mapping" answers are
trusted for 30 days, transport failures for an hour.
"""

from __future__ import annotations

import random
import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Optional, Sequence

import requests

from ownership_platform.cache import Cache
from ownership_platform.models import CusipMapping
from ownership_platform.validators import validate_cusip


def _debug(msg: str) -> None:
    print(f"[openfigi] {msg}")


OPENFIGI_URL = "https://api.openfigi.com/v3/mapping"

BATCH_SIZE = 10
MAX_ATTEMPTS = 3  # per batch, first request included
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 60.0
RETRY_STATUSES = (413, 429)

REQUESTS_PER_MINUTE_ANONYMOUS = 25
REQUESTS_PER_MINUTE_WITH_KEY = 250
WINDOW_SECONDS = 60.0
WINDOW_BUFFER_SECONDS = 0.05
MAX_CONCURRENT_REQUESTS = 2

ERROR_TTL_TRANSIENT = timedelta(hours=1)
ERROR_TTL_PERMANENT = timedelta(days=30)
PERMANENT_ERROR_PREFIXES = ("No mapping", "No identifier", "No matching result")


class _RetryableError(Exception):
    pass


class SlidingWindowRateLimiter:
    """At most `max_requests` acquisitions per sliding window, plus a concurrency cap."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = WINDOW_SECONDS,
        *,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._stamps: Deque[float] = deque()
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_concurrent)

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                while self._stamps and now - self._stamps[0] >= self.window_seconds:
                    self._stamps.popleft()
                if len(self._stamps) < self.max_requests:
                    self._stamps.append(now)
                    return
                wait = self.window_seconds - (now - self._stamps[0]) + WINDOW_BUFFER_SECONDS
            self._sleep(wait)

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Wait for the window, then hold one of the concurrent-request slots."""
        self.acquire()
        with self._slots:
            yield


_LIMITERS: Dict[int, SlidingWindowRateLimiter] = {}
_LIMITERS_LOCK = threading.Lock()


def get_rate_limiter(has_key: bool) -> SlidingWindowRateLimiter:
    """Process-wide limiter for the applicable quota."""
    limit = REQUESTS_PER_MINUTE_WITH_KEY if has_key else REQUESTS_PER_MINUTE_ANONYMOUS
    with _LIMITERS_LOCK:
        if limit not in _LIMITERS:
            _LIMITERS[limit] = SlidingWindowRateLimiter(limit)
        return _LIMITERS[limit]


def select_best_match(results: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """US listing, else an Equity, else Common Stock, else the first result."""
    if not results:
        return None
    for field, wanted in (("exchCode", "US"), ("marketSector", "Equity"), ("securityType", "Common Stock")):
        for r in results:
            if r.get(field) == wanted:
                return r
    return results[0]


def is_permanent_error(error: str) -> bool:
    return any(error.startswith(p) for p in PERMANENT_ERROR_PREFIXES)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class CusipResolver:
    def __init__(
        self,
        gateway: Any,
        *,
        api_key: str | None = None,
        url: str = OPENFIGI_URL,
        cache: Cache | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
        post: Callable[..., Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.gateway = gateway
        self.api_key = api_key
        self.url = url
        self.cache = cache if cache is not None else Cache()
        self.limiter = limiter or get_rate_limiter(bool(api_key))
        self._post = post or requests.post
        self._sleep = sleep
        self._now = now

    @classmethod
    def from_config(cls, gateway: Any, cfg: Any, **kwargs: Any) -> "CusipResolver":
        return cls(gateway, api_key=cfg.OPENFIGI_API_KEY, url=cfg.OPENFIGI_URL, **kwargs)

    # -----------------
    # Mapping construction
    # -----------------
    def _error_mapping(self, cusip: str, error: str) -> CusipMapping:
        now = self._now()
        ttl = ERROR_TTL_PERMANENT if is_permanent_error(error) else ERROR_TTL_TRANSIENT
        return CusipMapping(
            cusip=cusip,
            ticker=None,
            figi=None,
            name=None,
            exch_code=None,
            security_type=None,
            market_sector=None,
            error=error,
            error_expires_at=_iso(now + ttl),
            cached_at=_iso(now),
        )

    def _success_mapping(self, cusip: str, match: Dict[str, Any]) -> CusipMapping:
        return CusipMapping(
            cusip=cusip,
            ticker=match.get("ticker"),
            figi=match.get("figi"),
            name=match.get("name"),
            exch_code=match.get("exchCode"),
            security_type=match.get("securityType"),
            market_sector=match.get("marketSector"),
            error=None,
            error_expires_at=None,
            cached_at=_iso(self._now()),
        )

    def _is_usable(self, m: CusipMapping) -> bool:
        if not m.is_error:
            return True
        return bool(m.error_expires_at) and str(m.error_expires_at) > _iso(self._now())

    # -----------------
    # API
    # -----------------
    def _post_batch(self, batch: List[str]) -> List[Dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-OPENFIGI-APIKEY"] = self.api_key
        body = [{"idType": "ID_CUSIP", "idValue": c} for c in batch]
        with self.limiter.slot():
            try:
                r = self._post(self.url, json=body, headers=headers, timeout=60)
            except requests.RequestException as e:
                raise _RetryableError(f"Connection error: {e}") from e
        if r.status_code in RETRY_STATUSES or r.status_code >= 500:
            raise _RetryableError(f"OpenFIGI HTTP {r.status_code}")
        if r.status_code != 200:
            raise RuntimeError(f"OpenFIGI API error: {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise RuntimeError(f"OpenFIGI returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise RuntimeError(f"OpenFIGI returned {type(data).__name__}, expected a list")
        return data

    def _fetch_batch(self, batch: List[str]) -> List[CusipMapping]:
        last_err: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                data = self._post_batch(batch)
                break
            except _RetryableError as e:
                last_err = e
                if attempt == MAX_ATTEMPTS:
                    data = None
                    break
                delay = min(BASE_DELAY_SECONDS * 2 ** (attempt - 1), MAX_DELAY_SECONDS) + random.uniform(0, 0.2)
                _debug(f"Batch failed ({e}); retry {attempt}/{MAX_ATTEMPTS - 1} in {delay:.2f}s")
                self._sleep(delay)
            except RuntimeError as e:
                last_err = e
                data = None
                break

        if data is None:
            _debug(f"Giving up on batch of {len(batch)}: {last_err}")
            return [self._error_mapping(c, str(last_err)) for c in batch]

        out: List[CusipMapping] = []
        for i, cusip in enumerate(batch):
            result = data[i] if i < len(data) else {}
            if not isinstance(result, dict):
                out.append(self._error_mapping(cusip, "Malformed OpenFIGI result"))
                continue
            if result.get("error"):
                out.append(self._error_mapping(cusip, str(result["error"])))
                continue
            match = select_best_match(result.get("data") or [])
            if match is None:
                out.append(self._error_mapping(cusip, "No mapping found"))
            else:
                out.append(self._success_mapping(cusip, match))
        return out

    # -----------------
    # Public
    # -----------------
    def _load_durable(self, cusips: List[str]) -> Dict[str, CusipMapping]:
        found: Dict[str, CusipMapping] = {}
        for i in range(0, len(cusips), 500):
            chunk = cusips[i : i + 500]
            marks = ", ".join(["?"] * len(chunk))
            for row in self.gateway.query(f"SELECT * FROM cusip_mappings WHERE cusip IN ({marks})", chunk):
                found[row["cusip"]] = CusipMapping.from_row(row)
        return found

    def map_cusips(self, cusips: Iterable[str]) -> Dict[str, CusipMapping]:
        wanted: List[str] = []
        for c in cusips:
            v = validate_cusip(c)
            if v not in wanted:
                wanted.append(v)

        out: Dict[str, CusipMapping] = {}
        misses: List[str] = []
        for c in wanted:
            m = self.cache.get(("cusip", c))
            if m is not None and self._is_usable(m):
                out[c] = m
            else:
                misses.append(c)
        if not misses:
            return out

        durable = self._load_durable(misses)
        to_fetch: List[str] = []
        for c in misses:
            m = durable.get(c)
            if m is not None and self._is_usable(m):
                self.cache.put(("cusip", c), m)
                out[c] = m
            else:
                to_fetch.append(c)
        if not to_fetch:
            return out

        _debug(f"Fetching {len(to_fetch)} CUSIP mappings from OpenFIGI")
        fetched: List[CusipMapping] = []
        for i in range(0, len(to_fetch), BATCH_SIZE):
            fetched.extend(self._fetch_batch(to_fetch[i : i + BATCH_SIZE]))

        self.gateway.upsert_rows("cusip_mappings", [m.to_row() for m in fetched], "cusip")
        for m in fetched:
            self.cache.put(("cusip", m.cusip), m)
            out[m.cusip] = m
        return out

    def map_cusip(self, cusip: str) -> CusipMapping:
        c = validate_cusip(cusip)
        return self.map_cusips([c])[c]

    def clear_expired_errors(self) -> int:
        now = _iso(self._now())
        expired = self.gateway.query(
            "SELECT cusip FROM cusip_mappings WHERE error IS NOT NULL AND (error_expires_at IS NULL OR error_expires_at <= ?)",
            (now,),
        )
        for r in expired:
            self.cache.invalidate(("cusip", r["cusip"]))
        n = self.gateway.execute(
            "DELETE FROM cusip_mappings WHERE error IS NOT NULL AND (error_expires_at IS NULL OR error_expires_at <= ?)",
            (now,),
        )
        _debug(f"Cleared {n} expired error mappings")
        return n

    def cached_mappings(self) -> List[CusipMapping]:
        rows = self.gateway.query("SELECT * FROM cusip_mappings WHERE error IS NULL ORDER BY cusip")
        return [CusipMapping.from_row(r) for r in rows]

    def cache_stats(self) -> Dict[str, int]:
        row = self.gateway.query_one(
            "SELECT COUNT(*) AS total, SUM(CASE WHEN error IS NULL THEN 0 ELSE 1 END) AS errors FROM cusip_mappings"
        )
        return {
            "memory": len(self.cache),
            "durable": int(row["total"] or 0) if row else 0,
            "errors": int(row["errors"] or 0) if row else 0,
        }
