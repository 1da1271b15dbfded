"""CIK -> filer name resolution.

Lookups go in-process cache, then the durable `filer_names` table, then the
SEC submissions API. Interactive callers pass fetch_if_missing=False and get
the zero-padded CIK back immediately while a background task fetches and
stores the real name; the durable write is an upsert, so duplicate refreshes
are harmless.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from ownership_platform.cache import Cache
from ownership_platform.errors import OwnershipPlatformError, ValidationError
from ownership_platform.sec.edgar import submissions_json_url
from ownership_platform.util.time import utcnow_iso
from ownership_platform.validators import pad_cik, validate_cik, validate_limit


def _debug(msg: str) -> None:
    print(f"[filer_names] {msg}")


BATCH_SIZE = 5
BATCH_PAUSE_SECONDS = 0.1
FUZZY_MIN_SIMILARITY = 0.3


@dataclass(frozen=True)
class FilerSearchResult:
    cik: str
    name: str
    score: int


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb)))
        prev = cur
    return prev[-1]


class FilerNameResolver:
    def __init__(
        self,
        gateway: Any,
        client: Any = None,
        *,
        cache: Cache | None = None,
        tasks: Any = None,
        fetch: Callable[[str], Optional[str]] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.client = client
        self.cache = cache if cache is not None else Cache()
        self.tasks = tasks
        self._fetch_fn = fetch
        self._sleep = sleep
        self._names: Dict[str, str] = {}
        self._index: Dict[str, List[str]] = {}
        self._index_dirty = True

    @staticmethod
    def placeholder(cik: str) -> str:
        return pad_cik(cik)

    # -----------------
    # Tiers
    # -----------------
    def _fetch(self, cik: str) -> Optional[str]:
        try:
            if self._fetch_fn is not None:
                name = self._fetch_fn(cik)
            else:
                data = self.client.get_json(submissions_json_url(pad_cik(cik)))
                name = data.get("name")
        except (OwnershipPlatformError, OSError, ValueError) as e:
            _debug(f"Name fetch failed for CIK {cik}: {e}")
            return None
        name = (name or "").strip()
        return name or None

    def _remember(self, cik: str, name: str) -> None:
        self.cache.put(("filer_name", cik), name)
        if self._names.get(cik) != name:
            self._names[cik] = name
            self._index_dirty = True

    def _store(self, cik: str, name: str) -> None:
        self.gateway.upsert_rows("filer_names", [{"cik": cik, "name": name, "cached_at": utcnow_iso()}], "cik")
        self._remember(cik, name)

    def _lookup_cached(self, cik: str) -> Optional[str]:
        name = self.cache.get(("filer_name", cik))
        if name:
            return name
        row = self.gateway.query_one("SELECT name FROM filer_names WHERE cik=?", (cik,))
        if row and row["name"]:
            self._remember(cik, row["name"])
            return row["name"]
        return None

    def refresh(self, cik: str) -> Optional[str]:
        """Fetch from the SEC and store; None when the fetch failed."""
        c = validate_cik(cik)
        name = self._fetch(c)
        if name:
            self._store(c, name)
        return name

    # -----------------
    # Public lookups
    # -----------------
    def get_name(self, cik: str, fetch_if_missing: bool = True) -> str:
        c = validate_cik(cik)
        cached = self._lookup_cached(c)
        if cached:
            return cached

        if not fetch_if_missing:
            if self.tasks is not None:
                self.tasks.submit(self.refresh, c, key=f"filer_name:{c}")
            return self.placeholder(c)

        return self.refresh(c) or self.placeholder(c)

    def get_names(self, ciks: Iterable[str], fetch_missing: bool = True) -> Dict[str, str]:
        """Resolve many CIKs. Missing names are fetched five at a time."""
        out: Dict[str, str] = {}
        missing: List[str] = []
        for cik in ciks:
            c = validate_cik(cik)
            cached = self._lookup_cached(c)
            if cached:
                out[c] = cached
            elif c not in missing:
                missing.append(c)

        if not fetch_missing:
            for c in missing:
                out[c] = self.get_name(c, fetch_if_missing=False)
            return out

        with ThreadPoolExecutor(max_workers=BATCH_SIZE, thread_name_prefix="filer-names") as pool:
            for i in range(0, len(missing), BATCH_SIZE):
                batch = missing[i : i + BATCH_SIZE]
                for c, name in zip(batch, pool.map(self.refresh, batch)):
                    out[c] = name or self.placeholder(c)
                if i + BATCH_SIZE < len(missing):
                    self._sleep(BATCH_PAUSE_SECONDS)
        return out

    def preload(self) -> int:
        """Load every durable name into memory and the search index."""
        rows = self.gateway.query("SELECT cik, name FROM filer_names")
        for r in rows:
            if r["name"]:
                self._remember(str(r["cik"]), r["name"])
        _debug(f"Preloaded {len(rows)} filer names")
        return len(rows)

    # -----------------
    # Search
    # -----------------
    def _build_index(self) -> None:
        if not self._index_dirty:
            return
        index: Dict[str, List[str]] = {}
        for cik, name in self._names.items():
            lower = name.lower()
            index.setdefault(lower, []).append(cik)
            for word in lower.split():
                if len(word) >= 3:
                    entries = index.setdefault(word, [])
                    if cik not in entries:
                        entries.append(cik)
        self._index = index
        self._index_dirty = False

    def search(self, query: str, limit: int = 10) -> List[FilerSearchResult]:
        """Fuzzy name search over known filers; an all-digit query is a CIK lookup."""
        validate_limit(limit)
        q = (query or "").strip().lower()
        if len(q) < 2:
            return []

        if q.isdigit():
            try:
                c = validate_cik(q)
            except ValidationError:
                return []
            name = self.get_name(c)
            if name == self.placeholder(c):
                return []
            return [FilerSearchResult(cik=c, name=name, score=1000)]

        self._build_index()
        scores: Dict[str, int] = {}

        for cik in self._index.get(q, []):
            scores[cik] = 1000

        for word in q.split():
            if len(word) < 3:
                continue
            for cik in self._index.get(word, []):
                scores[cik] = scores.get(cik, 0) + 100

        for term, ciks in self._index.items():
            if term.startswith(q) or q.startswith(term):
                bonus = min(len(q), len(term)) * 10
                for cik in ciks:
                    scores[cik] = scores.get(cik, 0) + bonus

        if not scores:
            for cik, name in self._names.items():
                lower = name.lower()
                max_len = max(len(q), len(lower))
                similarity = 1 - levenshtein(q, lower) / max_len if max_len else 0
                if similarity > FUZZY_MIN_SIMILARITY:
                    scores[cik] = round(similarity * 50)

        results = [FilerSearchResult(cik=c, name=self._names[c], score=s) for c, s in scores.items() if c in self._names]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    def stats(self) -> Dict[str, int]:
        self._build_index()
        return {
            "memory": len(self.cache),
            "durable": self.gateway.count_rows("filer_names"),
            "indexed_terms": len(self._index),
        }
