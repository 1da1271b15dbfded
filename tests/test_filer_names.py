import pytest

from ownership_platform.cache import Cache
from ownership_platform.errors import TransientIOError, ValidationError
from ownership_platform.resolve.filer_names import FilerNameResolver, levenshtein
from ownership_platform.tasks import BackgroundTasks

NAMES = {
    "1067983": "BERKSHIRE HATHAWAY INC",
    "102909": "VANGUARD GROUP INC",
    "1364742": "BLACKROCK INC.",
}


class FakeFetch:
    def __init__(self, names=None, fail=()):
        self.names = dict(NAMES if names is None else names)
        self.fail = set(fail)
        self.calls = []

    def __call__(self, cik):
        self.calls.append(cik)
        if cik in self.fail:
            raise TransientIOError(f"SEC unavailable for {cik}")
        return self.names.get(cik)


def test_fetch_then_durable(gateway):
    fetch = FakeFetch()
    resolver = FilerNameResolver(gateway, fetch=fetch)
    assert resolver.get_name("0001067983") == "BERKSHIRE HATHAWAY INC"
    assert resolver.get_name("1067983") == "BERKSHIRE HATHAWAY INC"
    assert fetch.calls == ["1067983"]

    # A fresh process reads the durable table instead of the SEC.
    other_fetch = FakeFetch()
    other = FilerNameResolver(gateway, fetch=other_fetch, cache=Cache())
    assert other.get_name("1067983") == "BERKSHIRE HATHAWAY INC"
    assert other_fetch.calls == []


def test_failed_fetch_returns_placeholder(gateway):
    resolver = FilerNameResolver(gateway, fetch=FakeFetch(fail={"102909"}))
    assert resolver.get_name("102909") == "0000102909"
    assert gateway.count_rows("filer_names") == 0


def test_unknown_cik_returns_placeholder(gateway):
    resolver = FilerNameResolver(gateway, fetch=FakeFetch(names={}))
    assert resolver.get_name("42") == "0000000042"


def test_interactive_lookup_refreshes_in_background(gateway):
    fetch = FakeFetch()
    tasks = BackgroundTasks(max_workers=2)
    resolver = FilerNameResolver(gateway, fetch=fetch, tasks=tasks)

    assert resolver.get_name("1364742", fetch_if_missing=False) == "0001364742"
    assert tasks.wait(timeout=5)
    assert resolver.get_name("1364742", fetch_if_missing=False) == "BLACKROCK INC."
    assert fetch.calls == ["1364742"]
    tasks.shutdown()


def test_background_failure_is_isolated(gateway):
    tasks = BackgroundTasks(max_workers=1)

    def broken(cik):
        raise RuntimeError("unexpected")

    resolver = FilerNameResolver(gateway, fetch=broken, tasks=tasks)
    assert resolver.get_name("1067983", fetch_if_missing=False) == "0001067983"
    assert tasks.wait(timeout=5)
    assert len(tasks.errors) == 1
    tasks.shutdown()


def test_batch_lookup_pauses_between_batches(gateway):
    names = {str(i): f"FILER {i}" for i in range(1, 8)}
    sleeps = []
    resolver = FilerNameResolver(gateway, fetch=FakeFetch(names=names), sleep=sleeps.append)
    out = resolver.get_names([str(i) for i in range(1, 8)] + ["0000000001"])
    assert out == names
    assert sleeps == [0.1]
    assert gateway.count_rows("filer_names") == 7


def test_batch_lookup_without_fetch(gateway):
    fetch = FakeFetch()
    resolver = FilerNameResolver(gateway, fetch=fetch)
    resolver.get_name("1067983")
    out = resolver.get_names(["1067983", "102909"], fetch_missing=False)
    assert out == {"1067983": "BERKSHIRE HATHAWAY INC", "102909": "0000102909"}
    assert fetch.calls == ["1067983"]


def test_invalid_cik(gateway):
    resolver = FilerNameResolver(gateway, fetch=FakeFetch())
    with pytest.raises(ValidationError):
        resolver.get_name("CIK1067983")


def _loaded(gateway):
    resolver = FilerNameResolver(gateway, fetch=FakeFetch())
    resolver.get_names(list(NAMES))
    fresh = FilerNameResolver(gateway, fetch=FakeFetch(names={}), cache=Cache())
    assert fresh.preload() == 3
    return fresh


def test_search_by_name(gateway):
    resolver = _loaded(gateway)
    results = resolver.search("berkshire")
    assert results[0].cik == "1067983"
    assert results[0].score > 1000
    assert [r.cik for r in resolver.search("blackrock inc.")][0] == "1364742"


def test_search_by_cik(gateway):
    resolver = _loaded(gateway)
    assert [(r.cik, r.score) for r in resolver.search("0000102909")] == [("102909", 1000)]
    assert resolver.search("999999") == []


def test_search_falls_back_to_edit_distance(gateway):
    resolver = _loaded(gateway)
    assert [r.cik for r in resolver.search("vangaurd")] == ["102909"]
    assert resolver.search("x") == []


def test_stats(gateway):
    resolver = _loaded(gateway)
    stats = resolver.stats()
    assert stats["durable"] == 3
    assert stats["memory"] == 3
    assert stats["indexed_terms"] > 3


def test_levenshtein():
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein("same", "same") == 0
