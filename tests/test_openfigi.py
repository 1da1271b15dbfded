from datetime import datetime, timedelta, timezone

import pytest

from ownership_platform.cache import Cache
from ownership_platform.errors import ValidationError
from ownership_platform.resolve.openfigi import (
    CusipResolver,
    SlidingWindowRateLimiter,
    is_permanent_error,
    select_best_match,
)

AAPL = "037833100"
MSFT = "594918104"
DEAD = "000000000"


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakePost:
    def __init__(self, responder):
        self.responder = responder
        self.bodies = []
        self.headers = []

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.bodies.append([item["idValue"] for item in json])
        self.headers.append(headers)
        result = self.responder([item["idValue"] for item in json])
        return result if isinstance(result, FakeResponse) else FakeResponse(200, result)


def answer(cusips):
    out = []
    for c in cusips:
        if c == AAPL:
            out.append(
                {
                    "data": [
                        {"ticker": "AAPL", "exchCode": "UW", "marketSector": "Equity", "name": "APPLE INC"},
                        {"ticker": "AAPL", "exchCode": "US", "marketSector": "Equity", "name": "APPLE INC", "figi": "BBG000B9XRY4"},
                    ]
                }
            )
        elif c == MSFT:
            out.append({"data": []})
        else:
            out.append({"error": "No identifier found."})
    return out


class Clock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _limiter():
    return SlidingWindowRateLimiter(1000, sleep=lambda s: None)


def _resolver(gateway, post, clock, sleeps=None, **kw):
    return CusipResolver(
        gateway,
        limiter=_limiter(),
        post=post,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        now=clock,
        cache=Cache(),
        **kw,
    )


def test_best_match_order():
    assert select_best_match([]) is None
    assert select_best_match([{"exchCode": "UN"}, {"exchCode": "US"}])["exchCode"] == "US"
    assert select_best_match([{"marketSector": "Corp"}, {"marketSector": "Equity"}])["marketSector"] == "Equity"
    assert select_best_match([{"securityType": "ETP"}, {"securityType": "Common Stock"}])["securityType"] == "Common Stock"
    assert select_best_match([{"ticker": "A"}, {"ticker": "B"}])["ticker"] == "A"


def test_permanent_error_classification():
    assert is_permanent_error("No identifier found.")
    assert is_permanent_error("No mapping found")
    assert not is_permanent_error("OpenFIGI HTTP 429")


def test_mapping_results_and_error_ttls(gateway):
    clock = Clock()
    post = FakePost(answer)
    resolver = _resolver(gateway, post, clock, api_key="secret")
    out = resolver.map_cusips([AAPL, MSFT, DEAD, AAPL.lower()])

    assert post.bodies == [[AAPL, MSFT, DEAD]]
    assert post.headers[0]["X-OPENFIGI-APIKEY"] == "secret"

    assert out[AAPL].ticker == "AAPL"
    assert out[AAPL].exch_code == "US"
    assert out[AAPL].figi == "BBG000B9XRY4"
    assert not out[AAPL].is_error

    assert out[MSFT].error == "No mapping found"
    assert out[MSFT].error_expires_at == "2024-07-01T12:00:00Z"
    assert out[DEAD].error == "No identifier found."
    assert gateway.count_rows("cusip_mappings") == 3


def test_durable_mappings_are_reused(gateway):
    clock = Clock()
    _resolver(gateway, FakePost(answer), clock).map_cusips([AAPL, MSFT])

    def no_network(url, **kwargs):
        raise AssertionError("should not call OpenFIGI")

    other = _resolver(gateway, no_network, clock)
    assert other.map_cusip(AAPL).ticker == "AAPL"
    assert other.map_cusip(MSFT).error == "No mapping found"


def test_transient_failures_retry_then_cache_briefly(gateway):
    clock = Clock()
    sleeps = []
    post = FakePost(lambda cusips: FakeResponse(429))
    resolver = _resolver(gateway, post, clock, sleeps)

    m = resolver.map_cusip(AAPL)
    assert m.error == "OpenFIGI HTTP 429"
    assert m.error_expires_at == "2024-06-01T13:00:00Z"
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.2
    assert 2.0 <= sleeps[1] <= 2.2

    # Still inside the hour: served from cache, no new request.
    resolver._post = FakePost(answer)
    assert resolver.map_cusip(AAPL).is_error

    clock.now += timedelta(hours=2)
    assert resolver.map_cusip(AAPL).ticker == "AAPL"


def test_client_error_is_not_retried(gateway):
    sleeps = []
    calls = []

    def post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        return FakeResponse(400)

    resolver = _resolver(gateway, post, Clock(), sleeps)
    assert resolver.map_cusip(AAPL).error == "OpenFIGI API error: 400"
    assert len(calls) == 1
    assert sleeps == []


def test_unusable_response_bodies_become_transient_errors(gateway):
    sleeps = []
    bodies = iter(
        [
            FakeResponse(200, ValueError("Expecting value: line 1 column 1 (char 0)")),
            FakeResponse(200, {"error": "Invalid request body"}),
            FakeResponse(200, ["oops", {"data": [{"ticker": "MSFT", "exchCode": "US"}]}]),
        ]
    )
    resolver = _resolver(gateway, FakePost(lambda cusips: next(bodies)), Clock(), sleeps)

    html = resolver.map_cusip(AAPL)
    assert html.error.startswith("OpenFIGI returned invalid JSON")
    assert html.error_expires_at == "2024-06-01T13:00:00Z"

    wrapped = resolver.map_cusip(MSFT)
    assert wrapped.error == "OpenFIGI returned dict, expected a list"
    assert wrapped.error_expires_at == "2024-06-01T13:00:00Z"
    assert sleeps == []

    out = resolver._fetch_batch([DEAD, MSFT])
    assert out[0].error == "Malformed OpenFIGI result"
    assert out[1].ticker == "MSFT"


def test_requests_are_batched(gateway):
    post = FakePost(lambda cusips: FakeResponse(200, [{"data": [{"ticker": "X"}]} for _ in cusips]))
    resolver = _resolver(gateway, post, Clock())
    cusips = [f"{i:09d}" for i in range(1, 24)]
    out = resolver.map_cusips(cusips)
    assert [len(b) for b in post.bodies] == [10, 10, 3]
    assert len(out) == 23


def test_invalid_cusip_is_rejected(gateway):
    resolver = _resolver(gateway, FakePost(answer), Clock())
    with pytest.raises(ValidationError):
        resolver.map_cusips(["APPLE"])


def test_clear_expired_errors(gateway):
    clock = Clock()
    resolver = _resolver(gateway, FakePost(answer), clock)
    resolver.map_cusips([AAPL, MSFT])
    assert resolver.clear_expired_errors() == 0
    clock.now += timedelta(days=31)
    assert resolver.clear_expired_errors() == 1
    assert [m.cusip for m in resolver.cached_mappings()] == [AAPL]
    assert resolver.cache_stats()["errors"] == 0


def test_sliding_window_limiter():
    t = [0.0]
    sleeps = []

    def sleep(s):
        sleeps.append(s)
        t[0] += s

    limiter = SlidingWindowRateLimiter(2, 60, clock=lambda: t[0], sleep=sleep)
    limiter.acquire()
    limiter.acquire()
    limiter.acquire()
    assert sleeps == [pytest.approx(60.05)]
    with limiter.slot():
        pass
    assert len(sleeps) == 1
