import sqlite3
from contextlib import contextmanager

import pytest

from ownership_platform.db import Gateway, _detect_dialect, _qmark_to_pct, connect
from ownership_platform.errors import ValidationError


def _state(source, status="pending"):
    return {"source": source, "status": status, "updated_at": "2024-01-01T00:00:00Z"}


def test_schema_and_row_shape(gateway):
    assert gateway.table_exists("holdings_13f")
    assert gateway.table_exists("filer_names")
    assert not gateway.table_exists("users")
    gateway.upsert_rows("sync_state", [_state("13f")], "source")
    row = gateway.query_one("SELECT * FROM sync_state WHERE source=?", ("13f",))
    assert isinstance(row, dict)
    assert row["status"] == "pending"


def test_init_schema_is_repeatable(gateway):
    gateway.init_schema()
    assert gateway.count_rows("submissions_13f") == 0


def test_upsert_updates_non_key_columns(gateway):
    gateway.upsert_rows("sync_state", [_state("13f"), _state("form345")], "source")
    gateway.upsert_rows("sync_state", [_state("13f", "running")], "source")
    assert gateway.count_rows("sync_state") == 2
    assert gateway.query_one("SELECT status FROM sync_state WHERE source='13f'")["status"] == "running"


def test_upsert_last_duplicate_wins(gateway):
    gateway.upsert_rows("sync_state", [_state("13f", "running"), _state("13f", "failed")], "source")
    assert gateway.query_one("SELECT status FROM sync_state WHERE source='13f'")["status"] == "failed"


def test_upsert_requires_conflict_columns(gateway):
    with pytest.raises(ValidationError):
        gateway.upsert_rows("sync_state", [{"status": "running"}], "source")


def test_bad_column_name_is_rejected(gateway):
    with pytest.raises(ValidationError):
        gateway.upsert_rows("sync_state", [{"source": "x", "status; --": 1}], "source")


def test_insert_or_ignore_is_idempotent(gateway):
    rows = [
        {"form_family": "13F", "quarter": "2024-Q1", "status": "pending", "updated_at": "t"},
        {"form_family": "13F", "quarter": "2024-Q2", "status": "pending", "updated_at": "t"},
    ]
    assert gateway.insert_or_ignore("backfill_progress", rows) == 2
    assert gateway.insert_or_ignore("backfill_progress", rows) == 0
    assert gateway.count_rows("backfill_progress") == 2


def test_many_rows_are_chunked(gateway):
    rows = [{"form_family": "13F", "quarter": f"{1990 + i // 4}-Q{i % 4 + 1}", "status": "pending", "updated_at": "t"} for i in range(240)]
    rows += [{"form_family": "345", "quarter": r["quarter"], "status": "pending", "updated_at": "t"} for r in rows]
    assert gateway.insert_or_ignore("backfill_progress", rows) == 480


def test_transaction_rolls_back_on_error(gateway):
    with pytest.raises(RuntimeError):
        with gateway.transaction() as tx:
            tx.upsert_rows("sync_state", [_state("13f")], "source")
            raise RuntimeError("boom")
    assert gateway.count_rows("sync_state") == 0

    with gateway.transaction() as tx:
        tx.upsert_rows("sync_state", [_state("13f")], "source")
        tx.insert_or_ignore("backfill_progress", [{"form_family": "13F", "quarter": "2024-Q1", "status": "pending", "updated_at": "t"}])
        assert tx.query("SELECT source FROM sync_state") == [{"source": "13f"}]
    assert gateway.count_rows("backfill_progress") == 1


class _FlakyConn:
    def __init__(self, conn, owner):
        self._conn = conn
        self._owner = owner

    def execute(self, sql, params=()):
        if sql == "SELECT 1":
            self._owner.health_checks += 1
        elif self._owner.failures > 0:
            self._owner.failures -= 1
            raise sqlite3.OperationalError("server closed the connection unexpectedly")
        return self._conn.execute(sql, params)


class FlakyConnect:
    def __init__(self, failures=0):
        self.failures = failures
        self.health_checks = 0

    @contextmanager
    def __call__(self, dsn):
        with connect(dsn) as conn:
            yield _FlakyConn(conn, self)


@pytest.fixture
def flaky_gateway(tmp_path):
    path = str(tmp_path / "flaky.sqlite")
    Gateway(path).init_schema()
    flaky = FlakyConnect()
    now = [1000.0]
    gw = Gateway(path, connect_fn=flaky, health_check_seconds=60, clock=lambda: now[0])
    return gw, flaky, now


def test_one_failure_is_retried_after_reset(flaky_gateway):
    gw, flaky, _ = flaky_gateway
    flaky.failures = 1
    assert gw.query("SELECT source FROM sync_state") == []
    assert gw.reset_count == 1


def test_second_failure_propagates(flaky_gateway):
    gw, flaky, _ = flaky_gateway
    flaky.failures = 2
    with pytest.raises(sqlite3.OperationalError):
        gw.query("SELECT source FROM sync_state")
    assert gw.reset_count == 1


def test_validation_errors_are_not_retried(flaky_gateway):
    gw, _, _ = flaky_gateway
    with pytest.raises(ValidationError):
        gw.upsert_rows("sync_state", [{"status": "running"}], "source")
    assert gw.reset_count == 0


def test_health_check_is_throttled(flaky_gateway):
    gw, flaky, now = flaky_gateway
    gw.count_rows("sync_state")
    gw.count_rows("sync_state")
    assert flaky.health_checks == 1
    now[0] += 61
    gw.count_rows("sync_state")
    assert flaky.health_checks == 2


def test_qmark_translation():
    sql = "SELECT * FROM t WHERE a = ? AND b LIKE '13F-HR%' AND c = '?' AND d = 'it''s ?'"
    assert _qmark_to_pct(sql) == (
        "SELECT * FROM t WHERE a = %s AND b LIKE '13F-HR%%' AND c = '?' AND d = 'it''s ?'"
    )


def test_dialect_detection():
    assert _detect_dialect("postgresql://u:p@host/db") == "postgres"
    assert _detect_dialect("postgres://u:p@host/db") == "postgres"
    assert _detect_dialect("sqlite:///tmp/x.sqlite") == "sqlite"
    assert _detect_dialect("./local.sqlite") == "sqlite"
    assert _detect_dialect("") == "sqlite"
