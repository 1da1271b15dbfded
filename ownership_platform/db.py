"""Analytical store access.

Two layers:
- `connect(dsn)`: one short-lived SQLite or Postgres connection, committed on
  success and rolled back on error. Postgres rows come back dict-like, SQLite
  rows as sqlite3.Row, and both accept qmark (?) placeholders.
- `Gateway`: the only object the rest of the platform talks to. It opens a
  connection per call, validates every dynamic identifier before it is
  interpolated, binds every value, and retries a failed call once after a
  connection reset.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from ownership_platform.errors import ValidationError
from ownership_platform.schema import get_schema_sql
from ownership_platform.validators import validate_identifier, validate_table


def _debug(msg: str) -> None:
    print(f"[db] {msg}")


ALLOWED_TABLES = frozenset(
    {
        "app_cache",
        "sync_state",
        "backfill_progress",
        "submissions_13f",
        "holdings_13f",
        "filings_13dg",
        "schedule13_reporting_persons",
        "form345_submissions",
        "form345_reporting_owners",
        "form345_nonderiv_trans",
        "form345_nonderiv_holding",
        "form345_deriv_trans",
        "form345_deriv_holding",
        "cusip_mappings",
        "filer_names",
    }
)

# Stay well under SQLite's bound-parameter limit (999 on older builds).
MAX_BOUND_PARAMS = 900


def _detect_dialect(dsn: str) -> str:
    """Return 'postgres' or 'sqlite'."""
    s = (dsn or "").strip()
    if not s:
        return "sqlite"
    try:
        scheme = urlparse(s).scheme.lower()
    except Exception:
        scheme = ""
    if scheme in ("postgres", "postgresql"):
        return "postgres"
    return "sqlite"


def _qmark_to_pct(sql: str) -> str:
    """Convert qmark placeholders (?) to psycopg2 placeholders (%s).

    '?' inside single/double-quoted literals is left alone. Not a full SQL
    parser, but every statement in this codebase is written with that in mind.
    """
    out: List[str] = []
    quote: str | None = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch == "%":
            # psycopg2 formats the whole string, literals included
            out.append("%%")
        elif quote is not None:
            out.append(ch)
            if ch == quote:
                # Doubled quote is an escaped quote, still inside the literal
                if i + 1 < len(sql) and sql[i + 1] == quote:
                    out.append(quote)
                    i += 2
                    continue
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            out.append(ch)
        elif ch == "?":
            out.append("%s")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


class PGCursor:
    def __init__(self, cur: Any):
        self._cur = cur

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> "PGCursor":
        self._cur.execute(_qmark_to_pct(sql), tuple(params or ()))
        return self

    def executemany(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> "PGCursor":
        self._cur.executemany(_qmark_to_pct(sql), [tuple(x) for x in seq_of_params])
        return self

    def fetchone(self) -> Any:
        return self._cur.fetchone()

    def fetchall(self) -> Any:
        return self._cur.fetchall()

    @property
    def rowcount(self) -> int:
        return int(self._cur.rowcount or 0)


class PGConnection:
    """Makes a psycopg2 connection look like a sqlite3 connection."""

    dialect = "postgres"

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> PGCursor:
        return PGCursor(self._conn.cursor()).execute(sql, params)

    def executemany(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> PGCursor:
        return PGCursor(self._conn.cursor()).executemany(sql, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


@contextmanager
def connect(db_dsn: str) -> Iterator[Any]:
    """Connect to SQLite or Postgres.

    - SQLite: WAL + NORMAL sync.
    - Postgres: psycopg2 with RealDictCursor so rows behave like dicts.
    """
    dsn = (db_dsn or "").strip()
    dialect = _detect_dialect(dsn)

    if dialect == "postgres":
        try:
            import psycopg2
            import psycopg2.extras
        except Exception as e:
            raise RuntimeError(
                "Postgres selected but psycopg2 is not installed. "
                "Install psycopg2-binary and try again."
            ) from e

        raw = psycopg2.connect(dsn, cursor_factory=psycopg2.extras.RealDictCursor)
        conn = PGConnection(raw)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return

    if dsn.lower().startswith("sqlite:///"):
        dsn = dsn[len("sqlite:///") :]

    Path(dsn).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(dsn, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=5000;")  # 5s
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_dsn: str) -> None:
    """Create all tables and run lightweight migrations."""
    dialect = _detect_dialect(db_dsn)
    _debug(f"Initializing DB ({dialect})")
    with connect(db_dsn) as conn:
        schema_sql = get_schema_sql(dialect)
        if dialect == "postgres":
            # One process runs DDL at a time.
            conn.execute("SELECT pg_advisory_lock(2147483646);")
            try:
                _exec_schema(conn, schema_sql, dialect=dialect)
            finally:
                conn.execute("SELECT pg_advisory_unlock(2147483646);")
        else:
            _exec_schema(conn, schema_sql, dialect=dialect)

        _migrate(conn, dialect=dialect)


def _exec_schema(conn: Any, ddl: str, *, dialect: str) -> None:
    if dialect == "postgres":
        statements = [s.strip() for s in ddl.split(";") if s.strip()]
        for stmt in statements:
            conn.execute(stmt)
        return

    conn.executescript(ddl)


def _has_column(conn: Any, table: str, col: str, *, dialect: str) -> bool:
    if dialect == "postgres":
        r = conn.execute(
            """
            SELECT 1
            FROM information_schema.columns
            WHERE table_schema='public'
              AND table_name=?
              AND column_name=?
            LIMIT 1
            """,
            (table, col),
        ).fetchone()
        return r is not None

    rows = conn.execute(f"PRAGMA table_info({validate_identifier(table)})").fetchall()
    return any(r["name"] == col for r in rows)


def _migrate(conn: Any, *, dialect: str) -> None:
    """Lightweight forward-only migrations for existing DBs."""
    # Databases created before quarter labels were stored at ingest.
    if not _has_column(conn, "submissions_13f", "report_quarter", dialect=dialect):
        conn.execute("ALTER TABLE submissions_13f ADD COLUMN report_quarter TEXT")

    if not _has_column(conn, "filings_13dg", "intent_flags", dialect=dialect):
        conn.execute("ALTER TABLE filings_13dg ADD COLUMN intent_flags TEXT")


# ---------------------------------------------------------------------------
# Safe SQL building
# ---------------------------------------------------------------------------


def check_table(name: str) -> str:
    return validate_table(name, ALLOWED_TABLES)


def escape_literal(value: Any) -> str:
    """SQL literal for the rare case a value cannot be bound."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    s = str(value).replace("\x00", "")
    return "'" + s.replace("'", "''") + "'"


def _columns_of(rows: Sequence[Mapping[str, Any]]) -> List[str]:
    cols = list(rows[0].keys())
    for c in cols:
        validate_identifier(c)
    return cols


def _chunks(rows: Sequence[Mapping[str, Any]], ncols: int) -> Iterator[Sequence[Mapping[str, Any]]]:
    per = max(1, MAX_BOUND_PARAMS // max(1, ncols))
    for i in range(0, len(rows), per):
        yield rows[i : i + per]


def _values_clause(n_rows: int, ncols: int) -> str:
    one = "(" + ", ".join(["?"] * ncols) + ")"
    return ", ".join([one] * n_rows)


def _upsert(conn: Any, table: str, rows: Sequence[Mapping[str, Any]], conflict: Sequence[str]) -> int:
    t = check_table(table)
    if not rows:
        return 0
    cols = _columns_of(rows)
    keys = [validate_identifier(k) for k in conflict]
    missing = [k for k in keys if k not in cols]
    if missing:
        raise ValidationError(f"Conflict column(s) {missing} not present in rows for {t}")

    # Postgres rejects a statement that touches the same key twice; last row wins.
    deduped: Dict[tuple, Mapping[str, Any]] = {}
    for r in rows:
        deduped[tuple(r.get(k) for k in keys)] = r
    batch = list(deduped.values())

    updates = [c for c in cols if c not in keys]
    if updates:
        on_conflict = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
    else:
        on_conflict = "DO NOTHING"

    written = 0
    for chunk in _chunks(batch, len(cols)):
        sql = (
            f"INSERT INTO {t} ({', '.join(cols)}) VALUES {_values_clause(len(chunk), len(cols))} "
            f"ON CONFLICT ({', '.join(keys)}) {on_conflict}"
        )
        params = [r.get(c) for r in chunk for c in cols]
        cur = conn.execute(sql, params)
        written += max(0, int(cur.rowcount or 0))
    return written


def _insert_or_ignore(conn: Any, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
    t = check_table(table)
    if not rows:
        return 0
    cols = _columns_of(rows)
    inserted = 0
    for chunk in _chunks(rows, len(cols)):
        sql = (
            f"INSERT INTO {t} ({', '.join(cols)}) VALUES {_values_clause(len(chunk), len(cols))} "
            "ON CONFLICT DO NOTHING"
        )
        params = [r.get(c) for r in chunk for c in cols]
        cur = conn.execute(sql, params)
        inserted += max(0, int(cur.rowcount or 0))
    return inserted


def _rows(cur: Any) -> List[Dict[str, Any]]:
    return [dict(r) for r in cur.fetchall()]


class GatewayTransaction:
    """Statement surface bound to one open connection (see Gateway.transaction)."""

    def __init__(self, conn: Any):
        self._conn = conn

    def query(self, sql: str, params: Sequence[Any] | None = None) -> List[Dict[str, Any]]:
        return _rows(self._conn.execute(sql, tuple(params or ())))

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        return int(self._conn.execute(sql, tuple(params or ())).rowcount or 0)

    def upsert_rows(self, table: str, rows: Sequence[Mapping[str, Any]], conflict: str | Sequence[str]) -> int:
        keys = [conflict] if isinstance(conflict, str) else list(conflict)
        return _upsert(self._conn, table, rows, keys)

    def insert_or_ignore(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        return _insert_or_ignore(self._conn, table, rows)


class Gateway:
    """Per-call connections with one reset-and-retry and a throttled health check."""

    def __init__(
        self,
        dsn: str,
        *,
        connect_fn: Callable[[str], Any] | None = None,
        health_check_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dsn = dsn
        self.dialect = _detect_dialect(dsn)
        self._connect = connect_fn or connect
        self._health_check_seconds = float(health_check_seconds)
        self._clock = clock
        self._last_health_check: Optional[float] = None
        self._lock = threading.Lock()
        self.reset_count = 0

    @classmethod
    def from_config(cls, cfg: Any) -> "Gateway":
        return cls(cfg.resolve_dsn(), health_check_seconds=cfg.GATEWAY_HEALTH_CHECK_SECONDS)

    def init_schema(self) -> None:
        init_db(self.dsn)

    # -----------------
    # Connection lifecycle
    # -----------------
    def _reset(self) -> None:
        with self._lock:
            self.reset_count += 1
            self._last_health_check = None
        _debug(f"Connection reset (#{self.reset_count})")

    def _health_check(self) -> None:
        now = self._clock()
        with self._lock:
            last = self._last_health_check
            if last is not None and now - last < self._health_check_seconds:
                return
            self._last_health_check = now
        try:
            with self._connect(self.dsn) as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as e:
            _debug(f"Health check failed: {e}")
            self._reset()

    def _run(self, fn: Callable[[Any], Any]) -> Any:
        self._health_check()
        try:
            with self._connect(self.dsn) as conn:
                return fn(conn)
        except ValidationError:
            raise
        except Exception as e:
            _debug(f"Call failed ({type(e).__name__}: {e}); resetting and retrying once")
            self._reset()

        with self._connect(self.dsn) as conn:
            return fn(conn)

    # -----------------
    # Primitives
    # -----------------
    def query(self, sql: str, params: Sequence[Any] | None = None) -> List[Dict[str, Any]]:
        return self._run(lambda conn: _rows(conn.execute(sql, tuple(params or ()))))

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> Optional[Dict[str, Any]]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        return self._run(lambda conn: int(conn.execute(sql, tuple(params or ())).rowcount or 0))

    @contextmanager
    def transaction(self) -> Iterator[GatewayTransaction]:
        """All statements commit together or not at all. Not retried."""
        self._health_check()
        with self._connect(self.dsn) as conn:
            yield GatewayTransaction(conn)

    def upsert_rows(self, table: str, rows: Sequence[Mapping[str, Any]], conflict: str | Sequence[str]) -> int:
        """Multi-row insert updating every non-key column on conflict."""
        check_table(table)
        keys = [conflict] if isinstance(conflict, str) else list(conflict)
        if not rows:
            return 0
        return self._run(lambda conn: _upsert(conn, table, rows, keys))

    def insert_or_ignore(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert rows, skipping any whose primary key already exists. Returns rows inserted."""
        check_table(table)
        if not rows:
            return 0
        return self._run(lambda conn: _insert_or_ignore(conn, table, rows))

    def table_exists(self, table: str) -> bool:
        name = validate_identifier(str(table or "").rsplit(".", 1)[-1])
        if self.dialect == "postgres":
            sql = "SELECT 1 FROM information_schema.tables WHERE table_schema='public' AND table_name=?"
        else:
            sql = "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?"
        return self.query_one(sql, (name,)) is not None

    def count_rows(self, table: str) -> int:
        t = check_table(table)
        row = self.query_one(f"SELECT COUNT(*) AS n FROM {t}")
        return int(row["n"]) if row else 0
