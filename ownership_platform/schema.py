"""Database schema for the Ownership Filings Platform.

Runs on SQLite (local development, tests) and Postgres (the shared analytical
database). Column names are lowercase snake_case so both engines return the
same row keys.

Natural primary keys make every ingest path idempotent: the same accession
(and, for child rows, the same per-filing sequence key) can be written any
number of times.

We keep timestamps as ISO-8601 TEXT (UTC, with 'Z') and dates as YYYY-MM-DD
TEXT, so lexicographic order is time order on both engines.

NOTE: The Postgres schema is generated from the SQLite schema with a small set of
transformations (types + pragmas).
"""

from __future__ import annotations

import re


SCHEMA_SQLITE = r"""
PRAGMA foreign_keys = ON;

-- Generic key/value cache (Cache service durable backend)
CREATE TABLE IF NOT EXISTS app_cache (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    expires_at REAL,
    updated_at TEXT NOT NULL
);

-- Sync bookkeeping
CREATE TABLE IF NOT EXISTS sync_state (
    source TEXT PRIMARY KEY,
    last_processed_date TEXT,
    last_accession_number TEXT,
    last_run_at TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','running','success','failed')),
    error_message TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS backfill_progress (
    form_family TEXT NOT NULL,
    quarter TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending','downloading','extracting','processing','complete','failed')),
    files_processed INTEGER NOT NULL DEFAULT 0,
    total_files INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (form_family, quarter)
);
CREATE INDEX IF NOT EXISTS idx_backfill_status ON backfill_progress (form_family, status);

-- 13F institutional holdings
CREATE TABLE IF NOT EXISTS submissions_13f (
    accession_number TEXT PRIMARY KEY,
    cik TEXT NOT NULL,
    submission_type TEXT,
    period_of_report TEXT,
    report_quarter TEXT,
    filing_date TEXT,
    filer_name TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sub13f_cik_quarter ON submissions_13f (cik, report_quarter);
CREATE INDEX IF NOT EXISTS idx_sub13f_quarter ON submissions_13f (report_quarter);

CREATE TABLE IF NOT EXISTS holdings_13f (
    accession_number TEXT NOT NULL,
    infotable_sk BIGINT NOT NULL,
    cusip TEXT NOT NULL,
    name_of_issuer TEXT,
    title_of_class TEXT,
    value BIGINT NOT NULL DEFAULT 0, -- whole dollars (normalized at ingest)
    shares BIGINT NOT NULL DEFAULT 0,
    share_type TEXT,
    put_call TEXT,
    investment_discretion TEXT CHECK (investment_discretion IS NULL OR investment_discretion IN ('SOLE','DFND','OTR')),
    other_manager TEXT,
    voting_sole BIGINT NOT NULL DEFAULT 0,
    voting_shared BIGINT NOT NULL DEFAULT 0,
    voting_none BIGINT NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (accession_number, infotable_sk)
);
CREATE INDEX IF NOT EXISTS idx_hold13f_cusip ON holdings_13f (cusip);

-- Schedule 13D / 13G beneficial ownership
CREATE TABLE IF NOT EXISTS filings_13dg (
    accession_number TEXT PRIMARY KEY,
    form_type TEXT NOT NULL,
    filing_date TEXT NOT NULL,
    issuer_cik TEXT,
    issuer_name TEXT,
    issuer_sic TEXT,
    issuer_cusip TEXT,
    filed_by_cik TEXT,
    filed_by_name TEXT,
    securities_class_title TEXT,
    percent_of_class REAL NOT NULL DEFAULT 0,
    shares_owned BIGINT NOT NULL DEFAULT 0,
    amendment_no INTEGER,
    previous_accession_number TEXT,
    date_of_event TEXT,
    purpose_of_transaction TEXT,
    source_of_funds TEXT,
    sole_voting_power BIGINT,
    shared_voting_power BIGINT,
    sole_dispositive_power BIGINT,
    shared_dispositive_power BIGINT,
    reporting_person_count INTEGER,
    intent_flags TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_13dg_issuer_cusip ON filings_13dg (issuer_cusip);
CREATE INDEX IF NOT EXISTS idx_13dg_filing_date ON filings_13dg (filing_date);

CREATE TABLE IF NOT EXISTS schedule13_reporting_persons (
    accession_number TEXT NOT NULL,
    reporting_person_sk INTEGER NOT NULL,
    cik TEXT,
    name TEXT NOT NULL,
    member_of_group TEXT,
    sole_voting_power BIGINT NOT NULL DEFAULT 0,
    shared_voting_power BIGINT NOT NULL DEFAULT 0,
    sole_dispositive_power BIGINT NOT NULL DEFAULT 0,
    shared_dispositive_power BIGINT NOT NULL DEFAULT 0,
    aggregate_amount_owned BIGINT NOT NULL DEFAULT 0,
    percent_of_class REAL NOT NULL DEFAULT 0,
    type_of_reporting_person TEXT,
    citizenship TEXT,
    intent_flags TEXT,
    PRIMARY KEY (accession_number, reporting_person_sk)
);

-- Forms 3 / 4 / 5 insider transactions (columns follow the SEC data set TSVs)
CREATE TABLE IF NOT EXISTS form345_submissions (
    accession_number TEXT PRIMARY KEY,
    filing_date TEXT,
    period_of_report TEXT,
    document_type TEXT,
    issuercik TEXT,
    issuername TEXT,
    issuertradingsymbol TEXT,
    no_securities_owned TEXT,
    not_subject_sec16 TEXT,
    remarks TEXT
);
CREATE INDEX IF NOT EXISTS idx_f345_issuer ON form345_submissions (issuercik);

CREATE TABLE IF NOT EXISTS form345_reporting_owners (
    accession_number TEXT NOT NULL,
    rptownercik TEXT NOT NULL,
    rptownername TEXT,
    rptowner_relationship TEXT,
    rptowner_title TEXT,
    rptowner_street1 TEXT,
    rptowner_street2 TEXT,
    rptowner_city TEXT,
    rptowner_state TEXT,
    rptowner_zipcode TEXT,
    PRIMARY KEY (accession_number, rptownercik)
);

CREATE TABLE IF NOT EXISTS form345_nonderiv_trans (
    accession_number TEXT NOT NULL,
    nonderiv_trans_sk BIGINT NOT NULL,
    security_title TEXT,
    trans_date TEXT,
    trans_code TEXT,
    trans_shares REAL,
    trans_pricepershare REAL,
    trans_acquired_disp_cd TEXT,
    shrs_ownd_folwng_trans REAL,
    direct_indirect_ownership TEXT,
    nature_of_ownership TEXT,
    PRIMARY KEY (accession_number, nonderiv_trans_sk)
);

CREATE TABLE IF NOT EXISTS form345_nonderiv_holding (
    accession_number TEXT NOT NULL,
    nonderiv_holding_sk BIGINT NOT NULL,
    security_title TEXT,
    shrs_ownd_folwng_trans REAL,
    direct_indirect_ownership TEXT,
    nature_of_ownership TEXT,
    PRIMARY KEY (accession_number, nonderiv_holding_sk)
);

CREATE TABLE IF NOT EXISTS form345_deriv_trans (
    accession_number TEXT NOT NULL,
    deriv_trans_sk BIGINT NOT NULL,
    security_title TEXT,
    conv_exercise_price REAL,
    trans_date TEXT,
    trans_code TEXT,
    trans_shares REAL,
    trans_pricepershare REAL,
    trans_acquired_disp_cd TEXT,
    exercise_date TEXT,
    expiration_date TEXT,
    undlyng_sec_title TEXT,
    undlyng_sec_shares REAL,
    shrs_ownd_folwng_trans REAL,
    direct_indirect_ownership TEXT,
    PRIMARY KEY (accession_number, deriv_trans_sk)
);

CREATE TABLE IF NOT EXISTS form345_deriv_holding (
    accession_number TEXT NOT NULL,
    deriv_holding_sk BIGINT NOT NULL,
    security_title TEXT,
    conv_exercise_price REAL,
    exercise_date TEXT,
    expiration_date TEXT,
    undlyng_sec_title TEXT,
    undlyng_sec_shares REAL,
    shrs_ownd_folwng_trans REAL,
    direct_indirect_ownership TEXT,
    PRIMARY KEY (accession_number, deriv_holding_sk)
);

-- Identifier resolution caches
CREATE TABLE IF NOT EXISTS cusip_mappings (
    cusip TEXT PRIMARY KEY,
    ticker TEXT,
    figi TEXT,
    name TEXT,
    exch_code TEXT,
    security_type TEXT,
    market_sector TEXT,
    error TEXT,
    error_expires_at TEXT,
    cached_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cusip_mappings_ticker ON cusip_mappings (ticker);

CREATE TABLE IF NOT EXISTS filer_names (
    cik TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    cached_at TEXT NOT NULL
);
"""


def _sqlite_to_postgres(ddl: str) -> str:
    # Remove SQLite pragmas
    lines: list[str] = []
    for line in ddl.splitlines():
        if line.strip().upper().startswith("PRAGMA "):
            continue
        lines.append(line)
    out = "\n".join(lines)

    # Types
    out = re.sub(r"\bREAL\b", "DOUBLE PRECISION", out)

    return out


SCHEMA_POSTGRES = _sqlite_to_postgres(SCHEMA_SQLITE)


def get_schema_sql(dialect: str) -> str:
    d = (dialect or "").lower()
    if d.startswith("post"):
        return SCHEMA_POSTGRES
    return SCHEMA_SQLITE


# Natural key of every ingested table; re-writing a row with the same key is a no-op or an update.
NATURAL_KEYS = {
    "submissions_13f": ("accession_number",),
    "holdings_13f": ("accession_number", "infotable_sk"),
    "filings_13dg": ("accession_number",),
    "schedule13_reporting_persons": ("accession_number", "reporting_person_sk"),
    "form345_submissions": ("accession_number",),
    "form345_reporting_owners": ("accession_number", "rptownercik"),
    "form345_nonderiv_trans": ("accession_number", "nonderiv_trans_sk"),
    "form345_nonderiv_holding": ("accession_number", "nonderiv_holding_sk"),
    "form345_deriv_trans": ("accession_number", "deriv_trans_sk"),
    "form345_deriv_holding": ("accession_number", "deriv_holding_sk"),
}
