from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from ownership_platform.util.quarters import normalize_value, report_quarter

# Investment discretion codes allowed on a 13F information table line.
DISCRETION_CODES = ("SOLE", "DFND", "OTR")

PUT_CALL_CODES = ("PUT", "CALL")


@dataclass(frozen=True)
class Filing:
    """One 13F submission (cover data only)."""

    accession_number: str
    cik: str
    form_type: str | None
    filing_date: str | None  # YYYY-MM-DD
    period_of_report: str | None  # YYYY-MM-DD
    filer_name: str | None

    @property
    def report_quarter(self) -> str | None:
        return report_quarter(self.period_of_report, self.filing_date)

    def to_row(self, created_at: str) -> Dict[str, Any]:
        return {
            "accession_number": self.accession_number,
            "cik": self.cik,
            "submission_type": self.form_type,
            "period_of_report": self.period_of_report,
            "report_quarter": self.report_quarter,
            "filing_date": self.filing_date,
            "filer_name": self.filer_name,
            "created_at": created_at,
        }


@dataclass(frozen=True)
class HoldingLine:
    """One information-table row. `value` is as reported (see to_row)."""

    accession_number: str
    infotable_sk: int
    cusip: str | None
    name_of_issuer: str | None
    title_of_class: str | None
    value: int
    shares: int
    share_type: str
    put_call: str | None
    investment_discretion: str | None
    other_manager: str | None
    voting_sole: int
    voting_shared: int
    voting_none: int

    def to_row(self, filing_date: str | None, created_at: str) -> Dict[str, Any]:
        """Row for holdings_13f with the value converted to whole dollars."""
        return {
            "accession_number": self.accession_number,
            "infotable_sk": self.infotable_sk,
            "cusip": self.cusip,
            "name_of_issuer": self.name_of_issuer,
            "title_of_class": self.title_of_class,
            "value": normalize_value(self.value, filing_date),
            "shares": self.shares,
            "share_type": self.share_type,
            "put_call": self.put_call,
            "investment_discretion": self.investment_discretion,
            "other_manager": self.other_manager,
            "voting_sole": self.voting_sole,
            "voting_shared": self.voting_shared,
            "voting_none": self.voting_none,
            "created_at": created_at,
        }


@dataclass(frozen=True)
class CusipMapping:
    cusip: str
    ticker: str | None
    figi: str | None
    name: str | None
    exch_code: str | None
    security_type: str | None
    market_sector: str | None
    error: str | None
    error_expires_at: str | None
    cached_at: str

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_row(self) -> Dict[str, Any]:
        return {
            "cusip": self.cusip,
            "ticker": self.ticker,
            "figi": self.figi,
            "name": self.name,
            "exch_code": self.exch_code,
            "security_type": self.security_type,
            "market_sector": self.market_sector,
            "error": self.error,
            "error_expires_at": self.error_expires_at,
            "cached_at": self.cached_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CusipMapping":
        return cls(**{k: row.get(k) for k in cls.__dataclass_fields__})


@dataclass
class Alert:
    """Accumulation alert. Only `acknowledged` ever changes after creation."""

    id: int
    cusip: str
    ticker: str
    issuer_name: str | None
    previous_value: int
    current_value: int
    change_multiple: float
    lookback_months: int
    start_quarter: str
    end_quarter: str
    momentum: float | None
    holder_count: int
    largest_holder_cik: str | None
    largest_holder_name: str | None
    largest_holder_value: int
    detected_at: str
    acknowledged: bool = False
