import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ownership_platform.db import Gateway
from ownership_platform.models import Filing, HoldingLine


@pytest.fixture
def gateway(tmp_path):
    gw = Gateway(str(tmp_path / "store.sqlite"))
    gw.init_schema()
    return gw


def add_13f(gw, accession, cik, period, filing_date, lines, filer_name=None, form_type="13F-HR"):
    """Write one 13F submission plus its lines.

    Each line is a dict with cusip/shares/value and optional put_call,
    investment_discretion, other_manager, name_of_issuer.
    """
    now = "2024-06-01T00:00:00Z"
    filing = Filing(
        accession_number=accession,
        cik=cik,
        form_type=form_type,
        filing_date=filing_date,
        period_of_report=period,
        filer_name=filer_name,
    )
    gw.upsert_rows("submissions_13f", [filing.to_row(now)], "accession_number")
    rows = []
    for i, ln in enumerate(lines, start=1):
        hl = HoldingLine(
            accession_number=accession,
            infotable_sk=i,
            cusip=ln["cusip"],
            name_of_issuer=ln.get("name_of_issuer", "ACME CORP"),
            title_of_class="COM",
            value=ln["value"],
            shares=ln["shares"],
            share_type="SH",
            put_call=ln.get("put_call"),
            investment_discretion=ln.get("investment_discretion", "SOLE"),
            other_manager=ln.get("other_manager"),
            voting_sole=ln["shares"],
            voting_shared=0,
            voting_none=0,
        )
        rows.append(hl.to_row(filing_date, now))
    if rows:
        gw.upsert_rows("holdings_13f", rows, ["accession_number", "infotable_sk"])
    return filing


@pytest.fixture
def add_filing(gateway):
    def _add(accession, cik, period, filing_date, lines, **kw):
        return add_13f(gateway, accession, cik, period, filing_date, lines, **kw)

    return _add
