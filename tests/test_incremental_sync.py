from urllib.parse import parse_qs, urlparse

import pytest

from ownership_platform.errors import SecRequestError, TransientIOError
from ownership_platform.sync.incremental import (
    FeedSync,
    Form13FProcessor,
    Form345Processor,
    Schedule13Processor,
)
from ownership_platform.sync.state import get_sync_state, mark_sync_complete
from ownership_platform.util.normalization import accession_nodash


def _entry(form_type, name, cik, accession, filed, at="12:00:00"):
    return (
        "<entry>\n"
        f"<title>{form_type} - {name} ({cik}) (Filer)</title>\n"
        f'<link rel="alternate" type="text/html" href="https://www.sec.gov/Archives/{accession}-index.htm"/>\n'
        f'<summary type="html"> &lt;b&gt;Filed:&lt;/b&gt; {filed} &lt;b&gt;AccNo:&lt;/b&gt; {accession} &lt;b&gt;Size:&lt;/b&gt; 9 KB</summary>\n'
        f"<updated>{filed}T{at}-05:00</updated>\n"
        f'<category scheme="https://www.sec.gov/" label="form type" term="{form_type}"/>\n'
        "</entry>\n"
    )


def feed(*entries):
    return '<?xml version="1.0"?>\n<feed xmlns="http://www.w3.org/2005/Atom">\n' + "".join(entries) + "</feed>"


def primary_doc(name):
    return (
        "<edgarSubmission><headerData><submissionType>13F-HR</submissionType></headerData>"
        "<formData><coverPage><reportCalendarOrQuarter>12-31-2023</reportCalendarOrQuarter>"
        f"<filingManager><name>{name}</name></filingManager></coverPage></formData>"
        "<periodOfReport>12-31-2023</periodOfReport></edgarSubmission>"
    )


def infotable(*positions):
    rows = "".join(
        "<infoTable>"
        f"<nameOfIssuer>ISSUER {cusip}</nameOfIssuer><titleOfClass>COM</titleOfClass><cusip>{cusip}</cusip>"
        f"<value>{value}</value><shrsOrPrnAmt><sshPrnamt>{shares}</sshPrnamt><sshPrnamtType>SH</sshPrnamtType></shrsOrPrnAmt>"
        "<investmentDiscretion>SOLE</investmentDiscretion>"
        f"<votingAuthority><Sole>{shares}</Sole><Shared>0</Shared><None>0</None></votingAuthority>"
        "</infoTable>"
        for cusip, value, shares in positions
    )
    return f'<informationTable xmlns="http://www.sec.gov/edgar/document/thirteenf/informationtable">{rows}</informationTable>'


class FakeClient:
    def __init__(self, feeds, indexes=None, documents=None, failing_feeds=()):
        self.feeds = feeds
        self.indexes = indexes or {}
        self.documents = documents or {}
        self.failing_feeds = set(failing_feeds)
        self.requested = []

    def get_text(self, url, accept=None):
        self.requested.append(url)
        if "browse-edgar" in url:
            form_type = parse_qs(urlparse(url).query)["type"][0]
            if form_type in self.failing_feeds:
                raise TransientIOError(f"feed {form_type} unavailable")
            return self.feeds.get(form_type, feed())
        for suffix, text in self.documents.items():
            if url.endswith(suffix):
                return text
        raise SecRequestError(url, 404)

    def fetch_filing_index(self, cik, accession_number):
        if accession_number not in self.indexes:
            raise SecRequestError(f"index {accession_number}", 404)
        return self.indexes[accession_number]


BRK = "0000950123-24-002518"
VANG = "0000932471-24-001122"


def doc(accession, name):
    return f"{accession_nodash(accession)}/{name}"


@pytest.fixture
def client_13f():
    return FakeClient(
        feeds={
            "13F-HR": feed(
                _entry("13F-HR", "BERKSHIRE HATHAWAY INC", "0001067983", BRK, "2024-02-14"),
                _entry("13F-HR", "VANGUARD GROUP INC", "0000102909", VANG, "2024-02-13"),
            )
        },
        indexes={
            BRK: ["primary_doc.xml", "infotable.xml"],
            VANG: ["primary_doc.xml", "form13fInfoTable.xml"],
        },
        documents={
            doc(BRK, "primary_doc.xml"): primary_doc("Berkshire Hathaway Inc"),
            doc(BRK, "infotable.xml"): infotable(("037833100", 174347000000, 905560000), ("060505104", 35000000, 1000000)),
            doc(VANG, "primary_doc.xml"): primary_doc("Vanguard Group Inc"),
            doc(VANG, "form13fInfoTable.xml"): infotable(("037833100", 100000000000, 520000000)),
        },
    )


def test_13f_feed_is_ingested_in_filing_date_order(gateway, client_13f):
    result = FeedSync.for_source("13f", gateway, client_13f).run()
    assert (result.processed, result.skipped, result.errors) == (2, 0, 0)

    subs = {r["accession_number"]: r for r in gateway.query("SELECT * FROM submissions_13f")}
    assert subs[BRK]["cik"] == "1067983"
    assert subs[BRK]["report_quarter"] == "2023-Q4"
    assert subs[BRK]["filer_name"] == "Berkshire Hathaway Inc"
    assert gateway.count_rows("holdings_13f") == 3

    state = get_sync_state(gateway, "13f")
    assert state.status == "success"
    assert state.last_accession_number == BRK
    assert state.last_processed_date == "2024-02-14"


def test_second_run_resumes_after_last_accession(gateway, client_13f):
    sync = FeedSync.for_source("13f", gateway, client_13f)
    sync.run()
    again = sync.run()
    assert (again.processed, again.skipped) == (0, 2)
    assert get_sync_state(gateway, "13f").last_accession_number == BRK


def test_force_reprocesses_idempotently(gateway, client_13f):
    sync = FeedSync.for_source("13f", gateway, client_13f)
    sync.run()
    forced = sync.run(force=True)
    assert forced.processed == 2
    assert gateway.count_rows("submissions_13f") == 2
    assert gateway.count_rows("holdings_13f") == 3


def test_dry_run_writes_nothing(gateway, client_13f):
    result = FeedSync.for_source("13f", gateway, client_13f).run(dry_run=True)
    assert result.dry_run
    assert result.processed == 2
    assert get_sync_state(gateway, "13f") is None
    assert gateway.count_rows("submissions_13f") == 0
    assert not any("index" in u or u.endswith(".xml") for u in client_13f.requested)


def test_failed_entry_is_counted_and_skipped(gateway, client_13f):
    del client_13f.indexes[VANG]
    result = FeedSync.for_source("13f", gateway, client_13f).run()
    assert (result.processed, result.errors) == (1, 1)
    assert [r["accession_number"] for r in gateway.query("SELECT accession_number FROM submissions_13f")] == [BRK]


def test_bad_infotable_lines_do_not_abort_the_run(gateway, client_13f):
    client_13f.documents[doc(VANG, "form13fInfoTable.xml")] = infotable(
        ("ABC", 10, 10),
        ("", 20, 20),
        ("037833100", 100000000000, 520000000),
    )
    result = FeedSync.for_source("13f", gateway, client_13f).run()

    assert (result.processed, result.errors) == (2, 0)
    assert get_sync_state(gateway, "13f").status == "success"
    vang = gateway.query("SELECT infotable_sk, cusip FROM holdings_13f WHERE accession_number=?", (VANG,))
    assert [(r["infotable_sk"], r["cusip"]) for r in vang] == [(3, "037833100")]
    assert gateway.count_rows("holdings_13f") == 3


def test_same_day_filings_resume_by_feed_timestamp(gateway):
    first, second, third = "0000950123-24-000200", "0000950123-24-000300", "0000950123-24-000100"
    filers = {first: "0000000111", second: "0000000222", third: "0000000333"}
    documents = {}
    for acc in filers:
        documents[doc(acc, "primary_doc.xml")] = primary_doc(f"FILER {acc}")
        documents[doc(acc, "infotable.xml")] = infotable(("037833100", 1000000, 10))
    client = FakeClient(
        feeds={
            "13F-HR": feed(
                _entry("13F-HR", "SECOND LLC", filers[second], second, "2024-02-14", at="11:00:00"),
                _entry("13F-HR", "FIRST LLC", filers[first], first, "2024-02-14", at="10:00:00"),
            )
        },
        indexes={acc: ["primary_doc.xml", "infotable.xml"] for acc in filers},
        documents=documents,
    )
    sync = FeedSync.for_source("13f", gateway, client)

    assert sync.run().processed == 2
    assert get_sync_state(gateway, "13f").last_accession_number == second

    # a newer filing from the same day lands at the top of the feed
    client.feeds["13F-HR"] = feed(
        _entry("13F-HR", "THIRD LLC", filers[third], third, "2024-02-14", at="15:30:00"),
        _entry("13F-HR", "SECOND LLC", filers[second], second, "2024-02-14", at="11:00:00"),
        _entry("13F-HR", "FIRST LLC", filers[first], first, "2024-02-14", at="10:00:00"),
    )
    again = sync.run()

    assert (again.processed, again.skipped) == (1, 2)
    assert get_sync_state(gateway, "13f").last_accession_number == third
    assert gateway.count_rows("submissions_13f") == 3


def test_unavailable_feed_is_skipped(gateway, client_13f):
    client_13f.failing_feeds.add("13F-HR/A")
    result = FeedSync.for_source("13f", gateway, client_13f).run()
    assert result.processed == 2


def test_empty_feeds_keep_resume_point(gateway):
    mark_sync_complete(gateway, "13f", "2024-01-02", "0000000000-24-000001")
    result = FeedSync.for_source("13f", gateway, FakeClient(feeds={})).run()
    assert result.message == "No entries found in feeds"
    state = get_sync_state(gateway, "13f")
    assert state.status == "success"
    assert state.last_accession_number == "0000000000-24-000001"


def test_unexpected_failure_marks_source_failed(gateway, client_13f):
    class BadRows:
        source = "13f"
        form_types = ("13F-HR",)

        def process(self, client, entry):
            return {"not_a_table": [{"x": 1}]}

    with pytest.raises(KeyError):
        FeedSync(gateway, client_13f, BadRows()).run()
    state = get_sync_state(gateway, "13f")
    assert state.status == "failed"
    assert "not_a_table" in state.error_message


def test_unknown_source():
    with pytest.raises(ValueError):
        FeedSync.for_source("10k", None, None)


SC13G_TEXT = """<SEC-HEADER>
CONFORMED SUBMISSION TYPE:	{form}
FILED AS OF DATE:		20240110
SUBJECT COMPANY:
	COMPANY DATA:
		COMPANY CONFORMED NAME:			EXAMPLE CORP
		CENTRAL INDEX KEY:			0001234567
FILED BY:
	COMPANY DATA:
		COMPANY CONFORMED NAME:			BIG HOLDER LP
		CENTRAL INDEX KEY:			0007654321
</SEC-HEADER>
<TEXT>
{body}
</TEXT>
"""

SC13D_XML = """<edgarSubmission xmlns="http://www.sec.gov/edgar/schedule13D">
<headerData><submissionType>SCHEDULE 13D</submissionType></headerData>
<formData>
<coverPageHeader>
<securitiesClassTitle>Common Stock</securitiesClassTitle>
<issuerInfo><issuerCIK>0001234567</issuerCIK><issuerCusipNumbers><issuerCusipNumber>30231G102</issuerCusipNumber></issuerCusipNumbers><issuerName>EXAMPLE CORP</issuerName></issuerInfo>
</coverPageHeader>
<reportingPersons><reportingPersonInfo><reportingPersonCIK>0007654321</reportingPersonCIK><reportingPersonName>BIG HOLDER LP</reportingPersonName>
<aggregateAmountOwned>2500000</aggregateAmountOwned><percentOfClass>9.9</percentOfClass></reportingPersonInfo></reportingPersons>
<items1To7><item4><transactionPurpose>Seeking a merger.</transactionPurpose></item4></items1To7>
</formData>
</edgarSubmission>"""

SC13G_ACC = "0000950123-24-000111"
SC13D_ACC = "0000950123-24-000222"


def test_schedule13_header_and_structured_fallback(gateway):
    client = FakeClient(
        feeds={
            "SC 13G": feed(_entry("SC 13G", "EXAMPLE CORP", "0001234567", SC13G_ACC, "2024-01-10")),
            "SC 13D": feed(_entry("SC 13D", "EXAMPLE CORP", "0001234567", SC13D_ACC, "2024-01-11")),
        },
        indexes={SC13D_ACC: ["primary_doc.xml", "primary_doc.html"]},
        documents={
            f"{SC13G_ACC}.txt": SC13G_TEXT.format(form="SC 13G", body="CUSIP No. 30231G102\nPercent of Class: 5.1%"),
            f"{SC13D_ACC}.txt": SC13G_TEXT.format(form="SC 13D", body="<p>See attached.</p>"),
            doc(SC13D_ACC, "primary_doc.xml"): SC13D_XML,
        },
    )
    result = FeedSync(gateway, client, Schedule13Processor()).run()
    assert (result.processed, result.errors) == (2, 0)

    rows = {r["accession_number"]: r for r in gateway.query("SELECT * FROM filings_13dg")}
    assert rows[SC13G_ACC]["issuer_cusip"] == "30231G102"
    assert rows[SC13G_ACC]["percent_of_class"] == 5.1
    assert rows[SC13G_ACC]["filed_by_cik"] == "7654321"
    assert rows[SC13D_ACC]["issuer_cusip"] == "30231G102"
    assert rows[SC13D_ACC]["intent_flags"] == "merger"
    assert gateway.count_rows("schedule13_reporting_persons") == 1


def test_schedule13_without_any_cusip_keeps_header_record(gateway):
    client = FakeClient(
        feeds={"SC 13G/A": feed(_entry("SC 13G/A", "EXAMPLE CORP", "0001234567", SC13G_ACC, "2024-01-10"))},
        documents={f"{SC13G_ACC}.txt": SC13G_TEXT.format(form="SC 13G/A", body="no identifiers here")},
    )
    result = FeedSync(gateway, client, Schedule13Processor()).run()
    assert result.processed == 1
    row = gateway.query_one("SELECT * FROM filings_13dg")
    assert row["issuer_cusip"] is None
    assert row["form_type"] == "SC 13G/A"


FORM4_XML = """<ownershipDocument>
<documentType>4</documentType>
<periodOfReport>2024-01-10</periodOfReport>
<issuer><issuerCik>0000320193</issuerCik><issuerName>Apple Inc.</issuerName><issuerTradingSymbol>AAPL</issuerTradingSymbol></issuer>
<reportingOwner><reportingOwnerId><rptOwnerCik>0001214128</rptOwnerCik><rptOwnerName>COOK TIMOTHY D</rptOwnerName></reportingOwnerId>
<reportingOwnerRelationship><isOfficer>1</isOfficer><officerTitle>CEO</officerTitle></reportingOwnerRelationship></reportingOwner>
<nonDerivativeTable><nonDerivativeTransaction>
<securityTitle><value>Common Stock</value></securityTitle>
<transactionDate><value>2024-01-10</value></transactionDate>
<transactionCoding><transactionCode>S</transactionCode></transactionCoding>
<transactionAmounts><transactionShares><value>50000</value></transactionShares><transactionAcquiredDisposedCode><value>D</value></transactionAcquiredDisposedCode></transactionAmounts>
</nonDerivativeTransaction></nonDerivativeTable>
</ownershipDocument>"""


def test_form345_feed(gateway):
    acc = "0000320193-24-000010"
    client = FakeClient(
        feeds={"4": feed(_entry("4", "COOK TIMOTHY D", "0001214128", acc, "2024-01-12"))},
        indexes={acc: ["xslF345X05/wk-form4_1705.xml", "wk-form4_1705.xml"]},
        documents={doc(acc, "wk-form4_1705.xml"): FORM4_XML},
    )
    result = FeedSync(gateway, client, Form345Processor()).run()
    assert result.processed == 1
    sub = gateway.query_one("SELECT * FROM form345_submissions")
    assert sub["issuercik"] == "320193"
    assert sub["filing_date"] == "2024-01-12"
    assert gateway.count_rows("form345_nonderiv_trans") == 1
    assert gateway.query_one("SELECT rptownercik FROM form345_reporting_owners")["rptownercik"] == "1214128"


def test_processor_sources():
    assert Form13FProcessor.source == "13f"
    assert Form345Processor.source == "form345"
    assert "SC 13D/A" in Schedule13Processor.form_types
