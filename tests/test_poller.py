from urllib.parse import parse_qs, urlparse

from ownership_platform.sec.poller import fetch_feed, feed_url, parse_atom_feed

FEED = """<?xml version="1.0" encoding="ISO-8859-1" ?>
<feed xmlns="http://www.w3.org/2005/Atom">
<title>Latest Filings - Wed, 10 Jan 2024 16:45:02 EST</title>
<updated>2024-01-10T16:45:02-05:00</updated>
<entry>
<title>SC 13G - Example Corp (0001234567) (Subject)</title>
<link rel="alternate" type="text/html" href="https://www.sec.gov/Archives/edgar/data/1234567/000095012324001234/0000950123-24-001234-index.htm"/>
<summary type="html"> &lt;b&gt;Filed:&lt;/b&gt; 2024-01-10 &lt;b&gt;AccNo:&lt;/b&gt; 0000950123-24-001234 &lt;b&gt;Size:&lt;/b&gt; 12 KB</summary>
<updated>2024-01-10T16:30:12-05:00</updated>
<category scheme="https://www.sec.gov/" label="form type" term="SC 13G"/>
<id>urn:tag:sec.gov,2008:accession-number=0000950123-24-001234</id>
</entry>
<entry>
<title>4 - HANDLER RICHARD B (0001211677) (Reporting)</title>
<link rel="alternate" type="text/html" href="https://www.sec.gov/Archives/edgar/data/1211677/000120919124004321/0001209191-24-004321-index.htm"/>
<summary type="html"><b>Filed:</b> 2024-01-09 <b>AccNo:</b> 0001209191-24-004321 <b>Size:</b> 5 KB</summary>
<updated>2024-01-09T18:02:44-05:00</updated>
</entry>
<entry>
<title>4 - NO ACCESSION (0000000001) (Reporting)</title>
<summary type="html"> &lt;b&gt;Filed:&lt;/b&gt; 2024-01-09</summary>
</entry>
</feed>
"""


def test_feed_url():
    qs = parse_qs(urlparse(feed_url("SC 13G", 40)).query)
    assert qs["type"] == ["SC 13G"]
    assert qs["count"] == ["40"]
    assert qs["output"] == ["atom"]
    assert qs["action"] == ["getcurrent"]
    assert "type=SC+13G" in feed_url("SC 13G")


def test_parse_atom_feed():
    entries = parse_atom_feed(FEED)
    assert len(entries) == 2

    first = entries[0]
    assert first.form_type == "SC 13G"
    assert first.company_name == "Example Corp"
    assert first.cik == "0001234567"
    assert first.accession_number == "0000950123-24-001234"
    assert first.filing_date == "2024-01-10"
    assert first.size == "12 KB"
    assert first.link.endswith("-index.htm")

    second = entries[1]
    assert second.form_type == "4"
    assert second.company_name == "HANDLER RICHARD B"
    assert second.filing_date == "2024-01-09"


def test_parse_empty_feed():
    assert parse_atom_feed("") == []
    assert parse_atom_feed("<feed></feed>") == []


def test_fetch_feed_asks_for_atom():
    calls = []

    class Client:
        def get_text(self, url, accept=None):
            calls.append((url, accept))
            return FEED

    entries = fetch_feed(Client(), "SC 13G", 10)
    assert len(entries) == 2
    assert "count=10" in calls[0][0]
    assert "atom" in calls[0][1]
