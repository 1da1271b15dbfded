"""Schedule 13D/13G structured XML (EDGAR Schedule 13D/G XML schema).

Elements are found by local name anywhere below a starting node, so the
parser does not care which namespace prefix a filer agent used.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET

from ownership_platform.sec.schedule13_header import blank_13dg_record
from ownership_platform.util.normalization import clean_text, normalize_cusip, parse_decimal, trim_cik
from ownership_platform.util.time import to_iso_date, utcnow_iso
from ownership_platform.validators import is_valid_cusip


def _debug(msg: str) -> None:
    print(f"[schedule13_xml] {msg}")


# Keyword lists per intent category, checked against purpose-of-transaction text.
INTENT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "passive": (
        "investment purposes",
        "ordinary course",
        "no present intention",
        "passive investment",
    ),
    "activist": (
        "influence management",
        "change in control",
        "strategic alternatives",
        "maximize shareholder value",
        "operational improvements",
    ),
    "board": (
        "board representation",
        "board seats",
        "director nomination",
        "elect directors",
    ),
    "merger": (
        "merger",
        "acquisition",
        "tender offer",
        "business combination",
        "going private",
    ),
    "proxy": ("proxy", "solicitation", "consent", "shareholder proposal"),
    "restructuring": (
        "restructuring",
        "recapitalization",
        "spin-off",
        "sale of assets",
        "dividend",
    ),
}

INTENT_PRIORITY = ("activist", "board", "merger", "proxy", "restructuring", "passive", "other")


@dataclass(frozen=True)
class Address:
    street1: str | None
    street2: str | None
    city: str | None
    state_or_country: str | None
    zip_code: str | None


@dataclass(frozen=True)
class ReportingPerson:
    cik: str | None
    name: str
    member_of_group: str | None
    sole_voting_power: float | None
    shared_voting_power: float | None
    sole_dispositive_power: float | None
    shared_dispositive_power: float | None
    aggregate_amount_owned: float | None
    percent_of_class: float | None
    type_codes: List[str]
    citizenship: str | None
    intent_flags: List[str]


@dataclass(frozen=True)
class Signature:
    reporting_person: str
    signature: str | None
    title: str | None
    date: str | None


@dataclass(frozen=True)
class Schedule13Items:
    """Narrative items 1-7 (13D only)."""

    security_title: str | None
    issuer_name: str | None
    filing_person_name: str | None
    principal_business_address: str | None
    funds_source: str | None
    transaction_purpose: str | None
    percentage_of_class: str | None
    number_of_shares: str | None
    contract_description: str | None
    filed_exhibits: str | None


@dataclass(frozen=True)
class Schedule13Filing:
    accession_number: str
    form_type: str
    filing_date: str
    previous_accession_number: str | None
    issuer_cik: str | None
    issuer_name: str
    issuer_cusips: List[str]
    issuer_address: Address | None
    securities_class_title: str
    date_of_event: str | None
    amendment_no: int | None
    reporting_persons: List[ReportingPerson] = field(default_factory=list)
    signatures: List[Signature] = field(default_factory=list)
    items: Schedule13Items | None = None


def classify_intent(purpose: str | None) -> List[str]:
    """Intent categories whose keywords appear in the text; ['passive'] if none do."""
    text = (purpose or "").lower()
    flags = [cat for cat, words in INTENT_KEYWORDS.items() if cat != "passive" and any(w in text for w in words)]
    if any(w in text for w in INTENT_KEYWORDS["passive"]) and not flags:
        flags.append("passive")
    return flags or ["passive"]


def primary_intent(flags: List[str]) -> str:
    for cat in INTENT_PRIORITY:
        if cat in flags:
            return cat
    return "other"


# ---------------------------------------------------------------------------
# Local-name search helpers
# ---------------------------------------------------------------------------


def _local(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.split("}", 1)[1] if "}" in tag else tag


def _find_all(parent: Optional[ET.Element], name: str) -> List[ET.Element]:
    if parent is None:
        return []
    return [el for el in parent.iter() if _local(el.tag) == name]


def _find(parent: Optional[ET.Element], *names: str) -> Optional[ET.Element]:
    for name in names:
        found = _find_all(parent, name)
        if found:
            return found[0]
    return None


def _text(parent: Optional[ET.Element], *names: str) -> Optional[str]:
    el = _find(parent, *names)
    if el is None:
        return None
    return clean_text("".join(el.itertext()))


def _number(parent: Optional[ET.Element], *names: str) -> Optional[float]:
    return parse_decimal(_text(parent, *names))


def _address(el: Optional[ET.Element]) -> Optional[Address]:
    if el is None:
        return None
    return Address(
        street1=_text(el, "street1"),
        street2=_text(el, "street2"),
        city=_text(el, "city"),
        state_or_country=_text(el, "stateOrCountry", "state"),
        zip_code=_text(el, "zipCode", "zip"),
    )


def _reporting_person(el: ET.Element, purpose: str | None) -> ReportingPerson:
    types = [t for t in (clean_text("".join(t.itertext())) for t in _find_all(el, "typeOfReportingPerson")) if t]
    return ReportingPerson(
        cik=_text(el, "reportingPersonCIK"),
        name=_text(el, "reportingPersonName") or "Unknown",
        member_of_group=_text(el, "memberOfGroup"),
        sole_voting_power=_number(el, "soleVotingPower"),
        shared_voting_power=_number(el, "sharedVotingPower"),
        sole_dispositive_power=_number(el, "soleDispositivePower"),
        shared_dispositive_power=_number(el, "sharedDispositivePower"),
        aggregate_amount_owned=_number(el, "aggregateAmountOwned"),
        percent_of_class=_number(el, "percentOfClass"),
        type_codes=types or ["OO"],
        citizenship=_text(el, "citizenshipOrOrganization"),
        intent_flags=classify_intent(purpose) if purpose else [],
    )


def _signature(el: ET.Element) -> Signature:
    details = _find(el, "signatureDetails")
    return Signature(
        reporting_person=_text(el, "signatureReportingPerson") or "Unknown",
        signature=_text(details, "signature"),
        title=_text(details, "title"),
        date=_text(details, "date"),
    )


def _form_type(root: ET.Element) -> str:
    submission_type = (_text(root, "submissionType") or "").upper()
    for marker in ("13D/A", "13D", "13G/A", "13G"):
        if marker in submission_type:
            return f"SC {marker}"
    return "SC 13D" if _find(root, "schedule13D") is not None else "SC 13G"


def _items(root: ET.Element, purpose: str | None) -> Optional[Schedule13Items]:
    el = _find(root, "items1To7")
    if el is None:
        return None
    return Schedule13Items(
        security_title=_text(el, "securityTitle"),
        issuer_name=_text(el, "issuerName"),
        filing_person_name=_text(el, "filingPersonName"),
        principal_business_address=_text(el, "principalBusinessAddress"),
        funds_source=_text(el, "fundsSource"),
        transaction_purpose=purpose,
        percentage_of_class=_text(el, "percentageOfClassSecurities"),
        number_of_shares=_text(el, "numberOfShares"),
        contract_description=_text(el, "contractDescription"),
        filed_exhibits=_text(el, "filedExhibits"),
    )


def parse_schedule13_xml(xml_text: str, accession_number: str, filing_date: str) -> Optional[Schedule13Filing]:
    """Parse a structured 13D/G document. None (with a log line) when unusable."""
    try:
        root = ET.fromstring((xml_text or "").strip())
    except ET.ParseError as e:
        _debug(f"XML parse error for {accession_number}: {e}")
        return None

    form_type = _form_type(root)
    cover = _find(root, "coverPageHeader")
    issuer = _find(root, "issuerInfo")
    purpose = _text(root, "transactionPurpose")

    cusips: List[str] = []
    for el in _find_all(root, "issuerCusipNumber"):
        c = normalize_cusip("".join(el.itertext()))
        if not is_valid_cusip(c):
            if c:
                _debug(f"Ignoring invalid issuer CUSIP {c!r} in {accession_number}")
            continue
        if c not in cusips:
            cusips.append(c)

    amendment = _number(cover if cover is not None else root, "amendmentNo")

    return Schedule13Filing(
        accession_number=accession_number,
        form_type=form_type,
        filing_date=to_iso_date(filing_date) or filing_date,
        previous_accession_number=_text(root, "previousAccessionNumber"),
        issuer_cik=_text(issuer if issuer is not None else root, "issuerCIK"),
        issuer_name=_text(issuer if issuer is not None else root, "issuerName") or "Unknown Issuer",
        issuer_cusips=cusips,
        issuer_address=_address(_find(issuer if issuer is not None else root, "address")),
        securities_class_title=_text(cover if cover is not None else root, "securitiesClassTitle") or "",
        date_of_event=to_iso_date(_text(cover if cover is not None else root, "dateOfEvent")),
        amendment_no=int(amendment) if amendment is not None else None,
        reporting_persons=[_reporting_person(el, purpose) for el in _find_all(root, "reportingPersonInfo")],
        signatures=[_signature(el) for el in _find_all(root, "signaturePerson")],
        items=_items(root, purpose) if "13D" in form_type else None,
    )


def _int0(v: float | None) -> int:
    return int(v) if v is not None else 0


def filing_to_records(filing: Schedule13Filing) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Rows for filings_13dg and schedule13_reporting_persons.

    Voting and dispositive power are summed across reporting persons; percent
    and aggregate amount come from the first (primary) person.
    """
    persons = filing.reporting_persons
    primary = persons[0] if persons else None
    all_flags: List[str] = []
    for p in persons:
        for f in p.intent_flags:
            if f not in all_flags:
                all_flags.append(f)

    record = blank_13dg_record()
    record.update(
        {
            "accession_number": filing.accession_number,
            "form_type": filing.form_type,
            "filing_date": filing.filing_date,
            "issuer_cik": trim_cik(filing.issuer_cik),
            "issuer_name": filing.issuer_name,
            "issuer_cusip": filing.issuer_cusips[0] if filing.issuer_cusips else None,
            "filed_by_cik": trim_cik(primary.cik) if primary else None,
            "filed_by_name": primary.name if primary else None,
            "securities_class_title": filing.securities_class_title,
            "percent_of_class": (primary.percent_of_class or 0) if primary else 0,
            "shares_owned": _int0(primary.aggregate_amount_owned) if primary else 0,
            "amendment_no": filing.amendment_no or 0,
            "previous_accession_number": filing.previous_accession_number,
            "date_of_event": filing.date_of_event,
            "purpose_of_transaction": filing.items.transaction_purpose if filing.items else None,
            "source_of_funds": filing.items.funds_source if filing.items else None,
            "sole_voting_power": sum(_int0(p.sole_voting_power) for p in persons),
            "shared_voting_power": sum(_int0(p.shared_voting_power) for p in persons),
            "sole_dispositive_power": sum(_int0(p.sole_dispositive_power) for p in persons),
            "shared_dispositive_power": sum(_int0(p.shared_dispositive_power) for p in persons),
            "reporting_person_count": len(persons),
            "intent_flags": ",".join(all_flags) or None,
            "created_at": utcnow_iso(),
        }
    )

    person_rows = [
        {
            "accession_number": filing.accession_number,
            "reporting_person_sk": i + 1,
            "cik": trim_cik(p.cik),
            "name": p.name,
            "member_of_group": p.member_of_group,
            "sole_voting_power": _int0(p.sole_voting_power),
            "shared_voting_power": _int0(p.shared_voting_power),
            "sole_dispositive_power": _int0(p.sole_dispositive_power),
            "shared_dispositive_power": _int0(p.shared_dispositive_power),
            "aggregate_amount_owned": _int0(p.aggregate_amount_owned),
            "percent_of_class": p.percent_of_class or 0,
            "type_of_reporting_person": ",".join(p.type_codes),
            "citizenship": p.citizenship,
            "intent_flags": ",".join(p.intent_flags) or None,
        }
        for i, p in enumerate(persons)
    ]
    return record, person_rows
