from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from xml.etree import ElementTree as ET

from ownership_platform.util.normalization import clean_text, parse_decimal, trim_cik
from ownership_platform.util.time import to_iso_date


def _debug(msg: str) -> None:
    print(f"[form345] {msg}")


# The ownership document can be embedded in a .txt submission or an .htm wrapper.
_OWNERSHIP_DOC_RE = re.compile(r"<ownershipDocument\b[\s\S]*?</ownershipDocument>", re.IGNORECASE)

FORM345_TABLES = (
    "form345_submissions",
    "form345_reporting_owners",
    "form345_nonderiv_trans",
    "form345_nonderiv_holding",
    "form345_deriv_trans",
    "form345_deriv_holding",
)


@dataclass(frozen=True)
class ReportingOwner:
    owner_cik: str
    owner_name: str | None
    is_director: bool
    is_officer: bool
    is_ten_percent_owner: bool
    is_other: bool
    officer_title: str | None
    street1: str | None
    street2: str | None
    city: str | None
    state: str | None
    zip_code: str | None

    @property
    def relationship(self) -> str | None:
        parts = []
        if self.is_director:
            parts.append("Director")
        if self.is_officer:
            parts.append("Officer")
        if self.is_ten_percent_owner:
            parts.append("10% Owner")
        if self.is_other:
            parts.append("Other")
        return ", ".join(parts) or None


@dataclass(frozen=True)
class NonDerivTransaction:
    sk: int
    security_title: str | None
    transaction_date: str | None
    transaction_code: str | None
    shares: float | None
    price_per_share: float | None
    acquired_disposed: str | None
    shares_owned_following: float | None
    direct_indirect: str | None
    nature_of_ownership: str | None


@dataclass(frozen=True)
class NonDerivHolding:
    sk: int
    security_title: str | None
    shares_owned_following: float | None
    direct_indirect: str | None
    nature_of_ownership: str | None


@dataclass(frozen=True)
class DerivTransaction:
    sk: int
    security_title: str | None
    conversion_price: float | None
    transaction_date: str | None
    transaction_code: str | None
    shares: float | None
    price_per_share: float | None
    acquired_disposed: str | None
    exercise_date: str | None
    expiration_date: str | None
    underlying_title: str | None
    underlying_shares: float | None
    shares_owned_following: float | None
    direct_indirect: str | None


@dataclass(frozen=True)
class DerivHolding:
    sk: int
    security_title: str | None
    conversion_price: float | None
    exercise_date: str | None
    expiration_date: str | None
    underlying_title: str | None
    underlying_shares: float | None
    shares_owned_following: float | None
    direct_indirect: str | None


@dataclass(frozen=True)
class Form345Filing:
    accession_number: str
    filing_date: str | None
    period_of_report: str | None
    document_type: str | None
    issuer_cik: str
    issuer_name: str | None
    issuer_trading_symbol: str | None
    no_securities_owned: bool
    not_subject_to_section16: bool
    remarks: str | None
    reporting_owners: List[ReportingOwner] = field(default_factory=list)
    nonderiv_transactions: List[NonDerivTransaction] = field(default_factory=list)
    nonderiv_holdings: List[NonDerivHolding] = field(default_factory=list)
    deriv_transactions: List[DerivTransaction] = field(default_factory=list)
    deriv_holdings: List[DerivHolding] = field(default_factory=list)


def _strip_ns(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _children(parent: ET.Element | None, name: str) -> List[ET.Element]:
    if parent is None:
        return []
    return [c for c in parent if _strip_ns(c.tag) == name]


def _find_child(parent: ET.Element | None, name: str) -> Optional[ET.Element]:
    found = _children(parent, name)
    return found[0] if found else None


def _find_text(parent: ET.Element | None, path: List[str]) -> Optional[str]:
    cur: Optional[ET.Element] = parent
    for p in path:
        if cur is None:
            return None
        cur = _find_child(cur, p)
    if cur is None:
        return None
    return clean_text(cur.text)


def _find_value_text(parent: ET.Element | None, path: List[str]) -> Optional[str]:
    """Common SEC pattern: <foo><value>TEXT</value></foo>"""
    return _find_text(parent, path + ["value"])


def _to_bool(v: Optional[str]) -> bool:
    return (v or "").strip().lower() in ("1", "true", "y", "yes")


def _title(el: ET.Element) -> Optional[str]:
    return _find_value_text(el, ["securityTitle"]) or _find_text(el, ["securityTitle"])


def _date(el: ET.Element, path: List[str]) -> Optional[str]:
    return to_iso_date(_find_value_text(el, path))


def _number(el: ET.Element, path: List[str]) -> Optional[float]:
    return parse_decimal(_find_value_text(el, path))


def _ownership(el: ET.Element) -> Dict[str, Optional[str]]:
    return {
        "direct_indirect": _find_value_text(el, ["ownershipNature", "directOrIndirectOwnership"]),
        "nature": _find_value_text(el, ["ownershipNature", "natureOfOwnership"]),
    }


def _parse_owner(ro_el: ET.Element) -> Optional[ReportingOwner]:
    ro_id = _find_child(ro_el, "reportingOwnerId")
    cik = trim_cik(_find_text(ro_id, ["rptOwnerCik"]))
    if cik is None:
        return None
    addr = _find_child(ro_el, "reportingOwnerAddress")
    rel = _find_child(ro_el, "reportingOwnerRelationship")
    return ReportingOwner(
        owner_cik=cik,
        owner_name=_find_text(ro_id, ["rptOwnerName"]),
        is_director=_to_bool(_find_text(rel, ["isDirector"])),
        is_officer=_to_bool(_find_text(rel, ["isOfficer"])),
        is_ten_percent_owner=_to_bool(_find_text(rel, ["isTenPercentOwner"])),
        is_other=_to_bool(_find_text(rel, ["isOther"])),
        officer_title=_find_text(rel, ["officerTitle"]),
        street1=_find_text(addr, ["rptOwnerStreet1"]),
        street2=_find_text(addr, ["rptOwnerStreet2"]),
        city=_find_text(addr, ["rptOwnerCity"]),
        state=_find_text(addr, ["rptOwnerState"]),
        zip_code=_find_text(addr, ["rptOwnerZipCode"]),
    )


def _nonderiv_transaction(el: ET.Element, sk: int) -> NonDerivTransaction:
    own = _ownership(el)
    return NonDerivTransaction(
        sk=sk,
        security_title=_title(el),
        transaction_date=_date(el, ["transactionDate"]),
        transaction_code=_find_text(el, ["transactionCoding", "transactionCode"]),
        shares=_number(el, ["transactionAmounts", "transactionShares"]),
        price_per_share=_number(el, ["transactionAmounts", "transactionPricePerShare"]),
        acquired_disposed=_find_value_text(el, ["transactionAmounts", "transactionAcquiredDisposedCode"]),
        shares_owned_following=_number(el, ["postTransactionAmounts", "sharesOwnedFollowingTransaction"]),
        direct_indirect=own["direct_indirect"],
        nature_of_ownership=own["nature"],
    )


def _nonderiv_holding(el: ET.Element, sk: int) -> NonDerivHolding:
    own = _ownership(el)
    return NonDerivHolding(
        sk=sk,
        security_title=_title(el),
        shares_owned_following=_number(el, ["postTransactionAmounts", "sharesOwnedFollowingTransaction"]),
        direct_indirect=own["direct_indirect"],
        nature_of_ownership=own["nature"],
    )


def _deriv_transaction(el: ET.Element, sk: int) -> DerivTransaction:
    return DerivTransaction(
        sk=sk,
        security_title=_title(el),
        conversion_price=_number(el, ["conversionOrExercisePrice"]),
        transaction_date=_date(el, ["transactionDate"]),
        transaction_code=_find_text(el, ["transactionCoding", "transactionCode"]),
        shares=_number(el, ["transactionAmounts", "transactionShares"]),
        price_per_share=_number(el, ["transactionAmounts", "transactionPricePerShare"]),
        acquired_disposed=_find_value_text(el, ["transactionAmounts", "transactionAcquiredDisposedCode"]),
        exercise_date=_date(el, ["exerciseDate"]),
        expiration_date=_date(el, ["expirationDate"]),
        underlying_title=_find_value_text(el, ["underlyingSecurity", "underlyingSecurityTitle"]),
        underlying_shares=_number(el, ["underlyingSecurity", "underlyingSecurityShares"]),
        shares_owned_following=_number(el, ["postTransactionAmounts", "sharesOwnedFollowingTransaction"]),
        direct_indirect=_ownership(el)["direct_indirect"],
    )


def _deriv_holding(el: ET.Element, sk: int) -> DerivHolding:
    return DerivHolding(
        sk=sk,
        security_title=_title(el),
        conversion_price=_number(el, ["conversionOrExercisePrice"]),
        exercise_date=_date(el, ["exerciseDate"]),
        expiration_date=_date(el, ["expirationDate"]),
        underlying_title=_find_value_text(el, ["underlyingSecurity", "underlyingSecurityTitle"]),
        underlying_shares=_number(el, ["underlyingSecurity", "underlyingSecurityShares"]),
        shares_owned_following=_number(el, ["postTransactionAmounts", "sharesOwnedFollowingTransaction"]),
        direct_indirect=_ownership(el)["direct_indirect"],
    )


def _locate_ownership_document(text: str) -> Optional[ET.Element]:
    m = _OWNERSHIP_DOC_RE.search(text)
    if not m:
        return None
    root = ET.fromstring(m.group(0))
    if _strip_ns(root.tag).lower() != "ownershipdocument":
        return None
    return root


def parse_form345_xml(text: str, accession_number: str, filing_date: str | None) -> Optional[Form345Filing]:
    """Parse a Form 3/4/5 ownership document. None (and a log line) when unusable."""
    if not text:
        _debug(f"Empty document for {accession_number}")
        return None

    try:
        root = _locate_ownership_document(text)
    except ET.ParseError as e:
        _debug(f"XML parse error for {accession_number}: {e}")
        return None
    if root is None:
        _debug(f"No ownershipDocument element in {accession_number}")
        return None

    issuer_el = _find_child(root, "issuer")
    issuer_cik = trim_cik(_find_text(issuer_el, ["issuerCik"]))
    if issuer_cik is None:
        _debug(f"Missing issuer CIK in {accession_number}")
        return None

    owners = [o for o in (_parse_owner(el) for el in _children(root, "reportingOwner")) if o is not None]

    nd_table = _find_child(root, "nonDerivativeTable")
    d_table = _find_child(root, "derivativeTable")

    # Sequence keys are counted per row family, in document order.
    nd_trans = [_nonderiv_transaction(el, i) for i, el in enumerate(_children(nd_table, "nonDerivativeTransaction"), 1)]
    nd_hold = [_nonderiv_holding(el, i) for i, el in enumerate(_children(nd_table, "nonDerivativeHolding"), 1)]
    d_trans = [_deriv_transaction(el, i) for i, el in enumerate(_children(d_table, "derivativeTransaction"), 1)]
    d_hold = [_deriv_holding(el, i) for i, el in enumerate(_children(d_table, "derivativeHolding"), 1)]

    doc_type = _find_text(root, ["documentType"])
    _debug(
        f"Parsed {accession_number}: doc_type={doc_type} issuer_cik={issuer_cik} "
        f"owners={len(owners)} nd={len(nd_trans)}/{len(nd_hold)} d={len(d_trans)}/{len(d_hold)}"
    )

    return Form345Filing(
        accession_number=accession_number,
        filing_date=to_iso_date(filing_date),
        period_of_report=to_iso_date(_find_text(root, ["periodOfReport"])),
        document_type=doc_type,
        issuer_cik=issuer_cik,
        issuer_name=_find_text(issuer_el, ["issuerName"]),
        issuer_trading_symbol=_find_text(issuer_el, ["issuerTradingSymbol"]),
        no_securities_owned=_to_bool(_find_text(root, ["noSecuritiesOwned"])),
        not_subject_to_section16=_to_bool(_find_text(root, ["notSubjectToSection16"])),
        remarks=_find_text(root, ["remarks"]),
        reporting_owners=owners,
        nonderiv_transactions=nd_trans,
        nonderiv_holdings=nd_hold,
        deriv_transactions=d_trans,
        deriv_holdings=d_hold,
    )


def _flag(v: bool) -> str:
    return "1" if v else "0"


def filing_to_rows(filing: Form345Filing) -> Dict[str, List[Dict[str, Any]]]:
    """Rows for the six form345_* tables, keyed by table name."""
    acc = filing.accession_number
    return {
        "form345_submissions": [
            {
                "accession_number": acc,
                "filing_date": filing.filing_date,
                "period_of_report": filing.period_of_report,
                "document_type": filing.document_type,
                "issuercik": filing.issuer_cik,
                "issuername": filing.issuer_name,
                "issuertradingsymbol": filing.issuer_trading_symbol,
                "no_securities_owned": _flag(filing.no_securities_owned),
                "not_subject_sec16": _flag(filing.not_subject_to_section16),
                "remarks": filing.remarks,
            }
        ],
        "form345_reporting_owners": [
            {
                "accession_number": acc,
                "rptownercik": o.owner_cik,
                "rptownername": o.owner_name,
                "rptowner_relationship": o.relationship,
                "rptowner_title": o.officer_title,
                "rptowner_street1": o.street1,
                "rptowner_street2": o.street2,
                "rptowner_city": o.city,
                "rptowner_state": o.state,
                "rptowner_zipcode": o.zip_code,
            }
            for o in filing.reporting_owners
        ],
        "form345_nonderiv_trans": [
            {
                "accession_number": acc,
                "nonderiv_trans_sk": t.sk,
                "security_title": t.security_title,
                "trans_date": t.transaction_date,
                "trans_code": t.transaction_code,
                "trans_shares": t.shares,
                "trans_pricepershare": t.price_per_share,
                "trans_acquired_disp_cd": t.acquired_disposed,
                "shrs_ownd_folwng_trans": t.shares_owned_following,
                "direct_indirect_ownership": t.direct_indirect,
                "nature_of_ownership": t.nature_of_ownership,
            }
            for t in filing.nonderiv_transactions
        ],
        "form345_nonderiv_holding": [
            {
                "accession_number": acc,
                "nonderiv_holding_sk": h.sk,
                "security_title": h.security_title,
                "shrs_ownd_folwng_trans": h.shares_owned_following,
                "direct_indirect_ownership": h.direct_indirect,
                "nature_of_ownership": h.nature_of_ownership,
            }
            for h in filing.nonderiv_holdings
        ],
        "form345_deriv_trans": [
            {
                "accession_number": acc,
                "deriv_trans_sk": t.sk,
                "security_title": t.security_title,
                "conv_exercise_price": t.conversion_price,
                "trans_date": t.transaction_date,
                "trans_code": t.transaction_code,
                "trans_shares": t.shares,
                "trans_pricepershare": t.price_per_share,
                "trans_acquired_disp_cd": t.acquired_disposed,
                "exercise_date": t.exercise_date,
                "expiration_date": t.expiration_date,
                "undlyng_sec_title": t.underlying_title,
                "undlyng_sec_shares": t.underlying_shares,
                "shrs_ownd_folwng_trans": t.shares_owned_following,
                "direct_indirect_ownership": t.direct_indirect,
            }
            for t in filing.deriv_transactions
        ],
        "form345_deriv_holding": [
            {
                "accession_number": acc,
                "deriv_holding_sk": h.sk,
                "security_title": h.security_title,
                "conv_exercise_price": h.conversion_price,
                "exercise_date": h.exercise_date,
                "expiration_date": h.expiration_date,
                "undlyng_sec_title": h.underlying_title,
                "undlyng_sec_shares": h.underlying_shares,
                "shrs_ownd_folwng_trans": h.shares_owned_following,
                "direct_indirect_ownership": h.direct_indirect,
            }
            for h in filing.deriv_holdings
        ],
    }


def find_ownership_document(names: Sequence[str]) -> Optional[str]:
    """Pick the ownership XML from a filing index listing. XSL renderings are skipped."""
    xmls = [n for n in names if n.lower().endswith(".xml") and not n.lower().startswith("xsl")]
    for n in xmls:
        low = n.lower().rsplit("/", 1)[-1]
        if low in ("form3.xml", "form4.xml", "form5.xml", "primary_doc.xml") or re.match(r"^form[345]", low):
            return n
    return xmls[0] if xmls else None
