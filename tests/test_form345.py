from ownership_platform.sec.form345 import (
    FORM345_TABLES,
    filing_to_rows,
    find_ownership_document,
    parse_form345_xml,
)

ACC = "0000320193-24-000010"

FORM4 = """<?xml version="1.0"?>
<ownershipDocument>
  <schemaVersion>X0508</schemaVersion>
  <documentType>4</documentType>
  <periodOfReport>2024-01-10</periodOfReport>
  <notSubjectToSection16>0</notSubjectToSection16>
  <issuer>
    <issuerCik>0000320193</issuerCik>
    <issuerName>Apple Inc.</issuerName>
    <issuerTradingSymbol>AAPL</issuerTradingSymbol>
  </issuer>
  <reportingOwner>
    <reportingOwnerId>
      <rptOwnerCik>0001214128</rptOwnerCik>
      <rptOwnerName>COOK TIMOTHY D</rptOwnerName>
    </reportingOwnerId>
    <reportingOwnerAddress>
      <rptOwnerStreet1>ONE APPLE PARK WAY</rptOwnerStreet1>
      <rptOwnerCity>CUPERTINO</rptOwnerCity>
      <rptOwnerState>CA</rptOwnerState>
      <rptOwnerZipCode>95014</rptOwnerZipCode>
    </reportingOwnerAddress>
    <reportingOwnerRelationship>
      <isDirector>1</isDirector>
      <isOfficer>true</isOfficer>
      <officerTitle>CEO</officerTitle>
    </reportingOwnerRelationship>
  </reportingOwner>
  <nonDerivativeTable>
    <nonDerivativeTransaction>
      <securityTitle><value>Common Stock</value></securityTitle>
      <transactionDate><value>2024-01-10</value></transactionDate>
      <transactionCoding>
        <transactionFormType>4</transactionFormType>
        <transactionCode>S</transactionCode>
      </transactionCoding>
      <transactionAmounts>
        <transactionShares><value>50,000</value></transactionShares>
        <transactionPricePerShare><value>185.50</value></transactionPricePerShare>
        <transactionAcquiredDisposedCode><value>D</value></transactionAcquiredDisposedCode>
      </transactionAmounts>
      <postTransactionAmounts>
        <sharesOwnedFollowingTransaction><value>3280000</value></sharesOwnedFollowingTransaction>
      </postTransactionAmounts>
      <ownershipNature>
        <directOrIndirectOwnership><value>D</value></directOrIndirectOwnership>
      </ownershipNature>
    </nonDerivativeTransaction>
    <nonDerivativeTransaction>
      <securityTitle><value>Common Stock</value></securityTitle>
      <transactionDate><value>2024-01-10</value></transactionDate>
      <transactionCoding><transactionCode>M</transactionCode></transactionCoding>
      <transactionAmounts>
        <transactionShares><value>10000</value></transactionShares>
        <transactionAcquiredDisposedCode><value>A</value></transactionAcquiredDisposedCode>
      </transactionAmounts>
      <postTransactionAmounts>
        <sharesOwnedFollowingTransaction><value>3290000</value></sharesOwnedFollowingTransaction>
      </postTransactionAmounts>
    </nonDerivativeTransaction>
    <nonDerivativeHolding>
      <securityTitle><value>Common Stock</value></securityTitle>
      <postTransactionAmounts>
        <sharesOwnedFollowingTransaction><value>120000</value></sharesOwnedFollowingTransaction>
      </postTransactionAmounts>
      <ownershipNature>
        <directOrIndirectOwnership><value>I</value></directOrIndirectOwnership>
        <natureOfOwnership><value>By Trust</value></natureOfOwnership>
      </ownershipNature>
    </nonDerivativeHolding>
  </nonDerivativeTable>
  <derivativeTable>
    <derivativeTransaction>
      <securityTitle><value>Restricted Stock Unit</value></securityTitle>
      <conversionOrExercisePrice><footnoteId id="F1"/></conversionOrExercisePrice>
      <transactionDate><value>2024-01-10</value></transactionDate>
      <transactionCoding><transactionCode>M</transactionCode></transactionCoding>
      <transactionAmounts>
        <transactionShares><value>10000</value></transactionShares>
        <transactionAcquiredDisposedCode><value>D</value></transactionAcquiredDisposedCode>
      </transactionAmounts>
      <exerciseDate><footnoteId id="F2"/></exerciseDate>
      <expirationDate><value>2026-10-01</value></expirationDate>
      <underlyingSecurity>
        <underlyingSecurityTitle><value>Common Stock</value></underlyingSecurityTitle>
        <underlyingSecurityShares><value>10000</value></underlyingSecurityShares>
      </underlyingSecurity>
      <postTransactionAmounts>
        <sharesOwnedFollowingTransaction><value>90000</value></sharesOwnedFollowingTransaction>
      </postTransactionAmounts>
      <ownershipNature>
        <directOrIndirectOwnership><value>D</value></directOrIndirectOwnership>
      </ownershipNature>
    </derivativeTransaction>
  </derivativeTable>
  <remarks>Sales under a 10b5-1 plan.</remarks>
</ownershipDocument>
"""


def test_form4_parse():
    filing = parse_form345_xml(FORM4, ACC, "20240112")
    assert filing is not None
    assert filing.filing_date == "2024-01-12"
    assert filing.document_type == "4"
    assert filing.issuer_cik == "320193"
    assert filing.issuer_trading_symbol == "AAPL"

    owner = filing.reporting_owners[0]
    assert owner.owner_cik == "1214128"
    assert owner.relationship == "Director, Officer"
    assert owner.officer_title == "CEO"

    sale, exercise = filing.nonderiv_transactions
    assert (sale.sk, exercise.sk) == (1, 2)
    assert sale.transaction_code == "S"
    assert sale.shares == 50000
    assert sale.price_per_share == 185.5
    assert sale.acquired_disposed == "D"
    assert exercise.price_per_share is None

    holding = filing.nonderiv_holdings[0]
    assert holding.sk == 1
    assert holding.direct_indirect == "I"
    assert holding.nature_of_ownership == "By Trust"

    rsu = filing.deriv_transactions[0]
    assert rsu.conversion_price is None
    assert rsu.exercise_date is None
    assert rsu.expiration_date == "2026-10-01"
    assert rsu.underlying_shares == 10000


def test_rows_cover_every_table():
    rows = filing_to_rows(parse_form345_xml(FORM4, ACC, "2024-01-12"))
    assert set(rows) == set(FORM345_TABLES)
    assert rows["form345_submissions"][0]["issuercik"] == "320193"
    assert rows["form345_submissions"][0]["not_subject_sec16"] == "0"
    assert len(rows["form345_nonderiv_trans"]) == 2
    assert rows["form345_deriv_holding"] == []
    assert rows["form345_reporting_owners"][0]["rptowner_relationship"] == "Director, Officer"


def test_document_embedded_in_submission_text():
    wrapped = "<SEC-DOCUMENT>\n<DOCUMENT>\n<TYPE>4\n<XML>\n" + FORM4 + "</XML>\n</DOCUMENT>\n</SEC-DOCUMENT>"
    filing = parse_form345_xml(wrapped, ACC, "2024-01-12")
    assert filing is not None
    assert len(filing.nonderiv_transactions) == 2


def test_unusable_documents():
    assert parse_form345_xml("", ACC, None) is None
    assert parse_form345_xml("<html>no ownership here</html>", ACC, None) is None
    assert parse_form345_xml("<ownershipDocument><issuer></ownershipDocument>", ACC, None) is None
    no_issuer = FORM4.replace("<issuerCik>0000320193</issuerCik>", "")
    assert parse_form345_xml(no_issuer, ACC, None) is None


def test_owner_without_cik_is_skipped():
    filing = parse_form345_xml(FORM4.replace("0001214128", ""), ACC, None)
    assert filing.reporting_owners == []


def test_ownership_document_selection():
    assert find_ownership_document(["doc.htm", "form4.xml"]) == "form4.xml"
    assert find_ownership_document(["a.xml", "Form4_2024.xml"]) == "Form4_2024.xml"
    assert find_ownership_document(["doc.htm", "wk-form4_17.xml"]) == "wk-form4_17.xml"
    assert find_ownership_document(["doc.htm"]) is None
