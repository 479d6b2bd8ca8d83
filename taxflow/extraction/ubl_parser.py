"""Deterministic parser for Colombian UBL electronic invoices.

Turns Invoice, CreditNote and DebitNote XML into an ``ExtractionResult``.
Pure function: no network or storage access, identical bytes give an
identical result.

XML is parsed with defusedxml so entity expansion and external DTDs are
rejected before any field is read.
"""

import logging
from decimal import Decimal
from xml.etree.ElementTree import ParseError as XMLSyntaxError

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring
from pydantic import ValidationError

from taxflow.extraction.schema import (
    DocumentKind,
    ExtractionResult,
    LineItem,
    MonetaryTotals,
    Party,
    SourceFormat,
)
from taxflow.extraction.ubl_accessor import UBLElement
from taxflow.shared.errors import (
    MalformedInputError,
    MissingRequiredFieldError,
    UnrecognizedDocumentTypeError,
)

logger = logging.getLogger(__name__)

# Root element -> (document kind, line element, quantity element)
DOCUMENT_LAYOUTS: dict[str, tuple[DocumentKind, str, str]] = {
    "Invoice": (DocumentKind.INVOICE, "cac:InvoiceLine", "cbc:InvoicedQuantity"),
    "CreditNote": (DocumentKind.CREDIT_NOTE, "cac:CreditNoteLine", "cbc:CreditedQuantity"),
    "DebitNote": (DocumentKind.DEBIT_NOTE, "cac:DebitNoteLine", "cbc:DebitedQuantity"),
}

# Confidence penalties for missing optional data
PENALTY_NO_FISCAL_CODE = Decimal("0.10")
PENALTY_NO_SUPPLIER_ADDRESS = Decimal("0.05")
PENALTY_NO_BUYER_ADDRESS = Decimal("0.05")
PENALTY_NO_LINE_ITEMS = Decimal("0.20")
PENALTY_ZERO_TOTAL = Decimal("0.30")

ZERO = Decimal("0")
DEFAULT_CURRENCY = "COP"


def parse_document(document: bytes) -> ExtractionResult:
    """Parse an electronic-invoice document into typed financial facts.

    Args:
        document: Raw XML bytes

    Returns:
        ExtractionResult with source_format xml_ubl

    Raises:
        MalformedInputError: Document is not well-formed or uses forbidden XML
        UnrecognizedDocumentTypeError: Root is not Invoice/CreditNote/DebitNote
        SchemaDriftError: A field is present but malformed
        MissingRequiredFieldError: A mandatory field is absent
    """
    if not document or not document.strip():
        raise MalformedInputError("Empty document provided")

    try:
        root_element = fromstring(document, forbid_dtd=True)
    except XMLSyntaxError as e:
        raise MalformedInputError(f"Document is not well-formed XML: {e}") from e
    except DefusedXmlException as e:
        raise MalformedInputError(f"Document uses forbidden XML constructs: {e}") from e

    root = UBLElement(root_element)
    layout = DOCUMENT_LAYOUTS.get(root.local_name)
    if layout is None:
        raise UnrecognizedDocumentTypeError(
            f"Document type not recognized: <{root.local_name}>. "
            f"Expected one of: {', '.join(DOCUMENT_LAYOUTS)}"
        )
    document_kind, line_path, quantity_path = layout

    document_id = root.require_text("cbc:ID", "document_id")
    issue_date = root.require_date("cbc:IssueDate", "issue_date")
    fiscal_code = root.text("cbc:UUID")
    due_date = root.date("cbc:DueDate")
    currency = root.text("cbc:DocumentCurrencyCode") or DEFAULT_CURRENCY

    supplier = _parse_party(
        root.require_child("cac:AccountingSupplierParty/cac:Party", "supplier"), "supplier"
    )
    buyer = _parse_party(
        root.require_child("cac:AccountingCustomerParty/cac:Party", "buyer"), "buyer"
    )
    totals = _parse_totals(
        root.require_child("cac:LegalMonetaryTotal", "legal_monetary_total"), currency
    )
    line_items = tuple(
        _parse_line(line, number, quantity_path)
        for number, line in enumerate(root.children(line_path), start=1)
    )

    confidence = _score_confidence(fiscal_code, supplier, buyer, line_items, totals)

    try:
        result = ExtractionResult(
            document_id=document_id,
            document_kind=document_kind,
            fiscal_code=fiscal_code,
            issue_date=issue_date,
            due_date=due_date,
            supplier=supplier,
            buyer=buyer,
            totals=totals,
            line_items=line_items,
            confidence=confidence,
            source_format=SourceFormat.XML_UBL,
        )
    except ValidationError as e:
        raise MalformedInputError(f"Extracted values are inconsistent: {e}") from e

    logger.debug(
        f"Parsed {document_kind.value} {document_id}: "
        f"{len(line_items)} lines, confidence {confidence}"
    )
    return result


def _parse_party(party: UBLElement, role: str) -> Party:
    raw_tax_id = party.text("cac:PartyTaxScheme/cbc:CompanyID") or party.text(
        "cac:PartyLegalEntity/cbc:CompanyID"
    )
    tax_id = "".join(ch for ch in raw_tax_id or "" if ch.isdigit())
    if not tax_id:
        raise MissingRequiredFieldError(f"{role}.tax_id")

    name = party.text("cac:PartyName/cbc:Name") or party.text(
        "cac:PartyLegalEntity/cbc:RegistrationName"
    )
    if not name:
        raise MissingRequiredFieldError(f"{role}.name")

    postal = party.child("cac:PostalAddress")
    address = _build_address(postal) if postal is not None else None
    city = postal.text("cbc:CityName") if postal is not None else None

    try:
        return Party(
            tax_id=tax_id,
            name=name,
            address=address,
            city=city,
            phone=party.text("cac:Contact/cbc:Telephone"),
            email=party.text("cac:Contact/cbc:ElectronicMail"),
        )
    except ValidationError as e:
        raise MalformedInputError(f"Invalid {role} party: {e}") from e


def _build_address(postal: UBLElement) -> str | None:
    parts: list[str] = []
    street = postal.text("cbc:StreetName")
    if street:
        parts.append(street)
    additional = postal.text("cbc:AdditionalStreetName")
    if additional:
        parts.append(additional)
    building = postal.text("cbc:BuildingNumber")
    if building:
        parts.append(f"# {building}")
    subdivision = postal.text("cbc:CitySubdivisionName")
    if subdivision:
        parts.append(subdivision)
    return " ".join(parts) or None


def _parse_totals(monetary: UBLElement, currency: str) -> MonetaryTotals:
    subtotal = monetary.decimal("cbc:LineExtensionAmount", non_negative=True) or ZERO
    discount = monetary.decimal("cbc:AllowanceTotalAmount") or ZERO
    total = monetary.decimal("cbc:PayableAmount", non_negative=True) or ZERO

    tax_amount = monetary.decimal("cbc:TaxExclusiveAmount") or ZERO
    if tax_amount == ZERO:
        tax_amount = total - subtotal + discount

    try:
        return MonetaryTotals(
            subtotal=subtotal,
            tax_amount=tax_amount,
            discount_amount=discount,
            total_amount=total,
            currency=currency,
        )
    except ValidationError as e:
        raise MalformedInputError(f"Invalid monetary totals: {e}") from e


def _parse_line(line: UBLElement, line_number: int, quantity_path: str) -> LineItem:
    # Quantity defaults to 1 only when the tag itself is missing
    quantity = line.decimal(quantity_path, non_negative=True)
    if quantity is None:
        quantity = Decimal("1")

    line_total = line.decimal("cbc:LineExtensionAmount", non_negative=True)
    if line_total is None:
        raise MissingRequiredFieldError(f"line[{line_number}].line_total")
    unit_price = line.decimal("cac:Price/cbc:PriceAmount")
    if unit_price is None:
        raise MissingRequiredFieldError(f"line[{line_number}].unit_price")

    item = line.child("cac:Item")
    description = None
    item_code = None
    if item is not None:
        description = item.text("cbc:Description") or item.text("cbc:Name")
        item_code = item.text("cac:SellersItemIdentification/cbc:ID") or item.text(
            "cac:StandardItemIdentification/cbc:ID"
        )

    tax_rate = tax_amount = ZERO
    tax_subtotal = line.child("cac:TaxTotal/cac:TaxSubtotal")
    if tax_subtotal is not None:
        tax_rate = tax_subtotal.decimal("cac:TaxCategory/cbc:Percent") or ZERO
        tax_amount = tax_subtotal.decimal("cbc:TaxAmount") or ZERO

    discount_rate = discount_amount = ZERO
    for allowance in line.children("cac:AllowanceCharge"):
        if (allowance.text("cbc:ChargeIndicator") or "").lower() == "false":
            multiplier = allowance.decimal("cbc:MultiplierFactorNumeric") or ZERO
            discount_rate = multiplier * 100
            discount_amount = allowance.decimal("cbc:Amount") or ZERO
            break

    return LineItem(
        line_number=line_number,
        item_code=item_code,
        description=description or "(no description)",
        quantity=quantity,
        unit_of_measure=line.attribute(quantity_path, "unitCode"),
        unit_price=unit_price,
        line_total=line_total,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        discount_rate=discount_rate,
        discount_amount=discount_amount,
    )


def _score_confidence(
    fiscal_code: str | None,
    supplier: Party,
    buyer: Party,
    line_items: tuple[LineItem, ...],
    totals: MonetaryTotals,
) -> float:
    """Completeness score; advisory only, never a validity gate."""
    confidence = Decimal("1.0")
    if not fiscal_code:
        confidence -= PENALTY_NO_FISCAL_CODE
    if not supplier.address:
        confidence -= PENALTY_NO_SUPPLIER_ADDRESS
    if not buyer.address:
        confidence -= PENALTY_NO_BUYER_ADDRESS
    if not line_items:
        confidence -= PENALTY_NO_LINE_ITEMS
    if totals.total_amount == ZERO:
        confidence -= PENALTY_ZERO_TOTAL
    return float(max(ZERO, confidence))
