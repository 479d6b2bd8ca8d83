"""Unit tests for the UBL invoice parser.

Tests cover:
- Field extraction for invoices, credit notes and debit notes
- Mandatory field handling
- Malformed and unsafe XML
- Confidence scoring
"""

from datetime import date
from decimal import Decimal

import pytest

from taxflow.extraction.schema import DocumentKind, SourceFormat
from taxflow.extraction.ubl_parser import parse_document
from taxflow.shared.errors import (
    MalformedInputError,
    MissingRequiredFieldError,
    SchemaDriftError,
    UnrecognizedDocumentTypeError,
)

SUPPLIER_ADDRESS = """      <cac:PostalAddress>
        <cbc:CityName>Bogotá</cbc:CityName>
        <cbc:StreetName>Calle 100</cbc:StreetName>
        <cbc:BuildingNumber>19-61</cbc:BuildingNumber>
        <cbc:CitySubdivisionName>Chicó</cbc:CitySubdivisionName>
      </cac:PostalAddress>
"""

BUYER_ADDRESS = """      <cac:PostalAddress>
        <cbc:CityName>Medellín</cbc:CityName>
        <cbc:StreetName>Carrera 48</cbc:StreetName>
        <cbc:BuildingNumber>26-85</cbc:BuildingNumber>
      </cac:PostalAddress>
"""


def _without_lines(xml: str) -> str:
    start = xml.index("  <cac:InvoiceLine>")
    end = xml.index("</Invoice>")
    return xml[:start] + xml[end:]


class TestParseInvoice:
    """Test extraction of a complete invoice."""

    def test_document_fields(self, invoice_xml: str) -> None:
        """Should extract header fields."""
        result = parse_document(invoice_xml.encode())

        assert result.document_kind == DocumentKind.INVOICE
        assert result.document_id == "SETP990000001"
        assert result.fiscal_code == "8bb7a1d4c9e0f2"
        assert result.issue_date == date(2024, 3, 15)
        assert result.due_date == date(2024, 4, 14)
        assert result.source_format == SourceFormat.XML_UBL

    def test_parties(self, invoice_xml: str) -> None:
        """Should normalize tax ids to digits and assemble addresses."""
        result = parse_document(invoice_xml.encode())

        assert result.supplier.tax_id == "900123456"
        assert result.supplier.name == "Consultores Andinos SAS"
        assert result.supplier.address == "Calle 100 # 19-61 Chicó"
        assert result.supplier.city == "Bogotá"
        assert result.supplier.phone == "6015550100"
        assert result.supplier.email == "facturacion@andinos.co"
        assert result.buyer.tax_id == "860028462"
        assert result.buyer.address == "Carrera 48 # 26-85"
        assert result.buyer.phone is None

    def test_totals_derive_tax_when_tax_exclusive_absent(self, invoice_xml: str) -> None:
        """Tax amount should be total - subtotal + discount without TaxExclusiveAmount."""
        totals = parse_document(invoice_xml.encode()).totals

        assert totals.subtotal == Decimal("1000000.00")
        assert totals.discount_amount == Decimal("0.00")
        assert totals.total_amount == Decimal("1190000.00")
        assert totals.tax_amount == Decimal("190000.00")
        assert totals.currency == "COP"

    def test_totals_use_non_zero_tax_exclusive_amount(self, invoice_xml: str) -> None:
        """A present, non-zero TaxExclusiveAmount should be taken as the tax amount."""
        xml = invoice_xml.replace(
            '<cbc:AllowanceTotalAmount currencyID="COP">0.00</cbc:AllowanceTotalAmount>',
            '<cbc:TaxExclusiveAmount currencyID="COP">123.45</cbc:TaxExclusiveAmount>\n'
            '    <cbc:AllowanceTotalAmount currencyID="COP">0.00</cbc:AllowanceTotalAmount>',
        )
        assert parse_document(xml.encode()).totals.tax_amount == Decimal("123.45")

    def test_zero_tax_exclusive_amount_falls_back_to_derivation(self, invoice_xml: str) -> None:
        """A zero TaxExclusiveAmount should be treated as absent."""
        xml = invoice_xml.replace(
            '<cbc:AllowanceTotalAmount currencyID="COP">0.00</cbc:AllowanceTotalAmount>',
            '<cbc:TaxExclusiveAmount currencyID="COP">0.00</cbc:TaxExclusiveAmount>\n'
            '    <cbc:AllowanceTotalAmount currencyID="COP">10000.00</cbc:AllowanceTotalAmount>',
        )
        assert parse_document(xml.encode()).totals.tax_amount == Decimal("200000.00")

    def test_line_items_in_document_order(self, invoice_xml: str) -> None:
        """Should extract line details with tax and discount sub-fields."""
        first, second = parse_document(invoice_xml.encode()).line_items

        assert first.line_number == 1
        assert first.item_code == "SRV-001"
        assert first.description == "Consultoría tributaria"
        assert first.quantity == Decimal("10")
        assert first.unit_of_measure == "HUR"
        assert first.unit_price == Decimal("60000.00")
        assert first.line_total == Decimal("600000.00")
        assert first.tax_rate == Decimal("19.00")
        assert first.tax_amount == Decimal("114000.00")
        assert first.discount_rate == Decimal("5")
        assert first.discount_amount == Decimal("30000.00")

        assert second.line_number == 2
        assert second.description == "Revisión de estados financieros"
        assert second.tax_rate == Decimal("0")
        assert second.discount_amount == Decimal("0")

    def test_quantity_defaults_to_one_when_tag_absent(self, invoice_xml: str) -> None:
        """Line without InvoicedQuantity should get quantity 1 and no unit."""
        second = parse_document(invoice_xml.encode()).line_items[1]

        assert second.quantity == Decimal("1")
        assert second.unit_of_measure is None

    def test_empty_quantity_tag_is_not_defaulted(self, invoice_xml: str) -> None:
        """An empty quantity element is drift, not an omitted tag."""
        xml = invoice_xml.replace(
            '<cbc:InvoicedQuantity unitCode="HUR">10</cbc:InvoicedQuantity>',
            '<cbc:InvoicedQuantity unitCode="HUR"></cbc:InvoicedQuantity>',
        )
        with pytest.raises(SchemaDriftError):
            parse_document(xml.encode())

    def test_full_invoice_has_full_confidence(self, invoice_xml: str) -> None:
        """No penalties apply to a complete invoice."""
        assert parse_document(invoice_xml.encode()).confidence == 1.0

    def test_parse_is_deterministic(self, invoice_xml: str) -> None:
        """Identical bytes should yield identical results."""
        data = invoice_xml.encode()
        first = parse_document(data)
        second = parse_document(data)

        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_tax_id_falls_back_to_legal_entity(self, invoice_xml: str) -> None:
        """Supplier NIT should come from PartyLegalEntity when PartyTaxScheme is absent."""
        xml = invoice_xml.replace(
            "<cac:PartyTaxScheme>\n"
            '        <cbc:CompanyID schemeID="7">900.123.456</cbc:CompanyID>\n'
            "      </cac:PartyTaxScheme>",
            "<cac:PartyLegalEntity>\n"
            "        <cbc:RegistrationName>Consultores Andinos SAS</cbc:RegistrationName>\n"
            "        <cbc:CompanyID>900-555-111</cbc:CompanyID>\n"
            "      </cac:PartyLegalEntity>",
        )
        assert parse_document(xml.encode()).supplier.tax_id == "900555111"

    def test_address_omitted_when_no_parts(self, invoice_xml: str) -> None:
        """Address should be None when only the city is present."""
        xml = invoice_xml.replace(
            SUPPLIER_ADDRESS,
            "      <cac:PostalAddress>\n"
            "        <cbc:CityName>Bogotá</cbc:CityName>\n"
            "      </cac:PostalAddress>\n",
        )
        supplier = parse_document(xml.encode()).supplier

        assert supplier.address is None
        assert supplier.city == "Bogotá"


class TestDocumentKinds:
    """Test credit and debit note layouts."""

    def test_credit_note(self, invoice_xml: str) -> None:
        """CreditNote root should use CreditNoteLine and CreditedQuantity."""
        xml = (
            invoice_xml.replace("<Invoice ", "<CreditNote ")
            .replace("</Invoice>", "</CreditNote>")
            .replace("Invoice-2", "CreditNote-2")
            .replace("cac:InvoiceLine", "cac:CreditNoteLine")
            .replace("cbc:InvoicedQuantity", "cbc:CreditedQuantity")
        )
        result = parse_document(xml.encode())

        assert result.document_kind == DocumentKind.CREDIT_NOTE
        assert len(result.line_items) == 2
        assert result.line_items[0].quantity == Decimal("10")

    def test_debit_note(self, invoice_xml: str) -> None:
        """DebitNote root should use DebitNoteLine and DebitedQuantity."""
        xml = (
            invoice_xml.replace("<Invoice ", "<DebitNote ")
            .replace("</Invoice>", "</DebitNote>")
            .replace("cac:InvoiceLine", "cac:DebitNoteLine")
            .replace("cbc:InvoicedQuantity", "cbc:DebitedQuantity")
        )
        result = parse_document(xml.encode())

        assert result.document_kind == DocumentKind.DEBIT_NOTE
        assert result.line_items[0].unit_of_measure == "HUR"

    def test_unrecognized_root(self) -> None:
        """Unknown root element should fail as an unrecognized document type."""
        with pytest.raises(UnrecognizedDocumentTypeError, match="ApplicationResponse"):
            parse_document(b"<ApplicationResponse><ID>1</ID></ApplicationResponse>")

    def test_unrecognized_root_is_malformed_input(self) -> None:
        """UnrecognizedDocumentTypeError should be a MalformedInputError."""
        assert issubclass(UnrecognizedDocumentTypeError, MalformedInputError)


class TestMalformedInput:
    """Test rejection of unusable bytes."""

    def test_empty_document(self) -> None:
        """Should reject empty input."""
        with pytest.raises(MalformedInputError):
            parse_document(b"")

    def test_not_xml(self) -> None:
        """Should reject bytes that are not well-formed XML."""
        with pytest.raises(MalformedInputError):
            parse_document(b"%PDF-1.7 not xml at all")

    def test_truncated_xml(self, invoice_xml: str) -> None:
        """Should reject a truncated document."""
        with pytest.raises(MalformedInputError):
            parse_document(invoice_xml.encode()[:500])

    def test_entity_expansion_rejected(self) -> None:
        """Should refuse documents declaring entities."""
        payload = (
            b'<?xml version="1.0"?>\n'
            b'<!DOCTYPE Invoice [<!ENTITY lol "lol"><!ENTITY lol2 "&lol;&lol;">]>\n'
            b"<Invoice>&lol2;</Invoice>"
        )
        with pytest.raises(MalformedInputError):
            parse_document(payload)

    def test_dtd_rejected(self) -> None:
        """Should refuse documents with a DTD even without entities."""
        payload = b'<?xml version="1.0"?>\n<!DOCTYPE Invoice>\n<Invoice></Invoice>'
        with pytest.raises(MalformedInputError):
            parse_document(payload)

    def test_non_numeric_amount_is_schema_drift(self, invoice_xml: str) -> None:
        """A present but unparseable amount should name its path."""
        xml = invoice_xml.replace(
            '<cbc:PayableAmount currencyID="COP">1190000.00</cbc:PayableAmount>',
            '<cbc:PayableAmount currencyID="COP">1.190.000,00</cbc:PayableAmount>',
        )
        with pytest.raises(SchemaDriftError) as exc_info:
            parse_document(xml.encode())

        assert "PayableAmount" in exc_info.value.path

    def test_negative_payable_amount_is_schema_drift(self, invoice_xml: str) -> None:
        """Negative totals are not valid UBL."""
        xml = invoice_xml.replace(">1190000.00<", ">-1190000.00<")
        with pytest.raises(SchemaDriftError):
            parse_document(xml.encode())

    def test_bad_issue_date_is_schema_drift(self, invoice_xml: str) -> None:
        """A non-ISO issue date should fail loudly."""
        xml = invoice_xml.replace(
            "<cbc:IssueDate>2024-03-15</cbc:IssueDate>", "<cbc:IssueDate>15/03/2024</cbc:IssueDate>"
        )
        with pytest.raises(SchemaDriftError):
            parse_document(xml.encode())

    @pytest.mark.parametrize("currency", ["cop", "COP1"])
    def test_invalid_currency_code_is_malformed(self, invoice_xml: str, currency: str) -> None:
        """Currency codes outside ISO 4217 form fail as parse errors."""
        xml = invoice_xml.replace(
            "<cbc:DocumentCurrencyCode>COP</cbc:DocumentCurrencyCode>",
            f"<cbc:DocumentCurrencyCode>{currency}</cbc:DocumentCurrencyCode>",
        )
        with pytest.raises(MalformedInputError, match="monetary totals"):
            parse_document(xml.encode())

    def test_namespace_drift_on_required_field(self, invoice_xml: str) -> None:
        """Document id published under a foreign namespace should be drift, not missing."""
        xml = invoice_xml.replace(
            "<cbc:ID>SETP990000001</cbc:ID>",
            '<x:ID xmlns:x="urn:example:legacy">SETP990000001</x:ID>',
        )
        with pytest.raises(SchemaDriftError, match="urn:example:legacy"):
            parse_document(xml.encode())

    def test_schema_drift_is_malformed_input(self) -> None:
        """SchemaDriftError should be a MalformedInputError."""
        assert issubclass(SchemaDriftError, MalformedInputError)


class TestMissingRequiredFields:
    """Test that mandatory fields are never defaulted."""

    @pytest.mark.parametrize(
        ("element", "field"),
        [
            ("<cbc:ID>SETP990000001</cbc:ID>", "document_id"),
            ("<cbc:IssueDate>2024-03-15</cbc:IssueDate>", "issue_date"),
            ("<cbc:Name>Consultores Andinos SAS</cbc:Name>", "supplier.name"),
            ('<cbc:CompanyID schemeID="4">860028462</cbc:CompanyID>', "buyer.tax_id"),
        ],
    )
    def test_missing_field_is_named(self, invoice_xml: str, element: str, field: str) -> None:
        """Removing a mandatory element should name the field."""
        xml = invoice_xml.replace(element, "")
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            parse_document(xml.encode())

        assert exc_info.value.field == field

    def test_missing_monetary_total(self, invoice_xml: str) -> None:
        """Missing LegalMonetaryTotal block should be a missing field."""
        start = invoice_xml.index("  <cac:LegalMonetaryTotal>")
        end = invoice_xml.index("</cac:LegalMonetaryTotal>") + len("</cac:LegalMonetaryTotal>")
        xml = invoice_xml[:start] + invoice_xml[end:]

        with pytest.raises(MissingRequiredFieldError) as exc_info:
            parse_document(xml.encode())

        assert exc_info.value.field == "legal_monetary_total"

    def test_missing_buyer_party(self, invoice_xml: str) -> None:
        """Missing AccountingCustomerParty should be a missing field."""
        start = invoice_xml.index("  <cac:AccountingCustomerParty>")
        end = invoice_xml.index("</cac:AccountingCustomerParty>") + len(
            "</cac:AccountingCustomerParty>"
        )
        xml = invoice_xml[:start] + invoice_xml[end:]

        with pytest.raises(MissingRequiredFieldError) as exc_info:
            parse_document(xml.encode())

        assert exc_info.value.field == "buyer"

    def test_missing_line_total(self, invoice_xml: str) -> None:
        """Each line needs its LineExtensionAmount."""
        xml = invoice_xml.replace(
            '<cbc:LineExtensionAmount currencyID="COP">400000.00</cbc:LineExtensionAmount>', ""
        )
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            parse_document(xml.encode())

        assert exc_info.value.field == "line[2].line_total"

    def test_missing_field_is_not_retryable(self) -> None:
        """MissingRequiredFieldError should be fatal."""
        assert MissingRequiredFieldError("document_id").retryable is False


class TestConfidence:
    """Test completeness scoring."""

    def test_missing_fiscal_code(self, invoice_xml: str) -> None:
        """No CUFE costs 0.10."""
        xml = invoice_xml.replace(
            '<cbc:UUID schemeName="CUFE-SHA384">8bb7a1d4c9e0f2</cbc:UUID>', ""
        )
        assert parse_document(xml.encode()).confidence == 0.9

    def test_missing_addresses(self, invoice_xml: str) -> None:
        """Each missing party address costs 0.05."""
        xml = invoice_xml.replace(SUPPLIER_ADDRESS, "").replace(BUYER_ADDRESS, "")
        assert parse_document(xml.encode()).confidence == 0.9

    def test_no_line_items(self, invoice_xml: str) -> None:
        """No lines costs 0.20."""
        assert parse_document(_without_lines(invoice_xml).encode()).confidence == 0.8

    def test_all_penalties(self, invoice_xml: str) -> None:
        """All penalties together leave 0.30."""
        xml = (
            _without_lines(invoice_xml)
            .replace('<cbc:UUID schemeName="CUFE-SHA384">8bb7a1d4c9e0f2</cbc:UUID>', "")
            .replace(SUPPLIER_ADDRESS, "")
            .replace(BUYER_ADDRESS, "")
            .replace(">1190000.00<", ">0.00<")
        )
        result = parse_document(xml.encode())

        assert result.confidence == pytest.approx(0.3)
        assert result.needs_review(0.85) is True
