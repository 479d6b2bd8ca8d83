"""Shared fixtures for unit tests."""

from datetime import date
from decimal import Decimal

import pytest

from taxflow.classification.schema import Classification, ExpenseKind
from taxflow.extraction.schema import (
    DocumentKind,
    ExtractionResult,
    LineItem,
    MonetaryTotals,
    Party,
)
from taxflow.shared.config import Settings

INVOICE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<Invoice xmlns="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
         xmlns:cac="urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
         xmlns:cbc="urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2">
  <cbc:UBLVersionID>UBL 2.1</cbc:UBLVersionID>
  <cbc:ID>SETP990000001</cbc:ID>
  <cbc:UUID schemeName="CUFE-SHA384">8bb7a1d4c9e0f2</cbc:UUID>
  <cbc:IssueDate>2024-03-15</cbc:IssueDate>
  <cbc:DueDate>2024-04-14</cbc:DueDate>
  <cbc:DocumentCurrencyCode>COP</cbc:DocumentCurrencyCode>
  <cac:AccountingSupplierParty>
    <cac:Party>
      <cac:PartyName>
        <cbc:Name>Consultores Andinos SAS</cbc:Name>
      </cac:PartyName>
      <cac:PostalAddress>
        <cbc:CityName>Bogotá</cbc:CityName>
        <cbc:StreetName>Calle 100</cbc:StreetName>
        <cbc:BuildingNumber>19-61</cbc:BuildingNumber>
        <cbc:CitySubdivisionName>Chicó</cbc:CitySubdivisionName>
      </cac:PostalAddress>
      <cac:PartyTaxScheme>
        <cbc:CompanyID schemeID="7">900.123.456</cbc:CompanyID>
      </cac:PartyTaxScheme>
      <cac:Contact>
        <cbc:Telephone>6015550100</cbc:Telephone>
        <cbc:ElectronicMail>facturacion@andinos.co</cbc:ElectronicMail>
      </cac:Contact>
    </cac:Party>
  </cac:AccountingSupplierParty>
  <cac:AccountingCustomerParty>
    <cac:Party>
      <cac:PartyName>
        <cbc:Name>Bancolombia SA</cbc:Name>
      </cac:PartyName>
      <cac:PostalAddress>
        <cbc:CityName>Medellín</cbc:CityName>
        <cbc:StreetName>Carrera 48</cbc:StreetName>
        <cbc:BuildingNumber>26-85</cbc:BuildingNumber>
      </cac:PostalAddress>
      <cac:PartyTaxScheme>
        <cbc:CompanyID schemeID="4">860028462</cbc:CompanyID>
      </cac:PartyTaxScheme>
    </cac:Party>
  </cac:AccountingCustomerParty>
  <cac:LegalMonetaryTotal>
    <cbc:LineExtensionAmount currencyID="COP">1000000.00</cbc:LineExtensionAmount>
    <cbc:AllowanceTotalAmount currencyID="COP">0.00</cbc:AllowanceTotalAmount>
    <cbc:PayableAmount currencyID="COP">1190000.00</cbc:PayableAmount>
  </cac:LegalMonetaryTotal>
  <cac:InvoiceLine>
    <cbc:ID>1</cbc:ID>
    <cbc:InvoicedQuantity unitCode="HUR">10</cbc:InvoicedQuantity>
    <cbc:LineExtensionAmount currencyID="COP">600000.00</cbc:LineExtensionAmount>
    <cac:AllowanceCharge>
      <cbc:ChargeIndicator>false</cbc:ChargeIndicator>
      <cbc:MultiplierFactorNumeric>0.05</cbc:MultiplierFactorNumeric>
      <cbc:Amount currencyID="COP">30000.00</cbc:Amount>
    </cac:AllowanceCharge>
    <cac:TaxTotal>
      <cbc:TaxAmount currencyID="COP">114000.00</cbc:TaxAmount>
      <cac:TaxSubtotal>
        <cbc:TaxableAmount currencyID="COP">600000.00</cbc:TaxableAmount>
        <cbc:TaxAmount currencyID="COP">114000.00</cbc:TaxAmount>
        <cac:TaxCategory>
          <cbc:Percent>19.00</cbc:Percent>
        </cac:TaxCategory>
      </cac:TaxSubtotal>
    </cac:TaxTotal>
    <cac:Item>
      <cbc:Description>Consultoría tributaria</cbc:Description>
      <cac:SellersItemIdentification>
        <cbc:ID>SRV-001</cbc:ID>
      </cac:SellersItemIdentification>
    </cac:Item>
    <cac:Price>
      <cbc:PriceAmount currencyID="COP">60000.00</cbc:PriceAmount>
    </cac:Price>
  </cac:InvoiceLine>
  <cac:InvoiceLine>
    <cbc:ID>2</cbc:ID>
    <cbc:LineExtensionAmount currencyID="COP">400000.00</cbc:LineExtensionAmount>
    <cac:Item>
      <cbc:Description>Revisión de estados financieros</cbc:Description>
    </cac:Item>
    <cac:Price>
      <cbc:PriceAmount currencyID="COP">400000.00</cbc:PriceAmount>
    </cac:Price>
  </cac:InvoiceLine>
</Invoice>
"""


@pytest.fixture
def invoice_xml() -> str:
    """Complete UBL 2.1 invoice from a Bogotá consultancy to a large taxpayer."""
    return INVOICE_XML


@pytest.fixture
def settings() -> Settings:
    """Create test settings with fast retries and no queue."""
    return Settings(
        classification_provider="openai",
        classification_timeout_seconds=1.0,
        vision_timeout_seconds=2.0,
        job_max_attempts=3,
        retry_backoff_seconds=0.0,
        queue_enabled=False,
    )


@pytest.fixture
def extraction() -> ExtractionResult:
    """Extraction result for a 1,000,000 COP professional services invoice."""
    return ExtractionResult(
        document_id="SETP990000001",
        document_kind=DocumentKind.INVOICE,
        fiscal_code="8bb7a1d4c9e0f2",
        issue_date=date(2024, 3, 15),
        supplier=Party(tax_id="900123456", name="Consultores Andinos SAS", address="Calle 100"),
        buyer=Party(tax_id="860028462", name="Bancolombia SA", address="Carrera 48"),
        totals=MonetaryTotals(
            subtotal=Decimal("1000000"),
            tax_amount=Decimal("190000"),
            total_amount=Decimal("1190000"),
        ),
        line_items=(
            LineItem(
                line_number=1,
                description="Consultoría tributaria",
                quantity=Decimal("1"),
                unit_price=Decimal("1000000"),
                line_total=Decimal("1000000"),
            ),
        ),
        confidence=1.0,
    )


@pytest.fixture
def classification() -> Classification:
    """Professional services expense billed in Bogotá."""
    return Classification(
        expense_kind=ExpenseKind.SERVICES,
        is_large_taxpayer=False,
        city_code="11001",
        expense_category="professional_services",
        confidence=0.95,
        rationale="Tax consulting services",
    )
