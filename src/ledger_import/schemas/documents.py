"""
Canonical extracted document (SSOT).

Receipts and invoices both map into ExtractedDocument. A document is only
ever persisted with a non-null date and total amount.
"""

from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional


class DocumentType(str, Enum):
    """Kind of uploaded document."""

    RECEIPT = "receipt"
    INVOICE = "invoice"


# Extraction key (model output, camelCase) -> ExtractedDocument attribute
EXTRACTION_FIELD_MAP = {
    "merchantName": "merchant_name",
    "vendorName": "vendor_name",
    "customerName": "customer_name",
    "date": "date",
    "dueDate": "due_date",
    "subtotal": "subtotal",
    "taxAmount": "tax_amount",
    "gstAmount": "gst_amount",
    "hstAmount": "hst_amount",
    "pstAmount": "pst_amount",
    "salesTaxAmount": "sales_tax_amount",
    "tipAmount": "tip_amount",
    "discountAmount": "discount_amount",
    "totalAmount": "total_amount",
    "amountPaid": "amount_paid",
    "amountDue": "amount_due",
    "invoiceNumber": "invoice_number",
    "poNumber": "po_number",
    "receiptNumber": "receipt_number",
    "paymentTerms": "payment_terms",
    "direction": "direction",
    "paymentMethod": "payment_method",
    "description": "description",
    "category": "category",
    "currency": "currency",
    "businessPurpose": "business_purpose",
    "isBusinessExpense": "is_business_expense",
}

MONEY_ATTRIBUTES = {
    "subtotal",
    "tax_amount",
    "gst_amount",
    "hst_amount",
    "pst_amount",
    "sales_tax_amount",
    "tip_amount",
    "discount_amount",
    "total_amount",
    "amount_paid",
    "amount_due",
}


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a model-provided number to a 2-decimal Decimal."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


@dataclass
class ExtractedDocument:
    """Normalized receipt or invoice extraction."""

    document_type: DocumentType
    date: Optional[str] = None  # YYYY-MM-DD
    total_amount: Optional[Decimal] = None
    currency: str = "USD"

    # Parties
    merchant_name: Optional[str] = None
    vendor_name: Optional[str] = None
    customer_name: Optional[str] = None

    # Amount breakdown
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    gst_amount: Optional[Decimal] = None
    hst_amount: Optional[Decimal] = None
    pst_amount: Optional[Decimal] = None
    sales_tax_amount: Optional[Decimal] = None
    tip_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    amount_paid: Optional[Decimal] = None
    amount_due: Optional[Decimal] = None

    # References
    receipt_number: Optional[str] = None
    invoice_number: Optional[str] = None
    po_number: Optional[str] = None
    due_date: Optional[str] = None
    payment_terms: Optional[str] = None
    direction: Optional[str] = None  # invoices: "in" or "out"
    payment_method: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None  # model's free-text guess
    business_purpose: Optional[str] = None

    # Context
    country: Optional[str] = None
    province: Optional[str] = None

    # Categorization
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    business_id: Optional[int] = None
    is_business_expense: bool = False
    needs_review: bool = False
    categorization_source: Optional[str] = None

    # Provenance
    file_name: Optional[str] = None
    extraction_confidence: float = 0.0
    provider: Optional[str] = None
    prompt_version: Optional[str] = None

    @property
    def party_name(self) -> Optional[str]:
        """Merchant for receipts, vendor for invoices."""
        return self.merchant_name or self.vendor_name

    @classmethod
    def from_extraction(
        cls,
        document_type: DocumentType,
        data: dict[str, Any],
        **context: Any,
    ) -> "ExtractedDocument":
        """Build from validated model output (camelCase keys)."""
        values: dict[str, Any] = {}
        for key, attribute in EXTRACTION_FIELD_MAP.items():
            if key not in data or data[key] is None:
                continue
            raw = data[key]
            if attribute in MONEY_ATTRIBUTES:
                values[attribute] = to_decimal(raw)
            elif isinstance(raw, str):
                values[attribute] = raw.strip() or None
            else:
                values[attribute] = raw
        if values.get("currency") is None:
            values.pop("currency", None)
        values.update(context)
        return cls(document_type=document_type, **values)

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, Enum):
                value = value.value
            result[f.name] = value
        return result
