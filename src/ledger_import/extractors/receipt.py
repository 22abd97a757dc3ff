"""
Receipt processor: merchant, amounts, taxes, tips and payment method.
"""

from ledger_import.extractors.base import BaseDocumentProcessor
from ledger_import.schemas.documents import DocumentType


class ReceiptProcessor(BaseDocumentProcessor):
    """Extracts receipts. A receipt is always an expense."""

    @property
    def document_type(self) -> DocumentType:
        return DocumentType.RECEIPT

    @property
    def required_fields(self) -> list[str]:
        return ["date", "totalAmount"]

    @property
    def preferred_fields(self) -> list[str]:
        return ["merchantName"]

    @property
    def base_optional_fields(self) -> list[str]:
        return [
            "subtotal",
            "taxAmount",
            "tipAmount",
            "discountAmount",
            "receiptNumber",
            "paymentMethod",
            "category",
            "description",
            "currency",
            "businessPurpose",
            "isBusinessExpense",
        ]
