"""
Invoice processor.

Invoices add references (invoice/PO number), payment state (paid, due,
terms) and a direction: "out" for bills the user pays, "in" for invoices the
user issued.
"""

from ledger_import.extractors.base import BaseDocumentProcessor
from ledger_import.schemas.documents import DocumentType, ExtractedDocument


class InvoiceProcessor(BaseDocumentProcessor):
    @property
    def document_type(self) -> DocumentType:
        return DocumentType.INVOICE

    @property
    def required_fields(self) -> list[str]:
        return ["date", "totalAmount"]

    @property
    def preferred_fields(self) -> list[str]:
        return ["vendorName"]

    @property
    def base_optional_fields(self) -> list[str]:
        return [
            "invoiceNumber",
            "poNumber",
            "dueDate",
            "subtotal",
            "taxAmount",
            "amountPaid",
            "amountDue",
            "paymentTerms",
            "customerName",
            "direction",
            "description",
            "category",
            "currency",
        ]

    def transaction_type(self, document: ExtractedDocument) -> str:
        # Issued invoices are money coming in
        return "income" if document.direction == "in" else "expense"
