"""
Document processors for receipts and invoices.
"""

from .base import BaseDocumentProcessor, ProcessorContext, mime_type_for
from .invoice import InvoiceProcessor
from .receipt import ReceiptProcessor
from .router import ProcessorRouter, detect_document_type

__all__ = [
    "BaseDocumentProcessor",
    "InvoiceProcessor",
    "ProcessorContext",
    "ProcessorRouter",
    "ReceiptProcessor",
    "detect_document_type",
    "mime_type_for",
]
