"""
Processor router - picks the document processor for an upload.
"""

import logging
from typing import Optional

from ledger_import.blob_client import BlobClient
from ledger_import.categorization import CategorizationEngine
from ledger_import.extractors.base import BaseDocumentProcessor, ProcessorContext, mime_type_for
from ledger_import.extractors.invoice import InvoiceProcessor
from ledger_import.extractors.receipt import ReceiptProcessor
from ledger_import.llm import schema as s
from ledger_import.llm.engine import ExtractionEngine
from ledger_import.llm.prompts import DocumentTypePrompt
from ledger_import.llm.types import ImagePayload
from ledger_import.schemas.documents import DocumentType

logger = logging.getLogger(__name__)

DOCUMENT_TYPE_SCHEMA = s.obj({"documentType": s.enum([t.value for t in DocumentType])})

PROCESSORS: dict[DocumentType, type[BaseDocumentProcessor]] = {
    DocumentType.RECEIPT: ReceiptProcessor,
    DocumentType.INVOICE: InvoiceProcessor,
}


def detect_document_type(
    engine: ExtractionEngine,
    file_bytes: bytes,
    file_name: str,
    prompt: Optional[DocumentTypePrompt] = None,
) -> DocumentType:
    """
    Classify an uploaded image as receipt or invoice.

    Falls back to receipt when every provider fails.
    """
    prompt = prompt or DocumentTypePrompt()
    result = engine.extract(
        prompt.format(file_name=file_name),
        DOCUMENT_TYPE_SCHEMA,
        image=ImagePayload(data=file_bytes, mime_type=mime_type_for(file_name)),
        max_tokens=64,
    )
    if not result.success:
        logger.warning("Document type detection failed for %s, assuming receipt: %s", file_name, result.error)
        return DocumentType.RECEIPT

    document_type = DocumentType(result.data["documentType"].lower())
    logger.debug("Detected %s for %s", document_type.value, file_name)
    return document_type


class ProcessorRouter:
    """Builds processors for one batch, sharing engine, categorizer and blob client."""

    def __init__(
        self,
        engine: ExtractionEngine,
        categorizer: Optional[CategorizationEngine],
        blob_client: Optional[BlobClient],
    ):
        self.engine = engine
        self.categorizer = categorizer
        self.blob_client = blob_client

    def for_document_type(
        self, document_type: DocumentType, context: ProcessorContext
    ) -> BaseDocumentProcessor:
        processor_class = PROCESSORS[DocumentType(document_type)]
        return processor_class(self.engine, self.categorizer, self.blob_client, context)

    def detect_document_type(self, file_bytes: bytes, file_name: str) -> DocumentType:
        return detect_document_type(self.engine, file_bytes, file_name)
