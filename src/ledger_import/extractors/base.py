"""
Base document processor and common types.

A processor turns one uploaded image or PDF into an ExtractedDocument:
fetch bytes, build a field-scoped prompt and schema, run schema-constrained
extraction, validate required fields, then categorize.
"""

import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from ledger_import.blob_client import BlobClient
from ledger_import.categorization import CategorizationEngine, UserContext
from ledger_import.errors import ExtractionValidationError
from ledger_import.llm import schema as s
from ledger_import.llm.engine import ExtractionEngine
from ledger_import.llm.prompts import PROMPT_VERSION, DocumentExtractionPrompt
from ledger_import.llm.types import ImagePayload
from ledger_import.mapping.conversions import parse_date
from ledger_import.schemas.documents import (
    EXTRACTION_FIELD_MAP,
    MONEY_ATTRIBUTES,
    DocumentType,
    ExtractedDocument,
    to_decimal,
)

logger = logging.getLogger(__name__)

# Confidence recorded for a successful, validated model extraction
EXTRACTION_CONFIDENCE = 0.9

DATE_KEYS = {"date", "dueDate"}
MONEY_KEYS = {key for key, attribute in EXTRACTION_FIELD_MAP.items() if attribute in MONEY_ATTRIBUTES}

CANADIAN_TAX_FIELDS = ["gstAmount", "hstAmount", "pstAmount"]
US_TAX_FIELDS = ["salesTaxAmount"]


@dataclass
class ProcessorContext:
    """Per-user context shared by processors of one batch."""

    user_id: str
    batch_id: Optional[int] = None
    country: Optional[str] = None
    province: Optional[str] = None
    currency: str = "USD"
    usage_type: Optional[str] = None
    min_confidence: float = 0.7
    include_ai_categorization: bool = True


def mime_type_for(file_name: str) -> str:
    """MIME type sent with the document image."""
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def normalize_date(value: Any) -> Optional[str]:
    """Model date output as YYYY-MM-DD, or None when unparseable."""
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def field_schema(name: str) -> s.SchemaNode:
    """Abstract schema for one extraction field (always nullable)."""
    if name in MONEY_KEYS:
        node = s.number(f"{name} as a number without currency symbols")
    elif name in DATE_KEYS:
        node = s.string("Date in YYYY-MM-DD format")
    elif name == "direction":
        node = s.enum(["in", "out"], "'out' if the user pays this invoice, 'in' if the user issued it")
    elif name == "isBusinessExpense":
        node = s.boolean("True if this looks like a business expense")
    else:
        node = s.string()
    return s.nullable(node)


class BaseDocumentProcessor(ABC):
    """
    Base class for document processors.

    Subclasses declare the document type and the three field tiers:
    required (must be present), preferred (strongly recommended) and
    optional (best effort).
    """

    def __init__(
        self,
        engine: ExtractionEngine,
        categorizer: Optional[CategorizationEngine],
        blob_client: Optional[BlobClient],
        context: ProcessorContext,
        prompt: Optional[DocumentExtractionPrompt] = None,
    ):
        self.engine = engine
        self.categorizer = categorizer
        self.blob_client = blob_client
        self.context = context
        self.prompt = prompt or DocumentExtractionPrompt()

    @property
    @abstractmethod
    def document_type(self) -> DocumentType:
        pass

    @property
    @abstractmethod
    def required_fields(self) -> list[str]:
        pass

    @property
    @abstractmethod
    def preferred_fields(self) -> list[str]:
        pass

    @property
    @abstractmethod
    def base_optional_fields(self) -> list[str]:
        """Optional fields before country-specific tax fields are added."""
        pass

    @property
    def optional_fields(self) -> list[str]:
        fields = list(self.base_optional_fields)
        if self.context.country == "CA":
            fields.extend(CANADIAN_TAX_FIELDS)
        elif self.context.country == "US":
            fields.extend(US_TAX_FIELDS)
        return fields

    @property
    def fields_to_extract(self) -> list[str]:
        seen: list[str] = []
        for name in self.required_fields + self.preferred_fields + self.optional_fields:
            if name not in seen:
                seen.append(name)
        return seen

    def transaction_type(self, document: ExtractedDocument) -> str:
        """Income/expense direction used for categorization."""
        return "expense"

    def build_schema(self) -> s.ObjectSchema:
        """
        Schema over every field to extract.

        Required fields are nullable too: the model reports absence with
        null and validation rejects the result afterwards.
        """
        return s.obj({name: field_schema(name) for name in self.fields_to_extract})

    def build_tax_instructions(self) -> str:
        fields = set(self.fields_to_extract)
        if "taxAmount" not in fields and "gstAmount" not in fields:
            return ""
        if self.context.country == "CA":
            return """Extract Canadian tax fields if present:
- GST (Goods and Services Tax) - federal tax
- HST (Harmonized Sales Tax) - combined GST+PST in some provinces
- PST (Provincial Sales Tax) - provincial tax
If only a total tax is shown, extract it as taxAmount."""
        if self.context.country == "US":
            return "Extract US sales tax if present. Sales tax varies by state."
        return "Extract tax amount if present."

    def build_prompt(self, schema: s.ObjectSchema) -> str:
        return self.prompt.format(
            document_type=self.document_type.value,
            required_fields=self.required_fields,
            preferred_fields=self.preferred_fields,
            optional_fields=self.optional_fields,
            json_schema=s.to_json_schema(schema),
            currency=self.context.currency,
            tax_instructions=self.build_tax_instructions(),
        )

    def validate_extracted_data(self, data: dict[str, Any]) -> None:
        """
        Check that every required field is present and parseable.

        Raises:
            ExtractionValidationError: Listing every missing required field
        """
        missing = []
        for name in self.required_fields:
            value = data.get(name)
            if name in DATE_KEYS:
                value = normalize_date(value)
            elif name in MONEY_KEYS:
                value = to_decimal(value)
            elif isinstance(value, str):
                value = value.strip()
            if value is None or value == "":
                missing.append(name)
        if missing:
            raise ExtractionValidationError(missing, self.document_type.value)

    def process_document(
        self,
        file_url: str,
        file_name: str,
        file_bytes: Optional[bytes] = None,
    ) -> ExtractedDocument:
        """
        Extract a document from an uploaded file.

        Args:
            file_url: Blob URL of the upload
            file_name: Original file name
            file_bytes: Already fetched content (skips the blob fetch)

        Returns:
            Validated ExtractedDocument with categorization applied

        Raises:
            BlobFetchError: If the file cannot be fetched
            ProviderExhaustedError: If every provider failed
            ExtractionValidationError: If required fields are missing
        """
        logger.info("Processing %s %s", self.document_type.value, file_name)

        if file_bytes is None:
            if self.blob_client is None:
                raise ValueError("No file bytes given and no blob client configured")
            file_bytes = self.blob_client.fetch(file_url)

        schema = self.build_schema()
        image = ImagePayload(data=file_bytes, mime_type=mime_type_for(file_name))
        result = self.engine.extract(self.build_prompt(schema), schema, image=image)
        data = dict(result.unwrap())

        self.validate_extracted_data(data)
        for key in DATE_KEYS:
            if key in data:
                data[key] = normalize_date(data[key])

        document = ExtractedDocument.from_extraction(
            self.document_type,
            data,
            file_name=file_name,
            country=self.context.country,
            province=self.context.province,
            extraction_confidence=EXTRACTION_CONFIDENCE,
            provider=result.provider,
            prompt_version=PROMPT_VERSION,
        )
        if not data.get("currency"):
            document.currency = self.context.currency
        document.currency = document.currency.upper()

        self.categorize_document(document)
        return document

    def categorize_document(self, document: ExtractedDocument) -> None:
        """Apply categorization. Failures leave the category unset."""
        if self.categorizer is None:
            return
        if not document.party_name and not document.description:
            return

        transaction_type = self.transaction_type(document)
        amount = document.total_amount or Decimal("0")
        signed = -abs(amount) if transaction_type == "expense" else abs(amount)
        try:
            result = self.categorizer.categorize(
                document.party_name,
                document.description,
                signed,
                UserContext(
                    user_id=self.context.user_id,
                    country=self.context.country,
                    usage_type=self.context.usage_type,
                    transaction_type=transaction_type,
                    min_confidence=self.context.min_confidence,
                    include_ai=self.context.include_ai_categorization,
                ),
            )
        except Exception as e:
            logger.warning("Categorization failed for %s: %s", document.file_name, e)
            return

        document.category_id = result.category_id
        document.category_name = result.category_name
        document.business_id = result.business_id
        document.is_business_expense = document.is_business_expense or result.is_business_expense
        document.needs_review = result.needs_review
        document.categorization_source = result.source
