"""
Exception hierarchy for the import pipeline.

Provider errors are absorbed by the router and only surface as the final
outcome of a fallback chain. Document, mapping and fetch errors are recorded
per batch item; they never abort a batch.
"""

from __future__ import annotations

from enum import Enum

# Maximum characters of raw model output carried on parse/validation errors
PREVIEW_CHARS = 200


class ErrorKind(str, Enum):
    """Failure classification for a single provider attempt."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    EMPTY_RESPONSE = "empty_response"
    JSON_PARSE = "json_parse"
    SCHEMA_VALIDATION = "schema_validation"
    PROVIDER_ERROR = "provider_error"
    NO_PROVIDERS = "no_providers"

    @property
    def is_transient(self) -> bool:
        """True for failures that a later retry of the whole job may fix."""
        return self in (
            ErrorKind.NETWORK,
            ErrorKind.RATE_LIMIT,
            ErrorKind.TIMEOUT,
            ErrorKind.EMPTY_RESPONSE,
            ErrorKind.NO_PROVIDERS,
        )


def preview(text: str | None, limit: int = PREVIEW_CHARS) -> str:
    """Truncate raw model output for logs and error messages."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


class LedgerImportError(Exception):
    """Base exception for the import pipeline."""

    pass


# Provider errors


class ProviderError(LedgerImportError):
    """A single provider attempt failed."""

    def __init__(self, provider: str, message: str, kind: ErrorKind = ErrorKind.PROVIDER_ERROR):
        self.provider = provider
        self.kind = kind
        self.message = message
        super().__init__(f"{provider}: {message}")


class ProviderTransientError(ProviderError):
    """Network failure, timeout or rate limit."""

    pass


class ProviderEmptyResponse(ProviderError):
    """Provider answered without any content."""

    def __init__(self, provider: str, message: str = "Empty response from provider"):
        super().__init__(provider, message, ErrorKind.EMPTY_RESPONSE)


class ProviderRequestError(ProviderError):
    """Provider rejected the request (non-retryable HTTP status)."""

    def __init__(self, provider: str, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(provider, f"HTTP {status_code}: {message}", ErrorKind.PROVIDER_ERROR)


class StructuredOutputError(LedgerImportError):
    """Model output could not be turned into a schema-conforming value."""

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, raw_text: str | None = None):
        self.message = message
        self.preview = preview(raw_text)
        super().__init__(message)


class ResponseParseError(StructuredOutputError):
    """Model output is not valid JSON."""

    kind = ErrorKind.JSON_PARSE


class SchemaValidationError(StructuredOutputError):
    """Model output is JSON but does not match the requested schema."""

    kind = ErrorKind.SCHEMA_VALIDATION

    def __init__(self, message: str, raw_text: str | None = None, path: str = "$"):
        self.path = path
        super().__init__(f"{path}: {message}", raw_text)


class ProviderExhaustedError(LedgerImportError):
    """Every provider in the chain failed for one request."""

    def __init__(self, message: str, kind: ErrorKind | None):
        self.message = message
        self.kind = kind
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind is not None and self.kind.is_transient


# Document / batch errors


class ExtractionValidationError(LedgerImportError):
    """Extracted document is missing required fields."""

    def __init__(self, missing_fields: list[str], document_type: str = "document"):
        self.missing_fields = list(missing_fields)
        self.document_type = document_type
        super().__init__(
            f"Invalid {document_type} data: missing required fields: "
            f"{', '.join(self.missing_fields)}"
        )


class MappingDetectionError(LedgerImportError):
    """No usable column mapping could be derived for a spreadsheet."""

    pass


class DuplicateFileError(LedgerImportError):
    """File content was already imported by this user."""

    def __init__(self, file_hash: str, existing_item_id: int | None = None):
        self.file_hash = file_hash
        self.existing_item_id = existing_item_id
        super().__init__(f"Duplicate file {file_hash[:12]} (first seen in item {existing_item_id})")


class BlobFetchError(LedgerImportError):
    """Uploaded file could not be fetched from the blob store."""

    def __init__(self, url: str, message: str, status_code: int | None = None, network: bool = False):
        self.url = url
        self.status_code = status_code
        self.network = network
        super().__init__(f"Failed to fetch {url}: {message}")

    @property
    def is_transient(self) -> bool:
        """True for timeouts, connection failures, 429 and 5xx responses."""
        if self.status_code is not None:
            return self.status_code == 429 or self.status_code >= 500
        return self.network


class UnsupportedFileError(LedgerImportError):
    """File format cannot be handled for the requested import type."""

    pass
