"""
SSOT (Single Source of Truth) schemas for the pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import compute_file_hash, short_hash
from .documents import DocumentType, ExtractedDocument
from .jobs import (
    ActivityType,
    BatchStatus,
    BatchSummary,
    ErrorCode,
    ImportJobPayload,
    ImportType,
    ItemOutcome,
    ItemStatus,
    JobResult,
)
from .mapping import (
    MAPPING_FIELDS,
    ConversionInstruction,
    FieldMapping,
    MappingConfig,
    NormalizedTransaction,
)

__all__ = [
    # Documents
    "DocumentType",
    "ExtractedDocument",
    # Column mapping
    "MAPPING_FIELDS",
    "ConversionInstruction",
    "FieldMapping",
    "MappingConfig",
    "NormalizedTransaction",
    # Jobs
    "ActivityType",
    "BatchStatus",
    "BatchSummary",
    "ErrorCode",
    "ImportJobPayload",
    "ImportType",
    "ItemOutcome",
    "ItemStatus",
    "JobResult",
    # Dedupe
    "compute_file_hash",
    "short_hash",
]
