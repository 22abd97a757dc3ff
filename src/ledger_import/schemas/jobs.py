"""
Batch job contracts (SSOT).

ImportJobPayload is what the job substrate delivers to the per-item entry
point; JobResult is what that entry point returns. Both serialize with the
camelCase keys of the job wire format.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ImportType(str, Enum):
    """What the user said the batch contains."""

    RECEIPTS = "receipts"
    BANK_STATEMENTS = "bank_statements"
    INVOICES = "invoices"
    MIXED = "mixed"


class ItemStatus(str, Enum):
    """Batch item lifecycle: QUEUED -> PROCESSING -> COMPLETED | FAILED."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class ItemOutcome(str, Enum):
    """How a completed item ended."""

    PROCESSED = "processed"
    DUPLICATE_DETECTED = "duplicate_detected"


class BatchStatus(str, Enum):
    """Derived batch status. A batch never fails as a whole."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    """Append-only activity log entry types."""

    BATCH_CREATED = "batch_created"
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    BATCH_CANCELLED = "batch_cancelled"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    ITEM_RETRY_SCHEDULED = "item_retry_scheduled"
    DUPLICATE_DETECTED = "duplicate_detected"


class ErrorCode(str, Enum):
    """Stable error codes stored on failed items."""

    EXTRACTION_VALIDATION = "extraction_validation"
    MAPPING_DETECTION = "mapping_detection"
    PROVIDER_EXHAUSTED = "provider_exhausted"
    BLOB_FETCH = "blob_fetch"
    UNSUPPORTED_FILE = "unsupported_file"
    INTERNAL_ERROR = "internal_error"
    IN_PROGRESS = "in_progress"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


@dataclass
class ImportJobPayload:
    """Per-item job delivered at-least-once by the job substrate."""

    batch_id: int
    batch_item_id: int
    file_url: str
    file_name: str
    file_format: str
    user_id: str
    import_type: ImportType
    source_format: Optional[str] = None  # e.g. "credit_card", "bank_account"
    order: int = 0

    def to_dict(self) -> dict:
        return {
            "batchId": self.batch_id,
            "batchItemId": self.batch_item_id,
            "fileUrl": self.file_url,
            "fileName": self.file_name,
            "fileFormat": self.file_format,
            "userId": self.user_id,
            "importType": self.import_type.value,
            "sourceFormat": self.source_format,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImportJobPayload":
        return cls(
            batch_id=int(data["batchId"]),
            batch_item_id=int(data["batchItemId"]),
            file_url=data["fileUrl"],
            file_name=data["fileName"],
            file_format=data.get("fileFormat") or "",
            user_id=str(data["userId"]),
            import_type=ImportType(data["importType"]),
            source_format=data.get("sourceFormat"),
            order=int(data.get("order", 0)),
        )


@dataclass
class JobResult:
    """Return value of the per-item entry point."""

    success: bool
    batch_item_id: int
    document_id: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duplicate: bool = False
    retry_scheduled: bool = False

    def to_dict(self) -> dict:
        data: dict = {"success": self.success, "batchItemId": self.batch_item_id}
        if self.document_id is not None:
            data["documentId"] = self.document_id
        if self.error is not None:
            data["error"] = self.error
        if self.error_code is not None:
            data["errorCode"] = self.error_code
        if self.duplicate:
            data["duplicate"] = True
        if self.retry_scheduled:
            data["retryScheduled"] = True
        return data


@dataclass
class BatchSummary:
    """Derived view of a batch's progress."""

    batch_id: int
    status: BatchStatus
    total: int = 0
    queued: int = 0
    processing: int = 0
    successful: int = 0
    failed: int = 0
    duplicate: int = 0

    @property
    def counts(self) -> dict[str, int]:
        return {"successful": self.successful, "failed": self.failed, "duplicate": self.duplicate}

    def to_dict(self) -> dict:
        return {
            "batchId": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "queued": self.queued,
            "processing": self.processing,
            "successful": self.successful,
            "failed": self.failed,
            "duplicate": self.duplicate,
        }
