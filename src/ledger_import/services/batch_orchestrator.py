"""
Batch Orchestrator Service.

Drives import batches through the item state machine:

    QUEUED -> PROCESSING -> COMPLETED (processed | duplicate_detected)
                         -> FAILED
                         -> QUEUED (retry scheduled with backoff)

Features:
- At-least-once safe per-item entry point (process_item)
- File-level dedupe per user via atomic hash claims
- Bounded retries with exponential backoff for transient failures
- Append-only activity log per batch
- Bounded worker pool for whole-batch runs
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Optional, Union
from urllib.parse import urlparse

from ledger_import.blob_client import BlobClient
from ledger_import.categorization import CategorizationEngine, UserContext
from ledger_import.config import Config
from ledger_import.errors import (
    BlobFetchError,
    DuplicateFileError,
    ExtractionValidationError,
    MappingDetectionError,
    ProviderExhaustedError,
    UnsupportedFileError,
)
from ledger_import.extractors import ProcessorContext, ProcessorRouter
from ledger_import.llm.engine import ExtractionEngine
from ledger_import.mapping import (
    ColumnMappingEngine,
    MappingContext,
    apply_mapping,
    is_spreadsheet_file,
    preview_rows,
    read_spreadsheet,
)
from ledger_import.mapping.engine import STATEMENT_TYPES
from ledger_import.schemas import (
    ActivityType,
    BatchStatus,
    BatchSummary,
    DocumentType,
    ErrorCode,
    ExtractedDocument,
    ImportJobPayload,
    ImportType,
    ItemOutcome,
    ItemStatus,
    JobResult,
    NormalizedTransaction,
)
from ledger_import.schemas.dedupe import compute_file_hash, short_hash
from ledger_import.state_store.sqlite_store import BatchItemRecord, StateStore, format_timestamp

logger = logging.getLogger(__name__)

DOCUMENT_IMPORT_TYPES = {
    ImportType.RECEIPTS: DocumentType.RECEIPT,
    ImportType.INVOICES: DocumentType.INVOICE,
}


def file_format_for(file_name: str) -> str:
    """Lowercase extension without the dot ("" when there is none)."""
    return PurePosixPath(file_name).suffix.lstrip(".").lower()


def file_name_for(file_url: str) -> str:
    """Last path segment of a URL or path."""
    path = urlparse(file_url).path or file_url
    return PurePosixPath(path).name or file_url


def backoff_seconds(retry_count: int, base: float, maximum: float) -> float:
    """Delay before retry number retry_count + 1: base * 2**retry_count, capped."""
    return min(base * (2**retry_count), maximum)


def classify_error(error: Exception) -> tuple[ErrorCode, bool]:
    """
    Map an item failure to its error code and whether a retry may help.

    Returns:
        (error_code, retryable)
    """
    if isinstance(error, ExtractionValidationError):
        return ErrorCode.EXTRACTION_VALIDATION, False
    if isinstance(error, MappingDetectionError):
        return ErrorCode.MAPPING_DETECTION, False
    if isinstance(error, ProviderExhaustedError):
        return ErrorCode.PROVIDER_EXHAUSTED, error.is_transient
    if isinstance(error, BlobFetchError):
        return ErrorCode.BLOB_FETCH, error.is_transient
    if isinstance(error, UnsupportedFileError):
        return ErrorCode.UNSUPPORTED_FILE, False
    return ErrorCode.INTERNAL_ERROR, False


def stored_result(item: BatchItemRecord) -> JobResult:
    """JobResult reconstructed from a terminal item."""
    if item.status == ItemStatus.COMPLETED:
        return JobResult(
            success=True,
            batch_item_id=item.id,
            document_id=item.document_id,
            duplicate=item.outcome == ItemOutcome.DUPLICATE_DETECTED,
        )
    return JobResult(
        success=False,
        batch_item_id=item.id,
        error=item.error_message,
        error_code=item.error_code,
    )


class BatchOrchestrator:
    """
    Service for running import batches.

    Owns the per-item pipeline (fetch, dedupe, dispatch, persist) and the
    batch-level loop that feeds items to a bounded worker pool.
    """

    def __init__(
        self,
        store: StateStore,
        engine: ExtractionEngine,
        blob_client: BlobClient,
        config: Config,
    ):
        """
        Initialize the batch orchestrator.

        Args:
            store: State store for batches, items and results
            engine: Extraction engine over the provider chain
            blob_client: Client used to fetch uploaded files
            config: Application configuration
        """
        self.store = store
        self.engine = engine
        self.blob_client = blob_client
        self.config = config

        ai_engine = engine if config.categorization.include_ai else None
        self.categorizer = CategorizationEngine(ai_engine, store)
        self.mapper = ColumnMappingEngine(engine)
        self.processors = ProcessorRouter(engine, self.categorizer, blob_client)
        self._sleep = time.sleep

    # Batch submission

    def create_batch(
        self,
        user_id: str,
        import_type: ImportType,
        files: list[tuple[str, str]],
        source_format: Optional[str] = None,
    ) -> tuple[int, list[ImportJobPayload]]:
        """
        Create a batch and the job payloads for its items.

        Args:
            user_id: Owner of the batch
            import_type: What the user said the files contain
            files: (file_name, file_url) pairs in upload order
            source_format: Statement type hint for spreadsheets

        Returns:
            (batch_id, payloads), one payload per file
        """
        import_type = ImportType(import_type)
        batch_id, items = self.store.create_batch(
            user_id,
            import_type.value,
            [(name, url, file_format_for(name)) for name, url in files],
            source_format=source_format,
            max_retries=self.config.batch.max_retries,
        )
        self.store.log_activity(
            batch_id,
            ActivityType.BATCH_CREATED.value,
            f"Batch created with {len(items)} file(s)",
            details={"import_type": import_type.value, "source_format": source_format},
        )
        logger.info(f"Created batch {batch_id} ({import_type.value}) with {len(items)} item(s)")

        payloads = [
            ImportJobPayload(
                batch_id=batch_id,
                batch_item_id=item.id,
                file_url=item.file_url,
                file_name=item.file_name,
                file_format=item.file_format,
                user_id=user_id,
                import_type=import_type,
                source_format=source_format,
                order=item.item_order,
            )
            for item in items
        ]
        return batch_id, payloads

    def payload_for(self, item: BatchItemRecord) -> Optional[ImportJobPayload]:
        """Rebuild the job payload of a stored item."""
        batch = self.store.get_batch(item.batch_id)
        if batch is None:
            return None
        return ImportJobPayload(
            batch_id=batch.id,
            batch_item_id=item.id,
            file_url=item.file_url,
            file_name=item.file_name,
            file_format=item.file_format,
            user_id=batch.user_id,
            import_type=ImportType(batch.import_type),
            source_format=batch.source_format,
            order=item.item_order,
        )

    # Per-item entry point

    def process_item(self, payload: ImportJobPayload) -> JobResult:
        """
        Process one batch item.

        Safe under at-least-once delivery: only the caller that moves the
        item from queued to processing does the work; every other delivery
        gets the stored result or an in_progress answer.

        Args:
            payload: Job payload for the item

        Returns:
            JobResult for this delivery
        """
        item_id = payload.batch_item_id
        item = self.store.get_batch_item(item_id)
        if item is None:
            logger.warning(f"Batch item {item_id} not found")
            return JobResult(
                success=False,
                batch_item_id=item_id,
                error=f"Batch item {item_id} not found",
                error_code=ErrorCode.NOT_FOUND.value,
            )
        if item.status.is_terminal:
            logger.debug(f"Item {item_id} already {item.status.value}, returning stored result")
            return stored_result(item)

        batch = self.store.get_batch(payload.batch_id)
        if batch is not None and batch.cancelled and item.status == ItemStatus.QUEUED:
            return JobResult(
                success=False,
                batch_item_id=item_id,
                error="Batch was cancelled",
                error_code=ErrorCode.CANCELLED.value,
            )

        if not self.store.start_item(item_id, stale_before=self._stale_before()):
            current = self.store.get_batch_item(item_id)
            if current is not None and current.status.is_terminal:
                return stored_result(current)
            return JobResult(
                success=False,
                batch_item_id=item_id,
                error="Item is already being processed",
                error_code=ErrorCode.IN_PROGRESS.value,
            )

        reclaimed = item.status == ItemStatus.PROCESSING
        if reclaimed:
            logger.warning(f"Reclaiming item {item_id}, processing since {item.started_at}")
        self.store.log_activity(
            payload.batch_id,
            ActivityType.ITEM_STARTED.value,
            f"Processing {payload.file_name}",
            batch_item_id=item_id,
            details={"attempt": item.retry_count + 1, "reclaimed": reclaimed},
        )
        started = time.monotonic()
        file_hash: Optional[str] = None

        try:
            file_bytes = self.blob_client.fetch(payload.file_url)
            file_hash = compute_file_hash(file_bytes)
            self.store.set_item_file_hash(item_id, file_hash)
            self._claim(payload, file_hash)

            extracted = self._dispatch(payload, file_bytes)
            duration_ms = _elapsed_ms(started)
            if isinstance(extracted, ExtractedDocument):
                document_id = self.store.complete_with_document(
                    payload.user_id, item_id, extracted, file_hash, duration_ms
                )
                persisted = document_id is not None
            else:
                document_id = None
                persisted = (
                    self.store.complete_with_transactions(payload.user_id, item_id, extracted, duration_ms)
                    is not None
                )
        except DuplicateFileError as e:
            return self._complete_duplicate(payload, e, started)
        except Exception as e:
            if file_hash is not None:
                self.store.release_file_hash(payload.user_id, file_hash, item_id)
            return self._handle_failure(payload, item, e, started)

        if not persisted:
            # Reclaimed and finished by another worker meanwhile
            logger.warning(f"Item {item_id} is no longer processing, discarding this result")
            return stored_result(self.store.get_batch_item(item_id))

        self.store.log_activity(
            payload.batch_id,
            ActivityType.ITEM_COMPLETED.value,
            f"Processed {payload.file_name} in {duration_ms} ms",
            batch_item_id=item_id,
            details={"document_id": document_id, "duration_ms": duration_ms},
        )
        logger.info(f"Item {item_id} ({payload.file_name}) processed in {duration_ms} ms")
        return JobResult(success=True, batch_item_id=item_id, document_id=document_id)

    def _claim(self, payload: ImportJobPayload, file_hash: str) -> None:
        owner = self.store.claim_file_hash(payload.user_id, file_hash, payload.batch_item_id)
        if owner is not None:
            raise DuplicateFileError(file_hash, owner)

    def _complete_duplicate(
        self, payload: ImportJobPayload, error: DuplicateFileError, started: float
    ) -> JobResult:
        item_id = payload.batch_item_id
        self.store.complete_item(
            item_id, ItemOutcome.DUPLICATE_DETECTED, duration_ms=_elapsed_ms(started)
        )
        self.store.log_activity(
            payload.batch_id,
            ActivityType.DUPLICATE_DETECTED.value,
            f"{payload.file_name} was already imported",
            batch_item_id=item_id,
            details={
                "file_hash": short_hash(error.file_hash),
                "existing_item_id": error.existing_item_id,
            },
        )
        logger.info(
            f"Item {item_id} is a duplicate of item {error.existing_item_id} "
            f"({short_hash(error.file_hash)})"
        )
        return JobResult(success=True, batch_item_id=item_id, duplicate=True)

    def _handle_failure(
        self,
        payload: ImportJobPayload,
        item: BatchItemRecord,
        error: Exception,
        started: float,
    ) -> JobResult:
        item_id = payload.batch_item_id
        error_code, retryable = classify_error(error)
        message = str(error) or error.__class__.__name__

        if error_code == ErrorCode.INTERNAL_ERROR:
            logger.exception(f"Unexpected error processing item {item_id}")
        else:
            logger.warning(f"Item {item_id} ({payload.file_name}) failed: {message}")

        if retryable and item.can_retry:
            delay = backoff_seconds(
                item.retry_count,
                self.config.batch.backoff_base_seconds,
                self.config.batch.backoff_max_seconds,
            )
            next_attempt = datetime.now(timezone.utc) + timedelta(seconds=delay)
            self.store.requeue_item(item_id, message, error_code.value, format_timestamp(next_attempt))
            self.store.log_activity(
                payload.batch_id,
                ActivityType.ITEM_RETRY_SCHEDULED.value,
                f"Retry {item.retry_count + 1}/{item.max_retries} for {payload.file_name} in {delay:.1f}s",
                batch_item_id=item_id,
                details={"error_code": error_code.value, "delay_seconds": delay},
            )
            return JobResult(
                success=False,
                batch_item_id=item_id,
                error=message,
                error_code=error_code.value,
                retry_scheduled=True,
            )

        self.store.fail_item(item_id, message, error_code.value, _elapsed_ms(started))
        self.store.log_activity(
            payload.batch_id,
            ActivityType.ITEM_FAILED.value,
            f"{payload.file_name} failed: {message}",
            batch_item_id=item_id,
            details={"error_code": error_code.value, "retry_count": item.retry_count},
        )
        return JobResult(
            success=False,
            batch_item_id=item_id,
            error=message,
            error_code=error_code.value,
        )

    # Dispatch

    def _dispatch(
        self, payload: ImportJobPayload, file_bytes: bytes
    ) -> Union[ExtractedDocument, list[NormalizedTransaction]]:
        """Route an item by import type and file format. Returns what should be persisted."""
        spreadsheet = is_spreadsheet_file(payload.file_name)

        if payload.import_type == ImportType.BANK_STATEMENTS:
            if not spreadsheet:
                raise UnsupportedFileError(
                    f"Bank statements must be CSV or Excel files, got {payload.file_name}"
                )
            return self._import_statement(payload, file_bytes)

        if payload.import_type == ImportType.MIXED:
            if spreadsheet:
                return self._import_statement(payload, file_bytes)
            document_type = self.processors.detect_document_type(file_bytes, payload.file_name)
        else:
            if spreadsheet:
                raise UnsupportedFileError(
                    f"{payload.import_type.value} cannot be imported from spreadsheet {payload.file_name}"
                )
            document_type = DOCUMENT_IMPORT_TYPES[payload.import_type]

        processor = self.processors.for_document_type(document_type, self._processor_context(payload))
        return processor.process_document(payload.file_url, payload.file_name, file_bytes=file_bytes)

    def _processor_context(self, payload: ImportJobPayload) -> ProcessorContext:
        defaults = self.config.defaults
        settings = self.store.get_user_settings(payload.user_id)
        return ProcessorContext(
            user_id=payload.user_id,
            batch_id=payload.batch_id,
            country=(settings.country if settings and settings.country else defaults.country),
            province=(settings.province if settings and settings.province else defaults.province),
            currency=(settings.currency if settings and settings.currency else defaults.currency),
            usage_type=settings.usage_type if settings else defaults.usage_type,
            min_confidence=self.config.categorization.min_confidence,
            include_ai_categorization=self.config.categorization.include_ai,
        )

    def _import_statement(
        self, payload: ImportJobPayload, file_bytes: bytes
    ) -> list[NormalizedTransaction]:
        """
        Spreadsheet path: detect the column mapping, normalize rows and
        categorize them.

        Returns:
            Categorized transactions, ready to persist

        Raises:
            MappingDetectionError: No mapping or no valid rows
        """
        rows = read_spreadsheet(file_bytes, payload.file_name)
        if not rows:
            raise MappingDetectionError(f"{payload.file_name} contains no rows")

        context = self._processor_context(payload)
        statement_type = payload.source_format if payload.source_format in STATEMENT_TYPES else None
        categories = self.categorizer.filter.category_names_for_ai(
            payload.user_id, usage_type=context.usage_type
        )
        mapping = self.mapper.detect_mapping(
            preview_rows(rows),
            MappingContext(
                statement_type=statement_type,
                categories=categories,
                data_rows=rows,
                default_currency=context.currency,
            ),
        )
        if mapping is None:
            raise MappingDetectionError(f"Could not detect a column mapping for {payload.file_name}")

        transactions = apply_mapping(rows, mapping)
        if not transactions:
            raise MappingDetectionError(f"No valid transactions found in {payload.file_name}")

        for txn in transactions:
            self._categorize_transaction(txn, context)

        logger.info(f"Normalized {len(transactions)} transaction(s) from {payload.file_name}")
        return transactions

    def _categorize_transaction(self, txn: NormalizedTransaction, context: ProcessorContext) -> None:
        if not txn.merchant_name and not txn.description:
            return
        try:
            result = self.categorizer.categorize(
                txn.merchant_name,
                txn.description,
                txn.amount,
                UserContext(
                    user_id=context.user_id,
                    country=context.country,
                    usage_type=context.usage_type,
                    min_confidence=context.min_confidence,
                    include_ai=context.include_ai_categorization,
                ),
            )
        except Exception as e:
            logger.warning("Categorization failed for row %s: %s", txn.row_index, e)
            return
        txn.category_id = result.category_id
        txn.category_name = result.category_name
        txn.business_id = result.business_id
        txn.is_business_expense = result.is_business_expense
        txn.needs_review = result.needs_review

    # Batch-level operations

    def run_batch(self, batch_id: int) -> BatchSummary:
        """
        Run every item of a batch to a terminal state.

        Items are dispatched to a bounded worker pool as they become due;
        items waiting on backoff are picked up when their time comes. Stops
        early when the batch is cancelled, after in-flight items finish.

        Args:
            batch_id: Batch to run

        Returns:
            Final BatchSummary
        """
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise ValueError(f"Batch {batch_id} not found")

        poll_interval = self.config.batch.poll_interval_seconds
        self.store.update_batch_status(batch_id, BatchStatus.PROCESSING.value)
        self.store.log_activity(
            batch_id,
            ActivityType.BATCH_STARTED.value,
            f"Batch started with {batch.total_files} file(s)",
            details={"max_workers": self.config.batch.max_workers},
        )
        logger.info(f"Running batch {batch_id} ({batch.total_files} item(s))")

        in_flight: dict[int, Future] = {}
        with ThreadPoolExecutor(
            max_workers=self.config.batch.max_workers, thread_name_prefix="ledger-import"
        ) as pool:
            while True:
                cancelled = self._is_cancelled(batch_id)
                if not cancelled:
                    for item in self.store.get_due_items(batch_id, stale_before=self._stale_before()):
                        if item.id in in_flight:
                            continue
                        payload = self.payload_for(item)
                        in_flight[item.id] = pool.submit(self.process_item, payload)

                if not in_flight:
                    if cancelled or self._all_terminal(batch_id):
                        break
                    # Everything left is waiting on backoff
                    self._sleep(poll_interval)
                    continue

                done, _ = wait(list(in_flight.values()), timeout=poll_interval, return_when=FIRST_COMPLETED)
                for item_id, future in list(in_flight.items()):
                    if future not in done:
                        continue
                    del in_flight[item_id]
                    self._collect(item_id, future)

        summary = self.batch_summary(batch_id)
        if summary.status == BatchStatus.COMPLETED:
            self.store.update_batch_status(batch_id, BatchStatus.COMPLETED.value)
            self.store.log_activity(
                batch_id,
                ActivityType.BATCH_COMPLETED.value,
                f"Batch completed: {summary.successful} successful, "
                f"{summary.failed} failed, {summary.duplicate} duplicate",
                details=summary.counts,
            )
        elif summary.status == BatchStatus.CANCELLED:
            self.store.update_batch_status(batch_id, BatchStatus.CANCELLED.value)
            self.store.log_activity(
                batch_id,
                ActivityType.BATCH_CANCELLED.value,
                f"Batch cancelled with {summary.queued} item(s) not processed",
                details=summary.counts,
            )
        logger.info(f"Batch {batch_id} finished as {summary.status.value}: {summary.counts}")
        return summary

    def _collect(self, item_id: int, future: Future) -> None:
        """Record a worker crash that escaped process_item."""
        error = future.exception()
        if error is None:
            return
        logger.error(f"Worker for item {item_id} crashed: {error}")
        self.store.fail_item(item_id, str(error), ErrorCode.INTERNAL_ERROR.value)

    def _stale_before(self) -> str:
        """Processing items started before this timestamp count as abandoned."""
        lease = timedelta(seconds=self.config.batch.stale_after_seconds)
        return format_timestamp(datetime.now(timezone.utc) - lease)

    def _is_cancelled(self, batch_id: int) -> bool:
        batch = self.store.get_batch(batch_id)
        return batch is None or batch.cancelled

    def _all_terminal(self, batch_id: int) -> bool:
        return all(item.status.is_terminal for item in self.store.list_batch_items(batch_id))

    def cancel_batch(self, batch_id: int) -> bool:
        """
        Stop dispatching further items of a batch. In-flight items finish.

        Returns:
            True if the batch was cancelled by this call
        """
        if not self.store.cancel_batch(batch_id):
            return False
        self.store.log_activity(batch_id, ActivityType.BATCH_CANCELLED.value, "Cancellation requested")
        logger.info(f"Batch {batch_id} cancellation requested")
        return True

    def batch_summary(self, batch_id: int) -> BatchSummary:
        return summarize_batch(self.store, batch_id)


def summarize_batch(store: StateStore, batch_id: int) -> BatchSummary:
    """
    Derive the batch status and counts from its items.

    A batch is completed once every item is terminal, regardless of
    how many failed.
    """
    batch = store.get_batch(batch_id)
    if batch is None:
        raise ValueError(f"Batch {batch_id} not found")

    items = store.list_batch_items(batch_id)
    counts = store.count_items_by_status(batch_id)

    if all(item.status.is_terminal for item in items):
        status = BatchStatus.COMPLETED
    elif batch.cancelled and counts[ItemStatus.PROCESSING.value] == 0:
        status = BatchStatus.CANCELLED
    elif any(item.status != ItemStatus.QUEUED or item.retry_count > 0 for item in items):
        status = BatchStatus.PROCESSING
    else:
        status = BatchStatus.QUEUED

    return BatchSummary(
        batch_id=batch_id,
        status=status,
        total=len(items),
        queued=counts[ItemStatus.QUEUED.value],
        processing=counts[ItemStatus.PROCESSING.value],
        successful=counts[ItemStatus.COMPLETED.value],
        failed=counts[ItemStatus.FAILED.value],
        duplicate=counts["duplicate"],
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
