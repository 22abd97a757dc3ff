"""Services that drive import batches."""

from ledger_import.services.batch_orchestrator import (
    BatchOrchestrator,
    backoff_seconds,
    classify_error,
    summarize_batch,
)

__all__ = ["BatchOrchestrator", "backoff_seconds", "classify_error", "summarize_batch"]
