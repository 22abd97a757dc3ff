"""Spreadsheet column mapping and row normalization."""

from ledger_import.mapping.detection import detect_payment_method
from ledger_import.mapping.engine import (
    POSITIVE_KEEP_THRESHOLD,
    POSITIVE_REVERSE_THRESHOLD,
    ColumnMappingEngine,
    MappingContext,
    apply_mapping,
    positive_share,
)
from ledger_import.mapping.spreadsheet import is_spreadsheet_file, preview_rows, read_spreadsheet

__all__ = [
    "ColumnMappingEngine",
    "MappingContext",
    "POSITIVE_KEEP_THRESHOLD",
    "POSITIVE_REVERSE_THRESHOLD",
    "apply_mapping",
    "detect_payment_method",
    "is_spreadsheet_file",
    "positive_share",
    "preview_rows",
    "read_spreadsheet",
]
