"""
Spreadsheet reading for bank statement imports.

CSV files are decoded with BOM handling and a sniffed dialect; XLSX files are
read with openpyxl (first worksheet, cached values only) and legacy XLS files
with xlrd. All produce a list of rows of raw cell values with empty cells as "".
"""

import csv
import io
import logging
from pathlib import Path
from typing import Any

import xlrd
from openpyxl import load_workbook

from ledger_import.errors import UnsupportedFileError

logger = logging.getLogger(__name__)

PREVIEW_ROW_LIMIT = 20

CSV_EXTENSIONS = {".csv", ".txt", ".tsv"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm"}
LEGACY_EXCEL_EXTENSIONS = {".xls"}
SPREADSHEET_EXTENSIONS = CSV_EXTENSIONS | EXCEL_EXTENSIONS | LEGACY_EXCEL_EXTENSIONS

# Encodings tried in order for CSV files (latin-1 is the final fallback)
CSV_ENCODINGS = ("utf-8-sig", "cp1252")


def is_spreadsheet_file(file_name: str) -> bool:
    """Check whether a file name looks like a supported spreadsheet."""
    return Path(file_name).suffix.lower() in SPREADSHEET_EXTENSIONS


def _strip_trailing(row: list[Any]) -> list[Any]:
    # Trailing empty cells are padding from the sheet dimension
    while row and row[-1] == "":
        row.pop()
    return row


def _is_blank(row: list[Any]) -> bool:
    return all(cell == "" for cell in row)


def _clean_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return value


def _decode(data: bytes) -> str:
    for encoding in CSV_ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1")


def read_csv(data: bytes) -> list[list[Any]]:
    """Parse CSV bytes into rows of stripped strings."""
    text = _decode(data)
    sample = text[:4096]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel

    rows = []
    for raw in csv.reader(io.StringIO(text), dialect):
        row = [_clean_cell(cell) for cell in raw]
        if row and not _is_blank(row):
            rows.append(row)
    return rows


def read_xlsx(data: bytes) -> list[list[Any]]:
    """Parse the first worksheet of an XLSX workbook."""
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise UnsupportedFileError(f"Could not open workbook: {e}") from e

    try:
        sheet = workbook.worksheets[0]
        rows = []
        for values in sheet.iter_rows(values_only=True):
            row = _strip_trailing([_clean_cell(cell) for cell in values])
            if row:
                rows.append(row)
        return rows
    finally:
        workbook.close()



def _xls_cell(cell: xlrd.sheet.Cell, datemode: int) -> Any:
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate_as_datetime(cell.value, datemode)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return ""
    return _clean_cell(cell.value)


def read_xls(data: bytes) -> list[list[Any]]:
    """Parse the first worksheet of a legacy (BIFF) XLS workbook."""
    try:
        workbook = xlrd.open_workbook(file_contents=data, on_demand=True)
    except Exception as e:
        raise UnsupportedFileError(f"Could not open workbook: {e}") from e

    try:
        sheet = workbook.sheet_by_index(0)
        rows = []
        for index in range(sheet.nrows):
            row = _strip_trailing([_xls_cell(cell, workbook.datemode) for cell in sheet.row(index)])
            if row:
                rows.append(row)
        return rows
    finally:
        workbook.release_resources()


def read_spreadsheet(data: bytes, file_name: str) -> list[list[Any]]:
    """
    Read spreadsheet bytes into raw rows.

    Args:
        data: File content
        file_name: Original file name (used for format detection)

    Returns:
        Rows of raw cell values; blank rows dropped, empty cells as ""

    Raises:
        UnsupportedFileError: If the file type is not a spreadsheet
    """
    suffix = Path(file_name).suffix.lower()
    if suffix in CSV_EXTENSIONS:
        rows = read_csv(data)
    elif suffix in EXCEL_EXTENSIONS:
        rows = read_xlsx(data)
    elif suffix in LEGACY_EXCEL_EXTENSIONS:
        rows = read_xls(data)
    else:
        raise UnsupportedFileError(f"Unsupported spreadsheet format: {file_name}")

    logger.debug("Read %d rows from %s", len(rows), file_name)
    return rows


def preview_rows(rows: list[list[Any]], limit: int = PREVIEW_ROW_LIMIT) -> list[list[Any]]:
    """First ``limit`` rows of a sheet."""
    return rows[:limit]
