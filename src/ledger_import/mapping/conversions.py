"""
Cell value conversions for mapped spreadsheet columns.

Each converter takes a raw cell (string, number, datetime or "") and an
optional ConversionInstruction, and returns a normalized value or None when
the cell is empty or unparseable.
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dateutil import parser as date_parser
from openpyxl.utils.datetime import from_excel

from ledger_import.schemas.mapping import ConversionInstruction

logger = logging.getLogger(__name__)

# Excel serials for plausible transaction dates (1954 .. 2064)
EXCEL_SERIAL_MIN = 20000
EXCEL_SERIAL_MAX = 60000

# Date format tokens (longest first) -> strptime directives
_FORMAT_TOKENS = (
    ("YYYY", "%Y"),
    ("MMMM", "%B"),
    ("MMM", "%b"),
    ("YY", "%y"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("M", "%m"),
    ("D", "%d"),
)

_CURRENCY_SYMBOLS = re.compile(r"[^\d.,\-+()]")
_WHITESPACE = re.compile(r"\s+")
_INTERNAL_CODES = (
    re.compile(r"\b(?:REF|REFERENCE|TXN|TRN|AUTH|ID)\s*[:#]?\s*[A-Z0-9\-]{4,}", re.IGNORECASE),
    re.compile(r"#\s*\d{3,}"),
    re.compile(r"\b(?=[A-Z0-9]*\d)[A-Z0-9]{10,}\b"),
    re.compile(r"\b\d{6,}\b"),
)

CENT = Decimal("0.01")


def to_strptime_format(date_format: str) -> str:
    """
    Convert a human date format ("DD/MM/YYYY") to a strptime format.

    Formats already containing "%" directives are returned unchanged.
    """
    if "%" in date_format:
        return date_format

    result = []
    i = 0
    while i < len(date_format):
        for token, directive in _FORMAT_TOKENS:
            if date_format.startswith(token, i):
                result.append(directive)
                i += len(token)
                break
        else:
            result.append(date_format[i])
            i += 1
    return "".join(result)


def _day_first(date_format: Optional[str]) -> bool:
    return bool(date_format) and date_format.upper().lstrip().startswith("D")


def parse_date(value: Any, instruction: Optional[ConversionInstruction] = None) -> Optional[date]:
    """
    Parse a date cell.

    Order: native date/datetime, Excel serial (when flagged or plausible),
    explicit format, ISO 8601, then dateutil's parser.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    date_format = instruction.date_format if instruction else None
    excel_serial = instruction.excel_serial if instruction else False

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if excel_serial or EXCEL_SERIAL_MIN <= value <= EXCEL_SERIAL_MAX:
            converted = from_excel(value)
            return converted.date() if isinstance(converted, datetime) else converted
        value = str(value)

    text = str(value).strip()
    if not text:
        return None

    if excel_serial:
        try:
            converted = from_excel(float(text))
            return converted.date() if isinstance(converted, datetime) else converted
        except (ValueError, TypeError, OverflowError):
            pass

    if date_format:
        try:
            return datetime.strptime(text, to_strptime_format(date_format)).date()
        except ValueError:
            logger.debug("Date %r does not match format %s", text, date_format)

    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass

    try:
        return date_parser.parse(text, dayfirst=_day_first(date_format)).date()
    except (ValueError, OverflowError):
        logger.debug("Unparseable date: %r", text)
        return None


def parse_amount(value: Any, instruction: Optional[ConversionInstruction] = None) -> Optional[Decimal]:
    """
    Parse an amount cell into a 2-decimal Decimal.

    Handles "$1,234.56", "(100.00)", "$(100.00)" and "100.00-" notations. When the
    instruction asks for it, the sign is reversed after parsing.
    """
    remove_symbols = instruction.remove_symbols if instruction else True
    handle_parentheses = instruction.handle_parentheses if instruction else True
    reverse_sign = instruction.reverse_sign if instruction else False

    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
    else:
        text = str(value).strip()
        if not text:
            return None

        if remove_symbols:
            text = _CURRENCY_SYMBOLS.sub("", text)

        negative = False
        if handle_parentheses and text.startswith("(") and text.endswith(")"):
            negative = True
            text = text[1:-1].strip()
        if text.endswith("-"):
            negative = True
            text = text[:-1].strip()

        text = text.replace(",", "")
        if remove_symbols:
            text = text.strip("()")
        if not text or text in ("-", "+", "."):
            return None

        try:
            amount = Decimal(text)
        except InvalidOperation:
            logger.debug("Unparseable amount: %r", value)
            return None
        if negative:
            amount = -abs(amount)

    amount = amount.quantize(CENT)
    if reverse_sign:
        amount = -amount
    return amount


def clean_description(value: Any, instruction: Optional[ConversionInstruction] = None) -> str:
    """Normalize a free-text cell: trim, collapse whitespace, optionally drop codes."""
    if value is None:
        return ""
    text = str(value)

    if instruction and instruction.remove_internal_codes:
        for pattern in _INTERNAL_CODES:
            text = pattern.sub(" ", text)

    if instruction is None or instruction.trim:
        text = _WHITESPACE.sub(" ", text).strip()
    return text


def convert_value(value: Any, instruction: ConversionInstruction) -> Any:
    """Apply one conversion instruction to a cell."""
    if instruction.kind == "date":
        return parse_date(value, instruction)
    if instruction.kind == "amount":
        return parse_amount(value, instruction)
    return clean_description(value, instruction)
