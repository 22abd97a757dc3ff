"""
Column mapping engine.

Asks the model how a spreadsheet's columns map onto transaction fields,
then overrides the parts that can be decided deterministically:
debit/credit detection, the sign convention and column bounds.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ledger_import.llm import schema as s
from ledger_import.llm.engine import ExtractionEngine
from ledger_import.llm.prompts import ColumnMappingPrompt
from ledger_import.mapping.conversions import (
    clean_description,
    convert_value,
    parse_amount,
    parse_date,
)
from ledger_import.mapping.detection import detect_payment_method, find_debit_credit_columns
from ledger_import.mapping.spreadsheet import PREVIEW_ROW_LIMIT
from ledger_import.schemas.mapping import (
    AMOUNT_FIELDS,
    DATE_FIELDS,
    MAPPING_FIELDS,
    ConversionInstruction,
    FieldMapping,
    MappingConfig,
    NormalizedTransaction,
)

logger = logging.getLogger(__name__)

# Share of positive values in a single amount column above which the sign is
# reversed (statement lists charges as positive), and below which it is kept.
POSITIVE_REVERSE_THRESHOLD = 0.8
POSITIVE_KEEP_THRESHOLD = 0.2

DEFAULT_MAPPING_CONFIDENCE = 0.5

STATEMENT_TYPES = ("bank_account", "credit_card")

SIGN_INSTRUCTIONS = {
    "credit_card": """CRITICAL INSTRUCTIONS (credit card statement):
- Charges are usually listed as POSITIVE numbers and payments as negative.
- For a single amount column set "reverseSign": true so that charges become negative (money out).""",
    "bank_account": """CRITICAL INSTRUCTIONS (bank account statement):
- Amounts are already signed: withdrawals negative, deposits positive.
- For a single amount column set "reverseSign": false.""",
    None: """CRITICAL INSTRUCTIONS (statement type unknown):
- Expenses must end up NEGATIVE and income POSITIVE.
- If almost all amounts are positive, the file probably lists charges as positive numbers: set "reverseSign": true.
- If amounts are already mixed or mostly negative, set "reverseSign": false.""",
}


@dataclass
class MappingContext:
    """Inputs that steer mapping detection."""

    statement_type: Optional[str] = None  # "bank_account", "credit_card" or None
    categories: list[str] = field(default_factory=list)
    data_rows: Optional[list[list[Any]]] = None  # full dataset for sign statistics
    default_currency: str = "USD"

    def __post_init__(self) -> None:
        if self.statement_type is not None and self.statement_type not in STATEMENT_TYPES:
            raise ValueError(f"Unknown statement type: {self.statement_type}")


def _field_mapping_schema() -> s.SchemaNode:
    return s.nullable(
        s.obj(
            {
                "columnIndex": s.integer("0-based column index in the spreadsheet"),
                "columnName": s.nullable(s.string("Original column header name")),
            }
        )
    )


def mapping_response_schema() -> s.ObjectSchema:
    """Abstract schema of the model's mapping answer."""
    conversion = s.obj(
        {
            "field": s.enum(MAPPING_FIELDS, "Target field name"),
            "type": s.enum(["date", "amount", "description"]),
            "format": s.nullable(s.string("Date format string like 'DD/MM/YYYY'")),
            "excelSerial": s.nullable(s.boolean()),
            "reverseSign": s.nullable(s.boolean("For amounts: multiply by -1")),
            "removeSymbols": s.nullable(s.boolean()),
            "handleParentheses": s.nullable(s.boolean()),
            "trim": s.nullable(s.boolean()),
            "removeInternalCodes": s.nullable(s.boolean()),
        }
    )
    return s.obj(
        {
            "headerRowIndex": s.integer("0-based index of the header row"),
            "fieldMappings": s.obj({name: _field_mapping_schema() for name in MAPPING_FIELDS}),
            "conversions": s.array(conversion, "Conversion instructions per field"),
            "currency": s.nullable(s.string("Inferred ISO currency code like USD, CAD, EUR")),
            "confidence": s.nullable(s.number("Confidence score 0-1 for the mapping")),
        }
    )


def format_preview(rows: list[list[Any]]) -> str:
    """Render rows as ``Row i: [0]: "..", [1]: ..`` lines."""
    lines = []
    for idx, row in enumerate(rows):
        cells = ", ".join(f"[{col}]: {json.dumps(cell, default=str)}" for col, cell in enumerate(row))
        lines.append(f"Row {idx}: {cells}")
    return "\n".join(lines)


def positive_share(rows: list[list[Any]], column_index: int) -> Optional[float]:
    """
    Share of strictly positive parsed amounts in a column.

    Returns:
        Fraction in [0, 1], or None if the column holds no non-zero amounts
    """
    positive = 0
    counted = 0
    for row in rows:
        if column_index >= len(row):
            continue
        amount = parse_amount(row[column_index])
        if amount is None or amount == 0:
            continue
        counted += 1
        if amount > 0:
            positive += 1
    if counted == 0:
        return None
    return positive / counted


class ColumnMappingEngine:
    """Detects MappingConfig for spreadsheet uploads."""

    def __init__(self, engine: ExtractionEngine, prompt: Optional[ColumnMappingPrompt] = None):
        self.engine = engine
        self.prompt = prompt or ColumnMappingPrompt()

    def detect_mapping(
        self, preview: list[list[Any]], context: Optional[MappingContext] = None
    ) -> Optional[MappingConfig]:
        """
        Detect a column mapping for a spreadsheet.

        Args:
            preview: First rows of the sheet (bounded to 20)
            context: Statement type, known categories and full data rows

        Returns:
            MappingConfig, or None when no field could be mapped or every
            provider failed
        """
        context = context or MappingContext()
        rows = preview[:PREVIEW_ROW_LIMIT]
        if not rows:
            logger.warning("Column mapping skipped: empty preview")
            return None

        prompt = self.prompt.format(
            preview=format_preview(rows),
            row_count=len(rows),
            sign_instructions=SIGN_INSTRUCTIONS[context.statement_type],
            categories=context.categories,
        )
        result = self.engine.extract(prompt, mapping_response_schema())
        if not result.success:
            logger.warning("Column mapping detection failed: %s", result.error)
            return None

        try:
            config = self._build_config(result.data, rows, context)
        except (ValueError, TypeError) as e:
            logger.warning("Column mapping response unusable: %s", e)
            return None
        if config is None:
            return None

        logger.info(
            "Detected column mapping: header row %d, fields %s (confidence %.2f)",
            config.header_row_index,
            ", ".join(config.mapped_fields),
            config.confidence,
        )
        return config

    def _build_config(
        self, data: dict[str, Any], rows: list[list[Any]], context: MappingContext
    ) -> Optional[MappingConfig]:
        header_index = max(0, int(data.get("headerRowIndex") or 0))
        if header_index >= len(rows):
            header_index = 0
        header = rows[header_index]
        width = len(header)

        mappings: dict[str, FieldMapping] = {}
        for name, value in (data.get("fieldMappings") or {}).items():
            if value is None or name not in MAPPING_FIELDS:
                continue
            index = value.get("columnIndex")
            if index is None or not 0 <= index < width:
                logger.debug("Dropping %s mapping: column %s out of range", name, index)
                continue
            column_name = value.get("columnName")
            if column_name is None and isinstance(header[index], str):
                column_name = header[index]
            mappings[name] = FieldMapping(column_index=index, column_name=column_name)

        conversions = []
        for raw in data.get("conversions") or []:
            try:
                conversions.append(ConversionInstruction.from_dict(raw))
            except (KeyError, ValueError) as e:
                logger.debug("Skipping conversion %s: %s", raw, e)

        # Separate debit/credit columns win over a single amount column
        debit_credit = find_debit_credit_columns(header)
        if debit_credit or ("debit" in mappings and "credit" in mappings):
            if debit_credit:
                debit_index, credit_index = debit_credit
                mappings["debit"] = FieldMapping(debit_index, _cell_name(header, debit_index))
                mappings["credit"] = FieldMapping(credit_index, _cell_name(header, credit_index))
            mappings.pop("amount", None)
            conversions = [c for c in conversions if c.field != "amount"]
            for name in ("debit", "credit"):
                amount_conversions = [c for c in conversions if c.field == name and c.kind == "amount"]
                if not amount_conversions:
                    conversions.append(ConversionInstruction(field=name, kind="amount"))
                for conversion in amount_conversions:
                    conversion.reverse_sign = False
        elif "amount" in mappings:
            reverse = self._resolve_reverse_sign(mappings["amount"].column_index, header_index, rows, context)
            amount_conversions = [c for c in conversions if c.field == "amount" and c.kind == "amount"]
            if not amount_conversions:
                amount_conversions = [ConversionInstruction(field="amount", kind="amount")]
                conversions.append(amount_conversions[0])
            for conversion in amount_conversions:
                conversion.reverse_sign = reverse

        conversions = [c for c in conversions if c.field in mappings and _compatible(c)]

        if not mappings:
            logger.warning("Column mapping produced no usable fields")
            return None

        confidence = data.get("confidence")
        return MappingConfig(
            header_row_index=header_index,
            field_mappings=mappings,
            conversions=conversions,
            currency=(data.get("currency") or context.default_currency).upper(),
            confidence=DEFAULT_MAPPING_CONFIDENCE if confidence is None else confidence,
        )

    def _resolve_reverse_sign(
        self,
        column_index: int,
        header_index: int,
        preview: list[list[Any]],
        context: MappingContext,
    ) -> bool:
        if context.statement_type == "credit_card":
            return True
        if context.statement_type == "bank_account":
            return False

        rows = context.data_rows if context.data_rows is not None else preview
        share = positive_share(rows[header_index + 1 :], column_index)
        if share is None:
            return False
        logger.debug("Amount column %d: %.0f%% positive", column_index, share * 100)
        if share > POSITIVE_REVERSE_THRESHOLD:
            return True
        if share >= POSITIVE_KEEP_THRESHOLD:
            logger.info("Ambiguous sign convention (%.0f%% positive), keeping signs", share * 100)
        return False


def _compatible(conversion: ConversionInstruction) -> bool:
    """Conversion kind must suit the target field."""
    if conversion.field in AMOUNT_FIELDS:
        return conversion.kind == "amount"
    if conversion.field in DATE_FIELDS:
        return conversion.kind == "date"
    return conversion.kind == "description"


def _cell_name(row: list[Any], index: int) -> Optional[str]:
    cell = row[index]
    return cell if isinstance(cell, str) and cell else None


def _cell(row: list[Any], index: Optional[int]) -> Any:
    if index is None or index >= len(row):
        return ""
    return row[index]


def _convert(config: MappingConfig, field_name: str, value: Any) -> Any:
    """Apply the field's conversions in order, falling back to a default per field."""
    instructions = config.conversions_for(field_name)
    if not instructions:
        if field_name in DATE_FIELDS:
            return parse_date(value)
        if field_name in AMOUNT_FIELDS:
            return parse_amount(value)
        return clean_description(value)
    for instruction in instructions:
        value = convert_value(value, instruction)
    return value


def apply_mapping(raw_rows: list[list[Any]], config: MappingConfig) -> list[NormalizedTransaction]:
    """
    Normalize every data row below the header.

    Rows without both a transaction date and a usable amount are dropped.
    """
    transactions = []
    skipped = 0
    for row_index in range(config.header_row_index + 1, len(raw_rows)):
        row = raw_rows[row_index]
        values = {
            name: _convert(config, name, _cell(row, config.column_for(name)))
            for name in config.mapped_fields
        }

        amount = values.get("amount")
        debit = values.get("debit")
        credit = values.get("credit")
        if "amount" not in config.field_mappings and (debit is not None or credit is not None):
            amount = (credit or 0) - abs(debit or 0)

        transaction_date = values.get("transactionDate")
        if transaction_date is None or amount is None:
            skipped += 1
            continue

        description = values.get("description") or ""
        merchant = values.get("merchantName") or None
        reference = values.get("referenceNumber")
        transactions.append(
            NormalizedTransaction(
                transaction_date=transaction_date,
                amount=amount,
                description=description,
                posted_date=values.get("postedDate"),
                debit=debit,
                credit=credit,
                balance=values.get("balance"),
                merchant_name=merchant,
                reference_number=str(reference) if reference not in (None, "") else None,
                payment_method=detect_payment_method(description),
                currency=config.currency,
                row_index=row_index,
                raw=list(row),
            )
        )

    if skipped:
        logger.debug("Skipped %d rows without date or amount", skipped)
    return transactions

