"""
Column mapping configuration and normalized spreadsheet transactions (SSOT).

MappingConfig is the contract between the column mapping engine and the row
normalizer. Its JSON form uses the camelCase keys of the stored mapping
format, so configs can be cached and re-applied across imports.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

# Canonical target fields, in display order
MAPPING_FIELDS = (
    "transactionDate",
    "postedDate",
    "description",
    "amount",
    "debit",
    "credit",
    "balance",
    "merchantName",
    "referenceNumber",
)

AMOUNT_FIELDS = ("amount", "debit", "credit", "balance")
DATE_FIELDS = ("transactionDate", "postedDate")

CONVERSION_KINDS = ("date", "amount", "description")


@dataclass
class FieldMapping:
    """Source column for one target field."""

    column_index: int
    column_name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.column_index < 0:
            raise ValueError(f"column_index must be >= 0, got {self.column_index}")

    def to_dict(self) -> dict:
        return {"columnIndex": self.column_index, "columnName": self.column_name}

    @classmethod
    def from_dict(cls, data: dict) -> "FieldMapping":
        return cls(column_index=int(data["columnIndex"]), column_name=data.get("columnName"))


@dataclass
class ConversionInstruction:
    """
    How to convert raw cell values of one field.

    Only the options matching ``kind`` are meaningful:
    - date: date_format (e.g. "DD/MM/YYYY"), excel_serial
    - amount: reverse_sign, remove_symbols, handle_parentheses
    - description: trim, remove_internal_codes
    """

    field: str
    kind: str
    date_format: Optional[str] = None
    excel_serial: bool = False
    reverse_sign: bool = False
    remove_symbols: bool = True
    handle_parentheses: bool = True
    trim: bool = True
    remove_internal_codes: bool = False

    def __post_init__(self) -> None:
        if self.kind not in CONVERSION_KINDS:
            raise ValueError(f"Unknown conversion type: {self.kind}")

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"field": self.field, "type": self.kind}
        if self.kind == "date":
            data["format"] = self.date_format
            data["excelSerial"] = self.excel_serial
        elif self.kind == "amount":
            data["reverseSign"] = self.reverse_sign
            data["removeSymbols"] = self.remove_symbols
            data["handleParentheses"] = self.handle_parentheses
        else:
            data["trim"] = self.trim
            data["removeInternalCodes"] = self.remove_internal_codes
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ConversionInstruction":
        return cls(
            field=data["field"],
            kind=data["type"],
            date_format=data.get("format"),
            excel_serial=bool(data.get("excelSerial") or False),
            reverse_sign=bool(data.get("reverseSign") or False),
            remove_symbols=data.get("removeSymbols") is not False,
            handle_parentheses=data.get("handleParentheses") is not False,
            trim=data.get("trim") is not False,
            remove_internal_codes=bool(data.get("removeInternalCodes") or False),
        )


@dataclass
class MappingConfig:
    """Complete column mapping for one spreadsheet layout."""

    header_row_index: int = 0
    field_mappings: dict[str, FieldMapping] = field(default_factory=dict)
    conversions: list[ConversionInstruction] = field(default_factory=list)
    currency: str = "USD"
    confidence: float = 0.5

    def __post_init__(self) -> None:
        if self.header_row_index < 0:
            raise ValueError(f"header_row_index must be >= 0, got {self.header_row_index}")
        unknown = set(self.field_mappings) - set(MAPPING_FIELDS)
        if unknown:
            raise ValueError(f"Unknown mapping fields: {sorted(unknown)}")
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    @property
    def mapped_fields(self) -> list[str]:
        return [f for f in MAPPING_FIELDS if f in self.field_mappings]

    @property
    def uses_debit_credit(self) -> bool:
        return "debit" in self.field_mappings and "credit" in self.field_mappings

    def conversions_for(self, field_name: str) -> list[ConversionInstruction]:
        return [c for c in self.conversions if c.field == field_name]

    def column_for(self, field_name: str) -> Optional[int]:
        mapping = self.field_mappings.get(field_name)
        return mapping.column_index if mapping else None

    def to_dict(self) -> dict:
        """Serialize to the stored camelCase mapping format."""
        return {
            "headerRowIndex": self.header_row_index,
            "fieldMappings": {
                name: self.field_mappings[name].to_dict() for name in self.mapped_fields
            },
            "conversions": [c.to_dict() for c in self.conversions],
            "currency": self.currency,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MappingConfig":
        """Deserialize from the stored mapping format (null mappings are skipped)."""
        mappings = {
            name: FieldMapping.from_dict(value)
            for name, value in (data.get("fieldMappings") or {}).items()
            if value is not None and name in MAPPING_FIELDS
        }
        return cls(
            header_row_index=int(data.get("headerRowIndex", 0)),
            field_mappings=mappings,
            conversions=[
                ConversionInstruction.from_dict(c)
                for c in data.get("conversions") or []
                if c.get("type") in CONVERSION_KINDS
            ],
            currency=data.get("currency") or "USD",
            confidence=data.get("confidence", 0.5),
        )


@dataclass
class NormalizedTransaction:
    """One spreadsheet row after mapping and conversion.

    ``amount`` is signed: negative for money out, positive for money in.
    """

    transaction_date: Optional[date]
    amount: Optional[Decimal]
    description: str = ""
    posted_date: Optional[date] = None
    debit: Optional[Decimal] = None
    credit: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    merchant_name: Optional[str] = None
    reference_number: Optional[str] = None
    payment_method: Optional[str] = None
    currency: str = "USD"
    row_index: Optional[int] = None
    raw: list[Any] = field(default_factory=list)

    # Categorization (filled after normalization)
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    business_id: Optional[int] = None
    is_business_expense: bool = False
    needs_review: bool = False

    @property
    def transaction_type(self) -> str:
        return "income" if self.amount is not None and self.amount >= 0 else "expense"

    def to_dict(self) -> dict:
        """Serialize to dictionary for JSON storage."""
        return {
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "posted_date": self.posted_date.isoformat() if self.posted_date else None,
            "description": self.description,
            "amount": str(self.amount) if self.amount is not None else None,
            "debit": str(self.debit) if self.debit is not None else None,
            "credit": str(self.credit) if self.credit is not None else None,
            "balance": str(self.balance) if self.balance is not None else None,
            "merchant_name": self.merchant_name,
            "reference_number": self.reference_number,
            "payment_method": self.payment_method,
            "currency": self.currency,
            "row_index": self.row_index,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "business_id": self.business_id,
            "is_business_expense": self.is_business_expense,
            "needs_review": self.needs_review,
        }
