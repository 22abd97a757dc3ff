"""Tests for spreadsheet reading, cell conversions and column mapping."""

import io
from datetime import date, datetime
from decimal import Decimal

import pytest
import xlrd
from openpyxl import Workbook
from xlrd.sheet import Cell

from ledger_import.errors import UnsupportedFileError
from ledger_import.mapping import (
    ColumnMappingEngine,
    MappingContext,
    apply_mapping,
    positive_share,
    read_spreadsheet,
)
from ledger_import.mapping.conversions import (
    clean_description,
    parse_amount,
    parse_date,
    to_strptime_format,
)
from ledger_import.mapping.detection import (
    detect_payment_method,
    find_debit_credit_columns,
    header_matches,
)
from ledger_import.mapping.spreadsheet import is_spreadsheet_file, read_csv, read_xls, read_xlsx
from ledger_import.schemas.mapping import ConversionInstruction, MappingConfig

from .conftest import (
    SAMPLE_BANK_CSV,
    SAMPLE_CREDIT_CARD_CSV,
    SAMPLE_DEBIT_CREDIT_CSV,
    FakeProvider,
    make_engine,
)


def mapping_reply(mappings, conversions=(), header_row=0, currency="USD", confidence=0.9):
    """Model answer for column mapping, from {field: column_index}."""
    return {
        "headerRowIndex": header_row,
        "fieldMappings": {
            name: {"columnIndex": index, "columnName": None} for name, index in mappings.items()
        },
        "conversions": list(conversions),
        "currency": currency,
        "confidence": confidence,
    }


def detect(rows, reply, **context):
    provider = FakeProvider("openai", responses=[reply])
    engine = ColumnMappingEngine(make_engine(provider))
    return engine.detect_mapping(rows, MappingContext(data_rows=rows, **context)), provider


def amount_conversion(config, field_name="amount"):
    return next(c for c in config.conversions if c.field == field_name and c.kind == "amount")


class TestSpreadsheetReading:
    """Tests for CSV, XLSX and XLS reading."""

    def test_read_csv(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())

        assert rows[0] == ["Date", "Description", "Amount", "Balance"]
        assert rows[1] == ["2024-01-03", "STARBUCKS STORE 1234 POS PURCHASE", "-5.75", "994.25"]
        assert len(rows) == 4

    def test_semicolon_delimiter_sniffed(self):
        data = "Datum;Beschreibung;Betrag\n2024-01-03;Kaffee;-3,50\n2024-01-04;Brot;-2,10\n"

        rows = read_csv(data.encode())

        assert rows[1] == ["2024-01-03", "Kaffee", "-3,50"]

    def test_blank_rows_dropped(self):
        rows = read_csv((SAMPLE_BANK_CSV + ",,,\n\n").encode())

        assert len(rows) == 4

    def test_bom_and_cp1252(self):
        """UTF-8 BOMs are stripped and legacy encodings still decode."""
        assert read_csv("﻿Date,Payee\n2024-01-03,Shop\n".encode("utf-8"))[0][0] == "Date"
        assert read_csv("Date,Payee\n2024-01-03,Café\n".encode("cp1252"))[1][1] == "Café"

    def test_read_xlsx(self):
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(["Date", "Description", "Amount"])
        sheet.append([datetime(2024, 1, 3), "COFFEE", -5.75])
        sheet.append([None, None, None])
        sheet.append([datetime(2024, 1, 4), "LUNCH", -12.5])
        buffer = io.BytesIO()
        workbook.save(buffer)

        rows = read_xlsx(buffer.getvalue())

        assert rows[0] == ["Date", "Description", "Amount"]
        assert rows[1][0] == datetime(2024, 1, 3)
        assert rows[1][2] == -5.75
        assert len(rows) == 3

    def test_corrupt_workbook(self):
        with pytest.raises(UnsupportedFileError):
            read_xlsx(b"not a zip file")

    def test_read_xls(self, monkeypatch):
        """Legacy workbooks convert date serials and drop blank cells."""

        class FakeSheet:
            nrows = 4

            def row(self, index):
                return [
                    [Cell(xlrd.XL_CELL_TEXT, "Date"), Cell(xlrd.XL_CELL_TEXT, "Description"), Cell(xlrd.XL_CELL_TEXT, "Amount")],
                    [Cell(xlrd.XL_CELL_DATE, 45294.0), Cell(xlrd.XL_CELL_TEXT, " COFFEE "), Cell(xlrd.XL_CELL_NUMBER, -5.75)],
                    [Cell(xlrd.XL_CELL_EMPTY, ""), Cell(xlrd.XL_CELL_BLANK, ""), Cell(xlrd.XL_CELL_EMPTY, "")],
                    [Cell(xlrd.XL_CELL_DATE, 45295.0), Cell(xlrd.XL_CELL_TEXT, "LUNCH"), Cell(xlrd.XL_CELL_NUMBER, -12.5), Cell(xlrd.XL_CELL_BLANK, "")],
                ][index]

        class FakeBook:
            datemode = 0
            released = False

            def sheet_by_index(self, index):
                return FakeSheet()

            def release_resources(self):
                FakeBook.released = True

        monkeypatch.setattr(xlrd, "open_workbook", lambda **kwargs: FakeBook())

        rows = read_spreadsheet(b"\xd0\xcf\x11\xe0", "statement.xls")

        assert rows[0] == ["Date", "Description", "Amount"]
        assert rows[1] == [datetime(2024, 1, 3), "COFFEE", -5.75]
        assert rows[2] == [datetime(2024, 1, 4), "LUNCH", -12.5]
        assert len(rows) == 3
        assert FakeBook.released is True

    def test_corrupt_xls(self):
        with pytest.raises(UnsupportedFileError):
            read_xls(b"not an ole2 file")

    def test_unsupported_extension(self):
        with pytest.raises(UnsupportedFileError):
            read_spreadsheet(b"%PDF-1.4", "statement.pdf")

    def test_is_spreadsheet_file(self):
        assert is_spreadsheet_file("Statement.CSV")
        assert is_spreadsheet_file("export.xlsx")
        assert is_spreadsheet_file("legacy.xls")
        assert not is_spreadsheet_file("receipt.jpg")


class TestConversions:
    """Tests for date, amount and description conversion."""

    def test_strptime_format(self):
        assert to_strptime_format("DD/MM/YYYY") == "%d/%m/%Y"
        assert to_strptime_format("MMM D, YYYY") == "%b %d, %Y"
        assert to_strptime_format("%Y-%m-%d") == "%Y-%m-%d"

    def test_explicit_format(self):
        instruction = ConversionInstruction(field="transactionDate", kind="date", date_format="DD/MM/YYYY")

        assert parse_date("03/01/2024", instruction) == date(2024, 1, 3)

    def test_iso_and_free_form_dates(self):
        assert parse_date("2024-01-03") == date(2024, 1, 3)
        assert parse_date("2024-01-03T10:15:00") == date(2024, 1, 3)
        assert parse_date("Jan 5, 2024") == date(2024, 1, 5)

    def test_excel_serial(self):
        """Plausible serial numbers are read as Excel dates."""
        assert parse_date(45292) == date(2024, 1, 1)

        flagged = ConversionInstruction(field="transactionDate", kind="date", excel_serial=True)
        assert parse_date("45292", flagged) == date(2024, 1, 1)

    def test_native_and_empty_dates(self):
        assert parse_date(datetime(2024, 1, 3, 9, 30)) == date(2024, 1, 3)
        assert parse_date("") is None
        assert parse_date(None) is None

    def test_amount_notations(self):
        assert parse_amount("$1,234.56") == Decimal("1234.56")
        assert parse_amount("(100.00)") == Decimal("-100.00")
        assert parse_amount("100.00-") == Decimal("-100.00")
        assert parse_amount("€ 5") == Decimal("5.00")
        assert parse_amount(-5.75) == Decimal("-5.75")

    def test_parentheses_after_currency(self):
        """Parenthesized values are negative even behind a currency marker."""
        assert parse_amount("$(100.00)") == Decimal("-100.00")
        assert parse_amount("USD (12.50)") == Decimal("-12.50")
        assert parse_amount("(€1,200.00)") == Decimal("-1200.00")
        assert parse_amount("-$48.10") == Decimal("-48.10")

    def test_amount_unparseable(self):
        assert parse_amount("") is None
        assert parse_amount("n/a") is None
        assert parse_amount(True) is None

    def test_reverse_sign_applied_last(self):
        instruction = ConversionInstruction(field="amount", kind="amount", reverse_sign=True)

        assert parse_amount("34.99", instruction) == Decimal("-34.99")
        assert parse_amount("(10.00)", instruction) == Decimal("10.00")

    def test_clean_description(self):
        instruction = ConversionInstruction(field="description", kind="description", remove_internal_codes=True)

        assert clean_description("  COFFEE   SHOP ") == "COFFEE SHOP"
        assert clean_description("AMAZON MKTPLACE REF: AB12CD34 ", instruction) == "AMAZON MKTPLACE"
        assert clean_description(None) == ""


class TestDetection:
    """Tests for description and header heuristics."""

    @pytest.mark.parametrize(
        "description,expected",
        [
            ("VISA PURCHASE 4411", "card"),
            ("STARBUCKS STORE 1234 POS PURCHASE", "card"),
            ("CHEQUE #123", "check"),
            ("ATM WITHDRAWAL MAIN ST", "cash"),
            ("WIRE TRANSFER FROM ACME", "other"),
            ("PAYROLL DEPOSIT ACME CORP", None),
            ("", None),
        ],
    )
    def test_payment_method(self, description, expected):
        assert detect_payment_method(description) == expected

    def test_short_keywords_match_whole_words(self):
        """"dr" names a debit column but "Address" does not."""
        assert header_matches("DR", "debit")
        assert not header_matches("Address", "debit")
        assert header_matches("Withdrawals", "debit")

    def test_debit_credit_columns(self):
        header = ["Transaction Date", "Details", "Debit", "Credit", "Balance"]

        assert find_debit_credit_columns(header) == (2, 3)
        assert find_debit_credit_columns(["Date", "Description", "Amount"]) is None

    def test_positive_share(self):
        rows = read_csv(SAMPLE_CREDIT_CARD_CSV.encode())[1:]

        assert positive_share(rows, 2) == pytest.approx(5 / 6)
        assert positive_share([["x", ""]], 1) is None


class TestColumnMappingEngine:
    """Tests for mapping detection and its deterministic overrides."""

    def test_credit_card_reverses_single_amount(self):
        """Credit card charges come out negative whatever the model says."""
        rows = read_csv(SAMPLE_CREDIT_CARD_CSV.encode())
        reply = mapping_reply(
            {"transactionDate": 0, "description": 1, "amount": 2},
            [{"field": "amount", "type": "amount", "reverseSign": False}],
        )

        config, provider = detect(rows, reply, statement_type="credit_card")

        assert amount_conversion(config).reverse_sign is True
        assert "credit card statement" in provider.calls[0]["prompt"]
        assert 'Row 0: [0]: "Posted"' in provider.calls[0]["prompt"]

    def test_bank_account_keeps_signs(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())
        reply = mapping_reply(
            {"transactionDate": 0, "description": 1, "amount": 2, "balance": 3},
            [{"field": "amount", "type": "amount", "reverseSign": True}],
        )

        config, _ = detect(rows, reply, statement_type="bank_account")

        assert amount_conversion(config).reverse_sign is False

    def test_unknown_type_mostly_positive_reverses(self):
        """Without a statement type, >80% positive amounts flip the sign."""
        rows = read_csv(SAMPLE_CREDIT_CARD_CSV.encode())
        reply = mapping_reply({"transactionDate": 0, "description": 1, "amount": 2})

        config, _ = detect(rows, reply)

        assert amount_conversion(config).reverse_sign is True

    def test_unknown_type_mixed_signs_kept(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())
        reply = mapping_reply(
            {"transactionDate": 0, "description": 1, "amount": 2},
            [{"field": "amount", "type": "amount", "reverseSign": True}],
        )

        config, _ = detect(rows, reply)

        assert amount_conversion(config).reverse_sign is False

    def test_debit_credit_columns_override_amount(self):
        """Separate debit/credit columns replace a single amount mapping."""
        rows = read_csv(SAMPLE_DEBIT_CREDIT_CSV.encode())
        reply = mapping_reply(
            {"transactionDate": 0, "description": 1, "amount": 2, "balance": 4},
            [
                {"field": "transactionDate", "type": "date", "format": "DD/MM/YYYY"},
                {"field": "amount", "type": "amount", "reverseSign": True},
            ],
        )

        config, _ = detect(rows, reply)

        assert "amount" not in config.field_mappings
        assert config.column_for("debit") == 2
        assert config.column_for("credit") == 3
        assert config.field_mappings["debit"].column_name == "Debit"
        assert amount_conversion(config, "debit").reverse_sign is False
        assert amount_conversion(config, "credit").reverse_sign is False
        assert not config.conversions_for("amount")

    def test_redetection_is_stable(self):
        """The same sheet and answer always give the same configuration."""
        rows = read_csv(SAMPLE_DEBIT_CREDIT_CSV.encode())
        reply = mapping_reply({"transactionDate": 0, "description": 1, "amount": 2})

        first, _ = detect(rows, reply)
        second, _ = detect(rows, reply)

        assert first.to_dict() == second.to_dict()
        assert MappingConfig.from_dict(first.to_dict()).to_dict() == first.to_dict()

    def test_header_row_below_title(self):
        rows = [
            ["Account Statement"],
            ["Date", "Description", "Amount"],
            ["2024-01-03", "COFFEE", "-5.75"],
        ]
        reply = mapping_reply({"transactionDate": 0, "description": 1, "amount": 2}, header_row=1)

        config, _ = detect(rows, reply, statement_type="bank_account")
        transactions = apply_mapping(rows, config)

        assert config.header_row_index == 1
        assert config.field_mappings["amount"].column_name == "Amount"
        assert transactions[0].row_index == 2

    def test_currency_defaults_from_context(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())
        reply = mapping_reply({"transactionDate": 0, "amount": 2}, currency=None, confidence=0.4)

        config, _ = detect(rows, reply, default_currency="cad")

        assert config.currency == "CAD"
        assert config.confidence == 0.4

    def test_missing_confidence_defaults(self):
        """An answer without a confidence score is still usable."""
        rows = read_csv(SAMPLE_BANK_CSV.encode())
        reply = mapping_reply({"transactionDate": 0, "description": 1, "amount": 2})
        del reply["confidence"]

        config, _ = detect(rows, reply, statement_type="bank_account")

        assert config is not None
        assert config.confidence == 0.5

    def test_confidence_clamped(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())
        reply = mapping_reply({"transactionDate": 0, "amount": 2}, confidence=1.7)

        config, _ = detect(rows, reply, statement_type="bank_account")

        assert config.confidence == 1.0

    def test_out_of_range_columns_give_none(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())

        config, _ = detect(rows, mapping_reply({"transactionDate": 9, "amount": 12}))

        assert config is None

    def test_provider_failure_gives_none(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())

        config, _ = detect(rows, "I cannot read spreadsheets")

        assert config is None

    def test_empty_preview_skips_model(self):
        provider = FakeProvider("openai", responses=[{}])

        assert ColumnMappingEngine(make_engine(provider)).detect_mapping([]) is None
        assert provider.calls == []

    def test_unknown_statement_type_rejected(self):
        with pytest.raises(ValueError):
            MappingContext(statement_type="brokerage")


class TestApplyMapping:
    """Tests for row normalization."""

    def test_single_amount_column(self):
        rows = read_csv(SAMPLE_BANK_CSV.encode())
        config, _ = detect(
            rows,
            mapping_reply({"transactionDate": 0, "description": 1, "amount": 2, "balance": 3}),
            statement_type="bank_account",
        )

        transactions = apply_mapping(rows, config)

        assert [t.amount for t in transactions] == [
            Decimal("-5.75"),
            Decimal("2500.00"),
            Decimal("-48.10"),
        ]
        assert transactions[0].transaction_date == date(2024, 1, 3)
        assert transactions[0].payment_method == "card"
        assert transactions[0].balance == Decimal("994.25")
        assert transactions[1].transaction_type == "income"

    def test_credit_card_charges_negative(self):
        rows = read_csv(SAMPLE_CREDIT_CARD_CSV.encode())
        config, _ = detect(
            rows,
            mapping_reply({"transactionDate": 0, "description": 1, "amount": 2}),
            statement_type="credit_card",
        )

        transactions = apply_mapping(rows, config)

        assert transactions[0].amount == Decimal("-34.99")
        assert transactions[3].amount == Decimal("72.58")
        assert transactions[3].description == "PAYMENT THANK YOU"

    def test_debit_credit_amounts(self):
        """amount = credit - |debit|."""
        rows = read_csv(SAMPLE_DEBIT_CREDIT_CSV.encode())
        config, _ = detect(
            rows,
            mapping_reply(
                {"transactionDate": 0, "description": 1, "balance": 4},
                [{"field": "transactionDate", "type": "date", "format": "DD/MM/YYYY"}],
            ),
        )

        transactions = apply_mapping(rows, config)

        assert [t.amount for t in transactions] == [
            Decimal("-82.14"),
            Decimal("150.00"),
            Decimal("-120.00"),
        ]
        assert transactions[0].transaction_date == date(2024, 1, 3)
        assert transactions[0].debit == Decimal("82.14")
        assert transactions[0].credit is None

    def test_rows_without_date_or_amount_dropped(self):
        rows = [
            ["Date", "Description", "Amount"],
            ["2024-01-03", "COFFEE", "-5.75"],
            ["", "OPENING BALANCE", "100.00"],
            ["2024-01-04", "PENDING", ""],
        ]
        config = MappingConfig.from_dict(
            mapping_reply({"transactionDate": 0, "description": 1, "amount": 2})
        )

        transactions = apply_mapping(rows, config)

        assert len(transactions) == 1
        assert transactions[0].description == "COFFEE"
