"""Tests for the schema tree, JSON Schema rendering and provider transformers."""

import copy

import pytest

from ledger_import.errors import ResponseParseError, SchemaValidationError
from ledger_import.llm import schema as s
from ledger_import.llm.transformers import (
    GeminiSchemaTransformer,
    PassthroughSchemaTransformer,
    get_transformer,
)
from ledger_import.llm.validation import decode_structured_output, extract_json, strip_code_fences


def _all_types(node):
    """Every "type" value anywhere in a rendered schema."""
    found = []
    if isinstance(node, dict):
        if "type" in node:
            found.append(node["type"])
        for value in node.values():
            found.extend(_all_types(value))
    elif isinstance(node, list):
        for value in node:
            found.extend(_all_types(value))
    return found


RECEIPT_SCHEMA = s.obj(
    {
        "date": s.nullable(s.string("Date in YYYY-MM-DD format")),
        "totalAmount": s.nullable(s.number()),
        "paymentMethod": s.nullable(s.enum(["cash", "card", "check", "other"])),
        "lineItems": s.array(s.obj({"name": s.string(), "qty": s.nullable(s.integer())})),
    }
)


class TestToJsonSchema:
    """Tests for standard JSON Schema rendering."""

    def test_object_lists_every_property_as_required(self):
        """Strict mode needs all properties required and no extras."""
        rendered = s.to_json_schema(RECEIPT_SCHEMA)

        assert rendered["type"] == "object"
        assert rendered["required"] == ["date", "totalAmount", "paymentMethod", "lineItems"]
        assert rendered["additionalProperties"] is False

    def test_nullable_uses_type_array(self):
        """Nullable nodes render as [type, "null"]."""
        rendered = s.to_json_schema(RECEIPT_SCHEMA)

        assert rendered["properties"]["date"]["type"] == ["string", "null"]
        assert rendered["properties"]["date"]["description"] == "Date in YYYY-MM-DD format"

    def test_nullable_enum_includes_none(self):
        """A nullable enum accepts null as a value."""
        rendered = s.to_json_schema(RECEIPT_SCHEMA)

        assert rendered["properties"]["paymentMethod"]["enum"] == ["cash", "card", "check", "other", None]

    def test_unknown_primitive_rejected(self):
        """Only the four primitive kinds exist."""
        with pytest.raises(ValueError):
            s.PrimitiveSchema("date")


class TestParseJsonSchema:
    """Tests for parsing arbitrary JSON Schema dialects."""

    def test_round_trip_preserves_structure(self):
        """Parsing a rendered tree gives the same tree back."""
        assert s.parse_json_schema(s.to_json_schema(RECEIPT_SCHEMA)) == RECEIPT_SCHEMA

    def test_any_of_with_null_becomes_nullable(self):
        """anyOf [X, null] is a nullable X."""
        node = s.parse_json_schema({"anyOf": [{"type": "number"}, {"type": "null"}]})

        assert node == s.nullable(s.number())

    def test_ref_is_inlined(self):
        """Internal $ref values resolve against $defs."""
        node = s.parse_json_schema(
            {
                "type": "object",
                "properties": {"total": {"$ref": "#/$defs/money"}},
                "required": ["total"],
                "$defs": {"money": {"type": "number", "description": "Amount"}},
            }
        )

        assert node == s.obj({"total": s.number("Amount")})

    def test_recursive_ref_rejected(self):
        """Recursive references cannot be inlined."""
        schema = {
            "$ref": "#/$defs/node",
            "$defs": {
                "node": {
                    "type": "object",
                    "properties": {"child": {"$ref": "#/$defs/node"}},
                    "required": ["child"],
                }
            },
        }
        with pytest.raises(ValueError, match="Recursive"):
            s.parse_json_schema(schema)

    def test_properties_outside_required_become_nullable(self):
        """An explicit required list makes the other properties nullable."""
        node = s.parse_json_schema(
            {
                "type": "object",
                "properties": {"a": {"type": "string"}, "b": {"type": "string"}},
                "required": ["a"],
            }
        )

        assert node.properties["a"] == s.string()
        assert node.properties["b"] == s.nullable(s.string())

    def test_openapi_nullable_and_uppercase_types(self):
        """Gemini-style schemas parse back into the tree."""
        node = s.parse_json_schema({"type": "STRING", "nullable": True})

        assert node == s.nullable(s.string())


class TestGeminiTransformer:
    """Tests for the Gemini schema dialect."""

    def test_no_array_types_after_transform(self):
        """Gemini rejects type arrays: every type is a single upper-case name."""
        transformed = GeminiSchemaTransformer().transform(s.to_json_schema(RECEIPT_SCHEMA))

        for type_value in _all_types(transformed):
            assert isinstance(type_value, str)
            assert type_value.isupper()

    def test_nullable_flag_replaces_null_type(self):
        """Nullability is carried by nullable: true."""
        transformed = GeminiSchemaTransformer().transform(s.to_json_schema(RECEIPT_SCHEMA))

        date_schema = transformed["properties"]["date"]
        assert date_schema["type"] == "STRING"
        assert date_schema["nullable"] is True
        assert "date" not in transformed["required"]
        assert "lineItems" in transformed["required"]

    def test_unsupported_keywords_removed(self):
        """$schema, additionalProperties, title and default are dropped."""
        transformed = GeminiSchemaTransformer().transform(
            {
                "$schema": "https://json-schema.org/draft/2020-12/schema",
                "title": "Receipt",
                "type": "object",
                "additionalProperties": False,
                "properties": {"currency": {"type": "string", "default": "USD"}},
                "required": ["currency"],
            }
        )

        for key in ("$schema", "title", "additionalProperties"):
            assert key not in transformed
        assert "default" not in transformed["properties"]["currency"]

    def test_enum_and_description_preserved(self):
        """Enum values and descriptions survive the transform."""
        transformed = GeminiSchemaTransformer().transform(
            s.to_json_schema(s.obj({"method": s.enum(["cash", "card"], "How it was paid")}))
        )

        method = transformed["properties"]["method"]
        assert method["enum"] == ["cash", "card"]
        assert method["description"] == "How it was paid"

    def test_transform_is_idempotent(self):
        """Transforming Gemini output again changes nothing."""
        transformer = GeminiSchemaTransformer()
        once = transformer.transform(s.to_json_schema(RECEIPT_SCHEMA))

        assert transformer.transform(once) == once

    def test_input_not_mutated(self):
        """Transformers are pure."""
        original = s.to_json_schema(RECEIPT_SCHEMA)
        snapshot = copy.deepcopy(original)

        GeminiSchemaTransformer().transform(original)

        assert original == snapshot


class TestTransformerLookup:
    """Tests for transformer selection."""

    def test_gemini_gets_gemini_transformer(self):
        assert isinstance(get_transformer("gemini"), GeminiSchemaTransformer)

    def test_openai_and_ollama_pass_through(self):
        schema = s.to_json_schema(RECEIPT_SCHEMA)
        for name in ("openai", "ollama", "some-new-provider"):
            transformer = get_transformer(name)
            assert isinstance(transformer, PassthroughSchemaTransformer)
            assert transformer.transform(schema) == schema


class TestValidation:
    """Tests for decoding and validating model output."""

    def test_missing_nullable_key_becomes_none(self):
        """Absent optional fields are normalized to null."""
        value = s.validate(RECEIPT_SCHEMA, {"date": "2024-01-01", "lineItems": []})

        assert value["totalAmount"] is None
        assert value["paymentMethod"] is None

    def test_unknown_keys_dropped(self):
        value = s.validate(s.obj({"a": s.string()}), {"a": "x", "extra": 1})

        assert value == {"a": "x"}

    def test_enum_matched_case_insensitively(self):
        """Enum values come back in canonical form."""
        value = s.validate(s.enum(["receipt", "invoice"]), "Invoice")

        assert value == "invoice"

    def test_numeric_strings_accepted_for_numbers(self):
        assert s.validate(s.number(), "1,234.50") == 1234.5

    def test_integral_float_accepted_as_integer(self):
        assert s.validate(s.integer(), 3.0) == 3

    def test_missing_required_property_reports_path(self):
        """Errors carry the JSON path of the failure."""
        with pytest.raises(SchemaValidationError) as exc_info:
            s.validate(RECEIPT_SCHEMA, {"date": None})

        assert exc_info.value.path == "$.lineItems"

    def test_null_for_required_value_rejected(self):
        with pytest.raises(SchemaValidationError):
            s.validate(s.obj({"total": s.number()}), {"total": None})

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_extract_json_from_prose(self):
        """JSON embedded in surrounding text is recovered."""
        text = 'Sure! Here is the result: {"documentType": "receipt"} Hope that helps.'

        assert extract_json(text) == {"documentType": "receipt"}

    def test_extract_json_failure(self):
        with pytest.raises(ResponseParseError):
            extract_json("no json here")

    def test_decode_structured_output(self):
        """Decoding parses and validates in one step."""
        value = decode_structured_output(
            '```json\n{"documentType": "RECEIPT"}\n```',
            s.obj({"documentType": s.enum(["receipt", "invoice"])}),
        )

        assert value == {"documentType": "receipt"}
