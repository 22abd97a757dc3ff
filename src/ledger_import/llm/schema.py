"""Provider-neutral schema tree.

Extraction schemas are built once as a small tagged tree and rendered per
provider at call time. Every operation here is a plain structural recursion
over the node types, so there is no mutable shared state.

Node types:
- PrimitiveSchema: string | number | integer | boolean
- EnumSchema: closed set of string values
- ArraySchema: homogeneous list
- ObjectSchema: ordered properties, all of which are present in the output
- NullableSchema: wraps another node, value may be null

Absence of an optional field is expressed as null, never as a missing key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from ledger_import.errors import SchemaValidationError

PRIMITIVE_KINDS = ("string", "number", "integer", "boolean")


@dataclass(frozen=True)
class PrimitiveSchema:
    kind: str
    description: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in PRIMITIVE_KINDS:
            raise ValueError(f"Unknown primitive kind: {self.kind}")


@dataclass(frozen=True)
class EnumSchema:
    values: tuple[str, ...]
    description: str | None = None


@dataclass(frozen=True)
class ArraySchema:
    items: "SchemaNode"
    description: str | None = None


@dataclass(frozen=True)
class ObjectSchema:
    properties: dict[str, "SchemaNode"] = field(default_factory=dict)
    description: str | None = None


@dataclass(frozen=True)
class NullableSchema:
    inner: "SchemaNode"

    @property
    def description(self) -> str | None:
        return self.inner.description


SchemaNode = Union[PrimitiveSchema, EnumSchema, ArraySchema, ObjectSchema, NullableSchema]


# Builders


def string(description: str | None = None) -> PrimitiveSchema:
    return PrimitiveSchema("string", description)


def number(description: str | None = None) -> PrimitiveSchema:
    return PrimitiveSchema("number", description)


def integer(description: str | None = None) -> PrimitiveSchema:
    return PrimitiveSchema("integer", description)


def boolean(description: str | None = None) -> PrimitiveSchema:
    return PrimitiveSchema("boolean", description)


def enum(values: list[str] | tuple[str, ...], description: str | None = None) -> EnumSchema:
    return EnumSchema(tuple(values), description)


def array(items: SchemaNode, description: str | None = None) -> ArraySchema:
    return ArraySchema(items, description)


def obj(properties: dict[str, SchemaNode], description: str | None = None) -> ObjectSchema:
    return ObjectSchema(dict(properties), description)


def nullable(node: SchemaNode) -> NullableSchema:
    """Wrap a node as nullable (idempotent)."""
    if isinstance(node, NullableSchema):
        return node
    return NullableSchema(node)


def unwrap(node: SchemaNode) -> tuple[SchemaNode, bool]:
    """Return (inner node, is_nullable)."""
    if isinstance(node, NullableSchema):
        return node.inner, True
    return node, False


# Standard JSON Schema rendering


def to_json_schema(node: SchemaNode) -> dict[str, Any]:
    """Render the tree as standard JSON Schema.

    Objects list every property as required and forbid extra keys; nullable
    nodes use a type array with "null". This is the form strict structured
    output modes expect.
    """
    if isinstance(node, NullableSchema):
        rendered = to_json_schema(node.inner)
        base_type = rendered["type"]
        rendered["type"] = [base_type, "null"]
        if "enum" in rendered:
            rendered["enum"] = [*rendered["enum"], None]
        return rendered

    if isinstance(node, PrimitiveSchema):
        rendered: dict[str, Any] = {"type": node.kind}
    elif isinstance(node, EnumSchema):
        rendered = {"type": "string", "enum": list(node.values)}
    elif isinstance(node, ArraySchema):
        rendered = {"type": "array", "items": to_json_schema(node.items)}
    elif isinstance(node, ObjectSchema):
        rendered = {
            "type": "object",
            "properties": {name: to_json_schema(child) for name, child in node.properties.items()},
            "required": list(node.properties),
            "additionalProperties": False,
        }
    else:
        raise TypeError(f"Not a schema node: {node!r}")

    if node.description:
        rendered["description"] = node.description
    return rendered


# Parsing arbitrary JSON Schema into the tree


def parse_json_schema(schema: dict[str, Any]) -> SchemaNode:
    """Parse a JSON Schema dict (any common dialect) into a schema tree.

    Understands type arrays with "null", anyOf/oneOf/allOf, internal $ref
    into definitions/$defs, OpenAPI-style ``nullable: true`` and upper-case
    type names. Properties missing from an explicit ``required`` list become
    nullable.
    """
    return _parse(schema, root=schema, resolving=())


def _resolve_ref(ref: str, root: dict[str, Any], resolving: tuple[str, ...]) -> dict[str, Any]:
    if ref in resolving:
        raise ValueError(f"Recursive $ref is not supported: {ref}")
    if not ref.startswith("#/"):
        raise ValueError(f"Only internal $ref values are supported: {ref}")

    target: Any = root
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(target, dict) or part not in target:
            raise ValueError(f"Unresolvable $ref: {ref}")
        target = target[part]
    return target


def _merge_all_of(branches: list[dict[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    properties: dict[str, Any] = {}
    required: list[str] = []
    for branch in branches:
        for key, value in branch.items():
            if key == "properties":
                properties.update(value)
            elif key == "required":
                required.extend(r for r in value if r not in required)
            else:
                merged.setdefault(key, value)
    if properties:
        merged["properties"] = properties
    if required:
        merged["required"] = required
    return merged


def _is_null_branch(branch: dict[str, Any]) -> bool:
    branch_type = branch.get("type")
    return isinstance(branch_type, str) and branch_type.lower() == "null"


def _parse(schema: dict[str, Any], root: dict[str, Any], resolving: tuple[str, ...]) -> SchemaNode:
    if not isinstance(schema, dict):
        raise ValueError(f"Schema must be an object, got {type(schema).__name__}")

    if "$ref" in schema:
        ref = schema["$ref"]
        target = dict(_resolve_ref(ref, root, resolving))
        # Sibling keywords (description, nullable) override the referenced schema
        for key, value in schema.items():
            if key != "$ref":
                target[key] = value
        return _parse(target, root, resolving + (ref,))

    description = schema.get("description")
    is_nullable = schema.get("nullable") is True

    if "allOf" in schema:
        rest = {k: v for k, v in schema.items() if k != "allOf"}
        merged = _merge_all_of([rest, *schema["allOf"]])
        node = _parse(merged, root, resolving)
        return nullable(node) if is_nullable else node

    for union_key in ("anyOf", "oneOf"):
        if union_key in schema:
            branches = schema[union_key]
            non_null = [b for b in branches if not _is_null_branch(b)]
            if len(non_null) < len(branches):
                is_nullable = True
            if not non_null:
                node = PrimitiveSchema("string", description)
            else:
                first = dict(non_null[0])
                if description and "description" not in first:
                    first["description"] = description
                node = _parse(first, root, resolving)
            return nullable(node) if is_nullable else node

    raw_type = schema.get("type")
    if isinstance(raw_type, list):
        types = [str(t).lower() for t in raw_type]
        if "null" in types:
            is_nullable = True
        types = [t for t in types if t != "null"]
        type_name = types[0] if types else "null"
    elif isinstance(raw_type, str):
        type_name = raw_type.lower()
    elif "properties" in schema:
        type_name = "object"
    elif "items" in schema:
        type_name = "array"
    else:
        type_name = "string"

    if type_name == "null":
        return nullable(PrimitiveSchema("string", description))

    if "enum" in schema:
        values = schema["enum"]
        if None in values:
            is_nullable = True
        node = EnumSchema(tuple(str(v) for v in values if v is not None), description)
    elif type_name == "object":
        required = schema.get("required")
        properties: dict[str, SchemaNode] = {}
        for name, child_schema in schema.get("properties", {}).items():
            child = _parse(child_schema, root, resolving)
            if required is not None and name not in required:
                child = nullable(child)
            properties[name] = child
        node = ObjectSchema(properties, description)
    elif type_name == "array":
        items = schema.get("items") or {"type": "string"}
        if isinstance(items, list):
            items = items[0] if items else {"type": "string"}
        node = ArraySchema(_parse(items, root, resolving), description)
    elif type_name in PRIMITIVE_KINDS:
        node = PrimitiveSchema(type_name, description)
    else:
        raise ValueError(f"Unsupported schema type: {raw_type!r}")

    return nullable(node) if is_nullable else node


# Structural validation of decoded model output


def _describe(node: SchemaNode) -> str:
    if isinstance(node, PrimitiveSchema):
        return node.kind
    if isinstance(node, EnumSchema):
        return f"one of {list(node.values)}"
    if isinstance(node, ArraySchema):
        return "array"
    if isinstance(node, ObjectSchema):
        return "object"
    return _describe(node.inner)


def validate(node: SchemaNode, value: Any, path: str = "$", raw_text: str | None = None) -> Any:
    """Validate a decoded value against the tree and return the normalized value.

    Normalization:
    - Missing keys of nullable properties become None
    - Unknown object keys are dropped
    - Integral floats are accepted as integers, numeric strings as numbers
    - Enum values are matched case-insensitively and returned canonically

    Raises:
        SchemaValidationError: On the first structural mismatch.
    """
    if isinstance(node, NullableSchema):
        if value is None:
            return None
        return validate(node.inner, value, path, raw_text)

    if value is None:
        raise SchemaValidationError(f"expected {_describe(node)}, got null", raw_text, path)

    if isinstance(node, PrimitiveSchema):
        return _validate_primitive(node, value, path, raw_text)

    if isinstance(node, EnumSchema):
        text = str(value).strip()
        for allowed in node.values:
            if allowed == text or allowed.lower() == text.lower():
                return allowed
        raise SchemaValidationError(
            f"value {text!r} not in {list(node.values)}", raw_text, path
        )

    if isinstance(node, ArraySchema):
        if not isinstance(value, list):
            raise SchemaValidationError(
                f"expected array, got {type(value).__name__}", raw_text, path
            )
        return [validate(node.items, item, f"{path}[{i}]", raw_text) for i, item in enumerate(value)]

    if isinstance(node, ObjectSchema):
        if not isinstance(value, dict):
            raise SchemaValidationError(
                f"expected object, got {type(value).__name__}", raw_text, path
            )
        result: dict[str, Any] = {}
        for name, child in node.properties.items():
            child_path = f"{path}.{name}"
            if name not in value:
                if isinstance(child, NullableSchema):
                    result[name] = None
                    continue
                raise SchemaValidationError("missing required property", raw_text, child_path)
            result[name] = validate(child, value[name], child_path, raw_text)
        return result

    raise TypeError(f"Not a schema node: {node!r}")


def _validate_primitive(node: PrimitiveSchema, value: Any, path: str, raw_text: str | None) -> Any:
    kind = node.kind

    if kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise SchemaValidationError(f"expected boolean, got {value!r}", raw_text, path)

    if kind == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        raise SchemaValidationError(
            f"expected string, got {type(value).__name__}", raw_text, path
        )

    # number / integer
    if isinstance(value, bool):
        raise SchemaValidationError(f"expected {kind}, got boolean", raw_text, path)
    if isinstance(value, str):
        try:
            value = float(value.strip().replace(",", ""))
        except ValueError:
            raise SchemaValidationError(f"expected {kind}, got {value!r}", raw_text, path)
    if not isinstance(value, (int, float)):
        raise SchemaValidationError(
            f"expected {kind}, got {type(value).__name__}", raw_text, path
        )

    if kind == "integer":
        if isinstance(value, float):
            if not value.is_integer():
                raise SchemaValidationError(f"expected integer, got {value!r}", raw_text, path)
            return int(value)
        return value
    return value
