"""
Parameter schemas for aggregated tools.

A downstream tool declares its input as a JSON Schema object. It is
translated into a small tagged union of frozen dataclasses, from which two
things are derived: a pydantic model that validates call arguments, and a
JSON Schema rendering for the exposed ``tools/list``.

Translation rules:

- ``string``: ``pattern`` (searched anywhere in the value), ``minLength``,
  ``maxLength``, ``enum`` (a fixed choice of strings)
- ``number`` / ``integer``: ``minimum``, ``maximum``
- ``boolean``
- ``array``: items typed by ``items.type`` when it is a scalar type,
  otherwise unconstrained; ``minItems``, ``maxItems``
- ``object``: nested properties are kept shallow, each one an optional
  unconstrained value; without properties, a free-form mapping
- anything else: unconstrained

A property absent from ``required`` is optional.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Type, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, create_model

from mcp_aggregator.core.exceptions import InvalidArguments, SchemaTranslationError
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StringSchema:
    description: Optional[str] = None
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    enum: Optional[Tuple[str, ...]] = None
    kind: str = field(default="string", init=False)


@dataclass(frozen=True)
class NumberSchema:
    description: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    kind: str = field(default="number", init=False)


@dataclass(frozen=True)
class IntegerSchema:
    description: Optional[str] = None
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    kind: str = field(default="integer", init=False)


@dataclass(frozen=True)
class BooleanSchema:
    description: Optional[str] = None
    kind: str = field(default="boolean", init=False)


@dataclass(frozen=True)
class AnySchema:
    description: Optional[str] = None
    kind: str = field(default="any", init=False)


@dataclass(frozen=True)
class ArraySchema:
    items: "ParameterSchema" = field(default_factory=AnySchema)
    description: Optional[str] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    kind: str = field(default="array", init=False)


@dataclass(frozen=True)
class ObjectSchema:
    """
    An object of named properties.

    ``properties`` of None means a free-form mapping with no declared keys.
    """

    properties: Optional[Dict[str, "ParameterSchema"]] = None
    required: FrozenSet[str] = frozenset()
    description: Optional[str] = None
    kind: str = field(default="object", init=False)

    @property
    def unconstrained(self) -> bool:
        return self.properties is None


ParameterSchema = Union[
    StringSchema, NumberSchema, IntegerSchema, BooleanSchema, ArraySchema, ObjectSchema, AnySchema,
]

SCALAR_TYPES = ("string", "number", "integer", "boolean")


# -- translation ---------------------------------------------------------


def translate_schema(raw: Any) -> ObjectSchema:
    """
    Translate a tool's declared input schema.

    No schema yields an object with no parameters; a schema without
    ``properties`` yields a free-form object.

    Raises:
        SchemaTranslationError: The schema is malformed.
    """
    if raw is None:
        return ObjectSchema(properties={})
    if not isinstance(raw, dict):
        raise SchemaTranslationError(f"Input schema must be an object, got {type(raw).__name__}")

    description = _optional_str(raw, "description")
    properties = raw.get("properties")
    if properties is None:
        return ObjectSchema(properties=None, description=description)
    if not isinstance(properties, dict):
        raise SchemaTranslationError("'properties' must be an object")

    required = raw.get("required") or []
    if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
        raise SchemaTranslationError("'required' must be a list of property names")

    translated = {}
    for name, prop in properties.items():
        try:
            translated[name] = translate_property(prop)
        except SchemaTranslationError as e:
            raise SchemaTranslationError(f"Property '{name}': {e.message}") from e

    return ObjectSchema(properties=translated, required=frozenset(required), description=description)


def translate_property(prop: Any) -> ParameterSchema:
    """Translate one property schema."""
    if not isinstance(prop, dict):
        raise SchemaTranslationError(f"Property schema must be an object, got {type(prop).__name__}")

    prop_type = prop.get("type")
    description = _optional_str(prop, "description")

    if prop_type == "string":
        pattern = _optional_str(prop, "pattern")
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                raise SchemaTranslationError(f"Invalid pattern {pattern!r}: {e}") from e

        enum = prop.get("enum")
        if enum is not None:
            if not isinstance(enum, list) or not all(isinstance(v, str) for v in enum):
                raise SchemaTranslationError("'enum' must be a list of strings")
            enum = tuple(enum) or None

        return StringSchema(
            description=description,
            pattern=pattern,
            min_length=_optional_int(prop, "minLength"),
            max_length=_optional_int(prop, "maxLength"),
            enum=enum,
        )

    if prop_type == "number":
        return NumberSchema(
            description=description,
            minimum=_optional_number(prop, "minimum"),
            maximum=_optional_number(prop, "maximum"),
        )

    if prop_type == "integer":
        return IntegerSchema(
            description=description,
            minimum=_optional_number(prop, "minimum"),
            maximum=_optional_number(prop, "maximum"),
        )

    if prop_type == "boolean":
        return BooleanSchema(description=description)

    if prop_type == "array":
        items = prop.get("items")
        item_type = items.get("type") if isinstance(items, dict) else None
        return ArraySchema(
            items=_scalar(item_type) if item_type in SCALAR_TYPES else AnySchema(),
            description=description,
            min_items=_optional_int(prop, "minItems"),
            max_items=_optional_int(prop, "maxItems"),
        )

    if prop_type == "object":
        nested = prop.get("properties")
        if isinstance(nested, dict) and nested:
            shallow = {
                name: AnySchema(description=_optional_str(value, "description") if isinstance(value, dict) else None)
                for name, value in nested.items()
            }
            return ObjectSchema(properties=shallow, description=description)
        return ObjectSchema(properties=None, description=description)

    return AnySchema(description=description)


def translate_tool_schema(raw: Any, tool_name: str) -> ObjectSchema:
    """Translate, degrading a malformed schema to a free-form object."""
    try:
        return translate_schema(raw)
    except SchemaTranslationError as e:
        logger.warning(f"Input schema of {tool_name} is malformed, accepting any arguments: {e.message}")
        return ObjectSchema(properties=None)


def _scalar(type_name: str) -> ParameterSchema:
    return {
        "string": StringSchema,
        "number": NumberSchema,
        "integer": IntegerSchema,
        "boolean": BooleanSchema,
    }[type_name]()


def _optional_str(source: Dict[str, Any], key: str) -> Optional[str]:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise SchemaTranslationError(f"'{key}' must be a string")
    return value


def _optional_int(source: Dict[str, Any], key: str) -> Optional[int]:
    value = source.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise SchemaTranslationError(f"'{key}' must be a non-negative integer")
    return value


def _optional_number(source: Dict[str, Any], key: str) -> Optional[float]:
    value = source.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaTranslationError(f"'{key}' must be a number")
    return value


# -- validators ------------------------------------------------------------


def _pattern_check(pattern: str):
    compiled = re.compile(pattern)

    def check(value: str) -> str:
        if not compiled.search(value):
            raise ValueError(f"String should match pattern '{pattern}'")
        return value

    return check


def _annotation(schema: ParameterSchema) -> Any:
    if isinstance(schema, StringSchema):
        if schema.enum:
            return Literal[schema.enum]
        metadata: List[Any] = [Field(min_length=schema.min_length, max_length=schema.max_length)]
        if schema.pattern is not None:
            metadata.append(AfterValidator(_pattern_check(schema.pattern)))
        return Annotated[(str, *metadata)]

    if isinstance(schema, (NumberSchema, IntegerSchema)):
        base = float if isinstance(schema, NumberSchema) else int
        return Annotated[base, Field(ge=schema.minimum, le=schema.maximum)]

    if isinstance(schema, BooleanSchema):
        return bool

    if isinstance(schema, ArraySchema):
        return Annotated[List[_annotation(schema.items)], Field(min_length=schema.min_items, max_length=schema.max_items)]

    if isinstance(schema, ObjectSchema):
        return Dict[str, Any]

    return Any


def build_validator(schema: ObjectSchema, model_name: str = "ToolArguments") -> Type[BaseModel]:
    """
    Build a pydantic model that validates a call's argument object.

    Fields carry internal names and are aliased to the declared property
    names, so any property name (including ones that are not Python
    identifiers or that clash with ``BaseModel`` attributes) is supported.
    Values are checked strictly; undeclared keys are allowed.
    """
    fields: Dict[str, Any] = {}
    for index, (name, prop) in enumerate((schema.properties or {}).items()):
        if name in schema.required:
            info = Field(..., alias=name, description=prop.description)
        else:
            info = Field(default=None, alias=name, description=prop.description)
        fields[f"param_{index}"] = (_annotation(prop), info)

    return create_model(
        _model_name(model_name),
        __config__=ConfigDict(strict=True, extra="allow"),
        **fields,
    )


def _model_name(name: str) -> str:
    cleaned = re.sub(r"\W+", "_", name).strip("_")
    return cleaned or "ToolArguments"


def validate_arguments(validator: Type[BaseModel], arguments: Any, tool_name: str = "") -> None:
    """
    Check an argument object against a validator.

    Raises:
        InvalidArguments: Arguments are not an object or fail validation.
    """
    if not isinstance(arguments, dict):
        raise InvalidArguments(
            f"Arguments for {tool_name} must be a JSON object, got {type(arguments).__name__}",
            error_code="INVALID_ARGUMENTS",
            details={"tool": tool_name},
        )
    try:
        validator.model_validate(arguments)
    except ValidationError as e:
        errors = json.loads(e.json(include_url=False))
        summary = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', [])) or '<root>'}: {err.get('msg')}" for err in errors
        )
        raise InvalidArguments(
            f"Invalid arguments for {tool_name}: {summary}",
            error_code="INVALID_ARGUMENTS",
            details={"tool": tool_name, "errors": errors},
        ) from e


# -- rendering ---------------------------------------------------------------


def to_json_schema(schema: ParameterSchema) -> Dict[str, Any]:
    """Render a translated schema back to JSON Schema."""
    rendered: Dict[str, Any] = {}

    if isinstance(schema, StringSchema):
        rendered["type"] = "string"
        if schema.pattern is not None:
            rendered["pattern"] = schema.pattern
        if schema.min_length is not None:
            rendered["minLength"] = schema.min_length
        if schema.max_length is not None:
            rendered["maxLength"] = schema.max_length
        if schema.enum:
            rendered["enum"] = list(schema.enum)
    elif isinstance(schema, (NumberSchema, IntegerSchema)):
        rendered["type"] = schema.kind
        if schema.minimum is not None:
            rendered["minimum"] = schema.minimum
        if schema.maximum is not None:
            rendered["maximum"] = schema.maximum
    elif isinstance(schema, BooleanSchema):
        rendered["type"] = "boolean"
    elif isinstance(schema, ArraySchema):
        rendered["type"] = "array"
        rendered["items"] = to_json_schema(schema.items)
        if schema.min_items is not None:
            rendered["minItems"] = schema.min_items
        if schema.max_items is not None:
            rendered["maxItems"] = schema.max_items
    elif isinstance(schema, ObjectSchema):
        rendered["type"] = "object"
        if schema.properties is not None:
            rendered["properties"] = {name: to_json_schema(p) for name, p in schema.properties.items()}
            required = [name for name in schema.properties if name in schema.required]
            if required:
                rendered["required"] = required

    if schema.description:
        rendered["description"] = schema.description
    return rendered
