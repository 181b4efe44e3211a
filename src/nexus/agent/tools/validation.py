"""
Tool input validation.

Builds pydantic models from the JSON schema a tool was registered with, so
every call is checked before its handler runs. Supported keywords: type,
properties, required, enum, items, default, additionalProperties.
Unknown properties are rejected unless additionalProperties is true.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    create_model,
)

from ..exceptions import ToolValidationError

logger = logging.getLogger(__name__)

# Strict scalars: "5" is not an integer and 1 is not a boolean
_JSON_TYPES: dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
    "array": list,
    "object": dict,
    "null": type(None),
}


def _annotation_for(schema: dict[str, Any], model_name: str) -> Any:
    """Map a JSON schema fragment to a type annotation."""
    if "enum" in schema:
        return Literal[tuple(schema["enum"])]

    json_type = schema.get("type")
    if isinstance(json_type, list):
        members = tuple(_annotation_for({**schema, "type": t}, model_name) for t in json_type)
        return Union[members]

    if json_type == "array":
        items = schema.get("items")
        if isinstance(items, dict) and items:
            return list[_annotation_for(items, f"{model_name}Item")]
        return list

    if json_type == "object" and "properties" in schema:
        return build_input_model(schema, model_name)

    return _JSON_TYPES.get(json_type, Any)


def build_input_model(schema: dict[str, Any], model_name: str) -> type[BaseModel]:
    """Create a pydantic model for a JSON object schema.

    Property names are carried as aliases so names that are not valid
    identifiers (or clash with BaseModel attributes) still validate.

    Args:
        schema: JSON schema of type object
        model_name: Name for the generated model class

    Returns:
        A BaseModel subclass
    """
    properties: dict[str, Any] = schema.get("properties", {}) or {}
    required = set(schema.get("required", []) or [])
    allow_extra = schema.get("additionalProperties") is True or (
        not properties and schema.get("additionalProperties") is not False
    )

    fields: dict[str, Any] = {}
    for index, (prop_name, prop_schema) in enumerate(properties.items()):
        prop_schema = prop_schema or {}
        annotation = _annotation_for(prop_schema, f"{model_name}_{prop_name}")
        if prop_name in required:
            fields[f"field_{index}"] = (annotation, Field(..., alias=prop_name))
        else:
            fields[f"field_{index}"] = (
                Optional[annotation],
                Field(prop_schema.get("default"), alias=prop_name),
            )

    config = ConfigDict(
        extra="allow" if allow_extra else "forbid",
        populate_by_name=False,
    )
    return create_model(model_name, __config__=config, **fields)


def format_validation_errors(error: ValidationError) -> list[dict[str, Any]]:
    """Flatten pydantic errors into loc/msg/type dicts."""
    return [
        {
            "loc": ".".join(str(part) for part in err.get("loc", ())),
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in error.errors()
    ]


def validate_params(
    model: type[BaseModel],
    params: Any,
    tool_name: str,
    schema: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Validate tool parameters against a generated model.

    Args:
        model: Model built by build_input_model
        params: Raw parameters from the reasoning step
        tool_name: Tool name for error reporting
        schema: Original schema, used to apply explicit defaults

    Returns:
        Validated parameters keyed by their original property names

    Raises:
        ToolValidationError: If params is not an object or violates the schema
    """
    if not isinstance(params, dict):
        raise ToolValidationError(
            f"Parameters for '{tool_name}' must be an object, got {type(params).__name__}",
            tool_name=tool_name,
        )

    try:
        instance = model.model_validate(params)
    except ValidationError as e:
        errors = format_validation_errors(e)
        summary = "; ".join(f"{err['loc'] or '<root>'}: {err['msg']}" for err in errors)
        logger.debug(f"Validation failed for {tool_name}: {summary}")
        raise ToolValidationError(
            f"Invalid parameters for '{tool_name}': {summary}",
            tool_name=tool_name,
            errors=errors,
        ) from e

    validated = instance.model_dump(by_alias=True, exclude_unset=True)

    # Schema defaults are applied so handlers see them
    for prop_name, prop_schema in ((schema or {}).get("properties") or {}).items():
        if isinstance(prop_schema, dict) and "default" in prop_schema:
            validated.setdefault(prop_name, prop_schema["default"])

    return validated
