"""JSON schemas for type-specific validation rule config."""

from typing import Any, Optional

import jsonschema

from .models import ValidationType


CONDITION_OPERATORS = [
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "contains",
    "not_contains",
    "empty",
    "not_empty",
    "in",
    "not_in",
]

VALUE_TYPES = ["string", "number", "date", "boolean", "array"]

CONDITION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["field", "operator"],
    "properties": {
        "field": {"type": "string", "minLength": 1},
        "operator": {"enum": CONDITION_OPERATORS},
        "value": {},
        "value_type": {"enum": VALUE_TYPES},
        "logical_operator": {"enum": ["AND", "OR"]},
    },
    # Every operator except the emptiness checks compares against a value
    "if": {
        "properties": {"operator": {"not": {"enum": ["empty", "not_empty"]}}},
    },
    "then": {
        "required": ["value"],
        "properties": {"value": {"not": {"type": "null"}}},
    },
}

VALIDATION_CONFIG_SCHEMAS: dict[str, dict[str, Any]] = {
    ValidationType.REQUIRED_FIELD.value: {
        "type": "object",
        "anyOf": [
            {"required": ["field_name"]},
            {"required": ["custom_field_id"]},
        ],
        "properties": {
            "field_name": {"type": "string", "minLength": 1},
            "custom_field_id": {"type": "string", "minLength": 1},
            "field_type": {"type": "string"},
        },
    },
    ValidationType.REQUIRED_CHECKLIST.value: {
        "type": "object",
        "required": ["checklist_id"],
        "properties": {
            "checklist_id": {"type": "string", "minLength": 1},
            "required_items": {"type": "array", "items": {"type": "string"}},
            "all_items_required": {"type": "boolean"},
        },
    },
    ValidationType.REQUIRED_DOCUMENT.value: {
        "type": "object",
        "properties": {
            "document_type": {"type": "string"},
            "document_status": {"enum": ["any", "signed", "approved"]},
            "min_documents": {"type": "integer", "minimum": 1},
            "document_category": {"type": "string"},
        },
    },
    ValidationType.REQUIRED_RELATIONSHIP.value: {
        "type": "object",
        "required": ["relationship_type"],
        "properties": {
            "relationship_type": {"enum": ["client", "property", "project", "rental"]},
            "required": {"type": "boolean"},
        },
    },
    ValidationType.CUSTOM_CONDITION.value: {
        "type": "object",
        "required": ["condition"],
        "properties": {"condition": CONDITION_SCHEMA},
    },
}

ACTION_CONDITIONS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "anyOf": [
            CONDITION_SCHEMA,
            {"type": "object", "required": ["and"]},
            {"type": "object", "required": ["or"]},
            {"type": "object", "required": ["not"]},
        ],
    },
}


def validation_config_error(rule_type: str, config: dict[str, Any]) -> Optional[str]:
    """Return a description of what is wrong with ``config``, or None if valid."""
    schema = VALIDATION_CONFIG_SCHEMAS.get(rule_type)
    if schema is None:
        return f"Unknown validation type: {rule_type}"
    try:
        jsonschema.validate(config, schema)
    except jsonschema.ValidationError as e:
        return e.message
    return None


def action_conditions_error(conditions: list[dict[str, Any]]) -> Optional[str]:
    """Return a description of what is wrong with action ``conditions``, or None."""
    try:
        jsonschema.validate(conditions, ACTION_CONDITIONS_SCHEMA)
    except jsonschema.ValidationError as e:
        return e.message
    return None
