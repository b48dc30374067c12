"""
JSON Schema validation service.

Collects every error rather than failing on the first one, so a client gets
the whole list back in one ``ValidationFailed`` response.
"""

from typing import Any

import jsonschema

from prestrack.errors import ValidationFailedError
from prestrack.schemas.fhir import SCHEMAS_BY_TYPE


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns a list of error messages (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    return [error.message for error in validator.iter_errors(data)]


def validate_resource(resource_type: str, payload: dict[str, Any]) -> None:
    """Raise ValidationFailed if ``payload`` lacks structural fields for its type."""
    if not isinstance(payload, dict):
        raise ValidationFailedError(f"{resource_type} payload must be a JSON object")
    schema = SCHEMAS_BY_TYPE.get(resource_type)
    if schema is None:
        return
    errors = validate_against_schema(payload, schema)
    if errors:
        raise ValidationFailedError(f"Invalid {resource_type}", errors=errors)
