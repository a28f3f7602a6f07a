"""
Spec Validation - JSON Schema checks for GuestBook specs.

Used by the HTTP API to reject bad specs before they are stored, and by
the reconciler to refuse to apply a spec that slipped through.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

GUESTBOOK_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "replicas": {
            "type": ["integer", "null"],
            "minimum": 0,
        },
    },
}


class ConfigurationError(Exception):
    """A desired-state spec cannot be applied as written."""


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a spec against a JSON Schema.

    Args:
        spec: The specification to validate
        schema: Draft 7 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = sorted(validator.iter_errors(spec), key=lambda e: [str(p) for p in e.absolute_path])

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_guestbook_spec(spec: Dict[str, Any]) -> None:
    """
    Check a GuestBook spec dict.

    Raises:
        ConfigurationError: If the spec does not match GUESTBOOK_SPEC_SCHEMA.
    """
    is_valid, error = validate_spec_against_schema(spec, GUESTBOOK_SPEC_SCHEMA)
    if not is_valid:
        raise ConfigurationError(f"Invalid GuestBook spec: {error}")
