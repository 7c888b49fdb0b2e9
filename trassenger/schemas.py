"""
JSON schemas for the structured records Trassenger exchanges.
Validates decrypted message payloads and imported contact cards.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

MESSAGE_PAYLOAD_SCHEMA_ID = "trassenger/message/v1"
CONTACT_CARD_SCHEMA_ID = "trassenger/contact/v1"

HEX_KEY_PATTERN = "^[0-9a-fA-F]{64}$"

STANDARD_SCHEMAS = {
    MESSAGE_PAYLOAD_SCHEMA_ID: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Message Payload",
        "type": "object",
        "properties": {
            "type": {"type": "string", "minLength": 1},
            "content": {"type": "string"},
            "timestamp": {"type": "integer", "minimum": 0},
            "sender_id": {"type": "string"},
        },
        "required": ["content", "timestamp", "sender_id"],
    },
    CONTACT_CARD_SCHEMA_ID: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Contact Card",
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "encrypt_pk": {"type": "string", "pattern": HEX_KEY_PATTERN},
            "sign_pk": {"type": "string", "pattern": HEX_KEY_PATTERN},
        },
        "required": ["encrypt_pk", "sign_pk"],
    },
}


@dataclass
class ValidationError:
    """A single validation error with details."""
    path: str
    message: str
    schema_id: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


@dataclass
class ValidationResult:
    """Result of schema validation."""
    valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    schema_id: str = ""

    @property
    def error_messages(self) -> List[str]:
        return [str(e) for e in self.errors]


class SchemaValidator:
    """Validates records against the standard Draft-07 schemas."""

    def __init__(self):
        self._validators: Dict[str, Draft7Validator] = {}
        for schema_id, schema in STANDARD_SCHEMAS.items():
            Draft7Validator.check_schema(schema)
            self._validators[schema_id] = Draft7Validator(schema)

    def validate(self, data: Any, schema_id: str) -> ValidationResult:
        validator = self._validators.get(schema_id)
        if validator is None:
            raise KeyError(f"Unknown schema: {schema_id}")

        errors = []
        for error in sorted(validator.iter_errors(data), key=lambda e: str(list(e.absolute_path))):
            path = "".join(f".{p}" for p in error.absolute_path)
            errors.append(ValidationError(
                path=path,
                message=error.message,
                schema_id=schema_id,
            ))

        return ValidationResult(valid=not errors, errors=errors, schema_id=schema_id)


_default_validator = None


def get_validator() -> SchemaValidator:
    """Shared validator instance (compiled schemas are reused)."""
    global _default_validator
    if _default_validator is None:
        _default_validator = SchemaValidator()
    return _default_validator
