"""
Admission Validation - Spec checks for SchemaRegistry and Schema resources.

Each validator returns a list of FieldError; an empty list means the spec
is admissible. A structural JSON Schema check runs first, and the semantic
rules only run once the spec has the right shape.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from models import COMPATIBILITY_LEVELS, KIND_SCHEMA, KIND_SCHEMA_REGISTRY

logger = logging.getLogger(__name__)

# Field error types
REQUIRED = "Required"
INVALID = "Invalid"
FORBIDDEN = "Forbidden"
NOT_SUPPORTED = "NotSupported"


@dataclass(frozen=True)
class FieldError:
    path: str
    type: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class AdmissionError(Exception):
    """Raised when a resource write is rejected by validation."""

    def __init__(self, kind: str, errors: List[FieldError]):
        self.kind = kind
        self.errors = errors
        super().__init__(f"{kind} rejected: {format_errors(errors)}")


_SECRET_REF_BLOCK = {
    "type": "object",
    "properties": {"secretRef": {"type": "string"}},
}

REGISTRY_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["url"],
    "properties": {
        "url": {"type": "string"},
        "insecureSkipVerify": {"type": "boolean"},
        "timeout": {"type": "integer"},
        "auth": {
            "type": "object",
            "properties": {
                "type": {"enum": ["NONE", "BASIC", "BEARER", "MTLS"]},
                "basicAuth": _SECRET_REF_BLOCK,
                "bearerAuth": _SECRET_REF_BLOCK,
                "mtls": {
                    "type": "object",
                    "properties": {
                        "certSecretRef": {"type": "string"},
                        "caSecretRef": {"type": "string"},
                    },
                },
            },
        },
    },
}

SCHEMA_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["subject", "schema", "registryRef"],
    "properties": {
        "subject": {"type": "string"},
        "schemaType": {"enum": ["AVRO", "JSON", "PROTOBUF"]},
        "schema": {"type": "string"},
        "compatibilityLevel": {"type": "string"},
        "registryRef": {
            "type": "object",
            "required": ["name"],
            "properties": {
                "name": {"type": "string"},
                "namespace": {"type": "string"},
            },
        },
        "references": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "subject", "version"],
                "properties": {
                    "name": {"type": "string"},
                    "subject": {"type": "string"},
                    "version": {"type": "integer"},
                },
            },
        },
    },
}


def _structural_errors(spec: Any, schema: Dict[str, Any]) -> List[FieldError]:
    validator = Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(spec), key=lambda e: list(e.path)):
        path = ".".join(["spec", *(str(p) for p in error.absolute_path)])
        if error.validator == "required":
            errors.append(FieldError(path, REQUIRED, error.message))
        elif error.validator == "enum":
            errors.append(FieldError(path, NOT_SUPPORTED, error.message))
        else:
            errors.append(FieldError(path, INVALID, error.message))
    return errors


def validate_registry_spec(spec: Dict[str, Any]) -> List[FieldError]:
    """Validate a SchemaRegistry spec."""
    errors = _structural_errors(spec, REGISTRY_SPEC_SCHEMA)
    if errors:
        return errors

    url = spec.get("url", "")
    if not url:
        errors.append(FieldError("spec.url", REQUIRED, "url must not be empty"))
    elif not url.startswith(("http://", "https://")):
        errors.append(
            FieldError("spec.url", INVALID, "url must start with http:// or https://")
        )

    if spec.get("timeout", 0) < 0:
        errors.append(FieldError("spec.timeout", INVALID, "timeout must be >= 0"))

    auth = spec.get("auth") or {}
    auth_type = auth.get("type", "NONE")
    block_name, ref_field = {
        "BASIC": ("basicAuth", "secretRef"),
        "BEARER": ("bearerAuth", "secretRef"),
        "MTLS": ("mtls", "certSecretRef"),
    }.get(auth_type, (None, None))

    if block_name is not None:
        block = auth.get(block_name)
        if block is None:
            errors.append(
                FieldError(
                    f"spec.auth.{block_name}",
                    REQUIRED,
                    f"{block_name} must be set when auth type is {auth_type}",
                )
            )
        elif not block.get(ref_field):
            errors.append(
                FieldError(
                    f"spec.auth.{block_name}.{ref_field}",
                    REQUIRED,
                    f"{block_name}.{ref_field} must not be empty",
                )
            )

    return errors


def validate_schema_spec(spec: Dict[str, Any]) -> List[FieldError]:
    """Validate a Schema spec."""
    errors = _structural_errors(spec, SCHEMA_SPEC_SCHEMA)
    if errors:
        return errors

    if not spec.get("subject"):
        errors.append(FieldError("spec.subject", REQUIRED, "subject must not be empty"))

    content = spec.get("schema", "")
    schema_type = spec.get("schemaType", "AVRO")
    if not content:
        errors.append(
            FieldError("spec.schema", REQUIRED, "schema content must not be empty")
        )
    elif schema_type in ("AVRO", "JSON"):
        try:
            json.loads(content)
        except ValueError:
            errors.append(
                FieldError(
                    "spec.schema", INVALID, f"{schema_type} schema must be valid JSON"
                )
            )

    if not spec["registryRef"].get("name"):
        errors.append(
            FieldError(
                "spec.registryRef.name", REQUIRED, "registryRef.name must not be empty"
            )
        )

    for i, ref in enumerate(spec.get("references") or []):
        path = f"spec.references.{i}"
        if not ref["name"]:
            errors.append(
                FieldError(f"{path}.name", REQUIRED, "reference name must not be empty")
            )
        if not ref["subject"]:
            errors.append(
                FieldError(
                    f"{path}.subject", REQUIRED, "reference subject must not be empty"
                )
            )
        if ref["version"] < 1:
            errors.append(
                FieldError(
                    f"{path}.version", INVALID, "reference version must be >= 1"
                )
            )

    level = spec.get("compatibilityLevel")
    if level and level not in COMPATIBILITY_LEVELS:
        errors.append(
            FieldError(
                "spec.compatibilityLevel",
                NOT_SUPPORTED,
                f"compatibilityLevel must be one of {', '.join(COMPATIBILITY_LEVELS)}",
            )
        )

    return errors


def validate_schema_update(
    old_spec: Dict[str, Any], new_spec: Dict[str, Any]
) -> List[FieldError]:
    """Validate a Schema spec change: identity fields are immutable."""
    errors = []
    if old_spec.get("subject") != new_spec.get("subject"):
        errors.append(
            FieldError(
                "spec.subject",
                FORBIDDEN,
                "subject is immutable and cannot be changed after creation",
            )
        )
    if old_spec.get("schemaType", "AVRO") != new_spec.get("schemaType", "AVRO"):
        errors.append(
            FieldError(
                "spec.schemaType",
                FORBIDDEN,
                "schemaType is immutable and cannot be changed after creation",
            )
        )
    return errors + validate_schema_spec(new_spec)


def format_errors(errors: List[FieldError]) -> str:
    return "; ".join(str(e) for e in errors)


def admit(
    kind: str, spec: Dict[str, Any], old_spec: Optional[Dict[str, Any]] = None
) -> None:
    """
    Run the validators for a create (``old_spec`` is None) or an update.

    Kinds without validators are admitted unchanged.

    Raises:
        AdmissionError: If any validator reports errors.
    """
    if kind == KIND_SCHEMA_REGISTRY:
        errors = validate_registry_spec(spec)
    elif kind == KIND_SCHEMA:
        if old_spec is None:
            errors = validate_schema_spec(spec)
        else:
            errors = validate_schema_update(old_spec, spec)
    else:
        return

    if errors:
        logger.info(f"Rejected {kind} spec: {format_errors(errors)}")
        raise AdmissionError(kind, errors)
