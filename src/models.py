"""
Resource Models - Typed views over SchemaRegistry and Schema resources.

Resources are stored as Kubernetes-shaped dicts (kind, metadata, spec,
status). The models here parse the spec half into validated objects and
give the status half a small dataclass surface for the reconcilers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Resource kinds
KIND_SCHEMA_REGISTRY = "SchemaRegistry"
KIND_SCHEMA = "Schema"
KIND_SECRET = "Secret"

# Condition types and reasons
CONDITION_READY = "Ready"
REASON_CONNECTED = "Connected"
REASON_CONNECTION_FAILED = "ConnectionFailed"
REASON_REGISTERED = "Registered"
REASON_REGISTRATION_FAILED = "RegistrationFailed"
REASON_DELETION_FAILED = "DeletionFailed"

COMPATIBILITY_LEVELS = (
    "BACKWARD",
    "BACKWARD_TRANSITIVE",
    "FORWARD",
    "FORWARD_TRANSITIVE",
    "FULL",
    "FULL_TRANSITIVE",
    "NONE",
)


def now_iso() -> str:
    """Current UTC time in the RFC 3339 form used for status timestamps."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class _SpecModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== Auth strategy ====================


class NoAuth(_SpecModel):
    type: Literal["NONE"] = "NONE"

    def secret_refs(self) -> List[str]:
        return []


class BasicAuth(_SpecModel):
    """Username/password read from keys ``username`` and ``password``."""

    type: Literal["BASIC"] = "BASIC"
    secret_ref: str

    def secret_refs(self) -> List[str]:
        return [self.secret_ref]


class BearerAuth(_SpecModel):
    """Bearer token read from key ``token``."""

    type: Literal["BEARER"] = "BEARER"
    secret_ref: str

    def secret_refs(self) -> List[str]:
        return [self.secret_ref]


class MutualTLSAuth(_SpecModel):
    """Client certificate from ``tls.crt``/``tls.key``, optional CA from ``ca.crt``."""

    type: Literal["MTLS"] = "MTLS"
    cert_secret_ref: str
    ca_secret_ref: Optional[str] = None

    def secret_refs(self) -> List[str]:
        refs = [self.cert_secret_ref]
        if self.ca_secret_ref:
            refs.append(self.ca_secret_ref)
        return refs


AuthStrategy = Annotated[
    Union[NoAuth, BasicAuth, BearerAuth, MutualTLSAuth], Field(discriminator="type")
]

# Sub-block of the resource spec that carries each variant's settings
_AUTH_BLOCKS = {"BASIC": "basicAuth", "BEARER": "bearerAuth", "MTLS": "mtls"}


def _flatten_auth(auth: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Collapse the resource's ``{type, basicAuth|bearerAuth|mtls}`` layout
    into a single tagged dict the discriminated union can parse.
    """
    if not auth:
        return {"type": "NONE"}

    auth_type = auth.get("type") or "NONE"
    block_name = _AUTH_BLOCKS.get(auth_type)
    if block_name is None:
        return {"type": auth_type}

    block = auth.get(block_name)
    if not isinstance(block, dict):
        raise ValueError(f"{block_name} config is required when type is {auth_type}")
    return {"type": auth_type, **block}


# ==================== SchemaRegistry ====================


class RegistryEndpoint(_SpecModel):
    """Desired state of a SchemaRegistry: where it lives and how to reach it."""

    url: str
    auth: AuthStrategy = Field(default_factory=NoAuth)
    insecure_skip_verify: bool = False
    timeout: int = 0

    @model_validator(mode="before")
    @classmethod
    def _unpack_auth(cls, data: Any) -> Any:
        if isinstance(data, dict) and not isinstance(data.get("auth"), BaseModel):
            data = dict(data)
            data["auth"] = _flatten_auth(data.get("auth"))
        return data

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        if not v:
            raise ValueError("url must not be empty")
        return v.rstrip("/")

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "RegistryEndpoint":
        return cls.model_validate(resource.get("spec") or {})


# ==================== Schema ====================


class SchemaType(str, Enum):
    AVRO = "AVRO"
    JSON = "JSON"
    PROTOBUF = "PROTOBUF"


class SchemaReference(_SpecModel):
    name: str
    subject: str
    version: int

    def to_wire(self) -> Dict[str, Any]:
        return {"name": self.name, "subject": self.subject, "version": self.version}


class RegistryRef(_SpecModel):
    name: str
    namespace: Optional[str] = None


class SchemaSubject(_SpecModel):
    """Desired state of a Schema: one subject registered against one registry."""

    subject: str
    schema_type: SchemaType = SchemaType.AVRO
    content: str = Field(alias="schema")
    references: List[SchemaReference] = Field(default_factory=list)
    registry_ref: RegistryRef
    compatibility_level: Optional[str] = None

    @field_validator("compatibility_level")
    @classmethod
    def _empty_level_is_unset(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    def registry_namespace(self, default: str) -> str:
        """Namespace of the referenced SchemaRegistry (defaults to the Schema's)."""
        return self.registry_ref.namespace or default

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "SchemaSubject":
        return cls.model_validate(resource.get("spec") or {})


# ==================== Status ====================


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A typed status flag. At most one condition per type lives on a resource."""

    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time or now_iso(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=data.get("observedGeneration", 0),
            last_transition_time=data.get("lastTransitionTime"),
        )


def set_condition(
    conditions: List[Dict[str, Any]], condition: Condition
) -> List[Dict[str, Any]]:
    """
    Set a condition in place, keyed by type (last write wins).

    ``lastTransitionTime`` only moves when the status value changes.

    Returns:
        The same list, for chaining.
    """
    for i, existing in enumerate(conditions):
        if existing.get("type") != condition.type:
            continue
        if existing.get("status") == condition.status.value:
            condition.last_transition_time = existing.get("lastTransitionTime")
        conditions[i] = condition.to_dict()
        return conditions

    conditions.append(condition.to_dict())
    return conditions


def find_condition(
    conditions: List[Dict[str, Any]], condition_type: str
) -> Optional[Condition]:
    for existing in conditions:
        if existing.get("type") == condition_type:
            return Condition.from_dict(existing)
    return None


class ConnectionState(str, Enum):
    UNKNOWN = "Unknown"
    CONNECTED = "Connected"
    UNREACHABLE = "Unreachable"


@dataclass
class ConnectivityStatus:
    """Status sub-document of a SchemaRegistry."""

    state: ConnectionState = ConnectionState.UNKNOWN
    last_checked_at: Optional[str] = None
    observed_generation: int = 0
    conditions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "ConnectivityStatus":
        status = resource.get("status") or {}
        return cls(
            state=ConnectionState(status.get("connectionStatus", "Unknown")),
            last_checked_at=status.get("lastChecked"),
            observed_generation=status.get("observedGeneration", 0),
            conditions=list(status.get("conditions", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "connectionStatus": self.state.value,
            "observedGeneration": self.observed_generation,
            "conditions": self.conditions,
        }
        if self.last_checked_at:
            status["lastChecked"] = self.last_checked_at
        return status


@dataclass
class RegistrationStatus:
    """Status sub-document of a Schema."""

    schema_id: Optional[int] = None
    version: Optional[int] = None
    registered_at: Optional[str] = None
    observed_generation: int = 0
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    deletion_attempts: int = 0
    finalizer_present: bool = False

    @classmethod
    def from_resource(
        cls, resource: Dict[str, Any], finalizer: str
    ) -> "RegistrationStatus":
        status = resource.get("status") or {}
        finalizers = resource.get("metadata", {}).get("finalizers") or []
        return cls(
            schema_id=status.get("schemaId"),
            version=status.get("version"),
            registered_at=status.get("registeredAt"),
            observed_generation=status.get("observedGeneration", 0),
            conditions=list(status.get("conditions", [])),
            deletion_attempts=status.get("deletionAttempts", 0),
            finalizer_present=finalizer in finalizers,
        )

    def to_dict(self) -> Dict[str, Any]:
        # finalizer_present is derived from metadata and never persisted
        status: Dict[str, Any] = {
            "observedGeneration": self.observed_generation,
            "conditions": self.conditions,
        }
        if self.schema_id is not None:
            status["schemaId"] = self.schema_id
        if self.version is not None:
            status["version"] = self.version
        if self.registered_at:
            status["registeredAt"] = self.registered_at
        if self.deletion_attempts:
            status["deletionAttempts"] = self.deletion_attempts
        return status
