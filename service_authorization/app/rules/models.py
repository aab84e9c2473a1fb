"""
Data models for the Authorization Service.

Entities (permissions, roles, assignments, policies) are plain dataclasses
owned by their registry. Inputs crossing the service boundary are pydantic
models so malformed conditions are rejected when they are constructed.
"""

import re
from typing import Dict, Any, Optional, List, Union, Tuple, Annotated, Literal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


RESOURCE_WILDCARD = "*"
ACTION_WILDCARD = "*"
PERMISSION_WILDCARD = "*"
PRINCIPAL_WILDCARD = "*"
DEFAULT_PERMISSION_PRIORITY = 0
DEFAULT_POLICY_VERSION = "1.0"

# ${path} references resolved against the authorization context
VARIABLE_PATTERN = re.compile(r"^\$\{(.+)\}$")


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class PermissionEffect(str, Enum):
    """Permission and statement effects."""
    ALLOW = "allow"
    DENY = "deny"


class SystemRole(str, Enum):
    """Built-in role identifiers."""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class ConditionOperator(str, Enum):
    """Attribute condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    IN = "in"
    NOT_IN = "notIn"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"
    BETWEEN = "between"
    REGEX = "regex"


class AuditEventType(str, Enum):
    """Audit event types."""
    PERMISSION_CREATED = "permission_created"
    PERMISSION_UPDATED = "permission_updated"
    PERMISSION_DELETED = "permission_deleted"
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_UNASSIGNED = "role_unassigned"
    POLICY_CREATED = "policy_created"
    POLICY_UPDATED = "policy_updated"
    POLICY_DELETED = "policy_deleted"
    AUTHORIZATION_ALLOWED = "authorization_allowed"
    AUTHORIZATION_DENIED = "authorization_denied"


class EntityType(str, Enum):
    """Audited entity kinds."""
    PERMISSION = "permission"
    ROLE = "role"
    ASSIGNMENT = "assignment"
    POLICY = "policy"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

class _ConditionBase(BaseModel):
    """Fields shared by every condition kind."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str = Field(..., description="Dotted attribute path into the context")
    description: Optional[str] = None

    @field_validator("field")
    @classmethod
    def _field_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Condition field is required")
        return value.strip()

    @property
    def variable_path(self) -> Optional[str]:
        """Context path when the comparison value is a ${path} reference."""
        value = getattr(self, "value", None)
        if isinstance(value, str):
            match = VARIABLE_PATTERN.match(value)
            if match:
                return match.group(1)
        return None


class ComparisonCondition(_ConditionBase):
    """Scalar comparisons against a literal or a ${path} reference."""

    operator: Literal[
        "equals", "notEquals", "contains", "notContains", "startsWith", "endsWith",
        "greaterThan", "lessThan", "greaterThanOrEqual", "lessThanOrEqual",
    ]
    value: Any


class MembershipCondition(_ConditionBase):
    """in / notIn against a list or a ${path} reference to one."""

    operator: Literal["in", "notIn"]
    value: Union[List[Any], str]

    @field_validator("value")
    @classmethod
    def _list_or_variable(cls, value):
        if isinstance(value, str) and not VARIABLE_PATTERN.match(value):
            raise ValueError("in/notIn requires a list or a ${path} reference")
        return value


class ExistenceCondition(_ConditionBase):
    """exists / notExists take no operand."""

    operator: Literal["exists", "notExists"]
    value: Any = None


class BetweenCondition(_ConditionBase):
    """Inclusive numeric range."""

    operator: Literal["between"]
    value: Tuple[float, float]

    @field_validator("value", mode="before")
    @classmethod
    def _numeric_pair(cls, value):
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError("between requires a two-element [low, high] range")
        for bound in value:
            if isinstance(bound, bool) or not isinstance(bound, (int, float)):
                raise ValueError("between bounds must be numbers")
        return value

    @model_validator(mode="after")
    def _ordered(self):
        low, high = self.value
        if low > high:
            raise ValueError("between lower bound exceeds upper bound")
        return self


class RegexCondition(_ConditionBase):
    """Regular expression search on string attributes."""

    operator: Literal["regex"]
    value: str

    @field_validator("value")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression: {exc}") from exc
        return value


Condition = Annotated[
    Union[ComparisonCondition, MembershipCondition, ExistenceCondition, BetweenCondition, RegexCondition],
    Field(discriminator="operator"),
]

CONDITION_LIST_ADAPTER = TypeAdapter(List[Condition])


def parse_conditions(raw: Optional[List[Any]]) -> List[Any]:
    """Build typed conditions from dicts (or pass typed ones through)."""
    if not raw:
        return []
    return CONDITION_LIST_ADAPTER.validate_python(list(raw))


class TimeCondition(BaseModel):
    """Time window restricting when a permission applies."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    days_of_week: Optional[List[Annotated[int, Field(ge=0, le=6)]]] = None  # 0=Sunday
    hours_of_day: Optional[List[Annotated[int, Field(ge=0, le=23)]]] = None
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value

    @property
    def zone(self):
        return ZoneInfo(self.timezone) if self.timezone else timezone.utc


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Permission:
    """Permission definition."""
    id: str
    name: str
    resource: str
    actions: List[str]
    effect: PermissionEffect = PermissionEffect.ALLOW
    description: Optional[str] = None
    conditions: List[Any] = field(default_factory=list)
    time_condition: Optional[TimeCondition] = None
    priority: int = DEFAULT_PERMISSION_PRIORITY
    metadata: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    """Role definition with optional parent roles."""
    id: str
    name: str
    permissions: List[str] = field(default_factory=list)
    parent_roles: List[str] = field(default_factory=list)
    description: Optional[str] = None
    is_system: bool = False
    max_assignments: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRoleAssignment:
    """Grant of a role to a user within a tenant."""
    user_id: str
    role_id: str
    tenant_id: str
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    assigned_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class PolicyStatement(BaseModel):
    """IAM-style policy statement."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sid: Optional[str] = None
    effect: Optional[PermissionEffect] = None
    principals: Optional[List[str]] = None
    not_principals: Optional[List[str]] = None
    actions: List[str] = Field(default_factory=list)
    not_actions: Optional[List[str]] = None
    resources: List[str] = Field(default_factory=list)
    not_resources: Optional[List[str]] = None
    conditions: List[Condition] = Field(default_factory=list)


@dataclass
class Policy:
    """Policy document grouping ordered statements."""
    id: str
    name: str
    statements: List[PolicyStatement]
    version: str = DEFAULT_POLICY_VERSION
    description: Optional[str] = None
    is_active: bool = True
    priority: int = 0
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class PermissionCreateRequest(BaseModel):
    """Request model for creating a permission."""
    id: Optional[str] = Field(None, description="Permission ID (generated when omitted)")
    name: str = Field("", description="Permission name")
    description: Optional[str] = Field(None, description="Permission description")
    resource: str = Field("", description="Resource pattern")
    actions: List[str] = Field(default_factory=list, description="Allowed actions")
    effect: PermissionEffect = Field(PermissionEffect.ALLOW, description="Permission effect")
    conditions: List[Condition] = Field(default_factory=list, description="Attribute conditions")
    time_condition: Optional[TimeCondition] = Field(None, description="Time window")
    priority: int = Field(DEFAULT_PERMISSION_PRIORITY, description="Permission priority")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    tenant_id: Optional[str] = Field(None, description="Tenant ID")


class PermissionUpdateRequest(BaseModel):
    """Request model for updating a permission."""
    name: Optional[str] = None
    description: Optional[str] = None
    resource: Optional[str] = None
    actions: Optional[List[str]] = None
    effect: Optional[PermissionEffect] = None
    conditions: Optional[List[Condition]] = None
    time_condition: Optional[TimeCondition] = None
    priority: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class RoleCreateRequest(BaseModel):
    """Request model for creating a role."""
    id: Optional[str] = Field(None, description="Role ID (generated when omitted)")
    name: str = Field("", description="Role name")
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    parent_roles: List[str] = Field(default_factory=list)
    is_system: bool = False
    max_assignments: Optional[int] = Field(None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None


class RoleUpdateRequest(BaseModel):
    """Request model for updating a role."""
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    parent_roles: Optional[List[str]] = None
    max_assignments: Optional[int] = Field(None, ge=0)
    metadata: Optional[Dict[str, Any]] = None


class RoleAssignmentRequest(BaseModel):
    """Request model for assigning a role to a user."""
    user_id: str
    role_id: str
    tenant_id: str
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PolicyCreateRequest(BaseModel):
    """Request model for creating a policy."""
    id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    version: str = DEFAULT_POLICY_VERSION
    statements: List[PolicyStatement] = Field(default_factory=list)
    is_active: bool = True
    priority: int = 0
    tenant_id: Optional[str] = None


class PolicyUpdateRequest(BaseModel):
    """Request model for updating a policy."""
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    statements: Optional[List[PolicyStatement]] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

@dataclass
class AuthorizationContext:
    """Context for an authorization decision."""
    actor_id: str
    tenant_id: Optional[str]
    resource: str
    action: str
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = field(default_factory=dict)
    actor_attributes: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)
    request_context: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @property
    def resource_string(self) -> str:
        """Resource type combined with the instance id as ``type:id``."""
        if self.resource_id:
            return f"{self.resource}:{self.resource_id}"
        return self.resource


@dataclass
class AuthorizationResult:
    """Result of an authorization decision."""
    allowed: bool
    reason: Optional[str] = None
    decided_by: Optional[str] = None
    matching_ids: List[str] = field(default_factory=list)
    denied_by: List[str] = field(default_factory=list)
    evaluation_time_ms: float = 0.0
    cache_hit: bool = False


@dataclass
class BatchCheck:
    """One (resource, action) pair within a batch request."""
    resource: str
    action: str
    resource_id: Optional[str] = None
    resource_attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchAuthorizationRequest:
    """Several checks for one actor evaluated against a single permission set."""
    actor_id: str
    tenant_id: Optional[str]
    checks: List[BatchCheck] = field(default_factory=list)
    actor_attributes: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)
    request_context: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass
class BatchAuthorizationResult:
    """Results of a batch request, in input order."""
    results: List[AuthorizationResult] = field(default_factory=list)
    total_evaluation_time_ms: float = 0.0


@dataclass
class AuditEvent:
    """Structured audit event handed to the audit sink."""
    type: AuditEventType
    timestamp: datetime = field(default_factory=utcnow)
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    previous_state: Any = None
    new_state: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation."""
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type.value if self.entity_type else None,
            "entity_id": self.entity_id,
            "previous_state": _serialize_state(self.previous_state),
            "new_state": _serialize_state(self.new_state),
            "metadata": {key: _serialize_state(value) for key, value in self.metadata.items()},
        }


def _serialize_state(state: Any) -> Any:
    if state is None:
        return None
    if isinstance(state, BaseModel):
        return state.model_dump(mode="json")
    if hasattr(state, "__dataclass_fields__"):
        return _adapter_for(type(state)).dump_python(state, mode="json")
    if isinstance(state, datetime):
        return state.isoformat()
    if isinstance(state, Enum):
        return state.value
    return state



@lru_cache(maxsize=None)
def _adapter_for(cls) -> TypeAdapter:
    return TypeAdapter(cls)
