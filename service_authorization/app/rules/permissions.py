"""
Permission registry for the Authorization Service.
"""

import secrets
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConflictError, ValidationError, from_pydantic_error
from shared.logging import get_logger
from ..persistence.store import EntityStore, InMemoryStore
from .conditions import evaluate_conditions, evaluate_time_condition, matches_glob
from .models import (
    ACTION_WILDCARD, RESOURCE_WILDCARD,
    AuthorizationContext, Permission, PermissionCreateRequest, PermissionUpdateRequest,
    TimeCondition, utcnow,
)


def generate_id(prefix: str) -> str:
    """Identifier of the form ``<prefix>_<base36 millis>_<random>``."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while millis:
        millis, remainder = divmod(millis, 36)
        encoded = digits[remainder] + encoded
    return f"{prefix}_{encoded or '0'}_{secrets.token_hex(4)}"


class PermissionRegistry:
    """Owns permission definitions and the low-level matching primitives."""

    def __init__(
        self,
        store: Optional[EntityStore[Permission]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.logger = get_logger("authorization.permissions")
        self.store: EntityStore[Permission] = store if store is not None else InMemoryStore("permissions")
        self.clock = clock or utcnow

    def create(self, request: Union[PermissionCreateRequest, Dict[str, Any]]) -> Permission:
        """Create a permission; raises ValidationError or ConflictError."""
        request = self._parse(PermissionCreateRequest, request)
        self._validate(request.name, request.resource, request.actions)

        permission_id = request.id or generate_id("perm")
        key = (request.tenant_id, permission_id)
        if self.store.contains(key):
            raise ConflictError(
                f"Permission with ID '{permission_id}' already exists",
                {"permission_id": permission_id, "tenant_id": request.tenant_id}
            )

        now = self.clock()
        permission = Permission(
            id=permission_id,
            name=request.name,
            description=request.description,
            resource=request.resource,
            actions=list(request.actions),
            effect=request.effect,
            conditions=list(request.conditions),
            time_condition=request.time_condition,
            priority=request.priority,
            metadata=dict(request.metadata),
            tenant_id=request.tenant_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put(key, permission)
        self.logger.info("Permission created", permission_id=permission_id, tenant_id=request.tenant_id)
        return permission

    def get(self, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Permission]:
        """Get a permission by its exact (tenant, id) key."""
        return self.store.get((tenant_id, permission_id))

    def resolve(self, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Permission]:
        """Tenant-scoped permission, falling back to the global one."""
        permission = self.store.get((tenant_id, permission_id))
        if permission is None and tenant_id is not None:
            permission = self.store.get((None, permission_id))
        return permission

    def list(self, tenant_id: Optional[str] = None) -> List[Permission]:
        """All permissions, or those of one tenant."""
        return [
            permission for permission in self.store.values()
            if tenant_id is None or permission.tenant_id == tenant_id
        ]

    def update(
        self,
        permission_id: str,
        updates: Union[PermissionUpdateRequest, Dict[str, Any]],
        tenant_id: Optional[str] = None
    ) -> Optional[Permission]:
        """Merge partial fields into a permission; None when it does not exist."""
        key = (tenant_id, permission_id)
        existing = self.store.get(key)
        if existing is None:
            return None

        updates = self._parse(PermissionUpdateRequest, updates)
        changes = {name: getattr(updates, name) for name in updates.model_fields_set}
        if {"name", "resource", "actions"} & changes.keys():
            self._validate(
                changes["name"] if changes.get("name") is not None else existing.name,
                changes["resource"] if changes.get("resource") is not None else existing.resource,
                changes["actions"] if changes.get("actions") is not None else existing.actions,
            )

        # Fields that cannot be cleared keep their previous value on explicit None
        for name in ("name", "resource", "actions", "effect", "priority", "metadata"):
            if name in changes and changes[name] is None:
                del changes[name]
        if "conditions" in changes:
            changes["conditions"] = list(changes["conditions"] or [])

        updated = replace(existing, **changes, updated_at=self.clock())
        self.store.put(key, updated)
        self.logger.info("Permission updated", permission_id=permission_id, fields=sorted(changes))
        return updated

    def delete(self, permission_id: str, tenant_id: Optional[str] = None) -> bool:
        """Delete a permission; False when it does not exist."""
        deleted = self.store.delete((tenant_id, permission_id))
        if deleted:
            self.logger.info("Permission deleted", permission_id=permission_id, tenant_id=tenant_id)
        return deleted

    def import_permissions(self, permissions: Iterable[Permission]) -> int:
        """Load already-built permissions, e.g. from a persistent backend."""
        count = 0
        for permission in permissions:
            self.store.put((permission.tenant_id, permission.id), permission)
            count += 1
        return count

    def clear(self) -> None:
        self.store.clear()

    # ------------------------------------------------------------------
    # Matching primitives
    # ------------------------------------------------------------------

    def matches(self, permission: Permission, context: AuthorizationContext) -> bool:
        """Check whether a permission applies to the context."""
        if not self.matches_resource(permission.resource, context.resource):
            return False

        if not self.matches_action(permission.actions, context.action):
            return False

        if permission.tenant_id and permission.tenant_id != context.tenant_id:
            return False

        if permission.conditions and not self.evaluate_conditions(permission.conditions, context):
            return False

        if permission.time_condition is not None:
            if not self.evaluate_time_condition(permission.time_condition, context.timestamp):
                return False

        return True

    @staticmethod
    def matches_resource(pattern: str, resource: str) -> bool:
        """Full wildcard, glob pattern, or exact match."""
        if pattern == RESOURCE_WILDCARD:
            return True
        return matches_glob(pattern, resource)

    @staticmethod
    def matches_action(permitted_actions: List[str], requested_action: str) -> bool:
        return ACTION_WILDCARD in permitted_actions or requested_action in permitted_actions

    def evaluate_conditions(self, conditions: Iterable[Any], context: AuthorizationContext) -> bool:
        """All attribute conditions must hold."""
        return evaluate_conditions(conditions, context)

    def evaluate_time_condition(self, condition: TimeCondition, at: Optional[datetime] = None) -> bool:
        """Evaluate a time window at ``at`` (defaults to the registry clock)."""
        return evaluate_time_condition(condition, at or self.clock())

    # ------------------------------------------------------------------

    @staticmethod
    def _parse(model, value):
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as exc:
            raise from_pydantic_error(exc, "Invalid permission") from exc

    @staticmethod
    def _validate(name: Optional[str], resource: Optional[str], actions: Optional[List[str]]) -> None:
        if not name or not name.strip():
            raise ValidationError("Permission name is required", {"field": "name"})
        if not resource or not resource.strip():
            raise ValidationError("Permission resource is required", {"field": "resource"})
        if not actions:
            raise ValidationError("Permission must have at least one action", {"field": "actions"})
        if any(not action or not str(action).strip() for action in actions):
            raise ValidationError("Permission actions must be non-empty", {"field": "actions"})
