"""
Role registry for the Authorization Service.

Owns role definitions, parent/child inheritance edges and user role
assignments, and resolves effective permission sets by walking the
inheritance graph.
"""

from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from shared.errors import (
    ConflictError, ForbiddenError, NotFoundError, ValidationError, from_pydantic_error,
)
from shared.logging import get_logger
from ..persistence.store import EntityStore, InMemoryStore
from .models import (
    PERMISSION_WILDCARD,
    Role, RoleAssignmentRequest, RoleCreateRequest, RoleUpdateRequest,
    SystemRole, UserRoleAssignment, utcnow,
)
from .permissions import PermissionRegistry, generate_id

DEFAULT_MAX_INHERITANCE_DEPTH = 10


def assignment_key(user_id: str, role_id: str, tenant_id: str, scope: Optional[str]) -> Tuple[str, str]:
    """Store key for an assignment; identity is (user, role, tenant, scope)."""
    return tenant_id, "\x1f".join((user_id, role_id, scope or ""))


class RoleRegistry:
    """Role definitions, inheritance and assignments."""

    def __init__(
        self,
        permissions: Optional[PermissionRegistry] = None,
        store: Optional[EntityStore[Role]] = None,
        assignment_store: Optional[EntityStore[UserRoleAssignment]] = None,
        max_inheritance_depth: int = DEFAULT_MAX_INHERITANCE_DEPTH,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.logger = get_logger("authorization.roles")
        self.permissions = permissions
        self.store: EntityStore[Role] = store if store is not None else InMemoryStore("roles")
        self.assignments: EntityStore[UserRoleAssignment] = (
            assignment_store if assignment_store is not None else InMemoryStore("assignments")
        )
        self.max_inheritance_depth = max_inheritance_depth
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Role CRUD
    # ------------------------------------------------------------------

    def create(self, request: Union[RoleCreateRequest, Dict[str, Any]]) -> Role:
        """Create a role; raises ValidationError or ConflictError."""
        request = self._parse(RoleCreateRequest, request)
        self._validate_name(request.name)

        role_id = request.id or generate_id("role")
        key = (request.tenant_id, role_id)
        if self.store.contains(key):
            raise ConflictError(
                f"Role with ID '{role_id}' already exists",
                {"role_id": role_id, "tenant_id": request.tenant_id}
            )

        self._validate_parent_roles(request.parent_roles, role_id, request.tenant_id)
        self._validate_permission_ids(request.permissions, request.tenant_id)

        now = self.clock()
        role = Role(
            id=role_id,
            name=request.name,
            description=request.description,
            permissions=_unique(request.permissions),
            parent_roles=_unique(request.parent_roles),
            is_system=request.is_system,
            max_assignments=request.max_assignments,
            metadata=dict(request.metadata),
            tenant_id=request.tenant_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put(key, role)
        self.logger.info("Role created", role_id=role_id, tenant_id=request.tenant_id)
        return role

    def get(self, role_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        return self.store.get((tenant_id, role_id))

    def resolve(self, role_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        """Tenant-scoped role, falling back to the global one."""
        role = self.store.get((tenant_id, role_id))
        if role is None and tenant_id is not None:
            role = self.store.get((None, role_id))
        return role

    def list(self, tenant_id: Optional[str] = None) -> List[Role]:
        return [role for role in self.store.values() if tenant_id is None or role.tenant_id == tenant_id]

    def update(
        self,
        role_id: str,
        updates: Union[RoleUpdateRequest, Dict[str, Any]],
        tenant_id: Optional[str] = None
    ) -> Optional[Role]:
        """Merge partial fields into a role; None when it does not exist."""
        key = (tenant_id, role_id)
        existing = self.store.get(key)
        if existing is None:
            return None

        updates = self._parse(RoleUpdateRequest, updates)
        changes = {name: getattr(updates, name) for name in updates.model_fields_set}
        for name in ("name", "permissions", "parent_roles", "metadata"):
            if name in changes and changes[name] is None:
                del changes[name]

        if existing.is_system and ({"name", "permissions"} & changes.keys()):
            raise ForbiddenError(
                "Cannot modify core properties of system roles",
                {"role_id": role_id}
            )

        if "name" in changes:
            self._validate_name(changes["name"])
        if "parent_roles" in changes:
            self._validate_parent_roles(changes["parent_roles"], role_id, tenant_id)
            changes["parent_roles"] = _unique(changes["parent_roles"])
        if "permissions" in changes:
            self._validate_permission_ids(changes["permissions"], tenant_id)
            changes["permissions"] = _unique(changes["permissions"])

        updated = replace(existing, **changes, updated_at=self.clock())
        self.store.put(key, updated)
        self.logger.info("Role updated", role_id=role_id, fields=sorted(changes))
        return updated

    def delete(self, role_id: str, tenant_id: Optional[str] = None) -> bool:
        """Delete a role and its assignments; False when it does not exist."""
        key = (tenant_id, role_id)
        role = self.store.get(key)
        if role is None:
            return False

        if role.is_system:
            raise ForbiddenError("Cannot delete system roles", {"role_id": role_id})

        for other in self.store.values():
            if role_id in other.parent_roles and (tenant_id is None or other.tenant_id == tenant_id):
                raise ConflictError(
                    f"Cannot delete role '{role_id}' as it is inherited by role '{other.id}'",
                    {"role_id": role_id, "inherited_by": other.id}
                )

        removed = 0
        for assignment in self.assignments.values():
            if assignment.role_id == role_id and self._assignment_uses_role(assignment, role):
                self.assignments.delete(assignment_key(
                    assignment.user_id, assignment.role_id, assignment.tenant_id, assignment.scope
                ))
                removed += 1

        deleted = self.store.delete(key)
        self.logger.info("Role deleted", role_id=role_id, tenant_id=tenant_id, assignments_removed=removed)
        return deleted

    def add_permission(self, role_id: str, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        """Add a permission id to a role's set; None when the role does not exist."""
        role = self.store.get((tenant_id, role_id))
        if role is None:
            return None
        if permission_id in role.permissions:
            return role

        self._validate_permission_ids([permission_id], tenant_id)
        updated = replace(role, permissions=role.permissions + [permission_id], updated_at=self.clock())
        self.store.put((tenant_id, role_id), updated)
        self.logger.info("Permission added to role", role_id=role_id, permission_id=permission_id)
        return updated

    def remove_permission(self, role_id: str, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        """Remove a permission id from a role's set; None when the role does not exist."""
        role = self.store.get((tenant_id, role_id))
        if role is None:
            return None
        if permission_id not in role.permissions:
            return role

        remaining = [pid for pid in role.permissions if pid != permission_id]
        updated = replace(role, permissions=remaining, updated_at=self.clock())
        self.store.put((tenant_id, role_id), updated)
        self.logger.info("Permission removed from role", role_id=role_id, permission_id=permission_id)
        return updated

    # ------------------------------------------------------------------
    # Inheritance
    # ------------------------------------------------------------------

    def get_effective_permissions(self, role_id: str, tenant_id: Optional[str] = None) -> List[str]:
        """Union of a role's permission ids and those of its ancestors.

        Breadth-first over ``parent_roles``. Each distinct role is visited at
        most once and nothing deeper than ``max_inheritance_depth`` is
        expanded, so cyclic graphs terminate.
        """
        start = self.resolve(role_id, tenant_id)
        if start is None:
            return []

        collected: Dict[str, None] = {}
        visited: Set[Tuple[Optional[str], str]] = {(start.tenant_id, start.id)}
        queue: Deque[Tuple[Role, int]] = deque([(start, 0)])

        while queue:
            role, depth = queue.popleft()
            for permission_id in role.permissions:
                collected.setdefault(permission_id)

            if not role.parent_roles:
                continue
            if depth >= self.max_inheritance_depth:
                self.logger.warning(
                    "Role inheritance depth limit reached",
                    role_id=role.id,
                    root_role_id=start.id,
                    max_depth=self.max_inheritance_depth
                )
                continue

            for parent_id in role.parent_roles:
                parent = self.resolve(parent_id, tenant_id)
                if parent is None:
                    continue
                parent_key = (parent.tenant_id, parent.id)
                if parent_key in visited:
                    continue
                visited.add(parent_key)
                queue.append((parent, depth + 1))

        return list(collected)

    def get_dependent_roles(self, role_id: str, tenant_id: Optional[str] = None) -> Set[str]:
        """Ids of roles whose effective permissions may include ``role_id``'s (itself included)."""
        candidates = [
            role for role in self.store.values()
            if tenant_id is None or role.tenant_id in (tenant_id, None)
        ]
        dependents = {role_id}
        frontier = deque([role_id])
        while frontier:
            current = frontier.popleft()
            for role in candidates:
                if current in role.parent_roles and role.id not in dependents:
                    dependents.add(role.id)
                    frontier.append(role.id)
        return dependents

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign_role(self, request: Union[RoleAssignmentRequest, Dict[str, Any]]) -> UserRoleAssignment:
        """Assign a role to a user within a tenant and optional scope."""
        request = self._parse(RoleAssignmentRequest, request)
        scope = request.scope or None

        role = self.resolve(request.role_id, request.tenant_id)
        if role is None:
            raise NotFoundError(
                f"Role '{request.role_id}' not found",
                {"role_id": request.role_id, "tenant_id": request.tenant_id}
            )

        key = assignment_key(request.user_id, request.role_id, request.tenant_id, scope)
        existing = self.assignments.get(key)
        now = self.clock()
        if existing is not None and not existing.is_expired(now):
            raise ConflictError(
                f"User '{request.user_id}' already has role '{request.role_id}'",
                {"user_id": request.user_id, "role_id": request.role_id, "scope": scope}
            )

        if role.max_assignments is not None:
            current = len(self.get_users_with_role(request.role_id, request.tenant_id))
            if current >= role.max_assignments:
                raise ForbiddenError(
                    f"Role '{request.role_id}' has reached maximum assignments ({role.max_assignments})",
                    {"role_id": request.role_id, "max_assignments": role.max_assignments}
                )

        assignment = UserRoleAssignment(
            user_id=request.user_id,
            role_id=request.role_id,
            tenant_id=request.tenant_id,
            scope=scope,
            expires_at=request.expires_at,
            assigned_by=request.assigned_by,
            metadata=dict(request.metadata),
            assigned_at=now,
        )
        self.assignments.put(key, assignment)
        self.logger.info(
            "Role assigned",
            user_id=request.user_id,
            role_id=request.role_id,
            tenant_id=request.tenant_id,
            scope=scope
        )
        return assignment

    def unassign_role(
        self,
        user_id: str,
        role_id: str,
        tenant_id: str,
        scope: Optional[str] = None
    ) -> bool:
        """Remove a user's assignment; without a scope every scope is removed."""
        removed = False
        for assignment in self.assignments.values():
            if (
                assignment.user_id == user_id
                and assignment.role_id == role_id
                and assignment.tenant_id == tenant_id
                and (scope is None or assignment.scope == scope)
            ):
                self.assignments.delete(assignment_key(user_id, role_id, tenant_id, assignment.scope))
                removed = True

        if removed:
            self.logger.info("Role unassigned", user_id=user_id, role_id=role_id, tenant_id=tenant_id, scope=scope)
        return removed

    def get_user_roles(self, user_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        """Non-expired assignments of a user in a tenant."""
        now = self.clock()
        return [
            assignment for assignment in self.assignments.values()
            if assignment.user_id == user_id
            and assignment.tenant_id == tenant_id
            and not assignment.is_expired(now)
        ]

    def get_users_with_role(self, role_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        """Non-expired assignments of a role in a tenant."""
        now = self.clock()
        return [
            assignment for assignment in self.assignments.values()
            if assignment.role_id == role_id
            and assignment.tenant_id == tenant_id
            and not assignment.is_expired(now)
        ]

    def user_has_role(self, user_id: str, role_id: str, tenant_id: str, scope: Optional[str] = None) -> bool:
        """Scope-qualified checks also accept an unscoped assignment."""
        return any(
            assignment.role_id == role_id
            and (scope is None or assignment.scope is None or assignment.scope == scope)
            for assignment in self.get_user_roles(user_id, tenant_id)
        )

    def get_user_effective_permissions(self, user_id: str, tenant_id: str) -> List[str]:
        """Union of effective permissions over the user's active assignments."""
        collected: Dict[str, None] = {}
        for assignment in self.get_user_roles(user_id, tenant_id):
            for permission_id in self.get_effective_permissions(assignment.role_id, tenant_id):
                collected.setdefault(permission_id)
        return list(collected)

    def get_assigned_users(self, role_ids: Iterable[str], tenant_id: Optional[str] = None) -> Set[Tuple[str, str]]:
        """(tenant_id, user_id) pairs holding any of the roles, expired grants included."""
        role_ids = set(role_ids)
        return {
            (assignment.tenant_id, assignment.user_id)
            for assignment in self.assignments.values()
            if assignment.role_id in role_ids
            and (tenant_id is None or assignment.tenant_id == tenant_id)
        }

    # ------------------------------------------------------------------
    # Bulk loading and system roles
    # ------------------------------------------------------------------

    def create_system_roles(self, tenant_id: Optional[str] = None) -> List[Role]:
        """Seed the built-in roles; roles that already exist are kept."""
        now = self.clock()
        definitions = [
            (SystemRole.SUPER_ADMIN, "Super Administrator", "Full system access", [PERMISSION_WILDCARD]),
            (SystemRole.ADMIN, "Administrator", "Administrative access", []),
            (SystemRole.USER, "User", "Standard user access", []),
            (SystemRole.GUEST, "Guest", "Limited guest access", []),
        ]

        roles = []
        for system_role, name, description, permissions in definitions:
            key = (tenant_id, system_role.value)
            role = self.store.get(key)
            if role is None:
                role = Role(
                    id=system_role.value,
                    name=name,
                    description=description,
                    permissions=list(permissions),
                    is_system=True,
                    tenant_id=tenant_id,
                    created_at=now,
                    updated_at=now,
                )
                self.store.put(key, role)
            roles.append(role)

        self.logger.info("System roles initialized", tenant_id=tenant_id)
        return roles

    def import_roles(self, roles: Iterable[Role]) -> int:
        """Load roles as-is; no parent or cycle validation is applied."""
        count = 0
        for role in roles:
            self.store.put((role.tenant_id, role.id), role)
            count += 1
        return count

    def import_assignments(self, assignments: Iterable[UserRoleAssignment]) -> int:
        count = 0
        for assignment in assignments:
            self.assignments.put(
                assignment_key(assignment.user_id, assignment.role_id, assignment.tenant_id, assignment.scope),
                assignment
            )
            count += 1
        return count

    def clear(self) -> None:
        self.store.clear()
        self.assignments.clear()

    # ------------------------------------------------------------------

    def _assignment_uses_role(self, assignment: UserRoleAssignment, role: Role) -> bool:
        if role.tenant_id is not None:
            return assignment.tenant_id == role.tenant_id
        # A global role backs assignments in tenants without their own role of that id
        return self.store.get((assignment.tenant_id, role.id)) is None

    def _validate_parent_roles(self, parent_roles: List[str], role_id: str, tenant_id: Optional[str]) -> None:
        for parent_id in parent_roles:
            if self.resolve(parent_id, tenant_id) is None:
                raise ValidationError(
                    f"Parent role '{parent_id}' not found",
                    {"parent_role": parent_id}
                )
            if self._would_create_cycle(parent_id, role_id, tenant_id):
                raise ValidationError(
                    f"Adding parent role '{parent_id}' would create circular inheritance",
                    {"parent_role": parent_id, "role_id": role_id}
                )

    def _would_create_cycle(self, parent_id: str, child_id: str, tenant_id: Optional[str]) -> bool:
        """True when ``child_id`` is reachable from ``parent_id`` (or equal to it)."""
        stack = [parent_id]
        seen: Set[str] = set()
        while stack:
            current = stack.pop()
            if current == child_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            role = self.resolve(current, tenant_id)
            if role is not None:
                stack.extend(role.parent_roles)
        return False

    def _validate_permission_ids(self, permission_ids: List[str], tenant_id: Optional[str]) -> None:
        if self.permissions is None:
            return
        for permission_id in permission_ids:
            if permission_id == PERMISSION_WILDCARD:
                continue
            if self.permissions.resolve(permission_id, tenant_id) is None:
                raise ValidationError(
                    f"Unknown permission '{permission_id}'",
                    {"permission_id": permission_id, "tenant_id": tenant_id}
                )

    @staticmethod
    def _validate_name(name: Optional[str]) -> None:
        if not name or not name.strip():
            raise ValidationError("Role name is required", {"field": "name"})

    @staticmethod
    def _parse(model, value):
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as exc:
            raise from_pydantic_error(exc, "Invalid role input") from exc


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))
