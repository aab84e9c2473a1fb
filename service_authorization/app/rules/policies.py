"""
Policy evaluator for the Authorization Service.

Owns IAM-style policy documents and runs the two-pass decision: active
policies first (deny-overrides), then the actor's direct permissions.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConflictError, ValidationError, from_pydantic_error
from shared.logging import get_logger
from ..persistence.store import EntityStore, InMemoryStore
from .conditions import matches_glob
from .models import (
    ACTION_WILDCARD, PERMISSION_WILDCARD, PRINCIPAL_WILDCARD, RESOURCE_WILDCARD,
    AuthorizationContext, AuthorizationResult, Permission, PermissionEffect,
    Policy, PolicyCreateRequest, PolicyStatement, PolicyUpdateRequest, utcnow,
)
from .permissions import PermissionRegistry, generate_id

NO_MATCH_REASON = "No matching permission found"
WILDCARD_REASON = "Wildcard permission grants full access"


class PolicyEvaluator:
    """Policy documents plus policy/permission evaluation."""

    def __init__(
        self,
        permissions: PermissionRegistry,
        store: Optional[EntityStore[Policy]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.logger = get_logger("authorization.policies")
        self.permissions = permissions
        self.store: EntityStore[Policy] = store if store is not None else InMemoryStore("policies")
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Policy CRUD
    # ------------------------------------------------------------------

    def create(self, request: Union[PolicyCreateRequest, Dict[str, Any]]) -> Policy:
        """Create a policy; raises ValidationError or ConflictError."""
        request = self._parse(PolicyCreateRequest, request)
        self._validate(request.name, request.statements)

        policy_id = request.id or generate_id("policy")
        key = (request.tenant_id, policy_id)
        if self.store.contains(key):
            raise ConflictError(
                f"Policy with ID '{policy_id}' already exists",
                {"policy_id": policy_id, "tenant_id": request.tenant_id}
            )

        now = self.clock()
        policy = Policy(
            id=policy_id,
            name=request.name,
            description=request.description,
            version=request.version,
            statements=list(request.statements),
            is_active=request.is_active,
            priority=request.priority,
            tenant_id=request.tenant_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put(key, policy)
        self.logger.info("Policy created", policy_id=policy_id, tenant_id=request.tenant_id)
        return policy

    def get(self, policy_id: str, tenant_id: Optional[str] = None) -> Optional[Policy]:
        return self.store.get((tenant_id, policy_id))

    def list(self, tenant_id: Optional[str] = None) -> List[Policy]:
        return [policy for policy in self.store.values() if tenant_id is None or policy.tenant_id == tenant_id]

    def update(
        self,
        policy_id: str,
        updates: Union[PolicyUpdateRequest, Dict[str, Any]],
        tenant_id: Optional[str] = None
    ) -> Optional[Policy]:
        key = (tenant_id, policy_id)
        existing = self.store.get(key)
        if existing is None:
            return None

        updates = self._parse(PolicyUpdateRequest, updates)
        changes = {name: getattr(updates, name) for name in updates.model_fields_set}
        for name in ("name", "version", "statements", "is_active", "priority"):
            if name in changes and changes[name] is None:
                del changes[name]

        if {"name", "statements"} & changes.keys():
            self._validate(changes.get("name", existing.name), changes.get("statements", existing.statements))
        if "statements" in changes:
            changes["statements"] = list(changes["statements"])

        updated = replace(existing, **changes, updated_at=self.clock())
        self.store.put(key, updated)
        self.logger.info("Policy updated", policy_id=policy_id, fields=sorted(changes))
        return updated

    def delete(self, policy_id: str, tenant_id: Optional[str] = None) -> bool:
        deleted = self.store.delete((tenant_id, policy_id))
        if deleted:
            self.logger.info("Policy deleted", policy_id=policy_id, tenant_id=tenant_id)
        return deleted

    def import_policies(self, policies: Iterable[Policy]) -> int:
        count = 0
        for policy in policies:
            self.store.put((policy.tenant_id, policy.id), policy)
            count += 1
        return count

    def clear(self) -> None:
        self.store.clear()

    def active_policies(self, tenant_id: Optional[str]) -> List[Policy]:
        """Active tenant and global policies, highest priority first."""
        policies = [
            policy for policy in self.store.values()
            if policy.is_active and policy.tenant_id in (tenant_id, None)
        ]
        return sorted(policies, key=lambda policy: policy.priority, reverse=True)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        context: AuthorizationContext,
        user_permission_ids: Sequence[str],
        principal_ids: Optional[Sequence[str]] = None
    ) -> AuthorizationResult:
        """Decide a request against policies, then against direct permissions.

        ``principal_ids`` adds identifiers (typically role ids) that policy
        principal lists may name besides the actor and its permission ids.
        """
        if PERMISSION_WILDCARD in user_permission_ids:
            return AuthorizationResult(
                allowed=True,
                reason=WILDCARD_REASON,
                decided_by=PERMISSION_WILDCARD,
                matching_ids=[PERMISSION_WILDCARD],
            )

        principals = set(user_permission_ids)
        principals.update(principal_ids or ())

        policy_result = self._evaluate_policies(context, principals)
        if policy_result is not None:
            return policy_result

        return self._evaluate_permissions(context, user_permission_ids)

    def _evaluate_policies(self, context: AuthorizationContext, principals: set) -> Optional[AuthorizationResult]:
        allowed_by: List[str] = []

        for policy in self.active_policies(context.tenant_id):
            statement = next(
                (stmt for stmt in policy.statements if self.statement_matches(stmt, context, principals)),
                None
            )
            if statement is None:
                continue

            if statement.effect == PermissionEffect.DENY:
                self.logger.debug("Denied by policy", policy_id=policy.id, sid=statement.sid)
                return AuthorizationResult(
                    allowed=False,
                    reason=f"Denied by policy: {policy.name}",
                    decided_by=policy.id,
                    denied_by=[policy.id],
                )
            allowed_by.append(policy.id)

        if allowed_by:
            return AuthorizationResult(
                allowed=True,
                reason="Allowed by policy",
                decided_by=allowed_by[0],
                matching_ids=allowed_by,
            )
        return None

    def _evaluate_permissions(
        self,
        context: AuthorizationContext,
        user_permission_ids: Sequence[str]
    ) -> AuthorizationResult:
        resolved: List[Permission] = []
        for permission_id in user_permission_ids:
            permission = self.permissions.resolve(permission_id, context.tenant_id)
            if permission is not None:
                resolved.append(permission)

        # deny first, then by descending priority; sort is stable
        resolved.sort(key=lambda p: (p.effect != PermissionEffect.DENY, -p.priority))

        matching: List[Permission] = [p for p in resolved if self.permissions.matches(p, context)]
        for permission in matching:
            if permission.effect == PermissionEffect.DENY:
                return AuthorizationResult(
                    allowed=False,
                    reason=f"Denied by permission: {permission.name}",
                    decided_by=permission.id,
                    denied_by=[permission.id],
                )

        if matching:
            return AuthorizationResult(
                allowed=True,
                reason="Allowed by permission",
                decided_by=matching[0].id,
                matching_ids=[p.id for p in matching],
            )

        return AuthorizationResult(allowed=False, reason=NO_MATCH_REASON, denied_by=[])

    def statement_matches(
        self,
        statement: PolicyStatement,
        context: AuthorizationContext,
        principals: Iterable[str] = ()
    ) -> bool:
        """Check principals, actions, resources and conditions of one statement."""
        principals = set(principals)

        if statement.not_principals and self._matches_principal(statement.not_principals, context, principals):
            return False
        if statement.principals and not self._matches_principal(statement.principals, context, principals):
            return False

        if statement.not_actions and self._matches_action(statement.not_actions, context.action):
            return False
        if not self._matches_action(statement.actions, context.action):
            return False

        if statement.not_resources and self._matches_resource(statement.not_resources, context):
            return False
        if not self._matches_resource(statement.resources, context):
            return False

        if statement.conditions and not self.permissions.evaluate_conditions(statement.conditions, context):
            return False

        return True

    @staticmethod
    def _matches_principal(patterns: Iterable[str], context: AuthorizationContext, principals: set) -> bool:
        return any(
            pattern == PRINCIPAL_WILDCARD or pattern == context.actor_id or pattern in principals
            for pattern in patterns
        )

    @staticmethod
    def _matches_action(patterns: Iterable[str], action: str) -> bool:
        return any(pattern == ACTION_WILDCARD or matches_glob(pattern, action) for pattern in patterns)

    @staticmethod
    def _matches_resource(patterns: Iterable[str], context: AuthorizationContext) -> bool:
        target = context.resource_string
        for pattern in patterns:
            if pattern == RESOURCE_WILDCARD or pattern == target or pattern == context.resource:
                return True
            if "*" in pattern and matches_glob(pattern, target):
                return True
        return False

    # ------------------------------------------------------------------

    @staticmethod
    def _parse(model, value):
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as exc:
            raise from_pydantic_error(exc, "Invalid policy") from exc

    @staticmethod
    def _validate(name: Optional[str], statements: Optional[List[PolicyStatement]]) -> None:
        if not name or not name.strip():
            raise ValidationError("Policy name is required", {"field": "name"})
        if not statements:
            raise ValidationError("Policy must have at least one statement", {"field": "statements"})

        for index, statement in enumerate(statements):
            details = {"statement": statement.sid or index}
            if statement.effect is None:
                raise ValidationError("Statement effect is required", details)
            if not statement.actions:
                raise ValidationError("Statement must have at least one action", details)
            if not statement.resources:
                raise ValidationError("Statement must have at least one resource", details)
