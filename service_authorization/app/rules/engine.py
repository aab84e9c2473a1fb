"""
Authorization engine for the Authorization Service.

``AuthorizationEngine`` is the public entry point. It wires the
permission, role and policy components together with the cache
provider, audit sink, custom evaluator hook and metrics collector
supplied at construction.
"""

import inspect
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from opentelemetry import trace

from shared.config import AuthorizationConfig, get_config
from shared.logging import configure_logging, correlation_context, get_logger
from shared.metrics import MetricsCollector
from ..audit.sinks import AuditDispatcher, AuditSink
from ..cache.providers import CacheProvider, NullCache, RedisCacheProvider
from .models import (
    PERMISSION_WILDCARD,
    AuditEvent, AuditEventType, AuthorizationContext, AuthorizationResult,
    BatchAuthorizationRequest, BatchAuthorizationResult, EntityType,
    Permission, PermissionCreateRequest, PermissionUpdateRequest, Policy,
    PolicyCreateRequest, PolicyUpdateRequest, Role, RoleAssignmentRequest,
    RoleCreateRequest, RoleUpdateRequest, UserRoleAssignment, utcnow,
)
from .permissions import PermissionRegistry
from .policies import NO_MATCH_REASON, PolicyEvaluator
from .roles import RoleRegistry

CustomEvaluator = Callable[[AuthorizationContext, Permission], Union[bool, Awaitable[bool]]]

EVALUATION_ERROR_REASON = "Authorization evaluation error"
CUSTOM_EVALUATOR_REASON = "Allowed by custom evaluator"


class AuthorizationEngine:
    """Authorization orchestrator."""

    def __init__(
        self,
        config: Optional[AuthorizationConfig] = None,
        permissions: Optional[PermissionRegistry] = None,
        roles: Optional[RoleRegistry] = None,
        policies: Optional[PolicyEvaluator] = None,
        cache: Optional[CacheProvider] = None,
        audit_sink: Optional[AuditSink] = None,
        custom_evaluator: Optional[CustomEvaluator] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.clock = clock or utcnow
        self.logger = get_logger("authorization.engine")
        self.tracer = trace.get_tracer(__name__)

        self.permissions = permissions if permissions is not None else PermissionRegistry(clock=self.clock)
        self.roles = roles if roles is not None else RoleRegistry(
            self.permissions,
            max_inheritance_depth=self.config.max_inheritance_depth,
            clock=self.clock
        )
        self.policies = policies if policies is not None else PolicyEvaluator(self.permissions, clock=self.clock)
        self.cache: CacheProvider = cache if cache is not None else NullCache()
        self.custom_evaluator = custom_evaluator

        if metrics is None and self.config.enable_metrics:
            metrics = MetricsCollector(self.config.service_name)
        self.metrics = metrics
        self.audit = AuditDispatcher(audit_sink, self.metrics)

    @classmethod
    def from_config(cls, config: Optional[AuthorizationConfig] = None, **components: Any) -> "AuthorizationEngine":
        """Build an engine for a deployed service.

        Configures structured logging at ``config.log_level`` and, when
        caching is enabled and no cache is supplied, uses Redis at
        ``config.redis_url``. Call ``start`` before serving requests.
        """
        config = config or get_config()
        configure_logging(config.service_name, config.log_level)
        if config.enable_caching and components.get("cache") is None:
            components["cache"] = RedisCacheProvider.from_config(config)
        return cls(config=config, **components)

    async def start(self) -> None:
        """Connect the cache provider when it needs a connection."""
        start = getattr(self.cache, "start", None)
        if start is not None:
            await start()
        self.logger.info("Authorization engine started", service=self.config.service_name)

    async def stop(self) -> None:
        """Deliver pending audit events and release the cache connection."""
        await self.audit.flush()
        self.audit.close()
        stop = getattr(self.cache, "stop", None)
        if stop is not None:
            await stop()
        self.logger.info("Authorization engine stopped", service=self.config.service_name)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(self, context: AuthorizationContext) -> AuthorizationResult:
        """Decide whether the actor may perform the action on the resource."""
        started = time.perf_counter()
        if context.timestamp is None:
            context = replace(context, timestamp=self.clock())

        with correlation_context(actor_id=context.actor_id, tenant_id=context.tenant_id), \
                self.tracer.start_as_current_span("authorization.authorize") as span:
            span.set_attribute("authorization.resource", context.resource)
            span.set_attribute("authorization.action", context.action)

            permission_ids, cache_hit = await self._load_permissions(context.actor_id, context.tenant_id)
            principal_ids = self._principal_ids(context.actor_id, context.tenant_id)

            result, source = await self._decide(context, permission_ids, principal_ids)
            elapsed = time.perf_counter() - started
            result.evaluation_time_ms = elapsed * 1000
            result.cache_hit = cache_hit

            span.set_attribute("authorization.allowed", result.allowed)
            self._record_decision(context, result, source, elapsed)

        return result

    async def authorize_batch(self, request: BatchAuthorizationRequest) -> BatchAuthorizationResult:
        """Evaluate several checks for one actor against a single permission lookup."""
        started = time.perf_counter()
        timestamp = request.timestamp or self.clock()

        with correlation_context(actor_id=request.actor_id, tenant_id=request.tenant_id), \
                self.tracer.start_as_current_span("authorization.authorize_batch") as span:
            span.set_attribute("authorization.checks", len(request.checks))

            permission_ids, cache_hit = await self._load_permissions(request.actor_id, request.tenant_id)
            principal_ids = self._principal_ids(request.actor_id, request.tenant_id)

            results = []
            for check in request.checks:
                check_started = time.perf_counter()
                context = AuthorizationContext(
                    actor_id=request.actor_id,
                    tenant_id=request.tenant_id,
                    resource=check.resource,
                    action=check.action,
                    resource_id=check.resource_id,
                    resource_attributes=dict(check.resource_attributes),
                    actor_attributes=dict(request.actor_attributes),
                    environment=dict(request.environment),
                    request_context=dict(request.request_context),
                    timestamp=timestamp,
                )
                result, source = await self._decide(context, permission_ids, principal_ids)
                elapsed = time.perf_counter() - check_started
                result.evaluation_time_ms = elapsed * 1000
                result.cache_hit = cache_hit
                self._record_decision(context, result, source, elapsed)
                results.append(result)

        return BatchAuthorizationResult(
            results=results,
            total_evaluation_time_ms=(time.perf_counter() - started) * 1000
        )

    async def can(
        self,
        actor_id: str,
        tenant_id: Optional[str],
        resource: str,
        action: str,
        resource_id: Optional[str] = None
    ) -> bool:
        """Boolean shorthand for ``authorize``."""
        result = await self.authorize(AuthorizationContext(
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource=resource,
            action=action,
            resource_id=resource_id,
        ))
        return result.allowed

    async def get_user_effective_permissions(self, user_id: str, tenant_id: str) -> List[str]:
        permission_ids, _ = await self._load_permissions(user_id, tenant_id)
        return permission_ids

    async def _decide(
        self,
        context: AuthorizationContext,
        permission_ids: List[str],
        principal_ids: List[str]
    ) -> Tuple[AuthorizationResult, str]:
        if self.custom_evaluator is not None:
            accepted = await self._run_custom_evaluator(context, permission_ids)
            if accepted is not None:
                return AuthorizationResult(
                    allowed=True,
                    reason=CUSTOM_EVALUATOR_REASON,
                    decided_by=accepted.id,
                    matching_ids=[accepted.id],
                ), "custom"

        try:
            result = self.policies.evaluate(context, permission_ids, principal_ids)
        except Exception as e:
            self.logger.error(
                "Authorization evaluation failed",
                resource=context.resource,
                action=context.action,
                error=str(e),
                exc_info=True
            )
            if self.metrics:
                self.metrics.record_error(type(e).__name__)
            return AuthorizationResult(allowed=False, reason=EVALUATION_ERROR_REASON), "error"

        if not result.allowed and result.reason == NO_MATCH_REASON:
            effect = self.config.default_effect
            return AuthorizationResult(
                allowed=effect == "allow",
                reason=f"Default effect: {effect}",
            ), "default"

        return result, _decision_source(result)

    async def _run_custom_evaluator(
        self,
        context: AuthorizationContext,
        permission_ids: Iterable[str]
    ) -> Optional[Permission]:
        """First permission the hook accepts; hook exceptions propagate."""
        for permission_id in permission_ids:
            permission = self.permissions.resolve(permission_id, context.tenant_id)
            if permission is None:
                continue
            outcome = self.custom_evaluator(context, permission)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome:
                return permission
        return None

    def _principal_ids(self, user_id: str, tenant_id: Optional[str]) -> List[str]:
        if tenant_id is None:
            return []
        return [assignment.role_id for assignment in self.roles.get_user_roles(user_id, tenant_id)]

    async def _load_permissions(self, user_id: str, tenant_id: Optional[str]) -> Tuple[List[str], bool]:
        """Effective permission ids and whether they came from the cache."""
        if not self.config.enable_caching:
            return self._compute_permissions(user_id, tenant_id), False

        key = self.cache_key(user_id, tenant_id)
        cached = await self.cache.get(key)
        if cached is not None:
            if self.metrics:
                self.metrics.increment_counter("permission_cache_total", result="hit")
            self.logger.debug("Permission cache hit", user_id=user_id, tenant_id=tenant_id)
            return list(cached), True

        if self.metrics:
            self.metrics.increment_counter("permission_cache_total", result="miss")
        permission_ids = self._compute_permissions(user_id, tenant_id)
        await self.cache.set(key, list(permission_ids), self.config.cache_ttl_seconds)
        return permission_ids, False

    def _compute_permissions(self, user_id: str, tenant_id: Optional[str]) -> List[str]:
        if tenant_id is None:
            return []
        return self.roles.get_user_effective_permissions(user_id, tenant_id)

    def _record_decision(
        self,
        context: AuthorizationContext,
        result: AuthorizationResult,
        source: str,
        duration_seconds: float
    ) -> None:
        decision = "allowed" if result.allowed else "denied"
        self.logger.debug(
            "Authorization decided",
            resource=context.resource,
            action=context.action,
            decision=decision,
            decided_by=result.decided_by,
            source=source
        )
        if self.metrics:
            self.metrics.record_decision(result.allowed, source, duration_seconds)

        self._emit(
            AuditEventType.AUTHORIZATION_ALLOWED if result.allowed else AuditEventType.AUTHORIZATION_DENIED,
            actor_id=context.actor_id,
            tenant_id=context.tenant_id,
            metadata={
                "resource": context.resource,
                "action": context.action,
                "resource_id": context.resource_id,
                "decision": decision,
                "reason": result.reason,
                "decided_by": result.decided_by,
            }
        )

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def create_permission(
        self,
        request: Union[PermissionCreateRequest, Dict[str, Any]],
        actor_id: Optional[str] = None
    ) -> Permission:
        permission = self.permissions.create(request)
        self._emit(
            AuditEventType.PERMISSION_CREATED,
            actor_id=actor_id,
            tenant_id=permission.tenant_id,
            entity_type=EntityType.PERMISSION,
            entity_id=permission.id,
            new_state=permission
        )
        return permission

    async def get_permission(self, permission_id: str, tenant_id: Optional[str] = None) -> Optional[Permission]:
        return self.permissions.get(permission_id, tenant_id)

    async def list_permissions(self, tenant_id: Optional[str] = None) -> List[Permission]:
        return self.permissions.list(tenant_id)

    async def update_permission(
        self,
        permission_id: str,
        updates: Union[PermissionUpdateRequest, Dict[str, Any]],
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Optional[Permission]:
        previous = self.permissions.get(permission_id, tenant_id)
        updated = self.permissions.update(permission_id, updates, tenant_id)
        if updated is not None:
            self._emit(
                AuditEventType.PERMISSION_UPDATED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.PERMISSION,
                entity_id=permission_id,
                previous_state=previous,
                new_state=updated
            )
        return updated

    async def delete_permission(
        self,
        permission_id: str,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> bool:
        previous = self.permissions.get(permission_id, tenant_id)
        deleted = self.permissions.delete(permission_id, tenant_id)
        if deleted:
            self._emit(
                AuditEventType.PERMISSION_DELETED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.PERMISSION,
                entity_id=permission_id,
                previous_state=previous
            )
        return deleted

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def create_role(
        self,
        request: Union[RoleCreateRequest, Dict[str, Any]],
        actor_id: Optional[str] = None
    ) -> Role:
        role = self.roles.create(request)
        # A tenant role may shadow a global role with the same id
        await self._invalidate_role_holders([role.id], role.tenant_id)
        self._emit(
            AuditEventType.ROLE_CREATED,
            actor_id=actor_id,
            tenant_id=role.tenant_id,
            entity_type=EntityType.ROLE,
            entity_id=role.id,
            new_state=role
        )
        return role

    async def get_role(self, role_id: str, tenant_id: Optional[str] = None) -> Optional[Role]:
        return self.roles.get(role_id, tenant_id)

    async def list_roles(self, tenant_id: Optional[str] = None) -> List[Role]:
        return self.roles.list(tenant_id)

    async def update_role(
        self,
        role_id: str,
        updates: Union[RoleUpdateRequest, Dict[str, Any]],
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Optional[Role]:
        previous = self.roles.get(role_id, tenant_id)
        updated = self.roles.update(role_id, updates, tenant_id)
        if updated is not None:
            await self._invalidate_role_holders(self.roles.get_dependent_roles(role_id, tenant_id), tenant_id)
            self._emit(
                AuditEventType.ROLE_UPDATED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.ROLE,
                entity_id=role_id,
                previous_state=previous,
                new_state=updated
            )
        return updated

    async def delete_role(
        self,
        role_id: str,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> bool:
        previous = self.roles.get(role_id, tenant_id)
        affected = self.roles.get_assigned_users(self.roles.get_dependent_roles(role_id, tenant_id), tenant_id)
        deleted = self.roles.delete(role_id, tenant_id)
        if deleted:
            await self._invalidate_users(affected)
            self._emit(
                AuditEventType.ROLE_DELETED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.ROLE,
                entity_id=role_id,
                previous_state=previous
            )
        return deleted

    async def add_permission_to_role(
        self,
        role_id: str,
        permission_id: str,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Optional[Role]:
        previous = self.roles.get(role_id, tenant_id)
        updated = self.roles.add_permission(role_id, permission_id, tenant_id)
        if updated is not None and updated is not previous:
            await self._invalidate_role_holders(self.roles.get_dependent_roles(role_id, tenant_id), tenant_id)
            self._emit(
                AuditEventType.ROLE_UPDATED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.ROLE,
                entity_id=role_id,
                previous_state=previous,
                new_state=updated,
                metadata={"permission_added": permission_id}
            )
        return updated

    async def remove_permission_from_role(
        self,
        role_id: str,
        permission_id: str,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Optional[Role]:
        previous = self.roles.get(role_id, tenant_id)
        updated = self.roles.remove_permission(role_id, permission_id, tenant_id)
        if updated is not None and updated is not previous:
            await self._invalidate_role_holders(self.roles.get_dependent_roles(role_id, tenant_id), tenant_id)
            self._emit(
                AuditEventType.ROLE_UPDATED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.ROLE,
                entity_id=role_id,
                previous_state=previous,
                new_state=updated,
                metadata={"permission_removed": permission_id}
            )
        return updated

    async def get_role_effective_permissions(self, role_id: str, tenant_id: Optional[str] = None) -> List[str]:
        return self.roles.get_effective_permissions(role_id, tenant_id)

    async def initialize_system_roles(
        self,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> List[Role]:
        """Seed super_admin, admin, user and guest; existing roles are kept."""
        existing = {role.id for role in self.roles.list(tenant_id) if role.tenant_id == tenant_id}
        roles = self.roles.create_system_roles(tenant_id)
        await self._invalidate_role_holders([role.id for role in roles], tenant_id)
        for role in roles:
            if role.id in existing:
                continue
            self._emit(
                AuditEventType.ROLE_CREATED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.ROLE,
                entity_id=role.id,
                new_state=role,
                metadata={"system": True}
            )
        return roles

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def assign_role(
        self,
        request: Union[RoleAssignmentRequest, Dict[str, Any]],
        actor_id: Optional[str] = None
    ) -> UserRoleAssignment:
        assignment = self.roles.assign_role(request)
        await self._invalidate_users([(assignment.tenant_id, assignment.user_id)])
        self._emit(
            AuditEventType.ROLE_ASSIGNED,
            actor_id=actor_id or assignment.assigned_by,
            tenant_id=assignment.tenant_id,
            entity_type=EntityType.ASSIGNMENT,
            entity_id=f"{assignment.user_id}:{assignment.role_id}",
            new_state=assignment,
            metadata={"user_id": assignment.user_id, "role_id": assignment.role_id, "scope": assignment.scope}
        )
        return assignment

    async def unassign_role(
        self,
        user_id: str,
        role_id: str,
        tenant_id: str,
        scope: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> bool:
        removed = self.roles.unassign_role(user_id, role_id, tenant_id, scope)
        if removed:
            await self._invalidate_users([(tenant_id, user_id)])
            self._emit(
                AuditEventType.ROLE_UNASSIGNED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.ASSIGNMENT,
                entity_id=f"{user_id}:{role_id}",
                metadata={"user_id": user_id, "role_id": role_id, "scope": scope}
            )
        return removed

    async def get_user_roles(self, user_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        return self.roles.get_user_roles(user_id, tenant_id)

    async def get_users_with_role(self, role_id: str, tenant_id: str) -> List[UserRoleAssignment]:
        return self.roles.get_users_with_role(role_id, tenant_id)

    async def user_has_role(self, user_id: str, role_id: str, tenant_id: str, scope: Optional[str] = None) -> bool:
        return self.roles.user_has_role(user_id, role_id, tenant_id, scope)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def create_policy(
        self,
        request: Union[PolicyCreateRequest, Dict[str, Any]],
        actor_id: Optional[str] = None
    ) -> Policy:
        policy = self.policies.create(request)
        self._emit(
            AuditEventType.POLICY_CREATED,
            actor_id=actor_id,
            tenant_id=policy.tenant_id,
            entity_type=EntityType.POLICY,
            entity_id=policy.id,
            new_state=policy
        )
        return policy

    async def get_policy(self, policy_id: str, tenant_id: Optional[str] = None) -> Optional[Policy]:
        return self.policies.get(policy_id, tenant_id)

    async def list_policies(self, tenant_id: Optional[str] = None) -> List[Policy]:
        return self.policies.list(tenant_id)

    async def update_policy(
        self,
        policy_id: str,
        updates: Union[PolicyUpdateRequest, Dict[str, Any]],
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Optional[Policy]:
        previous = self.policies.get(policy_id, tenant_id)
        updated = self.policies.update(policy_id, updates, tenant_id)
        if updated is not None:
            self._emit(
                AuditEventType.POLICY_UPDATED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.POLICY,
                entity_id=policy_id,
                previous_state=previous,
                new_state=updated
            )
        return updated

    async def delete_policy(
        self,
        policy_id: str,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> bool:
        previous = self.policies.get(policy_id, tenant_id)
        deleted = self.policies.delete(policy_id, tenant_id)
        if deleted:
            self._emit(
                AuditEventType.POLICY_DELETED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                entity_type=EntityType.POLICY,
                entity_id=policy_id,
                previous_state=previous
            )
        return deleted

    # ------------------------------------------------------------------
    # Cache and audit plumbing
    # ------------------------------------------------------------------

    def cache_key(self, user_id: str, tenant_id: Optional[str]) -> str:
        return f"{self.config.cache_key_prefix}user:{tenant_id}:{user_id}:permissions"

    async def invalidate_user_cache(self, user_id: str, tenant_id: str) -> None:
        await self._invalidate_users([(tenant_id, user_id)])

    async def _invalidate_role_holders(self, role_ids: Iterable[str], tenant_id: Optional[str]) -> None:
        await self._invalidate_users(self.roles.get_assigned_users(role_ids, tenant_id))

    async def _invalidate_users(self, users: Iterable[Tuple[str, str]]) -> None:
        users: Set[Tuple[str, str]] = set(users)
        for tenant_id, user_id in users:
            await self.cache.delete(self.cache_key(user_id, tenant_id))
        if users:
            self.logger.debug("Permission cache invalidated", users=len(users))

    def _emit(self, event_type: AuditEventType, **fields: Any) -> None:
        if not self.config.enable_audit_log:
            return
        self.audit.dispatch(AuditEvent(type=event_type, timestamp=self.clock(), **fields))

    async def flush_audit_events(self) -> None:
        """Wait for pending asynchronous audit deliveries."""
        await self.audit.flush()


def _decision_source(result: AuthorizationResult) -> str:
    if result.decided_by == PERMISSION_WILDCARD:
        return "wildcard"
    reason = result.reason or ""
    if reason.startswith(("Allowed by policy", "Denied by policy")):
        return "policy"
    return "permission"
