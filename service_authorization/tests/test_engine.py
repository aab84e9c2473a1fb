"""
Unit tests for the AuthorizationEngine orchestrator.
"""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from shared.config import AuthorizationConfig
from shared.errors import ValidationError
from shared.logging import configure_logging
from shared.metrics import MetricsCollector
from service_authorization.app.cache.providers import InMemoryCache, RedisCacheProvider
from service_authorization.app.rules.engine import AuthorizationEngine
from service_authorization.app.rules.models import (
    AuditEventType, BatchAuthorizationRequest, BatchCheck, EntityType,
)


@pytest.fixture
def audit_events():
    return []


@pytest.fixture
def metrics():
    return MetricsCollector("authorization-test", registry=CollectorRegistry())


@pytest.fixture
def engine(clock, audit_events, metrics):
    return AuthorizationEngine(
        config=AuthorizationConfig(),
        audit_sink=audit_events.append,
        metrics=metrics,
        clock=clock,
    )


async def grant(engine, user_id, tenant_id, *permissions, role_id="grants"):
    """Create permissions, a role holding them and assign it to the user."""
    ids = []
    for permission in permissions:
        ids.append((await engine.create_permission(permission)).id)
    await engine.create_role({"id": role_id, "name": role_id, "permissions": ids, "tenant_id": tenant_id})
    await engine.assign_role({"user_id": user_id, "role_id": role_id, "tenant_id": tenant_id})
    return ids


class TestAuthorize:
    """Decisions made by authorize."""

    @pytest.mark.asyncio
    async def test_scenario_allow_permission(self, engine, make_context):
        await grant(engine, "user-1", "tenant-1",
                    {"name": "Read documents", "resource": "documents", "actions": ["read"], "effect": "allow"})

        result = await engine.authorize(make_context(resource="documents", action="read"))

        assert result.allowed is True
        assert result.reason == "Allowed by permission"
        assert result.evaluation_time_ms >= 0

    @pytest.mark.asyncio
    async def test_scenario_deny_overrides_higher_priority_allow(self, engine, make_context):
        await grant(
            engine, "user-1", "tenant-1",
            {"name": "Secret", "resource": "documents:secret", "actions": ["*"], "effect": "deny", "priority": 10},
            {"name": "Docs", "resource": "documents:*", "actions": ["*"], "effect": "allow", "priority": 0},
        )

        assert (await engine.authorize(make_context(resource="documents:secret", action="read"))).allowed is False
        assert (await engine.authorize(make_context(resource="documents:public", action="read"))).allowed is True

    @pytest.mark.asyncio
    async def test_scenario_inherited_permissions(self, engine):
        p1 = await engine.create_permission({"id": "p1", "name": "p1", "resource": "documents", "actions": ["read"]})
        p2 = await engine.create_permission({"id": "p2", "name": "p2", "resource": "folders", "actions": ["read"]})
        await engine.create_role({"id": "A", "name": "A", "permissions": [p1.id]})
        await engine.create_role({"id": "B", "name": "B", "permissions": [p2.id], "parent_roles": ["A"]})

        await engine.assign_role({"user_id": "U", "role_id": "B", "tenant_id": "T"})

        assert set(await engine.get_user_effective_permissions("U", "T")) == {"p1", "p2"}
        assert await engine.can("U", "T", "documents", "read")

    @pytest.mark.asyncio
    async def test_scenario_deny_policy(self, engine, make_context):
        await grant(engine, "user-1", "tenant-1", {"name": "All", "resource": "*", "actions": ["*"]})
        await engine.create_policy({"name": "No deletes", "statements": [
            {"effect": "deny", "principals": ["*"], "actions": ["delete"], "resources": ["*"]},
        ]})

        for resource in ("documents", "folders:1", "billing"):
            assert (await engine.authorize(make_context(resource=resource, action="delete"))).allowed is False
        assert (await engine.authorize(make_context(action="read"))).allowed is True

    @pytest.mark.asyncio
    async def test_super_admin_wildcard(self, engine, make_context):
        await engine.initialize_system_roles()
        await engine.assign_role({"user_id": "root", "role_id": "super_admin", "tenant_id": "tenant-1"})

        for resource, action in (("documents", "read"), ("billing:9", "refund"), ("anything", "at-all")):
            result = await engine.authorize(make_context(actor_id="root", resource=resource, action=action))
            assert result.allowed is True
            assert result.decided_by == "*"

    @pytest.mark.asyncio
    async def test_policy_principal_matches_role(self, engine, make_context):
        await engine.create_role({"id": "editor", "name": "Editor", "tenant_id": "tenant-1"})
        await engine.assign_role({"user_id": "user-1", "role_id": "editor", "tenant_id": "tenant-1"})
        await engine.create_policy({"name": "Editors write", "statements": [
            {"effect": "allow", "principals": ["editor"], "actions": ["write"], "resources": ["documents"]},
        ]})

        assert await engine.can("user-1", "tenant-1", "documents", "write")
        assert not await engine.can("user-2", "tenant-1", "documents", "write")

    @pytest.mark.asyncio
    async def test_weekend_denied_by_time_condition(self, engine, make_context, clock):
        await grant(engine, "user-1", "tenant-1", {
            "name": "Weekdays", "resource": "documents", "actions": ["read"],
            "time_condition": {"days_of_week": [1, 2, 3, 4, 5]},
        })

        assert await engine.can("user-1", "tenant-1", "documents", "read")
        clock.advance(days=5)  # Saturday
        assert not await engine.can("user-1", "tenant-1", "documents", "read")

    @pytest.mark.asyncio
    async def test_default_effect(self, clock, make_context):
        deny_engine = AuthorizationEngine(config=AuthorizationConfig(enable_metrics=False), clock=clock)
        allow_engine = AuthorizationEngine(
            config=AuthorizationConfig(default_effect="allow", enable_metrics=False), clock=clock
        )

        denied = await deny_engine.authorize(make_context())
        allowed = await allow_engine.authorize(make_context())

        assert denied.allowed is False
        assert denied.reason == "Default effect: deny"
        assert allowed.allowed is True
        assert allowed.reason == "Default effect: allow"

    @pytest.mark.asyncio
    async def test_evaluation_errors_become_denials(self, engine, make_context, metrics):
        with patch.object(engine.policies, "evaluate", side_effect=RuntimeError("boom")):
            result = await engine.authorize(make_context())

        assert result.allowed is False
        assert result.reason == "Authorization evaluation error"
        assert metrics.sample("errors_total", error_type="RuntimeError", service="authorization-test") == 1

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, engine):
        await grant(engine, "user-1", "tenant-1", {"name": "Docs", "resource": "documents", "actions": ["read"]})
        checks = [
            BatchCheck(resource="documents", action="read"),
            BatchCheck(resource="documents", action="write"),
            BatchCheck(resource="folders", action="read"),
            BatchCheck(resource="documents", action="read", resource_id="7"),
        ]

        batch = await engine.authorize_batch(
            BatchAuthorizationRequest(actor_id="user-1", tenant_id="tenant-1", checks=checks)
        )

        assert [result.allowed for result in batch.results] == [True, False, False, True]
        assert batch.total_evaluation_time_ms >= 0

    @pytest.mark.asyncio
    async def test_decision_metrics(self, engine, metrics):
        await engine.can("user-1", "tenant-1", "documents", "read")

        assert metrics.sample("authorization_decisions_total", decision="denied", source="default") == 1


class TestCustomEvaluator:
    """Custom evaluator hook gets first refusal."""

    @pytest.mark.asyncio
    async def test_sync_hook_accepts(self, clock, make_context):
        hook = MagicMock(return_value=True)
        engine = AuthorizationEngine(config=AuthorizationConfig(enable_metrics=False), custom_evaluator=hook, clock=clock)
        await grant(engine, "user-1", "tenant-1", {"id": "p", "name": "P", "resource": "reports", "actions": ["run"]})

        result = await engine.authorize(make_context(resource="documents"))

        assert result.allowed is True
        assert result.reason == "Allowed by custom evaluator"
        assert result.decided_by == "p"
        assert hook.call_args[0][1].id == "p"

    @pytest.mark.asyncio
    async def test_async_hook_rejection_falls_through(self, clock, make_context):
        hook = AsyncMock(return_value=False)
        engine = AuthorizationEngine(config=AuthorizationConfig(enable_metrics=False), custom_evaluator=hook, clock=clock)
        await grant(engine, "user-1", "tenant-1", {"id": "p", "name": "P", "resource": "documents", "actions": ["read"]})

        result = await engine.authorize(make_context())

        assert result.allowed is True
        assert result.reason == "Allowed by permission"
        hook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hook_exceptions_propagate(self, clock, make_context):
        hook = MagicMock(side_effect=RuntimeError("hook failed"))
        engine = AuthorizationEngine(config=AuthorizationConfig(enable_metrics=False), custom_evaluator=hook, clock=clock)
        await grant(engine, "user-1", "tenant-1", {"name": "P", "resource": "documents", "actions": ["read"]})

        with pytest.raises(RuntimeError):
            await engine.authorize(make_context())


class TestPermissionCaching:
    """Effective permission sets cached per user and tenant."""

    @pytest.fixture
    def cache(self):
        return InMemoryCache()

    @pytest.fixture
    def engine(self, clock, cache, metrics):
        return AuthorizationEngine(
            config=AuthorizationConfig(enable_caching=True, cache_ttl_seconds=60),
            cache=cache,
            metrics=metrics,
            clock=clock,
        )

    def test_injected_empty_cache_is_used(self, engine, cache):
        assert len(cache) == 0
        assert engine.cache is cache

    @pytest.mark.asyncio
    async def test_second_lookup_hits_cache(self, engine, cache, metrics, make_context):
        await grant(engine, "user-1", "tenant-1", {"id": "p", "name": "P", "resource": "documents", "actions": ["read"]})

        first = await engine.authorize(make_context())
        second = await engine.authorize(make_context())

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert await cache.get("user:tenant-1:user-1:permissions") == ["p"]
        assert metrics.sample("permission_cache_total", result="hit") == 1

    @pytest.mark.asyncio
    async def test_assignment_changes_invalidate(self, engine, cache, make_context):
        await grant(engine, "user-1", "tenant-1", {"id": "p", "name": "P", "resource": "documents", "actions": ["read"]})
        assert (await engine.authorize(make_context())).allowed
        assert await cache.get("user:tenant-1:user-1:permissions") == ["p"]

        await engine.unassign_role("user-1", "grants", "tenant-1")
        assert await cache.get("user:tenant-1:user-1:permissions") is None

        result = await engine.authorize(make_context())
        assert result.allowed is False
        assert result.cache_hit is False

    @pytest.mark.asyncio
    async def test_parent_role_change_invalidates_descendants(self, engine, cache, make_context):
        await engine.create_permission({"id": "p", "name": "P", "resource": "documents", "actions": ["read"]})
        await engine.create_role({"id": "base", "name": "Base"})
        await engine.create_role({"id": "child", "name": "Child", "parent_roles": ["base"]})
        await engine.assign_role({"user_id": "user-1", "role_id": "child", "tenant_id": "tenant-1"})
        assert not (await engine.authorize(make_context())).allowed
        assert await cache.get("user:tenant-1:user-1:permissions") == []

        await engine.add_permission_to_role("base", "p")
        assert await cache.get("user:tenant-1:user-1:permissions") is None

        assert (await engine.authorize(make_context())).allowed

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, clock, make_context):
        ticks = [0.0]
        cache = InMemoryCache(clock=lambda: ticks[0])
        engine = AuthorizationEngine(
            config=AuthorizationConfig(enable_caching=True, cache_ttl_seconds=30, enable_metrics=False),
            cache=cache,
            clock=clock,
        )

        await engine.authorize(make_context())
        assert (await engine.authorize(make_context())).cache_hit is True

        ticks[0] = 31.0
        assert (await engine.authorize(make_context())).cache_hit is False

    @pytest.mark.asyncio
    async def test_cache_key_prefix(self, clock):
        engine = AuthorizationEngine(
            config=AuthorizationConfig(cache_key_prefix="authz:", enable_metrics=False), clock=clock
        )

        assert engine.cache_key("u", "t") == "authz:user:t:u:permissions"


class TestAuditEvents:
    """Audit events emitted by mutations and decisions."""

    @pytest.mark.asyncio
    async def test_mutations_emit_events(self, engine, audit_events):
        await engine.create_permission({"id": "p", "name": "P", "resource": "documents", "actions": ["read"]})
        await engine.update_permission("p", {"priority": 3}, actor_id="admin-1")
        await engine.create_role({"id": "r", "name": "R", "permissions": ["p"]})
        await engine.assign_role({"user_id": "U", "role_id": "r", "tenant_id": "T"}, actor_id="admin-1")
        await engine.unassign_role("U", "r", "T")
        await engine.delete_role("r")
        await engine.delete_permission("p")
        await engine.flush_audit_events()

        assert [event.type for event in audit_events] == [
            AuditEventType.PERMISSION_CREATED,
            AuditEventType.PERMISSION_UPDATED,
            AuditEventType.ROLE_CREATED,
            AuditEventType.ROLE_ASSIGNED,
            AuditEventType.ROLE_UNASSIGNED,
            AuditEventType.ROLE_DELETED,
            AuditEventType.PERMISSION_DELETED,
        ]
        updated = audit_events[1]
        assert updated.actor_id == "admin-1"
        assert updated.previous_state.priority == 0
        assert updated.new_state.priority == 3
        assigned = audit_events[3]
        assert assigned.entity_type == EntityType.ASSIGNMENT
        assert assigned.entity_id == "U:r"
        assert assigned.metadata["role_id"] == "r"

    @pytest.mark.asyncio
    async def test_seeded_system_roles_emit_created_events(self, engine, audit_events):
        await engine.create_role({"id": "admin", "name": "Custom admin", "tenant_id": "tenant-1"})
        await engine.flush_audit_events()
        audit_events.clear()

        await engine.initialize_system_roles("tenant-1", actor_id="bootstrap")
        await engine.flush_audit_events()

        assert [event.entity_id for event in audit_events] == ["super_admin", "user", "guest"]
        assert all(event.type == AuditEventType.ROLE_CREATED for event in audit_events)
        assert all(event.tenant_id == "tenant-1" and event.actor_id == "bootstrap" for event in audit_events)
        assert audit_events[0].new_state.is_system is True

        audit_events.clear()
        await engine.initialize_system_roles("tenant-1")
        await engine.flush_audit_events()

        assert audit_events == []

    @pytest.mark.asyncio
    async def test_failed_mutation_emits_nothing(self, engine, audit_events):
        with pytest.raises(ValidationError):
            await engine.create_permission({"name": "", "resource": "documents", "actions": ["read"]})

        assert await engine.delete_policy("missing") is False
        await engine.flush_audit_events()
        assert audit_events == []

    @pytest.mark.asyncio
    async def test_decision_event(self, engine, audit_events, make_context):
        await engine.authorize(make_context(resource="documents", action="read", resource_id="42"))
        await engine.flush_audit_events()

        event = audit_events[-1]
        assert event.type == AuditEventType.AUTHORIZATION_DENIED
        assert event.actor_id == "user-1"
        assert event.metadata["resource"] == "documents"
        assert event.metadata["resource_id"] == "42"
        assert event.metadata["decision"] == "denied"
        assert event.to_dict()["type"] == "authorization_denied"

    @pytest.mark.asyncio
    async def test_sink_failures_do_not_affect_decisions(self, clock, make_context, metrics):
        sink = AsyncMock(side_effect=ConnectionError("audit store down"))
        engine = AuthorizationEngine(
            config=AuthorizationConfig(default_effect="allow"), audit_sink=sink, metrics=metrics, clock=clock
        )

        result = await engine.authorize(make_context())
        await engine.flush_audit_events()

        assert result.allowed is True
        sink.assert_awaited_once()
        assert metrics.sample("audit_failures_total") == 1

    @pytest.mark.asyncio
    async def test_sync_sink_failure_is_contained(self, clock, make_context, metrics):
        sink = MagicMock(side_effect=ValueError("bad event"))
        engine = AuthorizationEngine(config=AuthorizationConfig(), audit_sink=sink, metrics=metrics, clock=clock)

        result = await engine.authorize(make_context())
        await engine.flush_audit_events()

        assert result.allowed is False
        assert metrics.sample("audit_failures_total") == 1

    @pytest.mark.asyncio
    async def test_audit_log_disabled(self, clock, make_context, audit_events):
        engine = AuthorizationEngine(
            config=AuthorizationConfig(enable_audit_log=False, enable_metrics=False),
            audit_sink=audit_events.append,
            clock=clock,
        )

        await engine.authorize(make_context())
        await engine.flush_audit_events()

        assert audit_events == []


class TestEngineLifecycle:
    """Construction from configuration, start and stop."""

    @patch("service_authorization.app.rules.engine.configure_logging")
    def test_from_config_configures_logging_and_redis(self, mock_configure_logging):
        config = AuthorizationConfig(
            service_name="authz",
            log_level="debug",
            enable_caching=True,
            cache_ttl_seconds=90,
            redis_url="redis://cache:6379/3",
            enable_metrics=False,
        )

        engine = AuthorizationEngine.from_config(config)

        mock_configure_logging.assert_called_once_with("authz", "debug")
        assert isinstance(engine.cache, RedisCacheProvider)
        assert engine.cache.redis_url == "redis://cache:6379/3"
        assert engine.cache.default_ttl_seconds == 90

    @patch("service_authorization.app.rules.engine.configure_logging")
    def test_from_config_keeps_supplied_cache(self, mock_configure_logging):
        cache = InMemoryCache()

        engine = AuthorizationEngine.from_config(
            AuthorizationConfig(enable_caching=True, enable_metrics=False), cache=cache
        )

        assert engine.cache is cache

    @patch("shared.logging.logging.basicConfig")
    @patch("shared.logging.structlog.configure")
    def test_configure_logging_applies_level(self, mock_structlog_configure, mock_basic_config):
        configure_logging("authz", "warning")

        mock_structlog_configure.assert_called_once()
        assert mock_basic_config.call_args.kwargs["level"] == logging.WARNING

    @pytest.mark.asyncio
    async def test_start_and_stop_manage_cache_and_audit(self, clock, make_context):
        cache = MagicMock(start=AsyncMock(), stop=AsyncMock(), get=AsyncMock(return_value=None), set=AsyncMock())
        delivered = []
        engine = AuthorizationEngine(
            config=AuthorizationConfig(enable_caching=True, enable_metrics=False),
            cache=cache,
            audit_sink=delivered.append,
            clock=clock,
        )

        await engine.start()
        await engine.authorize(make_context())
        await engine.stop()

        cache.start.assert_awaited_once()
        cache.stop.assert_awaited_once()
        assert len(delivered) == 1
        assert engine.audit.pending == 0
