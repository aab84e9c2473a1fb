"""
Authorization Service package for the 254Carbon Access Layer.

This package decides whether an actor may perform an action on a
resource within a tenant. It provides:

- app.rules: Data model, condition evaluation, permission/role/policy
  registries and the ``AuthorizationEngine`` orchestrator.
- app.cache: Cache providers for effective-permission sets.
- app.audit: Audit sinks and non-blocking delivery.
- app.persistence: Storage port with an in-memory default.

Guidelines:
- Construct everything explicitly; there are no module-level singletons.
- Denials are results, not exceptions.
- Keep evaluation deterministic and observable (metrics + logs).
"""
