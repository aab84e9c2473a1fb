"""
Rules package.

Defines the authorization data model and the components that evaluate
it. Permissions carry resource/action patterns, typed attribute
conditions and time windows; roles group permissions and inherit from
parent roles; policies add IAM-style statements evaluated with
deny-overrides before direct permissions.

Modules of interest:
- models: Entities, request models, contexts, results and audit events.
- conditions: Path resolution, operator semantics, time windows, globs.
- permissions / roles / policies: The registries.
- engine: ``AuthorizationEngine``, the async entry point.
"""
