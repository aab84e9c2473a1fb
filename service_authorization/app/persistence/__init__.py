"""
Persistence package for the Authorization Service.

Defines the storage port used by the registries. Only an in-memory
store is provided; durable backends plug in by implementing
``EntityStore``.
"""
