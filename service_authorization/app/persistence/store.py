"""
Storage port for authorization entities.

Registries keep their entities behind ``EntityStore`` so a persistent
backend can be substituted without touching evaluation logic. The
in-memory implementation is the default and the only one shipped.
"""

from typing import Dict, Generic, Iterator, Optional, Protocol, Tuple, TypeVar

from shared.logging import get_logger

T = TypeVar("T")

# (tenant_id, entity_id); tenant_id None marks a global entity
StoreKey = Tuple[Optional[str], str]


class EntityStore(Protocol[T]):
    """Keyed store for one entity type."""

    def get(self, key: StoreKey) -> Optional[T]:
        ...

    def put(self, key: StoreKey, entity: T) -> None:
        ...

    def delete(self, key: StoreKey) -> bool:
        ...

    def contains(self, key: StoreKey) -> bool:
        ...

    def values(self) -> Iterator[T]:
        ...

    def clear(self) -> None:
        ...


class InMemoryStore(Generic[T]):
    """Dict-backed store; all operations are synchronous."""

    def __init__(self, name: str = "entities"):
        self.name = name
        self.logger = get_logger(f"authorization.persistence.{name}")
        self._items: Dict[StoreKey, T] = {}

    def get(self, key: StoreKey) -> Optional[T]:
        return self._items.get(key)

    def put(self, key: StoreKey, entity: T) -> None:
        self._items[key] = entity

    def delete(self, key: StoreKey) -> bool:
        return self._items.pop(key, None) is not None

    def contains(self, key: StoreKey) -> bool:
        return key in self._items

    def values(self) -> Iterator[T]:
        # Snapshot so callers may mutate the store while iterating
        return iter(list(self._items.values()))

    def clear(self) -> None:
        count = len(self._items)
        self._items.clear()
        self.logger.info("Store cleared", store=self.name, count=count)

    def __len__(self) -> int:
        return len(self._items)
