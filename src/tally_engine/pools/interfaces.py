"""Collaborators the pool rules depend on but do not implement."""

from typing import Collection, Iterable, Optional, Protocol

from tally_engine.pools.models import Consumer, Entitlement, Pool


class EntitlementLookup(Protocol):
    def find_by_stack_id(self, consumer: Optional[Consumer], stack_id: str) -> list[Entitlement]:
        """Entitlements of ``consumer`` drawing from pools with this stacking id."""
        ...

    def find_by_stack_ids(
        self, consumer: Optional[Consumer], stack_ids: Collection[str]
    ) -> list[Entitlement]:
        """Entitlements for any of ``stack_ids``; all consumers when ``consumer`` is None."""
        ...


class PoolManager(Protocol):
    def is_managed(self, pool: Pool) -> bool:
        """True if the pool originates from a real subscription rather than a custom pool."""
        ...

    def delete_pools(
        self, pools: Iterable[Pool], already_deleted_pool_ids: Optional[Collection[str]] = None
    ) -> None:
        ...
