"""In-memory pool and entitlement collaborators over a loaded scenario."""

import logging
from typing import Collection, Iterable, Optional

from tally_engine.pools.models import Consumer, Entitlement, Pool

logger = logging.getLogger(__name__)


class InMemoryPoolStore:
    """Serves entitlement lookups and records deletions for a fixed set of pools."""

    def __init__(self, pools: Iterable[Pool], entitlements: Iterable[Entitlement]):
        self.pools = list(pools)
        self.entitlements = list(entitlements)
        self.deleted: list[Pool] = []

    # ── EntitlementLookup ──

    def find_by_stack_id(self, consumer: Optional[Consumer], stack_id: str) -> list[Entitlement]:
        return self.find_by_stack_ids(consumer, {stack_id})

    def find_by_stack_ids(
        self, consumer: Optional[Consumer], stack_ids: Collection[str]
    ) -> list[Entitlement]:
        found = []
        for ent in self.entitlements:
            pool = ent.pool
            # Entitlements from stack-derived pools never feed a stack
            if pool is None or pool.source_stack is not None or pool.stack_id not in stack_ids:
                continue
            if consumer is not None and (ent.consumer is None or ent.consumer.uuid != consumer.uuid):
                continue
            found.append(ent)
        return found

    # ── PoolManager ──

    def is_managed(self, pool: Pool) -> bool:
        return pool.subscription_id is not None

    def delete_pools(
        self, pools: Iterable[Pool], already_deleted_pool_ids: Optional[Collection[str]] = None
    ) -> None:
        skip = set(already_deleted_pool_ids or ())
        for pool in pools:
            if pool.id is not None and pool.id in skip:
                continue
            if pool in self.pools:
                self.pools.remove(pool)
            self.entitlements = [e for e in self.entitlements if e.pool is not pool]
            self.deleted.append(pool)
            logger.info("Deleted pool %s", pool.id, extra={"pool_id": pool.id})
