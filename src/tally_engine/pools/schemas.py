"""Pydantic schemas for pool refresh scenario files."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from tally_engine.common.exceptions import ScenarioError
from tally_engine.pools.models import (
    PRIMARY_POOL_SUB_KEY,
    Consumer,
    Entitlement,
    Pool,
    PoolUpdate,
    Product,
    SourceStack,
    SourceSubscription,
    Subscription,
)


# ── Input ──

class ProductIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    multiplier: Optional[int] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    derived_product_id: Optional[str] = None
    provided_product_ids: list[str] = Field(default_factory=list)


class ConsumerIn(BaseModel):
    uuid: str = Field(..., min_length=1)
    name: str = ""


class SubscriptionIn(BaseModel):
    id: str = Field(..., min_length=1)
    product_id: str
    quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    account_number: Optional[str] = None
    order_number: Optional[str] = None
    contract_number: Optional[str] = None
    upstream_pool_id: Optional[str] = None
    upstream_entitlement_id: Optional[str] = None
    upstream_consumer_id: Optional[str] = None
    certificate: Optional[str] = None
    cdn: Optional[str] = None


class PoolIn(BaseModel):
    id: Optional[str] = None
    quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    product_id: Optional[str] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    subscription_id: Optional[str] = None
    subscription_sub_key: str = PRIMARY_POOL_SUB_KEY
    source_stack_id: Optional[str] = None
    source_consumer_uuid: Optional[str] = None
    upstream_pool_id: Optional[str] = None
    upstream_entitlement_id: Optional[str] = None
    upstream_consumer_id: Optional[str] = None
    certificate: Optional[str] = None
    cdn: Optional[str] = None
    account_number: Optional[str] = None
    order_number: Optional[str] = None
    contract_number: Optional[str] = None
    marked_for_delete: bool = False
    exported: int = Field(default=0, ge=0)


class EntitlementIn(BaseModel):
    id: Optional[str] = None
    pool_id: str
    consumer_uuid: Optional[str] = None
    quantity: int = Field(default=1, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    dirty: bool = False


class ScenarioIn(BaseModel):
    """A snapshot of catalog, pool and entitlement facts to run the pool rules against."""

    products: list[ProductIn] = Field(default_factory=list)
    consumers: list[ConsumerIn] = Field(default_factory=list)
    subscription: Optional[SubscriptionIn] = None
    pools: list[PoolIn] = Field(default_factory=list)
    entitlements: list[EntitlementIn] = Field(default_factory=list)
    original_quantity: Optional[int] = None
    changed_product_ids: list[str] = Field(default_factory=list)
    standalone: Optional[bool] = None


@dataclass
class Scenario:
    """A ScenarioIn resolved into linked domain objects."""

    products: dict[str, Product] = field(default_factory=dict)
    consumers: dict[str, Consumer] = field(default_factory=dict)
    subscription: Optional[Subscription] = None
    pools: list[Pool] = field(default_factory=list)
    entitlements: list[Entitlement] = field(default_factory=list)
    original_quantity: Optional[int] = None
    changed_products: dict[str, Product] = field(default_factory=dict)
    standalone: Optional[bool] = None


def _lookup(table: dict[str, Any], key: str, kind: str) -> Any:
    try:
        return table[key]
    except KeyError:
        raise ScenarioError(f"Unknown {kind} '{key}'") from None


def build_scenario(data: ScenarioIn) -> Scenario:
    """Resolve ids in a scenario into linked Product/Pool/Entitlement objects."""
    products: dict[str, Product] = {
        p.id: Product(id=p.id, name=p.name, multiplier=p.multiplier, attributes=dict(p.attributes))
        for p in data.products
    }
    for p in data.products:
        product = products[p.id]
        if p.derived_product_id is not None:
            product.derived_product = _lookup(products, p.derived_product_id, "product")
        product.provided_products = [
            _lookup(products, pid, "product") for pid in p.provided_product_ids
        ]

    consumers = {c.uuid: Consumer(uuid=c.uuid, name=c.name) for c in data.consumers}

    subscription = None
    if data.subscription is not None:
        sub = data.subscription
        subscription = Subscription(
            product=_lookup(products, sub.product_id, "product"),
            **sub.model_dump(exclude={"product_id"}),
        )

    pools: list[Pool] = []
    pools_by_id: dict[str, Pool] = {}
    for p in data.pools:
        pool = Pool(
            id=p.id,
            quantity=p.quantity,
            start_date=p.start_date,
            end_date=p.end_date,
            product=_lookup(products, p.product_id, "product") if p.product_id else None,
            attributes=dict(p.attributes),
            upstream_pool_id=p.upstream_pool_id,
            upstream_entitlement_id=p.upstream_entitlement_id,
            upstream_consumer_id=p.upstream_consumer_id,
            certificate=p.certificate,
            cdn=p.cdn,
            account_number=p.account_number,
            order_number=p.order_number,
            contract_number=p.contract_number,
            marked_for_delete=p.marked_for_delete,
            exported=p.exported,
        )
        if p.subscription_id is not None:
            pool.source_subscription = SourceSubscription(p.subscription_id, p.subscription_sub_key)
        if p.source_stack_id is not None:
            consumer = None
            if p.source_consumer_uuid is not None:
                consumer = _lookup(consumers, p.source_consumer_uuid, "consumer")
            pool.source_stack = SourceStack(p.source_stack_id, consumer)
        if p.id is not None:
            if p.id in pools_by_id:
                raise ScenarioError(f"Duplicate pool id '{p.id}'")
            pools_by_id[p.id] = pool
        pools.append(pool)

    entitlements: list[Entitlement] = []
    for e in data.entitlements:
        pool = _lookup(pools_by_id, e.pool_id, "pool")
        consumer = _lookup(consumers, e.consumer_uuid, "consumer") if e.consumer_uuid else None
        ent = Entitlement(
            id=e.id,
            pool=pool,
            consumer=consumer,
            quantity=e.quantity,
            start_date=e.start_date,
            end_date=e.end_date,
            dirty=e.dirty,
        )
        pool.entitlements.append(ent)
        entitlements.append(ent)

    return Scenario(
        products=products,
        consumers=consumers,
        subscription=subscription,
        pools=pools,
        entitlements=entitlements,
        original_quantity=data.original_quantity,
        changed_products={pid: _lookup(products, pid, "product") for pid in data.changed_product_ids},
        standalone=data.standalone,
    )


def load_scenario(path: Path) -> Scenario:
    """Read, validate and resolve a JSON scenario file."""
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ScenarioError(f"Cannot read scenario {path}: {exc}") from exc

    try:
        data = ScenarioIn.model_validate(raw)
    except ValidationError as exc:
        raise ScenarioError(f"Invalid scenario {path}: {exc}") from exc

    return build_scenario(data)


# ── Output ──

class PoolOut(BaseModel):
    id: Optional[str] = None
    type: str
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    subscription_id: Optional[str] = None
    subscription_sub_key: Optional[str] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    marked_for_delete: bool = False

    @classmethod
    def from_pool(cls, pool: Pool) -> "PoolOut":
        return cls(
            id=pool.id,
            type=pool.type.value,
            product_id=pool.product.id if pool.product is not None else None,
            quantity=pool.quantity,
            start_date=pool.start_date,
            end_date=pool.end_date,
            subscription_id=pool.subscription_id,
            subscription_sub_key=pool.subscription_sub_key,
            attributes=dict(pool.attributes),
            marked_for_delete=pool.marked_for_delete,
        )


class PoolUpdateOut(BaseModel):
    pool: PoolOut
    changed: list[str]

    @classmethod
    def from_update(cls, update: PoolUpdate) -> "PoolUpdateOut":
        return cls(pool=PoolOut.from_pool(update.pool), changed=update.summary())
