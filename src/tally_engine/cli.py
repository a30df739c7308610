"""Typer CLI for Tally-Engine."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tally_engine.common.config import TallySettings, get_settings
from tally_engine.common.exceptions import ScenarioError, TallyError
from tally_engine.common.logging import setup_logging

app = typer.Typer(name="tally", help="Tally-Engine: subscription pool reconciliation rules")
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override TALLY_LOG_LEVEL"),
):
    settings = get_settings()
    setup_logging(log_level or settings.log_level, json_lines=settings.log_json)


def _fail(exc: TallyError) -> None:
    console.print(f"[bold red]{exc.code}[/bold red]: {exc.message}")
    raise typer.Exit(1)


def _build_rules(scenario):
    from tally_engine.pools.rules import PoolRules
    from tally_engine.pools.store import InMemoryPoolStore

    settings: TallySettings = get_settings()
    if scenario.standalone is not None:
        settings = settings.model_copy(update={"standalone": scenario.standalone})

    store = InMemoryPoolStore(scenario.pools, scenario.entitlements)
    return PoolRules(settings, store, store), store


def _pool_table(title: str, pools) -> Table:
    table = Table(title=title)
    for column in ("id", "type", "product", "quantity", "sub key", "attributes"):
        table.add_column(column)
    for pool in pools:
        table.add_row(
            str(pool.id or "-"),
            pool.type,
            str(pool.product_id or "-"),
            str(pool.quantity),
            str(pool.subscription_sub_key or "-"),
            ", ".join(f"{k}={v}" for k, v in sorted(pool.attributes.items())),
        )
    return table


def _update_table(title: str, updates) -> Table:
    table = Table(title=title)
    for column in ("id", "type", "product", "quantity", "changed"):
        table.add_column(column)
    for update in updates:
        pool = update.pool
        table.add_row(
            str(pool.id or "-"),
            pool.type,
            str(pool.product_id or "-"),
            str(pool.quantity),
            ", ".join(update.changed),
        )
    return table


def _emit(as_json: bool, payload: dict, tables: list[Table]) -> None:
    if as_json:
        console.print_json(json.dumps(payload, default=str))
        return
    for table in tables:
        console.print(table)


@app.command()
def quantity(
    raw_quantity: int = typer.Argument(..., help="Subscription quantity (negative means unlimited)"),
    multiplier: Optional[int] = typer.Option(None, help="Product multiplier"),
    instance_multiplier: Optional[str] = typer.Option(None, help="instance_multiplier attribute"),
    upstream_pool_id: Optional[str] = typer.Option(None, help="Upstream pool id, if mirrored"),
):
    """Compute a pool quantity from a subscription quantity."""
    from tally_engine.pools.models import Product, ProductAttributes
    from tally_engine.pools.quantity import calculate_quantity

    attributes = {}
    if instance_multiplier is not None:
        attributes[ProductAttributes.INSTANCE_MULTIPLIER] = instance_multiplier
    product = Product(id="cli", multiplier=multiplier, attributes=attributes)

    try:
        result = calculate_quantity(raw_quantity, product, upstream_pool_id)
    except TallyError as exc:
        _fail(exc)
    console.print(f"[bold]{result}[/bold]")


@app.command("virt-quantity")
def virt_quantity(
    virt_limit: str = typer.Argument(..., help="virt_limit attribute value"),
    primary_quantity: int = typer.Argument(..., help="Primary pool quantity"),
):
    """Compute the bonus pool quantity implied by a virt_limit."""
    from tally_engine.pools.quantity import get_virt_quantity

    result = get_virt_quantity(virt_limit, primary_quantity)
    if result is None:
        console.print("[yellow]no bonus pool[/yellow]")
    else:
        console.print(f"[bold]{result}[/bold]")


@app.command()
def synthesize(
    scenario_path: Path = typer.Argument(..., help="Scenario JSON file"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of tables"),
):
    """Show which pools a subscription needs that do not exist yet."""
    from tally_engine.pools.schemas import PoolOut, load_scenario

    try:
        scenario = load_scenario(scenario_path)
        if scenario.subscription is None:
            raise ScenarioError("Scenario has no subscription")
        rules, _ = _build_rules(scenario)
        existing = [p for p in scenario.pools if p.subscription_id == scenario.subscription.id]
        created = rules.create_and_enrich_pools_for_subscription(scenario.subscription, existing)
    except TallyError as exc:
        _fail(exc)

    out = [PoolOut.from_pool(p) for p in created]
    _emit(
        as_json,
        {"created": [p.model_dump(mode="json") for p in out]},
        [_pool_table("Pools to create", out)],
    )


@app.command()
def refresh(
    scenario_path: Path = typer.Argument(..., help="Scenario JSON file"),
    force: bool = typer.Option(False, help="Rewrite every field even when unchanged"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of tables"),
):
    """Refresh a subscription's pools and any floating pools in the scenario."""
    from tally_engine.pools.helper import convert_to_primary_pool
    from tally_engine.pools.schemas import PoolOut, PoolUpdateOut, load_scenario

    try:
        scenario = load_scenario(scenario_path)
        rules, _ = _build_rules(scenario)

        created, updates = [], []
        if scenario.subscription is not None:
            subscription = scenario.subscription
            existing = [p for p in scenario.pools if p.subscription_id == subscription.id]
            created = rules.create_and_enrich_pools_for_subscription(subscription, existing)

            original_quantity = scenario.original_quantity
            if original_quantity is None:
                original_quantity = subscription.quantity if subscription.quantity is not None else 1
            updates = rules.update_pools(
                convert_to_primary_pool(subscription),
                existing,
                original_quantity,
                scenario.changed_products,
                force,
            )

        floating = [p for p in scenario.pools if p.subscription_id is None]
        updates += rules.update_floating_pools(floating, scenario.changed_products, force)
    except TallyError as exc:
        _fail(exc)

    created_out = [PoolOut.from_pool(p) for p in created]
    updates_out = [PoolUpdateOut.from_update(u) for u in updates]
    _emit(
        as_json,
        {
            "created": [p.model_dump(mode="json") for p in created_out],
            "updated": [u.model_dump(mode="json") for u in updates_out],
        },
        [_pool_table("Pools to create", created_out), _update_table("Pool updates", updates_out)],
    )


@app.command()
def restack(
    scenario_path: Path = typer.Argument(..., help="Scenario JSON file"),
    delete_empty: bool = typer.Option(False, help="Delete stack pools with no stacked entitlements"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of tables"),
):
    """Re-derive every stack-derived pool from its consumers' stacked entitlements."""
    from tally_engine.pools.schemas import PoolOut, PoolUpdateOut, load_scenario

    try:
        scenario = load_scenario(scenario_path)
        rules, store = _build_rules(scenario)
        stack_pools = [p for p in scenario.pools if p.source_stack is not None]
        consumers = list(scenario.consumers.values())
        updates = rules.bulk_update_pools_from_stack(
            consumers, stack_pools, delete_if_no_stacked_ents=delete_empty
        )
    except TallyError as exc:
        _fail(exc)

    updates_out = [PoolUpdateOut.from_update(u) for u in updates if u.changed()]
    deleted_out = [PoolOut.from_pool(p) for p in store.deleted]
    _emit(
        as_json,
        {
            "updated": [u.model_dump(mode="json") for u in updates_out],
            "deleted": [p.model_dump(mode="json") for p in deleted_out],
        },
        [_update_table("Stack pool updates", updates_out), _pool_table("Deleted pools", deleted_out)],
    )


if __name__ == "__main__":
    app()
