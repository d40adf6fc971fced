from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from inventory_engine.models.menu_item import MenuItem, RecipeLine
from inventory_engine.services.cost_sync import compute_margin, price_menu_item
from inventory_engine.services.event_bus import (
    MENU_ITEM_COST_CHANGED,
    MENU_ITEM_RECIPE_CHANGED,
    EventBus,
    event_bus,
)
from inventory_engine.services.inventory import to_decimal
from inventory_engine.services.recipe_index import RecipeEntry, RecipeIndex, recipe_index
from inventory_engine.services.scope_resolver import Scope, scoped_query
from inventory_engine.services.store import run_atomic

logger = logging.getLogger(__name__)


def _to_entries(recipe: Iterable) -> list[RecipeEntry]:
    entries: list[RecipeEntry] = []
    for line in recipe:
        entry = line if isinstance(line, RecipeEntry) else RecipeEntry.from_dict(dict(line))
        if not entry.ingredient_id and not entry.ingredient_name.strip():
            raise ValueError("Recipe line needs an ingredient id or name")
        if entry.quantity <= 0:
            raise ValueError(f"Recipe quantity for {entry.ingredient_name or entry.ingredient_id} must be positive")
        if not entry.unit.strip():
            raise ValueError("Recipe line needs a unit")
        entries.append(entry)
    return entries


def _recipe_lines(scope: Scope, entries: list[RecipeEntry]) -> list[RecipeLine]:
    return [
        RecipeLine(
            **scope.as_fields(),
            position=position,
            ingredient_id=entry.ingredient_id,
            ingredient_name=entry.ingredient_name.strip(),
            quantity=entry.quantity,
            unit=entry.unit.strip(),
        )
        for position, entry in enumerate(entries)
    ]


def get_menu_item(db: Session, scope: Scope, menu_item_id: str, *, for_update: bool = False) -> MenuItem | None:
    query = scoped_query(db, MenuItem, scope).filter(MenuItem.id == menu_item_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    return query.first()


def list_menu_items(db: Session, scope: Scope, include_inactive: bool = False) -> list[MenuItem]:
    query = scoped_query(db, MenuItem, scope)
    if not include_inactive:
        query = query.filter(MenuItem.active.is_(True))
    return query.order_by(MenuItem.category.asc(), MenuItem.name.asc()).all()


def _recipe_changed(bus: EventBus, scope: Scope, item: MenuItem, **extra) -> None:
    bus.emit(MENU_ITEM_RECIPE_CHANGED, {**scope.as_fields(), "menu_item_id": item.id, **extra})


def create_menu_item(
    db: Session,
    scope: Scope,
    *,
    name: str,
    price,
    category: str = "",
    recipe: Iterable = (),
    index: RecipeIndex = recipe_index,
    bus: EventBus = event_bus,
) -> MenuItem:
    price = to_decimal(price)
    if price < 0:
        raise ValueError("Price cannot be negative")
    if not name or not name.strip():
        raise ValueError("Name is required")
    entries = _to_entries(recipe)
    version: int | None = None

    def _create(session: Session) -> MenuItem:
        nonlocal version
        item = MenuItem(**scope.as_fields(), name=name.strip(), category=(category or "").strip(), price=price)
        item.recipe_lines = _recipe_lines(scope, entries)
        session.add(item)
        session.flush()
        price_menu_item(session, scope, item)
        version = item.recipe_version
        return item

    item = run_atomic(db, _create)
    index.apply_recipe(scope, item.id, entries, version=version)
    logger.info("[MENU] created %s %r lines=%s cost=%s", item.id, item.name, len(entries), item.cost)
    _recipe_changed(bus, scope, item)
    return item


def set_recipe(
    db: Session,
    scope: Scope,
    menu_item_id: str,
    recipe: Iterable,
    *,
    index: RecipeIndex = recipe_index,
    bus: EventBus = event_bus,
) -> MenuItem:
    """Replace the recipe, re-derive cost and patch both index directions."""
    entries = _to_entries(recipe)
    old_cost: Decimal | None = None
    version: int | None = None

    def _update(session: Session) -> MenuItem | None:
        nonlocal old_cost, version
        item = get_menu_item(session, scope, menu_item_id, for_update=True)
        if item is None or not item.active:
            return None
        old_cost = to_decimal(item.cost)
        item.recipe_lines = _recipe_lines(scope, entries)
        item.recipe_version = (item.recipe_version or 0) + 1
        version = item.recipe_version
        session.flush()
        price_menu_item(session, scope, item)
        return item

    item = run_atomic(db, _update)
    if item is None:
        raise LookupError(f"Menu item {menu_item_id} not found")

    index.apply_recipe(scope, item.id, entries, version=version)
    logger.info("[MENU] recipe updated %s lines=%s", item.id, len(entries))
    _recipe_changed(bus, scope, item)
    new_cost = to_decimal(item.cost)
    if new_cost != old_cost:
        bus.emit(
            MENU_ITEM_COST_CHANGED,
            {
                **scope.as_fields(),
                "menu_item_id": item.id,
                "old_cost": old_cost,
                "new_cost": new_cost,
                "margin": item.margin,
            },
        )
    return item


def update_menu_item(
    db: Session,
    scope: Scope,
    menu_item_id: str,
    *,
    name: str | None = None,
    price=None,
    category: str | None = None,
    bus: EventBus = event_bus,
) -> MenuItem:
    def _update(session: Session) -> MenuItem | None:
        item = get_menu_item(session, scope, menu_item_id)
        if item is None or not item.active:
            return None
        if name is not None:
            if not name.strip():
                raise ValueError("Name is required")
            item.name = name.strip()
        if category is not None:
            item.category = category.strip()
        if price is not None:
            new_price = to_decimal(price)
            if new_price < 0:
                raise ValueError("Price cannot be negative")
            item.price = new_price
            item.margin = compute_margin(new_price, item.cost)
        return item

    item = run_atomic(db, _update)
    if item is None:
        raise LookupError(f"Menu item {menu_item_id} not found")
    _recipe_changed(bus, scope, item)
    return item


def delete_menu_item(
    db: Session,
    scope: Scope,
    menu_item_id: str,
    *,
    index: RecipeIndex = recipe_index,
    bus: EventBus = event_bus,
) -> None:
    """Soft-delete; orders keep referencing the id and the projection is dropped."""

    version: int | None = None

    def _delete(session: Session) -> MenuItem | None:
        nonlocal version
        item = get_menu_item(session, scope, menu_item_id, for_update=True)
        if item is None or not item.active:
            return None
        item.active = False
        item.recipe_version = (item.recipe_version or 0) + 1
        version = item.recipe_version
        return item

    item = run_atomic(db, _delete)
    if item is None:
        raise LookupError(f"Menu item {menu_item_id} not found")
    index.remove_item(scope, menu_item_id, version=version)
    logger.info("[MENU] deleted %s", menu_item_id)
    _recipe_changed(bus, scope, item, deleted=True)
