"""Keeps MenuItem.cost and margin in line with live ingredient costs.

Cost changes are collected by :meth:`CostSynchronizer.notify` and applied in
batches by :meth:`CostSynchronizer.flush`, either on demand or from the
background loop in :meth:`CostSynchronizer.run`. Every recomputation reads the
current cost of every recipe line, so the result does not depend on the order
in which the triggering changes arrived.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from threading import Lock
from typing import Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from inventory_engine.core.config import COST_SYNC_DELAY_SECONDS
from inventory_engine.core.database import SessionLocal
from inventory_engine.core.metrics import engine_metrics
from inventory_engine.core.request_context import scope_context
from inventory_engine.models.inventory import InventoryItem
from inventory_engine.models.menu_item import MenuItem
from inventory_engine.services.event_bus import MENU_ITEM_COST_CHANGED, EventBus, event_bus
from inventory_engine.services.inventory import find_inventory_item_by_name, to_decimal
from inventory_engine.services.recipe_index import RecipeEntry, RecipeIndex, recipe_index
from inventory_engine.services.scope_resolver import Scope, scoped_query
from inventory_engine.services.store import run_atomic

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MARGIN_PLACES = Decimal("0.0001")


def compute_menu_cost(
    entries: Iterable[RecipeEntry],
    unit_costs: Mapping[str, Decimal],
) -> tuple[Decimal, list[str]]:
    """Sum ``quantity * unit cost`` exactly, rounding once to the cent.

    Returns the cost and the ingredient keys that had no known unit cost.
    """
    total = Decimal("0")
    missing: list[str] = []
    for entry in entries:
        unit_cost = unit_costs.get(entry.key)
        if unit_cost is None:
            missing.append(entry.key)
            continue
        total += to_decimal(entry.quantity) * to_decimal(unit_cost)
    return total.quantize(CENT, rounding=ROUND_HALF_UP), missing


def compute_margin(price, cost) -> Decimal | None:
    price = to_decimal(price)
    if price == 0:
        return None
    return ((price - to_decimal(cost)) / price).quantize(MARGIN_PLACES, rounding=ROUND_HALF_UP)


def current_unit_costs(db: Session, scope: Scope, entries: Iterable[RecipeEntry]) -> dict[str, Decimal]:
    entries = list(entries)
    ids = {entry.ingredient_id for entry in entries if entry.ingredient_id}
    by_id: dict[str, InventoryItem] = {}
    if ids:
        by_id = {
            item.id: item
            for item in scoped_query(db, InventoryItem, scope).filter(InventoryItem.id.in_(ids)).all()
        }

    costs: dict[str, Decimal] = {}
    for entry in entries:
        if entry.key in costs:
            continue
        item = by_id.get(entry.ingredient_id) if entry.ingredient_id else None
        if item is None:
            item = find_inventory_item_by_name(db, scope, entry.ingredient_name)
        if item is not None:
            costs[entry.key] = to_decimal(item.cost_per_unit)
    return costs


def price_menu_item(db: Session, scope: Scope, item: MenuItem) -> list[str]:
    """Set cost, margin and staleness on ``item`` from its recipe. Does not commit."""
    entries = [RecipeEntry.from_line(line) for line in item.recipe_lines]
    cost, missing = compute_menu_cost(entries, current_unit_costs(db, scope, entries))
    item.cost = cost
    item.margin = compute_margin(item.price, cost)
    item.cost_stale = bool(missing)
    item.cost_synced_at = datetime.now(timezone.utc)
    if missing:
        logger.warning("[COST_SYNC] menu item %s has ingredients without a cost: %s", item.id, ", ".join(missing))
    return missing


class CostSynchronizer:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        index: RecipeIndex = recipe_index,
        bus: EventBus = event_bus,
        delay_seconds: float = COST_SYNC_DELAY_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._index = index
        self._bus = bus
        self._delay_seconds = delay_seconds
        self._pending: dict[Scope, set[str]] = {}
        self._pending_ingredients: dict[Scope, set[str]] = {}
        self._lock = Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(len(ids) for ids in self._pending.values()) + sum(
                len(ids) for ids in self._pending_ingredients.values()
            )

    def notify(self, payload: dict) -> None:
        """Record an ``inventory.cost.changed`` event for the next flush."""
        scope = Scope.from_location(payload["tenant_id"], payload["location_id"])
        with self._lock:
            self._pending.setdefault(scope, set()).update(payload.get("menu_item_ids") or ())
            if payload.get("ingredient_id"):
                self._pending_ingredients.setdefault(scope, set()).add(payload["ingredient_id"])
        logger.debug(
            "[COST_SYNC] queued ingredient=%s scope=%s/%s",
            payload.get("ingredient_id"),
            scope.tenant_id,
            scope.location_id,
        )

    def flush(self, db: Session | None = None) -> list[dict]:
        with self._lock:
            pending, self._pending = self._pending, {}
            ingredients, self._pending_ingredients = self._pending_ingredients, {}
        if not pending and not ingredients:
            return []

        owns_session = db is None
        db = db or self._session_factory()
        scopes = sorted(set(pending) | set(ingredients), key=lambda s: (s.tenant_id, s.location_id))
        changes: list[dict] = []
        try:
            for position, scope in enumerate(scopes):
                try:
                    menu_item_ids = set(pending.get(scope, ()))
                    for ingredient_id in ingredients.get(scope, ()):
                        menu_item_ids |= self._index.items_using_ingredient(db, ingredient_id, scope)
                    with scope_context(scope.tenant_id, scope.location_id):
                        for menu_item_id in sorted(menu_item_ids):
                            change = self.recompute_menu_item(db, scope, menu_item_id)
                            if change:
                                changes.append(change)
                except Exception:
                    # Put back everything not yet converged so the next flush retries it.
                    with self._lock:
                        for remaining in scopes[position:]:
                            self._pending.setdefault(remaining, set()).update(pending.get(remaining, ()))
                            if ingredients.get(remaining):
                                self._pending_ingredients.setdefault(remaining, set()).update(ingredients[remaining])
                    raise
        finally:
            if owns_session:
                db.close()
        return changes

    def recompute_menu_item(self, db: Session, scope: Scope, menu_item_id: str) -> dict | None:
        """Recompute one item's cost from the current cost of every recipe line.

        Returns the change notification when the cost moved, otherwise None.
        """

        def _recompute(session: Session) -> dict | None:
            item = (
                scoped_query(session, MenuItem, scope)
                .filter(MenuItem.id == menu_item_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if item is None or not item.active:
                return None

            old_cost = to_decimal(item.cost)
            price_menu_item(session, scope, item)
            new_cost = to_decimal(item.cost)
            if new_cost == old_cost:
                return None
            return {
                **scope.as_fields(),
                "menu_item_id": item.id,
                "old_cost": old_cost,
                "new_cost": new_cost,
                "margin": item.margin,
            }

        change = run_atomic(db, _recompute)
        if change:
            engine_metrics.incr("cost_sync.recomputed")
            logger.info(
                "[COST_SYNC] %s cost %s -> %s margin=%s",
                menu_item_id,
                change["old_cost"],
                change["new_cost"],
                change["margin"],
            )
            self._bus.emit(MENU_ITEM_COST_CHANGED, change)
        return change

    def resync_scope(self, db: Session, scope: Scope) -> list[dict]:
        """Rebuild the index for ``scope`` and recompute every active menu item."""
        self._index.load_scope(db, scope)
        menu_item_ids = [
            row.id
            for row in scoped_query(db, MenuItem, scope)
            .filter(MenuItem.active.is_(True))
            .order_by(MenuItem.id.asc())
            .all()
        ]
        changes: list[dict] = []
        with scope_context(scope.tenant_id, scope.location_id):
            for menu_item_id in menu_item_ids:
                change = self.recompute_menu_item(db, scope, menu_item_id)
                if change:
                    changes.append(change)
        logger.info(
            "[COST_SYNC] resync %s/%s items=%s changed=%s",
            scope.tenant_id,
            scope.location_id,
            len(menu_item_ids),
            len(changes),
        )
        return changes

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("[COST_SYNC] worker started delay=%ss", self._delay_seconds)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._delay_seconds)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            if not self.pending_count:
                continue
            try:
                await asyncio.to_thread(self.flush)
            except Exception:
                logger.exception("[COST_SYNC] background flush failed")
        logger.info("[COST_SYNC] worker stopped")


cost_synchronizer = CostSynchronizer()
