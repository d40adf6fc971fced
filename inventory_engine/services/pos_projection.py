from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from inventory_engine.models.menu_item import MenuItem
from inventory_engine.models.pos_item import POSItem
from inventory_engine.services.recipe_index import RecipeEntry
from inventory_engine.services.scope_resolver import Scope, scoped_query
from inventory_engine.services.store import run_atomic

logger = logging.getLogger(__name__)


def pos_recipe(pos_item: POSItem | None) -> list[RecipeEntry]:
    """Recipe copy embedded in a POS item; empty when missing or unreadable."""
    if pos_item is None or not pos_item.recipe_json:
        return []
    try:
        raw = json.loads(pos_item.recipe_json)
    except ValueError:
        logger.warning("[POS] unreadable recipe copy on pos item %s", pos_item.id)
        return []
    if not isinstance(raw, list):
        return []
    return [RecipeEntry.from_dict(line) for line in raw if isinstance(line, dict)]


def find_pos_item(
    db: Session,
    scope: Scope,
    *,
    pos_item_id: str | None = None,
    menu_item_id: str | None = None,
) -> POSItem | None:
    query = scoped_query(db, POSItem, scope)
    if pos_item_id:
        return query.filter(POSItem.id == pos_item_id).first()
    if menu_item_id:
        return query.filter(POSItem.menu_item_id == menu_item_id).first()
    return None


def project_menu_item(db: Session, scope: Scope, menu_item: MenuItem) -> POSItem:
    """Write the POS copy of ``menu_item``. Does not commit."""
    pos_item = find_pos_item(db, scope, menu_item_id=menu_item.id)
    if pos_item is None:
        pos_item = POSItem(**scope.as_fields(), menu_item_id=menu_item.id)
        db.add(pos_item)
    pos_item.name = menu_item.name
    pos_item.category = menu_item.category or ""
    pos_item.price = menu_item.price
    pos_item.cost = menu_item.cost
    pos_item.recipe_json = json.dumps([RecipeEntry.from_line(line).to_dict() for line in menu_item.recipe_lines])
    pos_item.is_stale = bool(menu_item.cost_stale)
    pos_item.projected_at = datetime.now(timezone.utc)
    return pos_item


def refresh_pos_item(db: Session, scope: Scope, menu_item_id: str) -> POSItem | None:
    """Regenerate the projection from its menu item, or drop it if the item is gone."""

    def _refresh(session: Session) -> POSItem | None:
        menu_item = scoped_query(session, MenuItem, scope).filter(MenuItem.id == menu_item_id).first()
        if menu_item is None or not menu_item.active:
            removed = (
                scoped_query(session, POSItem, scope)
                .filter(POSItem.menu_item_id == menu_item_id)
                .delete(synchronize_session=False)
            )
            if removed:
                logger.info("[POS] removed projection of %s", menu_item_id)
            return None
        return project_menu_item(session, scope, menu_item)

    return run_atomic(db, _refresh)


def cleanup_orphaned_pos_items(db: Session, scope: Scope) -> list[str]:
    """Delete POS items whose menu item no longer exists or is inactive."""

    def _cleanup(session: Session) -> list[str]:
        live_ids = {
            row.id
            for row in scoped_query(session, MenuItem, scope).filter(MenuItem.active.is_(True)).all()
        }
        orphans = [
            pos_item
            for pos_item in scoped_query(session, POSItem, scope).all()
            if not pos_item.menu_item_id or pos_item.menu_item_id not in live_ids
        ]
        for pos_item in orphans:
            session.delete(pos_item)
        return sorted(pos_item.id for pos_item in orphans)

    removed = run_atomic(db, _cleanup)
    if removed:
        logger.warning("[POS] removed %s orphaned pos items in %s/%s", len(removed), scope.tenant_id, scope.location_id)
    return removed
