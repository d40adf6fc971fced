from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from inventory_engine.core.database import SessionLocal
from inventory_engine.services.cost_sync import CostSynchronizer, cost_synchronizer
from inventory_engine.services.event_bus import (
    INVENTORY_COST_CHANGED,
    MENU_ITEM_COST_CHANGED,
    MENU_ITEM_RECIPE_CHANGED,
    SYNC_ENTRY_FAILED,
    EventBus,
    event_bus,
)
from inventory_engine.services.pos_projection import refresh_pos_item
from inventory_engine.services.scope_resolver import Scope

logger = logging.getLogger(__name__)


def _with_session(handler, session_factory: Callable[[], Session]):
    def wrapper(payload: dict) -> None:
        db: Session = session_factory()
        try:
            handler(db, payload)
        finally:
            db.close()

    return wrapper


def handle_menu_item_changed(db: Session, payload: dict) -> None:
    scope = Scope.from_location(payload["tenant_id"], payload["location_id"])
    refresh_pos_item(db, scope, payload["menu_item_id"])


def handle_sync_entry_failed(payload: dict) -> None:
    logger.error(
        "[SYNC_QUEUE] entry %s (%s) needs operator attention: %s",
        payload.get("id"),
        payload.get("type"),
        payload.get("last_error"),
    )


def register_handlers(
    bus: EventBus = event_bus,
    session_factory: Callable[[], Session] = SessionLocal,
    synchronizer: CostSynchronizer = cost_synchronizer,
) -> None:
    refresh = _with_session(handle_menu_item_changed, session_factory)
    bus.subscribe(INVENTORY_COST_CHANGED, synchronizer.notify)
    bus.subscribe(MENU_ITEM_COST_CHANGED, refresh)
    bus.subscribe(MENU_ITEM_RECIPE_CHANGED, refresh)
    bus.subscribe(SYNC_ENTRY_FAILED, handle_sync_entry_failed)


register_handlers()
