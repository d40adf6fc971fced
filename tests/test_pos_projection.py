import json
from decimal import Decimal

from inventory_engine.models.pos_item import POSItem
from inventory_engine.services.event_bus import EventBus
from inventory_engine.services.inventory import create_inventory_item
from inventory_engine.services.menu import create_menu_item, delete_menu_item, update_menu_item
from inventory_engine.services.pos_projection import (
    cleanup_orphaned_pos_items,
    find_pos_item,
    pos_recipe,
    refresh_pos_item,
)
from inventory_engine.services.recipe_index import RecipeIndex
from inventory_engine.services.scope_resolver import scoped_query
from tests.fixtures_data import LATTE_INVENTORY, LATTE_RECIPE, SCOPE_B1, SCOPE_B2, build_session_factory


def _setup():
    SessionLocal = build_session_factory()
    db = SessionLocal()
    for seed in LATTE_INVENTORY:
        create_inventory_item(db, SCOPE_B1, **seed)
    db.commit()
    index = RecipeIndex()
    bus = EventBus()
    latte = create_menu_item(db, SCOPE_B1, name="Latte", price="4.50", category="Coffee", recipe=LATTE_RECIPE, index=index, bus=bus)
    return db, index, bus, latte


def _pos_items(db, scope=SCOPE_B1):
    db.expire_all()
    return scoped_query(db, POSItem, scope).all()


def test_refresh_copies_the_menu_item():
    db, _, _, latte = _setup()

    refresh_pos_item(db, SCOPE_B1, latte.id)

    [pos_item] = _pos_items(db)
    assert pos_item.menu_item_id == latte.id
    assert pos_item.name == "Latte"
    assert pos_item.category == "Coffee"
    assert pos_item.price == Decimal("4.50")
    assert pos_item.cost == Decimal("0.60")
    assert [entry.ingredient_id for entry in pos_recipe(pos_item)] == ["milk", "coffee"]


def test_refresh_updates_in_place():
    db, _, bus, latte = _setup()
    refresh_pos_item(db, SCOPE_B1, latte.id)
    first_id = _pos_items(db)[0].id

    update_menu_item(db, SCOPE_B1, latte.id, name="Caffe Latte", price="4.80", bus=bus)
    refresh_pos_item(db, SCOPE_B1, latte.id)

    [pos_item] = _pos_items(db)
    assert pos_item.id == first_id
    assert pos_item.name == "Caffe Latte"
    assert pos_item.price == Decimal("4.80")


def test_refresh_drops_the_copy_of_a_deleted_item():
    db, index, bus, latte = _setup()
    refresh_pos_item(db, SCOPE_B1, latte.id)

    delete_menu_item(db, SCOPE_B1, latte.id, index=index, bus=bus)
    assert refresh_pos_item(db, SCOPE_B1, latte.id) is None

    assert _pos_items(db) == []


def test_cleanup_removes_orphans_only_in_its_own_branch():
    db, _, _, latte = _setup()
    refresh_pos_item(db, SCOPE_B1, latte.id)
    for scope, menu_item_id in ((SCOPE_B1, "gone"), (SCOPE_B1, None), (SCOPE_B2, "gone")):
        db.add(POSItem(**scope.as_fields(), menu_item_id=menu_item_id, name="Orphan"))
    db.commit()

    removed = cleanup_orphaned_pos_items(db, SCOPE_B1)

    assert len(removed) == 2
    assert [pos_item.menu_item_id for pos_item in _pos_items(db)] == [latte.id]
    assert len(_pos_items(db, SCOPE_B2)) == 1
    assert cleanup_orphaned_pos_items(db, SCOPE_B1) == []


def test_find_pos_item_by_either_id():
    db, _, _, latte = _setup()
    pos_item = refresh_pos_item(db, SCOPE_B1, latte.id)

    assert find_pos_item(db, SCOPE_B1, pos_item_id=pos_item.id).menu_item_id == latte.id
    assert find_pos_item(db, SCOPE_B1, menu_item_id=latte.id).id == pos_item.id
    assert find_pos_item(db, SCOPE_B2, menu_item_id=latte.id) is None
    assert find_pos_item(db, SCOPE_B1) is None


def test_unreadable_recipe_copy_yields_no_entries():
    assert pos_recipe(None) == []
    assert pos_recipe(POSItem(id="p1", name="Broken", recipe_json="{not json")) == []
    assert pos_recipe(POSItem(id="p2", name="Odd", recipe_json=json.dumps({"milk": 1}))) == []
