"""Forward (menu item -> recipe) and reverse (ingredient -> menu items) index.

The two maps are only ever changed together under one lock, so a reader can
never observe a recipe whose ingredients are missing from the reverse map or
the other way round. Scopes are loaded lazily from the menu_items table and
patched incrementally when menu authoring edits a recipe. Every read first
compares the scope's summed recipe versions with the store and reloads when
another client has written a recipe since.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from threading import RLock
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from inventory_engine.core.exceptions import RecipeNotFoundError
from inventory_engine.models.menu_item import MenuItem, RecipeLine
from inventory_engine.services.scope_resolver import Scope, scoped_query

logger = logging.getLogger(__name__)


def normalize_ingredient_name(name: str | None) -> str:
    return " ".join((name or "").split()).lower()


def ingredient_key(ingredient_id: str | None, ingredient_name: str | None) -> str:
    if ingredient_id:
        return ingredient_id
    return f"name:{normalize_ingredient_name(ingredient_name)}"


@dataclass(frozen=True)
class RecipeEntry:
    ingredient_id: str | None
    ingredient_name: str
    quantity: Decimal
    unit: str

    @property
    def key(self) -> str:
        return ingredient_key(self.ingredient_id, self.ingredient_name)

    @classmethod
    def from_line(cls, line: RecipeLine) -> "RecipeEntry":
        return cls(
            ingredient_id=line.ingredient_id or None,
            ingredient_name=line.ingredient_name,
            quantity=Decimal(line.quantity),
            unit=line.unit,
        )

    def to_dict(self) -> dict:
        return {
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient_name,
            "quantity": str(self.quantity),
            "unit": self.unit,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecipeEntry":
        return cls(
            ingredient_id=data.get("ingredient_id") or None,
            ingredient_name=str(data.get("ingredient_name") or ""),
            quantity=Decimal(str(data.get("quantity") or 0)),
            unit=str(data.get("unit") or ""),
        )


class RecipeIndex:
    def __init__(self) -> None:
        self._forward: dict[Scope, dict[str, tuple[RecipeEntry, ...]]] = {}
        self._reverse: dict[Scope, dict[str, set[str]]] = {}
        self._item_versions: dict[Scope, dict[str, int]] = {}
        self._signatures: dict[Scope, int] = {}
        self._lock = RLock()

    def is_loaded(self, scope: Scope) -> bool:
        with self._lock:
            return scope in self._forward

    @staticmethod
    def store_signature(db: Session, scope: Scope) -> int:
        """Sum of recipe versions in ``scope``; grows with every recipe write from any client."""
        total = (
            scoped_query(db, MenuItem, scope)
            .with_entities(func.coalesce(func.sum(MenuItem.recipe_version), 0))
            .scalar()
        )
        return int(total or 0)

    def load_scope(self, db: Session, scope: Scope, signature: int | None = None) -> int:
        """Rebuild both maps for ``scope`` from the store."""
        if signature is None:
            signature = self.store_signature(db, scope)
        items = (
            scoped_query(db, MenuItem, scope)
            .filter(MenuItem.active.is_(True))
            .options(selectinload(MenuItem.recipe_lines))
            .populate_existing()
            .all()
        )
        forward: dict[str, tuple[RecipeEntry, ...]] = {}
        reverse: dict[str, set[str]] = {}
        versions: dict[str, int] = {}
        for item in items:
            entries = tuple(RecipeEntry.from_line(line) for line in item.recipe_lines)
            forward[item.id] = entries
            versions[item.id] = item.recipe_version or 0
            for entry in entries:
                reverse.setdefault(entry.key, set()).add(item.id)

        with self._lock:
            self._forward[scope] = forward
            self._reverse[scope] = reverse
            self._item_versions[scope] = versions
            self._signatures[scope] = signature
        logger.info("[RECIPE_INDEX] loaded %s menu items for %s/%s", len(forward), scope.tenant_id, scope.location_id)
        return len(forward)

    def ensure_current(self, db: Session, scope: Scope) -> None:
        """Load ``scope``, or reload it when another client changed a recipe since."""
        signature = self.store_signature(db, scope)
        with self._lock:
            known = self._signatures.get(scope) if scope in self._forward else None
        if known == signature:
            return
        if known is not None:
            logger.info(
                "[RECIPE_INDEX] %s/%s changed in the store (%s -> %s); reloading",
                scope.tenant_id,
                scope.location_id,
                known,
                signature,
            )
        self.load_scope(db, scope, signature)

    def get_recipe(self, db: Session, menu_item_id: str | None, scope: Scope) -> list[RecipeEntry]:
        if not menu_item_id:
            raise RecipeNotFoundError(menu_item_id)
        self.ensure_current(db, scope)
        with self._lock:
            entries = self._forward[scope].get(menu_item_id)
        if entries is None:
            raise RecipeNotFoundError(menu_item_id)
        return list(entries)

    def items_using_ingredient(self, db: Session, ingredient_id: str, scope: Scope) -> set[str]:
        self.ensure_current(db, scope)
        with self._lock:
            return set(self._reverse[scope].get(ingredient_id, set()))

    def items_using_name(self, db: Session, ingredient_name: str, scope: Scope) -> set[str]:
        """Menu items whose recipe lines reference the ingredient by name only."""
        self.ensure_current(db, scope)
        with self._lock:
            return set(self._reverse[scope].get(ingredient_key(None, ingredient_name), set()))

    def apply_recipe(
        self,
        scope: Scope,
        menu_item_id: str,
        entries: Iterable[RecipeEntry],
        version: int | None = None,
    ) -> None:
        """Patch one item after a committed write; ``version`` is the recipe version that write stored."""
        entries = tuple(entries)
        with self._lock:
            forward = self._forward.get(scope)
            if forward is None:
                # Not loaded yet; the first read will load the current state from the store.
                return
            reverse = self._reverse[scope]
            self._unlink(reverse, menu_item_id, forward.get(menu_item_id, ()))
            forward[menu_item_id] = entries
            for entry in entries:
                reverse.setdefault(entry.key, set()).add(menu_item_id)
            self._track_version(scope, menu_item_id, version)

    def remove_item(self, scope: Scope, menu_item_id: str, version: int | None = None) -> None:
        with self._lock:
            forward = self._forward.get(scope)
            if forward is None:
                return
            self._unlink(self._reverse[scope], menu_item_id, forward.pop(menu_item_id, ()))
            self._track_version(scope, menu_item_id, version)

    def _track_version(self, scope: Scope, menu_item_id: str, version: int | None) -> None:
        # Versions only grow, so the signature matches the store only while no other client wrote.
        if version is None:
            return
        versions = self._item_versions[scope]
        self._signatures[scope] += version - versions.get(menu_item_id, 0)
        versions[menu_item_id] = version

    def invalidate(self, scope: Scope | None = None) -> None:
        with self._lock:
            if scope is None:
                self._forward.clear()
                self._reverse.clear()
                self._item_versions.clear()
                self._signatures.clear()
                return
            self._forward.pop(scope, None)
            self._reverse.pop(scope, None)
            self._item_versions.pop(scope, None)
            self._signatures.pop(scope, None)

    def check_consistency(self, scope: Scope) -> list[str]:
        """Describe every disagreement between the forward and reverse maps."""
        problems: list[str] = []
        with self._lock:
            forward = self._forward.get(scope, {})
            reverse = self._reverse.get(scope, {})
            for menu_item_id, entries in forward.items():
                for entry in entries:
                    if menu_item_id not in reverse.get(entry.key, set()):
                        problems.append(f"{entry.key} -> {menu_item_id} missing from reverse index")
            for key, menu_item_ids in reverse.items():
                if not menu_item_ids:
                    problems.append(f"{key} has an empty reverse entry")
                for menu_item_id in menu_item_ids:
                    keys = {entry.key for entry in forward.get(menu_item_id, ())}
                    if key not in keys:
                        problems.append(f"{key} -> {menu_item_id} has no forward recipe line")
        return problems

    @staticmethod
    def _unlink(reverse: dict[str, set[str]], menu_item_id: str, entries: Iterable[RecipeEntry]) -> None:
        for entry in entries:
            dependents = reverse.get(entry.key)
            if dependents is None:
                continue
            dependents.discard(menu_item_id)
            if not dependents:
                del reverse[entry.key]


recipe_index = RecipeIndex()
