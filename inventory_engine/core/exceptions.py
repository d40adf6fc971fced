from __future__ import annotations

from decimal import Decimal


class InventoryEngineError(Exception):
    pass


class InvalidScopeError(InventoryEngineError):
    """Malformed or ambiguous tenant/branch identifier."""


class CrossScopeViolation(InventoryEngineError):
    """A scoped document was read or written outside its (tenant, location) partition."""


class IngredientNotFoundError(InventoryEngineError):
    def __init__(self, ingredient_id: str | None, ingredient_name: str | None) -> None:
        self.ingredient_id = ingredient_id
        self.ingredient_name = ingredient_name
        super().__init__(f"Ingredient not found id={ingredient_id!r} name={ingredient_name!r}")


class RecipeNotFoundError(InventoryEngineError):
    def __init__(self, menu_item_id: str | None) -> None:
        self.menu_item_id = menu_item_id
        super().__init__(f"No recipe indexed for menu item {menu_item_id!r}")


class InsufficientStockError(InventoryEngineError):
    def __init__(self, item_id: str, name: str, available: Decimal, needed: Decimal) -> None:
        self.item_id = item_id
        self.name = name
        self.available = available
        self.needed = needed
        super().__init__(f"Insufficient stock for '{name}': need {needed}, have {available}")


class ConcurrencyConflict(InventoryEngineError):
    """An atomic write lost against a concurrent writer. Transient."""


class StoreUnavailableError(InventoryEngineError):
    """The document store could not be reached or timed out. Transient."""


class SyncExhaustedError(InventoryEngineError):
    def __init__(self, entry_id: str, attempts: int, last_error: str | None = None) -> None:
        self.entry_id = entry_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Sync entry {entry_id} failed after {attempts} attempts: {last_error}")
