from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class RecipeLineIn(BaseModel):
    ingredient_id: Optional[str] = None
    ingredient_name: str = ""
    quantity: Decimal = Field(..., gt=0)
    unit: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _needs_reference(self):
        if not self.ingredient_id and not self.ingredient_name.strip():
            raise ValueError("ingredient_id or ingredient_name is required")
        return self


class MenuItemCreate(BaseModel):
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0)
    category: str = ""
    recipe: List[RecipeLineIn] = Field(default_factory=list)


class MenuItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[Decimal] = Field(None, ge=0)
    category: Optional[str] = None


class RecipeUpdate(BaseModel):
    recipe: List[RecipeLineIn]


class OrderLineIn(BaseModel):
    menu_item_id: Optional[str] = None
    pos_item_id: Optional[str] = None
    name: str = ""
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(Decimal("0"), ge=0)

    @model_validator(mode="after")
    def _needs_item(self):
        if not self.menu_item_id and not self.pos_item_id:
            raise ValueError("menu_item_id or pos_item_id is required")
        return self


class OrderCreate(BaseModel):
    idempotency_key: str = Field(..., min_length=1, max_length=128)
    lines: List[OrderLineIn] = Field(..., min_length=1)


class InventoryItemCreate(BaseModel):
    id: Optional[str] = Field(None, min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    unit: str = Field(..., min_length=1)
    quantity: Decimal = Field(Decimal("0"), ge=0)
    min_threshold: Decimal = Field(Decimal("0"), ge=0)
    cost_per_unit: Decimal = Field(Decimal("0"), ge=0)


class StockReceipt(BaseModel):
    quantity: Decimal = Field(..., gt=0)
    unit_cost: Optional[Decimal] = Field(None, ge=0)
    idempotency_key: Optional[str] = Field(None, max_length=128)


class StockAdjustment(BaseModel):
    quantity_delta: Decimal
    reason: Literal["waste", "adjustment"] = "adjustment"
    note: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)


class CostUpdate(BaseModel):
    cost_per_unit: Decimal = Field(..., ge=0)


class BranchCreate(BaseModel):
    branch_code: str = Field(..., min_length=1, max_length=80)
    name: Optional[str] = None


class OnlineToggle(BaseModel):
    online: bool
