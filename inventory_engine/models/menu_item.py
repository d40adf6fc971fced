from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from inventory_engine.core.database import Base
from inventory_engine.models.scoped import ScopedColumns, new_document_id


class MenuItem(ScopedColumns, Base):
    __tablename__ = "menu_items"
    __table_args__ = (Index("ix_menu_items_scope_category", "tenant_id", "location_id", "category"),)

    id = Column(String(64), primary_key=True, default=new_document_id)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="")
    price = Column(Numeric(12, 2), nullable=False, default=0)
    # Derived from the recipe; only the cost synchronizer writes these.
    cost = Column(Numeric(12, 2), nullable=False, default=0)
    margin = Column(Numeric(7, 4), nullable=True)
    cost_stale = Column(Boolean, nullable=False, default=False)
    cost_synced_at = Column(DateTime(timezone=True), nullable=True)
    # Bumped on every recipe edit and on deletion; the recipe index compares the scope total.
    recipe_version = Column(Integer, nullable=False, default=1)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    recipe_lines = relationship(
        "RecipeLine",
        back_populates="menu_item",
        order_by="RecipeLine.position",
        cascade="all, delete-orphan",
    )


class RecipeLine(ScopedColumns, Base):
    __tablename__ = "recipe_lines"
    __table_args__ = (Index("ix_recipe_lines_scope_ingredient", "tenant_id", "location_id", "ingredient_id"),)

    id = Column(Integer, primary_key=True)
    menu_item_id = Column(String(64), ForeignKey("menu_items.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    ingredient_id = Column(String(64), nullable=True)
    ingredient_name = Column(String, nullable=False)
    quantity = Column(Numeric(14, 4), nullable=False)
    unit = Column(String(32), nullable=False)

    menu_item = relationship("MenuItem", back_populates="recipe_lines")
