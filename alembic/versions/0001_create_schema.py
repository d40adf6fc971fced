from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_create_schema"
down_revision = None
branch_labels = None
depends_on = None

_SCOPED_TABLES = (
    "branches",
    "inventory_items",
    "stock_movements",
    "menu_items",
    "recipe_lines",
    "pos_items",
    "orders",
    "order_lines",
)


def _scope_columns() -> list[sa.Column]:
    return [
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("location_id", sa.String(80), nullable=False),
    ]


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        for name in names
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps("created_at"),
    )
    op.create_table(
        "branches",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_scope_columns(),
        sa.Column("branch_code", sa.String(80), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps("created_at"),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "location_id", name="uq_branches_tenant_location"),
    )
    op.create_table(
        "inventory_items",
        sa.Column("id", sa.String(64), primary_key=True),
        *_scope_columns(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("min_threshold", sa.Numeric(14, 4), nullable=False),
        sa.Column("cost_per_unit", sa.Numeric(12, 4), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("review_reason", sa.Text(), nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_inventory_items_scope_name", "inventory_items", ["tenant_id", "location_id", "name"])

    op.create_table(
        "menu_items",
        sa.Column("id", sa.String(64), primary_key=True),
        *_scope_columns(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False, server_default=""),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("margin", sa.Numeric(7, 4), nullable=True),
        sa.Column("cost_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cost_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_menu_items_scope_category", "menu_items", ["tenant_id", "location_id", "category"])

    op.create_table(
        "recipe_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_scope_columns(),
        sa.Column("menu_item_id", sa.String(64), sa.ForeignKey("menu_items.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("ingredient_id", sa.String(64), nullable=True),
        sa.Column("ingredient_name", sa.String(), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
    )
    op.create_index("ix_recipe_lines_menu_item_id", "recipe_lines", ["menu_item_id"])
    op.create_index(
        "ix_recipe_lines_scope_ingredient",
        "recipe_lines",
        ["tenant_id", "location_id", "ingredient_id"],
    )

    op.create_table(
        "pos_items",
        sa.Column("id", sa.String(64), primary_key=True),
        *_scope_columns(),
        sa.Column("menu_item_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False, server_default=""),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("recipe_json", sa.Text(), nullable=False),
        sa.Column("is_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps("projected_at"),
        sa.UniqueConstraint("tenant_id", "location_id", "menu_item_id", name="uq_pos_items_menu_item"),
    )
    op.create_index("ix_pos_items_menu_item_id", "pos_items", ["menu_item_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(64), primary_key=True),
        *_scope_columns(),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("stock_applied_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps("created_at"),
        sa.UniqueConstraint("tenant_id", "location_id", "idempotency_key", name="uq_orders_idempotency_key"),
    )
    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_scope_columns(),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("menu_item_id", sa.String(64), nullable=True),
        sa.Column("pos_item_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("line_total", sa.Numeric(12, 2), nullable=False),
    )
    op.create_index("ix_order_lines_order_id", "order_lines", ["order_id"])

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.String(64), primary_key=True),
        *_scope_columns(),
        sa.Column("inventory_item_id", sa.String(64), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("quantity_delta", sa.Numeric(14, 4), nullable=False),
        sa.Column("previous_quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("new_quantity", sa.Numeric(14, 4), nullable=False),
        sa.Column("reason", sa.String(16), nullable=False),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps("created_at"),
        sa.UniqueConstraint(
            "tenant_id",
            "location_id",
            "idempotency_key",
            "inventory_item_id",
            name="uq_stock_movements_idempotency",
        ),
    )
    op.create_index("ix_stock_movements_inventory_item_id", "stock_movements", ["inventory_item_id"])
    op.create_index("ix_stock_movements_order_id", "stock_movements", ["order_id"])
    op.create_index("ix_stock_movements_idempotency_key", "stock_movements", ["idempotency_key"])

    for table in _SCOPED_TABLES:
        op.create_index(f"ix_{table}_tenant_id", table, ["tenant_id"])
        op.create_index(f"ix_{table}_location_id", table, ["location_id"])


def downgrade() -> None:
    for table in (
        "stock_movements",
        "order_lines",
        "orders",
        "pos_items",
        "recipe_lines",
        "menu_items",
        "inventory_items",
        "branches",
        "tenants",
    ):
        op.drop_table(table)
