from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_recipe_versions"
down_revision = "0001_create_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("menu_items") as batch:
        batch.add_column(sa.Column("recipe_version", sa.Integer(), nullable=False, server_default="1"))

    with op.batch_alter_table("inventory_items") as batch:
        batch.add_column(sa.Column("source_ingredient_id", sa.String(64), nullable=True))

    op.create_index(
        "ix_inventory_items_scope_source",
        "inventory_items",
        ["tenant_id", "location_id", "source_ingredient_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_inventory_items_scope_source", table_name="inventory_items")

    with op.batch_alter_table("inventory_items") as batch:
        batch.drop_column("source_ingredient_id")

    with op.batch_alter_table("menu_items") as batch:
        batch.drop_column("recipe_version")
