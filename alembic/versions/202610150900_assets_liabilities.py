"""manual assets and liabilities

Revision ID: 202610150900
Revises: 202610010900
Create Date: 2026-10-15 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610150900"
down_revision = "202610010900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "assets_liabilities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "kind", sa.Enum("asset", "liability", name="holdingkind"), nullable=False
        ),
        sa.Column("value_cents", sa.Integer(), nullable=False),
        sa.Column("is_manual", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("value_cents >= 0", name="ck_holding_value_positive"),
    )
    op.create_index(
        "ix_assets_liabilities_user", "assets_liabilities", ["user_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_assets_liabilities_user", table_name="assets_liabilities")
    op.drop_table("assets_liabilities")
