# ruff: noqa: I001
"""AFAS data cache and category mapping tables.

Revision ID: 0001_afas_core
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_afas_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "afas_data_cache",
        sa.Column("cache_key", sa.Text(), primary_key=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column(
            "last_refreshed",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_afas_data_cache_expires_at", "afas_data_cache", ["expires_at"])

    op.create_table(
        "afas_category_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("category_3", sa.Text(), nullable=False),
        sa.Column("type_rekening", sa.Text(), nullable=True),
        sa.Column("mapped_category", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("user_id", "category_3", name="uniq_afas_mapping_user_category"),
        sa.CheckConstraint("source IN ('ai', 'manual')", name="ck_afas_mapping_source"),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_afas_mapping_confidence",
        ),
    )
    op.create_index("idx_afas_mappings_user", "afas_category_mappings", ["user_id"])


def downgrade() -> None:
    op.drop_index("idx_afas_mappings_user", table_name="afas_category_mappings")
    op.drop_table("afas_category_mappings")
    op.drop_index("idx_afas_data_cache_expires_at", table_name="afas_data_cache")
    op.drop_table("afas_data_cache")
