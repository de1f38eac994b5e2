"""Store the characteristics embedding next to the content embedding."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "catalog_products",
        sa.Column("characteristics_embedding_blob", sa.LargeBinary(), nullable=True),
    )
    op.add_column(
        "catalog_products",
        sa.Column("characteristics_embedding_dim", sa.Integer(), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("catalog_products", "characteristics_embedding_dim")
    op.drop_column("catalog_products", "characteristics_embedding_blob")
