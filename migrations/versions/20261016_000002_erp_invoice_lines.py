"""Add ERP invoice lines for sales aggregation.

Revision ID: 20261016_000002
Revises: 20261016_000001
Create Date: 2026-10-16 00:00:02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_000002"
down_revision: Union[str, Sequence[str], None] = "20261016_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    if sa.inspect(op.get_bind()).has_table("erp_invoice_lines"):
        return
    op.create_table(
        "erp_invoice_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("invoice_id", sa.Text(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("item_external_id", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("invoice_date", sa.Text(), nullable=True),
        sa.UniqueConstraint("invoice_id", "line_no", name="uq_erp_invoice_lines_invoice_line"),
    )
    op.create_index("idx_invoice_lines_item", "erp_invoice_lines", ["item_external_id"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_invoice_lines_item", table_name="erp_invoice_lines")
    op.drop_table("erp_invoice_lines")
