"""Add payment_references for provider references replaced by a retry

Revision ID: 8b42e6d1c5a3
Revises: 3f1c2a9d7b10
Create Date: 2026-10-18 14:40:07.552019

"""

import sqlalchemy as sa

from alembic import op  # type: ignore[attr-defined]

# revision identifiers, used by Alembic.
revision = "8b42e6d1c5a3"
down_revision = "3f1c2a9d7b10"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "payment_references",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("payment_id", sa.String(36), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("method", sa.String(16), nullable=False),
        sa.Column("provider_ref", sa.String(128), nullable=False),
        sa.Column(
            "retired_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("method", "provider_ref", name="uq_payment_references_method_ref"),
    )
    op.create_index("ix_payment_references_payment_id", "payment_references", ["payment_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_payment_references_payment_id", table_name="payment_references")
    op.drop_table("payment_references")
