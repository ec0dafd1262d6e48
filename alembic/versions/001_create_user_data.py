"""Create user_data key-value table

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_data",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("data_type", sa.String(50), nullable=False),
        sa.Column("data_key", sa.String(255), nullable=False),
        sa.Column("data_value", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "data_type", "data_key", name="uq_user_data_tenant_type_key"),
    )
    op.create_index("ix_user_data_tenant_id", "user_data", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_user_data_tenant_id", table_name="user_data")
    op.drop_table("user_data")
