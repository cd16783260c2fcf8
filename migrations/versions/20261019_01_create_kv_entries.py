"""create kv_entries

Revision ID: 20261019_01
Revises: None
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "kv_entries",
        sa.Column("key", sa.LargeBinary(), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("versionstamp", sa.String(length=32), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("kv_entries")
