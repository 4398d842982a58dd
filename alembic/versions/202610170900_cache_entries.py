"""cache entries

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "cache_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "profile", sa.String(length=80), nullable=False, server_default="default"
        ),
        sa.Column("key", sa.String(length=120), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False, server_default="null"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("profile", "key", name="uq_cache_entry_profile_key"),
    )
    op.create_index("ix_cache_entries_profile", "cache_entries", ["profile"])


def downgrade():
    op.drop_index("ix_cache_entries_profile", table_name="cache_entries")
    op.drop_table("cache_entries")
