"""Create documents and rate_limit_events tables

Revision ID: 0f3c9a1e7b42
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0f3c9a1e7b42"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the path-addressed document table and the rate-limit log."""
    op.create_table(
        "documents",
        sa.Column("path", sa.String(512), primary_key=True),
        sa.Column("parent", sa.String(512), nullable=False),
        sa.Column(
            "value",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=True,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_documents_parent", "documents", ["parent"])

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(200), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_rate_limit_key_ts", "rate_limit_events", ["key", "timestamp"])
    op.create_index("ix_rate_limit_ts", "rate_limit_events", ["timestamp"])


def downgrade() -> None:
    op.drop_index("ix_rate_limit_ts", table_name="rate_limit_events")
    op.drop_index("ix_rate_limit_key_ts", table_name="rate_limit_events")
    op.drop_table("rate_limit_events")

    op.drop_index("ix_documents_parent", table_name="documents")
    op.drop_table("documents")
