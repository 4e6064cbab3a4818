"""Add payment retry tracking to invoices.

Adds ``retry_count`` (NOT NULL, default 0) and a nullable ``last_retry_at``
timestamp to ``invoices`` for the unpaid renewal retry job.

Revision ID: 002
Revises: 001
Create Date: 2024-07-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "invoices",
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column(
        "invoices",
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("invoices", "last_retry_at")
    op.drop_column("invoices", "retry_count")
