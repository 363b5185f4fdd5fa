"""access ledger auto_retry flag

Revision ID: 0002_access_auto_retry
Revises: 0001_init
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_access_auto_retry"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "company_project_access",
        sa.Column("auto_retry", sa.Boolean(), server_default=sa.text("true"), nullable=False),
    )
    op.drop_index("ix_cpa_status_retry", table_name="company_project_access")
    op.create_index(
        "ix_cpa_status_retry", "company_project_access", ["status", "auto_retry", "retry_count"]
    )


def downgrade() -> None:
    op.drop_index("ix_cpa_status_retry", table_name="company_project_access")
    op.create_index("ix_cpa_status_retry", "company_project_access", ["status", "retry_count"])
    op.drop_column("company_project_access", "auto_retry")
