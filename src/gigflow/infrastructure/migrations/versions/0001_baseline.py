"""Baseline schema: tasks, escrow, proofs, jobs, transition logs, ledgers.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

from gigflow.infrastructure.database.orm_models import Base

revision: str = "0001_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Later revisions are autogenerated against this baseline
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
