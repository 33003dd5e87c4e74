"""Create the projects table with sync bookkeeping columns.

Revision ID: 001_projects
Revises:
Create Date: 2026-03-02

One row per client project. Alongside the business columns mirrored to
Notion, each row carries its own sync state:
- remote_document_id: linked Notion page (unique, set on first sync)
- sync_status / last_synced_at / last_sync_error: state machine bookkeeping
- last_synced_payload: properties both sides agreed on at the last sync
- local_version: bumped on every local write, used for compare-and-set
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_projects"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("status", sa.String(40), server_default=sa.text("'INTAKE'"), nullable=False),
        sa.Column("tier", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("project_address", sa.Text(), nullable=True),
        sa.Column(
            "payment_status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("budget_cents", sa.Integer(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        # ── Sync bookkeeping ───────────────────────────────────────────
        sa.Column("remote_document_id", sa.String(64), nullable=True),
        sa.Column(
            "sync_status",
            sa.String(20),
            server_default=sa.text("'NOT_SYNCED'"),
            nullable=False,
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_synced_payload", JSONB(), nullable=True),
        sa.Column("local_version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_index("ix_projects_sync_status", "projects", ["sync_status"])
    op.create_index(
        "ix_projects_remote_document_id",
        "projects",
        ["remote_document_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_projects_remote_document_id", table_name="projects")
    op.drop_index("ix_projects_sync_status", table_name="projects")
    op.drop_table("projects")
