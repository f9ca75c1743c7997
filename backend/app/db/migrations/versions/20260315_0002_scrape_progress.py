"""Add scrape progress columns to saved searches

Revision ID: 0002_scrape_progress
Revises: 0001_initial
Create Date: 2026-03-15 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_scrape_progress"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "saved_searches",
        sa.Column("scrape_status", sa.Text(), nullable=False, server_default="idle"),
    )
    op.add_column(
        "saved_searches",
        sa.Column("scrape_step", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column(
        "saved_searches",
        sa.Column("scrape_total_steps", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("saved_searches", sa.Column("scrape_current_site", sa.Text(), nullable=True))
    op.add_column("saved_searches", sa.Column("scrape_started_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("saved_searches", sa.Column("last_scraped_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("idx_saved_searches_active", "saved_searches", ["is_active"])


def downgrade() -> None:
    op.drop_index("idx_saved_searches_active", table_name="saved_searches")
    op.drop_column("saved_searches", "last_scraped_at")
    op.drop_column("saved_searches", "scrape_started_at")
    op.drop_column("saved_searches", "scrape_current_site")
    op.drop_column("saved_searches", "scrape_total_steps")
    op.drop_column("saved_searches", "scrape_step")
    op.drop_column("saved_searches", "scrape_status")
