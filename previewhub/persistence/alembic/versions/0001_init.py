"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "preview_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("container_id", sa.String(), nullable=True),
        sa.Column("last_container_id", sa.String(), nullable=True),
        sa.Column("container_name", sa.String(), nullable=True),
        sa.Column("container_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("resource_tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("device_type", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("resource_limits", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_preview_sessions_project_id", "preview_sessions", ["project_id"])
    op.create_index("ix_preview_sessions_status_expires_at", "preview_sessions", ["status", "expires_at"])
    op.create_index("ix_preview_sessions_user_status", "preview_sessions", ["user_id", "status"])

    op.create_table(
        "project_files",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("file_type", sa.String(), nullable=False, server_default="text"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("project_id", "path", name="pk_project_files"),
    )

    op.create_table(
        "file_revisions",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("project_id", "path", "version", name="pk_file_revisions"),
    )


def downgrade() -> None:
    op.drop_table("file_revisions")
    op.drop_table("project_files")
    op.drop_index("ix_preview_sessions_user_status", table_name="preview_sessions")
    op.drop_index("ix_preview_sessions_status_expires_at", table_name="preview_sessions")
    op.drop_index("ix_preview_sessions_project_id", table_name="preview_sessions")
    op.drop_table("preview_sessions")
