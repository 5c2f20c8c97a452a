"""create media asset, post and draft post tables

Revision ID: 20261019_create_media_tables
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_create_media_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "media_assets",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="image"),
        sa.Column("mime_type", sa.String(length=255), nullable=False, server_default="application/octet-stream"),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("storage_key", name="uq_media_assets_storage_key"),
    )
    op.create_index("ix_media_assets_owner_id", "media_assets", ["owner_id"])

    for table, body_column in (("posts", "caption"), ("draft_posts", "content")):
        op.create_table(
            table,
            sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("user_id", sa.String(length=128), nullable=False),
            sa.Column(body_column, sa.Text(), nullable=False, server_default=""),
            sa.Column(
                "media_asset_id",
                sa.String(length=64),
                sa.ForeignKey("media_assets.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index(f"ix_{table}_user_id", table, ["user_id"])
        op.create_index(f"ix_{table}_media_asset_id", table, ["media_asset_id"])


def downgrade() -> None:
    for table in ("draft_posts", "posts"):
        op.drop_index(f"ix_{table}_media_asset_id", table_name=table)
        op.drop_index(f"ix_{table}_user_id", table_name=table)
        op.drop_table(table)

    op.drop_index("ix_media_assets_owner_id", table_name="media_assets")
    op.drop_table("media_assets")
