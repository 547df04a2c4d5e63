"""create content store tables

Revision ID: c0a1b2c3d4e5
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "c0a1b2c3d4e5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("content_type", sa.String(length=128), nullable=False),
        sa.Column("document_id", sa.String(length=64), nullable=False),
        sa.Column("locale", sa.String(length=16), nullable=False, server_default=""),
        sa.Column("status", sa.Enum("draft", "published", name="entry_status"), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "content_type", "document_id", "locale", "status", name="ux_entries_doc_locale_status"
        ),
    )
    op.create_index("ix_entries_content_type", "entries", ["content_type"])
    op.create_index("ix_entries_document_id", "entries", ["document_id"])
    op.create_index("ix_entries_type_status_locale", "entries", ["content_type", "status", "locale"])

    op.create_table(
        "media_files",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("hash", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("ext", sa.String(length=32), nullable=True),
        sa.Column("mime", sa.String(length=128), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("size", sa.Float(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("alternative_text", sa.String(length=1024), nullable=True),
        sa.Column("caption", sa.String(length=1024), nullable=True),
        sa.Column("provider", sa.String(length=64), nullable=False, server_default="local"),
        sa.Column("formats", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_media_files_hash", "media_files", ["hash"])

    op.create_table(
        "core_store",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(length=255), nullable=False, unique=True),
        sa.Column("value", sa.JSON(), nullable=True),
    )

    op.create_table(
        "locales",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(length=16), nullable=False, unique=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_table("locales")
    op.drop_table("core_store")
    op.drop_index("ix_media_files_hash", table_name="media_files")
    op.drop_table("media_files")
    op.drop_index("ix_entries_type_status_locale", table_name="entries")
    op.drop_index("ix_entries_document_id", table_name="entries")
    op.drop_index("ix_entries_content_type", table_name="entries")
    op.drop_table("entries")
    sa.Enum(name="entry_status").drop(op.get_bind(), checkfirst=True)
