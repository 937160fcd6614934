"""Create grants and grant_archive tables

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "a1c4e7f20b31"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "grants",
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("blob_key", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("original_name", sa.Text(), nullable=True),
        sa.Column("mime", sa.String(length=255), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("download_cap", sa.Integer(), nullable=True),
        sa.Column("download_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("terminated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint("token"),
        sa.CheckConstraint("download_count >= 0", name="ck_grants_count_non_negative"),
        sa.CheckConstraint(
            "download_cap IS NULL OR download_count <= download_cap", name="ck_grants_count_within_cap"
        ),
        sa.CheckConstraint("expires_at IS NULL OR expires_at > created_at", name="ck_grants_expiry_after_creation"),
        sa.CheckConstraint(
            "status IN ('active', 'expired', 'exhausted', 'soft_deleted', 'purged')", name="ck_grants_status"
        ),
    )
    op.create_index("ix_grants_owner_created", "grants", ["owner_id", "created_at"])
    op.create_index("ix_grants_expires_at", "grants", ["expires_at"])
    op.create_index("ix_grants_status", "grants", ["status"])

    op.create_table(
        "grant_archive",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("original_token", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("blob_key", sa.Text(), nullable=False),
        sa.Column("mime", sa.String(length=255), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("terminated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_downloads", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("original_token", name="ux_grant_archive_token"),
    )


def downgrade() -> None:
    op.drop_table("grant_archive")
    op.drop_index("ix_grants_status", table_name="grants")
    op.drop_index("ix_grants_expires_at", table_name="grants")
    op.drop_index("ix_grants_owner_created", table_name="grants")
    op.drop_table("grants")
