from __future__ import annotations

import enum
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from sharegate.db.base import Base, UTCDateTime


class GrantStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    SOFT_DELETED = "soft_deleted"
    PURGED = "purged"


class TerminationReason(str, enum.Enum):
    TIME_EXPIRED = "time_expired"
    DOWNLOAD_LIMIT_REACHED = "download_limit_reached"
    MANUAL_DELETION = "manual_deletion"


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in GrantStatus)


class Grant(Base):
    __tablename__ = "grants"
    __table_args__ = (
        CheckConstraint("download_count >= 0", name="ck_grants_count_non_negative"),
        CheckConstraint(
            "download_cap IS NULL OR download_count <= download_cap", name="ck_grants_count_within_cap"
        ),
        CheckConstraint("expires_at IS NULL OR expires_at > created_at", name="ck_grants_expiry_after_creation"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_grants_status"),
        Index("ix_grants_owner_created", "owner_id", "created_at"),
        Index("ix_grants_expires_at", "expires_at"),
        Index("ix_grants_status", "status"),
    )

    token: Mapped[str] = mapped_column(sa.String(64), primary_key=True)

    # external identity; null for anonymous uploads
    owner_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)

    blob_key: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    display_name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    original_name: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    mime: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    download_cap: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    download_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))

    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=GrantStatus.ACTIVE.value)
    terminated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
