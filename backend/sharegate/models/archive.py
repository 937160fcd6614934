from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from sharegate.db.base import Base, UTCDateTime


class ArchivedGrant(Base):
    """Terminal snapshot of a grant, written before any of its stores are cleared."""

    __tablename__ = "grant_archive"
    __table_args__ = (UniqueConstraint("original_token", name="ux_grant_archive_token"),)

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid(), primary_key=True, default=uuid.uuid4)
    original_token: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    display_name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    blob_key: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    mime: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    terminated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    total_downloads: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    reason: Mapped[str] = mapped_column(sa.String(32), nullable=False)
