# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Share link model - tokenised one-shot account creation URL."""

from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from donorgate_server.models.base import Base, UTCDateTime
from donorgate_server.models.timestamp import TimestampMixin


class ShareLink(TimestampMixin, Base):
    """Owned by exactly one of donor or prospect."""

    __tablename__ = "share_links"
    __table_args__ = (
        CheckConstraint(
            "(donor_id IS NOT NULL AND prospect_id IS NULL) OR (donor_id IS NULL AND prospect_id IS NOT NULL)",
            name="share_links_single_owner",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    session_token: Mapped[str] = mapped_column(String(64), nullable=False)
    donor_id: Mapped[int | None] = mapped_column(
        ForeignKey("donors.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    prospect_id: Mapped[int | None] = mapped_column(
        ForeignKey("prospects.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
