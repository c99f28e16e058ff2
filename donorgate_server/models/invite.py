# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite model - one provisioning attempt against the media server."""

from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from donorgate_server.models.base import Base, UTCDateTime
from donorgate_server.models.timestamp import TimestampMixin

INVITE_STATUSES = ("pending", "accepted", "revoked")


class Invite(TimestampMixin, Base):
    """At most one invite per donor has revoked_at NULL."""

    __tablename__ = "invites"
    __table_args__ = (
        Index(
            "uq_invites_active_donor",
            "donor_id",
            unique=True,
            sqlite_where=text("revoked_at IS NULL"),
            postgresql_where=text("revoked_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    donor_id: Mapped[int] = mapped_column(ForeignKey("donors.id", ondelete="CASCADE"), nullable=False, index=True)
    media_invite_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    media_invite_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    libraries: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    email_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    media_revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    media_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    media_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
