# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Donor model - the subscriber identity whose entitlement is tracked."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from donorgate_server.models.base import Base, UTCDateTime
from donorgate_server.models.timestamp import UpdatedMixin

DONOR_STATUSES = (
    "prospect",
    "pending",
    "trial",
    "active",
    "cancelled",
    "suspended",
    "expired",
    "trial_expired",
)

# Statuses whose scheduled access expiration the sweeper acts on
TERMINAL_STATUSES = ("cancelled", "expired", "suspended", "trial", "trial_expired")


class Donor(UpdatedMixin, Base):
    """Donor account. Email is stored lowercase; subscription id is unique when present."""

    __tablename__ = "donors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    subscription_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="prospect", index=True)
    last_payment_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    access_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    media_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    media_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    subscription_refreshed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Event time of the last applied lifecycle transition; older processor events are stale
    lifecycle_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
