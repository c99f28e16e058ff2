# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Donor records."""

import re
from datetime import datetime

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.errors import Conflict, NotFound, ValidationError
from donorgate_server.models import (
    Donor,
    Event,
    Invite,
    PasswordResetToken,
    Payment,
    PendingIntent,
    Prospect,
    ShareLink,
    SupportMessage,
    SupportRequest,
    VerificationToken,
)
from donorgate_server.models.donor import DONOR_STATUSES, TERMINAL_STATUSES

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str | None) -> bool:
    return bool(email) and EMAIL_RE.match(email) is not None


async def find_donor(db: AsyncSession, donor_id: int) -> Donor | None:
    return await db.get(Donor, donor_id)


async def get_donor(db: AsyncSession, donor_id: int) -> Donor:
    """Load donor by id; raise NotFound."""
    donor = await db.get(Donor, donor_id)
    if not donor:
        raise NotFound("Donor not found")
    return donor


async def get_donor_by_email(db: AsyncSession, email: str) -> Donor | None:
    result = await db.execute(select(Donor).where(Donor.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_donor_by_subscription(db: AsyncSession, subscription_id: str) -> Donor | None:
    result = await db.execute(select(Donor).where(Donor.subscription_id == subscription_id))
    return result.scalar_one_or_none()


async def create_donor(
    db: AsyncSession,
    *,
    email: str,
    name: str = "",
    status: str = "prospect",
    password_hash: str | None = None,
    subscription_id: str | None = None,
) -> Donor:
    """Insert a donor. Raises Conflict when the email is taken."""
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError({"email": "Please provide a valid email address."})
    if status not in DONOR_STATUSES:
        raise ValidationError({"status": f"Unknown status {status!r}"})
    if await get_donor_by_email(db, email):
        raise Conflict("A donor with this email already exists")
    donor = Donor(
        email=email,
        name=(name or "").strip(),
        status=status,
        password_hash=password_hash,
        subscription_id=subscription_id,
    )
    db.add(donor)
    await db.flush()
    return donor


async def upsert_donor_by_subscription(
    db: AsyncSession,
    subscription_id: str,
    *,
    email: str | None = None,
    name: str | None = None,
    status: str | None = None,
    last_payment_at: datetime | None = None,
) -> Donor:
    """Insert-or-update keyed by external subscription id. Returns the post-state donor.

    A subscriber whose email already belongs to a donor without a subscription
    is attached to that donor rather than duplicated.
    """
    donor = await get_donor_by_subscription(db, subscription_id)
    email = normalize_email(email) or None
    if donor is None and email:
        donor = await get_donor_by_email(db, email)
        if donor is not None:
            # A re-subscribing donor moves to the newer subscription
            donor.subscription_id = subscription_id
    if donor is None:
        if not email:
            raise ValidationError({"email": "Subscriber email is required to create a donor"})
        donor = await create_donor(
            db,
            email=email,
            name=name or "",
            status=status or "prospect",
            subscription_id=subscription_id,
        )
    else:
        if email and not donor.email:
            donor.email = email
        if name and not donor.name:
            donor.name = name.strip()
        if status:
            donor.status = status
    if last_payment_at is not None:
        donor.last_payment_at = last_payment_at
    await db.flush()
    return donor


async def update_donor_contact(
    db: AsyncSession, donor: Donor, *, email: str | None = None, name: str | None = None
) -> Donor:
    """Change contact details. Email change un-verifies the address."""
    if email is not None:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValidationError({"email": "Please provide a valid email address."})
        if email != donor.email:
            other = await get_donor_by_email(db, email)
            if other and other.id != donor.id:
                raise Conflict("Another account already uses this email")
            donor.email = email
            donor.email_verified_at = None
    if name is not None:
        donor.name = name.strip()
    await db.flush()
    return donor


async def list_donors_with_expired_access(db: AsyncSession, now: datetime) -> list[Donor]:
    """Terminal-status donors whose access_expires_at has passed, oldest expiry first."""
    result = await db.execute(
        select(Donor)
        .where(
            Donor.status.in_(TERMINAL_STATUSES),
            Donor.access_expires_at.is_not(None),
            Donor.access_expires_at <= now,
        )
        .order_by(Donor.access_expires_at.asc(), Donor.id.asc())
    )
    return list(result.scalars().all())


async def list_donors_for_refresh(db: AsyncSession, stale_before: datetime, limit: int = 100) -> list[Donor]:
    """Donors with a subscription whose last refresh is older than stale_before, or who are pending."""
    result = await db.execute(
        select(Donor)
        .where(
            Donor.subscription_id.is_not(None),
            Donor.status != "expired",
            or_(
                Donor.subscription_refreshed_at.is_(None),
                Donor.subscription_refreshed_at < stale_before,
                Donor.status == "pending",
            ),
        )
        .order_by(Donor.subscription_refreshed_at.asc().nulls_first(), Donor.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_trial_reminder_candidates(db: AsyncSession, now: datetime, window_end: datetime) -> list[Donor]:
    """Trial donors ending before window_end who have not been reminded."""
    result = await db.execute(
        select(Donor)
        .where(
            Donor.status == "trial",
            Donor.trial_reminder_sent_at.is_(None),
            Donor.access_expires_at.is_not(None),
            Donor.access_expires_at > now,
            Donor.access_expires_at <= window_end,
        )
        .order_by(Donor.access_expires_at.asc())
    )
    return list(result.scalars().all())


async def list_donors(
    db: AsyncSession,
    *,
    search: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Donor], int]:
    """Admin listing, newest first. Returns (page, total)."""
    query = select(Donor)
    if search:
        like = f"%{search.strip().lower()}%"
        query = query.where(or_(Donor.email.like(like), func.lower(Donor.name).like(like)))
    if status:
        query = query.where(Donor.status == status)
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(query.order_by(Donor.created_at.desc(), Donor.id.desc()).limit(limit).offset(offset))
    return list(result.scalars().all()), total


async def list_donors_by_status(db: AsyncSession, statuses: tuple[str, ...]) -> list[Donor]:
    result = await db.execute(select(Donor).where(Donor.status.in_(statuses)).order_by(Donor.id.asc()))
    return list(result.scalars().all())


async def delete_donor(db: AsyncSession, donor: Donor) -> None:
    """Delete a donor and owned records. Payments and events are retained, unlinked."""
    await db.execute(delete(Invite).where(Invite.donor_id == donor.id))
    await db.execute(delete(ShareLink).where(ShareLink.donor_id == donor.id))
    await db.execute(delete(PendingIntent).where(PendingIntent.donor_id == donor.id))
    await db.execute(delete(VerificationToken).where(VerificationToken.donor_id == donor.id))
    await db.execute(delete(PasswordResetToken).where(PasswordResetToken.donor_id == donor.id))
    request_ids = select(SupportRequest.id).where(SupportRequest.donor_id == donor.id)
    await db.execute(delete(SupportMessage).where(SupportMessage.request_id.in_(request_ids)))
    await db.execute(delete(SupportRequest).where(SupportRequest.donor_id == donor.id))
    # Explicit for connections without foreign key enforcement
    await db.execute(update(Payment).where(Payment.donor_id == donor.id).values(donor_id=None))
    await db.execute(update(Event).where(Event.donor_id == donor.id).values(donor_id=None))
    await db.execute(
        update(Prospect).where(Prospect.converted_donor_id == donor.id).values(converted_donor_id=None)
    )
    await db.delete(donor)
    await db.flush()
