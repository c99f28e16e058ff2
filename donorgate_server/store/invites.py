# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite records."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.errors import NotFound
from donorgate_server.models import Invite


async def get_invite(db: AsyncSession, invite_id: int) -> Invite:
    invite = await db.get(Invite, invite_id)
    if not invite:
        raise NotFound("Invite not found")
    return invite


async def get_active_invite(db: AsyncSession, donor_id: int) -> Invite | None:
    """The donor's single non-revoked invite, if any."""
    result = await db.execute(
        select(Invite)
        .where(Invite.donor_id == donor_id, Invite.revoked_at.is_(None))
        .order_by(Invite.created_at.desc(), Invite.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_latest_invite(db: AsyncSession, donor_id: int) -> Invite | None:
    """Most recent invite regardless of revocation (cooldown anchor)."""
    result = await db.execute(
        select(Invite)
        .where(Invite.donor_id == donor_id)
        .order_by(Invite.created_at.desc(), Invite.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_invites(db: AsyncSession, donor_id: int) -> list[Invite]:
    result = await db.execute(
        select(Invite).where(Invite.donor_id == donor_id).order_by(Invite.created_at.desc(), Invite.id.desc())
    )
    return list(result.scalars().all())


async def list_unrevoked_media_invites(db: AsyncSession, donor_id: int) -> list[Invite]:
    """Invites whose media-side share has not been confirmed revoked."""
    result = await db.execute(
        select(Invite)
        .where(Invite.donor_id == donor_id, Invite.media_revoked_at.is_(None))
        .order_by(Invite.created_at.desc())
    )
    return list(result.scalars().all())


async def supersede_active_invites(db: AsyncSession, donor_id: int, now: datetime) -> int:
    """Mark every active invite of the donor revoked. Returns rows changed."""
    result = await db.execute(
        update(Invite)
        .where(Invite.donor_id == donor_id, Invite.revoked_at.is_(None))
        .values(revoked_at=now, status="revoked")
    )
    return result.rowcount or 0


async def create_invite(
    db: AsyncSession,
    *,
    donor_id: int,
    media_invite_id: str | None,
    media_invite_url: str | None,
    recipient_email: str | None,
    note: str | None = None,
    libraries: list | None = None,
    media_account_id: str | None = None,
    media_email: str | None = None,
    status: str = "pending",
    created_at: datetime | None = None,
) -> Invite:
    """Append an invite row. Callers supersede the previous active invite in the same transaction."""
    invite = Invite(
        donor_id=donor_id,
        media_invite_id=media_invite_id,
        media_invite_url=media_invite_url,
        recipient_email=recipient_email,
        note=note,
        libraries=list(libraries or []),
        media_account_id=media_account_id,
        media_email=media_email,
        status=status,
    )
    if created_at is not None:
        invite.created_at = created_at
    db.add(invite)
    await db.flush()
    return invite


async def mark_invite_revoked(db: AsyncSession, invite_id: int, now: datetime) -> bool:
    """Idempotent: only the first call changes the row."""
    result = await db.execute(
        update(Invite)
        .where(Invite.id == invite_id, Invite.revoked_at.is_(None))
        .values(revoked_at=now, status="revoked")
    )
    return bool(result.rowcount)


async def mark_media_revoked(db: AsyncSession, invite_id: int, now: datetime) -> bool:
    """Idempotent: only the first call changes the row."""
    result = await db.execute(
        update(Invite)
        .where(Invite.id == invite_id, Invite.media_revoked_at.is_(None))
        .values(media_revoked_at=now)
    )
    return bool(result.rowcount)


async def mark_email_sent(db: AsyncSession, invite_id: int, now: datetime) -> None:
    await db.execute(update(Invite).where(Invite.id == invite_id).values(email_sent_at=now))
