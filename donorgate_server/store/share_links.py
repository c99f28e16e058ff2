# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Share link records."""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.errors import ConflictingOwner, NotFound
from donorgate_server.models import ShareLink

DEFAULT_SHARE_LINK_TTL = timedelta(days=7)


def is_share_link_expired(link: ShareLink, now: datetime) -> bool:
    return link.expires_at is not None and now >= link.expires_at


def is_share_link_valid(link: ShareLink, now: datetime) -> bool:
    """Not used and not expired."""
    if link.used_at is not None:
        return False
    return not is_share_link_expired(link, now)


async def get_share_link_by_token(db: AsyncSession, token: str) -> ShareLink:
    result = await db.execute(select(ShareLink).where(ShareLink.token == token))
    link = result.scalar_one_or_none()
    if not link:
        raise NotFound("Share link not found")
    return link


async def get_share_link_for_donor(db: AsyncSession, donor_id: int) -> ShareLink | None:
    result = await db.execute(select(ShareLink).where(ShareLink.donor_id == donor_id))
    return result.scalar_one_or_none()


async def get_share_link_for_prospect(db: AsyncSession, prospect_id: int) -> ShareLink | None:
    result = await db.execute(select(ShareLink).where(ShareLink.prospect_id == prospect_id))
    return result.scalar_one_or_none()


async def create_or_update_share_link(
    db: AsyncSession,
    *,
    token: str,
    session_token: str,
    now: datetime,
    donor_id: int | None = None,
    prospect_id: int | None = None,
    ttl: timedelta = DEFAULT_SHARE_LINK_TTL,
) -> ShareLink:
    """Create the owner's link, or replace its tokens and reset its timers."""
    if (donor_id is None) == (prospect_id is None):
        raise ConflictingOwner("A share link needs exactly one owner (donor or prospect)")
    if donor_id is not None:
        link = await get_share_link_for_donor(db, donor_id)
    else:
        link = await get_share_link_for_prospect(db, prospect_id)
    if link is None:
        link = ShareLink(donor_id=donor_id, prospect_id=prospect_id, token=token, session_token=session_token)
        db.add(link)
    link.token = token
    link.session_token = session_token
    link.created_at = now
    link.expires_at = now + ttl
    link.used_at = None
    link.last_used_at = None
    await db.flush()
    return link


async def transfer_share_link_to_donor(db: AsyncSession, link: ShareLink, donor_id: int) -> ShareLink:
    """Move ownership from a prospect to a donor in one statement."""
    await db.execute(
        update(ShareLink).where(ShareLink.id == link.id).values(donor_id=donor_id, prospect_id=None)
    )
    link.donor_id = donor_id
    link.prospect_id = None
    return link


async def touch_share_link(db: AsyncSession, link: ShareLink, now: datetime) -> None:
    link.last_used_at = now
    await db.flush()


async def mark_share_link_used(db: AsyncSession, link: ShareLink, now: datetime) -> bool:
    """Set used_at once; later calls only refresh last_used_at."""
    result = await db.execute(
        update(ShareLink).where(ShareLink.id == link.id, ShareLink.used_at.is_(None)).values(used_at=now)
    )
    await db.execute(update(ShareLink).where(ShareLink.id == link.id).values(last_used_at=now))
    changed = bool(result.rowcount)
    if changed:
        link.used_at = now
    link.last_used_at = now
    return changed
