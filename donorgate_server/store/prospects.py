# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Prospect records."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.errors import NotFound
from donorgate_server.models import Prospect
from donorgate_server.store.donors import normalize_email


async def create_prospect(
    db: AsyncSession, *, email: str | None = None, name: str = "", note: str | None = None
) -> Prospect:
    prospect = Prospect(email=normalize_email(email) or None, name=(name or "").strip(), note=note)
    db.add(prospect)
    await db.flush()
    return prospect


async def get_prospect(db: AsyncSession, prospect_id: int) -> Prospect:
    prospect = await db.get(Prospect, prospect_id)
    if not prospect:
        raise NotFound("Prospect not found")
    return prospect


async def list_prospects(db: AsyncSession, include_converted: bool = False) -> list[Prospect]:
    query = select(Prospect)
    if not include_converted:
        query = query.where(Prospect.converted_at.is_(None))
    result = await db.execute(query.order_by(Prospect.created_at.desc()))
    return list(result.scalars().all())


async def mark_prospect_converted(db: AsyncSession, prospect: Prospect, donor_id: int, now: datetime) -> Prospect:
    prospect.converted_donor_id = donor_id
    prospect.converted_at = now
    await db.flush()
    return prospect
