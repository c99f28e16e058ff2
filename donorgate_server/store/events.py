# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Audit event log (append-only)."""

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.models import Event


async def log_event(
    db: AsyncSession,
    event_type: str,
    payload: dict[str, Any] | None = None,
    *,
    donor_id: int | None = None,
    external_id: str | None = None,
) -> Event:
    """Append an event row in the caller's transaction."""
    event = Event(event_type=event_type, payload=payload or {}, donor_id=donor_id, external_id=external_id)
    db.add(event)
    await db.flush()
    return event


async def event_exists(db: AsyncSession, external_id: str) -> bool:
    result = await db.execute(select(Event.id).where(Event.external_id == external_id).limit(1))
    return result.scalar_one_or_none() is not None


async def list_events(
    db: AsyncSession,
    *,
    limit: int = 100,
    offset: int = 0,
    event_type: str | None = None,
    donor_id: int | None = None,
) -> tuple[list[Event], int]:
    """Newest first. Returns (page, total)."""
    query = select(Event)
    if event_type:
        query = query.where(Event.event_type == event_type)
    if donor_id is not None:
        query = query.where(Event.donor_id == donor_id)
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(query.order_by(Event.id.desc()).limit(limit).offset(offset))
    return list(result.scalars().all()), total
