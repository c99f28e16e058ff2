# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Outbox of side-effect intents awaiting retry."""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.models import PendingIntent

MAX_ATTEMPTS = 8
BASE_BACKOFF = timedelta(minutes=1)


def backoff(attempts: int) -> timedelta:
    """Exponential backoff capped at six hours."""
    return min(BASE_BACKOFF * (2 ** max(attempts - 1, 0)), timedelta(hours=6))


async def enqueue_intent(
    db: AsyncSession,
    *,
    kind: str,
    donor_id: int | None,
    payload: dict[str, Any],
    now: datetime,
    error: str | None = None,
) -> PendingIntent:
    intent = PendingIntent(
        kind=kind,
        donor_id=donor_id,
        payload=payload,
        attempts=1,
        next_attempt_at=now + backoff(1),
        last_error=error,
        created_at=now,
    )
    db.add(intent)
    await db.flush()
    return intent


async def list_due_intents(db: AsyncSession, now: datetime, limit: int = 50) -> list[PendingIntent]:
    result = await db.execute(
        select(PendingIntent)
        .where(PendingIntent.next_attempt_at <= now)
        .order_by(PendingIntent.next_attempt_at.asc(), PendingIntent.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def complete_intent(db: AsyncSession, intent_id: int) -> None:
    await db.execute(delete(PendingIntent).where(PendingIntent.id == intent_id))


async def reschedule_intent(db: AsyncSession, intent_id: int, now: datetime, error: str) -> PendingIntent | None:
    """Bump attempts and push next_attempt_at out. Returns None once the intent is abandoned."""
    intent = await db.get(PendingIntent, intent_id)
    if intent is None:
        return None
    intent.attempts += 1
    intent.last_error = error
    if intent.attempts > MAX_ATTEMPTS:
        await db.delete(intent)
        await db.flush()
        return None
    intent.next_attempt_at = now + backoff(intent.attempts)
    await db.flush()
    return intent
