# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Support threads."""

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.errors import NotFound
from donorgate_server.models import SupportMessage, SupportRequest


async def create_request(
    db: AsyncSession, *, donor_id: int, subject: str, body: str, now: datetime
) -> tuple[SupportRequest, SupportMessage]:
    request = SupportRequest(donor_id=donor_id, subject=subject.strip(), created_at=now, updated_at=now)
    db.add(request)
    await db.flush()
    message = SupportMessage(request_id=request.id, author_role="donor", body=body, created_at=now)
    db.add(message)
    await db.flush()
    return request, message


async def get_request(db: AsyncSession, request_id: int, donor_id: int | None = None) -> SupportRequest:
    """Load a thread; when donor_id is given it must own the thread."""
    request = await db.get(SupportRequest, request_id)
    if not request or (donor_id is not None and request.donor_id != donor_id):
        raise NotFound("Support request not found")
    return request


async def add_message(
    db: AsyncSession, request: SupportRequest, *, author_role: str, body: str, now: datetime
) -> SupportMessage:
    """Append a message. A donor message on a resolved thread reopens it in the same statement batch."""
    message = SupportMessage(request_id=request.id, author_role=author_role, body=body, created_at=now)
    db.add(message)
    values: dict = {"updated_at": now}
    if author_role == "donor":
        values.update(resolved=False, resolved_at=None)
    await db.execute(update(SupportRequest).where(SupportRequest.id == request.id).values(**values))
    await db.flush()
    await db.refresh(request)
    return message


async def resolve_request(db: AsyncSession, request: SupportRequest, now: datetime) -> SupportRequest:
    if not request.resolved:
        request.resolved = True
        request.resolved_at = now
        await db.flush()
    return request


async def list_messages(db: AsyncSession, request_id: int) -> list[SupportMessage]:
    result = await db.execute(
        select(SupportMessage)
        .where(SupportMessage.request_id == request_id)
        .order_by(SupportMessage.created_at.asc(), SupportMessage.id.asc())
    )
    return list(result.scalars().all())


async def list_requests(
    db: AsyncSession, *, donor_id: int | None = None, resolved: bool | None = None
) -> list[SupportRequest]:
    query = select(SupportRequest)
    if donor_id is not None:
        query = query.where(SupportRequest.donor_id == donor_id)
    if resolved is not None:
        query = query.where(SupportRequest.resolved == resolved)
    result = await db.execute(query.order_by(SupportRequest.updated_at.desc(), SupportRequest.id.desc()))
    return list(result.scalars().all())


async def count_open_requests(db: AsyncSession) -> int:
    return await db.scalar(
        select(func.count()).select_from(SupportRequest).where(SupportRequest.resolved.is_(False))
    ) or 0
