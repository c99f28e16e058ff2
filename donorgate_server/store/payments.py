# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Payment records (append-only)."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.models import Payment


async def record_payment(
    db: AsyncSession,
    *,
    donor_id: int | None,
    payment_id: str | None,
    amount: str | None,
    currency: str | None,
    paid_at: datetime | None,
) -> Payment:
    """Append a payment. A processor payment id already recorded returns the existing row."""
    if payment_id:
        result = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
        existing = result.scalar_one_or_none()
        if existing:
            return existing
    payment = Payment(
        donor_id=donor_id,
        payment_id=payment_id,
        amount=amount,
        currency=currency,
        paid_at=paid_at,
    )
    db.add(payment)
    await db.flush()
    return payment


async def list_payments(db: AsyncSession, donor_id: int, limit: int = 50) -> list[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.donor_id == donor_id).order_by(Payment.paid_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def count_payments(db: AsyncSession, donor_id: int | None = None) -> int:
    query = select(func.count()).select_from(Payment)
    if donor_id is not None:
        query = query.where(Payment.donor_id == donor_id)
    return await db.scalar(query) or 0
