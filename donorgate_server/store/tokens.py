# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Single-use verification and password reset tokens."""

import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.models import PasswordResetToken, VerificationToken

VERIFICATION_TTL = timedelta(hours=48)
PASSWORD_RESET_TTL = timedelta(hours=1)


def new_token() -> str:
    return secrets.token_urlsafe(32)


async def create_verification_token(
    db: AsyncSession, donor_id: int, now: datetime, ttl: timedelta = VERIFICATION_TTL
) -> str:
    token = new_token()
    db.add(VerificationToken(donor_id=donor_id, token=token, expires_at=now + ttl, created_at=now))
    await db.flush()
    return token


async def consume_verification_token(db: AsyncSession, token: str, now: datetime) -> int | None:
    """Mark the token used and return its donor id; None for unknown, used, deleted or expired tokens."""
    result = await db.execute(select(VerificationToken).where(VerificationToken.token == token))
    row = result.scalar_one_or_none()
    if not row or row.used_at is not None or row.expires_at <= now:
        return None
    changed = await db.execute(
        update(VerificationToken)
        .where(VerificationToken.id == row.id, VerificationToken.used_at.is_(None))
        .values(used_at=now)
    )
    if not changed.rowcount:
        return None
    return row.donor_id


async def create_password_reset_token(
    db: AsyncSession, donor_id: int, now: datetime, ttl: timedelta = PASSWORD_RESET_TTL
) -> str:
    """Replace any outstanding reset token for the donor."""
    await db.execute(delete(PasswordResetToken).where(PasswordResetToken.donor_id == donor_id))
    token = new_token()
    db.add(PasswordResetToken(donor_id=donor_id, token=token, expires_at=now + ttl, created_at=now))
    await db.flush()
    return token


async def consume_password_reset_token(db: AsyncSession, token: str, now: datetime) -> int | None:
    """Delete the token and return its donor id; None when unknown, used or expired."""
    result = await db.execute(select(PasswordResetToken).where(PasswordResetToken.token == token))
    row = result.scalar_one_or_none()
    if not row:
        return None
    donor_id = row.donor_id
    valid = row.used_at is None and row.expires_at > now
    await db.execute(delete(PasswordResetToken).where(PasswordResetToken.id == row.id))
    return donor_id if valid else None
