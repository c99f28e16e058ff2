# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Grouped settings persisted as JSON text."""

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.models import Setting
from donorgate_server.services import server_settings

logger = logging.getLogger(__name__)


async def load_raw(db: AsyncSession, key: str) -> dict[str, Any]:
    """Stored JSON object for key, or {} when missing or malformed."""
    result = await db.execute(select(Setting).where(Setting.key == key))
    row = result.scalar_one_or_none()
    if row:
        try:
            out = json.loads(row.value)
            if isinstance(out, dict):
                return out
            logger.warning("Setting %s is not a JSON object; using defaults", key)
        except json.JSONDecodeError:
            logger.warning("Setting %s is not valid JSON; using defaults", key)
    return {}


async def save_raw(db: AsyncSession, key: str, value: dict[str, Any]) -> None:
    result = await db.execute(select(Setting).where(Setting.key == key))
    row = result.scalar_one_or_none()
    encoded = json.dumps(value)
    if row:
        row.value = encoded
    else:
        db.add(Setting(key=key, value=encoded))
    await db.flush()


async def get_settings(db: AsyncSession, group: str) -> dict[str, Any]:
    """Canonical settings for group; malformed stored values degrade to defaults."""
    return server_settings.normalize(group, await load_raw(db, group))


async def save_settings(db: AsyncSession, group: str, value: dict[str, Any]) -> dict[str, Any]:
    """Normalise and store value. Returns what a later get_settings will return."""
    canonical = server_settings.normalize(group, value)
    await save_raw(db, group, canonical)
    return canonical


async def update_settings(db: AsyncSession, group: str, update: dict[str, Any]) -> dict[str, Any]:
    """Partial update merged onto the stored group."""
    current = await get_settings(db, group)
    return await save_settings(db, group, server_settings.merge_update(group, current, update))
