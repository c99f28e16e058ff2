# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite cooldown between distinct-recipient invites."""

from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_COOLDOWN = timedelta(days=30)


@dataclass(frozen=True)
class CooldownState:
    blocked: bool
    next_available_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "inviteLimitReached": self.blocked,
            "nextInviteAvailableAt": self.next_available_at.isoformat() if self.next_available_at else None,
        }


def evaluate_cooldown(invite, now: datetime, window: timedelta = DEFAULT_COOLDOWN) -> CooldownState:
    """Cooldown anchored on the most recent invite's created_at, revoked or not.

    Release is boundary-inclusive: at exactly created_at + window a new invite is allowed.
    """
    if invite is None or window <= timedelta(0):
        return CooldownState(blocked=False, next_available_at=None)
    next_at = invite.created_at + window
    return CooldownState(blocked=now < next_at, next_available_at=next_at)


def cooldown_window(settings: dict) -> timedelta:
    """Window from the cooldown settings group."""
    return timedelta(days=int(settings.get("invite_days", DEFAULT_COOLDOWN.days)))
