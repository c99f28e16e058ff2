# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite cooldown window tests."""

from datetime import timedelta
from types import SimpleNamespace

from donorgate_server.entitlement.cooldown import cooldown_window, evaluate_cooldown

from conftest import START

WINDOW = timedelta(days=30)


def test_no_previous_invite_is_not_blocked():
    state = evaluate_cooldown(None, START, WINDOW)
    assert not state.blocked
    assert state.to_dict() == {"inviteLimitReached": False, "nextInviteAvailableAt": None}


def test_recent_invite_blocks_until_window_end():
    invite = SimpleNamespace(created_at=START - timedelta(days=5))
    state = evaluate_cooldown(invite, START, WINDOW)
    assert state.blocked
    assert state.next_available_at == START + timedelta(days=25)


def test_release_at_exact_boundary():
    invite = SimpleNamespace(created_at=START - WINDOW)
    assert not evaluate_cooldown(invite, START, WINDOW).blocked
    assert evaluate_cooldown(invite, START - timedelta(microseconds=1), WINDOW).blocked


def test_zero_window_disables_cooldown():
    invite = SimpleNamespace(created_at=START)
    assert not evaluate_cooldown(invite, START, timedelta(0)).blocked


def test_window_from_settings():
    assert cooldown_window({"invite_days": 14}) == timedelta(days=14)
    assert cooldown_window({}) == WINDOW
