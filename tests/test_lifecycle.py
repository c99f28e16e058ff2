# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Lifecycle state machine tests (pure, no store)."""

from datetime import timedelta

from donorgate_server.entitlement.lifecycle import (
    AccessRevoked,
    AdminRevoke,
    AdminStatusReset,
    ClearAccessExpiration,
    DonorState,
    IssueInvite,
    PaymentCompleted,
    PaymentFailed,
    RevokeInvite,
    ScheduleExpiration,
    SendMail,
    SubscriptionCancelled,
    TrialExpired,
    TrialStarted,
    decide,
)

from conftest import START

NOW = START


def state(status, **kwargs):
    return DonorState(id=1, status=status, email="d@example.com", **kwargs)


def test_payment_completed_activates_prospect_and_requests_invite():
    t = decide(state("prospect"), PaymentCompleted(event_time=NOW, paid_at=NOW), NOW)
    assert t.after.status == "active"
    assert t.after.last_payment_at == NOW
    assert t.intents_of(IssueInvite)
    assert [e.event_type for e in t.events] == ["donor.payment.completed"]


def test_payment_completed_on_active_keeps_latest_payment():
    later = NOW + timedelta(days=30)
    t = decide(state("active", last_payment_at=later), PaymentCompleted(event_time=NOW, paid_at=NOW), NOW)
    assert t.after.status == "active"
    assert t.after.last_payment_at == later
    assert not t.intents_of(IssueInvite)


def test_payment_completed_clears_scheduled_expiration():
    s = state("cancelled", access_expires_at=NOW + timedelta(days=3))
    t = decide(s, PaymentCompleted(event_time=NOW), NOW)
    assert t.after.status == "active"
    assert t.after.access_expires_at is None
    assert t.intents_of(ClearAccessExpiration)


def test_payment_failed_moves_prospect_to_pending():
    t = decide(state("prospect"), PaymentFailed(event_time=NOW), NOW)
    assert t.after.status == "pending"


def test_payment_failed_keeps_active_access():
    t = decide(state("active"), PaymentFailed(event_time=NOW), NOW)
    assert t.after.status == "active"
    assert not t.ignored


def test_payment_failed_on_cancelled_is_a_no_op():
    t = decide(state("cancelled"), PaymentFailed(event_time=NOW), NOW)
    assert t.ignored
    assert not t.changed
    assert t.events[0].payload["ignored"] is True


def test_cancel_active_schedules_expiration_at_period_end():
    ends = NOW + timedelta(days=12)
    t = decide(state("active"), SubscriptionCancelled(event_time=NOW, ends_at=ends), NOW)
    assert t.after.status == "cancelled"
    assert t.after.access_expires_at == ends
    assert t.intents_of(ScheduleExpiration) == [ScheduleExpiration(ends)]
    assert [m.template for m in t.intents_of(SendMail)] == ["cancellation"]


def test_cancel_without_period_end_expires_now():
    t = decide(state("pending"), SubscriptionCancelled(event_time=NOW), NOW)
    assert t.after.access_expires_at == NOW


def test_cancel_trial_keeps_trial_end():
    trial_end = NOW + timedelta(days=4)
    s = state("trial", access_expires_at=trial_end, trial_started_at=NOW - timedelta(days=3))
    t = decide(s, SubscriptionCancelled(event_time=NOW, ends_at=NOW + timedelta(days=30)), NOW)
    assert t.after.status == "cancelled"
    assert t.after.access_expires_at == trial_end


def test_expired_subscription_is_immediate():
    s = state("cancelled", access_expires_at=NOW + timedelta(days=10))
    t = decide(s, SubscriptionCancelled(event_time=NOW, immediate=True), NOW)
    assert t.after.access_expires_at == NOW
    assert not t.intents_of(SendMail)


def test_cancel_prospect_is_ignored():
    t = decide(state("prospect"), SubscriptionCancelled(event_time=NOW), NOW)
    assert t.ignored
    assert t.after == t.before


def test_trial_start_only_from_prospect():
    ends = NOW + timedelta(days=7)
    t = decide(state("prospect"), TrialStarted(event_time=NOW, ends_at=ends), NOW)
    assert t.after.status == "trial"
    assert t.after.trial_started_at == NOW
    assert t.after.access_expires_at == ends
    assert t.intents_of(IssueInvite)
    assert decide(state("active"), TrialStarted(event_time=NOW, ends_at=ends), NOW).ignored


def test_trial_expire_requests_revocation():
    t = decide(state("trial"), TrialExpired(event_time=NOW), NOW)
    assert t.after.status == "trial_expired"
    assert t.intents_of(RevokeInvite)


def test_admin_revoke_active_expires_now():
    t = decide(state("active"), AdminRevoke(event_time=NOW), NOW)
    assert t.after.status == "cancelled"
    assert t.after.access_expires_at == NOW
    assert t.intents_of(RevokeInvite)


def test_admin_revoke_trial_becomes_trial_expired():
    t = decide(state("trial"), AdminRevoke(event_time=NOW), NOW)
    assert t.after.status == "trial_expired"


def test_admin_revoke_prospect_is_ignored():
    assert decide(state("prospect"), AdminRevoke(event_time=NOW), NOW).ignored


def test_admin_reset_to_prospect_reopens_trial():
    s = state("trial_expired", trial_started_at=NOW - timedelta(days=10))
    t = decide(s, AdminStatusReset(event_time=NOW, status="prospect"), NOW)
    assert t.after.status == "prospect"
    assert t.after.trial_started_at is None
    assert t.events[0].event_type == "admin.status.reset"


def test_access_revoked_moves_cancelled_to_expired():
    s = state("cancelled", access_expires_at=NOW - timedelta(seconds=1))
    t = decide(s, AccessRevoked(event_time=NOW), NOW)
    assert t.after.status == "expired"
    assert t.after.access_expires_at is None
    assert t.events[0].event_type == "donor.access.expiration.reached"


def test_stale_processor_event_changes_nothing():
    s = state("cancelled", lifecycle_updated_at=NOW)
    t = decide(s, PaymentCompleted(event_time=NOW - timedelta(minutes=5)), NOW)
    assert t.stale
    assert t.ignored
    assert t.after.status == "cancelled"


def test_admin_events_are_never_stale():
    s = state("active", lifecycle_updated_at=NOW)
    t = decide(s, AdminRevoke(event_time=NOW - timedelta(minutes=5)), NOW)
    assert not t.stale
    assert t.after.status == "cancelled"


def test_applied_transition_stamps_lifecycle_time():
    t = decide(state("prospect"), PaymentCompleted(event_time=NOW), NOW)
    assert t.after.lifecycle_updated_at == NOW
