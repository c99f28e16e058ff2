# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Donor lifecycle state machine.

Pure and synchronous: decide() takes a donor snapshot and an event and
returns the target snapshot plus the side-effect intents to apply. Nothing
here touches the database or the network.

    from \\ event   completed  failed   cancelled             trial.start  trial.expire         admin.revoke
    prospect        active     pending  -                     trial        -                    -
    pending         active     pending  cancelled+exp(grace)  -            -                    cancelled+exp(now)
    trial           active     trial    cancelled             -            trial_expired+revoke trial_expired+exp(now)
    active          active     active   cancelled+exp(next)   -            -                    cancelled+exp(now)
    cancelled       active     -        cancelled             -            -                    cancelled
    trial_expired   active     -        -                     -            -                    -

Any (status, event) pair not in the table leaves the donor unchanged.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from donorgate_server.models.donor import DONOR_STATUSES


@dataclass(frozen=True)
class DonorState:
    """The lifecycle-relevant slice of a donor record."""

    id: int | None
    status: str
    email: str = ""
    name: str = ""
    last_payment_at: datetime | None = None
    access_expires_at: datetime | None = None
    trial_started_at: datetime | None = None
    lifecycle_updated_at: datetime | None = None
    media_linked: bool = False

    @classmethod
    def from_donor(cls, donor) -> "DonorState":
        return cls(
            id=donor.id,
            status=donor.status,
            email=donor.email,
            name=donor.name or "",
            last_payment_at=donor.last_payment_at,
            access_expires_at=donor.access_expires_at,
            trial_started_at=donor.trial_started_at,
            lifecycle_updated_at=donor.lifecycle_updated_at,
            media_linked=bool(donor.media_account_id or donor.media_email),
        )

    def apply_to(self, donor) -> None:
        """Copy lifecycle fields onto a donor record."""
        donor.status = self.status
        donor.last_payment_at = self.last_payment_at
        donor.access_expires_at = self.access_expires_at
        donor.trial_started_at = self.trial_started_at
        donor.lifecycle_updated_at = self.lifecycle_updated_at


# Events


@dataclass(frozen=True)
class LifecycleEvent:
    event_time: datetime
    kind = "event"
    # Events from the payment processor can arrive out of order
    from_processor = False


@dataclass(frozen=True)
class PaymentCompleted(LifecycleEvent):
    paid_at: datetime | None = None
    kind = "payment.completed"
    from_processor = True


@dataclass(frozen=True)
class PaymentFailed(LifecycleEvent):
    kind = "payment.failed"
    from_processor = True


@dataclass(frozen=True)
class SubscriptionCancelled(LifecycleEvent):
    """ends_at is the end of the paid period; immediate expires access now."""

    ends_at: datetime | None = None
    immediate: bool = False
    kind = "subscription.cancelled"
    from_processor = True


@dataclass(frozen=True)
class TrialStarted(LifecycleEvent):
    ends_at: datetime | None = None
    kind = "trial.start"


@dataclass(frozen=True)
class TrialExpired(LifecycleEvent):
    kind = "trial.expire"


@dataclass(frozen=True)
class AdminRevoke(LifecycleEvent):
    kind = "admin.revoke"


@dataclass(frozen=True)
class AdminStatusReset(LifecycleEvent):
    status: str = "prospect"
    kind = "admin.reset"


@dataclass(frozen=True)
class AccessRevoked(LifecycleEvent):
    """Media access was removed after access_expires_at passed."""

    kind = "access.revoked"


# Intents


@dataclass(frozen=True)
class IssueInvite:
    reason: str


@dataclass(frozen=True)
class RevokeInvite:
    reason: str


@dataclass(frozen=True)
class SendMail:
    template: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LogEvent:
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClearAccessExpiration:
    pass


@dataclass(frozen=True)
class ScheduleExpiration:
    at: datetime


EVENT_LOG_TYPES = {
    "payment.completed": "donor.payment.completed",
    "payment.failed": "donor.payment.failed",
    "subscription.cancelled": "donor.subscription.cancelled",
    "trial.start": "donor.trial.started",
    "trial.expire": "donor.trial.expired",
    "admin.revoke": "admin.donor.revoked",
    "admin.reset": "admin.status.reset",
    "access.revoked": "donor.access.expiration.reached",
}


@dataclass(frozen=True)
class Transition:
    before: DonorState
    after: DonorState
    intents: tuple = ()
    stale: bool = False
    ignored: bool = False

    @property
    def changed(self) -> bool:
        """True when a persisted lifecycle field differs (the bookkeeping timestamp is ignored)."""
        a, b = self.before, self.after
        return (a.status, a.last_payment_at, a.access_expires_at, a.trial_started_at) != (
            b.status,
            b.last_payment_at,
            b.access_expires_at,
            b.trial_started_at,
        )

    @property
    def events(self) -> list[LogEvent]:
        return [i for i in self.intents if isinstance(i, LogEvent)]

    def intents_of(self, kind: type) -> list:
        return [i for i in self.intents if isinstance(i, kind)]


def _log(event: LifecycleEvent, before: DonorState, after: DonorState, **extra: Any) -> LogEvent:
    payload: dict[str, Any] = {
        "donorId": before.id,
        "event": event.kind,
        "from": before.status,
        "to": after.status,
        "eventTime": event.event_time.isoformat(),
        "accessExpiresAt": after.access_expires_at.isoformat() if after.access_expires_at else None,
    }
    payload.update({k: v for k, v in extra.items() if v is not None})
    return LogEvent(EVENT_LOG_TYPES[event.kind], payload)


def _unchanged(state: DonorState, event: LifecycleEvent, *, stale: bool = False) -> Transition:
    return Transition(
        before=state,
        after=state,
        intents=(_log(event, state, state, ignored=True, stale=stale or None),),
        stale=stale,
        ignored=True,
    )


def _expire_at(state: DonorState, at: datetime) -> tuple[DonorState, list]:
    return replace(state, access_expires_at=at), [ScheduleExpiration(at)]


def _on_payment_completed(state: DonorState, event: PaymentCompleted, now: datetime) -> Transition | None:
    if state.status not in ("prospect", "pending", "trial", "active", "cancelled", "trial_expired"):
        return None
    paid_at = event.paid_at or event.event_time
    last_payment = state.last_payment_at
    if paid_at and (last_payment is None or paid_at > last_payment):
        last_payment = paid_at
    after = replace(state, status="active", last_payment_at=last_payment, access_expires_at=None)
    intents: list = []
    if state.access_expires_at is not None:
        intents.append(ClearAccessExpiration())
    if state.status != "active":
        intents.append(IssueInvite(reason="payment.completed"))
    intents.append(_log(event, state, after))
    return Transition(state, after, tuple(intents))


def _on_payment_failed(state: DonorState, event: PaymentFailed, now: datetime) -> Transition | None:
    if state.status in ("prospect", "pending"):
        after = replace(state, status="pending")
    elif state.status in ("trial", "active"):
        # trial: no-op; active: keep access through the processor's retry window
        after = state
    else:
        return None
    return Transition(state, after, (_log(event, state, after),))


def _on_subscription_cancelled(state: DonorState, event: SubscriptionCancelled, now: datetime) -> Transition | None:
    if state.status not in ("pending", "trial", "active", "cancelled"):
        return None
    ends_at = now if event.immediate else (event.ends_at or now)
    intents: list = []
    after = replace(state, status="cancelled")
    if state.status in ("pending", "active"):
        after, scheduled = _expire_at(after, ends_at)
        intents += scheduled
    elif state.status == "trial":
        # The trial end already bounds access; schedule only when nothing is
        if state.access_expires_at is None or event.immediate:
            after, scheduled = _expire_at(after, ends_at)
            intents += scheduled
    elif event.immediate and (state.access_expires_at is None or state.access_expires_at > now):
        after, scheduled = _expire_at(after, now)
        intents += scheduled
    if state.status != "cancelled":
        intents.append(
            SendMail(
                "cancellation",
                {"access_until": after.access_expires_at.isoformat() if after.access_expires_at else None},
            )
        )
    intents.append(_log(event, state, after, immediate=event.immediate or None))
    return Transition(state, after, tuple(intents))


def _on_trial_started(state: DonorState, event: TrialStarted, now: datetime) -> Transition | None:
    if state.status != "prospect":
        return None
    ends_at = event.ends_at or now
    after = replace(state, status="trial", trial_started_at=now, access_expires_at=ends_at)
    intents = [
        ScheduleExpiration(ends_at),
        IssueInvite(reason="trial.start"),
        SendMail("trial_started", {"ends_at": ends_at.isoformat()}),
    ]
    intents.append(_log(event, state, after))
    return Transition(state, after, tuple(intents))


def _on_trial_expired(state: DonorState, event: TrialExpired, now: datetime) -> Transition | None:
    if state.status != "trial":
        return None
    after = replace(state, status="trial_expired")
    return Transition(state, after, (RevokeInvite(reason="trial.expire"), _log(event, state, after)))


def _on_admin_revoke(state: DonorState, event: AdminRevoke, now: datetime) -> Transition | None:
    if state.status in ("pending", "active", "cancelled"):
        after, intents = _expire_at(replace(state, status="cancelled"), now)
    elif state.status == "trial":
        after, intents = _expire_at(replace(state, status="trial_expired"), now)
    else:
        return None
    intents = [*intents, RevokeInvite(reason="admin.revoke"), _log(event, state, after)]
    return Transition(state, after, tuple(intents))


def _on_admin_reset(state: DonorState, event: AdminStatusReset, now: datetime) -> Transition | None:
    if event.status not in DONOR_STATUSES:
        return None
    after = replace(state, status=event.status)
    intents: list = []
    if event.status in ("prospect", "pending", "active") and state.access_expires_at is not None:
        after = replace(after, access_expires_at=None)
        intents.append(ClearAccessExpiration())
    if event.status == "prospect":
        # Re-opens trial eligibility
        after = replace(after, trial_started_at=None)
    intents.append(_log(event, state, after, status=event.status))
    return Transition(state, after, tuple(intents))


def _on_access_revoked(state: DonorState, event: AccessRevoked, now: datetime) -> Transition | None:
    status = {"cancelled": "expired", "trial": "trial_expired"}.get(state.status, state.status)
    after = replace(state, status=status, access_expires_at=None)
    return Transition(state, after, (ClearAccessExpiration(), _log(event, state, after, source="scheduled-job")))


_HANDLERS = {
    PaymentCompleted: _on_payment_completed,
    PaymentFailed: _on_payment_failed,
    SubscriptionCancelled: _on_subscription_cancelled,
    TrialStarted: _on_trial_started,
    TrialExpired: _on_trial_expired,
    AdminRevoke: _on_admin_revoke,
    AdminStatusReset: _on_admin_reset,
    AccessRevoked: _on_access_revoked,
}


def is_stale(state: DonorState, event: LifecycleEvent) -> bool:
    """Processor events older than the last applied transition only touch append-only records."""
    return (
        event.from_processor
        and state.lifecycle_updated_at is not None
        and event.event_time < state.lifecycle_updated_at
    )


def decide(state: DonorState, event: LifecycleEvent, now: datetime) -> Transition:
    """Return the transition for event. Unlisted (status, event) pairs are no-ops."""
    if is_stale(state, event):
        return _unchanged(state, event, stale=True)
    transition = _HANDLERS[type(event)](state, event, now)
    if transition is None:
        return _unchanged(state, event)
    stamp = event.event_time
    if state.lifecycle_updated_at is not None and state.lifecycle_updated_at > stamp:
        stamp = state.lifecycle_updated_at
    return replace(transition, after=replace(transition.after, lifecycle_updated_at=stamp))
