# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Apply lifecycle events to stored donors: decide, persist, then run side effects."""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.entitlement.lifecycle import (
    AdminRevoke,
    AdminStatusReset,
    DonorState,
    LifecycleEvent,
    Transition,
    TrialStarted,
    decide,
)
from donorgate_server.errors import Conflict, Forbidden, ValidationError
from donorgate_server.models import Donor
from donorgate_server.models.donor import DONOR_STATUSES
from donorgate_server.services.paypal import subscriber_details
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store.settings import get_settings

logger = logging.getLogger(__name__)


async def record_transition(
    db: AsyncSession,
    donor: Donor,
    event: LifecycleEvent,
    now: datetime,
    *,
    source: str,
    external_id: str | None = None,
    extra: dict[str, Any] | None = None,
    record_unchanged: bool = True,
) -> Transition:
    """Decide and persist one transition plus its event row in the caller's transaction.

    With record_unchanged=False a transition that changes nothing is neither
    applied nor logged.
    """
    transition = decide(DonorState.from_donor(donor), event, now)
    if not transition.changed and not record_unchanged:
        return transition
    if not transition.ignored:
        transition.after.apply_to(donor)
    for index, entry in enumerate(transition.events):
        payload = {"source": source, **(extra or {}), **entry.payload}
        await event_store.log_event(
            db,
            entry.event_type,
            payload,
            donor_id=donor.id,
            external_id=external_id if index == 0 else None,
        )
    await db.flush()
    return transition


class LifecycleService:
    """Lifecycle actions started from the HTTP surface."""

    def __init__(self, container) -> None:
        self.container = container

    async def apply(self, donor_id: int, event: LifecycleEvent, *, source: str) -> tuple[Donor, Transition]:
        async with self.container.locks.hold(donor_id):
            async with self.container.session() as db:
                donor = await donor_store.get_donor(db, donor_id)
                transition = await record_transition(db, donor, event, self.container.now(), source=source)
        await self.container.effects.apply(donor_id, transition)
        return donor, transition

    async def start_trial(self, donor_id: int) -> tuple[Donor, Transition]:
        """Start a trial for a prospect. Forbidden when trials are off, Conflict when not eligible."""
        now = self.container.now()
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
            trial = await get_settings(db, "trial")
        if not trial.get("enabled"):
            raise Forbidden("Trials are not available right now.")
        if donor.status != "prospect" or donor.trial_started_at is not None:
            raise Conflict("This account is not eligible for a trial.")
        ends_at = now + timedelta(days=int(trial["duration_days"]))
        donor, transition = await self.apply(donor_id, TrialStarted(event_time=now, ends_at=ends_at), source="donor")
        if transition.ignored:
            raise Conflict("This account is not eligible for a trial.")
        logger.info("Trial started for donor %s until %s", donor_id, ends_at.isoformat())
        return donor, transition

    async def admin_revoke(self, donor_id: int) -> tuple[Donor, Transition]:
        """Revoke access now. Statuses the lifecycle ignores still get their media share removed."""
        donor, transition = await self.apply(donor_id, AdminRevoke(event_time=self.container.now()), source="admin")
        if transition.ignored:
            await self.container.coordinator.revoke(donor_id, "admin.revoke")
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
        return donor, transition

    async def admin_reset_status(self, donor_id: int, status: str) -> tuple[Donor, Transition]:
        if status not in DONOR_STATUSES:
            raise ValidationError({"status": f"Status must be one of: {', '.join(DONOR_STATUSES)}"})
        return await self.apply(
            donor_id, AdminStatusReset(event_time=self.container.now(), status=status), source="admin"
        )

    async def start_checkout(self, donor_id: int) -> dict[str, str]:
        """Create a processor subscription for the donor and mark a prospect pending.

        Returns subscription_id and approval_url.
        """
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
        base = self.container.settings.app_base_url.rstrip("/")
        created = await self.container.payment.create_subscription(
            "",
            subscriber_details(donor.email, donor.name),
            return_url=f"{base}/dashboard?checkout=success",
            cancel_url=f"{base}/dashboard?checkout=cancelled",
        )
        async with self.container.locks.hold(donor_id):
            async with self.container.session() as db:
                donor = await donor_store.get_donor(db, donor_id)
                previous = donor.status
                donor.subscription_id = created["subscription_id"]
                if donor.status == "prospect":
                    donor.status = "pending"
                await event_store.log_event(
                    db,
                    "donor.checkout.started",
                    {
                        "donorId": donor_id,
                        "subscriptionId": created["subscription_id"],
                        "from": previous,
                        "to": donor.status,
                    },
                    donor_id=donor_id,
                )
        logger.info("Checkout started for donor %s (%s)", donor_id, created["subscription_id"])
        return created
