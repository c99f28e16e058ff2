# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Reconcile stored donors against the payment processor's subscription records."""

import logging
from datetime import timedelta

from donorgate_server.entitlement.lifecycle import Transition
from donorgate_server.entitlement.service import record_transition
from donorgate_server.entitlement.webhooks import status_event
from donorgate_server.errors import AdapterError
from donorgate_server.store import donors as donor_store

logger = logging.getLogger(__name__)


class SubscriptionRefresher:
    def __init__(self, container) -> None:
        self.container = container
        # Subscriptions with a refresh in flight
        self._in_flight: set[str] = set()

    async def refresh_donor(self, donor_id: int) -> Transition | None:
        """Fetch the donor's subscription and apply the implied event.

        Returns None when the donor has no subscription or a refresh of the
        same subscription is already running. AdapterError propagates.
        """
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
        subscription_id = donor.subscription_id
        if not subscription_id or subscription_id in self._in_flight:
            return None
        self._in_flight.add(subscription_id)
        try:
            subscription = await self.container.payment.get_subscription(subscription_id)
            now = self.container.now()
            event = status_event(
                subscription.get("status"),
                event_time=now,
                last_payment_time=subscription.get("last_payment_time"),
                next_billing_time=subscription.get("next_billing_time"),
            )
            async with self.container.locks.hold(donor_id):
                async with self.container.session() as db:
                    donor = await donor_store.get_donor(db, donor_id)
                    donor.subscription_refreshed_at = now
                    transition = None
                    if event is not None:
                        transition = await record_transition(
                            db,
                            donor,
                            event,
                            now,
                            source="subscription-refresh",
                            extra={"subscriptionId": subscription_id, "processorStatus": subscription.get("status")},
                            record_unchanged=False,
                        )
        finally:
            self._in_flight.discard(subscription_id)
        if transition is not None and transition.changed:
            await self.container.effects.apply(donor_id, transition)
        return transition

    async def run(self) -> int:
        """One refresh pass over stale and pending subscriptions."""
        now = self.container.now()
        stale_before = now - timedelta(minutes=self.container.settings.subscription_refresh_max_age_minutes)
        async with self.container.session() as db:
            donor_ids = [d.id for d in await donor_store.list_donors_for_refresh(db, stale_before)]
        changed = 0
        for donor_id in donor_ids:
            try:
                transition = await self.refresh_donor(donor_id)
            except AdapterError as e:
                logger.warning("Subscription refresh for donor %s failed: %s", donor_id, e.message)
                continue
            if transition is not None and transition.changed:
                changed += 1
        if changed:
            logger.info("Subscription refresh: %d of %d donors changed", changed, len(donor_ids))
        return changed
