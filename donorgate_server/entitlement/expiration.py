# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Revoke media access for donors whose access_expires_at has passed."""

import logging
from datetime import datetime

from donorgate_server.entitlement.lifecycle import AccessRevoked, TrialExpired
from donorgate_server.entitlement.service import record_transition
from donorgate_server.errors import AdapterError
from donorgate_server.models import Donor
from donorgate_server.models.donor import TERMINAL_STATUSES
from donorgate_server.store import donors as donor_store

logger = logging.getLogger(__name__)


def is_expiration_due(donor: Donor, now: datetime) -> bool:
    return (
        donor.status in TERMINAL_STATUSES
        and donor.access_expires_at is not None
        and donor.access_expires_at <= now
    )


class AccessExpirer:
    def __init__(self, container) -> None:
        self.container = container

    async def expire_donor(self, donor_id: int) -> bool:
        """Revoke one donor's access. True when access_expires_at was cleared.

        A failed revoke leaves access_expires_at set so the next sweep retries.
        """
        async with self.container.locks.hold(donor_id):
            now = self.container.now()
            async with self.container.session() as db:
                donor = await donor_store.find_donor(db, donor_id)
                if donor is None or not is_expiration_due(donor, now):
                    return False
                if donor.status == "trial":
                    await record_transition(db, donor, TrialExpired(event_time=now), now, source="scheduled-job")

            try:
                await self.container.coordinator.revoke_held(donor_id, "access.expired")
            except AdapterError as e:
                logger.warning("Revoking access for donor %s failed, will retry: %s", donor_id, e.message)
                return False

            async with self.container.session() as db:
                donor = await donor_store.find_donor(db, donor_id)
                if donor is None or not is_expiration_due(donor, now):
                    return False
                await record_transition(db, donor, AccessRevoked(event_time=now), now, source="scheduled-job")
        logger.info("Access expired for donor %s", donor_id)
        return True

    async def run(self) -> int:
        """One sweep over every donor due for revocation, oldest expiry first."""
        now = self.container.now()
        async with self.container.session() as db:
            donor_ids = [d.id for d in await donor_store.list_donors_with_expired_access(db, now)]
        expired = 0
        for donor_id in donor_ids:
            if await self.expire_donor(donor_id):
                expired += 1
        if donor_ids:
            logger.info("Access expiration sweep: %d of %d donors revoked", expired, len(donor_ids))
        return expired
