# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Side effects of committed transitions, with bounded retry and an outbox for the rest."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from donorgate_server.entitlement.lifecycle import (
    IssueInvite,
    RevokeInvite,
    ScheduleExpiration,
    SendMail,
    Transition,
)
from donorgate_server.errors import AdapterError, DonorGateError
from donorgate_server.store import donors as donor_store
from donorgate_server.store import intents as intent_store
from donorgate_server.store import invites as invite_store

logger = logging.getLogger(__name__)

RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5


class EffectRunner:
    """Applies IssueInvite, SendMail, RevokeInvite and due ScheduleExpiration intents after commit.

    Retryable adapter failures are retried in-process a few times, then
    queued in pending_intents for the sweeper. Revocation is never queued:
    a failed revoke leaves access_expires_at set, so the expiration sweep
    retries it.
    """

    def __init__(self, container, attempts: int = RETRY_ATTEMPTS, base_delay: float = RETRY_BASE_DELAY) -> None:
        self.container = container
        self.attempts = attempts
        self.base_delay = base_delay

    async def apply(self, donor_id: int, transition: Transition) -> None:
        if transition.ignored:
            return
        now = self.container.now()
        expire_now = False
        for intent in transition.intents:
            if isinstance(intent, IssueInvite):
                await self._guarded(
                    donor_id,
                    "issue_invite",
                    {"reason": intent.reason},
                    lambda reason=intent.reason: self.container.coordinator.ensure_invite(donor_id, reason),
                )
            elif isinstance(intent, SendMail):
                await self._guarded(
                    donor_id,
                    "mail",
                    {"template": intent.template, "context": intent.context},
                    lambda mail=intent: self.send_mail(donor_id, mail.template, mail.context),
                )
            elif isinstance(intent, RevokeInvite):
                expire_now = True
            elif isinstance(intent, ScheduleExpiration) and intent.at <= now:
                expire_now = True
        if expire_now:
            await self.container.expirer.expire_donor(donor_id)

    async def _with_retries(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        for attempt in range(self.attempts):
            try:
                return await fn()
            except AdapterError as e:
                if not e.retryable or attempt == self.attempts - 1:
                    raise
                await asyncio.sleep(self.base_delay * (2**attempt))

    async def _guarded(self, donor_id: int, kind: str, payload: dict[str, Any], fn) -> None:
        try:
            await self._with_retries(fn)
        except AdapterError as e:
            if not e.retryable:
                logger.warning("Side effect %s for donor %s failed: %s", kind, donor_id, e.message)
                return
            logger.warning("Side effect %s for donor %s queued for retry: %s", kind, donor_id, e.message)
            async with self.container.session() as db:
                await intent_store.enqueue_intent(
                    db, kind=kind, donor_id=donor_id, payload=payload, now=self.container.now(), error=e.message
                )
        except DonorGateError as e:
            logger.warning("Side effect %s for donor %s skipped: %s", kind, donor_id, e.message)

    async def send_mail(self, donor_id: int, template: str, context: dict[str, Any]) -> None:
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
        mail = self.container.mail
        if template == "cancellation":
            await mail.send_cancellation(to=donor.email, name=donor.name, access_until=context.get("access_until"))
        elif template == "trial_started":
            await mail.send_trial_started(to=donor.email, name=donor.name, ends_at=context.get("ends_at"))
        elif template == "trial_reminder":
            await mail.send_trial_reminder(to=donor.email, name=donor.name, ends_at=context.get("ends_at"))
        else:
            logger.warning("Unknown mail template %r for donor %s", template, donor_id)

    async def _resend_invite_email(self, payload: dict[str, Any]) -> None:
        async with self.container.session() as db:
            invite = await invite_store.get_invite(db, payload["inviteId"])
            donor = await donor_store.find_donor(db, invite.donor_id)
        if invite.revoked_at is not None or invite.email_sent_at is not None:
            return
        await self.container.mail.send_invite(
            to=invite.recipient_email, invite_url=invite.media_invite_url, donor_name=donor.name if donor else None
        )
        async with self.container.session() as db:
            await invite_store.mark_email_sent(db, invite.id, self.container.now())

    async def retry_pending(self, limit: int = 50) -> int:
        """Run due outbox intents once. Returns how many completed."""
        now = self.container.now()
        async with self.container.session() as db:
            due = await intent_store.list_due_intents(db, now, limit=limit)
        done = 0
        for intent in due:
            try:
                if intent.kind == "issue_invite":
                    await self.container.coordinator.ensure_invite(intent.donor_id, intent.payload.get("reason", "retry"))
                elif intent.kind == "mail":
                    await self.send_mail(intent.donor_id, intent.payload["template"], intent.payload.get("context") or {})
                elif intent.kind == "invite_email":
                    await self._resend_invite_email(intent.payload)
                else:
                    logger.warning("Dropping pending intent %s of unknown kind %r", intent.id, intent.kind)
            except AdapterError as e:
                async with self.container.session() as db:
                    kept = await intent_store.reschedule_intent(db, intent.id, self.container.now(), e.message)
                if kept is None:
                    logger.error("Gave up on %s for donor %s: %s", intent.kind, intent.donor_id, e.message)
                continue
            except DonorGateError as e:
                logger.warning("Dropping pending intent %s: %s", intent.id, e.message)
            async with self.container.session() as db:
                await intent_store.complete_intent(db, intent.id)
            done += 1
        return done
