# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Payment processor webhooks: verify, deduplicate, map, persist, then apply side effects."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from donorgate_server.entitlement.lifecycle import (
    LifecycleEvent,
    PaymentCompleted,
    PaymentFailed,
    SubscriptionCancelled,
    Transition,
)
from donorgate_server.entitlement.service import record_transition
from donorgate_server.errors import AdapterError, ConstraintViolation, Internal, Unauthorized, ValidationError
from donorgate_server.services.adapter import parse_timestamp
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import payments as payment_store

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": "completed",
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": "completed",
    "BILLING.SUBSCRIPTION.UPDATED": "status",
    "BILLING.SUBSCRIPTION.CREATED": "status",
    "BILLING.SUBSCRIPTION.SUSPENDED": "failed",
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": "failed",
    "BILLING.SUBSCRIPTION.CANCELLED": "cancelled",
    "BILLING.SUBSCRIPTION.EXPIRED": "expired",
}

PAYMENT_EVENTS = {
    "PAYMENT.SALE.COMPLETED": "completed",
    "PAYMENT.CAPTURE.COMPLETED": "completed",
    "PAYMENT.SALE.DENIED": "failed",
    "PAYMENT.CAPTURE.DENIED": "failed",
}


def status_event(
    status: str | None,
    *,
    event_time: datetime,
    last_payment_time: datetime | None = None,
    next_billing_time: datetime | None = None,
) -> LifecycleEvent | None:
    """Lifecycle event implied by a processor subscription status, or None."""
    status = (status or "").upper()
    if status == "ACTIVE":
        return PaymentCompleted(event_time=event_time, paid_at=last_payment_time)
    if status in ("APPROVAL_PENDING", "APPROVED", "SUSPENDED"):
        return PaymentFailed(event_time=event_time)
    if status == "CANCELLED":
        return SubscriptionCancelled(event_time=event_time, ends_at=next_billing_time)
    if status == "EXPIRED":
        return SubscriptionCancelled(event_time=event_time, immediate=True)
    return None


def payment_subscription_id(resource: dict[str, Any]) -> str | None:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    for value in (
        resource.get("billing_agreement_id"),
        related.get("subscription_id"),
        resource.get("custom_id"),
        resource.get("custom"),
    ):
        if value:
            return str(value)
    return None


def _subscriber(resource: dict[str, Any]) -> tuple[str | None, str | None]:
    subscriber = resource.get("subscriber") or {}
    name = subscriber.get("name") or {}
    full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p)
    return subscriber.get("email_address"), full_name or None


@dataclass
class MappedEvent:
    event: LifecycleEvent
    subscription_id: str | None
    email: str | None = None
    name: str | None = None
    payment: dict[str, Any] | None = None
    # Cancellation without next_billing_time: ask the processor for it
    needs_billing_lookup: bool = False


def map_envelope(event_type: str, resource: dict[str, Any], event_time: datetime) -> MappedEvent | None:
    """Translate a processor envelope into a lifecycle event. None for types we do not handle."""
    if event_type in SUBSCRIPTION_EVENTS:
        action = SUBSCRIPTION_EVENTS[event_type]
        billing = resource.get("billing_info") or {}
        last_payment = parse_timestamp((billing.get("last_payment") or {}).get("time"))
        next_billing = parse_timestamp(billing.get("next_billing_time"))
        email, name = _subscriber(resource)
        if action == "completed":
            event = PaymentCompleted(event_time=event_time, paid_at=last_payment)
        elif action == "failed":
            event = PaymentFailed(event_time=event_time)
        elif action == "cancelled":
            event = SubscriptionCancelled(event_time=event_time, ends_at=next_billing)
        elif action == "expired":
            event = SubscriptionCancelled(event_time=event_time, immediate=True)
        else:
            event = status_event(
                resource.get("status"),
                event_time=event_time,
                last_payment_time=last_payment,
                next_billing_time=next_billing,
            )
            if event is None:
                return None
        return MappedEvent(
            event=event,
            subscription_id=resource.get("id"),
            email=email,
            name=name,
            needs_billing_lookup=action == "cancelled" and next_billing is None,
        )

    if event_type in PAYMENT_EVENTS:
        subscription_id = payment_subscription_id(resource)
        if PAYMENT_EVENTS[event_type] == "failed":
            return MappedEvent(event=PaymentFailed(event_time=event_time), subscription_id=subscription_id)
        amount = resource.get("amount") or {}
        paid_at = parse_timestamp(resource.get("create_time")) or event_time
        payment = {
            "payment_id": resource.get("id"),
            "amount": str(amount.get("total") or amount.get("value") or "") or None,
            "currency": amount.get("currency") or amount.get("currency_code"),
            "paid_at": paid_at,
        }
        return MappedEvent(
            event=PaymentCompleted(event_time=event_time, paid_at=paid_at),
            subscription_id=subscription_id,
            payment=payment,
        )
    return None


@dataclass
class WebhookResult:
    status: str
    event_id: str | None = None
    donor_id: int | None = None
    transition: Transition | None = field(default=None, repr=False)


class WebhookProcessor:
    def __init__(self, container) -> None:
        self.container = container

    async def handle(self, headers: dict[str, str], raw_body: bytes) -> WebhookResult:
        """Process one delivery. Returning means the event is durably recorded.

        Raises Unauthorized on a bad signature (nothing persisted) and
        ValidationError for an envelope without an id.
        """
        if not await self.container.payment.verify_webhook_signature(headers, raw_body):
            raise Unauthorized("Invalid webhook signature")
        try:
            envelope = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError({"body": "Webhook body is not valid JSON"}) from e
        if not isinstance(envelope, dict) or not envelope.get("id"):
            raise ValidationError({"id": "Webhook event id is required"})

        event_id = str(envelope["id"])
        event_type = str(envelope.get("event_type") or "")
        resource = envelope.get("resource") if isinstance(envelope.get("resource"), dict) else {}
        event_time = parse_timestamp(envelope.get("create_time")) or self.container.now()
        meta = {"eventId": event_id, "eventType": event_type}

        async with self.container.session() as db:
            if await event_store.event_exists(db, event_id):
                await event_store.log_event(db, "webhook.duplicate", meta)
                logger.info("Duplicate webhook %s ignored", event_id)
                return WebhookResult(status="duplicate", event_id=event_id)

        mapped = map_envelope(event_type, resource, event_time)
        if mapped is None:
            return await self._record_only(event_id, "webhook.unknown", meta, status="unknown")

        if mapped.needs_billing_lookup and mapped.subscription_id:
            mapped.event = await self._with_billing_time(mapped)

        async with self.container.session() as db:
            donor = None
            if mapped.subscription_id:
                donor = await donor_store.get_donor_by_subscription(db, mapped.subscription_id)
            if donor is None and mapped.email:
                donor = await donor_store.get_donor_by_email(db, mapped.email)
            donor_id = donor.id if donor else None

        if donor_id is None and not (mapped.subscription_id and mapped.email):
            if mapped.payment:
                async with self.container.session() as db:
                    await payment_store.record_payment(db, donor_id=None, **mapped.payment)
            return await self._record_only(
                event_id, "webhook.unmatched", {**meta, "subscriptionId": mapped.subscription_id}, status="unmatched"
            )

        lock_key = donor_id if donor_id is not None else ("subscription", mapped.subscription_id)
        try:
            async with self.container.locks.hold(lock_key):
                donor_id, transition = await self._commit(event_id, mapped, meta)
        except ConstraintViolation as e:
            # A concurrent delivery of the same event committed first
            async with self.container.session() as db:
                if not await event_store.event_exists(db, event_id):
                    logger.error("Webhook %s (%s) violated a constraint: %s", event_id, event_type, e.message)
                    raise Internal("Webhook could not be recorded; retry later") from e
                await event_store.log_event(db, "webhook.duplicate", meta)
            return WebhookResult(status="duplicate", event_id=event_id)

        await self.container.effects.apply(donor_id, transition)
        status = "stale" if transition.stale else ("ignored" if transition.ignored else "processed")
        logger.info("Webhook %s (%s) for donor %s: %s", event_id, event_type, donor_id, status)
        return WebhookResult(status=status, event_id=event_id, donor_id=donor_id, transition=transition)

    async def _commit(self, event_id: str, mapped: MappedEvent, meta: dict[str, Any]) -> tuple[int, Transition]:
        now = self.container.now()
        async with self.container.session() as db:
            donor = None
            if mapped.subscription_id:
                donor = await donor_store.get_donor_by_subscription(db, mapped.subscription_id)
            if donor is None and mapped.email:
                donor = await donor_store.get_donor_by_email(db, mapped.email)
                if donor is not None and mapped.subscription_id:
                    donor.subscription_id = mapped.subscription_id
            if donor is None:
                donor = await donor_store.upsert_donor_by_subscription(
                    db, mapped.subscription_id, email=mapped.email, name=mapped.name
                )
            if mapped.payment:
                await payment_store.record_payment(db, donor_id=donor.id, **mapped.payment)
            transition = await record_transition(
                db, donor, mapped.event, now, source="webhook", external_id=event_id, extra=meta
            )
            return donor.id, transition

    async def _record_only(self, event_id: str, event_type: str, payload: dict[str, Any], *, status: str) -> WebhookResult:
        try:
            async with self.container.session() as db:
                await event_store.log_event(db, event_type, payload, external_id=event_id)
        except ConstraintViolation:
            return WebhookResult(status="duplicate", event_id=event_id)
        logger.info("Webhook %s recorded as %s", event_id, event_type)
        return WebhookResult(status=status, event_id=event_id)

    async def _with_billing_time(self, mapped: MappedEvent) -> LifecycleEvent:
        event = mapped.event
        try:
            subscription = await self.container.payment.get_subscription(mapped.subscription_id)
        except AdapterError as e:
            logger.warning("Could not look up billing period for %s: %s", mapped.subscription_id, e.message)
            return event
        ends_at = subscription.get("next_billing_time")
        if ends_at is None:
            return event
        return SubscriptionCancelled(event_time=event.event_time, ends_at=ends_at, immediate=False)
