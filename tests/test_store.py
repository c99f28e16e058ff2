# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Store primitives against a temporary SQLite database."""

from datetime import timedelta

import pytest

from donorgate_server.errors import Conflict, ConflictingOwner, ConstraintViolation, ValidationError
from donorgate_server.models import Payment
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import invites as invite_store
from donorgate_server.store import payments as payment_store
from donorgate_server.store import prospects as prospect_store
from donorgate_server.store import share_links as share_link_store
from donorgate_server.store import tokens as token_store

from conftest import START

pytestmark = pytest.mark.anyio


async def test_create_donor_normalizes_email(container):
    async with container.session() as db:
        donor = await donor_store.create_donor(db, email="  Someone@Example.COM ", name=" Sam ")
    assert donor.email == "someone@example.com"
    assert donor.name == "Sam"
    assert donor.status == "prospect"


async def test_create_donor_rejects_duplicates_and_bad_email(container):
    async with container.session() as db:
        await donor_store.create_donor(db, email="a@example.com")
    with pytest.raises(Conflict):
        async with container.session() as db:
            await donor_store.create_donor(db, email="A@example.com")
    with pytest.raises(ValidationError):
        async with container.session() as db:
            await donor_store.create_donor(db, email="not-an-email")


async def test_upsert_by_subscription_attaches_existing_email(container, make_donor):
    existing = await make_donor(email="sub@example.com")
    async with container.session() as db:
        donor = await donor_store.upsert_donor_by_subscription(db, "I-1", email="SUB@example.com", name="Sub")
    assert donor.id == existing.id
    assert donor.subscription_id == "I-1"

    async with container.session() as db:
        again = await donor_store.upsert_donor_by_subscription(db, "I-1", email="other@example.com")
    assert again.id == existing.id
    assert again.email == "sub@example.com"


async def test_upsert_creates_prospect_donor(container):
    async with container.session() as db:
        donor = await donor_store.upsert_donor_by_subscription(db, "I-2", email="new@example.com")
    assert donor.status == "prospect"
    with pytest.raises(ValidationError):
        async with container.session() as db:
            await donor_store.upsert_donor_by_subscription(db, "I-3")


async def test_one_active_invite_per_donor(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        await invite_store.create_invite(
            db, donor_id=donor.id, media_invite_id="a", media_invite_url=None, recipient_email="a@example.com"
        )
    with pytest.raises(ConstraintViolation):
        async with container.session() as db:
            await invite_store.create_invite(
                db, donor_id=donor.id, media_invite_id="b", media_invite_url=None, recipient_email="b@example.com"
            )
    async with container.session() as db:
        assert await invite_store.supersede_active_invites(db, donor.id, START) == 1
        await invite_store.create_invite(
            db, donor_id=donor.id, media_invite_id="b", media_invite_url=None, recipient_email="b@example.com"
        )
    async with container.session() as db:
        invites = await invite_store.list_invites(db, donor.id)
    assert [i.revoked_at is None for i in invites].count(True) == 1


async def test_share_link_needs_exactly_one_owner(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        prospect = await prospect_store.create_prospect(db, email="p@example.com")
    with pytest.raises(ConflictingOwner):
        async with container.session() as db:
            await share_link_store.create_or_update_share_link(
                db, token="t", session_token="s", now=START, donor_id=donor.id, prospect_id=prospect.id
            )
    with pytest.raises(ConflictingOwner):
        async with container.session() as db:
            await share_link_store.create_or_update_share_link(db, token="t", session_token="s", now=START)


async def test_share_link_update_resets_timers(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        link = await share_link_store.create_or_update_share_link(
            db, token="t1", session_token="s1", now=START, donor_id=donor.id
        )
        await share_link_store.mark_share_link_used(db, link, START)
    later = START + timedelta(days=1)
    async with container.session() as db:
        link = await share_link_store.create_or_update_share_link(
            db, token="t2", session_token="s2", now=later, donor_id=donor.id
        )
    assert link.token == "t2"
    assert link.used_at is None
    assert link.expires_at == later + timedelta(days=7)
    assert share_link_store.is_share_link_valid(link, later)
    assert not share_link_store.is_share_link_valid(link, link.expires_at)


async def test_mark_share_link_used_sets_once(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        link = await share_link_store.create_or_update_share_link(
            db, token="t", session_token="s", now=START, donor_id=donor.id
        )
        assert await share_link_store.mark_share_link_used(db, link, START)
        assert not await share_link_store.mark_share_link_used(db, link, START + timedelta(hours=1))
    assert link.used_at == START
    assert link.last_used_at == START + timedelta(hours=1)


async def test_verification_token_is_single_use(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        token = await token_store.create_verification_token(db, donor.id, START)
    async with container.session() as db:
        assert await token_store.consume_verification_token(db, token, START) == donor.id
    async with container.session() as db:
        assert await token_store.consume_verification_token(db, token, START) is None


async def test_password_reset_token_expires(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        token = await token_store.create_password_reset_token(db, donor.id, START)
    async with container.session() as db:
        assert await token_store.consume_password_reset_token(db, token, START + timedelta(hours=2)) is None
    async with container.session() as db:
        assert await token_store.consume_password_reset_token(db, token, START) is None


async def test_payment_id_is_idempotent(container, make_donor):
    donor = await make_donor()
    for _ in range(2):
        async with container.session() as db:
            await payment_store.record_payment(
                db, donor_id=donor.id, payment_id="PAY-1", amount="5.00", currency="USD", paid_at=START
            )
    async with container.session() as db:
        assert await payment_store.count_payments(db, donor.id) == 1


async def test_event_external_id_is_unique(container):
    async with container.session() as db:
        await event_store.log_event(db, "webhook.unknown", external_id="WH-1")
    with pytest.raises(ConstraintViolation):
        async with container.session() as db:
            await event_store.log_event(db, "webhook.unknown", external_id="WH-1")
    async with container.session() as db:
        assert await event_store.event_exists(db, "WH-1")


async def test_delete_donor_keeps_payments_and_events(container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        await payment_store.record_payment(
            db, donor_id=donor.id, payment_id="PAY-2", amount="5.00", currency="USD", paid_at=START
        )
        await event_store.log_event(db, "donor.signup", donor_id=donor.id)
        await invite_store.create_invite(
            db, donor_id=donor.id, media_invite_id="a", media_invite_url=None, recipient_email="a@example.com"
        )
    async with container.session() as db:
        await donor_store.delete_donor(db, await donor_store.get_donor(db, donor.id))
    async with container.session() as db:
        assert await donor_store.find_donor(db, donor.id) is None
        assert await invite_store.list_invites(db, donor.id) == []
        payment = await db.get(Payment, 1)
        assert payment.donor_id is None
        events, _ = await event_store.list_events(db)
        assert events and all(e.donor_id is None for e in events)
