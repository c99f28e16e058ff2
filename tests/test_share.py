# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Share-link funnel: admin creates a link, the invitee creates an account and checks out."""

from datetime import timedelta

import pytest

from donorgate_server.auth import DONOR_COOKIE, hash_password
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import invites as invite_store
from donorgate_server.store import prospects as prospect_store
from donorgate_server.store import share_links as share_link_store

pytestmark = pytest.mark.anyio


async def create_link(client, login_admin, **body):
    login_admin()
    r = await client.post("/admin/share-links", json=body)
    assert r.status_code == 200, r.text
    return r.json()


async def test_prospect_link_describes_owner(client, login_admin):
    created = await create_link(client, login_admin, email="Friend@Example.com", name="Fran")
    link = created["shareLink"]
    assert link["url"] == f"http://test/share/{link['token']}"
    assert created["prospect"]["email"] == "friend@example.com"

    r = await client.get(f"/share/{link['token']}")
    assert r.status_code == 200
    body = r.json()
    assert body["owner"] == {"kind": "prospect", "email": "friend@example.com", "name": "Fran"}
    assert body["hasAccount"] is False
    assert body["valid"] is True
    assert body["sessionToken"] == link["sessionToken"]


async def test_unknown_link_is_404(client):
    r = await client.get("/share/does-not-exist")
    assert r.status_code == 404


async def test_account_promotes_prospect(client, container, login_admin, mail):
    link = (await create_link(client, login_admin, email="friend@example.com", name="Fran"))["shareLink"]

    r = await client.post(
        f"/share/{link['token']}/account",
        json={"sessionToken": link["sessionToken"], "password": "long-enough-pw"},
    )

    assert r.status_code == 200, r.text
    donor = r.json()["donor"]
    assert donor["email"] == "friend@example.com"
    assert donor["status"] == "prospect"
    assert r.json()["sessionToken"]
    assert mail.of_kind("verification")[0]["to"] == "friend@example.com"
    async with container.session() as db:
        stored_link = await share_link_store.get_share_link_by_token(db, link["token"])
        prospect = await prospect_store.get_prospect(db, link["prospectId"])
    assert stored_link.donor_id == donor["id"]
    assert stored_link.prospect_id is None
    assert stored_link.used_at is not None
    assert prospect.converted_donor_id == donor["id"]

    # The link is spent
    again = await client.post(
        f"/share/{link['token']}/account",
        json={"sessionToken": link["sessionToken"], "password": "another-password"},
    )
    assert again.status_code == 409


async def test_existing_account_email_is_refused(client, container, login_admin, make_donor):
    await make_donor(email="taken@example.com", password_hash=hash_password("original-pw"))
    async with container.session() as db:
        prospect = await prospect_store.create_prospect(db, email="friend@example.com")
        link = await share_link_store.create_or_update_share_link(
            db, token="tok-4", session_token="sess-4", now=container.now(), prospect_id=prospect.id
        )

    r = await client.post(
        "/share/tok-4/account",
        json={"sessionToken": "sess-4", "password": "long-enough-pw", "email": "taken@example.com"},
    )

    assert r.status_code == 409
    assert "log in" in r.json()["detail"]
    async with container.session() as db:
        stored_link = await share_link_store.get_share_link_by_token(db, "tok-4")
        events, _ = await event_store.list_events(db)
    assert stored_link.prospect_id == prospect.id
    assert stored_link.donor_id is None
    assert stored_link.used_at is None
    assert events == []


async def test_prospect_link_cannot_claim_passwordless_donor(client, container, make_donor):
    payer = await make_donor(email="payer@example.com", status="active", subscription_id="I-PAYER")
    async with container.session() as db:
        prospect = await prospect_store.create_prospect(db, email="friend@example.com")
        await share_link_store.create_or_update_share_link(
            db, token="tok-p", session_token="sess-p", now=container.now(), prospect_id=prospect.id
        )

    r = await client.post(
        "/share/tok-p/account",
        json={"sessionToken": "sess-p", "password": "someone-elses-pw", "email": "payer@example.com"},
    )

    assert r.status_code == 409
    assert "log in" in r.json()["detail"]
    assert client.cookies.get(DONOR_COOKIE) is None
    async with container.session() as db:
        stored = await donor_store.get_donor(db, payer.id)
        stored_link = await share_link_store.get_share_link_by_token(db, "tok-p")
    assert stored.password_hash is None
    assert stored_link.prospect_id == prospect.id
    assert stored_link.used_at is None


async def test_wrong_session_token_is_forbidden(client, container, make_donor):
    donor = await make_donor()
    async with container.session() as db:
        await share_link_store.create_or_update_share_link(
            db, token="tok-5", session_token="sess-5", now=container.now(), donor_id=donor.id
        )
    r = await client.post("/share/tok-5/account", json={"sessionToken": "nope", "password": "long-enough-pw"})
    assert r.status_code == 403


async def test_expired_link_is_refused(client, container, make_donor, clock):
    donor = await make_donor()
    async with container.session() as db:
        await share_link_store.create_or_update_share_link(
            db, token="tok-6", session_token="sess-6", now=container.now(), donor_id=donor.id
        )
    clock.advance(days=8)
    r = await client.get("/share/tok-6")
    assert r.json()["valid"] is False
    r = await client.post("/share/tok-6/account", json={"sessionToken": "sess-6", "password": "long-enough-pw"})
    assert r.status_code == 409


async def test_donor_link_sets_password(client, container, login_admin, make_donor):
    donor = await make_donor(email="gift@example.com", name="")
    link = (await create_link(client, login_admin, donor_id=donor.id))["shareLink"]

    r = await client.post(
        f"/share/{link['token']}/account",
        json={"sessionToken": link["sessionToken"], "password": "long-enough-pw", "name": "Gift Giver"},
    )

    assert r.status_code == 200
    assert r.json()["donor"]["name"] == "Gift Giver"
    async with container.session() as db:
        stored = await donor_store.get_donor(db, donor.id)
    assert stored.password_hash


async def test_admin_link_for_known_email_targets_donor(client, login_admin, make_donor):
    donor = await make_donor(email="known@example.com")
    created = await create_link(client, login_admin, email="known@example.com")
    assert created["prospect"] is None
    assert created["shareLink"]["donorId"] == donor.id


async def test_rotating_link_resets_expiry(client, login_admin, make_donor, clock):
    donor = await make_donor()
    first = (await create_link(client, login_admin, donor_id=donor.id))["shareLink"]
    clock.advance(days=3)
    second = (await create_link(client, login_admin, donor_id=donor.id))["shareLink"]
    assert second["id"] == first["id"]
    assert second["token"] != first["token"]
    assert (await client.get(f"/share/{first['token']}")).status_code == 404
    r = await client.get(f"/share/{second['token']}")
    assert r.json()["expiresAt"] == (clock.now + timedelta(days=7)).isoformat()


async def test_checkout_after_account(client, container, login_admin, payment):
    link = (await create_link(client, login_admin, email="friend@example.com"))["shareLink"]
    await client.post(
        f"/share/{link['token']}/account",
        json={"sessionToken": link["sessionToken"], "password": "long-enough-pw"},
    )

    r = await client.post(f"/share/{link['token']}/checkout", json={"sessionToken": link["sessionToken"]})

    assert r.status_code == 200
    assert r.json()["subscriptionId"] == "I-NEW1"
    assert "ba_token=I-NEW1" in r.json()["approvalUrl"]
    assert payment.created[0]["subscriber"]["email_address"] == "friend@example.com"
    async with container.session() as db:
        donor = await donor_store.get_donor_by_email(db, "friend@example.com")
    assert donor.status == "pending"
    assert donor.subscription_id == "I-NEW1"


async def test_checkout_before_account_is_404(client, login_admin):
    link = (await create_link(client, login_admin, email="friend@example.com"))["shareLink"]
    r = await client.post(f"/share/{link['token']}/checkout", json={"sessionToken": link["sessionToken"]})
    assert r.status_code == 404


async def donor_link(container, make_donor, token="tok-i", **fields):
    donor = await make_donor(**fields)
    async with container.session() as db:
        await share_link_store.create_or_update_share_link(
            db, token=token, session_token="sess-i", now=container.now(), donor_id=donor.id
        )
    return donor


async def test_share_link_generates_invite(client, container, make_donor, media, mail):
    donor = await donor_link(container, make_donor, status="active", media_account_id="plex-42")

    r = await client.post(
        "/share/tok-i", json={"sessionToken": "sess-i", "email": "friend@example.com", "name": "Fran"}
    )

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["reused"] is False
    assert body["invite"]["recipientEmail"] == "friend@example.com"
    assert body["invite"]["note"] == "Generated from share link for Fran <friend@example.com>"
    assert body["inviteLimitReached"] is True
    assert [c["email"] for c in media.created] == ["friend@example.com"]
    assert mail.of_kind("invite")[0]["to"] == "friend@example.com"
    async with container.session() as db:
        link = await share_link_store.get_share_link_by_token(db, "tok-i")
        generated, _ = await event_store.list_events(db, event_type="invite.share.generated")
    assert link.used_at is not None
    assert generated[0].payload == {"donorId": donor.id, "inviteId": body["invite"]["id"], "shareLinkId": link.id}


async def test_share_link_reuses_matching_invite(client, container, make_donor, media):
    donor = await donor_link(container, make_donor, status="trial", media_account_id="plex-42")
    async with container.session() as db:
        existing = await invite_store.create_invite(
            db,
            donor_id=donor.id,
            media_invite_id="inv-1",
            media_invite_url="https://app.plex.tv/invite/1",
            recipient_email="friend@example.com",
        )

    r = await client.post("/share/tok-i", json={"sessionToken": "sess-i", "email": "Friend@Example.com"})

    assert r.json()["reused"] is True
    assert r.json()["invite"]["id"] == existing.id
    assert media.created == []
    async with container.session() as db:
        link = await share_link_store.get_share_link_by_token(db, "tok-i")
        reused, _ = await event_store.list_events(db, event_type="invite.share.reused")
    assert link.used_at is not None
    assert len(reused) == 1


async def test_share_invite_preconditions(client, container, login_admin, make_donor, clock):
    lapsed = await donor_link(container, make_donor, status="expired", media_account_id="plex-42")
    body = {"sessionToken": "sess-i", "email": "friend@example.com"}

    assert (await client.post("/share/tok-i", json={**body, "sessionToken": "nope"})).status_code == 403
    assert (await client.post("/share/tok-i", json=body)).status_code == 403
    async with container.session() as db:
        assert (await invite_store.list_invites(db, lapsed.id)) == []

    prospect_link = (await create_link(client, login_admin, email="lead@example.com"))["shareLink"]
    r = await client.post(
        f"/share/{prospect_link['token']}",
        json={"sessionToken": prospect_link["sessionToken"], "email": "a@example.com"},
    )
    assert r.status_code == 404

    clock.advance(days=8)
    assert (await client.post("/share/tok-i", json=body)).status_code == 409
