# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Admin API."""

from datetime import timedelta

import pytest

from donorgate_server.services.admin_credentials import save_credentials
from donorgate_server.store import donors as donor_store
from donorgate_server.store import invites as invite_store
from donorgate_server.store import payments as payment_store
from donorgate_server.store import support as support_store

from conftest import START

pytestmark = pytest.mark.anyio

ADMIN_PASSWORD = "a-long-admin-password"


async def test_login_sets_csrf_and_session(client, settings):
    save_credentials(settings.admin_credentials_path, "owner", ADMIN_PASSWORD)

    r = await client.post("/admin/login", json={"username": "owner", "password": "wrong-password"})
    assert r.status_code == 401

    r = await client.post("/admin/login", json={"username": "owner", "password": ADMIN_PASSWORD})
    assert r.status_code == 200
    csrf = r.json()["csrfToken"]
    assert client.cookies.get("csrf_token") == csrf

    assert (await client.get("/admin/session")).json() == {"username": "owner"}

    # Mutations need the header as well as the cookie
    r = await client.put("/admin/settings/cooldown", json={"invite_days": 14})
    assert r.status_code == 403
    r = await client.put("/admin/settings/cooldown", json={"invite_days": 14}, headers={"X-CSRF-Token": csrf})
    assert r.status_code == 200
    assert r.json()["settings"]["invite_days"] == 14


async def test_admin_routes_need_admin_session(client, make_donor, login_donor):
    donor = await make_donor()
    login_donor(donor.id)
    assert (await client.get("/admin/subscribers")).status_code == 401


async def test_subscriber_list_filters(client, login_admin, make_donor):
    await make_donor(email="ann@example.com", name="Ann", status="active")
    await make_donor(email="bob@example.com", name="Bob", status="prospect")
    login_admin()

    r = await client.get("/admin/subscribers")
    assert r.json()["total"] == 2

    r = await client.get("/admin/subscribers", params={"status": "active"})
    assert [s["email"] for s in r.json()["subscribers"]] == ["ann@example.com"]

    r = await client.get("/admin/subscribers", params={"search": "bob"})
    assert [s["name"] for s in r.json()["subscribers"]] == ["Bob"]
    assert r.json()["subscribers"][0]["latestInvite"] is None


async def test_subscriber_detail(client, container, login_admin, make_donor):
    donor = await make_donor(status="active")
    async with container.session() as db:
        await payment_store.record_payment(
            db, donor_id=donor.id, payment_id="PAY-1", amount="5.00", currency="USD", paid_at=START
        )
    login_admin()

    r = await client.get(f"/admin/subscribers/{donor.id}")
    body = r.json()
    assert body["donor"]["id"] == donor.id
    assert body["payments"][0]["paymentId"] == "PAY-1"
    assert body["invites"] == []
    assert body["shareLink"] is None

    assert (await client.get("/admin/subscribers/999")).status_code == 404


async def test_admin_invite_can_skip_cooldown(client, container, login_admin, make_donor, media):
    donor = await make_donor(status="active", media_email="viewer@example.com")
    async with container.session() as db:
        await invite_store.create_invite(
            db,
            donor_id=donor.id,
            media_invite_id="inv-old",
            media_invite_url=None,
            recipient_email="viewer@example.com",
            created_at=START - timedelta(days=1),
        )
    login_admin()

    r = await client.post(f"/admin/subscribers/{donor.id}/invite", json={"email": "friend@example.com"})
    assert r.status_code == 409

    r = await client.post(
        f"/admin/subscribers/{donor.id}/invite", json={"email": "friend@example.com", "ignoreCooldown": True}
    )
    assert r.status_code == 200
    assert r.json()["invite"]["recipientEmail"] == "friend@example.com"
    assert len(media.created) == 1


async def test_admin_invite_without_body(client, login_admin, make_donor, mail):
    donor = await make_donor(status="trial", media_email="viewer@example.com")
    login_admin()
    r = await client.post(f"/admin/subscribers/{donor.id}/invite")
    assert r.status_code == 200
    assert r.json()["reused"] is False

    r = await client.post(f"/admin/subscribers/{donor.id}/invite/resend")
    assert r.status_code == 200
    assert len(mail.of_kind("invite")) == 2


async def test_resend_without_invite_is_404(client, login_admin, make_donor):
    donor = await make_donor(status="active")
    login_admin()
    assert (await client.post(f"/admin/subscribers/{donor.id}/invite/resend")).status_code == 404


async def test_revoke_ends_access_now(client, container, login_admin, make_donor, media):
    donor = await make_donor(status="active", media_account_id="plex-42")
    login_admin()

    r = await client.post(f"/admin/subscribers/{donor.id}/revoke")

    assert r.status_code == 200
    assert r.json()["changed"] is True
    assert r.json()["donor"]["status"] == "expired"
    assert r.json()["donor"]["accessExpiresAt"] is None
    assert media.revoked == [{"media_account_id": "plex-42", "email": None}]


async def test_revoke_prospect_still_removes_share(client, login_admin, make_donor, media):
    donor = await make_donor(status="prospect", media_account_id="plex-42")
    login_admin()
    r = await client.post(f"/admin/subscribers/{donor.id}/revoke")
    assert r.json()["changed"] is False
    assert r.json()["donor"]["status"] == "prospect"
    assert len(media.revoked) == 1


async def test_status_reset(client, login_admin, make_donor):
    donor = await make_donor(status="trial_expired", trial_started_at=START - timedelta(days=10))
    login_admin()

    r = await client.post(f"/admin/subscribers/{donor.id}/status", json={"status": "prospect"})
    assert r.json()["donor"]["status"] == "prospect"
    assert r.json()["donor"]["trialStartedAt"] is None

    r = await client.post(f"/admin/subscribers/{donor.id}/status", json={"status": "vip"})
    assert r.status_code == 400


async def test_delete_revokes_then_removes(client, container, login_admin, make_donor, media):
    donor = await make_donor(status="active", media_account_id="plex-42")
    async with container.session() as db:
        await invite_store.create_invite(
            db, donor_id=donor.id, media_invite_id="inv-1", media_invite_url=None, recipient_email="v@example.com"
        )
    login_admin()

    r = await client.delete(f"/admin/subscribers/{donor.id}")

    assert r.json() == {"deleted": True}
    assert len(media.revoked) == 1
    async with container.session() as db:
        assert await donor_store.find_donor(db, donor.id) is None
    r = await client.get("/admin/events", params={"type": "admin.donor.deleted"})
    assert r.json()["total"] == 1
    assert r.json()["events"][0]["payload"]["email"] == donor.email


async def test_delete_survives_media_outage(client, container, login_admin, make_donor, media):
    from donorgate_server.errors import AdapterError

    donor = await make_donor(status="active", media_account_id="plex-42")
    media.revoke_error = AdapterError(AdapterError.UNAVAILABLE, "Plex timed out")
    login_admin()
    r = await client.delete(f"/admin/subscribers/{donor.id}")
    assert r.status_code == 200
    async with container.session() as db:
        assert await donor_store.find_donor(db, donor.id) is None


async def test_events_filter_by_donor(client, login_admin, make_donor):
    donor = await make_donor(status="prospect")
    other = await make_donor(email="other@example.com", status="prospect")
    login_admin()
    await client.post(f"/admin/subscribers/{donor.id}/status", json={"status": "pending"})
    await client.post(f"/admin/subscribers/{other.id}/status", json={"status": "pending"})

    r = await client.get("/admin/events", params={"donorId": donor.id})
    assert r.json()["total"] == 1
    assert r.json()["events"][0]["eventType"] == "admin.status.reset"


async def test_support_reply_and_resolve(client, container, login_admin, make_donor, mail):
    donor = await make_donor()
    async with container.session() as db:
        request, _ = await support_store.create_request(
            db, donor_id=donor.id, subject="Help", body="Cannot log in", now=START
        )
    login_admin()

    r = await client.get("/admin/support", params={"resolved": False})
    assert [s["id"] for s in r.json()["requests"]] == [request.id]

    r = await client.post(f"/admin/support/{request.id}/reply", json={"body": "Try resetting your password."})
    assert r.json()["emailed"] is True
    assert mail.of_kind("support_reply")[0]["to"] == donor.email

    r = await client.post(f"/admin/support/{request.id}/resolve")
    assert r.json()["request"]["resolved"] is True

    r = await client.get(f"/admin/support/{request.id}")
    assert r.json()["donor"]["id"] == donor.id
    assert [m["authorRole"] for m in r.json()["messages"]] == ["donor", "admin"]


async def test_announcement_goes_to_current_donors(client, login_admin, make_donor, mail):
    await make_donor(email="paid@example.com", status="active")
    await make_donor(email="trying@example.com", status="trial")
    await make_donor(email="lapsed@example.com", status="expired")
    login_admin()

    r = await client.post("/admin/announcements", json={"subject": "Maintenance", "body": "Down Sunday."})

    assert r.json()["recipients"] == 2
    assert sorted(m["to"] for m in mail.of_kind("announcement")) == ["paid@example.com", "trying@example.com"]


async def test_announcement_with_no_recipients(client, login_admin, mail):
    login_admin()
    r = await client.post("/admin/announcements", json={"subject": "Hello", "body": "Anyone?"})
    assert r.json() == {"sent": [], "failed": [], "recipients": 0}


async def test_overview_counts(client, login_admin, make_donor):
    await make_donor(email="a@example.com", status="active")
    await make_donor(email="b@example.com", status="active")
    await make_donor(email="c@example.com", status="prospect")
    login_admin()
    await client.post("/admin/share-links", json={"email": "lead@example.com"})

    body = (await client.get("/admin/overview")).json()
    assert body["donors"] == 3
    assert body["byStatus"] == {"active": 2, "prospect": 1}
    assert body["prospects"] == 1
    assert body["openSupportRequests"] == 0
