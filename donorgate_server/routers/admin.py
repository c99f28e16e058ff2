# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Admin API: subscribers, invites, share links, settings, events, support and announcements."""

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.api.schemas import (
    AdminInviteRequest,
    AdminLogin,
    AnnouncementRequest,
    DonorResponse,
    EventResponse,
    InviteResponse,
    PaymentResponse,
    ProspectResponse,
    ShareLinkCreate,
    ShareLinkResponse,
    StatusReset,
    SupportMessageCreate,
    SupportMessageResponse,
    SupportRequestResponse,
    dump,
)
from donorgate_server.auth import end_admin_session, get_admin, require_admin_csrf, start_admin_session
from donorgate_server.container import Container, get_container
from donorgate_server.database import get_db
from donorgate_server.entitlement.invites import INVITE_ELIGIBLE_STATUSES
from donorgate_server.errors import AdapterError, NotFound, Unauthorized, ValidationError
from donorgate_server.models import Donor
from donorgate_server.rate_limit import rate_limit_dep
from donorgate_server.services import server_settings
from donorgate_server.services.admin_credentials import check_credentials
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import invites as invite_store
from donorgate_server.store import payments as payment_store
from donorgate_server.store import prospects as prospect_store
from donorgate_server.store import share_links as share_link_store
from donorgate_server.store import support as support_store
from donorgate_server.store.settings import get_settings, update_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def share_url(container: Container, token: str) -> str:
    return f"{container.settings.app_base_url.rstrip('/')}/share/{token}"


def _share_link_payload(container: Container, link) -> dict:
    return {**dump(ShareLinkResponse, link), "url": share_url(container, link.token), "sessionToken": link.session_token}


def _group(name: str) -> server_settings.SettingsGroup:
    try:
        return server_settings.get_group(name)
    except KeyError:
        raise NotFound(f"Unknown settings group {name!r}") from None


# Session


@router.post("/login", dependencies=[Depends(rate_limit_dep)])
async def login(data: AdminLogin, response: Response, container: Container = Depends(get_container)) -> dict:
    """Check the credentials file and start an admin session."""
    if not check_credentials(container.settings.admin_credentials_path, data.username, data.password):
        raise Unauthorized("Invalid username or password")
    csrf_token = start_admin_session(response, container.settings, data.username)
    logger.info("Admin %s signed in", data.username)
    return {"username": data.username, "csrfToken": csrf_token}


@router.post("/logout")
async def logout(response: Response) -> dict:
    end_admin_session(response)
    return {"message": "Signed out"}


@router.get("/session")
async def get_session(username: str = Depends(get_admin)) -> dict:
    return {"username": username}


# Subscribers


@router.get("/subscribers")
async def list_subscribers(
    search: str | None = None,
    status: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    donors, total = await donor_store.list_donors(db, search=search, status=status, limit=limit, offset=offset)
    items = []
    for donor in donors:
        latest = await invite_store.get_latest_invite(db, donor.id)
        items.append(
            {**dump(DonorResponse, donor), "latestInvite": dump(InviteResponse, latest) if latest else None}
        )
    return {"subscribers": items, "total": total}


async def subscriber_detail(container: Container, donor_id: int) -> dict:
    async with container.session() as db:
        donor = await donor_store.get_donor(db, donor_id)
        invites = await invite_store.list_invites(db, donor_id)
        payments = await payment_store.list_payments(db, donor_id)
        events, _ = await event_store.list_events(db, donor_id=donor_id, limit=50)
        link = await share_link_store.get_share_link_for_donor(db, donor_id)
    return {
        "donor": dump(DonorResponse, donor),
        "invites": [dump(InviteResponse, i) for i in invites],
        "payments": [dump(PaymentResponse, p) for p in payments],
        "events": [dump(EventResponse, e) for e in events],
        "shareLink": _share_link_payload(container, link) if link else None,
    }


@router.get("/subscribers/{donor_id}")
async def get_subscriber(
    donor_id: int,
    _admin: str = Depends(get_admin),
    container: Container = Depends(get_container),
) -> dict:
    return await subscriber_detail(container, donor_id)


@router.post("/subscribers/{donor_id}/invite")
async def invite_subscriber(
    donor_id: int,
    data: AdminInviteRequest | None = None,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    data = data or AdminInviteRequest()
    result = await container.coordinator.issue(
        donor_id,
        recipient_email=data.email,
        note=data.note,
        source="admin",
        ignore_cooldown=data.ignore_cooldown,
    )
    return {"invite": dump(InviteResponse, result.invite), "reused": result.reused, **result.cooldown.to_dict()}


@router.post("/subscribers/{donor_id}/invite/resend")
async def resend_invite(
    donor_id: int,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    invite = await container.coordinator.resend_email(donor_id)
    return {"invite": dump(InviteResponse, invite)}


@router.post("/subscribers/{donor_id}/revoke")
async def revoke_subscriber(
    donor_id: int,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """End access now and remove the account from the media server."""
    donor, transition = await container.lifecycle.admin_revoke(donor_id)
    return {"donor": dump(DonorResponse, donor), "changed": transition.changed}


@router.post("/subscribers/{donor_id}/status")
async def reset_status(
    donor_id: int,
    data: StatusReset,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    donor, transition = await container.lifecycle.admin_reset_status(donor_id, data.status)
    return {"donor": dump(DonorResponse, donor), "changed": transition.changed}


@router.delete("/subscribers/{donor_id}")
async def delete_subscriber(
    donor_id: int,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """Revoke media access, then delete the donor. Payments and events stay, unlinked."""
    async with container.locks.hold(donor_id):
        async with container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
            email = donor.email
        try:
            await container.coordinator.revoke_held(donor_id, "admin.delete")
        except AdapterError as e:
            logger.warning("Media revoke before deleting donor %s failed: %s", donor_id, e.message)
        async with container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
            await donor_store.delete_donor(db, donor)
            await event_store.log_event(db, "admin.donor.deleted", {"donorId": donor_id, "email": email})
    return {"deleted": True}


# Share links and prospects


@router.post("/share-links")
async def create_share_link(
    data: ShareLinkCreate,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """Create (or rotate) a share link for a donor, or for a new prospect given an email."""
    now = container.now()
    donor_id = data.donor_id
    prospect = None
    async with container.session() as db:
        if donor_id is not None:
            await donor_store.get_donor(db, donor_id)
        elif data.email or data.name:
            existing = await donor_store.get_donor_by_email(db, data.email) if data.email else None
            if existing:
                donor_id = existing.id
            else:
                prospect = await prospect_store.create_prospect(
                    db, email=data.email, name=data.name or "", note=data.note
                )
        else:
            raise ValidationError({"donorId": "Provide a donor id or a prospect email."})
        link = await share_link_store.create_or_update_share_link(
            db,
            token=secrets.token_urlsafe(16),
            session_token=secrets.token_urlsafe(24),
            now=now,
            donor_id=donor_id if prospect is None else None,
            prospect_id=prospect.id if prospect else None,
        )
        await event_store.log_event(
            db,
            "admin.share_link.created",
            {"shareLinkId": link.id, "donorId": link.donor_id, "prospectId": link.prospect_id},
            donor_id=link.donor_id,
        )
    return {
        "shareLink": _share_link_payload(container, link),
        "prospect": dump(ProspectResponse, prospect) if prospect else None,
    }


@router.get("/prospects")
async def list_prospects(
    include_converted: bool = False,
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    prospects = await prospect_store.list_prospects(db, include_converted=include_converted)
    return {"prospects": [dump(ProspectResponse, p) for p in prospects]}


# Settings


@router.get("/settings/{group}")
async def read_settings(
    group: str,
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _group(group)
    value = await get_settings(db, group)
    return {"group": group, "settings": server_settings.mask_secrets(group, value)}


@router.put("/settings/{group}")
async def write_settings(
    group: str,
    update: dict[str, Any] = Body(...),
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """Partial update. Blank or masked secrets keep the stored value."""
    _group(group)
    async with container.session() as db:
        saved = await update_settings(db, group, update)
        await event_store.log_event(db, "admin.settings.updated", {"group": group, "fields": sorted(update)})
    return {"group": group, "settings": server_settings.mask_secrets(group, saved)}


@router.post("/settings/{group}/test")
async def test_settings(
    group: str,
    overrides: dict[str, Any] | None = Body(default=None),
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """Check connectivity with the stored settings merged with unsaved overrides."""
    entry = _group(group)
    if entry.verifier is None:
        raise ValidationError({"group": f"Settings group {group!r} has no connection test."})
    adapter = getattr(container, entry.verifier)
    return await adapter.verify_connection(overrides or {})


# Events


@router.get("/events")
async def list_events(
    event_type: str | None = Query(None, alias="type"),
    donor_id: int | None = Query(None, alias="donorId"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events, total = await event_store.list_events(
        db, limit=limit, offset=offset, event_type=event_type, donor_id=donor_id
    )
    return {"events": [dump(EventResponse, e) for e in events], "total": total}


# Support


@router.get("/support")
async def support_inbox(
    resolved: bool | None = None,
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    requests = await support_store.list_requests(db, resolved=resolved)
    return {"requests": [dump(SupportRequestResponse, r) for r in requests]}


@router.get("/support/{request_id}")
async def support_detail(
    request_id: int,
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    request = await support_store.get_request(db, request_id)
    messages = await support_store.list_messages(db, request.id)
    donor = await donor_store.find_donor(db, request.donor_id) if request.donor_id else None
    return {
        "request": dump(SupportRequestResponse, request),
        "messages": [dump(SupportMessageResponse, m) for m in messages],
        "donor": dump(DonorResponse, donor) if donor else None,
    }


@router.post("/support/{request_id}/reply")
async def support_reply(
    request_id: int,
    data: SupportMessageCreate,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """Append an admin reply and mail it to the donor."""
    async with container.session() as db:
        request = await support_store.get_request(db, request_id)
        message = await support_store.add_message(
            db, request, author_role="admin", body=data.body, now=container.now()
        )
        donor = await donor_store.find_donor(db, request.donor_id) if request.donor_id else None
    emailed = False
    if donor:
        try:
            await container.mail.send_support_reply(to=donor.email, subject=request.subject, body=data.body)
            emailed = True
        except AdapterError as e:
            logger.warning("Support reply email for request %s failed: %s", request_id, e.message)
    return {
        "request": dump(SupportRequestResponse, request),
        "message": dump(SupportMessageResponse, message),
        "emailed": emailed,
    }


@router.post("/support/{request_id}/resolve")
async def support_resolve(
    request_id: int,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    async with container.session() as db:
        request = await support_store.get_request(db, request_id)
        await support_store.resolve_request(db, request, container.now())
    return {"request": dump(SupportRequestResponse, request)}


# Announcements and overview


@router.post("/announcements")
async def send_announcement(
    data: AnnouncementRequest,
    _admin: str = Depends(require_admin_csrf),
    container: Container = Depends(get_container),
) -> dict:
    """Mail every donor with current access."""
    async with container.session() as db:
        donors = await donor_store.list_donors_by_status(db, INVITE_ELIGIBLE_STATUSES)
    recipients = [d.email for d in donors if d.email]
    if not recipients:
        return {"sent": [], "failed": [], "recipients": 0}
    result = await container.mail.send_announcement(recipients=recipients, subject=data.subject, body=data.body)
    async with container.session() as db:
        await event_store.log_event(
            db,
            "admin.announcement.sent",
            {"subject": data.subject, "sent": len(result["sent"]), "failed": len(result["failed"])},
        )
    return {**result, "recipients": len(recipients)}


@router.get("/overview")
async def overview(
    _admin: str = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Dashboard counts."""
    rows = await db.execute(select(Donor.status, func.count()).group_by(Donor.status))
    by_status = {status: count for status, count in rows.all()}
    return {
        "donors": sum(by_status.values()),
        "byStatus": by_status,
        "payments": await payment_store.count_payments(db),
        "openSupportRequests": await support_store.count_open_requests(db),
        "prospects": len(await prospect_store.list_prospects(db)),
    }
