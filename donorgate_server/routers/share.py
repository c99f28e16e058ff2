# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Share-link funnel: describe a link, create the account behind it, start checkout, issue the invite."""

import logging
import secrets

from fastapi import APIRouter, Depends, Response

from donorgate_server.api.schemas import (
    DonorResponse,
    InviteResponse,
    ShareAccountCreate,
    ShareCheckout,
    ShareInviteRequest,
    dump,
)
from donorgate_server.auth import MIN_DONOR_PASSWORD_LENGTH, hash_password_async, start_donor_session
from donorgate_server.container import Container, get_container
from donorgate_server.errors import AdapterError, Conflict, Forbidden, NotFound, ValidationError
from donorgate_server.rate_limit import rate_limit_dep
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import prospects as prospect_store
from donorgate_server.store import share_links as share_link_store
from donorgate_server.store import tokens as token_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/share", tags=["share"])


def _check_session_token(link, presented: str) -> None:
    if not presented or not secrets.compare_digest(presented.encode(), link.session_token.encode()):
        raise Forbidden("Invalid share session")


@router.get("/{token}")
async def describe_share_link(token: str, container: Container = Depends(get_container)) -> dict:
    """Owner kind, email, account state and expiry. Touches last_used_at."""
    now = container.now()
    async with container.session() as db:
        link = await share_link_store.get_share_link_by_token(db, token)
        await share_link_store.touch_share_link(db, link, now)
        if link.donor_id is not None:
            donor = await donor_store.get_donor(db, link.donor_id)
            owner = {"kind": "donor", "email": donor.email, "name": donor.name}
            has_account = donor.password_hash is not None
        else:
            prospect = await prospect_store.get_prospect(db, link.prospect_id)
            owner = {"kind": "prospect", "email": prospect.email, "name": prospect.name}
            has_account = False
    return {
        "owner": owner,
        "hasAccount": has_account,
        "valid": share_link_store.is_share_link_valid(link, now),
        "expiresAt": link.expires_at.isoformat() if link.expires_at else None,
        "usedAt": link.used_at.isoformat() if link.used_at else None,
        "sessionToken": link.session_token,
    }


@router.post("/{token}/account", dependencies=[Depends(rate_limit_dep)])
async def create_share_account(
    token: str,
    data: ShareAccountCreate,
    response: Response,
    container: Container = Depends(get_container),
) -> dict:
    """Create or complete the account behind a share link.

    A prospect link becomes a new donor, and the link moves to that donor.
    An email that already belongs to any donor is refused, password or not;
    that person has to log in (or reset their password) instead.
    """
    if len(data.password or "") < MIN_DONOR_PASSWORD_LENGTH:
        raise ValidationError(
            {"password": f"Password must be at least {MIN_DONOR_PASSWORD_LENGTH} characters."}
        )
    password_hash = await hash_password_async(data.password)
    now = container.now()
    async with container.session() as db:
        link = await share_link_store.get_share_link_by_token(db, token)
        _check_session_token(link, data.session_token)
        if not share_link_store.is_share_link_valid(link, now):
            raise Conflict("This share link has expired or was already used.")
        if link.donor_id is not None:
            donor = await donor_store.get_donor(db, link.donor_id)
            if donor.password_hash:
                raise Conflict("An account already exists for this link. Please log in instead.")
            donor.password_hash = password_hash
            await donor_store.update_donor_contact(db, donor, name=data.name or None)
            prospect = None
        else:
            prospect = await prospect_store.get_prospect(db, link.prospect_id)
            email = data.email or prospect.email
            if not email:
                raise ValidationError({"email": "Please provide an email address."})
            if await donor_store.get_donor_by_email(db, email) is not None:
                raise Conflict("An account already exists for this email. Please log in instead.")
            donor = await donor_store.create_donor(
                db, email=email, name=data.name or prospect.name, password_hash=password_hash
            )
            await share_link_store.transfer_share_link_to_donor(db, link, donor.id)
            await prospect_store.mark_prospect_converted(db, prospect, donor.id, now)
        await share_link_store.mark_share_link_used(db, link, now)
        verification = None
        if donor.email_verified_at is None:
            verification = await token_store.create_verification_token(db, donor.id, now)
        await event_store.log_event(
            db,
            "donor.share.account.created",
            {"donorId": donor.id, "shareLinkId": link.id, "prospectId": prospect.id if prospect else None},
            donor_id=donor.id,
        )
    if verification:
        try:
            await container.mail.send_verification(to=donor.email, token=verification, name=donor.name)
        except AdapterError as e:
            logger.warning("Verification email to donor %s failed: %s", donor.id, e.message)
    session_token = start_donor_session(response, container.settings, donor.id)
    return {"donor": dump(DonorResponse, donor), "sessionToken": session_token}


@router.post("/{token}/checkout")
async def share_checkout(
    token: str,
    data: ShareCheckout,
    container: Container = Depends(get_container),
) -> dict:
    """Start the processor checkout for the account created from this link."""
    async with container.session() as db:
        link = await share_link_store.get_share_link_by_token(db, token)
        _check_session_token(link, data.session_token)
        if link.donor_id is None:
            raise NotFound("Create your account before checking out.")
        donor = await donor_store.get_donor(db, link.donor_id)
        if not donor.password_hash:
            raise NotFound("Create your account before checking out.")
    created = await container.lifecycle.start_checkout(donor.id)
    return {"subscriptionId": created["subscription_id"], "approvalUrl": created["approval_url"]}


@router.post("/{token}")
async def share_invite(
    token: str,
    data: ShareInviteRequest,
    container: Container = Depends(get_container),
) -> dict:
    """Generate (or reuse) the owning donor's media invite for the given recipient."""
    now = container.now()
    async with container.session() as db:
        link = await share_link_store.get_share_link_by_token(db, token)
        _check_session_token(link, data.session_token)
        if share_link_store.is_share_link_expired(link, now):
            raise Conflict("This share link has expired.")
        if link.donor_id is None:
            raise NotFound("Create your account before requesting an invite.")
        donor_id = link.donor_id
    recipient = data.email.strip()
    note = data.note or " ".join(
        part for part in ("Generated from share link", f"for {data.name}" if data.name else "", f"<{recipient}>") if part
    )
    result = await container.coordinator.issue(
        donor_id, recipient_email=recipient, note=note, share_token=token, source="share"
    )
    return {
        "invite": dump(InviteResponse, result.invite),
        "reused": result.reused,
        **result.cooldown.to_dict(),
    }
