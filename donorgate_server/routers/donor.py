# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Donor dashboard API: session, account, media linking, invites, trials and support."""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from donorgate_server.api.schemas import (
    DonorLogin,
    DonorSignup,
    DonorResponse,
    InviteRequest,
    InviteResponse,
    MediaLinkPoll,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdate,
    SupportCreate,
    SupportMessageCreate,
    SupportMessageResponse,
    SupportRequestResponse,
    VerifyEmailRequest,
    dump,
)
from donorgate_server.auth import (
    MIN_DONOR_PASSWORD_LENGTH,
    DonorSession,
    end_donor_session,
    get_donor_session,
    hash_password_async,
    require_donor_session_token,
    start_donor_session,
    verify_password_async,
)
from donorgate_server.container import Container, get_container
from donorgate_server.database import get_db
from donorgate_server.entitlement.cooldown import cooldown_window, evaluate_cooldown
from donorgate_server.errors import AdapterError, Unauthorized, ValidationError
from donorgate_server.rate_limit import rate_limit_dep
from donorgate_server.services.paypal import checkout_url, paypal_environment
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import invites as invite_store
from donorgate_server.store import support as support_store
from donorgate_server.store import tokens as token_store
from donorgate_server.store.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/donor", tags=["donor"])


def _check_password(password: str | None) -> str:
    if len(password or "") < MIN_DONOR_PASSWORD_LENGTH:
        raise ValidationError(
            {"password": f"Password must be at least {MIN_DONOR_PASSWORD_LENGTH} characters."}
        )
    return password


async def dashboard_payload(container: Container, donor_id: int) -> dict:
    """Everything the dashboard renders for one donor."""
    now = container.now()
    async with container.session() as db:
        donor = await donor_store.get_donor(db, donor_id)
        active = await invite_store.get_active_invite(db, donor_id)
        latest = await invite_store.get_latest_invite(db, donor_id)
        window = cooldown_window(await get_settings(db, "cooldown"))
        payment = await get_settings(db, "payment")
        announcement = await get_settings(db, "announcements")
        appearance = await get_settings(db, "appearance")
        trial = await get_settings(db, "trial")
    cooldown = evaluate_cooldown(latest, now, window)
    return {
        "donor": dump(DonorResponse, donor),
        "invite": dump(InviteResponse, active) if active else None,
        "cooldown": cooldown.to_dict(),
        "payment": {
            "configured": bool(payment["client_id"] and payment["plan_id"]),
            "planId": payment["plan_id"],
            "price": payment["subscription_price"],
            "currency": payment["currency"],
            "environment": paypal_environment(payment["api_base"]),
            "checkoutUrl": checkout_url(payment["plan_id"], payment["api_base"]),
        },
        "trial": {
            "enabled": trial["enabled"],
            "durationDays": trial["duration_days"],
            "eligible": trial["enabled"] and donor.status == "prospect" and donor.trial_started_at is None,
        },
        "announcement": announcement if announcement["banner_enabled"] else None,
        "appearance": appearance,
    }


# Session


@router.post("/login", dependencies=[Depends(rate_limit_dep)])
async def login(data: DonorLogin, response: Response, container: Container = Depends(get_container)) -> dict:
    """Authenticate and rotate the session token."""
    async with container.session() as db:
        donor = await donor_store.get_donor_by_email(db, data.email)
    if not donor or not await verify_password_async(data.password, donor.password_hash):
        raise Unauthorized("Invalid email or password")
    session_token = start_donor_session(response, container.settings, donor.id)
    payload = await dashboard_payload(container, donor.id)
    return {**payload, "sessionToken": session_token}


@router.post("/logout")
async def logout(response: Response) -> dict:
    end_donor_session(response)
    return {"message": "Signed out"}


@router.get("/session")
async def get_session(
    session: DonorSession = Depends(get_donor_session),
    container: Container = Depends(get_container),
) -> dict:
    payload = await dashboard_payload(container, session.donor_id)
    return {**payload, "sessionToken": session.session_token}


@router.post("/signup", dependencies=[Depends(rate_limit_dep)])
async def signup(data: DonorSignup, response: Response, container: Container = Depends(get_container)) -> dict:
    """Create a prospect account and send the verification email."""
    _check_password(data.password)
    password_hash = await hash_password_async(data.password)
    async with container.session() as db:
        donor = await donor_store.create_donor(
            db, email=data.email, name=data.name, password_hash=password_hash
        )
        token = await token_store.create_verification_token(db, donor.id, container.now())
        await event_store.log_event(db, "donor.signup", {"donorId": donor.id}, donor_id=donor.id)
    try:
        await container.mail.send_verification(to=donor.email, token=token, name=donor.name)
    except AdapterError as e:
        logger.warning("Verification email to donor %s failed: %s", donor.id, e.message)
    session_token = start_donor_session(response, container.settings, donor.id)
    payload = await dashboard_payload(container, donor.id)
    return {**payload, "sessionToken": session_token}


# Password reset and email verification


@router.post("/password-reset", dependencies=[Depends(rate_limit_dep)])
async def request_password_reset(data: PasswordResetRequest, container: Container = Depends(get_container)) -> dict:
    """Always answers the same way so addresses cannot be enumerated."""
    async with container.session() as db:
        donor = await donor_store.get_donor_by_email(db, data.email)
        token = await token_store.create_password_reset_token(db, donor.id, container.now()) if donor else None
    if donor and token:
        try:
            await container.mail.send_password_reset(to=donor.email, token=token)
        except AdapterError as e:
            logger.warning("Password reset email to donor %s failed: %s", donor.id, e.message)
    return {"message": "If that email has an account, a reset link is on its way."}


@router.post("/password-reset/confirm", dependencies=[Depends(rate_limit_dep)])
async def confirm_password_reset(data: PasswordResetConfirm, container: Container = Depends(get_container)) -> dict:
    _check_password(data.password)
    password_hash = await hash_password_async(data.password)
    async with container.session() as db:
        donor_id = await token_store.consume_password_reset_token(db, data.token, container.now())
        if donor_id is None:
            raise ValidationError({"token": "This reset link is invalid or has expired."})
        donor = await donor_store.get_donor(db, donor_id)
        donor.password_hash = password_hash
        await event_store.log_event(db, "donor.password.reset", {"donorId": donor_id}, donor_id=donor_id)
    return {"message": "Password updated. You can now sign in."}


@router.post("/verify-email", dependencies=[Depends(rate_limit_dep)])
async def verify_email(data: VerifyEmailRequest, container: Container = Depends(get_container)) -> dict:
    now = container.now()
    async with container.session() as db:
        donor_id = await token_store.consume_verification_token(db, data.token, now)
        if donor_id is None:
            raise ValidationError({"token": "This verification link is invalid or has expired."})
        donor = await donor_store.get_donor(db, donor_id)
        donor.email_verified_at = now
    return {"message": "Email verified.", "donor": dump(DonorResponse, donor)}


@router.post("/verify-email/resend")
async def resend_verification(
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    async with container.session() as db:
        donor = await donor_store.get_donor(db, session.donor_id)
        token = None
        if donor.email_verified_at is None:
            token = await token_store.create_verification_token(db, donor.id, container.now())
    if token:
        await container.mail.send_verification(to=donor.email, token=token, name=donor.name)
    return {"sent": token is not None, "sessionToken": session.session_token}


# Profile


@router.patch("/profile")
async def update_profile(
    data: ProfileUpdate,
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    """Change name, email or password. A password change needs the current password."""
    new_hash = None
    async with container.session() as db:
        donor = await donor_store.get_donor(db, session.donor_id)
    if data.new_password is not None:
        _check_password(data.new_password)
        if donor.password_hash and not await verify_password_async(data.current_password or "", donor.password_hash):
            raise ValidationError({"currentPassword": "Current password is incorrect."})
        new_hash = await hash_password_async(data.new_password)
    verification_token = None
    async with container.session() as db:
        donor = await donor_store.get_donor(db, session.donor_id)
        old_email = donor.email
        await donor_store.update_donor_contact(db, donor, email=data.email, name=data.name)
        if new_hash:
            donor.password_hash = new_hash
        if donor.email != old_email:
            verification_token = await token_store.create_verification_token(db, donor.id, container.now())
        await event_store.log_event(
            db,
            "donor.profile.updated",
            {"donorId": donor.id, "emailChanged": donor.email != old_email, "passwordChanged": bool(new_hash)},
            donor_id=donor.id,
        )
    if verification_token:
        try:
            await container.mail.send_verification(to=donor.email, token=verification_token, name=donor.name)
        except AdapterError as e:
            logger.warning("Verification email to donor %s failed: %s", donor.id, e.message)
    return {"donor": dump(DonorResponse, donor), "sessionToken": session.session_token}


# Media account linking


@router.post("/media/link")
async def start_media_link(
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    """Start the device-code flow. The client polls /donor/media/link/poll."""
    pin = await container.media_oauth.request_pin()
    return {
        "pinId": pin["pin_id"],
        "code": pin["code"],
        "clientIdentifier": pin["client_identifier"],
        "authUrl": pin["auth_url"],
        "expiresAt": pin["expires_at"].isoformat() if pin["expires_at"] else None,
        "pollIntervalMs": pin["poll_interval_ms"],
        "sessionToken": session.session_token,
    }


@router.post("/media/link/poll")
async def poll_media_link(
    data: MediaLinkPoll,
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    """Poll the PIN; on authorization store the account identity and provision access."""
    result = await container.media_oauth.poll_pin(data.pin_id, data.client_identifier)
    if result["state"] != "authorized":
        return {"state": result["state"], "sessionToken": session.session_token}
    identity = await container.media_oauth.fetch_identity(result["auth_token"], data.client_identifier)
    async with container.locks.hold(session.donor_id):
        async with container.session() as db:
            donor = await donor_store.get_donor(db, session.donor_id)
            donor.media_account_id = identity["media_account_id"]
            donor.media_email = identity["media_email"]
            await event_store.log_event(
                db,
                "donor.media.linked",
                {"donorId": donor.id, "mediaAccountId": identity["media_account_id"]},
                donor_id=donor.id,
            )
    try:
        await container.coordinator.ensure_invite(session.donor_id, "media.linked")
    except AdapterError as e:
        logger.warning("Invite after media link for donor %s failed: %s", session.donor_id, e.message)
    payload = await dashboard_payload(container, session.donor_id)
    return {"state": "authorized", **payload, "sessionToken": session.session_token}


@router.delete("/media/link")
async def unlink_media(
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    async with container.locks.hold(session.donor_id):
        async with container.session() as db:
            donor = await donor_store.get_donor(db, session.donor_id)
            donor.media_account_id = None
            donor.media_email = None
            await event_store.log_event(db, "donor.media.unlinked", {"donorId": donor.id}, donor_id=donor.id)
    return {"donor": dump(DonorResponse, donor), "sessionToken": session.session_token}


# Invites, trials and checkout


@router.post("/invite")
async def request_invite(
    data: InviteRequest,
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    result = await container.coordinator.issue(session.donor_id, recipient_email=data.email, note=data.note)
    return {
        "invite": dump(InviteResponse, result.invite),
        "reused": result.reused,
        **result.cooldown.to_dict(),
        "sessionToken": session.session_token,
    }


@router.post("/trial")
async def start_trial(
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    await container.lifecycle.start_trial(session.donor_id)
    payload = await dashboard_payload(container, session.donor_id)
    return {**payload, "sessionToken": session.session_token}


@router.post("/checkout")
async def checkout(
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    created = await container.lifecycle.start_checkout(session.donor_id)
    return {
        "subscriptionId": created["subscription_id"],
        "approvalUrl": created["approval_url"],
        "sessionToken": session.session_token,
    }


# Support


@router.get("/support")
async def list_support(
    session: DonorSession = Depends(get_donor_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    requests = await support_store.list_requests(db, donor_id=session.donor_id)
    return {"requests": [dump(SupportRequestResponse, r) for r in requests]}


@router.get("/support/{request_id}")
async def get_support(
    request_id: int,
    session: DonorSession = Depends(get_donor_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    request = await support_store.get_request(db, request_id, donor_id=session.donor_id)
    messages = await support_store.list_messages(db, request.id)
    return {
        "request": dump(SupportRequestResponse, request),
        "messages": [dump(SupportMessageResponse, m) for m in messages],
    }


async def _notify_admin(container: Container, donor_email: str, subject: str, body: str, request_id: int) -> None:
    mail_config = await container.load_settings("mail")
    if not mail_config["admin_email"]:
        return
    try:
        await container.mail.send_support_notification(
            to=mail_config["admin_email"], donor_email=donor_email, subject=subject, body=body, request_id=request_id
        )
    except AdapterError as e:
        logger.warning("Support notification for request %s failed: %s", request_id, e.message)


@router.post("/support")
async def create_support(
    data: SupportCreate,
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    async with container.session() as db:
        donor = await donor_store.get_donor(db, session.donor_id)
        request, message = await support_store.create_request(
            db, donor_id=donor.id, subject=data.subject, body=data.body, now=container.now()
        )
    await _notify_admin(container, donor.email, request.subject, data.body, request.id)
    return {
        "request": dump(SupportRequestResponse, request),
        "messages": [dump(SupportMessageResponse, message)],
        "sessionToken": session.session_token,
    }


@router.post("/support/{request_id}/messages")
async def post_support_message(
    request_id: int,
    data: SupportMessageCreate,
    session: DonorSession = Depends(require_donor_session_token),
    container: Container = Depends(get_container),
) -> dict:
    """Add a message; a resolved thread reopens."""
    async with container.session() as db:
        donor = await donor_store.get_donor(db, session.donor_id)
        request = await support_store.get_request(db, request_id, donor_id=donor.id)
        message = await support_store.add_message(
            db, request, author_role="donor", body=data.body, now=container.now()
        )
    await _notify_admin(container, donor.email, request.subject, data.body, request.id)
    return {
        "request": dump(SupportRequestResponse, request),
        "message": dump(SupportMessageResponse, message),
        "sessionToken": session.session_token,
    }
