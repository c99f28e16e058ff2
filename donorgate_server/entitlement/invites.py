# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Invite issuance, reuse and revocation against the media server."""

import logging
from dataclasses import dataclass

from donorgate_server.entitlement.cooldown import CooldownState, cooldown_window, evaluate_cooldown
from donorgate_server.errors import (
    AdapterError,
    CooldownActive,
    InvalidRecipient,
    MediaLinkRequired,
    NotFound,
    SubscriptionRequired,
)
from donorgate_server.models import Invite
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store import intents as intent_store
from donorgate_server.store import invites as invite_store
from donorgate_server.store import share_links as share_link_store
from donorgate_server.store.settings import get_settings

logger = logging.getLogger(__name__)

INVITE_ELIGIBLE_STATUSES = ("active", "trial")


@dataclass
class IssueResult:
    invite: Invite
    reused: bool
    cooldown: CooldownState


@dataclass
class RevokeResult:
    success: bool
    reason: str
    revoked_invite_ids: list[int]


class InviteCoordinator:
    """Owns every invite mutation. Per-donor operations run under the donor's lock."""

    def __init__(self, container) -> None:
        self.container = container

    async def issue(
        self,
        donor_id: int,
        *,
        recipient_email: str | None = None,
        note: str | None = None,
        share_token: str | None = None,
        source: str = "donor",
        ignore_cooldown: bool = False,
    ) -> IssueResult:
        """Issue (or reuse) the donor's invite.

        Preconditions are checked in order: subscription, media link,
        cooldown, recipient. The media adapter is called before any row is
        written, so a failed call leaves no invite behind.
        """
        async with self.container.locks.hold(donor_id):
            return await self._issue_held(
                donor_id,
                recipient_email=recipient_email,
                note=note,
                share_token=share_token,
                source=source,
                ignore_cooldown=ignore_cooldown,
            )

    async def _issue_held(
        self,
        donor_id: int,
        *,
        recipient_email: str | None,
        note: str | None,
        share_token: str | None,
        source: str,
        ignore_cooldown: bool,
    ) -> IssueResult:
        now = self.container.now()
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
            active = await invite_store.get_active_invite(db, donor_id)
            latest = await invite_store.get_latest_invite(db, donor_id)
            window = cooldown_window(await get_settings(db, "cooldown"))
            media_config = await get_settings(db, "media_server")
            share_link = None
            if share_token:
                share_link = await share_link_store.get_share_link_by_token(db, share_token)
                if share_link.donor_id != donor_id:
                    raise NotFound("Share link not found")

        if donor.status not in INVITE_ELIGIBLE_STATUSES:
            raise SubscriptionRequired()
        if not (donor.media_account_id or donor.media_email):
            raise MediaLinkRequired()

        recipient = donor_store.normalize_email(recipient_email or donor.media_email or donor.email)
        cooldown = evaluate_cooldown(latest, now, window)
        link_valid = share_link is None or share_link_store.is_share_link_valid(share_link, now)

        if active is not None and active.recipient_email == recipient and link_valid:
            await self._record_share_reuse(share_link, active)
            return IssueResult(invite=active, reused=True, cooldown=cooldown)
        if cooldown.blocked and not ignore_cooldown:
            if latest.recipient_email == recipient:
                await self._record_share_reuse(share_link, latest)
                return IssueResult(invite=latest, reused=True, cooldown=cooldown)
            raise CooldownActive(cooldown.next_available_at)
        if not donor_store.is_valid_email(recipient):
            raise InvalidRecipient(recipient_email)

        created = await self.container.media.create_invite(
            email=recipient,
            section_ids=media_config.get("library_section_ids") or None,
            friendly_name=donor.name or None,
        )

        now = self.container.now()
        async with self.container.session() as db:
            superseded = await invite_store.supersede_active_invites(db, donor_id, now)
            invite = await invite_store.create_invite(
                db,
                donor_id=donor_id,
                media_invite_id=created.get("invite_id"),
                media_invite_url=created.get("invite_url"),
                recipient_email=recipient,
                note=note,
                libraries=[lib["id"] for lib in created.get("libraries") or [] if lib.get("id")],
                media_account_id=donor.media_account_id,
                media_email=donor.media_email,
                status=created.get("status") or "pending",
                created_at=now,
            )
            if share_link is not None:
                await share_link_store.mark_share_link_used(db, share_link, now)
                await event_store.log_event(
                    db,
                    "invite.share.generated",
                    {"donorId": donor_id, "inviteId": invite.id, "shareLinkId": share_link.id},
                    donor_id=donor_id,
                )
            await event_store.log_event(
                db,
                "invite.issued",
                {
                    "donorId": donor_id,
                    "inviteId": invite.id,
                    "recipient": recipient,
                    "source": source,
                    "superseded": superseded,
                    "ignoreCooldown": ignore_cooldown or None,
                },
                donor_id=donor_id,
            )
        logger.info("Issued invite %s for donor %s (%s)", invite.id, donor_id, source)

        await self.send_invite_email(invite, donor_name=donor.name)
        return IssueResult(
            invite=invite,
            reused=False,
            cooldown=evaluate_cooldown(invite, now, window),
        )

    async def _record_share_reuse(self, share_link, invite: Invite) -> None:
        if share_link is None:
            return
        async with self.container.session() as db:
            await share_link_store.mark_share_link_used(db, share_link, self.container.now())
            await event_store.log_event(
                db,
                "invite.share.reused",
                {"donorId": invite.donor_id, "inviteId": invite.id, "shareLinkId": share_link.id},
                donor_id=invite.donor_id,
            )

    async def send_invite_email(self, invite: Invite, donor_name: str | None = None) -> bool:
        """Mail the invite link. A failed send is queued for retry instead of raised."""
        try:
            await self.container.mail.send_invite(
                to=invite.recipient_email, invite_url=invite.media_invite_url, donor_name=donor_name
            )
        except AdapterError as e:
            logger.warning("Invite email for invite %s failed: %s", invite.id, e.message)
            async with self.container.session() as db:
                await intent_store.enqueue_intent(
                    db,
                    kind="invite_email",
                    donor_id=invite.donor_id,
                    payload={"inviteId": invite.id},
                    now=self.container.now(),
                    error=e.message,
                )
            return False
        now = self.container.now()
        async with self.container.session() as db:
            await invite_store.mark_email_sent(db, invite.id, now)
        invite.email_sent_at = now
        return True

    async def resend_email(self, donor_id: int) -> Invite:
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
            invite = await invite_store.get_active_invite(db, donor_id)
        if invite is None:
            raise NotFound("Donor has no active invite")
        await self.container.mail.send_invite(
            to=invite.recipient_email, invite_url=invite.media_invite_url, donor_name=donor.name
        )
        now = self.container.now()
        async with self.container.session() as db:
            await invite_store.mark_email_sent(db, invite.id, now)
        invite.email_sent_at = now
        return invite

    async def ensure_invite(self, donor_id: int, reason: str) -> Invite | None:
        """Auto-provision an invite to the donor's own address when none is active.

        Skips quietly when the media server is not configured, the donor has
        not linked a media account, or the cooldown blocks a new invite.
        """
        if not await self.container.media.is_configured():
            return None
        async with self.container.session() as db:
            donor = await donor_store.find_donor(db, donor_id)
            if donor is None:
                return None
            active = await invite_store.get_active_invite(db, donor_id)
        if active is not None or donor.status not in INVITE_ELIGIBLE_STATUSES:
            return None
        if not (donor.media_account_id or donor.media_email):
            return None
        try:
            result = await self.issue(donor_id, source=f"auto:{reason}")
        except CooldownActive as e:
            logger.info("Auto-invite for donor %s deferred until %s", donor_id, e.retry_at)
            return None
        return result.invite

    async def revoke(self, donor_id: int, reason: str) -> RevokeResult:
        async with self.container.locks.hold(donor_id):
            return await self.revoke_held(donor_id, reason)

    async def revoke_held(self, donor_id: int, reason: str) -> RevokeResult:
        """Remove the donor's media share. Caller holds the donor lock.

        success and not_found both count as revoked. A donor whose invites are
        all already media-revoked is a no-op. AdapterError propagates with
        media_revoked_at left unset, including when the media server is not configured.
        """
        async with self.container.session() as db:
            donor = await donor_store.get_donor(db, donor_id)
            all_invites = await invite_store.list_invites(db, donor_id)
            pending = await invite_store.list_unrevoked_media_invites(db, donor_id)

        if all_invites and not pending:
            return RevokeResult(success=True, reason="already_revoked", revoked_invite_ids=[])

        account_id = donor.media_account_id or next((i.media_account_id for i in pending if i.media_account_id), None)
        email = donor.media_email or next((i.recipient_email for i in pending if i.recipient_email), None)
        if not account_id and not email:
            outcome = {"success": False, "reason": "not_found"}
        else:
            outcome = await self.container.media.revoke_user(media_account_id=account_id, email=email)
        if outcome.get("skipped"):
            raise AdapterError(AdapterError.UNAVAILABLE, "Media server is not configured; revocation deferred")
        adapter_reason = outcome.get("reason") or ("revoked" if outcome.get("success") else "unknown")
        if not (outcome.get("success") or adapter_reason == "not_found"):
            raise AdapterError(AdapterError.INVALID_RESPONSE, f"Media server could not revoke access: {adapter_reason}")

        now = self.container.now()
        revoked: list[int] = []
        async with self.container.session() as db:
            for invite in pending:
                await invite_store.mark_invite_revoked(db, invite.id, now)
                if await invite_store.mark_media_revoked(db, invite.id, now):
                    revoked.append(invite.id)
            await event_store.log_event(
                db,
                "invite.revoked",
                {
                    "donorId": donor_id,
                    "reason": reason,
                    "result": adapter_reason,
                    "inviteIds": revoked,
                    "shareId": outcome.get("share_id"),
                },
                donor_id=donor_id,
            )
        logger.info("Revoked media access for donor %s (%s: %s)", donor_id, reason, adapter_reason)
        return RevokeResult(success=True, reason=adapter_reason, revoked_invite_ids=revoked)
