# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending service. Logs to console when SMTP not configured."""

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from donorgate_server.errors import AdapterError
from donorgate_server.services import server_settings
from donorgate_server.services.adapter import ConfigLoader

logger = logging.getLogger(__name__)


def wrap_body_html(plain_body: str, site_name: str = "DonorGate") -> str:
    """Wrap plain text body in minimal HTML."""
    body_escaped = plain_body.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace("\n", "<br>\n")
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; color: #333; max-width: 560px;">
<h2 style="margin-bottom: 16px;">{site_name}</h2>
<div style="white-space: pre-wrap;">{body_escaped}</div>
</body>
</html>"""


class MailAdapter:
    """SMTP transport plus the message templates the gateway sends."""

    group = "mail"

    def __init__(self, load_config: ConfigLoader, app_base_url: str = "http://localhost:8080", timeout: float = 10.0) -> None:
        self._load_config = load_config
        self.app_base_url = app_base_url.rstrip("/")
        self.timeout = timeout

    async def config(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        current = await self._load_config()
        return server_settings.preview(self.group, current, overrides) if overrides else current

    async def is_configured(self, config: dict[str, Any] | None = None) -> bool:
        config = config or await self.config()
        return bool(config.get("host") and config.get("from_address"))

    def _deliver(self, config: dict[str, Any], to: str, msg: MIMEMultipart) -> None:
        if config.get("secure"):
            server = smtplib.SMTP_SSL(config["host"], config["port"], timeout=self.timeout, context=ssl.create_default_context())
        else:
            server = smtplib.SMTP(config["host"], config["port"], timeout=self.timeout)
        with server:
            if not config.get("secure"):
                server.starttls(context=ssl.create_default_context())
            if config.get("user"):
                server.login(config["user"], config.get("password") or "")
            server.sendmail(config["from_address"], [to], msg.as_string())

    async def send(self, *, to: str, subject: str, text: str, html: str | None = None) -> dict[str, Any]:
        """Send one message (plain and HTML). Raises AdapterError on transport failure."""
        config = await self.config()
        if not await self.is_configured(config):
            logger.info("Email (SMTP not configured): To=%s Subject=%s Body=%s", to, subject, text[:200])
            return {"delivered": False, "logged": True}
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = config["from_address"]
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html or wrap_body_html(text), "html"))
        try:
            await asyncio.to_thread(self._deliver, config, to, msg)
        except smtplib.SMTPAuthenticationError as e:
            raise AdapterError(AdapterError.UNAUTHORIZED, "SMTP server rejected the credentials", retryable=False) from e
        except (smtplib.SMTPException, OSError) as e:
            raise AdapterError(AdapterError.UNAVAILABLE, f"Failed to send email: {e}") from e
        return {"delivered": True, "logged": False}

    async def verify_connection(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        config = await self.config(overrides)
        if not await self.is_configured(config):
            return {"ok": False, "diagnostic": "SMTP host and from address are required"}

        def _check() -> None:
            if config.get("secure"):
                server = smtplib.SMTP_SSL(config["host"], config["port"], timeout=self.timeout)
            else:
                server = smtplib.SMTP(config["host"], config["port"], timeout=self.timeout)
            with server:
                if not config.get("secure"):
                    server.starttls(context=ssl.create_default_context())
                if config.get("user"):
                    server.login(config["user"], config.get("password") or "")
                server.noop()

        try:
            await asyncio.to_thread(_check)
        except (smtplib.SMTPException, OSError) as e:
            return {"ok": False, "diagnostic": f"SMTP check failed: {e}"}
        return {"ok": True, "diagnostic": f"Connected to {config['host']}:{config['port']}"}

    # Templates

    def _link(self, path: str) -> str:
        return f"{self.app_base_url}{path}"

    async def send_invite(self, *, to: str, invite_url: str | None, donor_name: str | None = None) -> dict[str, Any]:
        who = donor_name or "A supporter"
        body = (
            f"{who} has shared media library access with you.\n\n"
            f"Accept the invite here: {invite_url or self._link('/')}\n\n"
            "If you don't have a Plex account yet, you'll be asked to create one."
        )
        return await self.send(to=to, subject="You're invited to the media library", text=body)

    async def send_verification(self, *, to: str, token: str, name: str | None = None) -> dict[str, Any]:
        body = (
            f"Hi {name or 'there'},\n\n"
            "Thanks for signing up. Confirm your email address:\n\n"
            f"{self._link('/dashboard/verify-email?token=' + token)}\n\n"
            "The link expires in 48 hours."
        )
        return await self.send(to=to, subject="Confirm your email address", text=body)

    async def send_password_reset(self, *, to: str, token: str) -> dict[str, Any]:
        body = (
            "Someone asked to reset the password for this account.\n\n"
            f"Choose a new password: {self._link('/dashboard/reset-password?token=' + token)}\n\n"
            "The link expires in 1 hour. If you didn't ask for this, ignore this email."
        )
        return await self.send(to=to, subject="Reset your password", text=body)

    async def send_cancellation(self, *, to: str, name: str | None = None, access_until: str | None = None) -> dict[str, Any]:
        until = f"Your access stays active until {access_until}." if access_until else "Your access has ended."
        body = (
            f"Hi {name or 'there'},\n\n"
            f"Your subscription was cancelled. {until}\n\n"
            f"You can resubscribe any time from your dashboard: {self._link('/dashboard')}"
        )
        return await self.send(to=to, subject="Your subscription was cancelled", text=body)

    async def send_trial_started(self, *, to: str, name: str | None = None, ends_at: str | None = None) -> dict[str, Any]:
        body = (
            f"Hi {name or 'there'},\n\n"
            f"Your trial has started{f' and runs until {ends_at}' if ends_at else ''}.\n\n"
            f"Manage your access from your dashboard: {self._link('/dashboard')}"
        )
        return await self.send(to=to, subject="Your trial has started", text=body)

    async def send_trial_reminder(self, *, to: str, name: str | None = None, ends_at: str | None = None) -> dict[str, Any]:
        body = (
            f"Hi {name or 'there'},\n\n"
            f"Your trial ends {f'on {ends_at}' if ends_at else 'soon'}. "
            "Subscribe to keep your media access:\n\n"
            f"{self._link('/dashboard')}"
        )
        return await self.send(to=to, subject="Your trial is ending soon", text=body)

    async def send_announcement(self, *, recipients: list[str], subject: str, body: str) -> dict[str, Any]:
        """Send to each recipient; one failure does not stop the batch."""
        sent: list[str] = []
        failed: list[dict[str, str]] = []
        for to in recipients:
            try:
                await self.send(to=to, subject=subject, text=body)
                sent.append(to)
            except AdapterError as e:
                logger.warning("Announcement to %s failed: %s", to, e.message)
                failed.append({"email": to, "error": e.message})
        return {"sent": sent, "failed": failed}

    async def send_support_notification(
        self, *, to: str, donor_email: str, subject: str, body: str, request_id: int
    ) -> dict[str, Any]:
        text = (
            f"New support message from {donor_email}\n\n"
            f"Subject: {subject}\n\n{body}\n\n"
            f"Reply from the admin dashboard: {self._link(f'/admin/support/{request_id}')}"
        )
        return await self.send(to=to, subject=f"[Support] {subject}", text=text)

    async def send_support_reply(self, *, to: str, subject: str, body: str) -> dict[str, Any]:
        text = f"{body}\n\nView the conversation in your dashboard: {self._link('/dashboard')}"
        return await self.send(to=to, subject=f"Re: {subject}", text=text)
