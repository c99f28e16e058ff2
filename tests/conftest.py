# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures: a temporary SQLite store, in-memory adapters and an ASGI client."""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from donorgate_server import rate_limit
from donorgate_server.auth import ADMIN_COOKIE, CSRF_COOKIE, CSRF_HEADER, DONOR_COOKIE, SESSION_TOKEN_HEADER, create_access_token
from donorgate_server.config import Settings
from donorgate_server.container import build_container
from donorgate_server.database import init_db
from donorgate_server.errors import AdapterError
from donorgate_server.main import create_app
from donorgate_server.store import donors as donor_store

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMedia:
    def __init__(self) -> None:
        self.configured = True
        self.created: list[dict] = []
        self.revoked: list[dict] = []
        self.create_error: AdapterError | None = None
        self.revoke_error: AdapterError | None = None
        self.revoke_result = {"success": True, "reason": "revoked", "share_id": "share-1"}

    async def is_configured(self, config=None) -> bool:
        return self.configured

    async def list_users(self) -> list[dict]:
        return []

    async def create_invite(self, *, email, server_identifier=None, section_ids=None, friendly_name=None, sharing_flags=None):
        if self.create_error:
            raise self.create_error
        self.created.append({"email": email, "section_ids": section_ids, "friendly_name": friendly_name})
        n = len(self.created)
        return {
            "invite_id": f"inv-{n}",
            "invite_url": f"https://app.plex.tv/invite/{n}",
            "status": "pending",
            "libraries": [{"id": "1", "title": "Movies"}],
        }

    async def revoke_user(self, *, media_account_id=None, email=None):
        self.revoked.append({"media_account_id": media_account_id, "email": email})
        if self.revoke_error:
            raise self.revoke_error
        return dict(self.revoke_result)

    async def verify_connection(self, overrides=None):
        return {"ok": True, "diagnostic": "Plex connection verified.", "overrides": overrides}


class FakeMail:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.error: AdapterError | None = None

    async def _record(self, kind: str, **kwargs) -> dict:
        if self.error:
            raise self.error
        self.sent.append((kind, kwargs))
        return {"ok": True}

    def of_kind(self, kind: str) -> list[dict]:
        return [kwargs for k, kwargs in self.sent if k == kind]

    async def is_configured(self, config=None) -> bool:
        return True

    async def verify_connection(self, overrides=None):
        return {"ok": True, "diagnostic": "SMTP connection verified."}

    async def send_invite(self, *, to, invite_url, donor_name=None):
        return await self._record("invite", to=to, invite_url=invite_url, donor_name=donor_name)

    async def send_verification(self, *, to, token, name=None):
        return await self._record("verification", to=to, token=token, name=name)

    async def send_password_reset(self, *, to, token):
        return await self._record("password_reset", to=to, token=token)

    async def send_cancellation(self, *, to, name=None, access_until=None):
        return await self._record("cancellation", to=to, name=name, access_until=access_until)

    async def send_trial_started(self, *, to, name=None, ends_at=None):
        return await self._record("trial_started", to=to, name=name, ends_at=ends_at)

    async def send_trial_reminder(self, *, to, name=None, ends_at=None):
        return await self._record("trial_reminder", to=to, name=name, ends_at=ends_at)

    async def send_announcement(self, *, recipients, subject, body):
        sent = []
        for to in recipients:
            await self._record("announcement", to=to, subject=subject, body=body)
            sent.append(to)
        return {"sent": sent, "failed": []}

    async def send_support_notification(self, *, to, donor_email, subject, body, request_id):
        return await self._record(
            "support_notification", to=to, donor_email=donor_email, subject=subject, body=body, request_id=request_id
        )

    async def send_support_reply(self, *, to, subject, body):
        return await self._record("support_reply", to=to, subject=subject, body=body)


def fake_signature(raw_body: bytes) -> str:
    return hashlib.sha256(b"test-webhook:" + raw_body).hexdigest()


class FakePayment:
    """Accepts a webhook when its x-test-signature header matches the body."""

    def __init__(self) -> None:
        self.configured = True
        self.subscriptions: dict[str, dict] = {}
        self.created: list[dict] = []
        self.lookups: list[str] = []

    async def is_configured(self, config=None) -> bool:
        return self.configured

    async def verify_webhook_signature(self, headers, raw_body) -> bool:
        headers = {k.lower(): v for k, v in headers.items()}
        return headers.get("x-test-signature") == fake_signature(raw_body)

    async def get_subscription(self, subscription_id):
        self.lookups.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal returned 404", retryable=False)
        return {"id": subscription_id, **self.subscriptions[subscription_id]}

    async def create_subscription(self, plan_id, subscriber, return_url=None, cancel_url=None):
        self.created.append({"plan_id": plan_id, "subscriber": subscriber, "return_url": return_url})
        subscription_id = f"I-NEW{len(self.created)}"
        return {
            "subscription_id": subscription_id,
            "approval_url": f"https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token={subscription_id}",
        }

    async def verify_connection(self, overrides=None):
        return {"ok": True, "diagnostic": "PayPal credentials verified (sandbox)"}


class FakeOAuth:
    def __init__(self) -> None:
        self.state = "pending"
        self.identity = {"media_account_id": "plex-42", "media_email": "viewer@example.com", "username": "viewer"}

    async def is_configured(self, config=None) -> bool:
        return True

    async def request_pin(self):
        return {
            "pin_id": "1001",
            "code": "ABCD",
            "client_identifier": "client-1",
            "auth_url": "https://app.plex.tv/auth#?code=ABCD",
            "expires_at": START + timedelta(minutes=15),
            "poll_interval_ms": 2000,
        }

    async def poll_pin(self, pin_id, client_identifier):
        if self.state == "authorized":
            return {"state": "authorized", "pin_id": pin_id, "auth_token": "plex-token"}
        return {"state": self.state, "pin_id": pin_id}

    async def fetch_identity(self, auth_token, client_identifier):
        return dict(self.identity)

    async def verify_connection(self, overrides=None):
        return {"ok": True, "diagnostic": "Plex account linking is reachable."}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    rate_limit.reset()
    yield
    rate_limit.reset()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        data_dir=tmp_path,
        database_url=None,
        sweepers_enabled=False,
        session_secret="test-secret",
        app_base_url="http://test",
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def mail():
    return FakeMail()


@pytest.fixture
def payment():
    return FakePayment()


@pytest.fixture
def oauth():
    return FakeOAuth()


@pytest.fixture
async def container(anyio_backend, settings, clock, media, mail, payment, oauth):
    c = build_container(settings, clock=clock, media=media, mail=mail, payment=payment, media_oauth=oauth)
    c.effects.base_delay = 0
    await init_db(c.engine)
    yield c
    await c.engine.dispose()


@pytest.fixture
def app(container):
    return create_app(container)


@pytest.fixture
async def client(anyio_backend, app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_donor(container):
    """Create a donor and set any extra columns directly."""

    async def _make(email="donor@example.com", name="Dana Donor", **fields):
        async with container.session() as db:
            donor = await donor_store.create_donor(db, email=email, name=name)
            for key, value in fields.items():
                setattr(donor, key, value)
        return donor

    return _make


@pytest.fixture
def login_donor(client, settings):
    """Attach a donor session cookie and the matching X-Session-Token header to the client."""

    def _login(donor_id: int, session_token: str = "stk-test") -> str:
        token = create_access_token(settings, {"sub": str(donor_id), "role": "donor", "stk": session_token})
        client.cookies.set(DONOR_COOKIE, token)
        client.headers[SESSION_TOKEN_HEADER] = session_token
        return session_token

    return _login


@pytest.fixture
def login_admin(client, settings):
    def _login(username: str = "admin", csrf: str = "csrf-test") -> str:
        client.cookies.set(ADMIN_COOKIE, create_access_token(settings, {"sub": username, "role": "admin"}))
        client.cookies.set(CSRF_COOKIE, csrf)
        client.headers[CSRF_HEADER] = csrf
        return csrf

    return _login
