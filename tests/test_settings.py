# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Settings groups: normalisation, secrets and the admin settings API."""

import pytest

from donorgate_server.models import Setting
from donorgate_server.services import server_settings
from donorgate_server.services.server_settings import SECRET_MASK
from donorgate_server.store.settings import get_settings, save_settings

pytestmark = pytest.mark.anyio


def test_normalize_fills_defaults():
    value = server_settings.normalize("trial", {"duration_days": 14})
    assert value == {"enabled": True, "duration_days": 14, "reminder_hours": 48}


def test_normalize_drops_invalid_fields_only():
    value = server_settings.normalize("mail", {"port": "not-a-port", "host": "smtp.example.com"})
    assert value["port"] == 587
    assert value["host"] == "smtp.example.com"


def test_normalize_non_dict_returns_defaults():
    assert server_settings.normalize("cooldown", ["junk"]) == {"invite_days": 30}


def test_section_ids_accept_comma_string():
    value = server_settings.normalize("media_server", {"library_section_ids": "1, 2,,3"})
    assert value["library_section_ids"] == ["1", "2", "3"]


def test_masked_secret_keeps_stored_value():
    current = server_settings.normalize("payment", {"client_id": "abc", "client_secret": "s3cret"})
    merged = server_settings.merge_update("payment", current, {"client_secret": SECRET_MASK, "plan_id": "P-1"})
    assert merged["client_secret"] == "s3cret"
    assert merged["plan_id"] == "P-1"
    assert server_settings.mask_secrets("payment", merged)["client_secret"] == SECRET_MASK


def test_unknown_group_raises_key_error():
    with pytest.raises(KeyError):
        server_settings.get_group("nope")


async def test_save_then_get_returns_normalized(container):
    async with container.session() as db:
        saved = await save_settings(db, "appearance", {"site_name": "Friends", "accent_color": "red"})
    async with container.session() as db:
        loaded = await get_settings(db, "appearance")
    assert loaded == saved
    assert loaded["site_name"] == "Friends"
    assert loaded["accent_color"] == "#e5a00d"


async def test_malformed_blob_reads_as_defaults(container):
    async with container.session() as db:
        db.add(Setting(key="cooldown", value="{not json"))
    async with container.session() as db:
        assert await get_settings(db, "cooldown") == {"invite_days": 30}


async def test_admin_settings_api_masks_secrets(client, login_admin):
    login_admin()
    r = await client.put("/admin/settings/payment", json={"client_id": "abc", "client_secret": "s3cret"})
    assert r.status_code == 200
    assert r.json()["settings"]["client_secret"] == SECRET_MASK

    r = await client.get("/admin/settings/payment")
    assert r.json()["settings"]["client_id"] == "abc"
    assert r.json()["settings"]["client_secret"] == SECRET_MASK


async def test_admin_settings_unknown_group_404(client, login_admin):
    login_admin()
    r = await client.get("/admin/settings/nope")
    assert r.status_code == 404


async def test_admin_settings_update_requires_csrf(client, login_admin):
    login_admin()
    del client.headers["X-CSRF-Token"]
    r = await client.put("/admin/settings/trial", json={"enabled": False})
    assert r.status_code == 403


async def test_admin_settings_test_uses_group_verifier(client, login_admin, media):
    login_admin()
    r = await client.post("/admin/settings/media_server/test", json={"base_url": "http://plex:32400"})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["overrides"] == {"base_url": "http://plex:32400"}


async def test_admin_settings_test_without_verifier(client, login_admin):
    login_admin()
    r = await client.post("/admin/settings/trial/test")
    assert r.status_code == 400
