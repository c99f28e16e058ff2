# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Plex account linking via the PIN (device code) flow."""

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

from donorgate_server.errors import AdapterError
from donorgate_server.services.adapter import HttpAdapter, parse_timestamp

PLEX_API_BASE = "https://plex.tv/api/v2"
PLEX_AUTH_BASE_URL = "https://app.plex.tv/auth#"
DEFAULT_POLL_INTERVAL_MS = 3000


def build_auth_url(code: str | None, client_identifier: str | None) -> str:
    params = {}
    if code:
        params["code"] = code
    if client_identifier:
        params["clientID"] = client_identifier
    return f"{PLEX_AUTH_BASE_URL}?{urlencode(params)}" if params else PLEX_AUTH_BASE_URL


class PlexOAuthAdapter(HttpAdapter):
    """Device-code flow: request a PIN, poll it, then fetch the account identity."""

    group = "media"
    service_name = "Plex"

    def __init__(self, *args: Any, clock: Callable[[], datetime] | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def is_configured(self, config: dict[str, Any] | None = None) -> bool:
        # A client identifier is generated per PIN when none is configured
        return True

    def _client_identifier(self, config: dict[str, Any]) -> str:
        return config.get("client_identifier") or secrets.token_hex(12)

    def _headers(self, config: dict[str, Any], client_identifier: str, token: str | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-Plex-Product": config.get("product") or "DonorGate",
            "X-Plex-Version": "1.0",
            "X-Plex-Device": config.get("device_name") or "DonorGate Web",
            "X-Plex-Device-Name": config.get("device_name") or "DonorGate Web",
            "X-Plex-Platform": "Web",
            "X-Plex-Client-Identifier": client_identifier,
        }
        if token:
            headers["X-Plex-Token"] = token
        return headers

    async def request_pin(self) -> dict[str, Any]:
        """Start a PIN. Returns pin_id, code, auth_url, expires_at, poll_interval_ms and client_identifier."""
        config = await self.config()
        client_identifier = self._client_identifier(config)
        response = await self.request(
            "POST", f"{PLEX_API_BASE}/pins", params={"strong": "true"}, headers=self._headers(config, client_identifier)
        )
        data = self.json(response)
        if not isinstance(data, dict) or not data.get("id"):
            raise AdapterError(AdapterError.INVALID_RESPONSE, "Plex did not return a PIN")
        expires_at = parse_timestamp(data.get("expiresAt") or data.get("expires_at"))
        if expires_at is None and data.get("expiresIn") is not None:
            expires_at = self._clock() + timedelta(seconds=int(data["expiresIn"]))
        return {
            "pin_id": str(data["id"]),
            "code": data.get("code"),
            "client_identifier": client_identifier,
            "auth_url": build_auth_url(data.get("code"), client_identifier),
            "expires_at": expires_at,
            "poll_interval_ms": DEFAULT_POLL_INTERVAL_MS,
        }

    async def poll_pin(self, pin_id: str, client_identifier: str) -> dict[str, Any]:
        """Check a PIN. Result state is "authorized" (with auth_token), "pending" or "expired".

        A poll at or after the PIN's expiry reports expired.
        """
        config = await self.config()
        response = await self.request(
            "GET",
            f"{PLEX_API_BASE}/pins/{pin_id}",
            headers=self._headers(config, client_identifier),
            allow_status=(404,),
        )
        if response.status_code == 404:
            return {"state": "expired", "pin_id": pin_id}
        data = self.json(response)
        if not isinstance(data, dict):
            raise AdapterError(AdapterError.INVALID_RESPONSE, "Plex returned an unexpected PIN payload")
        token = data.get("authToken") or data.get("auth_token")
        if token:
            return {"state": "authorized", "pin_id": pin_id, "auth_token": token}
        expires_at = parse_timestamp(data.get("expiresAt") or data.get("expires_at"))
        expires_in = data.get("expiresIn", data.get("expires_in"))
        expired = bool(data.get("expired")) or (expires_at is not None and self._clock() >= expires_at)
        if expires_in is not None:
            try:
                expired = expired or int(expires_in) <= 0
            except (TypeError, ValueError):
                pass
        return {"state": "expired" if expired else "pending", "pin_id": pin_id, "expires_at": expires_at}

    async def fetch_identity(self, auth_token: str, client_identifier: str) -> dict[str, Any]:
        """Resolve the linked account's id and email."""
        config = await self.config()
        response = await self.request(
            "GET", f"{PLEX_API_BASE}/user", headers=self._headers(config, client_identifier, auth_token)
        )
        data = self.json(response)
        user = data.get("user", data) if isinstance(data, dict) else {}
        account = user.get("account") or {}
        account_id = user.get("uuid") or user.get("id") or user.get("userID") or account.get("id")
        email = user.get("email") or account.get("email") or user.get("username")
        if not account_id:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "Plex did not return an account id")
        return {
            "media_account_id": str(account_id),
            "media_email": str(email).strip().lower() if email else None,
            "username": user.get("username") or user.get("title"),
        }

    async def verify_connection(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Request a throwaway PIN to prove plex.tv is reachable with these headers."""
        config = await self.config(overrides)
        client_identifier = self._client_identifier(config)
        try:
            await self.request(
                "POST",
                f"{PLEX_API_BASE}/pins",
                params={"strong": "true"},
                headers=self._headers(config, client_identifier),
            )
        except AdapterError as e:
            return {"ok": False, "diagnostic": e.message}
        return {"ok": True, "diagnostic": "Plex account linking is reachable."}
