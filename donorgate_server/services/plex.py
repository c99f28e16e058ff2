# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Plex media server adapter: invites, user listing and share revocation."""

import logging
from typing import Any

from donorgate_server.errors import AdapterError
from donorgate_server.services.adapter import HttpAdapter, parse_timestamp

logger = logging.getLogger(__name__)

PLEX_TV_BASE_URL = "https://plex.tv"
SHARED_SERVERS_PATH = "/api/v2/shared_servers"
# Tried in order; the first one the server answers is remembered per base URL
USER_LIST_ENDPOINTS = ("/accounts", "/api/v2/home/users", "/api/home/users")
LIBRARY_SECTIONS_ENDPOINT = "/library/sections"


def _norm(value: Any) -> str:
    return "" if value is None else str(value).strip().lower()


def _flag(value: Any) -> str:
    return "1" if value else "0"


def matches_account_id(user: dict[str, Any], account_id: str | None) -> bool:
    wanted = _norm(account_id)
    if not wanted:
        return False
    account = user.get("account") or {}
    candidates = (user.get("id"), user.get("uuid"), user.get("userID"), user.get("machineIdentifier"), account.get("id"))
    return any(_norm(c) == wanted for c in candidates)


def matches_email(user: dict[str, Any], email: str | None) -> bool:
    wanted = _norm(email)
    if not wanted:
        return False
    account = user.get("account") or {}
    candidates = (user.get("email"), user.get("username"), user.get("title"), account.get("email"))
    return any(_norm(c) == wanted for c in candidates)


def _users_from_payload(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [u for u in data if isinstance(u, dict)]
    if not isinstance(data, dict):
        return []
    container = data.get("MediaContainer") if isinstance(data.get("MediaContainer"), dict) else data
    for key in ("users", "Account", "User", "Metadata"):
        value = container.get(key)
        if isinstance(value, list):
            return [u for u in value if isinstance(u, dict)]
    return []


def _libraries_from_payload(data: Any) -> list[dict[str, str]]:
    container = data.get("MediaContainer", data) if isinstance(data, dict) else {}
    directories = container.get("Directory") or [] if isinstance(container, dict) else []
    libraries = []
    for entry in directories:
        if not isinstance(entry, dict):
            continue
        key = entry.get("key") or entry.get("id")
        if key is None:
            continue
        libraries.append({"id": str(key), "title": entry.get("title") or "", "type": entry.get("type") or ""})
    return libraries


def map_invite_response(data: Any) -> dict[str, Any]:
    container = data.get("invitation", data) if isinstance(data, dict) else {}
    if not isinstance(container, dict):
        container = {}
    invite_id = container.get("id") or container.get("uuid") or container.get("inviteId")
    invite_url = container.get("inviteUrl") or container.get("shareUrl") or container.get("uri") or container.get("url")
    libraries = container.get("libraries") or container.get("sharedLibraries") or []
    return {
        "invite_id": str(invite_id) if invite_id is not None else None,
        "invite_url": str(invite_url) if invite_url else None,
        "status": container.get("status") or container.get("state") or "pending",
        "invited_at": parse_timestamp(container.get("createdAt") or container.get("created_at")),
        "libraries": [
            {"id": str(lib.get("id") or lib.get("sectionID") or ""), "title": lib.get("title") or lib.get("name") or ""}
            for lib in libraries
            if isinstance(lib, dict)
        ],
    }


class PlexAdapter(HttpAdapter):
    """Media server adapter."""

    group = "media_server"
    service_name = "Plex"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._user_list_path: dict[str, str] = {}

    async def is_configured(self, config: dict[str, Any] | None = None) -> bool:
        config = config or await self.config()
        return bool(config.get("base_url") and config.get("token"))

    def _headers(self, config: dict[str, Any], extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json", "X-Plex-Token": config.get("token") or ""}
        if config.get("server_identifier"):
            headers["X-Plex-Client-Identifier"] = config["server_identifier"]
        headers.update(extra or {})
        return headers

    async def _require(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        config = await self.config(overrides)
        if not await self.is_configured(config):
            raise AdapterError(AdapterError.UNAUTHORIZED, "Plex base URL and token must be configured", retryable=False)
        return config

    async def _fetch_users(self, config: dict[str, Any]) -> tuple[list[dict[str, Any]], str]:
        base = config["base_url"]
        preferred = self._user_list_path.get(base)
        endpoints = [preferred] if preferred else []
        endpoints += [p for p in USER_LIST_ENDPOINTS if p != preferred]
        for path in endpoints:
            response = await self.request("GET", f"{base}{path}", headers=self._headers(config), allow_status=(404,))
            if response.status_code == 404:
                if preferred == path:
                    self._user_list_path.pop(base, None)
                continue
            self._user_list_path[base] = path
            return _users_from_payload(self.json(response)), path
        raise AdapterError(
            AdapterError.INVALID_RESPONSE,
            f"Plex returned 404 for every user list endpoint ({', '.join(USER_LIST_ENDPOINTS)})",
            retryable=False,
        )

    async def list_users(self) -> list[dict[str, Any]]:
        config = await self._require()
        users, _ = await self._fetch_users(config)
        return users

    async def create_invite(
        self,
        *,
        email: str,
        server_identifier: str | None = None,
        section_ids: list[str] | None = None,
        friendly_name: str | None = None,
        sharing_flags: dict[str, bool] | None = None,
    ) -> dict[str, Any]:
        """Share the configured libraries with email. Returns invite id, URL, status and libraries."""
        config = await self._require()
        machine_id = server_identifier or config.get("server_identifier")
        if not machine_id:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "Plex server identifier must be configured", retryable=False)
        flags = {
            "allow_sync": config.get("allow_sync"),
            "allow_camera_upload": config.get("allow_camera_upload"),
            "allow_channels": config.get("allow_channels"),
            **(sharing_flags or {}),
        }
        body: dict[str, Any] = {
            "machineIdentifier": machine_id,
            "librarySectionIds": [str(s) for s in (section_ids if section_ids is not None else config["library_section_ids"])],
            "invitedEmail": email.strip(),
            "settings": {
                "allowSync": _flag(flags["allow_sync"]),
                "allowCameraUpload": _flag(flags["allow_camera_upload"]),
                "allowChannels": _flag(flags["allow_channels"]),
            },
        }
        if friendly_name:
            body["friendlyName"] = friendly_name.strip()
        response = await self.request(
            "POST",
            f"{PLEX_TV_BASE_URL}{SHARED_SERVERS_PATH}",
            json=body,
            headers=self._headers(config, {"Content-Type": "application/json"}),
        )
        mapped = map_invite_response(self.json(response) if response.content else {})
        if not mapped["invite_id"] and not mapped["invite_url"]:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "Plex did not return an invite identifier")
        if not mapped["libraries"]:
            mapped["libraries"] = [{"id": s, "title": ""} for s in body["librarySectionIds"]]
        return mapped

    async def revoke_user(self, *, media_account_id: str | None = None, email: str | None = None) -> dict[str, Any]:
        """Remove a user's share. Matches by account id first, then email.

        A user the server does not know is reported as reason "not_found", not raised.
        An unconfigured adapter reports skipped=True.
        """
        config = await self.config()
        if not await self.is_configured(config):
            return {"success": False, "skipped": True, "reason": "not_configured"}
        users, base_path = await self._fetch_users(config)
        target = None
        if media_account_id:
            target = next((u for u in users if matches_account_id(u, media_account_id)), None)
        if target is None and email:
            target = next((u for u in users if matches_email(u, email)), None)
        if target is None:
            return {"success": False, "reason": "not_found"}
        user_id = target.get("id") or target.get("uuid") or target.get("userID")
        if not user_id:
            return {"success": False, "reason": "not_found"}
        response = await self.request(
            "DELETE",
            f"{config['base_url']}{base_path}/{user_id}",
            headers=self._headers(config),
            allow_status=(404,),
        )
        if response.status_code == 404:
            return {"success": False, "reason": "not_found"}
        return {"success": True, "reason": "revoked", "share_id": str(user_id)}

    async def verify_connection(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """List library sections with the (possibly previewed) config."""
        config = await self.config(overrides)
        if not await self.is_configured(config):
            return {"ok": False, "diagnostic": "Plex base URL and token are required"}
        try:
            response = await self.request(
                "GET", f"{config['base_url']}{LIBRARY_SECTIONS_ENDPOINT}", headers=self._headers(config)
            )
            libraries = _libraries_from_payload(self.json(response))
        except AdapterError as e:
            return {"ok": False, "diagnostic": e.message}
        if not libraries:
            return {"ok": False, "diagnostic": "No Plex libraries were found. Confirm the token has access to your server."}
        missing = [s for s in config["library_section_ids"] if s not in {lib["id"] for lib in libraries}]
        diagnostic = "Plex connection verified."
        if not config.get("server_identifier"):
            diagnostic += " Set the server identifier to enable invites."
        if missing:
            diagnostic += f" Unknown library sections: {', '.join(missing)}."
        return {"ok": True, "diagnostic": diagnostic, "libraries": libraries}
