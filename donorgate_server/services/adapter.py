# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Shared plumbing for outbound adapters: config loading, deadlines, error mapping."""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import httpx

from donorgate_server.errors import AdapterError
from donorgate_server.services import server_settings

logger = logging.getLogger(__name__)

ConfigLoader = Callable[[], Awaitable[dict[str, Any]]]


class HttpAdapter:
    """Base class for adapters backed by an HTTP API and a settings group."""

    group: str = ""
    service_name: str = ""

    def __init__(
        self,
        load_config: ConfigLoader,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._load_config = load_config
        self.timeout = timeout
        self._transport = transport

    async def config(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Stored config, or the would-be config with overrides applied (nothing is saved)."""
        current = await self._load_config()
        if overrides:
            return server_settings.preview(self.group, current, overrides)
        return current

    def client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        allow_status: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and map transport failures to AdapterError.

        Statuses listed in allow_status are returned to the caller instead of raising.
        """
        try:
            async with self.client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise AdapterError(AdapterError.UNAVAILABLE, f"{self.service_name} timed out") from e
        except httpx.TransportError as e:
            raise AdapterError(AdapterError.UNAVAILABLE, f"Unable to reach {self.service_name}: {e}") from e
        if response.status_code in allow_status or response.is_success:
            return response
        detail = _error_detail(response)
        if response.status_code in (401, 403):
            raise AdapterError(AdapterError.UNAUTHORIZED, f"{self.service_name} rejected the credentials{detail}")
        if response.status_code == 429:
            raise AdapterError(AdapterError.THROTTLED, f"{self.service_name} is throttling requests")
        if response.status_code >= 500:
            raise AdapterError(
                AdapterError.UNAVAILABLE, f"{self.service_name} returned {response.status_code}{detail}"
            )
        raise AdapterError(
            AdapterError.INVALID_RESPONSE, f"{self.service_name} returned {response.status_code}{detail}"
        )

    def json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise AdapterError(
                AdapterError.INVALID_RESPONSE, f"{self.service_name} returned a non-JSON body"
            ) from e


def _error_detail(response: httpx.Response) -> str:
    text = (response.text or "").strip()
    if not text or text.startswith("<"):
        return ""
    if len(text) > 300:
        text = text[:297] + "..."
    return f": {text}"


def parse_timestamp(value: Any):
    """ISO-8601 string (with Z or offset) to aware UTC datetime; None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
