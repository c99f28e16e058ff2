# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""PayPal subscriptions API and webhook signature verification."""

import base64
import logging
import time
import zlib
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from donorgate_server.errors import AdapterError
from donorgate_server.services.adapter import HttpAdapter, parse_timestamp

logger = logging.getLogger(__name__)

CERT_CACHE_SECONDS = 3600
SUPPORTED_AUTH_ALGOS = ("SHA256withRSA",)


def paypal_environment(api_base: str) -> str:
    return "sandbox" if "sandbox" in (api_base or "").lower() else "live"


def checkout_url(plan_id: str, api_base: str) -> str:
    """Hosted subscription checkout for a plan; empty when no plan is configured."""
    if not plan_id:
        return ""
    host = "https://www.sandbox.paypal.com" if paypal_environment(api_base) == "sandbox" else "https://www.paypal.com"
    return f"{host}/webapps/billing/plans/subscribe?plan_id={plan_id}"


def subscriber_details(email: str, name: str | None) -> dict[str, Any]:
    """Subscriber block for subscription creation: email plus given name / surname."""
    details: dict[str, Any] = {"email_address": email}
    parts = (name or "").strip().split()
    if parts:
        details["name"] = {"given_name": parts[0]}
        if len(parts) > 1:
            details["name"]["surname"] = " ".join(parts[1:])
    return details


def _trusted_cert_url(url: str) -> bool:
    parsed = urlparse(url or "")
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == "paypal.com" or host.endswith(".paypal.com"))


class PayPalAdapter(HttpAdapter):
    """Payment processor adapter."""

    group = "payment"
    service_name = "PayPal"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._token_cache: dict[tuple[str, str], tuple[str, float]] = {}
        self._cert_cache: dict[str, tuple[x509.Certificate, float]] = {}

    async def is_configured(self, config: dict[str, Any] | None = None) -> bool:
        config = config or await self.config()
        return bool(config.get("client_id") and config.get("client_secret"))

    async def _access_token(self, config: dict[str, Any]) -> str:
        if not config.get("client_id") or not config.get("client_secret"):
            raise AdapterError(AdapterError.UNAUTHORIZED, "PayPal client credentials are not configured", retryable=False)
        key = (config["api_base"], config["client_id"])
        cached = self._token_cache.get(key)
        if cached and cached[1] > time.monotonic():
            return cached[0]
        response = await self.request(
            "POST",
            f"{config['api_base']}/v1/oauth2/token",
            auth=(config["client_id"], config["client_secret"]),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        data = self.json(response)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal did not return an access token")
        expires_in = int(data.get("expires_in") or 300)
        # Refresh a minute early
        self._token_cache[key] = (token, time.monotonic() + max(expires_in - 60, 30))
        return token

    async def _headers(self, config: dict[str, Any]) -> dict[str, str]:
        token = await self._access_token(config)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Fetch a subscription: status, last payment time and next billing time."""
        config = await self.config()
        response = await self.request(
            "GET",
            f"{config['api_base']}/v1/billing/subscriptions/{subscription_id}",
            headers=await self._headers(config),
        )
        data = self.json(response)
        if not isinstance(data, dict):
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal returned an unexpected subscription payload")
        billing = data.get("billing_info") or {}
        last_payment = billing.get("last_payment") or {}
        subscriber = data.get("subscriber") or {}
        name = subscriber.get("name") or {}
        return {
            "id": data.get("id") or subscription_id,
            "status": str(data.get("status") or "").upper(),
            "last_payment_time": parse_timestamp(last_payment.get("time")),
            "next_billing_time": parse_timestamp(billing.get("next_billing_time")),
            "email": subscriber.get("email_address"),
            "name": " ".join(p for p in (name.get("given_name"), name.get("surname")) if p),
        }

    async def create_subscription(
        self,
        plan_id: str,
        subscriber: dict[str, Any],
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        """Create a subscription and return its id and the approval link."""
        config = await self.config()
        plan_id = plan_id or config.get("plan_id")
        if not plan_id:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal plan id is not configured", retryable=False)
        body: dict[str, Any] = {"plan_id": plan_id, "subscriber": subscriber}
        context: dict[str, Any] = {"user_action": "SUBSCRIBE_NOW", "shipping_preference": "NO_SHIPPING"}
        if return_url:
            context["return_url"] = return_url
        if cancel_url:
            context["cancel_url"] = cancel_url
        body["application_context"] = context
        response = await self.request(
            "POST",
            f"{config['api_base']}/v1/billing/subscriptions",
            json=body,
            headers=await self._headers(config),
        )
        data = self.json(response)
        if not isinstance(data, dict):
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal returned an unexpected subscription payload")
        links = data.get("links") or []
        approval = next((link.get("href") for link in links if link.get("rel") == "approve"), None)
        if not data.get("id") or not approval:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal did not return an approval link")
        return {"subscription_id": data["id"], "approval_url": approval}

    async def _certificate(self, cert_url: str) -> x509.Certificate:
        cached = self._cert_cache.get(cert_url)
        if cached and cached[1] > time.monotonic():
            return cached[0]
        response = await self.request("GET", cert_url)
        try:
            cert = x509.load_pem_x509_certificate(response.content)
        except ValueError as e:
            raise AdapterError(AdapterError.INVALID_RESPONSE, "PayPal signing certificate is not valid PEM") from e
        self._cert_cache[cert_url] = (cert, time.monotonic() + CERT_CACHE_SECONDS)
        return cert

    async def verify_webhook_signature(self, headers: dict[str, str], raw_body: bytes) -> bool:
        """Check the transmission signature against PayPal's signing certificate.

        The signed message is transmission_id|transmission_time|webhook_id|crc32(body).
        Any failure, including an unreachable certificate host, rejects the event.
        """
        headers = {k.lower(): v for k, v in headers.items()}
        config = await self.config()
        webhook_id = config.get("webhook_id")
        transmission_id = headers.get("paypal-transmission-id")
        transmission_time = headers.get("paypal-transmission-time")
        signature = headers.get("paypal-transmission-sig")
        cert_url = headers.get("paypal-cert-url")
        auth_algo = headers.get("paypal-auth-algo") or "SHA256withRSA"
        if not webhook_id:
            logger.warning("Webhook rejected: PayPal webhook id is not configured")
            return False
        if not (transmission_id and transmission_time and signature and cert_url):
            logger.warning("Webhook rejected: missing PayPal transmission headers")
            return False
        if auth_algo not in SUPPORTED_AUTH_ALGOS:
            logger.warning("Webhook rejected: unsupported auth algorithm %s", auth_algo)
            return False
        if not _trusted_cert_url(cert_url):
            logger.warning("Webhook rejected: untrusted certificate URL %s", cert_url)
            return False
        try:
            cert = await self._certificate(cert_url)
        except AdapterError as e:
            logger.warning("Webhook rejected: could not load signing certificate: %s", e)
            return False
        now = datetime.now(timezone.utc)
        if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
            logger.warning("Webhook rejected: signing certificate is outside its validity window")
            return False
        message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(raw_body)}".encode()
        try:
            cert.public_key().verify(base64.b64decode(signature), message, padding.PKCS1v15(), hashes.SHA256())
        except (InvalidSignature, ValueError, TypeError):
            logger.warning("Webhook rejected: signature mismatch for transmission %s", transmission_id)
            return False
        return True

    async def verify_connection(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Fetch an OAuth token with the (possibly previewed) credentials."""
        config = await self.config(overrides)
        if not await self.is_configured(config):
            return {"ok": False, "diagnostic": "PayPal client id and secret are required"}
        self._token_cache.pop((config["api_base"], config["client_id"]), None)
        try:
            await self._access_token(config)
        except AdapterError as e:
            return {"ok": False, "diagnostic": e.message}
        return {
            "ok": True,
            "diagnostic": f"PayPal credentials verified ({paypal_environment(config['api_base'])})",
        }
