# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Typed errors shared by the store, adapters, engine and HTTP layer."""

from datetime import datetime
from typing import Any


class DonorGateError(Exception):
    """Base error. Carries the HTTP status the API layer maps it to."""

    status_code = 500

    def __init__(self, message: str = "", **extra: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, **self.extra}


class NotFound(DonorGateError):
    status_code = 404


class Conflict(DonorGateError):
    status_code = 409


class ConflictingOwner(Conflict):
    """Share link given both (or neither) of donor and prospect owners."""


class ConstraintViolation(Conflict):
    """A uniqueness or check constraint rejected the write."""


class MediaLinkRequired(Conflict):
    def __init__(self, message: str = "Link your media account before requesting an invite.") -> None:
        super().__init__(message)


class CooldownActive(Conflict):
    """A new invite for a different recipient is inside the cooldown window."""

    def __init__(self, retry_at: datetime, message: str | None = None) -> None:
        self.retry_at = retry_at
        super().__init__(
            message or "Invite limit reached. You can send a new invite later.",
            retryAt=retry_at.isoformat(),
            payload={
                "inviteLimitReached": True,
                "nextInviteAvailableAt": retry_at.isoformat(),
            },
        )


class Unauthorized(DonorGateError):
    status_code = 401


class Forbidden(DonorGateError):
    status_code = 403


class SubscriptionRequired(Forbidden):
    def __init__(self, message: str = "An active subscription is required to generate a new invite.") -> None:
        super().__init__(message)


class ValidationError(DonorGateError):
    """Field-keyed validation failure."""

    status_code = 400

    def __init__(self, fields: dict[str, str], message: str = "Validation failed") -> None:
        self.fields = fields
        super().__init__(message, fields=fields)


class InvalidRecipient(ValidationError):
    def __init__(self, email: str | None = None) -> None:
        super().__init__({"email": "Please provide a valid email address."}, "Invalid invite recipient")
        self.email = email


class AdapterError(DonorGateError):
    """Transport-level failure talking to an external service."""

    status_code = 502

    UNAVAILABLE = "Unavailable"
    UNAUTHORIZED = "Unauthorized"
    INVALID_RESPONSE = "InvalidResponse"
    THROTTLED = "Throttled"

    def __init__(self, kind: str, message: str = "", retryable: bool | None = None) -> None:
        if retryable is None:
            retryable = kind in (self.UNAVAILABLE, self.THROTTLED)
        self.kind = kind
        self.retryable = retryable
        super().__init__(message or f"External service error ({kind})", kind=kind, retryable=retryable)


class StoreUnavailable(DonorGateError):
    status_code = 503

    def __init__(self, message: str = "Store unavailable") -> None:
        super().__init__(message)


class Internal(DonorGateError):
    status_code = 500
