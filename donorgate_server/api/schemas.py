# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response. JSON uses camelCase; snake_case is accepted on input."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def dump(schema: type[BaseModel], obj: Any) -> dict[str, Any]:
    """Serialize an ORM row through a response schema."""
    return schema.model_validate(obj).model_dump(by_alias=True, mode="json")


# Donor auth
class DonorLogin(_Schema):
    email: str
    password: str


class DonorSignup(_Schema):
    email: EmailStr
    password: str
    name: str = ""


class PasswordResetRequest(_Schema):
    email: str


class PasswordResetConfirm(_Schema):
    token: str
    password: str


class VerifyEmailRequest(_Schema):
    token: str


class ProfileUpdate(_Schema):
    name: str | None = None
    email: str | None = None
    current_password: str | None = None
    new_password: str | None = None


class MediaLinkPoll(_Schema):
    pin_id: str
    client_identifier: str


class InviteRequest(_Schema):
    email: str | None = None
    note: str | None = Field(default=None, max_length=500)


class SupportCreate(_Schema):
    subject: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1, max_length=10000)


class SupportMessageCreate(_Schema):
    body: str = Field(min_length=1, max_length=10000)


# Admin
class AdminLogin(_Schema):
    username: str
    password: str


class AdminInviteRequest(InviteRequest):
    ignore_cooldown: bool = False


class StatusReset(_Schema):
    status: str


class ShareLinkCreate(_Schema):
    donor_id: int | None = None
    email: EmailStr | None = None
    name: str | None = None
    note: str | None = None


class AnnouncementRequest(_Schema):
    subject: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1)


# Share funnel
class ShareAccountCreate(_Schema):
    session_token: str
    password: str
    email: str | None = None
    name: str | None = None


class ShareCheckout(_Schema):
    session_token: str


class ShareInviteRequest(_Schema):
    session_token: str
    email: str = Field(min_length=1, max_length=320)
    name: str | None = None
    note: str | None = Field(default=None, max_length=500)


# Responses
class DonorResponse(_Schema):
    id: int
    email: str
    name: str
    status: str
    subscription_id: str | None = None
    last_payment_at: datetime | None = None
    access_expires_at: datetime | None = None
    media_account_id: str | None = None
    media_email: str | None = None
    email_verified_at: datetime | None = None
    trial_started_at: datetime | None = None
    created_at: datetime | None = None


class InviteResponse(_Schema):
    id: int
    donor_id: int
    media_invite_id: str | None = None
    media_invite_url: str | None = None
    status: str
    libraries: list[Any] = []
    recipient_email: str | None = None
    note: str | None = None
    email_sent_at: datetime | None = None
    revoked_at: datetime | None = None
    media_revoked_at: datetime | None = None
    media_account_id: str | None = None
    media_email: str | None = None
    created_at: datetime | None = None


class ShareLinkResponse(_Schema):
    id: int
    token: str
    donor_id: int | None = None
    prospect_id: int | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    used_at: datetime | None = None
    last_used_at: datetime | None = None


class ProspectResponse(_Schema):
    id: int
    email: str | None = None
    name: str | None = None
    note: str | None = None
    converted_donor_id: int | None = None
    converted_at: datetime | None = None
    created_at: datetime | None = None


class PaymentResponse(_Schema):
    id: int
    donor_id: int | None = None
    payment_id: str | None = None
    amount: str | None = None
    currency: str | None = None
    paid_at: datetime | None = None


class EventResponse(_Schema):
    id: int
    event_type: str
    payload: dict[str, Any] = {}
    donor_id: int | None = None
    external_id: str | None = None
    created_at: datetime | None = None


class SupportMessageResponse(_Schema):
    id: int
    request_id: int
    author_role: str
    body: str
    created_at: datetime | None = None


class SupportRequestResponse(_Schema):
    id: int
    donor_id: int | None = None
    subject: str
    resolved: bool
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
