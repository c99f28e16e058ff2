# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Settings groups: typed schema, normaliser and verifier per group.

Stored blobs are untrusted: anything that fails validation falls back to the
group default field by field, so a bad value never breaks a read.
"""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

SECRET_MASK = "********"


class _Group(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentSettings(_Group):
    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    plan_id: str = ""
    api_base: str = "https://api-m.sandbox.paypal.com"
    subscription_price: float = Field(default=0, ge=0)
    currency: str = "USD"

    @field_validator("api_base")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.strip().rstrip("/") or "https://api-m.sandbox.paypal.com"

    @field_validator("currency")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class MailSettings(_Group):
    host: str = ""
    port: int = Field(default=587, ge=1, le=65535)
    secure: bool = False
    user: str = ""
    password: str = ""
    from_address: str = ""
    admin_email: str = ""


class MediaServerSettings(_Group):
    base_url: str = ""
    token: str = ""
    server_identifier: str = ""
    library_section_ids: list[str] = Field(default_factory=list)
    allow_sync: bool = False
    allow_camera_upload: bool = False
    allow_channels: bool = False

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("library_section_ids", mode="before")
    @classmethod
    def _section_ids(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [part for part in v.split(",")]
        if isinstance(v, (list, tuple)):
            return [str(part).strip() for part in v if str(part).strip()]
        return v


class MediaSettings(_Group):
    """Media-account OAuth (device PIN) client identity."""

    client_identifier: str = ""
    product: str = "DonorGate"
    device_name: str = "DonorGate Web"


class AnnouncementSettings(_Group):
    banner_enabled: bool = False
    banner_title: str = ""
    banner_body: str = ""
    banner_tone: Literal["info", "success", "warning", "danger", "neutral"] = "info"
    banner_dismissible: bool = True


class TrialSettings(_Group):
    enabled: bool = True
    duration_days: int = Field(default=7, ge=1, le=90)
    reminder_hours: int = Field(default=48, ge=1, le=24 * 30)


class CooldownSettings(_Group):
    invite_days: int = Field(default=30, ge=0, le=365)


class AppearanceSettings(_Group):
    site_name: str = "DonorGate"
    accent_color: str = Field(default="#e5a00d", pattern=r"^#[0-9a-fA-F]{6}$")
    support_url: str = ""


@dataclass(frozen=True)
class SettingsGroup:
    name: str
    schema: type[_Group]
    secrets: tuple[str, ...] = ()
    # Container attribute of the adapter whose verify_connection tests this group
    verifier: str | None = None


REGISTRY: dict[str, SettingsGroup] = {
    g.name: g
    for g in (
        SettingsGroup("payment", PaymentSettings, secrets=("client_secret",), verifier="payment"),
        SettingsGroup("mail", MailSettings, secrets=("password",), verifier="mail"),
        SettingsGroup("media_server", MediaServerSettings, secrets=("token",), verifier="media"),
        SettingsGroup("media", MediaSettings, verifier="media_oauth"),
        SettingsGroup("announcements", AnnouncementSettings),
        SettingsGroup("trial", TrialSettings),
        SettingsGroup("cooldown", CooldownSettings),
        SettingsGroup("appearance", AppearanceSettings),
    )
}


def get_group(name: str) -> SettingsGroup:
    """Look up a group; raises KeyError for unknown names."""
    return REGISTRY[name]


def defaults(name: str) -> dict[str, Any]:
    return get_group(name).schema().model_dump()


def normalize(name: str, value: Any) -> dict[str, Any]:
    """Return the canonical shape for a group, dropping invalid fields to their defaults."""
    schema = get_group(name).schema
    if not isinstance(value, dict):
        return schema().model_dump()
    data = {k: v for k, v in value.items() if k in schema.model_fields}
    while True:
        try:
            return schema.model_validate(data).model_dump()
        except PydanticValidationError as e:
            bad = {err["loc"][0] for err in e.errors() if err.get("loc")}
            bad &= set(data)
            if not bad:
                return schema().model_dump()
            for key in bad:
                data.pop(key)


def merge_update(name: str, current: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """Apply a partial update. Blank or masked secrets keep the stored secret."""
    group = get_group(name)
    merged = dict(current)
    for key, value in (update or {}).items():
        if key in group.secrets and (value is None or value == "" or value == SECRET_MASK):
            continue
        merged[key] = value
    return normalize(name, merged)


def preview(name: str, current: dict[str, Any], overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Would-be config after applying overrides, without saving."""
    return merge_update(name, current, overrides or {})


def mask_secrets(name: str, value: dict[str, Any]) -> dict[str, Any]:
    group = get_group(name)
    out = dict(value)
    for key in group.secrets:
        if out.get(key):
            out[key] = SECRET_MASK
    return out
