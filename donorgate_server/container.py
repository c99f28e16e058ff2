# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Process-wide service wiring. Built once at startup and stored on app.state."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from donorgate_server.config import Settings
from donorgate_server.database import create_engine, create_session_maker, session_scope
from donorgate_server.entitlement.locks import KeyedLocks
from donorgate_server.services.email import MailAdapter
from donorgate_server.services.paypal import PayPalAdapter
from donorgate_server.services.plex import PlexAdapter
from donorgate_server.services.plex_oauth import PlexOAuthAdapter


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    clock: Callable[[], datetime] = system_clock
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    payment: Any = None
    media: Any = None
    media_oauth: Any = None
    mail: Any = None
    coordinator: Any = None
    expirer: Any = None
    effects: Any = None
    lifecycle: Any = None
    processor: Any = None
    refresher: Any = None
    sweeper: Any = None

    def now(self) -> datetime:
        return self.clock()

    def session(self):
        """Open one store transaction."""
        return session_scope(self.session_maker)

    def settings_loader(self, group: str):
        async def load() -> dict[str, Any]:
            from donorgate_server.store.settings import get_settings

            async with self.session() as db:
                return await get_settings(db, group)

        return load

    async def load_settings(self, group: str) -> dict[str, Any]:
        return await self.settings_loader(group)()


def build_container(settings: Settings, **overrides: Any) -> Container:
    """Wire adapters and entitlement services. Keyword overrides replace any adapter or the clock."""
    from donorgate_server.entitlement.effects import EffectRunner
    from donorgate_server.entitlement.expiration import AccessExpirer
    from donorgate_server.entitlement.invites import InviteCoordinator
    from donorgate_server.entitlement.service import LifecycleService
    from donorgate_server.entitlement.subscriptions import SubscriptionRefresher
    from donorgate_server.entitlement.sweeper import Sweeper
    from donorgate_server.entitlement.webhooks import WebhookProcessor

    engine = overrides.pop("engine", None) or create_engine(settings.effective_database_url)
    container = Container(
        settings=settings,
        engine=engine,
        session_maker=create_session_maker(engine),
        clock=overrides.pop("clock", system_clock),
    )
    timeout = settings.adapter_timeout_seconds
    container.payment = overrides.pop("payment", None) or PayPalAdapter(
        container.settings_loader(PayPalAdapter.group), timeout=timeout
    )
    container.media = overrides.pop("media", None) or PlexAdapter(
        container.settings_loader(PlexAdapter.group), timeout=timeout
    )
    container.media_oauth = overrides.pop("media_oauth", None) or PlexOAuthAdapter(
        container.settings_loader(PlexOAuthAdapter.group), timeout=timeout, clock=container.clock
    )
    container.mail = overrides.pop("mail", None) or MailAdapter(
        container.settings_loader(MailAdapter.group), app_base_url=settings.app_base_url, timeout=timeout
    )
    if overrides:
        raise TypeError(f"Unknown container overrides: {', '.join(sorted(overrides))}")
    container.coordinator = InviteCoordinator(container)
    container.expirer = AccessExpirer(container)
    container.effects = EffectRunner(container)
    container.lifecycle = LifecycleService(container)
    container.processor = WebhookProcessor(container)
    container.refresher = SubscriptionRefresher(container)
    container.sweeper = Sweeper(container)
    return container


def get_container(request: Request) -> Container:
    """Dependency for FastAPI that returns the app's container."""
    return request.app.state.container
