# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Background loops: access expiration, subscription refresh and trial reminders."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from donorgate_server.errors import AdapterError
from donorgate_server.store import donors as donor_store
from donorgate_server.store import events as event_store
from donorgate_server.store.settings import get_settings

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run on_tick every interval seconds until stop_event is set. At most one tick runs at a time."""

    def __init__(
        self,
        name: str,
        interval: float,
        on_tick: Callable[[], Awaitable[object]],
        stop_event: asyncio.Event,
    ) -> None:
        self.name = name
        self.interval = interval
        self.on_tick = on_tick
        self.stop_event = stop_event
        self.running = False
        self.task: asyncio.Task | None = None

    async def tick(self) -> bool:
        """Run one tick now. False when a tick is already in flight."""
        if self.running:
            return False
        self.running = True
        try:
            await self.on_tick()
        except Exception:
            logger.exception("Sweep %s failed; retrying next tick", self.name)
        finally:
            self.running = False
        return True

    async def _loop(self) -> None:
        while not self.stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")
        return self.task


class Sweeper:
    def __init__(self, container) -> None:
        self.container = container
        settings = container.settings
        self.stop_event = asyncio.Event()
        self.tasks = [
            PeriodicTask(
                "access-expiration",
                settings.access_expiration_interval_seconds,
                self.run_access_expiration,
                self.stop_event,
            ),
            PeriodicTask(
                "subscription-refresh",
                settings.subscription_refresh_interval_seconds,
                self.run_subscription_refresh,
                self.stop_event,
            ),
            PeriodicTask(
                "trial-reminder",
                settings.trial_reminder_interval_seconds,
                self.run_trial_reminders,
                self.stop_event,
            ),
        ]

    def task(self, name: str) -> PeriodicTask:
        return next(t for t in self.tasks if t.name == name)

    async def run_access_expiration(self) -> int:
        expired = await self.container.expirer.run()
        await self.container.effects.retry_pending()
        return expired

    async def run_subscription_refresh(self) -> int:
        if not await self.container.payment.is_configured():
            return 0
        return await self.container.refresher.run()

    async def run_trial_reminders(self) -> int:
        """Mail trial donors whose access ends within the reminder window, once each."""
        now = self.container.now()
        async with self.container.session() as db:
            trial = await get_settings(db, "trial")
            window_end = now + timedelta(hours=int(trial["reminder_hours"]))
            candidates = await donor_store.list_trial_reminder_candidates(db, now, window_end)
        sent = 0
        for donor in candidates:
            try:
                await self.container.mail.send_trial_reminder(
                    to=donor.email, name=donor.name, ends_at=donor.access_expires_at.isoformat()
                )
            except AdapterError as e:
                logger.warning("Trial reminder for donor %s failed: %s", donor.id, e.message)
                continue
            async with self.container.session() as db:
                current = await donor_store.find_donor(db, donor.id)
                if current is None or current.trial_reminder_sent_at is not None:
                    continue
                current.trial_reminder_sent_at = self.container.now()
                await event_store.log_event(
                    db,
                    "donor.trial.reminder.sent",
                    {"donorId": donor.id, "endsAt": donor.access_expires_at.isoformat()},
                    donor_id=donor.id,
                )
            sent += 1
        return sent

    def start(self) -> None:
        self.stop_event.clear()
        for task in self.tasks:
            task.start()
        logger.info("Sweepers started: %s", ", ".join(t.name for t in self.tasks))

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop new ticks, wait up to timeout for in-flight ones, then cancel the rest."""
        self.stop_event.set()
        running = [t.task for t in self.tasks if t.task is not None and not t.task.done()]
        if not running:
            return
        _, pending = await asyncio.wait(running, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d sweep(s) still running after %.0fs", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)
