"""Cron schedules: next-run computation and the polling runner."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from agentc2.errors import ValidationError
from agentc2.models.records import utcnow

if TYPE_CHECKING:
    from agentc2.triggers.dispatch import TriggerDispatcher

logger = logging.getLogger(__name__)


def get_next_run_at(cron_expr: str, tz: str = "UTC", after: datetime | None = None) -> datetime:
    """Next fire time of ``cron_expr`` evaluated in ``tz``, returned in UTC.

    Raises:
        ValidationError: Invalid cron expression or unknown timezone
    """
    try:
        zone = ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Invalid timezone: {tz}") from None

    if not croniter.is_valid(cron_expr):
        raise ValidationError(f"Invalid cron expression: {cron_expr}")

    start = (after or utcnow()).astimezone(zone)
    next_local = croniter(cron_expr, start).get_next(datetime)
    return next_local.astimezone(timezone.utc)


class ScheduleRunner:
    """Fires due schedules through the dispatcher.

    Usage:
        runner = ScheduleRunner(dispatcher, interval=30)
        await runner.start()
        ...
        await runner.stop()
    """

    def __init__(self, dispatcher: TriggerDispatcher, interval: float = 30.0) -> None:
        self.dispatcher = dispatcher
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("ScheduleRunner started (interval=%.0fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("ScheduleRunner stopped")

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Fire every active schedule that is due. Returns the run ids."""
        now = now or utcnow()
        due = self.dispatcher.db.schedules.list(
            lambda s: s.is_active and s.next_run_at is not None and s.next_run_at <= now,
            newest_first=False,
        )

        run_ids = []
        for schedule in due:
            try:
                run_id = await self.dispatcher.fire_due_schedule(schedule, now)
            except Exception as e:
                logger.error("Schedule %s failed to fire: %s", schedule.id, e, exc_info=True)
                continue
            if run_id:
                run_ids.append(run_id)
        return run_ids

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Schedule poll failed: %s", e)
            await asyncio.sleep(self.interval)
