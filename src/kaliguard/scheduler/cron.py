"""APScheduler-backed cron timers.

Five-field crontab expressions are parsed with CronTrigger.from_crontab and
dispatched by an AsyncIOScheduler on the running event loop. Each timer is
one APScheduler job whose id is the handle returned to the caller.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from kaliguard.core.exceptions import InvalidCronExpression
from kaliguard.protocols.scheduler import SchedulerProtocol, TimerCallback

log = structlog.get_logger(__name__)


def parse_crontab(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Build a CronTrigger from a crontab expression.

    Raises:
        InvalidCronExpression: If the expression does not have five fields
            or a field is out of range.
    """
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError) as e:
        raise InvalidCronExpression(expression, str(e)) from e


class APSchedulerBackend(SchedulerProtocol):
    """Recurring timers on an AsyncIOScheduler."""

    def __init__(
        self,
        timezone: str = "UTC",
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._timezone = timezone
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self._triggers: dict[str, CronTrigger] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def validate(self, spec: str) -> None:
        parse_crontab(spec, self._timezone)

    def schedule_recurring(self, spec: str, callback: TimerCallback) -> str:
        trigger = parse_crontab(spec, self._timezone)
        handle = uuid.uuid4().hex
        self._scheduler.add_job(
            callback,
            trigger=trigger,
            id=handle,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._triggers[handle] = trigger
        log.debug("cron_timer_scheduled", handle=handle, spec=spec)
        return handle

    def cancel(self, handle: str) -> None:
        self._triggers.pop(handle, None)
        try:
            self._scheduler.remove_job(handle)
        except JobLookupError:
            return
        log.debug("cron_timer_cancelled", handle=handle)

    def next_fire_time(self, handle: str) -> Optional[datetime]:
        trigger = self._triggers.get(handle)
        if trigger is None:
            return None
        if self._scheduler.running:
            job = self._scheduler.get_job(handle)
            return job.next_run_time if job is not None else None
        # Pending jobs have no next_run_time until the scheduler starts
        return trigger.get_next_fire_time(None, datetime.now(trigger.timezone))

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            log.info("cron_scheduler_started", timezone=self._timezone)

    def shutdown(self) -> None:
        self._scheduler.remove_all_jobs()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("cron_scheduler_stopped")
        self._triggers.clear()
