"""Recurring task scheduling."""

from kaliguard.scheduler.cron import APSchedulerBackend, parse_crontab
from kaliguard.scheduler.tasks import TaskScheduler

__all__ = ["APSchedulerBackend", "TaskScheduler", "parse_crontab"]
