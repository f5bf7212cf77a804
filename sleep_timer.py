"""One-shot timer used by the playback sleep timer."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

LOGGER = logging.getLogger(__name__)


class SleepTimerScheduler:
    """Wrap APScheduler to hold at most one pending sleep-timer job."""

    def __init__(self, timezone: str = "UTC") -> None:
        self._scheduler = BackgroundScheduler(timezone=timezone)
        self._job_id: Optional[str] = None

    def start(self) -> None:
        if not self._scheduler.running:
            LOGGER.info("Starting sleep timer scheduler")
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            LOGGER.info("Stopping sleep timer scheduler")
            self._scheduler.shutdown(wait=False)

    def schedule(self, run_date: datetime, callback: Callable[[], None]) -> None:
        """Run *callback* once at *run_date*, replacing any pending job."""
        self.cancel()
        self.start()
        job = self._scheduler.add_job(callback, trigger=DateTrigger(run_date=run_date))
        LOGGER.debug("Scheduled sleep timer job %s at %s", job.id, run_date)
        self._job_id = job.id

    def cancel(self) -> None:
        if not self._job_id:
            return
        LOGGER.debug("Removing sleep timer job %s", self._job_id)
        try:
            self._scheduler.remove_job(self._job_id)
        except JobLookupError:
            # Already fired.
            pass
        self._job_id = None
