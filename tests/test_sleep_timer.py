import threading
from datetime import datetime, timedelta

import pytz

from sleep_timer import SleepTimerScheduler


def test_schedule_replaces_pending_job():
    scheduler = SleepTimerScheduler(timezone="UTC")
    later = datetime.now(pytz.UTC) + timedelta(hours=1)
    try:
        scheduler.schedule(later, lambda: None)
        scheduler.schedule(later + timedelta(minutes=5), lambda: None)

        jobs = scheduler._scheduler.get_jobs()
        assert len(jobs) == 1
        assert jobs[0].next_run_time == later + timedelta(minutes=5)

        scheduler.cancel()
        assert scheduler._scheduler.get_jobs() == []
        scheduler.cancel()
    finally:
        scheduler.shutdown()


def test_job_fires_once():
    scheduler = SleepTimerScheduler(timezone="UTC")
    fired = threading.Event()
    try:
        scheduler.schedule(datetime.now(pytz.UTC) + timedelta(milliseconds=100), fired.set)
        assert fired.wait(5)
        scheduler.cancel()
        assert scheduler._scheduler.get_jobs() == []
    finally:
        scheduler.shutdown()
