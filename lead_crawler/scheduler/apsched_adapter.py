"""APScheduler wrapper exposing higher level helpers."""

from __future__ import annotations

from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..logging_conf import configure_logging


class APSchedulerAdapter:
    """Manage the background jobs driving the task worker."""

    def __init__(self, scheduler: BackgroundScheduler | None = None) -> None:
        self.scheduler = scheduler or BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self, wait: bool = False) -> None:
        if self.started:
            self.scheduler.shutdown(wait=wait)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_interval(
        self,
        job_id: str,
        callback: Callable[[], None],
        seconds: float,
    ) -> None:
        """Run ``callback`` every ``seconds``; overlapping runs are skipped, missed ones coalesced."""

        trigger = IntervalTrigger(seconds=seconds)
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.logger.info("job_scheduled", job_id=job_id, seconds=seconds)

    def remove(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            self.logger.warning("job_remove_failed", job_id=job_id)

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["APSchedulerAdapter"]
