from __future__ import annotations

import logging
import os
from datetime import timezone

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from rulecraft.core.cache.evaluation import EvaluationCache

logger = logging.getLogger("rulecraft.scheduler.maintenance")

CACHE_SWEEP_JOB_ID = "rulecraft-cache-sweep"


class CacheMaintenanceScheduler:
    """Periodically sweeps an evaluation cache on a background APScheduler thread."""

    def __init__(self, cache: EvaluationCache, interval_s: int = 300) -> None:
        self.cache = cache
        self.interval_s = max(1, int(interval_s))
        self.test_mode = os.getenv("RULECRAFT_TEST_MODE", "").casefold() in {"1", "true", "yes", "on"}
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            timezone=timezone.utc,
        )
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self.scheduler.add_job(
            self.sweep,
            trigger="interval",
            id=CACHE_SWEEP_JOB_ID,
            seconds=self.interval_s,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if self.test_mode:
            return
        self.scheduler.start()
        self._started = True

    def shutdown(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def sweep(self) -> int:
        removed = self.cache.sweep()
        logger.info("cache_sweep_completed", extra={"extra_fields": {"removed": removed, "size": len(self.cache)}})
        return removed
