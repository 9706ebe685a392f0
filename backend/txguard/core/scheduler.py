"""
Background monitor scheduler.

Runs the engine's periodic jobs (reference gas refresh, position health
recomputation, block sampling, audit retention) on fixed intervals.
Jobs are best-effort: a missed or slow tick is coalesced, never queued.

File: backend/txguard/core/scheduler.py
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .logging import get_logger

logger = get_logger(__name__)


def best_effort(func: Callable, job_id: str) -> Callable[[], Awaitable[None]]:
    """Wrap a monitor so a failed tick is logged and the next one still runs."""

    async def run() -> None:
        try:
            result = func()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Monitor job failed: {job_id}: {e}",
                exc_info=True,
                extra={'extra_data': {'job_id': job_id, 'error_type': type(e).__name__}}
            )

    return run


def _next_run(job: Any) -> Optional[str]:
    # Jobs added before start have no next run time yet
    next_run = getattr(job, "next_run_time", None)
    return next_run.isoformat() if next_run else None


class SchedulerManager:
    """
    Centralized scheduler for background monitors.

    Uses APScheduler with one instance per job and coalesced misfires so
    monitors may be skipped or delayed under load.
    """

    def __init__(self, misfire_grace_time: int = 30):
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_time
            }
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start processing scheduled jobs."""
        if not self._running:
            self.scheduler.start()
            self._running = True
            logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler without waiting for in-flight jobs."""
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable,
        seconds: float,
        id: str,
        name: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        """
        Add or replace a fixed-interval job.

        Args:
            func: Callable or coroutine function to execute
            seconds: Interval between runs
            id: Unique job identifier
            name: Human-readable job name
        """
        self.scheduler.add_job(
            func=best_effort(func, id),
            trigger="interval",
            seconds=seconds,
            id=id,
            name=name or id,
            replace_existing=True,
            **kwargs
        )
        logger.info(
            f"Scheduled job added: {name or id}",
            extra={'extra_data': {'job_id': id, 'interval_seconds': seconds}}
        )

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a scheduled job.

        Returns:
            bool: True if removed, False if not found
        """
        if self.scheduler.get_job(job_id) is None:
            logger.warning(f"Job not found: {job_id}")
            return False
        self.scheduler.remove_job(job_id)
        logger.info(f"Removed job: {job_id}")
        return True

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Describe all scheduled jobs."""
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": _next_run(job),
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]
