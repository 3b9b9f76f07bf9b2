"""
Scheduler Service Module

Runs the background ``PeriodicTask``s on APScheduler interval jobs. Tasks
keep their own ``tick(now)`` API so tests drive them on virtual time; this
service only supplies the wall clock in production.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..core.tasks import PeriodicTask

logger = logging.getLogger("companion.scheduler.service")


class SchedulerService:
    """
    Central scheduler for the background tasks.

    Jobs are bound methods, so only the in-memory job store is used.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.jobs: Dict[str, Any] = {}
        self.tasks: Dict[str, PeriodicTask] = {}
        self.active = False

        self.scheduler = AsyncIOScheduler(
            timezone=pytz.UTC,
            job_defaults={
                "coalesce": True,  # Combine missed executions into a single execution
                "max_instances": 1,  # Only allow one instance of each job to run at a time
            },
        )

        self.job_metrics: Dict[str, Dict[str, Any]] = {}

        logger.info("Scheduler service initialized")

    async def start(self):
        """Start the scheduler service."""
        if self.active:
            logger.warning("Scheduler already running")
            return

        try:
            self.scheduler.start()
            self.active = True
            logger.info("Scheduler service started")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {str(e)}", exc_info=True)

    async def stop(self):
        """Cancel every registered task and stop the scheduler."""
        for task in self.tasks.values():
            task.cancel("scheduler stopping")

        if not self.active:
            logger.debug("Scheduler not running")
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.active = False
            logger.info("Scheduler service stopped")
        except Exception as e:
            logger.error(f"Failed to stop scheduler: {str(e)}", exc_info=True)

    def _record(self, job_id: str, success: bool, execution_time: float) -> None:
        metrics = self.job_metrics.setdefault(job_id, {"executions": 0, "success": 0, "failures": 0, "avg_time": 0})
        metrics["executions"] += 1
        metrics["success" if success else "failures"] += 1

        # Exponential moving average after the first run
        if metrics["executions"] == 1:
            metrics["avg_time"] = execution_time
        else:
            metrics["avg_time"] = (metrics["avg_time"] * 0.8) + (execution_time * 0.2)

    async def add_job(self, job_id: str, func: Callable, trigger: Union[str, Any] = None, **trigger_args) -> Optional[str]:
        """
        Add a coroutine job to the scheduler.

        Args:
            job_id: Unique identifier for the job
            func: Coroutine function to execute
            trigger: Trigger type ('date', 'interval', 'cron') or an APScheduler trigger instance
            **trigger_args: Arguments for the trigger

        Returns:
            Job ID if successful, None if failed
        """
        if job_id in self.jobs:
            logger.warning(f"Job {job_id} already exists, removing existing job")
            await self.remove_job(job_id)

        async def wrapped_func(*args, **kwargs):
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
                success = True
            except Exception as e:
                logger.error(f"Error executing job {job_id}: {str(e)}", exc_info=True)
                result = None
                success = False
            self._record(job_id, success, time.time() - start_time)
            return result

        try:
            trigger_args.setdefault("replace_existing", True)
            job = self.scheduler.add_job(wrapped_func, trigger, id=job_id, **trigger_args)
            self.jobs[job_id] = job
            logger.info(f"Added job {job_id} with trigger {trigger}")
            return job_id
        except Exception as e:
            logger.error(f"Failed to add job {job_id}: {str(e)}", exc_info=True)
            return None

    async def add_periodic_task(self, task: PeriodicTask, job_id: Optional[str] = None) -> Optional[str]:
        """Schedule ``task.tick`` every ``task.interval_seconds``."""
        job_id = job_id or task.name
        previous = self.tasks.pop(job_id, None)
        if previous is not None and previous is not task:
            previous.cancel("replaced")
        added = await self.add_job(job_id, task.tick, "interval", seconds=task.interval_seconds)
        if added is not None:
            self.tasks[job_id] = task
        return added

    async def remove_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
            self.jobs.pop(job_id, None)
            task = self.tasks.pop(job_id, None)
            if task is not None:
                task.cancel("job removed")
            logger.info(f"Removed job {job_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to remove job {job_id}: {str(e)}", exc_info=True)
            return False

    async def get_all_jobs(self) -> List[Dict[str, Any]]:
        """
        Get information about all jobs.

        Returns:
            List of job information dictionaries
        """
        jobs = []
        for job in self.scheduler.get_jobs():
            info = {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger),
            }
            if job.id in self.job_metrics:
                info["metrics"] = self.job_metrics[job.id]
            if job.id in self.tasks:
                info["task"] = self.tasks[job.id].status()
            jobs.append(info)
        return jobs
