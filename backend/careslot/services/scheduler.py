"""
Background Job Scheduler for Careslot.

Runs the escalation scan on a fixed cadence using APScheduler. Each scan is
stateless, so the same work can also be triggered on demand from the API.

- Job failure monitoring: repeated failures within 24 hours pause the job
  and raise a CRITICAL log (plus an ops event when configured)
- Health check endpoint support
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import settings
from ..core.database import get_supabase_client
from ..models.enums import BookingEventType


logger = logging.getLogger(__name__)


ESCALATION_SCAN_JOB = "escalation_scan"


# ==========================================
# Job Failure Monitor
# ==========================================

class JobFailureMonitor:
    """
    Monitor job failures and alert when threshold exceeded.

    Prevents a silently failing scan from hiding breached deadlines.
    """

    def __init__(self, failure_threshold: int = 2):
        self.failure_threshold = failure_threshold
        self.failed_jobs: dict[str, list[datetime]] = defaultdict(list)
        self.paused_jobs: set = set()

    def record_success(self, job_id: str) -> None:
        """Record job success - reset failure count."""
        self.failed_jobs[job_id] = []
        self.paused_jobs.discard(job_id)

    def record_failure(self, job_id: str, error: str) -> bool:
        """
        Record job failure and alert if threshold exceeded.

        Returns True if job should be paused.
        """
        now = datetime.now(timezone.utc)

        self.failed_jobs[job_id].append(now)

        # Keep only failures from last 24 hours
        cutoff = now - timedelta(hours=24)
        self.failed_jobs[job_id] = [
            t for t in self.failed_jobs[job_id] if t > cutoff
        ]

        failure_count = len(self.failed_jobs[job_id])

        if failure_count >= self.failure_threshold:
            self._send_critical_alert(job_id, failure_count, error)
            self.paused_jobs.add(job_id)
            return True

        return False

    def _send_critical_alert(self, job_id: str, failure_count: int, error: str) -> None:
        """Alert operations when job failures exceed threshold."""
        if settings.ops_escalation_email:
            from .notifications import NotificationService

            NotificationService().emit(
                BookingEventType.ESCALATED,
                {
                    "kind": "scheduler_job_failed",
                    "job_id": job_id,
                    "failure_count": failure_count,
                    "last_error": error,
                    "ops_email": settings.ops_escalation_email,
                    "service": settings.app_name,
                },
                recipient_id=settings.ops_escalation_email
            )

        logger.critical(
            f"CRITICAL: Job {job_id} failed {failure_count} times. "
            f"Last error: {error}. Job paused."
        )

    def get_status(self) -> dict[str, Any]:
        """Get current failure status for all jobs."""
        return {
            job_id: {
                "failure_count": len(failures),
                "last_failure": failures[-1].isoformat() if failures else None,
                "is_paused": job_id in self.paused_jobs
            }
            for job_id, failures in self.failed_jobs.items()
        }


class CareslotScheduler:
    """
    Background job scheduler for Careslot.

    Owns a single interval job that runs the escalation scan.
    """

    def __init__(self, monitor: Optional[JobFailureMonitor] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.job_monitor = monitor or JobFailureMonitor(
            failure_threshold=settings.job_failure_alert_threshold
        )

    def create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the scheduler."""
        return AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,
                "misfire_grace_time": settings.escalation_scan_interval_seconds
            },
            timezone=settings.scheduler_timezone
        )

    def start(self) -> None:
        """Start the scheduler with the escalation scan job."""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self.scheduler = self.create_scheduler()
        self.scheduler.add_job(
            escalation_scan_job,
            IntervalTrigger(seconds=settings.escalation_scan_interval_seconds),
            id=ESCALATION_SCAN_JOB,
            name="Escalation Scan",
            replace_existing=True
        )
        self.scheduler.start()
        self.is_running = True
        logger.info("Careslot scheduler started")

        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job.name}: Next run at {job.next_run_time}")

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self.scheduler and self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Careslot scheduler stopped")

    def trigger_job(self, job_id: str) -> bool:
        """Manually trigger a job to run immediately."""
        if not self.scheduler:
            logger.error("Scheduler not initialized")
            return False

        job = self.scheduler.get_job(job_id)
        if job:
            job.modify(next_run_time=datetime.now(timezone.utc))
            logger.info(f"Manually triggered job: {job_id}")
            return True
        logger.error(f"Job not found: {job_id}")
        return False

    def get_jobs_status(self) -> list:
        """Get status of all scheduled jobs."""
        if not self.scheduler:
            return []

        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]

    def pause_job(self, job_id: str) -> bool:
        if not self.scheduler:
            return False
        self.scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")
        return True

    def resume_job(self, job_id: str) -> bool:
        if not self.scheduler:
            return False
        self.scheduler.resume_job(job_id)
        self.job_monitor.paused_jobs.discard(job_id)
        logger.info(f"Resumed job: {job_id}")
        return True

    def get_health_status(self) -> dict[str, Any]:
        """Scheduler status and job failure information for monitoring."""
        failed_jobs = self.job_monitor.get_status()
        has_failures = any(
            info["failure_count"] > 0
            for info in failed_jobs.values()
        )

        return {
            "status": "degraded" if has_failures else "healthy",
            "is_running": self.is_running,
            "jobs": self.get_jobs_status(),
            "failures": failed_jobs,
            "paused_jobs": sorted(self.job_monitor.paused_jobs)
        }


# ==========================================
# JOB IMPLEMENTATIONS
# ==========================================

def run_escalation_scan() -> dict:
    """One escalation scan against the live database."""
    from .escalation import EscalationService

    return EscalationService(get_supabase_client()).run_escalation_scan()


async def escalation_scan_job() -> dict:
    """
    Scan open deadlines, notify and flag new escalations.

    Runs every `escalation_scan_interval_seconds`.
    """
    job_id = ESCALATION_SCAN_JOB
    start_time = datetime.now(timezone.utc)

    try:
        # Supabase calls are blocking; keep them off the event loop.
        result = await asyncio.to_thread(run_escalation_scan)
    except Exception as e:
        logger.error(f"Escalation scan failed: {e}", exc_info=True)

        should_pause = get_scheduler().job_monitor.record_failure(job_id, str(e))
        if should_pause:
            get_scheduler().pause_job(job_id)
        raise

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(f"Escalation scan completed in {elapsed:.2f}s")
    get_scheduler().job_monitor.record_success(job_id)
    return result


# ==========================================
# GLOBAL SCHEDULER INSTANCE
# ==========================================

scheduler = CareslotScheduler()


def get_scheduler() -> CareslotScheduler:
    """Get the global scheduler instance."""
    return scheduler

