"""Scan Scheduler Service for background scan execution.

This module runs submitted compliance scans as APScheduler jobs so that the
submitting request returns immediately, and periodically fails scans that
outlived the maximum scan duration.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.services.scan_orchestrator import (
    ScanOrchestrator,
    ScanRunSummary,
    ScanStateError,
    expire_stale_scans,
    get_scan_orchestrator,
)

logger = logging.getLogger(__name__)

# Job ID for the periodic stale-scan sweep
STALE_SCAN_JOB_ID = "stale_scan_sweep"

SCAN_JOB_PREFIX = "scan:"


def scan_job_id(scan_id: uuid.UUID) -> str:
    return f"{SCAN_JOB_PREFIX}{scan_id}"


class SchedulerStatus(BaseModel):
    """Status information for the scan scheduler.

    Attributes:
        is_running: Whether the scheduler is currently running.
        running_scans: IDs of scans with a pending or running job.
        next_sweep_time: The next stale-scan sweep, if scheduled.
        sweep_interval_minutes: The configured sweep interval in minutes.
    """
    is_running: bool = Field(default=False, description="Whether scheduler is running")
    running_scans: list[str] = Field(default_factory=list, description="Scans with a scheduled job")
    next_sweep_time: Optional[datetime] = Field(default=None, description="Next stale-scan sweep time")
    sweep_interval_minutes: Optional[int] = Field(default=None, description="Sweep interval in minutes")


class ScanScheduler:
    """Service for running scans in the background.

    Each submitted scan becomes a one-off job with id ``scan:<scan id>``.
    Scans of different clients run concurrently on the event loop.

    Usage:
        scheduler = ScanScheduler()
        scheduler.start()
        scheduler.submit_scan(scan.id)
        status = scheduler.get_status()
        scheduler.shutdown()
    """

    def __init__(
        self,
        orchestrator_factory: Optional[Callable[[], ScanOrchestrator]] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the ScanScheduler."""
        self._scheduler: AsyncIOScheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._is_started: bool = False
        self._settings = settings or get_settings()
        self._orchestrator_factory = orchestrator_factory or get_scan_orchestrator
        if session_factory is None:
            from app.database import async_session_maker
            session_factory = async_session_maker
        self._session_factory = session_factory

    def start(self) -> None:
        """Start the APScheduler and the periodic stale-scan sweep."""
        if not self._is_started:
            self._scheduler.start()
            self._is_started = True
            self._scheduler.add_job(
                self.sweep_stale_scans,
                trigger=IntervalTrigger(minutes=self._settings.stale_scan_sweep_minutes),
                id=STALE_SCAN_JOB_ID,
                name="Stale Scan Sweep",
                replace_existing=True,
            )
            logger.info("Scan scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        """Shutdown the APScheduler.

        Args:
            wait: Whether to wait for running jobs to complete.
        """
        if self._is_started:
            self._scheduler.shutdown(wait=wait)
            self._is_started = False
            logger.info("Scan scheduler shut down")

    def submit_scan(self, scan_id: uuid.UUID) -> str:
        """Schedule a scan to run immediately in the background.

        Returns:
            The job id.
        """
        if not self._is_started:
            self.start()

        job_id = scan_job_id(scan_id)
        self._scheduler.add_job(
            self.run_scan,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
            args=[scan_id],
            id=job_id,
            name=f"Compliance Scan {scan_id}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info(f"Submitted scan {scan_id} as job {job_id}")
        return job_id

    def cancel_scan(self, scan_id: uuid.UUID) -> bool:
        """Remove a scan job that has not started yet.

        Returns:
            True if a pending job was removed, False if none existed.
        """
        try:
            self._scheduler.remove_job(scan_job_id(scan_id))
            logger.info(f"Cancelled pending job for scan {scan_id}")
            return True
        except JobLookupError:
            logger.info(f"No pending job for scan {scan_id}")
            return False

    def get_status(self) -> SchedulerStatus:
        """Get the current scheduler status."""
        status = SchedulerStatus(is_running=self._is_started and self._scheduler.running)

        for job in self._scheduler.get_jobs():
            if job.id.startswith(SCAN_JOB_PREFIX):
                status.running_scans.append(job.id[len(SCAN_JOB_PREFIX):])

        sweep = self._scheduler.get_job(STALE_SCAN_JOB_ID)
        if sweep:
            status.next_sweep_time = sweep.next_run_time
            if hasattr(sweep.trigger, "interval"):
                status.sweep_interval_minutes = int(sweep.trigger.interval.total_seconds() / 60)

        return status

    async def run_scan(self, scan_id: uuid.UUID) -> Optional[ScanRunSummary]:
        """Job body: run one scan to a terminal state.

        Returns:
            The run summary, or None if the scan could not be run.
        """
        logger.info(f"Executing scan job for {scan_id}")
        orchestrator = self._orchestrator_factory()
        try:
            summary = await orchestrator.run(scan_id)
        except ScanStateError as e:
            logger.error(f"Scan {scan_id} was not run: {e}")
            return None
        logger.info(f"Scan {scan_id} finished with status: {summary.status.value}")
        return summary

    async def sweep_stale_scans(self) -> list[uuid.UUID]:
        """Job body: fail in-progress scans that exceeded the duration budget."""
        async with self._session_factory() as session:
            expired = await expire_stale_scans(
                session,
                datetime.now(timezone.utc),
                self._settings.max_scan_duration_minutes,
            )
            await session.commit()
        if expired:
            logger.warning(f"Stale-scan sweep failed {len(expired)} scan(s)")
        return expired


# Global scheduler instance
_scheduler_instance: Optional[ScanScheduler] = None


def get_scan_scheduler() -> ScanScheduler:
    """Get or create the global ScanScheduler instance.

    Returns:
        The global ScanScheduler instance.
    """
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = ScanScheduler()
    return _scheduler_instance


def reset_scan_scheduler() -> None:
    """Reset the global scheduler instance.

    This is primarily useful for testing.
    """
    global _scheduler_instance
    if _scheduler_instance is not None:
        _scheduler_instance.shutdown()
        _scheduler_instance = None
