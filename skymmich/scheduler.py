"""
Cron scheduling for the Immich import and notification housekeeping.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from croniter import croniter
import pytz

from .config import settings
from .events import NOTIFICATION
from .logging import get_logger

IMMICH_SYNC_JOB = "immich-sync"
CLEANUP_JOB = "notification-cleanup"
CLEANUP_SCHEDULE = "0 2 * * *"


@dataclass
class CronJob:
    """A scheduled job and its last outcome."""

    id: str
    name: str
    schedule: str
    handler: Callable[[], Awaitable[Any]]
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_error: Optional[str] = None
    running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "schedule": self.schedule,
            "enabled": self.enabled,
            "running": self.running,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "lastError": self.last_error,
        }


class CronManager:
    """Runs cron-scheduled jobs inside the service's event loop."""

    def __init__(self, storage, config_service, immich_sync, events=None, tick_seconds: float = 30.0):
        self.storage = storage
        self.config_service = config_service
        self.immich_sync = immich_sync
        self.events = events
        self.tick_seconds = tick_seconds
        self.logger = get_logger("scheduler")
        self.timezone = pytz.timezone(settings.timezone)
        self.jobs: Dict[str, CronJob] = {}
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def _now(self) -> datetime:
        return datetime.now(self.timezone)

    def _next_run(self, schedule: str, after: Optional[datetime] = None) -> datetime:
        return croniter(schedule, after or self._now()).get_next(datetime)

    # ── Job definitions ───────────────────────────────────────────────────
    async def _run_immich_sync(self) -> None:
        await self.immich_sync.run_sync()

    async def _run_cleanup(self) -> None:
        removed = self.storage.clear_old_notifications(settings.notification_retention_days)
        self.logger.info(f"🧹 Removed {removed} old notifications")

    async def _notify_error(self, title: str, message: str, details: Dict[str, Any]) -> None:
        notification = self.storage.create_notification("error", title, message, details)
        if self.events is not None:
            await self.events.emit(NOTIFICATION, {
                "id": notification.id,
                "type": notification.type,
                "title": notification.title,
                "message": notification.message,
            })

    def schedule_job(self, job_id: str, name: str, schedule: str,
                     handler: Callable[[], Awaitable[Any]], enabled: bool = True) -> Optional[CronJob]:
        """Register a job; an invalid expression leaves it unscheduled."""
        self.jobs.pop(job_id, None)
        if not croniter.is_valid(schedule):
            self.logger.error(f"❌ Invalid cron expression for {name}: {schedule}")
            self.storage.create_notification(
                "error",
                "Cron Job Scheduling Failed",
                f"Failed to schedule {name} with cron expression: {schedule}",
                {"jobId": job_id, "schedule": schedule, "error": "Invalid cron expression"},
            )
            return None

        job = CronJob(id=job_id, name=name, schedule=schedule, handler=handler, enabled=enabled)
        job.next_run = self._next_run(schedule) if enabled else None
        self.jobs[job_id] = job
        state = f"next run {job.next_run.isoformat()}" if enabled else "disabled"
        self.logger.info(f"⏰ Scheduled {name} with cron '{schedule}' ({state})")
        return job

    def reschedule_all(self) -> None:
        """Rebuild every job from the current configuration."""
        immich = self.config_service.get_immich_config()
        self.schedule_job(
            IMMICH_SYNC_JOB,
            "Immich Sync",
            immich.sync_frequency or "0 */4 * * *",
            self._run_immich_sync,
            enabled=immich.auto_sync,
        )
        self.schedule_job(CLEANUP_JOB, "Notification Cleanup", CLEANUP_SCHEDULE, self._run_cleanup)

    # ── Execution ─────────────────────────────────────────────────────────
    async def run_job(self, job_id: str) -> bool:
        """Run one job now; failures are recorded and never raised."""
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.running:
            self.logger.warning(f"⚠️  {job.name} is still running, skipping")
            return False

        job.running = True
        job.last_run = self._now()
        try:
            await job.handler()
            job.last_error = None
            return True
        except Exception as e:
            job.last_error = str(e)
            self.logger.error(f"❌ {job.name} failed: {e}")
            # Cleanup failures are only logged so a broken database cannot loop on notifications
            if job.id != CLEANUP_JOB:
                title = "Immich Sync Failed" if job.id == IMMICH_SYNC_JOB else "Cron Job Error"
                await self._notify_error(
                    title,
                    f"Automatic {job.name.lower()} failed: {e}",
                    {"jobId": job.id, "timestamp": job.last_run.isoformat(), "error": str(e)},
                )
            return False
        finally:
            job.running = False
            if job.enabled:
                job.next_run = self._next_run(job.schedule)

    async def run_pending(self) -> List[str]:
        """Run every enabled job whose next run time has passed."""
        now = self._now()
        due = [job for job in self.jobs.values() if job.enabled and job.next_run and job.next_run <= now]
        for job in due:
            await self.run_job(job.id)
        return [job.id for job in due]

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.run_pending()
            except Exception as e:
                self.logger.error(f"Error in scheduler loop: {e}")
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> asyncio.Task:
        self.reschedule_all()
        self.running = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        self.logger.info(f"⏰ Cron manager started ({len(self.jobs)} jobs, timezone {settings.timezone})")
        return self._task

    async def shutdown(self) -> None:
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.jobs.clear()
        self.logger.info("Cron manager stopped")

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self.jobs.values()]
