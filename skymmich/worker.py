"""
Background plate-solving worker.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from .logging import get_logger
from .plate_solving import can_resubmit
from .events import PLATE_SOLVING_UPDATE
from .tables import utcnow

ERROR_BACKOFF_SECONDS = 5


class PlateSolvingWorker:
    """Submits unsolved images and advances processing jobs on an interval."""

    def __init__(self, storage, config_service, plate_solving, events=None):
        self.storage = storage
        self.config_service = config_service
        self.plate_solving = plate_solving
        self.events = events
        self.logger = get_logger("worker")

        self.running = False
        self.iterations = 0
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    def status(self) -> Dict[str, Any]:
        config = self.config_service.get_astrometry_config()
        return {
            "enabled": config.enabled and config.auto_enabled,
            "running": self.running,
            "iterations": self.iterations,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastError": self.last_error,
        }

    async def submit_unsolved_images(self) -> int:
        """Fill free concurrency slots with images that still need solving."""
        config = self.config_service.get_astrometry_config()
        if not (config.enabled and config.auto_enabled):
            return 0

        active = self.storage.count_active_jobs()
        slots = config.max_concurrent - active
        if slots <= 0:
            self.logger.debug(f"Max concurrent plate solving jobs ({config.max_concurrent}) reached")
            return 0

        submitted = 0
        for image in self.storage.get_images({"plate_solved": False}):
            if submitted >= slots:
                break
            if not image.full_url:
                continue

            job = self.storage.get_job_for_image(image.id)
            if job is not None and job.status != "failed":
                continue
            if job is not None and not can_resubmit(job, config):
                continue

            try:
                self.logger.info(f"🚀 Auto-submitting image {image.id} ({image.title})")
                await self.plate_solving.submit_image(image, job=job)
                submitted += 1
            except Exception as e:
                self.logger.error(f"❌ Failed to auto-submit image {image.id}: {e}")
        return submitted

    async def check_processing_jobs(self) -> int:
        """Advance every processing job; one failing job does not stop the others."""
        jobs = self.storage.get_plate_solving_jobs(status="processing")
        if jobs:
            self.logger.debug(f"Checking {len(jobs)} processing jobs")

        for job in jobs:
            try:
                await self.plate_solving.check_job_status(job.id)
            except Exception as e:
                self.logger.error(f"❌ Failed to update job {job.id}: {e}")
                if self.events is not None:
                    await self.events.emit(PLATE_SOLVING_UPDATE, {
                        "jobId": job.id,
                        "status": "error",
                        "error": str(e),
                    })
        return len(jobs)

    async def run_once(self) -> Dict[str, int]:
        submitted = await self.submit_unsolved_images()
        checked = await self.check_processing_jobs()
        self.iterations += 1
        self.last_run = utcnow()
        return {"submitted": submitted, "checked": checked}

    async def _sleep(self, seconds: float) -> None:
        """Sleep, returning early when ``stop`` is called."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        if self.running:
            self.logger.warning("⚠️  Worker is already running")
            return

        self.running = True
        self._wake.clear()
        config = self.config_service.get_astrometry_config()
        self.logger.info(
            f"🔭 Plate solving worker started (max {config.max_concurrent} concurrent, "
            f"check every {config.check_interval}s)"
        )

        while self.running:
            try:
                await self.run_once()
                self.last_error = None
                await self._sleep(self.config_service.get_astrometry_config().check_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                self.logger.error(f"❌ Worker error: {e}", exc_info=True)
                await self._sleep(ERROR_BACKOFF_SECONDS)

        self.logger.info("🛑 Plate solving worker stopped")

    def start(self) -> asyncio.Task:
        """Run the loop as a task on the current event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.running = False
        self._wake.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
