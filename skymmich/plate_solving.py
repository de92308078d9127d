"""
Plate-solving workflow: submit to Astrometry.net, track the job, and apply
the result to the image, its sidecar and connected clients.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .astrometry_client import AstrometryAPIError, AstrometryClient
from .config import settings
from .constellations import constellation_for
from .events import PLATE_SOLVING_UPDATE
from .immich_client import ImmichAPIError, ImmichClient
from .logging import get_logger
from .models import PlateSolvingResult, SubmissionResult
from .performance_monitor import performance_monitor
from .tables import utcnow
from .tags import merge_tags
from .xmp_sidecar import SidecarError


class PlateSolvingError(Exception):
    """Raised when an image cannot be plate solved."""
    pass


def build_image_url(host: str, full_url: str) -> str:
    """Absolute URL for an image path stored relative to the Immich host."""
    if full_url.startswith(("http://", "https://")):
        return full_url
    path = full_url if full_url.startswith("/") else f"/{full_url}"
    return f"{host.rstrip('/')}{path}"


def field_of_view(radius: Optional[float]) -> Optional[str]:
    """Field diameter in arcminutes as shown in the gallery, e.g. ``"62.4'"``."""
    if not radius:
        return None
    return f"{radius * 2:.1f}'"


def can_resubmit(job, astrometry_config) -> bool:
    return (
        job.status == "failed"
        and astrometry_config.auto_resubmit
        and (job.attempts or 0) < astrometry_config.max_attempts
    )


class PlateSolvingService:
    """Coordinates the Immich and Astrometry.net clients for plate solving."""

    def __init__(
        self,
        storage,
        config_service,
        events=None,
        sidecar_writer=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client_options: Optional[Dict[str, Any]] = None,
    ):
        self.storage = storage
        self.config_service = config_service
        self.events = events
        self.sidecar_writer = sidecar_writer
        self.transport = transport
        self.client_options = client_options or {}
        self.logger = get_logger("plate_solving")

    def _immich(self) -> ImmichClient:
        immich = self.config_service.get_immich_config()
        return ImmichClient(immich.host, immich.api_key, transport=self.transport, **self.client_options)

    def _astrometry(self) -> AstrometryClient:
        astrometry = self.config_service.get_astrometry_config()
        return AstrometryClient(astrometry.api_key, transport=self.transport, **self.client_options)

    async def _emit(self, data: Dict[str, Any]) -> None:
        if self.events is not None:
            await self.events.emit(PLATE_SOLVING_UPDATE, data)

    # ── Submission ────────────────────────────────────────────────────────
    async def submit_image(self, image, job=None) -> SubmissionResult:
        """Download the image from Immich and upload it to Astrometry.net.

        A failed job for the same image is reused so its attempt count keeps
        growing across resubmissions.
        """
        config = self.config_service.get_config()
        if not image.full_url:
            raise PlateSolvingError("Image does not have a fullUrl")
        if not config.immich.host:
            raise PlateSolvingError("Immich host not configured")
        if not config.immich.api_key:
            raise PlateSolvingError("Immich API key not configured")
        if not config.astrometry.api_key:
            raise PlateSolvingError("Astrometry.net API key not configured")

        image_url = build_image_url(config.immich.host, image.full_url)
        filename = image.filename or f"image_{image.id}.jpg"

        async with self._immich() as immich, self._astrometry() as astrometry:
            session = await astrometry.login()
            data, content_type = await immich.download(image_url)
            submission_id = await astrometry.upload(session, data, filename, content_type)

        if job is None:
            latest = self.storage.get_job_for_image(image.id)
            if latest is not None and latest.status == "failed":
                job = latest

        values = {
            "astrometry_submission_id": submission_id,
            "astrometry_job_id": None,
            "status": "processing",
            "result": None,
        }
        if job is not None:
            values["attempts"] = (job.attempts or 0) + 1
            values["submitted_at"] = utcnow()
            job = self.storage.update_plate_solving_job(job.id, values)
        else:
            job = self.storage.create_plate_solving_job({**values, "image_id": image.id, "attempts": 1})

        performance_monitor.record_submission()
        self.logger.info(f"🔭 Submitted image {image.id} ({image.title}) as submission {submission_id}")
        await self._emit({
            "jobId": job.id,
            "status": "processing",
            "imageId": image.id,
            "message": "Job submitted for plate solving",
        })
        return SubmissionResult(submission_id=submission_id, job_id=job.id)

    async def submit_bulk(self, image_ids: List[int]) -> List[Dict[str, Any]]:
        """Submit several images without waiting for them to solve."""
        results = []
        for image_id in image_ids:
            image = self.storage.get_image(image_id)
            if image is None:
                results.append({"imageId": image_id, "success": False, "error": "Image not found"})
                continue
            if image.plate_solved:
                results.append({"imageId": image_id, "success": False, "error": "Image already plate solved"})
                continue
            try:
                submission = await self.submit_image(image)
            except (PlateSolvingError, ImmichAPIError, AstrometryAPIError) as e:
                self.logger.warning(f"⚠️  Bulk submission of image {image_id} failed: {e}")
                results.append({"imageId": image_id, "success": False, "error": str(e)})
                continue
            results.append({
                "imageId": image_id,
                "success": True,
                "submissionId": submission.submission_id,
                "jobId": submission.job_id,
                "message": "Submitted for plate solving",
            })
        return results

    # ── Status tracking ───────────────────────────────────────────────────
    async def _fail(self, job_id: int, message: str) -> Tuple[str, None]:
        job = self.storage.update_plate_solving_job(job_id, {"status": "failed", "result": {"error": message}})
        performance_monitor.record_solve_failure()
        self.logger.warning(f"❌ Plate solving job {job_id} failed: {message}")
        await self._emit({
            "jobId": job_id,
            "status": "failed",
            "imageId": job.image_id if job else None,
            "result": {"error": message},
        })
        return "failed", None

    async def check_job_status(self, job_id: int) -> Tuple[str, Optional[PlateSolvingResult]]:
        """Advance one job by reading its submission; returns ``(status, result)``."""
        job = self.storage.get_plate_solving_job(job_id)
        if job is None:
            raise PlateSolvingError(f"Job {job_id} not found")

        async with self._astrometry() as astrometry:
            submission = await astrometry.get_submission(job.astrometry_submission_id)
            jobs = submission.get("jobs") or []
            astrometry_job_id = job.astrometry_job_id if job.astrometry_job_id not in (None, "", "null") else None

            if astrometry_job_id is None and jobs and jobs[0] is not None:
                astrometry_job_id = str(jobs[0])
                self.storage.update_plate_solving_job(job.id, {"astrometry_job_id": astrometry_job_id})
                self.logger.debug(f"Job {job.id} is Astrometry.net job {astrometry_job_id}")

            if astrometry_job_id:
                try:
                    info = await astrometry.get_job(astrometry_job_id)
                    if info.get("status") == "failure":
                        return await self._fail(job.id, "Job failed on Astrometry.net")
                except AstrometryAPIError as e:
                    if e.status_code == 404:
                        return await self._fail(job.id, "Job not found on Astrometry.net")
                    self.logger.debug(f"Could not read job {astrometry_job_id}: {e}")

            if submission.get("job_calibrations"):
                if not astrometry_job_id:
                    raise PlateSolvingError("No job ID found in successful submission")
                result = await self._fetch_result(astrometry, astrometry_job_id)
                await self.complete_job(job.id, result)
                return "success", result

            if jobs and jobs[0] is None:
                return await self._fail(job.id, "Job failed on Astrometry.net")

        return "processing", None

    async def _fetch_result(self, astrometry: AstrometryClient, astrometry_job_id: str) -> PlateSolvingResult:
        calibration = await astrometry.get_calibration(astrometry_job_id)

        annotations = []
        try:
            annotations = await astrometry.get_annotations(astrometry_job_id)
        except AstrometryAPIError as e:
            self.logger.warning(f"⚠️  Failed to fetch annotations for job {astrometry_job_id}: {e}")

        machine_tags = []
        try:
            machine_tags = await astrometry.get_machine_tags(astrometry_job_id)
        except AstrometryAPIError as e:
            self.logger.warning(f"⚠️  Failed to fetch machine tags for job {astrometry_job_id}: {e}")

        return PlateSolvingResult(calibration=calibration, annotations=annotations, machine_tags=machine_tags)

    async def fetch_result(self, astrometry_job_id: str) -> PlateSolvingResult:
        async with self._astrometry() as astrometry:
            return await self._fetch_result(astrometry, astrometry_job_id)

    async def complete_job(self, job_id: int, result: PlateSolvingResult) -> None:
        """Store a successful solve on the job and its image."""
        job = self.storage.get_plate_solving_job(job_id)
        if job is None:
            raise PlateSolvingError(f"Job {job_id} not found")

        job_result = result.job_result()
        self.storage.update_plate_solving_job(job.id, {"status": "success", "result": job_result})
        performance_monitor.record_solve_success()

        image = self.storage.get_image(job.image_id) if job.image_id else None
        if image is not None:
            cal = result.calibration
            updates = {
                "plate_solved": True,
                "ra": str(cal.ra),
                "dec": str(cal.dec),
                "pixel_scale": cal.pixscale or None,
                "field_of_view": field_of_view(cal.radius),
                "rotation": cal.orientation or None,
                "astrometry_job_id": job.astrometry_job_id,
                "tags": merge_tags(image.tags, result.machine_tags),
            }
            constellation = constellation_for(cal.ra, cal.dec)
            if constellation:
                updates["constellation"] = constellation
            image = self.storage.update_image(image.id, updates)

            if self.sidecar_writer is not None and job.astrometry_job_id:
                try:
                    equipment = self.storage.get_equipment_for_image(image.id)
                    self.sidecar_writer.write_sidecar(image, result, job.astrometry_job_id, equipment)
                except (SidecarError, OSError) as e:
                    self.logger.error(f"❌ Failed to write XMP sidecar for image {image.id}: {e}")

            self.logger.info(
                f"✅ Image {image.id} solved: RA {cal.ra:.4f}, Dec {cal.dec:.4f}"
                + (f" in {image.constellation}" if image.constellation else "")
            )

        await self._emit({
            "jobId": job.id,
            "status": "success",
            "imageId": job.image_id,
            "result": job_result,
        })

    # ── Synchronous workflow ──────────────────────────────────────────────
    async def poll_for_result(
        self, submission_id: str, max_wait: Optional[float] = None, job_id: Optional[int] = None
    ) -> Optional[PlateSolvingResult]:
        """Poll a submission until it solves; None when it fails or expires.

        Errors reading the submission are retried until the deadline. Once
        the submission reports a calibration, errors fetching the result
        propagate.
        """
        max_wait = max_wait or settings.plate_solve_max_wait
        interval = self.config_service.get_astrometry_config().poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait

        async with self._astrometry() as astrometry:
            while loop.time() < deadline:
                try:
                    status = await astrometry.get_submission(submission_id)
                except AstrometryAPIError as e:
                    if e.status_code == 404:
                        return None
                    self.logger.warning(f"⚠️  Error polling submission {submission_id}: {e}")
                    await asyncio.sleep(interval)
                    continue

                jobs = status.get("jobs") or []
                self.logger.debug(
                    f"Polling submission {submission_id}: jobs={jobs} "
                    f"calibrations={status.get('job_calibrations')}"
                )
                if status.get("job_calibrations"):
                    if not jobs or jobs[0] is None:
                        raise PlateSolvingError("No job ID found in successful submission")
                    astrometry_job_id = str(jobs[0])
                    if job_id is not None:
                        self.storage.update_plate_solving_job(job_id, {"astrometry_job_id": astrometry_job_id})
                    return await self._fetch_result(astrometry, astrometry_job_id)
                if jobs and jobs[0] is None:
                    return None

                await asyncio.sleep(interval)

        raise PlateSolvingError("Timeout waiting for plate solving to complete")

    async def complete_workflow(self, image, max_wait: Optional[float] = None) -> PlateSolvingResult:
        """Submit, wait for and apply a solve in one call.

        Any failure after submission marks the job failed and is raised as
        ``PlateSolvingError``.
        """
        submission = await self.submit_image(image)
        try:
            result = await self.poll_for_result(submission.submission_id, max_wait, job_id=submission.job_id)
            if result is None:
                raise PlateSolvingError("Plate solving failed")
            await self.complete_job(submission.job_id, result)
        except Exception as e:
            await self._fail(submission.job_id, str(e))
            if isinstance(e, PlateSolvingError):
                raise
            raise PlateSolvingError(f"Plate solving failed: {e}") from e
        return result

    # ── Queries for the image routes ──────────────────────────────────────
    def get_job_for_image(self, image_id: int):
        """Successful job of a plate-solved image, or None."""
        image = self.storage.get_image(image_id)
        if image is None or not image.plate_solved:
            return None
        return self.storage.get_job_for_image(image_id, status="success")

    def get_annotations(self, image_id: int) -> Optional[Dict[str, Any]]:
        job = self.get_job_for_image(image_id)
        if job is None or not job.result:
            return None
        result = job.result
        return {
            "annotations": result.get("annotations", []),
            "calibration": {
                "ra": result.get("ra"),
                "dec": result.get("dec"),
                "pixscale": result.get("pixscale"),
                "radius": result.get("radius"),
                "orientation": result.get("orientation"),
            },
            "imageDimensions": {
                "width": result.get("width") or None,
                "height": result.get("height") or None,
            },
        }
