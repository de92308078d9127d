"""
HTTP API and event channel for the Skymmich service.
"""

import json
import re
import time
from typing import Any, Dict, Optional

import httpx
import psutil
from aiohttp import web
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .astrometry_client import AstrometryAPIError, AstrometryClient
from .config import ConfigService, settings
from .database import init_db, make_engine, make_session_factory
from .events import PLATE_SOLVING_UPDATE, EventBroker
from .immich_client import ASSET_KINDS, ImmichAPIError, ImmichClient, validate_host
from .immich_sync import ImmichSyncService, SyncConfigurationError
from .logging import get_logger, set_debug_mode
from .models import (
    AcquisitionIn,
    AcquisitionOut,
    AcquisitionUpdate,
    EquipmentIn,
    EquipmentLinkIn,
    EquipmentLinkUpdate,
    EquipmentOut,
    EquipmentWithDetails,
    HealthStatus,
    ImageEquipmentOut,
    ImageOut,
    ImageUpdate,
    LocationIn,
    LocationOut,
    LocationUpdate,
    NotificationOut,
    PlateSolvingJobOut,
)
from .performance_monitor import performance_monitor
from .plate_solving import PlateSolvingError, PlateSolvingService
from .scheduler import CronManager
from .storage import Storage
from .worker import PlateSolvingWorker
from .xmp_sidecar import XmpSidecarWriter

logger = get_logger("server")

ASSET_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")
PROXY_HEADERS = ("content-type", "content-length", "content-encoding", "cache-control", "etag", "last-modified")
NOT_CONFIGURED = "Plate solving is not configured. Please enable it and provide an API key in the admin settings."


def _dump(model_cls, rows):
    if isinstance(rows, list):
        return [model_cls.model_validate(row).to_json() for row in rows]
    return model_cls.model_validate(rows).to_json()


def _message(text: str, status: int = 200, **extra) -> web.Response:
    return web.json_response({"message": text, **extra}, status=status)


def _validation_errors(error: ValidationError):
    return json.loads(error.json(include_url=False))


async def _body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"message": "Request body must be JSON"}), content_type="application/json"
        )
    return body if isinstance(body, dict) else {}


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Translate unhandled errors into JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        return _message("Invalid request", status=400, errors=_validation_errors(e))
    except Exception:
        logger.exception(f"❌ Unhandled error on {request.method} {request.path}")
        return _message("Something went wrong!", status=500)


class SkymmichServer:
    """Routes for the gallery, catalog, plate solving and admin surfaces."""

    def __init__(
        self,
        storage: Storage,
        config_service: ConfigService,
        events: EventBroker,
        plate_solving: PlateSolvingService,
        immich_sync: ImmichSyncService,
        sidecar_writer: XmpSidecarWriter,
        cron_manager: Optional[CronManager] = None,
        worker: Optional[PlateSolvingWorker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Wire the services into an aiohttp application."""
        self.storage = storage
        self.config_service = config_service
        self.events = events
        self.plate_solving = plate_solving
        self.immich_sync = immich_sync
        self.sidecar_writer = sidecar_writer
        self.cron_manager = cron_manager
        self.worker = worker
        self.transport = transport
        self.started_at = time.time()
        self.logger = get_logger("server")
        self.app = web.Application(middlewares=[error_middleware])
        self.setup_routes()

    def setup_routes(self):
        """Setup HTTP routes."""
        r = self.app.router

        # Images
        r.add_get("/api/images", self.list_images)
        r.add_get(r"/api/images/{id:\d+}", self.get_image)
        r.add_patch(r"/api/images/{id:\d+}", self.update_image)
        r.add_get(r"/api/images/{id:\d+}/plate-solving-job", self.image_plate_solving_job)
        r.add_get(r"/api/images/{id:\d+}/annotations", self.image_annotations)
        r.add_get(r"/api/images/{id:\d+}/equipment", self.image_equipment)
        r.add_post(r"/api/images/{id:\d+}/equipment", self.add_image_equipment)
        r.add_put(r"/api/images/{id:\d+}/equipment/{equipment_id:\d+}", self.update_image_equipment)
        r.add_delete(r"/api/images/{id:\d+}/equipment/{equipment_id:\d+}", self.remove_image_equipment)
        r.add_get(r"/api/images/{id:\d+}/acquisitions", self.list_acquisitions)
        r.add_post(r"/api/images/{id:\d+}/acquisitions", self.create_acquisition)
        r.add_put(r"/api/images/{id:\d+}/acquisitions/{acq_id:\d+}", self.update_acquisition)
        r.add_delete(r"/api/images/{id:\d+}/acquisitions/{acq_id:\d+}", self.delete_acquisition)
        r.add_get(r"/api/images/{id:\d+}/sidecar", self.image_sidecar)
        r.add_post(r"/api/images/{id:\d+}/sync-metadata", self.image_sync_metadata)

        # Plate solving
        r.add_post(r"/api/plate-solving/images/{id:\d+}/plate-solve", self.plate_solve_image)
        r.add_get("/api/plate-solving/jobs", self.list_jobs)
        r.add_post("/api/plate-solving/bulk", self.bulk_plate_solve)
        r.add_post(r"/api/plate-solving/update/{job_id:\d+}", self.update_job_status)

        # Equipment
        r.add_get("/api/equipment", self.list_equipment)
        r.add_post("/api/equipment", self.create_equipment)
        r.add_put(r"/api/equipment/{id:\d+}", self.update_equipment)
        r.add_delete(r"/api/equipment/{id:\d+}", self.delete_equipment)

        # Immich
        r.add_post("/api/immich/sync-immich", self.sync_immich)
        r.add_post("/api/sync-immich", self.sync_immich)
        r.add_post("/api/immich/test-immich-connection", self.test_immich_connection)
        r.add_post("/api/immich/albums", self.immich_albums)
        r.add_post("/api/immich/sync-metadata", self.sync_all_metadata)
        r.add_get("/api/assets/{asset_id}/{kind}", self.proxy_asset)

        # Sky map and locations
        r.add_get("/api/sky-map/markers", self.sky_map_markers)
        r.add_get("/api/locations", self.list_locations)
        r.add_post("/api/locations", self.create_location)
        r.add_get(r"/api/locations/{id:\d+}", self.get_location)
        r.add_patch(r"/api/locations/{id:\d+}", self.update_location)
        r.add_delete(r"/api/locations/{id:\d+}", self.delete_location)

        # System
        r.add_get("/api/admin/settings", self.get_settings)
        r.add_post("/api/admin/settings", self.save_settings)
        r.add_post("/api/test-astrometry-connection", self.test_astrometry_connection)
        r.add_get("/api/stats", self.stats)
        r.add_get("/api/tags", self.popular_tags)
        r.add_get("/api/constellations", self.constellations)
        r.add_get("/api/notifications", self.list_notifications)
        r.add_post(r"/api/notifications/{id:\d+}/acknowledge", self.acknowledge_notification)
        r.add_get("/api/admin/cron-jobs", self.cron_jobs)
        r.add_get("/api/health", self.health_handler)
        r.add_get("/api/metrics", self.metrics_handler)
        r.add_get("/ws", self.events.handle_websocket)

    def _image_or_404(self, request: web.Request):
        """Image named by the ``id`` route parameter; raises 404 when missing."""
        image = self.storage.get_image(int(request.match_info["id"]))
        if image is None:
            raise web.HTTPNotFound(text=json.dumps({"message": "Image not found"}), content_type="application/json")
        return image

    # ── Images ────────────────────────────────────────────────────────────
    async def list_images(self, request: web.Request):
        """GET /api/images, filtered by the query string."""
        query = request.query
        filters: Dict[str, Any] = {}
        if query.get("objectType"):
            filters["object_type"] = query["objectType"]
        if query.getall("tags", []):
            filters["tags"] = query.getall("tags")
        if "plateSolved" in query:
            filters["plate_solved"] = query["plateSolved"] == "true"
        if query.get("constellation"):
            filters["constellation"] = query["constellation"]
        if query.get("search"):
            filters["search"] = query["search"]
        return web.json_response(_dump(ImageOut, self.storage.get_images(filters)))

    async def get_image(self, request: web.Request):
        """GET /api/images/{id}."""
        return web.json_response(_dump(ImageOut, self._image_or_404(request)))

    async def update_image(self, request: web.Request):
        """PATCH /api/images/{id} with camelCase fields."""
        changes = ImageUpdate.model_validate(await _body(request)).changes()
        image = self.storage.update_image(int(request.match_info["id"]), changes)
        if image is None:
            return _message("Image not found", status=404)
        return web.json_response(_dump(ImageOut, image))

    async def image_plate_solving_job(self, request: web.Request):
        """GET the successful plate-solving job of an image."""
        image = self._image_or_404(request)
        job = self.plate_solving.get_job_for_image(image.id)
        if job is None:
            return _message("Image has not been successfully plate solved", status=400)
        return web.json_response({
            "jobId": job.id,
            "submissionId": job.astrometry_submission_id,
            "astrometryJobId": job.astrometry_job_id,
            "status": job.status,
            "submittedAt": job.submitted_at.isoformat() if job.submitted_at else None,
            "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        })

    async def image_annotations(self, request: web.Request):
        """GET calibration, annotations and image dimensions for the overlay."""
        image = self._image_or_404(request)
        annotations = self.plate_solving.get_annotations(image.id)
        if annotations is None:
            return _message("Image has not been plate solved", status=400)
        return web.json_response(annotations)

    async def image_equipment(self, request: web.Request):
        """GET the equipment attached to an image, with link settings and notes."""
        image = self._image_or_404(request)
        links = {link.equipment_id: link for link in self.storage.get_image_equipment(image.id)}
        items = []
        for equipment in self.storage.get_equipment_for_image(image.id):
            link = links.get(equipment.id)
            item = EquipmentWithDetails.model_validate(equipment)
            item.settings = link.settings if link else None
            item.notes = link.notes if link else None
            items.append(item.to_json())
        return web.json_response(items)

    async def add_image_equipment(self, request: web.Request):
        """POST an equipment link onto an image."""
        image = self._image_or_404(request)
        payload = EquipmentLinkIn.model_validate(await _body(request))
        if self.storage.get_equipment_item(payload.equipment_id) is None:
            return _message("Equipment not found", status=404)
        link = self.storage.add_equipment_to_image(image.id, payload.equipment_id, payload.settings, payload.notes)
        return web.json_response(_dump(ImageEquipmentOut, link))

    async def update_image_equipment(self, request: web.Request):
        """PUT new settings or notes on an image/equipment link."""
        changes = EquipmentLinkUpdate.model_validate(await _body(request)).changes()
        link = self.storage.update_image_equipment(
            int(request.match_info["id"]), int(request.match_info["equipment_id"]), changes
        )
        if link is None:
            return _message("Equipment relationship not found", status=404)
        return web.json_response(_dump(ImageEquipmentOut, link))

    async def remove_image_equipment(self, request: web.Request):
        """DELETE an image/equipment link."""
        removed = self.storage.remove_equipment_from_image(
            int(request.match_info["id"]), int(request.match_info["equipment_id"])
        )
        if not removed:
            return _message("Equipment relationship not found", status=404)
        return _message("Equipment removed from image")

    async def list_acquisitions(self, request: web.Request):
        """GET the acquisition rows of an image."""
        image = self._image_or_404(request)
        return web.json_response(_dump(AcquisitionOut, self.storage.get_image_acquisitions(image.id)))

    async def create_acquisition(self, request: web.Request):
        """POST an acquisition row and refresh the image totals."""
        image = self._image_or_404(request)
        values = AcquisitionIn.model_validate(await _body(request)).changes()
        row = self.storage.create_acquisition(image.id, values)
        self.storage.refresh_integration_totals(image.id)
        return web.json_response(_dump(AcquisitionOut, row), status=201)

    async def update_acquisition(self, request: web.Request):
        """PUT changes to an acquisition row and refresh the image totals."""
        image_id = int(request.match_info["id"])
        changes = AcquisitionUpdate.model_validate(await _body(request)).changes()
        row = self.storage.update_acquisition(image_id, int(request.match_info["acq_id"]), changes)
        if row is None:
            return _message("Acquisition not found", status=404)
        self.storage.refresh_integration_totals(image_id)
        return web.json_response(_dump(AcquisitionOut, row))

    async def delete_acquisition(self, request: web.Request):
        """DELETE an acquisition row and refresh the image totals."""
        image_id = int(request.match_info["id"])
        if not self.storage.delete_acquisition(image_id, int(request.match_info["acq_id"])):
            return _message("Acquisition not found", status=404)
        self.storage.refresh_integration_totals(image_id)
        return _message("Acquisition deleted")

    async def image_sidecar(self, request: web.Request):
        """Serve the XMP sidecar, as an attachment when ``download=true``."""
        image = self._image_or_404(request)
        path = self.sidecar_writer.resolve_sidecar_path(image)
        if path is None:
            return _message("No XMP sidecar found for this image", status=404)

        headers = {}
        if request.query.get("download") == "true":
            headers["Content-Disposition"] = f'attachment; filename="{image.filename}.xmp"'
        return web.Response(
            text=path.read_text(encoding="utf-8"), content_type="application/xml", headers=headers
        )

    async def image_sync_metadata(self, request: web.Request):
        """Push one image's astronomy metadata to Immich."""
        image = self._image_or_404(request)
        success, error = await self.immich_sync.sync_image_metadata(image.id)
        if not success:
            return web.json_response({"success": False, "message": error}, status=400)
        return web.json_response({"success": True, "message": "Metadata synced to Immich"})

    # ── Plate solving ─────────────────────────────────────────────────────
    def _plate_solving_configured(self) -> bool:
        """Plate solving is enabled and has an API key."""
        config = self.config_service.get_astrometry_config()
        return config.enabled and bool(config.api_key)

    async def plate_solve_image(self, request: web.Request):
        """Solve one image synchronously and return the result."""
        if not self._plate_solving_configured():
            return _message(NOT_CONFIGURED, status=400)
        image = self._image_or_404(request)
        try:
            result = await self.plate_solving.complete_workflow(image)
        except (PlateSolvingError, ImmichAPIError, AstrometryAPIError) as e:
            self.logger.error(f"❌ Plate solving image {image.id} failed: {e}")
            return _message("Failed to complete plate solving", status=500, error=str(e))
        return _message("Image plate solving completed successfully", result=result.to_json())

    async def list_jobs(self, request: web.Request):
        """GET every plate-solving job."""
        return web.json_response(_dump(PlateSolvingJobOut, self.storage.get_plate_solving_jobs()))

    async def bulk_plate_solve(self, request: web.Request):
        """Submit several images without waiting for their solves."""
        image_ids = (await _body(request)).get("imageIds")
        if not isinstance(image_ids, list) or not image_ids:
            return _message("imageIds array is required", status=400)
        if not self._plate_solving_configured():
            return _message(NOT_CONFIGURED, status=400)
        results = await self.plate_solving.submit_bulk(image_ids)
        return _message("Bulk plate solving submission completed", results=results)

    async def update_job_status(self, request: web.Request):
        """Poll Astrometry.net for one job and announce its status."""
        job_id = int(request.match_info["job_id"])
        try:
            status, result = await self.plate_solving.check_job_status(job_id)
        except (PlateSolvingError, AstrometryAPIError) as e:
            return _message("Failed to update plate solving status", status=500, error=str(e))
        payload = {"status": status, "result": result.to_json() if result else None}
        if status == "processing":
            # Finished jobs were already announced by the service
            await self.events.emit(PLATE_SOLVING_UPDATE, {"jobId": job_id, **payload})
        return web.json_response(payload)

    # ── Equipment ─────────────────────────────────────────────────────────
    async def list_equipment(self, request: web.Request):
        """GET the equipment catalog."""
        return web.json_response(_dump(EquipmentOut, self.storage.get_equipment()))

    async def create_equipment(self, request: web.Request):
        """POST a new equipment item."""
        try:
            values = EquipmentIn.model_validate(await _body(request)).changes()
        except ValidationError:
            return _message("Name and type are required", status=400)
        return web.json_response(_dump(EquipmentOut, self.storage.create_equipment(values)))

    async def update_equipment(self, request: web.Request):
        """PUT changes to an equipment item."""
        try:
            values = EquipmentIn.model_validate(await _body(request)).changes()
        except ValidationError:
            return _message("Name and type are required", status=400)
        item = self.storage.update_equipment(int(request.match_info["id"]), values)
        if item is None:
            return _message("Equipment not found", status=404)
        return web.json_response(_dump(EquipmentOut, item))

    async def delete_equipment(self, request: web.Request):
        """DELETE an equipment item."""
        if not self.storage.delete_equipment(int(request.match_info["id"])):
            return _message("Equipment not found", status=404)
        return _message("Equipment deleted successfully")

    # ── Immich ────────────────────────────────────────────────────────────
    async def sync_immich(self, request: web.Request):
        """Import new assets from Immich and drop removed ones."""
        try:
            result = await self.immich_sync.run_sync()
        except SyncConfigurationError as e:
            return _message(str(e), status=400)
        except ImmichAPIError as e:
            return _message("Failed to sync with Immich", status=500, error=str(e))
        return web.json_response(result.to_json())

    @staticmethod
    async def _host_and_key(request: web.Request):
        """Validated host and API key from a connection-test body, or an error message."""
        body = await _body(request)
        host, api_key = body.get("host"), body.get("apiKey")
        if not host or not api_key:
            return None, None, "Host and API key are required"
        try:
            host = validate_host(host)
        except ValueError as e:
            return None, None, str(e)
        return host, api_key, None

    async def test_immich_connection(self, request: web.Request):
        """Check Immich credentials before they are saved."""
        host, api_key, error = await self._host_and_key(request)
        if error:
            return web.json_response({"success": False, "message": error}, status=400)
        async with ImmichClient(host, api_key, transport=self.transport) as immich:
            success, message = await immich.test_connection()
        return web.json_response({"success": success, "message": message})

    async def immich_albums(self, request: web.Request):
        """List albums for the album picker in the settings page."""
        host, api_key, error = await self._host_and_key(request)
        if error:
            return _message(error, status=400)
        try:
            async with ImmichClient(host, api_key, transport=self.transport) as immich:
                albums = await immich.get_albums()
        except ImmichAPIError as e:
            return _message(str(e), status=500)
        return web.json_response([{"id": a.id, "albumName": a.albumName} for a in albums])

    async def sync_all_metadata(self, request: web.Request):
        """Push metadata for every linked image to Immich."""
        outcome = await self.immich_sync.sync_all_images()
        return _message(
            f"Synced metadata for {outcome['synced']} images ({outcome['failed']} failed)", **outcome
        )

    async def proxy_asset(self, request: web.Request):
        """Stream an Immich thumbnail or original through to the client."""
        asset_id, kind = request.match_info["asset_id"], request.match_info["kind"]
        if not ASSET_ID_PATTERN.match(asset_id):
            return _message("Invalid asset ID format", status=400)
        if kind not in ASSET_KINDS:
            return _message("Invalid asset type", status=400)

        config = self.config_service.get_immich_config()
        if not config.host or not config.api_key:
            return _message("Immich configuration missing", status=500)
        try:
            validate_host(config.host)
        except ValueError:
            return _message("Invalid Immich URL", status=500)

        response = None
        async with ImmichClient(config.host, config.api_key, transport=self.transport) as immich:
            try:
                async with immich.stream_asset(asset_id, kind, params=dict(request.query)) as upstream:
                    if upstream.status_code >= 400:
                        return _message(upstream.reason_phrase, status=upstream.status_code)
                    response = web.StreamResponse(status=upstream.status_code)
                    for name in PROXY_HEADERS:
                        if name in upstream.headers:
                            response.headers[name] = upstream.headers[name]
                    await response.prepare(request)
                    async for chunk in upstream.aiter_raw():
                        await response.write(chunk)
                    await response.write_eof()
                    return response
            except ImmichAPIError as e:
                if response is None or not response.prepared:
                    return _message(str(e), status=502)
                return self._abort_stream(request, response, asset_id, e)
            except Exception as e:
                if response is None or not response.prepared:
                    raise
                return self._abort_stream(request, response, asset_id, e)

    def _abort_stream(self, request: web.Request, response: web.StreamResponse, asset_id: str, error: Exception):
        """Drop the client connection once headers are out; a truncated body must not look complete."""
        self.logger.error(f"❌ Asset {asset_id} stream interrupted: {error}")
        if request.transport is not None:
            request.transport.close()
        return response

    # ── Sky map and locations ─────────────────────────────────────────────
    async def sky_map_markers(self, request: web.Request):
        """GET coordinates of every plate-solved image for the sky map."""
        markers = [
            {
                "id": img.id,
                "title": img.title,
                "ra": img.ra,
                "dec": img.dec,
                "thumbnailUrl": img.thumbnail_url,
                "objectType": img.object_type,
                "constellation": img.constellation,
                "fieldOfView": img.field_of_view,
            }
            for img in self.storage.get_sky_markers()
        ]
        return web.json_response(markers)

    async def list_locations(self, request: web.Request):
        """GET every observing location."""
        return web.json_response(_dump(LocationOut, self.storage.get_locations()))

    async def get_location(self, request: web.Request):
        """GET /api/locations/{id}."""
        location = self.storage.get_location(int(request.match_info["id"]))
        if location is None:
            return _message("Location not found", status=404)
        return web.json_response(_dump(LocationOut, location))

    async def create_location(self, request: web.Request):
        """POST a new observing location."""
        values = LocationIn.model_validate(await _body(request)).changes()
        return web.json_response(_dump(LocationOut, self.storage.create_location(values)), status=201)

    async def update_location(self, request: web.Request):
        """PATCH an observing location."""
        changes = LocationUpdate.model_validate(await _body(request)).changes()
        location = self.storage.update_location(int(request.match_info["id"]), changes)
        if location is None:
            return _message("Location not found", status=404)
        return web.json_response(_dump(LocationOut, location))

    async def delete_location(self, request: web.Request):
        """DELETE an observing location."""
        if not self.storage.delete_location(int(request.match_info["id"])):
            return _message("Location not found", status=404)
        return web.json_response({"success": True})

    # ── System ────────────────────────────────────────────────────────────
    async def get_settings(self, request: web.Request):
        """GET the admin settings."""
        return web.json_response(self.config_service.get_config().to_public_dict())

    async def save_settings(self, request: web.Request):
        """Save admin settings and apply logging and schedule changes."""
        try:
            config = self.config_service.update_config(await _body(request))
        except ValidationError as e:
            return web.json_response(
                {"success": False, "message": "Invalid settings", "errors": _validation_errors(e)}, status=400
            )
        set_debug_mode(config.app.debug_mode)
        if self.cron_manager is not None:
            self.cron_manager.reschedule_all()
        self.logger.info("⚙️  Settings saved")
        return web.json_response({"success": True, "message": "Settings saved successfully"})

    async def test_astrometry_connection(self, request: web.Request):
        """Check an Astrometry.net API key by logging in."""
        api_key = (await _body(request)).get("apiKey")
        if not api_key:
            return web.json_response({"success": False, "message": "API key is required"}, status=400)
        try:
            async with AstrometryClient(api_key, transport=self.transport, max_retries=0) as astrometry:
                await astrometry.test_connection()
        except AstrometryAPIError as e:
            return web.json_response({"success": False, "message": f"Connection failed: {e}"})
        return web.json_response({"success": True, "message": "Connection successful!"})

    async def stats(self, request: web.Request):
        """GET gallery totals."""
        return web.json_response(self.storage.get_stats())

    async def popular_tags(self, request: web.Request):
        """GET the twenty most used tags."""
        return web.json_response(self.storage.get_popular_tags(20))

    async def constellations(self, request: web.Request):
        """GET the constellations present in the gallery."""
        return web.json_response(self.storage.get_constellations())

    async def list_notifications(self, request: web.Request):
        """GET unacknowledged notifications."""
        return web.json_response(_dump(NotificationOut, self.storage.get_notifications()))

    async def acknowledge_notification(self, request: web.Request):
        """Mark one notification as read."""
        if not self.storage.acknowledge_notification(int(request.match_info["id"])):
            return web.json_response({"success": False, "message": "Notification not found"}, status=404)
        return web.json_response({"success": True, "message": "Notification acknowledged"})

    async def cron_jobs(self, request: web.Request):
        """GET the scheduled jobs and their next runs."""
        jobs = self.cron_manager.get_all_jobs() if self.cron_manager is not None else []
        return web.json_response(jobs)

    async def health_handler(self, request: web.Request):
        """Health check endpoint."""
        database = "healthy"
        try:
            self.storage.ping()
        except SQLAlchemyError as e:
            self.logger.error(f"Database health check failed: {e}")
            database = "unhealthy"

        worker = self.worker.status() if self.worker is not None else {"enabled": False, "running": False}
        health = HealthStatus(
            status="healthy" if database == "healthy" else "unhealthy",
            version=__version__,
            database=database,
            uptime_seconds=round(time.time() - self.started_at, 1),
            worker=worker,
        )
        return web.json_response(health.model_dump(mode="json"), status=200 if database == "healthy" else 503)

    async def metrics_handler(self, request: web.Request):
        """Metrics endpoint."""
        metrics = performance_monitor.get_metrics_dict()
        metrics.update({
            "websocket_clients": self.events.client_count,
            "active_jobs": self.storage.count_active_jobs(),
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent,
        })
        return web.json_response(metrics)


SERVER_KEY = web.AppKey("skymmich_server", SkymmichServer)


def build_storage(database_url: Optional[str] = None) -> Storage:
    engine = make_engine(database_url or settings.database_url)
    init_db(engine)
    return Storage(make_session_factory(engine))


def create_app(
    storage: Optional[Storage] = None,
    config_service: Optional[ConfigService] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    client_options: Optional[Dict[str, Any]] = None,
    run_background: bool = False,
    run_worker: Optional[bool] = None,
) -> web.Application:
    """Wire the services together and return the aiohttp application.

    With ``run_background`` the cron manager (and, unless disabled, the
    plate-solving worker) start with the app and stop on cleanup.
    """
    storage = storage or build_storage()
    config_service = config_service or ConfigService(storage)
    events = EventBroker()
    sidecar_writer = XmpSidecarWriter(config_service, storage)
    plate_solving = PlateSolvingService(
        storage, config_service, events, sidecar_writer, transport=transport, client_options=client_options
    )
    immich_sync = ImmichSyncService(
        storage, config_service, events, transport=transport, client_options=client_options
    )
    cron_manager = CronManager(storage, config_service, immich_sync, events)
    worker = PlateSolvingWorker(storage, config_service, plate_solving, events)

    server = SkymmichServer(
        storage,
        config_service,
        events,
        plate_solving,
        immich_sync,
        sidecar_writer,
        cron_manager=cron_manager,
        worker=worker,
        transport=transport,
    )
    app = server.app
    app[SERVER_KEY] = server

    if run_worker is None:
        run_worker = settings.enable_plate_solving

    async def on_startup(app):
        set_debug_mode(config_service.get_app_config().debug_mode)
        if run_background:
            cron_manager.start()
            if run_worker:
                worker.start()

    async def on_cleanup(app):
        performance_monitor.log_performance_summary()
        if run_background:
            await worker.stop()
            await cron_manager.shutdown()
        await events.close_all()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app
