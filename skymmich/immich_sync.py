"""
Immich synchronisation: import album assets as gallery images and push
astronomical metadata back to Immich.
"""

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .events import IMMICH_SYNC_COMPLETE
from .immich_client import ImmichAPIError, ImmichClient
from .logging import get_logger
from .models import ImmichAsset, SyncResult
from .performance_monitor import performance_monitor
from .tags import filter_relevant_tags, merge_tags


class SyncConfigurationError(Exception):
    """Raised when the Immich settings do not allow a sync."""
    pass


def asset_to_image(asset: ImmichAsset) -> Dict[str, Any]:
    """Map an Immich asset and its EXIF block to image columns."""
    exif = asset.exifInfo
    exposure_hours = None
    if exif and exif.exposureTime:
        try:
            exposure_hours = float(exif.exposureTime) / 3600
        except ValueError:
            # Fractions such as "1/200" are not worth counting as integration time
            exposure_hours = None

    return {
        "immich_id": asset.id,
        "title": asset.originalFileName or asset.id,
        "filename": asset.originalFileName or "",
        "thumbnail_url": f"/api/assets/{asset.id}/thumbnail",
        "full_url": f"/api/assets/{asset.id}/thumbnail?size=preview",
        "capture_date": asset.fileCreatedAt.replace(tzinfo=None) if asset.fileCreatedAt else None,
        "focal_length": exif.focalLength if exif and exif.focalLength else None,
        "aperture": f"f/{exif.fNumber:g}" if exif and exif.fNumber else None,
        "iso": exif.iso if exif and exif.iso else None,
        "exposure_time": exif.exposureTime if exif and exif.exposureTime else None,
        "frame_count": 1,
        "total_integration": exposure_hours,
        "telescope": exif.lensModel if exif and exif.lensModel else "",
        "camera": f"{exif.make} {exif.model}" if exif and exif.make and exif.model else None,
        "mount": "",
        "filters": "",
        "latitude": exif.latitude if exif and exif.latitude else None,
        "longitude": exif.longitude if exif and exif.longitude else None,
        "altitude": exif.altitude if exif and exif.altitude else None,
        "plate_solved": False,
        "tags": ["astrophotography"],
        "object_type": "Deep Sky",
        "description": (exif.description if exif else None) or "",
    }


class ImmichSyncService:
    """Imports from Immich and writes Skymmich metadata back."""

    def __init__(
        self,
        storage,
        config_service,
        events=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client_options: Optional[Dict[str, Any]] = None,
    ):
        self.storage = storage
        self.config_service = config_service
        self.events = events
        self.transport = transport
        self.client_options = client_options or {}
        self.logger = get_logger("immich_sync")

    def client(self, host: Optional[str] = None, api_key: Optional[str] = None) -> ImmichClient:
        config = self.config_service.get_immich_config()
        return ImmichClient(
            host or config.host,
            api_key or config.api_key,
            transport=self.transport,
            **self.client_options,
        )

    # ── Import ────────────────────────────────────────────────────────────
    async def sync_from_immich(self) -> SyncResult:
        """Mirror the configured albums into the gallery."""
        config = self.config_service.get_immich_config()
        if not config.host or not config.api_key:
            raise SyncConfigurationError(
                "Immich configuration missing. Please configure in admin settings or set environment variables."
            )
        if config.sync_by_album and not config.selected_album_ids:
            raise SyncConfigurationError("Sync by album is enabled, but no albums are selected.")

        sync_start = time.time()
        async with self.client() as immich:
            albums = await immich.get_albums()
            if config.sync_by_album:
                albums = [album for album in albums if album.id in config.selected_album_ids]

            assets: Dict[str, ImmichAsset] = {}
            failed_albums: List[str] = []
            for album in albums:
                if album.assetCount <= 0:
                    continue
                try:
                    self.logger.info(f"📁 Fetching album {album.albumName} ({album.assetCount} assets)")
                    detail = await immich.get_album(album.id)
                except ImmichAPIError as e:
                    self.logger.warning(f"⚠️  Skipping album {album.albumName} ({album.id}): {e}")
                    failed_albums.append(album.id)
                    continue
                for asset in detail.assets:
                    assets.setdefault(asset.id, asset)

        self.logger.info(f"🔍 Found {len(assets)} assets in Immich")

        removed_count = 0
        if failed_albums:
            # A partial listing cannot tell removed assets from unreadable ones
            self.logger.warning(
                f"⚠️  Skipping removal of missing images: {len(failed_albums)} album(s) could not be read"
            )
        else:
            for immich_id, image_id in self.storage.get_immich_ids().items():
                if immich_id not in assets:
                    self.storage.delete_image(image_id)
                    removed_count += 1
                    self.logger.info(f"🗑️ Removed image {image_id} (asset {immich_id} no longer in Immich)")

        synced_count = 0
        for asset in assets.values():
            if self.storage.get_image_by_immich_id(asset.id) is not None:
                continue
            self.storage.create_image(asset_to_image(asset))
            synced_count += 1
            self.logger.debug(f"Imported {asset.originalFileName}")

        performance_monitor.record_sync(time.time() - sync_start, synced_count, removed_count)
        message = (
            f"Successfully synced {synced_count} new images from Immich. "
            f"Removed {removed_count} images no longer in Immich."
        )
        self.logger.info(f"✅ {message}")
        return SyncResult(synced_count=synced_count, removed_count=removed_count, message=message)

    async def run_sync(self) -> SyncResult:
        """Import and broadcast the outcome; errors are re-raised after the event."""
        try:
            result = await self.sync_from_immich()
        except (SyncConfigurationError, ImmichAPIError) as e:
            await self._emit_complete(False, str(e), 0, 0)
            raise
        await self._emit_complete(True, result.message, result.synced_count, result.removed_count)
        return result

    async def _emit_complete(self, success: bool, message: str, synced: int, removed: int) -> None:
        if self.events is None:
            return
        await self.events.emit(IMMICH_SYNC_COMPLETE, {
            "success": success,
            "message": message,
            "syncedCount": synced,
            "removedCount": removed,
        })

    # ── Metadata write-back ───────────────────────────────────────────────
    def build_metadata_items(self, image) -> List[Dict[str, Any]]:
        """Key/value items for ``PUT /api/assets/{id}/metadata``."""
        fields = [
            ("objectType", image.object_type),
            ("constellation", image.constellation),
            ("ra", image.ra),
            ("dec", image.dec),
            ("pixelScale", image.pixel_scale),
            ("fieldOfView", image.field_of_view),
            ("rotation", image.rotation),
            ("telescope", image.telescope),
            ("camera", image.camera),
            ("mount", image.mount),
            ("focalLength", image.focal_length),
            ("aperture", image.aperture),
            ("iso", image.iso),
            ("exposureTime", image.exposure_time),
            ("filters", image.filters),
            ("frameCount", image.frame_count),
        ]
        items = []
        for key, value in fields:
            if key in ("ra", "dec"):
                present = value is not None
            else:
                present = bool(value)
            if present:
                items.append({"key": key, "value": {"value": _fmt(value)}})

        if image.total_integration:
            items.append({"key": "totalIntegration", "value": {"value": f"{_fmt(image.total_integration)}h"}})

        equipment = self.storage.get_equipment_for_image(image.id)
        if equipment:
            summary = ", ".join(f"{e.name} ({e.type})" for e in equipment)
            items.append({"key": "equipment", "value": {"value": summary}})

        acquisitions = self.storage.get_image_acquisitions(image.id)
        if acquisitions:
            parts = ", ".join(
                f"{a.filter_name or 'No filter'}: {a.frame_count}x{_fmt(a.exposure_time)}s" for a in acquisitions
            )
            frames = sum(a.frame_count for a in acquisitions)
            hours = sum(a.frame_count * a.exposure_time for a in acquisitions) / 3600
            items.append({"key": "acquisition", "value": {"value": f"{parts} ({frames} frames, {hours:.1f}h)"}})

        return items

    def build_metadata_tags(self, image) -> List[str]:
        tags = [image.object_type, image.constellation]
        tags += [e.name for e in self.storage.get_equipment_for_image(image.id)]
        return [tag for tag in tags if tag]

    async def _sync_tags(self, immich: ImmichClient, asset_id: str, tags: List[str]) -> None:
        """Create missing tags and attach every tag to the asset."""
        try:
            existing = {tag.name: tag.id for tag in await immich.get_all_tags()}
        except ImmichAPIError as e:
            self.logger.warning(f"⚠️  Failed to fetch existing Immich tags: {e}")
            existing = {}

        for name in tags:
            try:
                tag_id = existing.get(name)
                if tag_id is None:
                    tag_id = (await immich.create_tag(name)).id
                    existing[name] = tag_id
                await immich.assign_tag(tag_id, [asset_id])
            except (ImmichAPIError, ValueError) as e:
                self.logger.warning(f"⚠️  Failed to sync tag '{name}': {e}")

    async def sync_image_metadata(self, image_id: int) -> Tuple[bool, Optional[str]]:
        """Push one image's metadata to its Immich asset; returns ``(success, error)``."""
        config = self.config_service.get_immich_config()
        if not config.host or not config.api_key:
            return False, "Immich is not configured. Please set the host URL and API key in Admin Settings."
        if not config.metadata_sync_enabled:
            return False, 'Metadata sync is disabled. Enable it in Admin Settings under "Metadata Sync".'

        image = self.storage.get_image(image_id)
        if image is None or not image.immich_id:
            return False, "Image not found or not linked to Immich. Try syncing from Immich first."

        try:
            async with self.client() as immich:
                payload: Dict[str, Any] = {}
                if config.sync_description and image.description:
                    payload["description"] = image.description
                if config.sync_coordinates:
                    if image.latitude is not None:
                        payload["latitude"] = image.latitude
                    if image.longitude is not None:
                        payload["longitude"] = image.longitude
                if payload:
                    await immich.update_asset(image.immich_id, payload)
                    self.logger.debug(f"Updated asset fields for image {image_id}: {', '.join(payload)}")

                items = self.build_metadata_items(image)
                if items:
                    await immich.put_asset_metadata(image.immich_id, items)

                if config.sync_tags:
                    tags = merge_tags(filter_relevant_tags(image.tags or []), self.build_metadata_tags(image))
                    if tags:
                        await self._sync_tags(immich, image.immich_id, tags)
        except ImmichAPIError as e:
            self.logger.error(f"❌ Failed to sync metadata for image {image_id}: {e}")
            return False, str(e)

        self.logger.info(f"🔄 Synced metadata to Immich for image {image_id} (asset {image.immich_id})")
        return True, None

    async def sync_all_images(self) -> Dict[str, Any]:
        synced, failed, errors = 0, 0, []
        for image in self.storage.get_images():
            if not image.immich_id:
                continue
            success, error = await self.sync_image_metadata(image.id)
            if success:
                synced += 1
            else:
                failed += 1
                if error:
                    errors.append(f"Image {image.id}: {error}")
        return {"synced": synced, "failed": failed, "errors": errors}


def _fmt(value: Any) -> str:
    """Render numbers the way they are typed: 300.0 becomes "300"."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
