"""
Relational storage for images, equipment, plate-solving jobs and settings.
"""

from collections import Counter
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, inspect, or_
from sqlalchemy.orm import Session

from .logging import get_logger
from .tables import (
    AdminSetting,
    AstroImage,
    Equipment,
    ImageAcquisition,
    ImageEquipment,
    Location,
    Notification,
    PlateSolvingJob,
    utcnow,
)

ACTIVE_JOB_STATUSES = ("pending", "processing")
TERMINAL_JOB_STATUSES = ("success", "failed")


def _writable_columns(model) -> set:
    return {attr.key for attr in inspect(model).column_attrs} - {"id", "created_at", "updated_at"}


IMAGE_COLUMNS = _writable_columns(AstroImage)
EQUIPMENT_COLUMNS = _writable_columns(Equipment)
ACQUISITION_COLUMNS = _writable_columns(ImageAcquisition) - {"image_id"}
LOCATION_COLUMNS = _writable_columns(Location)
JOB_COLUMNS = _writable_columns(PlateSolvingJob)


def _apply(obj, values: Dict[str, Any], allowed: set) -> None:
    for key, value in values.items():
        if key in allowed:
            setattr(obj, key, value)


class Storage:
    """Database access layer used by the routes, the worker and the sync jobs."""

    def __init__(self, session_factory):
        """Wrap a SQLAlchemy session factory."""
        self.session_factory = session_factory
        self.logger = get_logger("storage")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> None:
        """Run a trivial query; raises when the database is unreachable."""
        with self.session_scope() as session:
            session.query(func.count(AstroImage.id)).scalar()

    # ── Images ────────────────────────────────────────────────────────────
    def get_images(self, filters: Optional[Dict[str, Any]] = None) -> List[AstroImage]:
        """List images, newest capture first, narrowed by the optional filters."""
        filters = filters or {}
        with self.session_scope() as session:
            query = session.query(AstroImage)
            if filters.get("object_type"):
                query = query.filter(AstroImage.object_type == filters["object_type"])
            if filters.get("plate_solved") is not None:
                query = query.filter(AstroImage.plate_solved == bool(filters["plate_solved"]))
            if filters.get("constellation"):
                query = query.filter(AstroImage.constellation == filters["constellation"])
            if filters.get("search"):
                pattern = f"%{filters['search']}%"
                query = query.filter(or_(
                    AstroImage.title.ilike(pattern),
                    AstroImage.description.ilike(pattern),
                    AstroImage.object_type.ilike(pattern),
                    AstroImage.constellation.ilike(pattern),
                ))
            images = query.order_by(AstroImage.capture_date.desc(), AstroImage.id.desc()).all()

        wanted = filters.get("tags")
        if wanted:
            # JSON columns are matched in Python so SQLite and PostgreSQL behave alike
            images = [img for img in images if any(tag in (img.tags or []) for tag in wanted)]
        return images

    def get_image(self, image_id: int) -> Optional[AstroImage]:
        """Fetch one image by id."""
        with self.session_scope() as session:
            return session.get(AstroImage, image_id)

    def get_image_by_immich_id(self, immich_id: str) -> Optional[AstroImage]:
        """Fetch the image linked to an Immich asset."""
        with self.session_scope() as session:
            return session.query(AstroImage).filter(AstroImage.immich_id == immich_id).one_or_none()

    def get_immich_ids(self) -> Dict[str, int]:
        """Map of linked Immich asset ids to local image ids."""
        with self.session_scope() as session:
            rows = session.query(AstroImage.immich_id, AstroImage.id).filter(AstroImage.immich_id.isnot(None)).all()
            return {immich_id: image_id for immich_id, image_id in rows}

    def create_image(self, values: Dict[str, Any]) -> AstroImage:
        """Insert an image and return it."""
        image = AstroImage()
        _apply(image, values, IMAGE_COLUMNS)
        if image.tags is None:
            image.tags = []
        with self.session_scope() as session:
            session.add(image)
            session.flush()
        return image

    def update_image(self, image_id: int, updates: Dict[str, Any]) -> Optional[AstroImage]:
        """Apply column updates to an image; None when it does not exist."""
        with self.session_scope() as session:
            image = session.get(AstroImage, image_id)
            if image is None:
                return None
            _apply(image, updates, IMAGE_COLUMNS)
            image.updated_at = utcnow()
            session.flush()
            return image

    def delete_image(self, image_id: int) -> bool:
        """Delete an image together with its jobs, equipment links and acquisitions."""
        with self.session_scope() as session:
            image = session.get(AstroImage, image_id)
            if image is None:
                return False
            # SQLite does not enforce ON DELETE without a pragma
            session.query(ImageEquipment).filter(ImageEquipment.image_id == image_id).delete()
            session.query(ImageAcquisition).filter(ImageAcquisition.image_id == image_id).delete()
            session.query(PlateSolvingJob).filter(PlateSolvingJob.image_id == image_id).delete()
            session.delete(image)
            return True

    # ── Equipment ─────────────────────────────────────────────────────────
    def get_equipment(self) -> List[Equipment]:
        """List all equipment ordered by type and name."""
        with self.session_scope() as session:
            return session.query(Equipment).order_by(Equipment.type, Equipment.name).all()

    def get_equipment_item(self, equipment_id: int) -> Optional[Equipment]:
        """Fetch one equipment item by id."""
        with self.session_scope() as session:
            return session.get(Equipment, equipment_id)

    def create_equipment(self, values: Dict[str, Any]) -> Equipment:
        """Insert an equipment item and return it."""
        item = Equipment()
        _apply(item, values, EQUIPMENT_COLUMNS)
        with self.session_scope() as session:
            session.add(item)
            session.flush()
        return item

    def update_equipment(self, equipment_id: int, updates: Dict[str, Any]) -> Optional[Equipment]:
        """Apply updates to an equipment item; None when it does not exist."""
        with self.session_scope() as session:
            item = session.get(Equipment, equipment_id)
            if item is None:
                return None
            _apply(item, updates, EQUIPMENT_COLUMNS)
            item.updated_at = utcnow()
            session.flush()
            return item

    def delete_equipment(self, equipment_id: int) -> bool:
        """Delete an equipment item and unlink it from every image."""
        with self.session_scope() as session:
            item = session.get(Equipment, equipment_id)
            if item is None:
                return False
            session.query(ImageEquipment).filter(ImageEquipment.equipment_id == equipment_id).delete()
            session.query(ImageAcquisition).filter(ImageAcquisition.filter_id == equipment_id).update(
                {ImageAcquisition.filter_id: None}
            )
            session.delete(item)
            return True

    # ── Image ↔ equipment links ───────────────────────────────────────────
    def get_image_equipment(self, image_id: int) -> List[ImageEquipment]:
        """Link rows between an image and its equipment."""
        with self.session_scope() as session:
            return session.query(ImageEquipment).filter(ImageEquipment.image_id == image_id).all()

    def get_equipment_for_image(self, image_id: int) -> List[Equipment]:
        """Equipment attached to an image."""
        with self.session_scope() as session:
            return (
                session.query(Equipment)
                .join(ImageEquipment, ImageEquipment.equipment_id == Equipment.id)
                .filter(ImageEquipment.image_id == image_id)
                .order_by(ImageEquipment.id)
                .all()
            )

    def add_equipment_to_image(self, image_id: int, equipment_id: int,
                               settings: Any = None, notes: Optional[str] = None) -> ImageEquipment:
        """Attach equipment to an image with optional settings and notes."""
        link = ImageEquipment(image_id=image_id, equipment_id=equipment_id, settings=settings, notes=notes)
        with self.session_scope() as session:
            session.add(link)
            session.flush()
        return link

    def update_image_equipment(self, image_id: int, equipment_id: int,
                               updates: Dict[str, Any]) -> Optional[ImageEquipment]:
        """Update the settings or notes of an image/equipment link."""
        with self.session_scope() as session:
            link = (
                session.query(ImageEquipment)
                .filter(ImageEquipment.image_id == image_id, ImageEquipment.equipment_id == equipment_id)
                .first()
            )
            if link is None:
                return None
            _apply(link, updates, {"settings", "notes"})
            session.flush()
            return link

    def remove_equipment_from_image(self, image_id: int, equipment_id: int) -> bool:
        """Detach equipment from an image."""
        with self.session_scope() as session:
            deleted = (
                session.query(ImageEquipment)
                .filter(ImageEquipment.image_id == image_id, ImageEquipment.equipment_id == equipment_id)
                .delete()
            )
            return deleted > 0

    # ── Acquisitions ──────────────────────────────────────────────────────
    def get_image_acquisitions(self, image_id: int) -> List[ImageAcquisition]:
        """Acquisition rows of an image, in insertion order."""
        with self.session_scope() as session:
            return (
                session.query(ImageAcquisition)
                .filter(ImageAcquisition.image_id == image_id)
                .order_by(ImageAcquisition.id)
                .all()
            )

    def create_acquisition(self, image_id: int, values: Dict[str, Any]) -> ImageAcquisition:
        """Add an acquisition row to an image."""
        row = ImageAcquisition(image_id=image_id)
        _apply(row, values, ACQUISITION_COLUMNS)
        with self.session_scope() as session:
            session.add(row)
            session.flush()
        return row

    def update_acquisition(self, image_id: int, acquisition_id: int,
                           updates: Dict[str, Any]) -> Optional[ImageAcquisition]:
        """Update an acquisition row that belongs to the image."""
        with self.session_scope() as session:
            row = session.get(ImageAcquisition, acquisition_id)
            if row is None or row.image_id != image_id:
                return None
            _apply(row, updates, ACQUISITION_COLUMNS)
            session.flush()
            return row

    def delete_acquisition(self, image_id: int, acquisition_id: int) -> bool:
        """Delete an acquisition row that belongs to the image."""
        with self.session_scope() as session:
            row = session.get(ImageAcquisition, acquisition_id)
            if row is None or row.image_id != image_id:
                return False
            session.delete(row)
            return True

    def refresh_integration_totals(self, image_id: int) -> Optional[AstroImage]:
        """Recompute frame count and integration hours from the acquisition rows."""
        acquisitions = self.get_image_acquisitions(image_id)
        if not acquisitions:
            return self.get_image(image_id)
        frames = sum(a.frame_count for a in acquisitions)
        seconds = sum(a.frame_count * a.exposure_time for a in acquisitions)
        filters = sorted({a.filter_name for a in acquisitions if a.filter_name})
        updates: Dict[str, Any] = {"frame_count": frames, "total_integration": round(seconds / 3600, 2)}
        if filters:
            updates["filters"] = ", ".join(filters)
        return self.update_image(image_id, updates)

    # ── Locations ─────────────────────────────────────────────────────────
    def get_locations(self) -> List[Location]:
        """List all observing locations by name."""
        with self.session_scope() as session:
            return session.query(Location).order_by(Location.name).all()

    def get_location(self, location_id: int) -> Optional[Location]:
        """Fetch one location by id."""
        with self.session_scope() as session:
            return session.get(Location, location_id)

    def create_location(self, values: Dict[str, Any]) -> Location:
        """Insert a location and return it."""
        location = Location()
        _apply(location, values, LOCATION_COLUMNS)
        with self.session_scope() as session:
            session.add(location)
            session.flush()
        return location

    def update_location(self, location_id: int, updates: Dict[str, Any]) -> Optional[Location]:
        """Apply updates to a location; None when it does not exist."""
        with self.session_scope() as session:
            location = session.get(Location, location_id)
            if location is None:
                return None
            _apply(location, updates, LOCATION_COLUMNS)
            location.updated_at = utcnow()
            session.flush()
            return location

    def delete_location(self, location_id: int) -> bool:
        """Delete a location and unlink it from its images."""
        with self.session_scope() as session:
            location = session.get(Location, location_id)
            if location is None:
                return False
            session.query(AstroImage).filter(AstroImage.location_id == location_id).update(
                {AstroImage.location_id: None}
            )
            session.delete(location)
            return True

    # ── Plate-solving jobs ────────────────────────────────────────────────
    def get_plate_solving_jobs(self, status: Optional[str] = None) -> List[PlateSolvingJob]:
        """List plate-solving jobs, newest first, optionally by status."""
        with self.session_scope() as session:
            query = session.query(PlateSolvingJob)
            if status:
                query = query.filter(PlateSolvingJob.status == status)
            return query.order_by(PlateSolvingJob.submitted_at.desc(), PlateSolvingJob.id.desc()).all()

    def get_plate_solving_job(self, job_id: int) -> Optional[PlateSolvingJob]:
        """Fetch one plate-solving job by id."""
        with self.session_scope() as session:
            return session.get(PlateSolvingJob, job_id)

    def get_job_for_image(self, image_id: int, status: Optional[str] = None) -> Optional[PlateSolvingJob]:
        """Most recent job for an image, optionally restricted to one status."""
        with self.session_scope() as session:
            query = session.query(PlateSolvingJob).filter(PlateSolvingJob.image_id == image_id)
            if status:
                query = query.filter(PlateSolvingJob.status == status)
            return query.order_by(PlateSolvingJob.id.desc()).first()

    def get_job_by_astrometry_id(self, astrometry_job_id: str) -> Optional[PlateSolvingJob]:
        """Fetch the job tracking an Astrometry.net job id."""
        with self.session_scope() as session:
            return (
                session.query(PlateSolvingJob)
                .filter(PlateSolvingJob.astrometry_job_id == astrometry_job_id)
                .first()
            )

    def create_plate_solving_job(self, values: Dict[str, Any]) -> PlateSolvingJob:
        """Insert a plate-solving job and return it."""
        job = PlateSolvingJob()
        _apply(job, values, JOB_COLUMNS)
        with self.session_scope() as session:
            session.add(job)
            session.flush()
        return job

    def update_plate_solving_job(self, job_id: int, updates: Dict[str, Any]) -> Optional[PlateSolvingJob]:
        """Apply updates to a job, stamping completion on terminal states."""
        with self.session_scope() as session:
            job = session.get(PlateSolvingJob, job_id)
            if job is None:
                return None
            _apply(job, updates, JOB_COLUMNS)
            status = updates.get("status")
            if status in TERMINAL_JOB_STATUSES:
                job.completed_at = utcnow()
            elif status in ACTIVE_JOB_STATUSES:
                job.completed_at = None
            session.flush()
            return job

    def count_active_jobs(self) -> int:
        """Number of jobs still pending or processing."""
        with self.session_scope() as session:
            return (
                session.query(func.count(PlateSolvingJob.id))
                .filter(PlateSolvingJob.status.in_(ACTIVE_JOB_STATUSES))
                .scalar()
            )

    # ── Admin settings ────────────────────────────────────────────────────
    def get_admin_settings(self) -> Dict[str, Any]:
        """Stored admin settings as a nested dict."""
        with self.session_scope() as session:
            return {row.key: row.value for row in session.query(AdminSetting).all()}

    def update_admin_settings(self, values: Dict[str, Any]) -> None:
        """Upsert admin settings, one row per top-level key."""
        with self.session_scope() as session:
            for key, value in values.items():
                row = session.query(AdminSetting).filter(AdminSetting.key == key).one_or_none()
                if row is None:
                    session.add(AdminSetting(key=key, value=value))
                else:
                    row.value = value

    # ── Notifications ─────────────────────────────────────────────────────
    def get_notifications(self) -> List[Notification]:
        """Unacknowledged notifications, newest first."""
        with self.session_scope() as session:
            return (
                session.query(Notification)
                .filter(Notification.acknowledged.is_(False))
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .all()
            )

    def create_notification(self, type: str, title: str, message: str,
                            details: Optional[Dict[str, Any]] = None) -> Notification:
        """Store a notification and return it."""
        notification = Notification(type=type, title=title, message=message, details=details)
        with self.session_scope() as session:
            session.add(notification)
            session.flush()
        return notification

    def acknowledge_notification(self, notification_id: int) -> bool:
        """Mark a notification as read."""
        with self.session_scope() as session:
            notification = session.get(Notification, notification_id)
            if notification is None:
                return False
            notification.acknowledged = True
            return True

    def clear_old_notifications(self, days_old: int = 30) -> int:
        """Delete acknowledged notifications older than ``days_old`` days."""
        cutoff = utcnow() - timedelta(days=days_old)
        with self.session_scope() as session:
            return (
                session.query(Notification)
                .filter(Notification.acknowledged.is_(True), Notification.created_at < cutoff)
                .delete()
            )

    # ── Aggregates ────────────────────────────────────────────────────────
    def get_stats(self) -> Dict[str, Any]:
        """Gallery totals for the dashboard."""
        with self.session_scope() as session:
            total_images = session.query(func.count(AstroImage.id)).scalar() or 0
            plate_solved = (
                session.query(func.count(AstroImage.id)).filter(AstroImage.plate_solved.is_(True)).scalar() or 0
            )
            total_hours = session.query(func.sum(AstroImage.total_integration)).scalar() or 0.0
            unique_targets = session.query(func.count(func.distinct(AstroImage.title))).scalar() or 0

        return {
            "totalImages": total_images,
            "plateSolved": plate_solved,
            "totalHours": round(float(total_hours), 1),
            "uniqueTargets": unique_targets,
        }

    def get_popular_tags(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most used image tags with their counts."""
        counts: Counter = Counter()
        with self.session_scope() as session:
            for (tags,) in session.query(AstroImage.tags).all():
                if isinstance(tags, list):
                    counts.update(tags)
        # Ties keep first-seen order
        return [{"tag": tag, "count": count} for tag, count in counts.most_common(limit)]

    def get_constellations(self) -> List[str]:
        """Sorted distinct constellations across all images."""
        with self.session_scope() as session:
            rows = (
                session.query(AstroImage.constellation)
                .filter(AstroImage.constellation.isnot(None), AstroImage.constellation != "")
                .distinct()
                .all()
            )
        return sorted(row[0] for row in rows)

    def get_sky_markers(self) -> List[AstroImage]:
        """Plate-solved images that have coordinates."""
        return [img for img in self.get_images({"plate_solved": True}) if img.ra and img.dec]
