"""
Data models for the Skymmich service.

API payloads use camelCase keys; the ``CamelModel`` base handles the
conversion so handlers can work with snake_case attributes.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .tables import utcnow


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_json(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class UpdateModel(CamelModel):
    """Partial update payload; only fields the client sent are applied."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ── Immich payloads ───────────────────────────────────────────────────────

class ExifInfo(BaseModel):
    """Subset of Immich EXIF data used by the importer."""
    model_config = ConfigDict(extra="ignore")

    make: Optional[str] = None
    model: Optional[str] = None
    lensModel: Optional[str] = None
    fNumber: Optional[float] = None
    focalLength: Optional[float] = None
    iso: Optional[int] = None
    exposureTime: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    description: Optional[str] = None

    @field_validator("exposureTime", mode="before")
    @classmethod
    def exposure_as_text(cls, v):
        # Older Immich releases send a number of seconds
        return str(v) if v is not None else None


class ImmichAsset(BaseModel):
    """Immich asset model."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str = "IMAGE"
    originalFileName: str
    fileCreatedAt: Optional[datetime] = None
    exifInfo: Optional[ExifInfo] = None


class ImmichAlbum(BaseModel):
    """Immich album model."""
    model_config = ConfigDict(extra="ignore")

    id: str
    albumName: str = ""
    assetCount: int = 0
    assets: List[ImmichAsset] = []


class ImmichTag(BaseModel):
    """Immich tag model."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    value: Optional[str] = None


# ── Astrometry payloads ───────────────────────────────────────────────────

class Calibration(BaseModel):
    """Astrometry.net job calibration."""
    model_config = ConfigDict(extra="allow")

    ra: float
    dec: float
    pixscale: Optional[float] = None
    radius: Optional[float] = None
    orientation: Optional[float] = None
    parity: Optional[float] = None
    width_arcsec: Optional[float] = None
    height_arcsec: Optional[float] = None


class Annotation(BaseModel):
    """Object annotated in a solved field."""
    model_config = ConfigDict(extra="allow")

    type: str = ""
    names: List[str] = []
    pixelx: Optional[float] = None
    pixely: Optional[float] = None
    radius: Optional[float] = None
    ra: Optional[float] = None
    dec: Optional[float] = None
    vmag: Optional[float] = None


class PlateSolvingResult(CamelModel):
    """Everything fetched for a solved Astrometry.net job."""
    calibration: Calibration
    annotations: List[Annotation] = []
    machine_tags: List[str] = []

    def job_result(self) -> Dict[str, Any]:
        """Flattened form stored on the job row."""
        data = self.calibration.model_dump(exclude_none=True)
        data["annotations"] = [a.model_dump(exclude_none=True) for a in self.annotations]
        return data


# ── Stored rows ───────────────────────────────────────────────────────────

class ImageOut(CamelModel):
    id: int
    immich_id: Optional[str] = None
    title: str
    filename: str
    thumbnail_url: Optional[str] = None
    full_url: Optional[str] = None
    capture_date: Optional[datetime] = None
    focal_length: Optional[float] = None
    aperture: Optional[str] = None
    iso: Optional[int] = None
    exposure_time: Optional[str] = None
    frame_count: Optional[int] = None
    total_integration: Optional[float] = None
    telescope: Optional[str] = None
    camera: Optional[str] = None
    mount: Optional[str] = None
    filters: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    location_id: Optional[int] = None
    plate_solved: bool = False
    ra: Optional[str] = None
    dec: Optional[str] = None
    pixel_scale: Optional[float] = None
    field_of_view: Optional[str] = None
    rotation: Optional[float] = None
    astrometry_job_id: Optional[str] = None
    tags: List[str] = []
    object_type: Optional[str] = None
    constellation: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, v):
        return v or []


class ImageUpdate(UpdateModel):
    title: Optional[str] = None
    capture_date: Optional[datetime] = None
    focal_length: Optional[float] = None
    aperture: Optional[str] = None
    iso: Optional[int] = None
    exposure_time: Optional[str] = None
    frame_count: Optional[int] = None
    total_integration: Optional[float] = None
    telescope: Optional[str] = None
    camera: Optional[str] = None
    mount: Optional[str] = None
    filters: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    location_id: Optional[int] = None
    tags: Optional[List[str]] = None
    object_type: Optional[str] = None
    constellation: Optional[str] = None
    description: Optional[str] = None


class EquipmentOut(CamelModel):
    id: int
    name: str
    type: str
    specifications: Optional[Dict[str, Any]] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EquipmentIn(UpdateModel):
    name: str = Field(min_length=1)
    type: str = Field(min_length=1)
    specifications: Optional[Dict[str, Any]] = None
    image_url: Optional[str] = None
    description: Optional[str] = None


class EquipmentWithDetails(EquipmentOut):
    """Equipment joined with its per-image settings."""
    settings: Optional[Any] = None
    notes: Optional[str] = None


class ImageEquipmentOut(CamelModel):
    id: int
    image_id: int
    equipment_id: int
    settings: Optional[Any] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class EquipmentLinkIn(UpdateModel):
    equipment_id: int
    settings: Optional[Any] = None
    notes: Optional[str] = None


class EquipmentLinkUpdate(UpdateModel):
    settings: Optional[Any] = None
    notes: Optional[str] = None


class AcquisitionOut(CamelModel):
    id: int
    image_id: int
    filter_id: Optional[int] = None
    filter_name: Optional[str] = None
    frame_count: int
    exposure_time: float
    gain: Optional[int] = None
    offset: Optional[int] = None
    binning: Optional[str] = None
    sensor_temp: Optional[float] = None
    date: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class AcquisitionIn(UpdateModel):
    filter_id: Optional[int] = None
    filter_name: Optional[str] = None
    frame_count: int = Field(gt=0)
    exposure_time: float = Field(gt=0)
    gain: Optional[int] = None
    offset: Optional[int] = None
    binning: Optional[str] = None
    sensor_temp: Optional[float] = None
    date: Optional[str] = None
    notes: Optional[str] = None


class AcquisitionUpdate(UpdateModel):
    filter_id: Optional[int] = None
    filter_name: Optional[str] = None
    frame_count: Optional[int] = Field(default=None, gt=0)
    exposure_time: Optional[float] = Field(default=None, gt=0)
    gain: Optional[int] = None
    offset: Optional[int] = None
    binning: Optional[str] = None
    sensor_temp: Optional[float] = None
    date: Optional[str] = None
    notes: Optional[str] = None


class LocationOut(CamelModel):
    id: int
    name: str
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LocationIn(UpdateModel):
    name: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    altitude: Optional[float] = None
    description: Optional[str] = None


class LocationUpdate(UpdateModel):
    name: Optional[str] = Field(default=None, min_length=1)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    altitude: Optional[float] = None
    description: Optional[str] = None


class PlateSolvingJobOut(CamelModel):
    id: int
    image_id: Optional[int] = None
    astrometry_submission_id: Optional[str] = None
    astrometry_job_id: Optional[str] = None
    status: str
    attempts: int = 0
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None


class NotificationOut(CamelModel):
    id: int
    type: str
    title: str
    message: str
    details: Optional[Dict[str, Any]] = None
    acknowledged: bool = False
    created_at: Optional[datetime] = None


# ── Service results ───────────────────────────────────────────────────────

class SyncResult(CamelModel):
    """Outcome of an Immich import."""
    synced_count: int = 0
    removed_count: int = 0
    message: str = ""


class SubmissionResult(CamelModel):
    submission_id: str
    job_id: int


class HealthStatus(BaseModel):
    """Health check response."""
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=utcnow)
    version: str = "1.0.0"
    database: str = "healthy"
    uptime_seconds: float = 0.0
    worker: Dict[str, Any] = {}
