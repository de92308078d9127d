from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from .database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AstroImage(Base):
    __tablename__ = "astrophotography_images"

    id                = Column(Integer, primary_key=True)
    immich_id         = Column(String, unique=True, index=True)
    title             = Column(String, nullable=False)
    filename          = Column(String, nullable=False)
    thumbnail_url     = Column(String)
    full_url          = Column(String)
    capture_date      = Column(DateTime)
    focal_length      = Column(Float)
    aperture          = Column(String)
    iso               = Column(Integer)
    exposure_time     = Column(String)
    frame_count       = Column(Integer)
    total_integration = Column("total_integration_hours", Float)
    telescope         = Column(String)
    camera            = Column(String)
    mount             = Column(String)
    filters           = Column(String)
    latitude          = Column(Float)
    longitude         = Column(Float)
    altitude          = Column(Float)
    location_id       = Column(Integer, ForeignKey("locations.id", ondelete="SET NULL"))
    plate_solved      = Column(Boolean, default=False, nullable=False)
    ra                = Column(String)
    dec               = Column(String)
    pixel_scale       = Column(Float)
    field_of_view     = Column(String)
    rotation          = Column(Float)
    astrometry_job_id = Column(String)
    tags              = Column(JSON, default=list)
    object_type       = Column(String)
    constellation     = Column(String)
    description       = Column(Text)
    created_at        = Column(DateTime, default=utcnow, nullable=False)
    updated_at        = Column(DateTime, default=utcnow, nullable=False)


class Equipment(Base):
    __tablename__ = "equipment"

    id             = Column(Integer, primary_key=True)
    name           = Column(String, nullable=False)
    type           = Column(String, nullable=False)
    specifications = Column(JSON, default=dict)
    image_url      = Column(String)
    description    = Column(Text)
    created_at     = Column(DateTime, default=utcnow, nullable=False)
    updated_at     = Column(DateTime, default=utcnow, nullable=False)


class ImageEquipment(Base):
    __tablename__ = "image_equipment"

    id           = Column(Integer, primary_key=True)
    image_id     = Column(Integer, ForeignKey("astrophotography_images.id", ondelete="CASCADE"), index=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id", ondelete="CASCADE"), index=True)
    settings     = Column(JSON)
    notes        = Column(Text)
    created_at   = Column(DateTime, default=utcnow, nullable=False)


class ImageAcquisition(Base):
    __tablename__ = "image_acquisitions"

    id            = Column(Integer, primary_key=True)
    image_id      = Column(Integer, ForeignKey("astrophotography_images.id", ondelete="CASCADE"), index=True)
    filter_id     = Column(Integer, ForeignKey("equipment.id", ondelete="SET NULL"))
    filter_name   = Column(String)
    frame_count   = Column(Integer, nullable=False)
    exposure_time = Column(Float, nullable=False)  # seconds per frame
    gain          = Column(Integer)
    offset        = Column(Integer)
    binning       = Column(String)
    sensor_temp   = Column(Float)
    date          = Column(String)
    notes         = Column(Text)
    created_at    = Column(DateTime, default=utcnow, nullable=False)


class Location(Base):
    __tablename__ = "locations"

    id          = Column(Integer, primary_key=True)
    name        = Column(String, nullable=False)
    latitude    = Column(Float, nullable=False)
    longitude   = Column(Float, nullable=False)
    altitude    = Column(Float)
    description = Column(Text)
    created_at  = Column(DateTime, default=utcnow, nullable=False)
    updated_at  = Column(DateTime, default=utcnow, nullable=False)


class PlateSolvingJob(Base):
    __tablename__ = "plate_solving_jobs"

    id                       = Column(Integer, primary_key=True)
    image_id                 = Column(Integer, ForeignKey("astrophotography_images.id", ondelete="CASCADE"), index=True)
    astrometry_submission_id = Column(String)
    astrometry_job_id        = Column(String, index=True)
    status                   = Column(String, nullable=False, default="pending")
    attempts                 = Column(Integer, nullable=False, default=0)
    submitted_at             = Column(DateTime, default=utcnow, nullable=False)
    completed_at             = Column(DateTime)
    result                   = Column(JSON)


class AdminSetting(Base):
    __tablename__ = "admin_settings"

    id    = Column(Integer, primary_key=True)
    key   = Column(String, unique=True, nullable=False)
    value = Column(JSON)


class Notification(Base):
    __tablename__ = "notifications"

    id           = Column(Integer, primary_key=True)
    type         = Column(String, nullable=False)  # error | warning | info | success
    title        = Column(String, nullable=False)
    message      = Column(Text, nullable=False)
    details      = Column(JSON)
    acknowledged = Column(Boolean, default=False, nullable=False)
    created_at   = Column(DateTime, default=utcnow, nullable=False)
