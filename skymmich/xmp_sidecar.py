"""
XMP sidecar generation for plate-solved images.

Each sidecar carries Dublin Core and IPTC keywords for photo managers plus an
``astro:`` block with the calibration, equipment and annotated objects.
"""

import json
import xml.etree.ElementTree as ET
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Annotation, Calibration, PlateSolvingResult
from .logging import get_logger

NS = {
    "x": "adobe:ns:meta/",
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "dc": "http://purl.org/dc/elements/1.1/",
    "astro": "http://ns.astrometry.net/1.0/",
    "iptc": "http://iptc.org/std/Iptc4xmpCore/1.0/xmlns/",
}

for _prefix, _uri in NS.items():
    ET.register_namespace(_prefix, _uri)

DEFAULT_DESCRIPTION = "Astronomical image plate solved by Astrometry.net"


class SidecarError(Exception):
    """Raised when a sidecar cannot be written."""
    pass


def _q(name: str) -> str:
    prefix, local = name.split(":", 1)
    return f"{{{NS[prefix]}}}{local}"


def _text(parent: ET.Element, name: str, value: Any) -> ET.Element:
    element = ET.SubElement(parent, _q(name))
    element.text = str(value)
    return element


def _bag(parent: ET.Element, name: str, values: List[str]) -> ET.Element:
    holder = ET.SubElement(parent, _q(name))
    bag = ET.SubElement(holder, _q("rdf:Bag"))
    for value in values:
        ET.SubElement(bag, _q("rdf:li")).text = str(value)
    return holder


def _description(parent: ET.Element, about: Optional[str] = "") -> ET.Element:
    attrib = {_q("rdf:about"): about} if about is not None else {}
    return ET.SubElement(parent, _q("rdf:Description"), attrib)


def build_xmp(
    image,
    result: PlateSolvingResult,
    astrometry_job_id: str,
    equipment: Optional[List[Any]] = None,
    plate_solved_at: Optional[datetime] = None,
) -> str:
    """Serialize the XMP packet for one image."""
    plate_solved_at = plate_solved_at or datetime.now(timezone.utc)
    calibration = result.calibration

    root = ET.Element(_q("x:xmpmeta"), {_q("x:xmptk"): "Skymmich"})
    rdf = ET.SubElement(root, _q("rdf:RDF"))

    dc = _description(rdf)
    _text(dc, "dc:title", image.filename)
    _text(dc, "dc:description", DEFAULT_DESCRIPTION)
    _bag(dc, "dc:subject", result.machine_tags)

    astro = _description(rdf)
    _text(astro, "astro:plateSolved", "true")
    _text(astro, "astro:astrometryJobId", astrometry_job_id)
    _text(astro, "astro:plateSolvedAt", plate_solved_at.isoformat())
    _text(astro, "astro:imageId", image.immich_id or image.id)

    cal = _description(ET.SubElement(astro, _q("astro:calibration")), about=None)
    _text(cal, "astro:ra", calibration.ra)
    _text(cal, "astro:dec", calibration.dec)
    for name, value in (
        ("astro:pixelScale", calibration.pixscale),
        ("astro:radius", calibration.radius),
        ("astro:orientation", calibration.orientation),
        ("astro:parity", calibration.parity),
    ):
        if value is not None:
            _text(cal, name, value)
    if calibration.width_arcsec:
        _text(cal, "astro:widthArcsec", calibration.width_arcsec)
    if calibration.height_arcsec:
        _text(cal, "astro:heightArcsec", calibration.height_arcsec)

    for eq_type, items in _group_by_type(equipment or []).items():
        bag = ET.SubElement(ET.SubElement(astro, _q("astro:equipment")), _q("rdf:Bag"))
        for item in items:
            desc = _description(ET.SubElement(bag, _q("rdf:li")), about=None)
            _text(desc, "astro:type", eq_type)
            _text(desc, "astro:name", item.name)
            if item.description:
                _text(desc, "astro:description", item.description)
            if item.specifications:
                _text(desc, "astro:specifications", json.dumps(item.specifications))

    annotations_bag = ET.SubElement(ET.SubElement(astro, _q("astro:annotations")), _q("rdf:Bag"))
    for ann in result.annotations:
        desc = _description(ET.SubElement(annotations_bag, _q("rdf:li")), about=None)
        _text(desc, "astro:type", ann.type)
        _bag(desc, "astro:names", ann.names)
        _text(desc, "astro:pixelX", ann.pixelx)
        _text(desc, "astro:pixelY", ann.pixely)
        for name, value in (("radius", ann.radius), ("ra", ann.ra), ("dec", ann.dec), ("magnitude", ann.vmag)):
            if value:
                _text(desc, f"astro:{name}", value)

    iptc = _description(rdf)
    _bag(iptc, "iptc:Keywords", result.machine_tags)

    ET.indent(root, space="  ")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"


def generate_summary(
    result: PlateSolvingResult,
    astrometry_job_id: str,
    equipment: Optional[List[Any]] = None,
    plate_solved_at: Optional[datetime] = None,
) -> str:
    """Plain-text report of a solve."""
    plate_solved_at = plate_solved_at or datetime.now(timezone.utc)
    cal = result.calibration
    lines = [
        "Astronomical Image Analysis Summary",
        "=====================================",
        "",
        "Plate Solving Results:",
        f"- RA: {cal.ra:.6f}°",
        f"- Dec: {cal.dec:.6f}°",
        f"- Pixel Scale: {(cal.pixscale or 0):.3f} arcsec/pixel",
        f"- Field of View: {(cal.radius or 0) * 2:.1f} arcmin",
        f"- Rotation: {(cal.orientation or 0):.1f}°",
        f"- Parity: {cal.parity}",
        "",
        "Equipment Used:",
    ]
    for item in equipment or []:
        suffix = f" ({item.description})" if item.description else ""
        lines.append(f"- {item.type.upper()}: {item.name}{suffix}")
    lines += ["", f"Identified Objects ({len(result.annotations)}):"]
    for ann in result.annotations:
        lines.append(f"- {ann.type.upper()}: {', '.join(ann.names)}")
    lines += ["", "Machine Tags:"]
    lines += [f"- {tag}" for tag in result.machine_tags]
    lines += [
        "",
        "Generated by Skymmich using Astrometry.net",
        f"Job ID: {astrometry_job_id}",
        f"Date: {plate_solved_at.isoformat()}",
    ]
    return "\n".join(lines)


def _group_by_type(equipment: List[Any]) -> "OrderedDict[str, List[Any]]":
    grouped: "OrderedDict[str, List[Any]]" = OrderedDict()
    for item in equipment:
        grouped.setdefault(item.type, []).append(item)
    return grouped


def result_from_job(job_result: Dict[str, Any], machine_tags: Optional[List[str]] = None) -> PlateSolvingResult:
    """Rebuild a solve result from the flattened form stored on a job."""
    data = dict(job_result)
    annotations = data.pop("annotations", []) or []
    return PlateSolvingResult(
        calibration=Calibration.model_validate(data),
        annotations=[Annotation.model_validate(a) for a in annotations],
        machine_tags=machine_tags or [],
    )


class XmpSidecarWriter:
    """Writes sidecars into the configured output directory."""

    def __init__(self, config_service, storage=None):
        self.config_service = config_service
        self.storage = storage
        self.logger = get_logger("xmp_sidecar")

    def _output_dir(self, image) -> Path:
        config = self.config_service.get_sidecar_config()
        base = Path(config.output_path or "./sidecars")
        if config.organize_by_date and image.capture_date:
            return base / f"{image.capture_date.year:04d}" / f"{image.capture_date.month:02d}"
        return base

    def sidecar_path(self, image) -> Path:
        return self._output_dir(image) / f"{image.filename}.xmp"

    def resolve_sidecar_path(self, image) -> Optional[Path]:
        """Path of an existing sidecar, checking both flat and dated layouts."""
        config = self.config_service.get_sidecar_config()
        base = Path(config.output_path or "./sidecars")
        candidates = [self.sidecar_path(image), base / f"{image.filename}.xmp"]
        if image.capture_date:
            candidates.append(
                base / f"{image.capture_date.year:04d}" / f"{image.capture_date.month:02d}" / f"{image.filename}.xmp"
            )
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def _ensure_writable(self, directory: Path) -> None:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SidecarError(f"Cannot create sidecar directory {directory}: {e}")
        marker = directory / ".test-write"
        try:
            marker.write_text("test", encoding="utf-8")
            marker.unlink()
        except OSError as e:
            raise SidecarError(f"Sidecar directory is not writable: {directory}: {e}")

    def write_sidecar(
        self,
        image,
        result: PlateSolvingResult,
        astrometry_job_id: str,
        equipment: Optional[List[Any]] = None,
    ) -> Optional[Path]:
        """Write ``<filename>.xmp`` for the image; returns None when sidecars are disabled."""
        if not self.config_service.get_sidecar_config().enabled:
            self.logger.debug(f"Sidecars disabled, skipping image {image.id}")
            return None

        path = self.sidecar_path(image)
        self._ensure_writable(path.parent)
        content = build_xmp(image, result, astrometry_job_id, equipment)
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise SidecarError(f"Failed to write sidecar {path}: {e}")

        self.logger.info(f"📝 XMP sidecar written: {path}")
        return path

    def regenerate_all(self) -> Dict[str, int]:
        """Rewrite sidecars for every plate-solved image from its stored job result."""
        counts = {"written": 0, "skipped": 0, "failed": 0}
        for image in self.storage.get_images({"plate_solved": True}):
            job = self.storage.get_job_for_image(image.id, status="success")
            if job is None or not job.result or "ra" not in job.result:
                counts["skipped"] += 1
                continue
            try:
                result = result_from_job(job.result, image.tags or [])
                equipment = self.storage.get_equipment_for_image(image.id)
                job_id = job.astrometry_job_id or image.astrometry_job_id or ""
                if self.write_sidecar(image, result, job_id, equipment) is None:
                    counts["skipped"] += 1
                else:
                    counts["written"] += 1
            except (SidecarError, ValueError) as e:
                self.logger.error(f"❌ Sidecar for image {image.id} failed: {e}")
                counts["failed"] += 1

        self.logger.info(
            f"📝 Sidecar regeneration: {counts['written']} written, "
            f"{counts['skipped']} skipped, {counts['failed']} failed"
        )
        return counts
