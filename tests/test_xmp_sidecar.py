"""
Tests for XMP sidecar generation and writing.
"""

import xml.etree.ElementTree as ET
from datetime import datetime, timezone

import pytest

from conftest import make_image
from skymmich.models import Annotation, Calibration, PlateSolvingResult
from skymmich.xmp_sidecar import (
    NS,
    SidecarError,
    XmpSidecarWriter,
    build_xmp,
    generate_summary,
    result_from_job,
)

SOLVED_AT = datetime(2024, 9, 15, 1, 2, 3, tzinfo=timezone.utc)


@pytest.fixture
def result():
    return PlateSolvingResult(
        calibration=Calibration(ra=10.6847, dec=41.2687, pixscale=1.52, radius=1.1, orientation=87.3,
                                parity=1.0, width_arcsec=7000.0),
        annotations=[
            Annotation(type="messier", names=["M 31", "Andromeda Galaxy"], pixelx=1200.5, pixely=800.25,
                       radius=300.0),
            Annotation(type="bright", names=["Mirach"], pixelx=40.0, pixely=60.0, vmag=2.07),
        ],
        machine_tags=["M 31", "NGC 224"],
    )


@pytest.fixture
def equipment(storage):
    return [
        storage.create_equipment({"name": "RedCat 51", "type": "telescope", "description": "f/4.9 APO",
                                  "specifications": {"focalLength": 250}}),
        storage.create_equipment({"name": "ASI2600MC", "type": "camera"}),
        storage.create_equipment({"name": "Askar 65", "type": "telescope"}),
    ]


def _parse(xml: str) -> ET.Element:
    return ET.fromstring(xml.split("\n", 1)[1])


def test_build_xmp_structure(storage, result, equipment):
    image = make_image(storage)
    root = _parse(build_xmp(image, result, "4242", equipment, SOLVED_AT))

    assert root.tag == f"{{{NS['x']}}}xmpmeta"
    assert root.get(f"{{{NS['x']}}}xmptk") == "Skymmich"

    title = root.find(f".//{{{NS['dc']}}}title")
    assert title.text == "M31.jpg"
    subjects = [li.text for li in root.findall(f".//{{{NS['dc']}}}subject//{{{NS['rdf']}}}li")]
    assert subjects == ["M 31", "NGC 224"]

    assert root.find(f".//{{{NS['astro']}}}plateSolved").text == "true"
    assert root.find(f".//{{{NS['astro']}}}astrometryJobId").text == "4242"
    assert root.find(f".//{{{NS['astro']}}}plateSolvedAt").text == SOLVED_AT.isoformat()
    assert root.find(f".//{{{NS['astro']}}}imageId").text == "asset-1"

    cal = root.find(f".//{{{NS['astro']}}}calibration")
    assert cal.find(f".//{{{NS['astro']}}}ra").text == "10.6847"
    assert cal.find(f".//{{{NS['astro']}}}pixelScale").text == "1.52"
    assert cal.find(f".//{{{NS['astro']}}}widthArcsec").text == "7000.0"
    assert cal.find(f".//{{{NS['astro']}}}heightArcsec") is None

    keywords = [li.text for li in root.findall(f".//{{{NS['iptc']}}}Keywords//{{{NS['rdf']}}}li")]
    assert keywords == ["M 31", "NGC 224"]


def test_build_xmp_omits_missing_calibration_fields(storage):
    sparse = PlateSolvingResult(calibration=Calibration(ra=83.82, dec=-5.39, pixscale=2.1))
    xml = build_xmp(make_image(storage), sparse, "77", plate_solved_at=SOLVED_AT)

    cal = _parse(xml).find(f".//{{{NS['astro']}}}calibration")
    assert cal.find(f".//{{{NS['astro']}}}pixelScale").text == "2.1"
    for name in ("radius", "orientation", "parity"):
        assert cal.find(f".//{{{NS['astro']}}}{name}") is None
    assert ">None<" not in xml


def test_build_xmp_groups_equipment_and_annotations(storage, result, equipment):
    image = make_image(storage)
    root = _parse(build_xmp(image, result, "4242", equipment, SOLVED_AT))

    groups = root.findall(f".//{{{NS['astro']}}}equipment")
    assert len(groups) == 2
    first_names = [el.text for el in groups[0].iter(f"{{{NS['astro']}}}name")]
    assert first_names == ["RedCat 51", "Askar 65"]
    assert groups[0].find(f".//{{{NS['astro']}}}specifications").text == '{"focalLength": 250}'

    annotations = root.find(f".//{{{NS['astro']}}}annotations")
    items = annotations.findall(f"./{{{NS['rdf']}}}Bag/{{{NS['rdf']}}}li")
    assert len(items) == 2
    assert items[0].find(f".//{{{NS['astro']}}}radius").text == "300.0"
    assert items[0].find(f".//{{{NS['astro']}}}magnitude") is None
    assert items[1].find(f".//{{{NS['astro']}}}magnitude").text == "2.07"


def test_generate_summary(result, equipment):
    summary = generate_summary(result, "4242", equipment, SOLVED_AT)

    assert "- RA: 10.684700°" in summary
    assert "- Field of View: 2.2 arcmin" in summary
    assert "- TELESCOPE: RedCat 51 (f/4.9 APO)" in summary
    assert "Identified Objects (2):" in summary
    assert "- MESSIER: M 31, Andromeda Galaxy" in summary
    assert summary.endswith(f"Date: {SOLVED_AT.isoformat()}")


def test_result_from_job_round_trips_job_result(result):
    rebuilt = result_from_job(result.job_result(), ["M 31"])

    assert rebuilt.calibration.ra == 10.6847
    assert rebuilt.calibration.width_arcsec == 7000.0
    assert [a.names for a in rebuilt.annotations] == [["M 31", "Andromeda Galaxy"], ["Mirach"]]
    assert rebuilt.machine_tags == ["M 31"]


def test_writer_writes_flat_and_dated(storage, config_service, sidecar_dir, result):
    image = make_image(storage)
    writer = XmpSidecarWriter(config_service, storage)

    path = writer.write_sidecar(image, result, "4242")
    assert path == sidecar_dir / "M31.jpg.xmp"
    assert path.read_text(encoding="utf-8").startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert not (sidecar_dir / ".test-write").exists()
    assert writer.resolve_sidecar_path(image) == path

    config_service.update_config({"sidecar": {"organizeByDate": True}})
    path.unlink()
    dated = writer.write_sidecar(image, result, "4242")
    assert dated == sidecar_dir / "2024" / "09" / "M31.jpg.xmp"
    assert writer.resolve_sidecar_path(image) == dated


def test_writer_disabled_and_missing(storage, config_service, result):
    image = make_image(storage)
    writer = XmpSidecarWriter(config_service, storage)

    assert writer.resolve_sidecar_path(image) is None
    config_service.update_config({"sidecar": {"enabled": False}})
    assert writer.write_sidecar(image, result, "4242") is None


def test_writer_rejects_unwritable_directory(storage, config_service, tmp_path, result):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way", encoding="utf-8")
    config_service.update_config({"sidecar": {"outputPath": str(blocker)}})

    with pytest.raises(SidecarError):
        XmpSidecarWriter(config_service, storage).write_sidecar(make_image(storage), result, "4242")


def test_regenerate_all(storage, config_service, sidecar_dir, result):
    solved = make_image(storage, immich_id="a", filename="solved.jpg", plate_solved=True, tags=["M 31"])
    storage.create_plate_solving_job({"image_id": solved.id, "status": "success", "astrometry_job_id": "4242",
                                      "result": result.job_result()})
    make_image(storage, immich_id="b", filename="no-job.jpg", plate_solved=True)
    make_image(storage, immich_id="c", filename="unsolved.jpg")

    counts = XmpSidecarWriter(config_service, storage).regenerate_all()

    assert counts == {"written": 1, "skipped": 1, "failed": 0}
    assert (sidecar_dir / "solved.jpg.xmp").is_file()
