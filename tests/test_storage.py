"""
Tests for the storage layer.
"""

from datetime import datetime, timedelta

from conftest import make_image
from skymmich.tables import Notification, utcnow


def test_create_and_fetch_image(storage):
    image = make_image(storage)

    assert image.id is not None
    fetched = storage.get_image(image.id)
    assert fetched.title == "M31.jpg"
    assert fetched.tags == ["astrophotography"]
    assert storage.get_image_by_immich_id("asset-1").id == image.id
    assert storage.get_immich_ids() == {"asset-1": image.id}
    assert storage.get_image(999) is None


def test_image_filters(storage):
    make_image(storage, immich_id="a", title="Orion Nebula", tags=["nebula", "M42"],
               constellation="Orion", plate_solved=True, capture_date=datetime(2024, 1, 1))
    make_image(storage, immich_id="b", title="Pleiades", tags=["cluster"], object_type="Star Cluster",
               capture_date=datetime(2024, 2, 1))
    make_image(storage, immich_id="c", title="Moon", tags=[], object_type="Lunar",
               description="Waxing crescent", capture_date=datetime(2024, 3, 1))

    assert [i.title for i in storage.get_images()] == ["Moon", "Pleiades", "Orion Nebula"]
    assert [i.title for i in storage.get_images({"plate_solved": True})] == ["Orion Nebula"]
    assert [i.title for i in storage.get_images({"plate_solved": False})] == ["Moon", "Pleiades"]
    assert [i.title for i in storage.get_images({"object_type": "Lunar"})] == ["Moon"]
    assert [i.title for i in storage.get_images({"constellation": "Orion"})] == ["Orion Nebula"]
    assert [i.title for i in storage.get_images({"search": "crescent"})] == ["Moon"]
    assert [i.title for i in storage.get_images({"tags": ["cluster", "M42"]})] == ["Pleiades", "Orion Nebula"]


def test_update_image_bumps_updated_at(storage):
    image = make_image(storage)
    before = image.updated_at

    updated = storage.update_image(image.id, {"title": "Andromeda", "id": 500, "not_a_column": 1})

    assert updated.title == "Andromeda"
    assert updated.id == image.id
    assert updated.updated_at >= before
    assert storage.update_image(999, {"title": "x"}) is None


def test_delete_image_removes_dependents(storage):
    image = make_image(storage)
    scope = storage.create_equipment({"name": "RedCat 51", "type": "telescope"})
    storage.add_equipment_to_image(image.id, scope.id)
    storage.create_acquisition(image.id, {"frame_count": 10, "exposure_time": 120})
    storage.create_plate_solving_job({"image_id": image.id, "status": "processing"})

    assert storage.delete_image(image.id) is True
    assert storage.get_image(image.id) is None
    assert storage.get_image_equipment(image.id) == []
    assert storage.get_image_acquisitions(image.id) == []
    assert storage.get_plate_solving_jobs() == []
    assert storage.delete_image(image.id) is False


def test_equipment_links(storage):
    image = make_image(storage)
    scope = storage.create_equipment({"name": "RedCat 51", "type": "telescope", "specifications": {"fl": 250}})
    camera = storage.create_equipment({"name": "ASI2600MC", "type": "camera"})

    storage.add_equipment_to_image(image.id, scope.id, settings={"focus": 3120}, notes="dew heater on")
    storage.add_equipment_to_image(image.id, camera.id)

    linked = storage.get_equipment_for_image(image.id)
    assert [e.name for e in linked] == ["RedCat 51", "ASI2600MC"]

    link = storage.update_image_equipment(image.id, camera.id, {"notes": "gain 100"})
    assert link.notes == "gain 100"
    assert storage.update_image_equipment(image.id, 999, {"notes": "x"}) is None

    assert storage.remove_equipment_from_image(image.id, camera.id) is True
    assert storage.remove_equipment_from_image(image.id, camera.id) is False
    assert [e.name for e in storage.get_equipment_for_image(image.id)] == ["RedCat 51"]


def test_delete_equipment_detaches_everywhere(storage):
    image = make_image(storage)
    filt = storage.create_equipment({"name": "L-eXtreme", "type": "filter"})
    storage.add_equipment_to_image(image.id, filt.id)
    acq = storage.create_acquisition(image.id, {"filter_id": filt.id, "frame_count": 5, "exposure_time": 300})

    assert storage.delete_equipment(filt.id) is True
    assert storage.get_image_equipment(image.id) == []
    assert storage.get_image_acquisitions(image.id)[0].id == acq.id
    assert storage.get_image_acquisitions(image.id)[0].filter_id is None


def test_acquisitions_refresh_totals(storage):
    image = make_image(storage)
    storage.create_acquisition(image.id, {"filter_name": "Ha", "frame_count": 30, "exposure_time": 300})
    other = storage.create_acquisition(image.id, {"filter_name": "OIII", "frame_count": 20, "exposure_time": 300})

    refreshed = storage.refresh_integration_totals(image.id)
    assert refreshed.frame_count == 50
    assert refreshed.total_integration == 4.17
    assert refreshed.filters == "Ha, OIII"

    # Acquisitions of another image are not reachable through this image
    second = make_image(storage, immich_id="asset-2")
    assert storage.update_acquisition(second.id, other.id, {"frame_count": 1}) is None
    assert storage.delete_acquisition(second.id, other.id) is False

    assert storage.delete_acquisition(image.id, other.id) is True
    assert storage.refresh_integration_totals(image.id).frame_count == 30


def test_locations(storage):
    image = make_image(storage)
    site = storage.create_location({"name": "Backyard", "latitude": 51.5, "longitude": -0.12})
    storage.update_image(image.id, {"location_id": site.id})

    renamed = storage.update_location(site.id, {"name": "Home"})
    assert renamed.name == "Home"
    assert [loc.name for loc in storage.get_locations()] == ["Home"]

    assert storage.delete_location(site.id) is True
    assert storage.get_image(image.id).location_id is None
    assert storage.delete_location(site.id) is False


def test_job_lifecycle_sets_completed_at(storage):
    image = make_image(storage)
    job = storage.create_plate_solving_job({"image_id": image.id, "status": "processing", "attempts": 1})
    assert job.completed_at is None
    assert storage.count_active_jobs() == 1

    done = storage.update_plate_solving_job(job.id, {"status": "failed", "result": {"error": "nope"}})
    assert done.completed_at is not None
    assert storage.count_active_jobs() == 0

    again = storage.update_plate_solving_job(job.id, {"status": "processing"})
    assert again.completed_at is None


def test_job_queries(storage):
    image = make_image(storage)
    first = storage.create_plate_solving_job({"image_id": image.id, "status": "failed"})
    second = storage.create_plate_solving_job({"image_id": image.id, "status": "success",
                                               "astrometry_job_id": "4242"})

    assert storage.get_job_for_image(image.id).id == second.id
    assert storage.get_job_for_image(image.id, status="failed").id == first.id
    assert storage.get_job_by_astrometry_id("4242").id == second.id
    assert [j.id for j in storage.get_plate_solving_jobs(status="failed")] == [first.id]


def test_admin_settings_upsert(storage):
    storage.update_admin_settings({"immich": {"host": "http://a"}})
    storage.update_admin_settings({"immich": {"host": "http://b"}, "app": {"debugMode": True}})

    assert storage.get_admin_settings() == {"immich": {"host": "http://b"}, "app": {"debugMode": True}}


def test_notifications(storage):
    first = storage.create_notification("error", "Immich Sync Failed", "boom", {"jobId": "immich-sync"})
    second = storage.create_notification("info", "Hello", "world")

    assert [n.id for n in storage.get_notifications()] == [second.id, first.id]
    assert storage.acknowledge_notification(first.id) is True
    assert storage.acknowledge_notification(999) is False
    assert [n.id for n in storage.get_notifications()] == [second.id]


def test_clear_old_notifications_only_removes_old_acknowledged(storage):
    old_ack = storage.create_notification("info", "old", "acknowledged")
    old_open = storage.create_notification("info", "old", "still open")
    fresh_ack = storage.create_notification("info", "new", "acknowledged")
    storage.acknowledge_notification(old_ack.id)
    storage.acknowledge_notification(fresh_ack.id)

    with storage.session_scope() as session:
        for notification_id in (old_ack.id, old_open.id):
            session.get(Notification, notification_id).created_at = utcnow() - timedelta(days=45)

    assert storage.clear_old_notifications(30) == 1
    with storage.session_scope() as session:
        remaining = {n.id for n in session.query(Notification).all()}
    assert remaining == {old_open.id, fresh_ack.id}


def test_aggregates(storage):
    make_image(storage, immich_id="a", title="M42", total_integration=2.5, plate_solved=True,
               constellation="Orion", ra="83.82", dec="-5.39", tags=["nebula", "M42"])
    make_image(storage, immich_id="b", title="M42", total_integration=1.0, constellation="Orion",
               tags=["nebula"])
    make_image(storage, immich_id="c", title="M45", constellation="Taurus", tags=["cluster", "nebula"])

    assert storage.get_stats() == {"totalImages": 3, "plateSolved": 1, "totalHours": 3.5, "uniqueTargets": 2}
    assert storage.get_popular_tags(2) == [{"tag": "nebula", "count": 3}, {"tag": "M42", "count": 1}]
    assert storage.get_constellations() == ["Orion", "Taurus"]
    assert [img.title for img in storage.get_sky_markers()] == ["M42"]
