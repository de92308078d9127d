"""
Tests for the Immich import and metadata write-back.
"""

from datetime import datetime

import httpx
import pytest

from conftest import CLIENT_OPTIONS, json_of, make_image
from skymmich.events import IMMICH_SYNC_COMPLETE
from skymmich.immich_sync import ImmichSyncService, SyncConfigurationError, asset_to_image
from skymmich.models import ImmichAsset


def asset(asset_id, name=None, **exif):
    return {
        "id": asset_id,
        "type": "IMAGE",
        "originalFileName": name or f"{asset_id}.jpg",
        "fileCreatedAt": "2024-09-14T22:30:00.000Z",
        "exifInfo": exif,
    }


@pytest.fixture
def service(storage, config_service, events, router):
    return ImmichSyncService(storage, config_service, events, transport=router.transport,
                             client_options=CLIENT_OPTIONS)


def add_albums(router, albums):
    router.add("GET", "/api/albums", [
        {"id": album_id, "albumName": album_id.title(), "assetCount": len(assets)}
        for album_id, assets in albums.items()
    ])
    for album_id, assets in albums.items():
        router.add("GET", f"/api/albums/{album_id}", {"id": album_id, "albumName": album_id.title(),
                                                      "assetCount": len(assets), "assets": assets})


def test_asset_to_image_maps_exif():
    values = asset_to_image(ImmichAsset.model_validate(asset(
        "a1", "M42.fits", make="ZWO", model="ASI2600MC", lensModel="RedCat 51", fNumber=4.9,
        focalLength=250.0, iso=100, exposureTime=300, latitude=51.5, longitude=-0.12,
        description="Orion",
    )))

    assert values["immich_id"] == "a1"
    assert values["title"] == values["filename"] == "M42.fits"
    assert values["thumbnail_url"] == "/api/assets/a1/thumbnail"
    assert values["full_url"] == "/api/assets/a1/thumbnail?size=preview"
    assert values["capture_date"] == datetime(2024, 9, 14, 22, 30)
    assert values["aperture"] == "f/4.9"
    assert values["exposure_time"] == "300"
    assert values["total_integration"] == pytest.approx(300 / 3600)
    assert values["camera"] == "ZWO ASI2600MC"
    assert values["telescope"] == "RedCat 51"
    assert values["tags"] == ["astrophotography"]
    assert values["object_type"] == "Deep Sky"
    assert values["description"] == "Orion"


def test_asset_to_image_without_exif():
    values = asset_to_image(ImmichAsset.model_validate({"id": "a2", "originalFileName": "moon.jpg"}))

    assert values["camera"] is None
    assert values["aperture"] is None
    assert values["total_integration"] is None
    assert values["frame_count"] == 1


def test_fractional_exposure_is_not_integration():
    values = asset_to_image(ImmichAsset.model_validate(asset("a3", exposureTime="1/200")))
    assert values["exposure_time"] == "1/200"
    assert values["total_integration"] is None


async def test_sync_imports_and_removes(service, storage, router, events):
    stale = make_image(storage, immich_id="gone")
    kept = make_image(storage, immich_id="a1", title="already here")
    add_albums(router, {
        "deep-sky": [asset("a1"), asset("a2")],
        "planets": [asset("a2"), asset("a3")],
        "empty": [],
    })

    result = await service.run_sync()

    assert (result.synced_count, result.removed_count) == (2, 1)
    assert result.message == ("Successfully synced 2 new images from Immich. "
                              "Removed 1 images no longer in Immich.")
    assert storage.get_image(stale.id) is None
    assert storage.get_image(kept.id).title == "already here"
    assert set(storage.get_immich_ids()) == {"a1", "a2", "a3"}
    assert router.requests("GET", "/api/albums/empty") == []
    assert events.of(IMMICH_SYNC_COMPLETE) == [{
        "success": True,
        "message": result.message,
        "syncedCount": 2,
        "removedCount": 1,
    }]


async def test_sync_by_album(service, config_service, storage, router):
    config_service.update_config({"immich": {"syncByAlbum": True, "selectedAlbumIds": ["planets"]}})
    add_albums(router, {"deep-sky": [asset("a1")], "planets": [asset("a3")]})

    result = await service.sync_from_immich()

    assert result.synced_count == 1
    assert set(storage.get_immich_ids()) == {"a3"}
    assert router.requests("GET", "/api/albums/deep-sky") == []


async def test_failing_album_is_skipped(service, storage, router):
    add_albums(router, {"good": [asset("a1")], "broken": [asset("a2")]})
    router.add("GET", "/api/albums/broken", {"message": "boom"}, status=500)

    result = await service.sync_from_immich()

    assert result.synced_count == 1
    assert set(storage.get_immich_ids()) == {"a1"}


async def test_unreadable_album_keeps_existing_images(service, storage, router):
    kept = make_image(storage, immich_id="a2", plate_solved=True)
    job = storage.create_plate_solving_job({"image_id": kept.id, "status": "success"})
    add_albums(router, {"good": [asset("a1")], "broken": [asset("a2")]})
    router.add("GET", "/api/albums/broken", {"message": "unavailable"}, status=503)

    result = await service.sync_from_immich()

    assert (result.synced_count, result.removed_count) == (1, 0)
    assert storage.get_image(kept.id) is not None
    assert storage.get_plate_solving_job(job.id).status == "success"
    assert set(storage.get_immich_ids()) == {"a1", "a2"}


async def test_sync_configuration_errors(service, config_service, events):
    config_service.update_config({"immich": {"syncByAlbum": True}})
    with pytest.raises(SyncConfigurationError, match="no albums are selected"):
        await service.run_sync()

    assert events.of(IMMICH_SYNC_COMPLETE)[-1]["success"] is False


async def test_sync_missing_credentials(storage, config_service, router):
    config_service.settings = config_service.settings.model_copy(update={"immich_api_key": ""})
    config_service.update_config({"immich": {"apiKey": ""}})
    service = ImmichSyncService(storage, config_service, transport=router.transport, client_options=CLIENT_OPTIONS)

    with pytest.raises(SyncConfigurationError, match="Immich configuration missing"):
        await service.sync_from_immich()


# ── Metadata write-back ───────────────────────────────────────────────────

def solved_image(storage):
    image = make_image(
        storage, plate_solved=True, ra="10.6847", dec="41.2687", pixel_scale=1.52, field_of_view="2.2'",
        constellation="Andromeda", telescope="RedCat 51", focal_length=250.0, exposure_time="300",
        frame_count=40, total_integration=3.0, description="Andromeda galaxy", latitude=51.5, longitude=-0.12,
        tags=["astrophotography", "M 31", "The star Mirach", "Mirach (β And)"],
    )
    scope = storage.create_equipment({"name": "RedCat 51", "type": "telescope"})
    storage.add_equipment_to_image(image.id, scope.id)
    storage.create_acquisition(image.id, {"filter_name": "L-eXtreme", "frame_count": 30, "exposure_time": 300.0})
    storage.create_acquisition(image.id, {"frame_count": 10, "exposure_time": 180.0})
    return image


def test_build_metadata_items(service, storage):
    items = {item["key"]: item["value"]["value"] for item in service.build_metadata_items(solved_image(storage))}

    assert items["objectType"] == "Deep Sky"
    assert items["constellation"] == "Andromeda"
    assert items["ra"] == "10.6847"
    assert items["focalLength"] == "250"
    assert items["totalIntegration"] == "3h"
    assert items["equipment"] == "RedCat 51 (telescope)"
    assert items["acquisition"] == "L-eXtreme: 30x300s, No filter: 10x180s (40 frames, 3.0h)"
    assert "mount" not in items


async def test_sync_image_metadata(service, config_service, storage, router):
    config_service.update_config({"immich": {"metadataSyncEnabled": True}})
    image = solved_image(storage)
    router.add("PUT", "/api/assets/asset-1", {"id": "asset-1"})
    router.add("PUT", "/api/assets/asset-1/metadata", {})
    router.add("GET", "/api/tags", [{"id": "t-deep", "name": "Deep Sky"}])

    created = []

    def create_tag(request):
        name = json_of(request)["name"]
        created.append(name)
        return httpx.Response(201, json={"id": f"t-{len(created)}", "name": name})

    router.add("POST", "/api/tags", handler=create_tag)
    for tag_id in ("t-deep", "t-1", "t-2", "t-3", "t-4"):
        router.add("PUT", f"/api/tags/{tag_id}/assets", [{"id": "asset-1", "success": True}])

    assert await service.sync_image_metadata(image.id) == (True, None)

    assert json_of(router.requests("PUT", "/api/assets/asset-1")[0]) == {
        "description": "Andromeda galaxy",
        "latitude": 51.5,
        "longitude": -0.12,
    }
    keys = [item["key"] for item in json_of(router.requests("PUT", "/api/assets/asset-1/metadata")[0])["items"]]
    assert keys[:3] == ["objectType", "constellation", "ra"]
    # Star names are filtered; Deep Sky already exists in Immich
    assert created == ["astrophotography", "M 31", "Andromeda", "RedCat 51"]
    assert len(router.requests("PUT", "/api/tags/t-deep/assets")) == 1


async def test_sync_image_metadata_respects_toggles(service, config_service, storage, router):
    image = solved_image(storage)
    assert await service.sync_image_metadata(image.id) == (
        False, 'Metadata sync is disabled. Enable it in Admin Settings under "Metadata Sync".'
    )

    config_service.update_config({"immich": {"metadataSyncEnabled": True, "syncDescription": False,
                                             "syncCoordinates": False, "syncTags": False}})
    router.add("PUT", "/api/assets/asset-1/metadata", {})

    assert await service.sync_image_metadata(image.id) == (True, None)
    assert router.requests("PUT", "/api/assets/asset-1") == []
    assert router.requests("GET", "/api/tags") == []


async def test_sync_image_metadata_errors(service, config_service, storage, router):
    config_service.update_config({"immich": {"metadataSyncEnabled": True}})
    unlinked = make_image(storage, immich_id=None)
    assert await service.sync_image_metadata(unlinked.id) == (
        False, "Image not found or not linked to Immich. Try syncing from Immich first."
    )

    linked = make_image(storage, immich_id="asset-9", description="x")
    router.add("PUT", "/api/assets/asset-9", {"message": "Not found"}, status=400)
    success, error = await service.sync_image_metadata(linked.id)
    assert success is False
    assert "Not found" in error


async def test_sync_all_images(service, config_service, storage, router):
    config_service.update_config({"immich": {"metadataSyncEnabled": True, "syncTags": False,
                                             "syncDescription": False, "syncCoordinates": False}})
    good = make_image(storage, immich_id="ok-1")
    bad = make_image(storage, immich_id="bad-1")
    make_image(storage, immich_id=None)
    router.add("PUT", "/api/assets/ok-1/metadata", {})
    router.add("PUT", "/api/assets/bad-1/metadata", {"message": "Forbidden"}, status=403)

    outcome = await service.sync_all_images()

    assert outcome["synced"] == 1
    assert outcome["failed"] == 1
    assert outcome["errors"][0].startswith(f"Image {bad.id}:")
    assert len(router.requests("PUT", f"/api/assets/{good.immich_id}/metadata")) == 1
