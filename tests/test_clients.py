"""
Tests for the Immich and Astrometry.net HTTP clients.
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import IMMICH_HOST, MockRouter, add_astrometry_routes, json_of
from skymmich.astrometry_client import (
    USER_AGENT,
    AstrometryAPIError,
    AstrometryClient,
    normalize_annotations,
    normalize_machine_tags,
)
from skymmich.immich_client import ImmichAPIError, ImmichClient, validate_host


def immich(router, **kwargs):
    options = {"max_retries": 0, "retry_delay": 0.01, **kwargs}
    return ImmichClient(IMMICH_HOST, "immich-key", transport=router.transport, **options)


def astrometry(router, **kwargs):
    options = {"max_retries": 0, "retry_delay": 0.01, **kwargs}
    return AstrometryClient("astro-key", transport=router.transport, **options)


# ── Immich ────────────────────────────────────────────────────────────────

def test_validate_host():
    assert validate_host("https://photos.example.com/") == "https://photos.example.com"
    with pytest.raises(ValueError, match="Only HTTP and HTTPS"):
        validate_host("file://etc/passwd")
    with pytest.raises(ValueError, match="Invalid URL format"):
        validate_host("not a url")


async def test_get_albums_sends_api_key(router):
    router.add("GET", "/api/albums", [{"id": "alb-1", "albumName": "Deep Sky", "assetCount": 2}])

    async with immich(router) as client:
        albums = await client.get_albums()

    assert [(a.id, a.albumName, a.assetCount) for a in albums] == [("alb-1", "Deep Sky", 2)]
    assert router.calls[0].headers["X-API-Key"] == "immich-key"


async def test_server_errors_are_retried(router):
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"id": "a1", "originalFileName": "M42.jpg"})

    router.add("GET", "/api/assets/a1", handler=flaky)

    async with immich(router, max_retries=2) as client:
        asset = await client.get_asset("a1")

    assert asset.originalFileName == "M42.jpg"
    assert len(attempts) == 3


async def test_client_errors_raise_immediately(router):
    router.add("GET", "/api/albums/missing", {"message": "Album not found"}, status=400)

    async with immich(router, max_retries=3) as client:
        with pytest.raises(ImmichAPIError) as exc_info:
            await client.get_album("missing")

    assert exc_info.value.status_code == 400
    assert "Album not found" in str(exc_info.value)
    assert len(router.calls) == 1


async def test_download_asset_and_metadata_writes(router):
    router.add("GET", "/api/assets/a1/original", status=200, content=b"RAW",
               headers={"content-type": "image/tiff"})
    router.add("PUT", "/api/assets/a1/metadata", {})
    router.add("PUT", "/api/tags/t1/assets", [{"id": "a1", "success": True}])

    async with immich(router) as client:
        data, content_type = await client.download_asset("a1", "original")
        await client.put_asset_metadata("a1", [{"key": "ra", "value": {"value": "10.68"}}])
        await client.assign_tag("t1", ["a1"])
        with pytest.raises(ValueError):
            await client.download_asset("a1", "video")

    assert (data, content_type) == (b"RAW", "image/tiff")
    assert json_of(router.requests("PUT", "/api/assets/a1/metadata")[0]) == {
        "items": [{"key": "ra", "value": {"value": "10.68"}}]
    }
    assert json_of(router.requests("PUT", "/api/tags/t1/assets")[0]) == {"ids": ["a1"]}


async def test_stream_asset_forwards_params(router):
    router.add("GET", "/api/assets/a1/thumbnail", status=200, content=b"jpeg",
               headers={"content-type": "image/jpeg"})

    async with immich(router) as client:
        async with client.stream_asset("a1", "thumbnail", params={"size": "preview"}) as response:
            body = await response.aread()

    assert body == b"jpeg"
    assert router.calls[0].url.params["size"] == "preview"


@pytest.mark.parametrize(
    "response, expected",
    [
        (httpx.Response(200, json=[]), (True, "Connection successful!")),
        (httpx.Response(401, json={}), (False, "Authentication failed. Please check your API key.")),
        (httpx.Response(404, json={}), (False, "API endpoint not found. Please check the host URL.")),
        (httpx.Response(500, json={}), (False, "Connection failed with status: 500")),
    ],
)
async def test_test_connection_messages(router, response, expected):
    router.add("GET", "/api/albums", handler=lambda request: response)

    async with immich(router) as client:
        assert await client.test_connection() == expected


async def test_test_connection_non_json(router):
    router.add("GET", "/api/albums", status=200, text="<html>login</html>",
               headers={"content-type": "text/html"})

    async with immich(router) as client:
        ok, message = await client.test_connection()

    assert ok is False
    assert message.startswith("Server returned non-JSON response (text/html)")


async def test_test_connection_refused():
    def refuse(request):
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    async with ImmichClient(IMMICH_HOST, "k", transport=httpx.MockTransport(refuse)) as client:
        ok, message = await client.test_connection()

    assert ok is False
    assert message == "Cannot connect to Immich server. Please check the host URL."


# ── Astrometry.net ────────────────────────────────────────────────────────

async def test_login_and_upload(router):
    add_astrometry_routes(router)

    async with astrometry(router) as client:
        session = await client.login()
        submission_id = await client.upload(session, b"jpeg", "M31.jpg", "image/jpeg")

    assert session == "sess-1"
    assert submission_id == "9001"

    login = router.requests("POST", "/api/login")[0]
    assert login.headers["User-Agent"] == USER_AGENT
    form = parse_qs(login.content.decode())
    assert json.loads(form["request-json"][0]) == {"apikey": "astro-key"}

    upload = router.requests("POST", "/api/upload")[0]
    assert upload.headers["content-type"].startswith("multipart/form-data")
    assert b'filename="M31.jpg"' in upload.content


async def test_login_failure(router):
    router.add("POST", "/api/login", {"status": "error", "errormessage": "bad apikey"})

    async with astrometry(router) as client:
        with pytest.raises(AstrometryAPIError, match="bad apikey"):
            await client.test_connection()


async def test_results(router):
    add_astrometry_routes(router)

    async with astrometry(router) as client:
        calibration = await client.get_calibration("4242")
        annotations = await client.get_annotations("4242")
        tags = await client.get_machine_tags("4242")

    assert calibration.ra == 10.6847
    assert calibration.radius == 1.1
    assert annotations[0].ra == 10.6847
    assert annotations[1].pixelx == 40.0
    assert tags == ["M 31", "Andromeda Galaxy", "NGC 224"]


async def test_missing_job_is_404(router):
    async with astrometry(router) as client:
        with pytest.raises(AstrometryAPIError) as exc_info:
            await client.get_job("1")

    assert exc_info.value.status_code == 404


async def test_malformed_status_payloads_raise(router):
    router.add("GET", "/api/submissions/7", status=200, content=b"<html>maintenance</html>",
               headers={"content-type": "text/html"})
    router.add("GET", "/api/jobs/7", ["not", "an", "object"])
    router.add("GET", "/api/jobs/7/calibration", {"orientation": 12.0})
    router.add("GET", "/api/jobs/7/machine_tags/", status=200, content=b"M 42, NGC 1976",
               headers={"content-type": "text/plain"})

    async with astrometry(router) as client:
        with pytest.raises(AstrometryAPIError, match="non-JSON"):
            await client.get_submission("7")
        with pytest.raises(AstrometryAPIError, match="expected an object"):
            await client.get_job("7")
        with pytest.raises(AstrometryAPIError, match="Invalid calibration"):
            await client.get_calibration("7")
        assert await client.get_machine_tags("7") == ["M 42", "NGC 1976"]


def test_normalize_payloads():
    assert normalize_annotations("nonsense") == []
    assert normalize_annotations([{"type": "ngc", "names": ["NGC 7000"], "ra": "", "dec": "44.3"}])[0].dec == 44.3
    assert normalize_machine_tags("M 31, NGC 224 ,") == ["M 31", "NGC 224"]
    assert normalize_machine_tags(["M 42"]) == ["M 42"]
    assert normalize_machine_tags({"tags": ["IC 434"]}) == ["IC 434"]
    assert normalize_machine_tags(None) == []
