"""
Shared fixtures: an in-memory database, a configured ConfigService and a
mock HTTP transport standing in for Immich and Astrometry.net.
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from skymmich.config import ConfigService
from skymmich.database import init_db, make_engine, make_session_factory
from skymmich.storage import Storage

IMMICH_HOST = "http://immich.local"
CLIENT_OPTIONS = {"max_retries": 0, "retry_delay": 0.01}


class MockRouter:
    """Dispatches httpx requests to canned responses keyed by method and path."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, path: str, json_body: Any = None, status: int = 200,
            handler: Optional[Callable[[httpx.Request], httpx.Response]] = None, **kwargs):
        if handler is None:
            def handler(request, _status=status, _body=json_body, _kwargs=kwargs):
                if _body is None and _kwargs:
                    return httpx.Response(_status, **_kwargs)
                return httpx.Response(_status, json=_body, **_kwargs)
        self.routes[(method, path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "Not found"})
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def requests(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.calls if r.method == method and r.url.path == path]


class RecordingEvents:
    """EventBroker stand-in that keeps every emitted event."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.client_count = 0

    async def emit(self, event: str, data: Dict[str, Any]) -> int:
        self.events.append((event, data))
        return 0

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [data for name, data in self.events if name == event]


@pytest.fixture
def storage():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield Storage(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def sidecar_dir(tmp_path):
    return tmp_path / "sidecars"


@pytest.fixture
def config_service(storage, sidecar_dir):
    service = ConfigService(storage)
    service.update_config({
        "immich": {"host": IMMICH_HOST, "apiKey": "immich-key"},
        "astrometry": {"apiKey": "astro-key", "enabled": True, "pollInterval": 1},
        "sidecar": {"outputPath": str(sidecar_dir)},
    })
    return service


@pytest.fixture
def router():
    return MockRouter()


@pytest.fixture
def events():
    return RecordingEvents()


def make_image(storage: Storage, **overrides):
    values = {
        "immich_id": "asset-1",
        "title": "M31.jpg",
        "filename": "M31.jpg",
        "thumbnail_url": "/api/assets/asset-1/thumbnail",
        "full_url": "/api/assets/asset-1/thumbnail?size=preview",
        "capture_date": datetime(2024, 9, 14, 22, 30),
        "tags": ["astrophotography"],
        "object_type": "Deep Sky",
        "plate_solved": False,
    }
    values.update(overrides)
    return storage.create_image(values)


def add_astrometry_routes(router: MockRouter, submission_id: str = "9001", job_id: int = 4242,
                          solved: bool = True):
    """Canned Astrometry.net responses for one submission that solves as ``job_id``."""
    router.add("POST", "/api/login", {"status": "success", "session": "sess-1"})
    router.add("POST", "/api/upload", {"status": "success", "subid": int(submission_id)})
    router.add("GET", f"/api/submissions/{submission_id}", {
        "jobs": [job_id],
        "job_calibrations": [[job_id, 77]] if solved else [],
    })
    router.add("GET", f"/api/jobs/{job_id}", {"status": "success" if solved else "solving"})
    router.add("GET", f"/api/jobs/{job_id}/calibration", {
        "ra": 10.6847,
        "dec": 41.2687,
        "pixscale": 1.52,
        "radius": 1.1,
        "orientation": 87.3,
        "parity": 1.0,
        "width_arcsec": 7000.0,
        "height_arcsec": 4600.0,
    })
    router.add("GET", f"/api/jobs/{job_id}/annotations", {"annotations": [
        {"type": "messier", "names": ["M 31", "Andromeda Galaxy"], "pixelx": 1200.5, "pixely": 800.25,
         "radius": 300.0, "ra": "10.6847", "dec": "41.2687"},
        {"type": "bright", "names": ["Mirach"], "pixel_x": 40.0, "pixel_y": 60.0, "vmag": 2.07},
    ]})
    router.add("GET", f"/api/jobs/{job_id}/machine_tags/", {"tags": ["M 31", "Andromeda Galaxy", "NGC 224"]})


def add_immich_download(router: MockRouter, asset_id: str = "asset-1"):
    router.add("GET", f"/api/assets/{asset_id}/thumbnail", status=200, content=b"\xff\xd8jpeg-bytes",
               headers={"content-type": "image/jpeg"})


def json_of(request: httpx.Request) -> Any:
    return json.loads(request.content.decode())
