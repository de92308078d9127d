"""
Immich API client used by the importer, the metadata write-back and the
asset proxy.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any, AsyncIterator, Tuple
import httpx
from .models import ImmichAlbum, ImmichAsset, ImmichTag
from .config import settings
from .logging import get_logger
from .performance_monitor import performance_monitor

ASSET_KINDS = ("thumbnail", "original", "fullsize")


class ImmichAPIError(Exception):
    """Custom exception for Immich API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def validate_host(url: str) -> str:
    """Reject anything but an absolute http(s) URL and return it without a trailing slash."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError):
        raise ValueError("Invalid URL format")
    if not parsed.scheme or not parsed.host:
        raise ValueError("Invalid URL format")
    if parsed.scheme not in ("http", "https"):
        raise ValueError("Only HTTP and HTTPS protocols are allowed")
    return url.rstrip("/")


class ImmichClient:
    """Async client for the Immich REST API."""

    def __init__(
        self,
        host: str,
        api_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.base_url = validate_host(host)
        self.api_key = api_key
        self.logger = get_logger("immich_client")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.retry_delay

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={
                "X-API-Key": self.api_key,
                "Accept": "application/json",
            },
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic."""
        request_start = time.time()

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=endpoint,
                    params=params,
                    json=json_data,
                )
                response.raise_for_status()

                performance_monitor.record_api_call("immich", time.time() - request_start)
                return response

            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < self.max_retries:
                    self.logger.warning(
                        f"⚠️  Immich server error {e.response.status_code}, retrying "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff
                    continue
                performance_monitor.record_api_error("immich")
                self.logger.error(
                    f"❌ HTTP {method} {endpoint} failed: {e.response.status_code} - {e.response.text}"
                )
                raise ImmichAPIError(
                    f"HTTP {e.response.status_code}: {_error_message(e.response)}",
                    status_code=e.response.status_code,
                )

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    self.logger.warning(
                        f"Request error, retrying (attempt {attempt + 1}/{self.max_retries}): {e}"
                    )
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                    continue
                performance_monitor.record_api_error("immich")
                self.logger.error(f"❌ Request failed: {str(e)}")
                raise ImmichAPIError(f"Request failed: {e}")

    # ── Albums and assets ─────────────────────────────────────────────────
    async def get_albums(self) -> List[ImmichAlbum]:
        response = await self._make_request("GET", "/api/albums")
        data = response.json()
        if not isinstance(data, list):
            raise ImmichAPIError("Unexpected response from Immich")
        return [ImmichAlbum.model_validate(album) for album in data]

    async def get_album(self, album_id: str) -> ImmichAlbum:
        """Fetch one album including its assets."""
        response = await self._make_request("GET", f"/api/albums/{album_id}")
        return ImmichAlbum.model_validate(response.json())

    async def get_asset(self, asset_id: str) -> ImmichAsset:
        response = await self._make_request("GET", f"/api/assets/{asset_id}")
        return ImmichAsset.model_validate(response.json())

    async def download(self, path: str) -> Tuple[bytes, str]:
        """Download a server-relative path (or an absolute URL) and return body and content type."""
        response = await self._make_request("GET", path)
        content_type = response.headers.get("content-type", "image/jpeg")
        return response.content, content_type

    async def download_asset(
        self, asset_id: str, kind: str = "thumbnail", params: Optional[Dict[str, Any]] = None
    ) -> Tuple[bytes, str]:
        if kind not in ASSET_KINDS:
            raise ValueError(f"Invalid asset type: {kind}")
        response = await self._make_request("GET", f"/api/assets/{asset_id}/{kind}", params=params)
        return response.content, response.headers.get("content-type", "application/octet-stream")

    @asynccontextmanager
    async def stream_asset(
        self, asset_id: str, kind: str, params: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming response for an asset; the caller checks the status."""
        if kind not in ASSET_KINDS:
            raise ValueError(f"Invalid asset type: {kind}")
        try:
            async with self.client.stream("GET", f"/api/assets/{asset_id}/{kind}", params=params) as response:
                yield response
        except httpx.RequestError as e:
            raise ImmichAPIError(f"Request failed: {e}")

    async def update_asset(self, asset_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Update native asset fields (description, latitude, longitude)."""
        response = await self._make_request("PUT", f"/api/assets/{asset_id}", json_data=payload)
        return response.json() if response.content else {}

    async def put_asset_metadata(self, asset_id: str, items: List[Dict[str, Any]]) -> None:
        await self._make_request("PUT", f"/api/assets/{asset_id}/metadata", json_data={"items": items})

    # ── Tags ──────────────────────────────────────────────────────────────
    async def get_all_tags(self) -> List[ImmichTag]:
        response = await self._make_request("GET", "/api/tags")
        return [ImmichTag.model_validate(tag) for tag in response.json() or []]

    async def create_tag(self, name: str) -> ImmichTag:
        response = await self._make_request("POST", "/api/tags", json_data={"name": name})
        self.logger.debug(f"🏷️ Created Immich tag '{name}'")
        return ImmichTag.model_validate(response.json())

    async def assign_tag(self, tag_id: str, asset_ids: List[str]) -> None:
        await self._make_request("PUT", f"/api/tags/{tag_id}/assets", json_data={"ids": asset_ids})

    # ── Connection test ───────────────────────────────────────────────────
    async def test_connection(self) -> Tuple[bool, str]:
        """Probe the albums endpoint once and describe the outcome."""
        try:
            response = await self.client.get("/api/albums", params={"take": 1}, timeout=10.0)
        except httpx.ConnectError as e:
            text = str(e).lower()
            if "name or service not known" in text or "nodename" in text or "getaddrinfo" in text:
                return False, "Host not found. Please check the host URL."
            return False, "Cannot connect to Immich server. Please check the host URL."
        except httpx.RequestError as e:
            return False, str(e) or "Connection failed"

        if response.status_code == 401:
            return False, "Authentication failed. Please check your API key."
        if response.status_code == 404:
            return False, "API endpoint not found. Please check the host URL."

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            self.logger.error(
                f"❌ Immich returned non-JSON response ({response.status_code}, {content_type}): "
                f"{response.text[:200]}"
            )
            return False, f"Server returned non-JSON response ({content_type}). Please check the host URL."

        if response.status_code == 200:
            return True, "Connection successful!"
        return False, f"Connection failed with status: {response.status_code}"


def _error_message(response: httpx.Response) -> str:
    """Prefer the ``message`` field of a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("message"):
        message = body["message"]
        return message if isinstance(message, str) else str(message)
    return response.text
