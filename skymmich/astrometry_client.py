"""
Astrometry.net API client.

The nova API takes its parameters as a JSON document in the ``request-json``
form field and answers with JSON status documents.
"""

import asyncio
import json
import time
from typing import List, Optional, Dict, Any
import httpx
from pydantic import ValidationError
from .models import Annotation, Calibration
from .config import settings
from .logging import get_logger
from .performance_monitor import performance_monitor

USER_AGENT = "Mozilla/5.0 (compatible; Skymmich/1.0)"


class AstrometryAPIError(Exception):
    """Custom exception for Astrometry.net API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AstrometryClient:
    """Async client for the nova.astrometry.net JSON API."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.astrometry_base_url).rstrip("/")
        self.logger = get_logger("astrometry_client")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.upload_timeout = upload_timeout if upload_timeout is not None else settings.upload_timeout
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.retry_delay

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
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
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic."""
        request_start = time.time()
        extra = {"timeout": timeout} if timeout is not None else {}

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=endpoint,
                    data=data,
                    files=files,
                    **extra,
                )
                response.raise_for_status()

                performance_monitor.record_api_call("astrometry", time.time() - request_start)
                return response

            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < self.max_retries:
                    self.logger.warning(
                        f"⚠️  Astrometry.net server error {e.response.status_code}, retrying "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff
                    continue
                performance_monitor.record_api_error("astrometry")
                if e.response.status_code != 404:
                    self.logger.error(f"❌ HTTP {method} {endpoint} failed: {e.response.status_code}")
                raise AstrometryAPIError(
                    f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                    status_code=e.response.status_code,
                )

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    self.logger.warning(
                        f"Request error, retrying (attempt {attempt + 1}/{self.max_retries}): {e}"
                    )
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                    continue
                performance_monitor.record_api_error("astrometry")
                self.logger.error(f"❌ Request failed: {str(e)}")
                raise AstrometryAPIError(f"Request failed: {e}")

    async def _get_json(self, endpoint: str, allow_text: bool = False) -> Any:
        response = await self._make_request("GET", endpoint)
        try:
            return response.json()
        except ValueError:
            if allow_text:
                return response.text
            raise AstrometryAPIError(
                f"Unexpected non-JSON response from {endpoint}: {response.text[:200]}"
            )

    async def _get_document(self, endpoint: str) -> Dict[str, Any]:
        """GET a JSON object; anything else is reported as an API error."""
        data = await self._get_json(endpoint)
        if not isinstance(data, dict):
            raise AstrometryAPIError(f"Unexpected response from {endpoint}: expected an object")
        return data

    # ── Session and upload ────────────────────────────────────────────────
    async def login(self, api_key: Optional[str] = None) -> str:
        """Exchange the API key for a session key."""
        key = api_key or self.api_key
        if not key:
            raise AstrometryAPIError("Astrometry.net API key not configured")

        response = await self._make_request(
            "POST", "/api/login", data={"request-json": json.dumps({"apikey": key})}
        )
        body = response.json()
        if body.get("status") != "success":
            raise AstrometryAPIError(
                f"Failed to authenticate with Astrometry.net: {body.get('errormessage', 'unknown error')}"
            )
        return body["session"]

    async def upload(self, session: str, image: bytes, filename: str, content_type: str = "image/jpeg") -> str:
        """Upload an image file and return the submission id."""
        response = await self._make_request(
            "POST",
            "/api/upload",
            data={"request-json": json.dumps({"session": session, "apikey": self.api_key})},
            files={"file": (filename, image, content_type)},
            timeout=self.upload_timeout,
        )
        body = response.json()
        if body.get("status") != "success":
            raise AstrometryAPIError(
                f"Failed to submit image to Astrometry.net: {body.get('errormessage', 'unknown error')}"
            )
        return str(body["subid"])

    # ── Status ────────────────────────────────────────────────────────────
    async def get_submission(self, submission_id: str) -> Dict[str, Any]:
        """Submission status with ``jobs`` and ``job_calibrations`` lists."""
        return await self._get_document(f"/api/submissions/{submission_id}")

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        return await self._get_document(f"/api/jobs/{job_id}")

    # ── Results ───────────────────────────────────────────────────────────
    async def get_calibration(self, job_id: str) -> Calibration:
        data = await self._get_document(f"/api/jobs/{job_id}/calibration")
        try:
            return Calibration.model_validate(data)
        except ValidationError as e:
            raise AstrometryAPIError(f"Invalid calibration for job {job_id}: {e.error_count()} field error(s)")

    async def get_annotations(self, job_id: str) -> List[Annotation]:
        data = await self._get_json(f"/api/jobs/{job_id}/annotations")
        try:
            return normalize_annotations(data)
        except ValidationError as e:
            raise AstrometryAPIError(f"Invalid annotations for job {job_id}: {e.error_count()} field error(s)")

    async def get_machine_tags(self, job_id: str) -> List[str]:
        # Some deployments answer with a bare comma-separated list
        data = await self._get_json(f"/api/jobs/{job_id}/machine_tags/", allow_text=True)
        return normalize_machine_tags(data)

    async def test_connection(self, api_key: Optional[str] = None) -> bool:
        """True when the key logs in."""
        await self.login(api_key)
        return True


def normalize_annotations(data: Any) -> List[Annotation]:
    """Accept a bare list or the ``{"annotations": [...]}`` envelope."""
    if isinstance(data, dict):
        data = next((value for value in data.values() if isinstance(value, list)), [])
    if not isinstance(data, list):
        return []

    annotations = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        item = dict(raw)
        for key in ("ra", "dec"):
            item[key] = _to_float(item.get(key))
        # Some payloads use pixel_x/pixel_y
        if item.get("pixelx") is None and "pixel_x" in item:
            item["pixelx"] = item.pop("pixel_x")
        if item.get("pixely") is None and "pixel_y" in item:
            item["pixely"] = item.pop("pixel_y")
        annotations.append(Annotation.model_validate(item))
    return annotations


def normalize_machine_tags(data: Any) -> List[str]:
    """Machine tags arrive as a list, a comma-separated string or ``{"tags": [...]}``."""
    if isinstance(data, list):
        return [str(tag) for tag in data]
    if isinstance(data, str):
        return [tag.strip() for tag in data.split(",") if tag.strip()]
    if isinstance(data, dict) and isinstance(data.get("tags"), list):
        return [str(tag) for tag in data["tags"]]
    return []


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
