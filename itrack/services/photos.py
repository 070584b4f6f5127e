"""Attendance photos: camera capture, compression and the upload fallback chain.

Providers are tried strictly in the order the pipeline was built with
(see ``AppContext.build_photo_pipeline``):

1. HTTP upload mirrors, one provider per configured endpoint
2. AWS S3
3. Firebase Storage
4. A static placeholder image URL

Every provider has the same contract: ``upload(data, filename,
content_type)`` returns an ``UploadResult`` or raises. A result whose URL is
not a remote http(s) URL (an embedded ``data:`` URI, for instance) counts
as a failure of that provider, so nothing large ever reaches the database.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import cv2
import numpy as np
import requests
from firebase_admin import storage

from itrack.services.errors import UploadFailure, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WIDTH = 800
DEFAULT_JPEG_QUALITY = 80

EXTENSION_RE = re.compile(r"\.([A-Za-z0-9]{1,5})$")


class PhotoProviderError(Exception):
    pass


@dataclass
class UploadResult:
    url: str
    provider: str
    key: Optional[str] = None


class PhotoProvider(Protocol):
    name: str

    async def upload(self, data: bytes, filename: str, content_type: str) -> UploadResult: ...


def is_remote_url(url: Optional[str]) -> bool:
    return bool(url) and url.lower().startswith(("https://", "http://"))


def is_data_uri(url: Optional[str]) -> bool:
    return bool(url) and url.strip().lower().startswith("data:")


def object_name(suggested_name: Optional[str] = None) -> str:
    """Unique storage name; only the extension of the client's name survives."""
    match = EXTENSION_RE.search(suggested_name or "")
    ext = match.group(1).lower() if match else "jpg"
    return f"photo-{int(time.time() * 1000)}-{uuid.uuid4().hex}.{ext}"


def capture_still_frame(camera_index: int = 0, warmup_frames: int = 5) -> bytes:
    """Grab one JPEG frame from a live camera stream."""
    capture = cv2.VideoCapture(camera_index)
    try:
        if not capture.isOpened():
            raise ValidationError(f"Camera {camera_index} is not available")
        # Let auto exposure settle before keeping a frame.
        for _ in range(warmup_frames):
            capture.read()
        ok, frame = capture.read()
        if not ok or frame is None:
            raise ValidationError("Could not read a frame from the camera")
        ok, encoded = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, DEFAULT_JPEG_QUALITY])
        if not ok:
            raise ValidationError("Could not encode the captured frame")
        return encoded.tobytes()
    finally:
        capture.release()


def compress_image(data: bytes, max_width: int = DEFAULT_MAX_WIDTH, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Downscale to fit ``max_width`` on both sides and re-encode as JPEG.

    Undecodable input is returned unchanged.
    """
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        return data
    height, width = image.shape[:2]
    ratio = min(max_width / width, max_width / height)
    if ratio < 1:
        image = cv2.resize(image, (int(width * ratio), int(height * ratio)), interpolation=cv2.INTER_AREA)
    ok, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        return data
    compressed = encoded.tobytes()
    logger.info(f"Image compressed: {len(data)} -> {len(compressed)} bytes")
    return compressed


class HttpUploadProvider:
    """Upload to an HTTP file endpoint, raw body or multipart form data."""

    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 15.0):
        self.raw = endpoint.startswith("raw:")
        self.endpoint = endpoint[len("raw:"):] if self.raw else endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.name = f"http:{self.endpoint}"

    def _post_sync(self, data: bytes, filename: str, content_type: str) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        if self.raw:
            headers["Content-Type"] = content_type
            response = requests.post(self.endpoint, data=data, headers=headers, timeout=self.timeout)
        else:
            files = {"file": (filename, data, content_type)}
            response = requests.post(self.endpoint, files=files, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def upload(self, data: bytes, filename: str, content_type: str) -> UploadResult:
        try:
            result = await asyncio.to_thread(self._post_sync, data, filename, content_type)
        except (requests.RequestException, ValueError) as e:
            raise PhotoProviderError(f"{self.endpoint} failed: {e}") from e

        # Upload services disagree on the response shape.
        url = result.get("fileUrl") or result.get("url")
        if not url and result.get("filePath"):
            url = f"{self.endpoint.rstrip('/')}/{result['filePath'].lstrip('/')}"
        if not url:
            raise PhotoProviderError(f"{self.endpoint} returned no file URL")
        return UploadResult(url=url, provider=self.name, key=result.get("filePath") or result.get("fileId"))


class FirebaseStorageProvider:
    name = "firebase"

    def __init__(self, app, bucket_name: str = "", folder: str = "attendance-photos"):
        self._app = app
        self._bucket_name = bucket_name or None
        self.folder = folder

    def _upload_sync(self, path: str, data: bytes, content_type: str) -> str:
        blob = storage.bucket(self._bucket_name, app=self._app).blob(path)
        blob.upload_from_string(data, content_type=content_type)
        blob.make_public()
        return blob.public_url

    async def upload(self, data: bytes, filename: str, content_type: str) -> UploadResult:
        path = f"{self.folder}/{filename}"
        url = await asyncio.to_thread(self._upload_sync, path, data, content_type)
        return UploadResult(url=url, provider=self.name, key=path)


class PlaceholderProvider:
    """Last resort: a fixed image URL so the attendance flow never blocks."""

    name = "placeholder"

    def __init__(self, url: str):
        self.url = url

    async def upload(self, data: bytes, filename: str, content_type: str) -> UploadResult:
        return UploadResult(url=self.url, provider=self.name)


class PhotoPipeline:
    def __init__(self, providers: Sequence[PhotoProvider], compress_threshold_bytes: int = 500 * 1024):
        self.providers = list(providers)
        self.compress_threshold_bytes = compress_threshold_bytes

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self.providers]

    async def upload_photo(
        self,
        data: bytes,
        suggested_name: Optional[str] = None,
        content_type: str = "image/jpeg",
    ) -> UploadResult:
        if not data:
            raise ValidationError("Photo is required")
        filename = object_name(suggested_name)

        if len(data) > self.compress_threshold_bytes:
            logger.info(f"Image is {len(data) // 1024}KB, compressing...")
            data = await asyncio.to_thread(compress_image, data)
            content_type = "image/jpeg"
            filename = object_name()

        for provider in self.providers:
            try:
                result = await provider.upload(data, filename, content_type)
            except Exception as e:
                logger.warning(f"Photo provider {provider.name} failed: {e}")
                continue
            if not is_remote_url(result.url):
                logger.warning(f"Photo provider {provider.name} returned a non-remote URL; trying the next one")
                continue
            logger.info(f"Photo {filename} uploaded via {provider.name}")
            return result

        raise UploadFailure("Photo upload failed on every provider, try again")
