"""Durable storage for generated images (ImageKit upload API)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from .config import Settings
from .errors import AssetUploadError, ValidationError

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)


@dataclass
class UploadedAsset:
    url: str
    thumbnail_url: str = ""
    file_id: str = ""


def parse_data_uri(data_uri: str) -> tuple[str, str]:
    """Split a base64 data URI into ``(mime_type, base64_data)``."""
    match = DATA_URI_RE.match(data_uri or "")
    if not match:
        raise ValidationError("Invalid data URI.", code="INVALID_DATA_URI")
    return match.group(1), match.group(2)


def is_data_uri(value: str) -> bool:
    return bool(value) and value.startswith("data:")


class ImageKitAssetStore:
    def __init__(self, settings: Settings) -> None:
        self.private_key = settings.IMAGEKIT_PRIVATE_KEY
        self.upload_url = settings.IMAGEKIT_UPLOAD_URL
        self.folder = settings.IMAGEKIT_FOLDER
        self.timeout = settings.IMAGE_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.private_key and self.upload_url)

    async def upload_data_uri(
        self,
        data_uri: str,
        file_name: str,
        folder: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> UploadedAsset:
        if not self.configured:
            raise AssetUploadError("ImageKit is not configured.", status_code=503)

        mime_type, base64_data = parse_data_uri(data_uri)
        extension = mime_type.split("/")[-1] or "png"
        form = {
            "file": base64_data,
            "fileName": f"{file_name}.{extension}",
            "folder": folder or self.folder,
            "useUniqueFileName": "true",
        }
        if tags:
            form["tags"] = ",".join(tags)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.upload_url, data=form, auth=(self.private_key, ""))
        except httpx.HTTPError as exc:
            logger.warning("ImageKit upload failed: %s", exc)
            raise AssetUploadError("Image upload failed. Please retry.", details={"provider": "imagekit"}) from exc

        if resp.status_code >= 400:
            request_id = resp.headers.get("x-ik-requestid", "") if getattr(resp, "headers", None) else ""
            details = {"provider": "imagekit", "providerStatus": resp.status_code}
            if request_id:
                details["requestId"] = request_id
            raise AssetUploadError("Image upload failed. Please retry.", details=details)

        body = resp.json()
        if not body.get("url"):
            raise AssetUploadError("Image upload returned no URL.", details={"provider": "imagekit"})
        return UploadedAsset(body["url"], body.get("thumbnailUrl", ""), body.get("fileId", ""))
