"""
Image storage client — uploads a binary image and returns its public URL.

Targets a Cloudinary-compatible unsigned upload endpoint. Profiles and
products only ever store the returned URL.
"""

import logging

import httpx

from ..config import Settings
from ..errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)


class ImageStorage:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.upload_url = settings.storage_url
        self.upload_preset = settings.storage_upload_preset
        self.timeout = settings.http_timeout
        self._transport = transport

    async def upload(self, content: bytes, filename: str, content_type: str = "image/jpeg") -> str:
        if not content:
            raise ValidationError("image is empty")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.post(
                    self.upload_url,
                    data={"upload_preset": self.upload_preset},
                    files={"file": (filename, content, content_type)},
                )
                resp.raise_for_status()
                url = resp.json()["secure_url"]
            except httpx.HTTPError as e:
                logger.error("Image upload of %s failed: %s", filename, e)
                raise ExternalServiceError("image upload failed") from e
            except (KeyError, ValueError) as e:
                logger.error("Image upload of %s returned no URL", filename)
                raise ExternalServiceError("image upload returned no URL") from e

        logger.info("Uploaded %s to %s", filename, url)
        return url
