"""
Image store — re-hosts source product images in Supabase Storage.

Each image is downloaded from the source CDN, uploaded to the bucket and
recorded as a product_images row; one failed image never fails the product.
Version: 1.0.0
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from typing import List, Optional, Tuple

import httpx

from migration_hub.core.exceptions import ImageImportError, NonRetryableError
from migration_hub.db.base_store import BaseStore
from migration_hub.schemas.catalog import ImportedImage

logger = logging.getLogger("image_store")

MIN_IMAGE_BYTES = 100
DOWNLOAD_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; StoreMigration/1.0)",
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
}


@dataclass
class ImageResult:
    success: bool
    position: int
    source_url: str
    error: Optional[str] = None


class ImageStore(BaseStore):
    """Download / upload product images via Supabase Storage."""

    async def rehost_images(
        self, store_id: str, product_id: str, images: List[ImportedImage], batch_size: int = 5
    ) -> List[ImageResult]:
        """
        Re-host a product's images in batches.

        Existing product_images rows are replaced, so a re-import does not
        duplicate images. One image failing never fails the others.
        """
        await self._delete("product_images", filters={"product_id": product_id})
        results: List[ImageResult] = []
        for start in range(0, len(images), max(1, batch_size)):
            batch = images[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.upload_image_from_url(store_id, product_id, image) for image in batch),
                return_exceptions=True,
            )
            for image, outcome in zip(batch, outcomes):
                if isinstance(outcome, ImageImportError):
                    logger.info(
                        "image import failed product=%s url=%s detail=%s",
                        product_id, image.source_url, outcome,
                    )
                    results.append(ImageResult(False, image.position, image.source_url, str(outcome)))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(ImageResult(True, image.position, image.source_url))
        return results

    async def upload_image_from_url(
        self, store_id: str, product_id: str, image: ImportedImage
    ) -> str:
        """Re-host one image; returns its public URL."""
        if not image.source_url:
            raise ImageImportError("Image URL is required for upload")

        body, content_type = await self._download(image.source_url)
        extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".jpg"
        object_path = f"products/{store_id}/{product_id}/{image.position}{extension}"

        try:
            logger.info(
                "supabase storage upload bucket=%s path=%s size=%s",
                self._bucket, object_path, len(body),
            )
            self._client.storage.from_(self._bucket).upload(
                path=object_path,
                file=body,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as exc:
            logger.info("image upload error path=%s detail=%s", object_path, str(exc))
            raise ImageImportError(f"Image upload error: {exc}") from exc

        public_url = f"{self._storage_url}/object/public/{self._bucket}/{object_path}"
        try:
            await self._insert("product_images", [{
                "product_id": product_id,
                "url": public_url,
                "storage_path": object_path,
                "alt_text": image.alt_text,
                "position": image.position,
            }])
        except NonRetryableError as exc:
            raise ImageImportError(f"Image record rejected: {exc}") from exc
        return public_url

    async def _download(self, url: str) -> Tuple[bytes, str]:
        try:
            timeout = httpx.Timeout(30.0, connect=10.0)
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, http2=True) as client:
                response = await client.get(url, headers=DOWNLOAD_HEADERS)
        except httpx.RequestError as exc:
            raise ImageImportError(f"Image download error: {exc!r}") from exc

        if response.status_code >= 300:
            raise ImageImportError(f"Image download failed: HTTP {response.status_code}")

        content_type = response.headers.get("content-type") or "image/jpeg"
        body = response.content
        if not content_type.startswith("image/") or len(body) < MIN_IMAGE_BYTES:
            raise ImageImportError(
                f"Image download returned non-image content: {content_type} ({len(body)} bytes)"
            )
        return body, content_type
