"""Object storage service backed by a Supabase Storage bucket."""

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import unquote, urlparse
from uuid import uuid4

import httpx

from src.models.job import utcnow
from src.utils.errors import SigningError, StorageServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedUrl:
    """A time-limited access URL minted for a permanent reference."""

    url: str
    valid_until: datetime


class StorageService:
    """
    Upload, sign and download media in the owned bucket.

    A permanent reference is the object's public-style URL
    (``<supabase>/storage/v1/object/public/<bucket>/<path>``). It never
    expires but is not directly readable when the bucket is private, so
    browsers and generation APIs are handed signed URLs instead.
    """

    def __init__(
        self,
        supabase_client: Any,
        bucket: str,
        supabase_url: str = "",
        signed_url_expiry_seconds: int = 7 * 24 * 60 * 60,
    ) -> None:
        self.supabase = supabase_client
        self.bucket = bucket
        self.signed_url_expiry_seconds = signed_url_expiry_seconds
        self._public_prefix = (
            f"{supabase_url.rstrip('/')}/storage/v1/object/public/{bucket}/" if supabase_url else ""
        )

    def _bucket(self) -> Any:
        return self.supabase.storage.from_(self.bucket)

    def is_owned(self, ref: str) -> bool:
        """Whether a reference points into the owned bucket."""
        if self._public_prefix:
            return ref.startswith(self._public_prefix)
        return f"/storage/v1/object/public/{self.bucket}/" in ref

    def object_path(self, ref: str) -> str:
        """Bucket-relative object path of an owned reference."""
        marker = f"/object/public/{self.bucket}/"
        path = urlparse(ref).path
        if marker not in path:
            raise StorageServiceError(f"Not an object in bucket {self.bucket}: {ref}")
        return unquote(path.split(marker, 1)[1])

    async def upload(
        self,
        data: bytes,
        content_type: str,
        folder: str = "uploads",
        filename: Optional[str] = None,
    ) -> str:
        """
        Store bytes and return the permanent reference.

        Raises:
            StorageServiceError: If upload fails
        """
        if not data:
            raise StorageServiceError("Refusing to upload an empty object")

        extension = mimetypes.guess_extension(content_type) or ""
        name = filename or f"{uuid4().hex}{extension}"
        path = f"{folder}/{utcnow():%Y-%m-%d}/{name}"

        try:
            self._bucket().upload(
                path=path,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
            public_url = self._bucket().get_public_url(path)
        except Exception as e:
            raise StorageServiceError(f"Failed to upload {path}: {e}")

        logger.info(f"Uploaded {len(data)} bytes to {path}")
        return public_url.rstrip("?")

    async def sign(self, ref: str) -> SignedUrl:
        """
        Mint a signed URL for a permanent reference.

        Raises:
            SigningError: If the storage service refuses or errors
        """
        path = self.object_path(ref)
        minted_at = utcnow()
        try:
            result = self._bucket().create_signed_url(path, self.signed_url_expiry_seconds)
        except Exception as e:
            raise SigningError(f"Failed to sign {path}: {e}")

        url = None
        if isinstance(result, dict):
            url = result.get("signedURL") or result.get("signedUrl")
        if not url:
            raise SigningError(f"No signed URL returned for {path}")

        return SignedUrl(
            url=url,
            valid_until=minted_at + timedelta(seconds=self.signed_url_expiry_seconds),
        )

    async def download_to_buffer(self, ref: str, timeout: float = 120.0) -> bytes:
        """
        Fetch the bytes behind any media reference.

        Owned references are read through the storage API; anything else
        (fal output, uploaded or library URLs on other hosts) over HTTP.

        Raises:
            StorageServiceError: If the reference cannot be read
        """
        if self.is_owned(ref):
            path = self.object_path(ref)
            try:
                data = self._bucket().download(path)
            except Exception as e:
                raise StorageServiceError(f"Failed to download {path}: {e}")
            if not data:
                raise StorageServiceError(f"Object {path} is empty")
            return data

        try:
            async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
                response = await client.get(ref)
        except httpx.HTTPError as e:
            raise StorageServiceError(f"HTTP error downloading {ref}: {e}")

        if response.status_code >= 300:
            raise StorageServiceError(f"Download of {ref} failed with {response.status_code}")
        if not response.content:
            raise StorageServiceError(f"Download of {ref} returned no data")
        return response.content
