import asyncio
import base64
import logging
import os
import uuid
from typing import Optional, Protocol, Union

import httpx
from dotenv import load_dotenv
from supabase import Client, create_client
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from orchestrator.errors import AssetUploadError
from orchestrator.providers.base import ImageRef

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE_BYTES = 100 * 1024 * 1024  # 100MB limit for downloads
MIN_IMAGE_SIZE_BYTES = 100  # anything smaller is an error page, not an image
DOWNLOAD_CHUNK_SIZE_BYTES = 8192
DOWNLOAD_TIMEOUT_SECONDS = 30.0

# Magic bytes for file type detection (first bytes of the file)
# Link: https://www.ease.ws/forensics/fileCarving/fileSignatures.html
MAGIC_BYTES = {
    "image/jpeg": [
        bytes([0xFF, 0xD8, 0xFF])
    ],
    "image/png": [
        bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A])
    ],
    "image/gif": [
        b"GIF87a",
        b"GIF89a"
    ],
}

FILE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

load_dotenv()
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")
STORAGE_BUCKET_NAME = os.getenv("STORAGE_BUCKET_NAME", "generated_images")


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_not_exception_type(ValueError),
    reraise=True
)
async def download_image(image_url: str) -> bytes:
    """
    Downloads an image with streaming size protection and automatic retry.

    The body is read in chunks and the download is aborted as soon as it
    passes MAX_IMAGE_SIZE_BYTES, whatever Content-Length claimed.

    Args:
        image_url: URL of the image to download
    Returns:
        bytes: Raw image data
    Raises:
        ValueError: Image too large (not retried)
        httpx.HTTPError: Network or status failure after retries
    """
    headers = {
        "User-Agent": "ImageOrchestrator/1.0"
    }

    async with httpx.AsyncClient(
        timeout=DOWNLOAD_TIMEOUT_SECONDS,
        follow_redirects=True,
        headers=headers
    ) as http_client:
        async with http_client.stream("GET", image_url) as response:
            response.raise_for_status()

            content_length = response.headers.get("Content-Length")
            if content_length and int(content_length) > MAX_IMAGE_SIZE_BYTES:
                raise ValueError(
                    f"Image too large ({int(content_length)} bytes). "
                    f"Maximum allowed: {MAX_IMAGE_SIZE_BYTES} bytes."
                )

            downloaded_data = bytearray()
            async for chunk in response.aiter_bytes(chunk_size=DOWNLOAD_CHUNK_SIZE_BYTES):
                downloaded_data.extend(chunk)

                if len(downloaded_data) > MAX_IMAGE_SIZE_BYTES:
                    raise ValueError(
                        f"Download aborted: Image exceeded {MAX_IMAGE_SIZE_BYTES} bytes."
                    )

            return bytes(downloaded_data)


def detect_image_type(file_content: bytes) -> Optional[str]:
    """Returns the MIME type implied by the file's magic bytes, or None."""
    for mime_type, signatures in MAGIC_BYTES.items():
        for signature in signatures:
            if file_content.startswith(signature):
                return mime_type
    # WebP is RIFF....WEBP
    if file_content[:4] == b"RIFF" and file_content[8:12] == b"WEBP":
        return "image/webp"
    return None


def validate_image_type_from_magic_bytes(file_content: bytes) -> str:
    """
    Detects the actual image type by reading the file's magic bytes.

    Raises:
        ValueError: If the bytes are not a JPEG, PNG, GIF or WebP image
    """
    mime_type = detect_image_type(file_content)
    if mime_type is None:
        raise ValueError(
            "Invalid image file. Only JPEG, PNG, GIF and WebP images are allowed. "
            "The file does not have a valid image signature."
        )
    return mime_type


def decode_data_uri(data_uri: str) -> bytes:
    """Decodes a data:image/...;base64,... URI (or bare base64) into bytes."""
    _, _, payload = data_uri.partition("base64,")
    try:
        return base64.b64decode(payload or data_uri)
    except ValueError as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e


async def load_image_bytes(source: str) -> bytes:
    """Resolves a reference image given as a URL or data URI into raw bytes."""
    if source.startswith("data:"):
        return decode_data_uri(source)
    return await download_image(source)


class AssetStore(Protocol):
    async def upload(self, image: Union[ImageRef, bytes, str]) -> str:
        ...


class SupabaseAssetStore:
    """
    Uploads produced images to Supabase Storage and returns the public URL.

    Backend result URLs usually expire (MiniMax URLs last 24h), so URLs are
    downloaded and re-hosted rather than passed through.
    """

    def __init__(self, bucket_name: str = STORAGE_BUCKET_NAME, client: Optional[Client] = None):
        self.bucket_name = bucket_name
        self._client = client

    def _supabase(self) -> Client:
        if self._client is None:
            if not SUPABASE_URL or not SUPABASE_KEY:
                raise AssetUploadError("Missing SUPABASE_URL or SUPABASE_KEY; asset storage is not configured")
            self._client = create_client(SUPABASE_URL, SUPABASE_KEY)
        return self._client

    async def upload(self, image: Union[ImageRef, bytes, str]) -> str:
        try:
            image_bytes = await self._resolve_bytes(image)
            content_type = validate_image_type_from_magic_bytes(image_bytes)
        except ValueError as e:
            raise AssetUploadError(f"Generated image rejected: {e}") from e
        except httpx.HTTPError as e:
            raise AssetUploadError(f"Could not download generated image: {e}") from e

        try:
            return await self._store(image_bytes, content_type)
        except AssetUploadError:
            raise
        except Exception as e:
            logger.error("Supabase upload error: %s", e)
            raise AssetUploadError("Failed to upload generated image to storage.") from e

    async def _resolve_bytes(self, image: Union[ImageRef, bytes, str]) -> bytes:
        if isinstance(image, ImageRef):
            if image.data is not None:
                return image.data
            image = image.url
        if isinstance(image, bytes):
            return image
        return await load_image_bytes(image)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10),
           retry=retry_if_not_exception_type(AssetUploadError), reraise=True)
    async def _store(self, image_bytes: bytes, content_type: str) -> str:
        """Retried upload; the supabase client blocks, so it runs in a worker thread."""
        return await asyncio.to_thread(self._put, image_bytes, content_type)

    def _put(self, image_bytes: bytes, content_type: str) -> str:
        unique_filename = f"{uuid.uuid4()}.{FILE_EXTENSIONS.get(content_type, 'png')}"
        bucket = self._supabase().storage.from_(self.bucket_name)
        bucket.upload(
            path=unique_filename,
            file=image_bytes,
            file_options={
                "content-type": content_type,
                "upsert": "true"
            }
        )
        public_access_url = bucket.get_public_url(unique_filename)
        return force_https(public_access_url)


def force_https(url: str) -> str:
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url
