import asyncio
import base64
import contextlib
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from tenacity import wait_fixed

from orchestrator.errors import AssetUploadError
from orchestrator.image_service import (
    SupabaseAssetStore,
    decode_data_uri,
    detect_image_type,
    download_image,
    force_https,
    validate_image_type_from_magic_bytes,
)
from orchestrator.providers.base import ImageRef

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 200


@pytest.mark.asyncio
async def test_download_image_success(httpx_mock):
    """Test successful image download"""
    # Given: A URL and mock response
    test_url = "https://example.com/image.jpg"
    httpx_mock.add_response(url=test_url, content=PNG)

    # When: We download the image
    result = await download_image(test_url)

    # Then: Should return the image bytes
    assert result == PNG


@pytest.mark.asyncio
async def test_download_image_rejects_oversized_content_length(httpx_mock):
    """Test that a Content-Length over the limit aborts without retrying"""
    test_url = "https://example.com/huge.jpg"
    httpx_mock.add_response(url=test_url, content=b"x", headers={"Content-Length": str(200 * 1024 * 1024)})

    with pytest.raises(ValueError, match="too large"):
        await download_image(test_url)


def test_magic_bytes_detection():
    assert detect_image_type(PNG) == "image/png"
    assert detect_image_type(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
    assert detect_image_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert detect_image_type(b"<html>error</html>") is None


def test_validate_rejects_non_images():
    with pytest.raises(ValueError, match="Invalid image file"):
        validate_image_type_from_magic_bytes(b"%PDF-1.4")


def test_decode_data_uri():
    uri = "data:image/png;base64," + base64.b64encode(PNG).decode()

    assert decode_data_uri(uri) == PNG


def test_force_https():
    assert force_https("http://bucket.supabase.co/a.png") == "https://bucket.supabase.co/a.png"
    assert force_https("https://bucket.supabase.co/a.png") == "https://bucket.supabase.co/a.png"


@pytest.mark.asyncio
async def test_upload_bytes_to_supabase():
    """
    Verify raw image bytes are stored under a unique name and the public URL is returned over https.
    Why: Produced images must be served from our own storage, not from the backend's expiring URL.
    """
    bucket = MagicMock()
    bucket.get_public_url.return_value = "http://project.supabase.co/storage/v1/object/public/generated/x.png"
    client = MagicMock()
    client.storage.from_.return_value = bucket

    url = await SupabaseAssetStore("generated", client=client).upload(ImageRef(data=PNG))

    assert url.startswith("https://project.supabase.co/")
    client.storage.from_.assert_called_with("generated")
    upload_kwargs = bucket.upload.call_args.kwargs
    assert upload_kwargs["path"].endswith(".png")
    assert upload_kwargs["file"] == PNG
    assert upload_kwargs["file_options"]["content-type"] == "image/png"


@pytest.mark.asyncio
async def test_upload_downloads_url_first():
    bucket = MagicMock()
    bucket.get_public_url.return_value = "https://project.supabase.co/x.png"
    client = MagicMock()
    client.storage.from_.return_value = bucket

    with patch("orchestrator.image_service.download_image", AsyncMock(return_value=PNG)) as mock_download:
        await SupabaseAssetStore("generated", client=client).upload(ImageRef(url="https://minimax.example.com/out.png"))

    mock_download.assert_awaited_once_with("https://minimax.example.com/out.png")
    assert bucket.upload.call_args.kwargs["file"] == PNG


@pytest.mark.asyncio
async def test_upload_rejects_non_image_payload():
    client = MagicMock()

    with pytest.raises(AssetUploadError, match="Generated image rejected"):
        await SupabaseAssetStore("generated", client=client).upload(b"<html>not an image</html>")
    client.storage.from_.assert_not_called()


@pytest.mark.asyncio
async def test_upload_retry_keeps_event_loop_responsive():
    """
    Verify retrying a failed storage upload never stalls the event loop.
    Why: A blocking backoff would freeze every other in-flight generation.
    """
    bucket = MagicMock()
    bucket.upload.side_effect = [RuntimeError("503 Service Unavailable"), RuntimeError("503 Service Unavailable"), None]
    bucket.get_public_url.return_value = "https://project.supabase.co/x.png"
    client = MagicMock()
    client.storage.from_.return_value = bucket
    gaps = []

    async def ticker():
        last = time.monotonic()
        while True:
            await asyncio.sleep(0.05)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    try:
        with patch.object(SupabaseAssetStore._store.retry, "wait", wait_fixed(0.3)):
            url = await SupabaseAssetStore("generated", client=client).upload(ImageRef(data=PNG))
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    assert url == "https://project.supabase.co/x.png"
    assert bucket.upload.call_count == 3
    assert gaps
    assert max(gaps) < 0.25


@pytest.mark.asyncio
async def test_upload_gives_up_after_three_attempts():
    bucket = MagicMock()
    bucket.upload.side_effect = RuntimeError("bucket not found")
    client = MagicMock()
    client.storage.from_.return_value = bucket

    with patch.object(SupabaseAssetStore._store.retry, "wait", wait_fixed(0)):
        with pytest.raises(AssetUploadError, match="Failed to upload"):
            await SupabaseAssetStore("generated", client=client).upload(ImageRef(data=PNG))
    assert bucket.upload.call_count == 3
