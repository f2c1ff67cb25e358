"""
Stability AI (SDXL v1 REST API).

Text-to-image is plain JSON. Image-to-image must be multipart/form-data
with the reference image bytes uploaded as init_image, so the reference is
fetched first.
"""

import logging

import httpx

from orchestrator.errors import ContentBlockedError, ImageExtractionError, ProviderCallError
from orchestrator.image_service import FILE_EXTENSIONS, MIN_IMAGE_SIZE_BYTES, detect_image_type, load_image_bytes
from orchestrator.providers.base import ImageRef, ProviderAdapter, ProviderFamily, ProviderRequest

logger = logging.getLogger(__name__)

STABILITY_BASE_URL = "https://api.stability.ai/v1/generation"
DEFAULT_ENGINE = "stable-diffusion-xl-1024-v1-0"
DEFAULT_STRENGTH = 0.35

# SDXL 1.0 only accepts a fixed set of dimensions
DIMENSIONS_BY_ASPECT_RATIO = {
    "1:1": (1024, 1024),
    "16:9": (1344, 768),
    "9:16": (768, 1344),
    "4:3": (1152, 896),
    "3:4": (896, 1152),
    "3:2": (1216, 832),
    "2:3": (832, 1216),
    "21:9": (1536, 640),
    "9:21": (640, 1536),
}

HIGH_STEP_QUALITIES = {"UHD", "4K", "8K"}


class StabilityAdapter(ProviderAdapter):
    family = ProviderFamily.STABILITY
    label = "Stability"

    async def generate(self, request: ProviderRequest) -> ImageRef:
        if request.is_image_to_image:
            return await self._image_to_image(request)
        return await self._text_to_image(request)

    def _headers(self, request: ProviderRequest) -> dict:
        return {
            "Authorization": f"Bearer {request.credentials.api_key}",
            "Accept": "application/json",
        }

    def _engine_url(self, request: ProviderRequest, operation: str) -> str:
        engine = request.credentials.model or DEFAULT_ENGINE
        return f"{request.credentials.endpoint or STABILITY_BASE_URL}/{engine}/{operation}"

    async def _text_to_image(self, request: ProviderRequest) -> ImageRef:
        width, height = DIMENSIONS_BY_ASPECT_RATIO.get(request.aspect_ratio, (1024, 1024))
        text_prompts = [{"text": request.prompt, "weight": 1}]
        if request.negative_prompt:
            text_prompts.append({"text": request.negative_prompt, "weight": -1})

        body = {
            "text_prompts": text_prompts,
            "width": width,
            "height": height,
            "cfg_scale": 7,
            "samples": 1,
            "steps": 50 if request.quality in HIGH_STEP_QUALITIES else 30,
        }
        response = await self._send("POST", self._engine_url(request, "text-to-image"),
                                    json=body, headers=self._headers(request))
        return self._parse_artifacts(response, "Stability T2I")

    async def _image_to_image(self, request: ProviderRequest) -> ImageRef:
        reference = request.reference_images[0]
        try:
            image_bytes = await load_image_bytes(reference)
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderCallError(f"Stability I2I: Failed to fetch image: {e}") from e

        if len(image_bytes) < MIN_IMAGE_SIZE_BYTES:
            raise ProviderCallError("Stability I2I: Fetched image is too small (invalid)")

        content_type = detect_image_type(image_bytes) or "image/png"
        filename = f"input.{FILE_EXTENSIONS.get(content_type, 'png')}"
        logger.info("Stability I2I: uploading %d byte %s reference", len(image_bytes), content_type)

        strength = request.strength if request.strength is not None else DEFAULT_STRENGTH
        form = {
            "init_image_mode": "IMAGE_STRENGTH",
            "image_strength": str(strength),
            "text_prompts[0][text]": request.prompt,
            "text_prompts[0][weight]": "1",
            "cfg_scale": "7",
            "samples": "1",
            "steps": "30",
        }
        if request.negative_prompt:
            form["text_prompts[1][text]"] = request.negative_prompt
            form["text_prompts[1][weight]"] = "-1"

        # httpx generates the multipart boundary and Content-Type header
        response = await self._send(
            "POST",
            self._engine_url(request, "image-to-image"),
            data=form,
            files={"init_image": (filename, image_bytes, content_type)},
            headers=self._headers(request),
        )
        return self._parse_artifacts(response, "Stability I2I")

    def _parse_artifacts(self, response: httpx.Response, label: str) -> ImageRef:
        if response.headers.get("content-type", "").startswith("image/"):
            return ImageRef(data=response.content, content_type=response.headers["content-type"])

        data = self._json(response, label)
        artifacts = data.get("artifacts") or []
        if not artifacts:
            raise ImageExtractionError(f"{label}: No image in response")

        artifact = artifacts[0]
        if artifact.get("finishReason") == "CONTENT_FILTERED":
            raise ContentBlockedError()
        if not artifact.get("base64"):
            raise ImageExtractionError(f"{label}: No image in response")
        return ImageRef.from_base64(artifact["base64"], "image/png")
