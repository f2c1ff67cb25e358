"""
Google Gemini image generation (generateContent API).

Text-to-image sends only a text part; image-to-image adds each reference
image as an inline_data part. Both come back as inline base64 in the same
call.
"""

import base64
import logging

import httpx

from orchestrator.errors import ProviderCallError
from orchestrator.image_service import detect_image_type, load_image_bytes
from orchestrator.providers.base import ImageRef, ProviderAdapter, ProviderFamily, ProviderRequest
from orchestrator.providers.extraction import extract_image

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODEL = "gemini-2.5-flash-image"
MAX_REFERENCE_IMAGES = 14

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_ONLY_HIGH"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


class GeminiAdapter(ProviderAdapter):
    family = ProviderFamily.GEMINI
    label = "Gemini"

    async def generate(self, request: ProviderRequest) -> ImageRef:
        mode = "I2I" if request.is_image_to_image else "T2I"
        model = request.credentials.model or DEFAULT_MODEL
        url = f"{request.credentials.endpoint or GEMINI_BASE_URL}/{model}:generateContent"

        prompt = request.prompt
        if request.negative_prompt:
            prompt = f"{prompt}. Avoid: {request.negative_prompt}"

        parts = [{"text": prompt}]
        for reference in request.reference_images[:MAX_REFERENCE_IMAGES]:
            parts.append({"inline_data": await self._inline_part(reference)})

        body = {
            "contents": [{"parts": parts}],
            "safetySettings": SAFETY_SETTINGS,
            "generationConfig": {
                "responseModalities": ["IMAGE", "TEXT"],
                "imageConfig": {"aspectRatio": request.aspect_ratio},
            },
        }

        response = await self._send(
            "POST",
            url,
            json=body,
            headers={"x-goog-api-key": request.credentials.api_key},
        )
        data = self._json(response, self.label)
        logger.info("Gemini %s response keys: %s", mode, list(data.keys()))
        return extract_image(data, f"Gemini {mode}")

    async def _inline_part(self, reference: str) -> dict:
        """Builds an inline_data part from a data URI or a remote URL."""
        if reference.startswith("data:"):
            header, _, payload = reference.partition("base64,")
            mime_type = header[5:].rstrip(";") or "image/jpeg"
            return {"mime_type": mime_type, "data": payload}

        try:
            image_bytes = await load_image_bytes(reference)
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderCallError(f"Gemini I2I: Failed to fetch reference image: {e}") from e
        return {
            "mime_type": detect_image_type(image_bytes) or "image/jpeg",
            "data": base64.b64encode(image_bytes).decode("ascii"),
        }
