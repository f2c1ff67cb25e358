import logging

import httpx

from orchestrator.errors import ContentBlockedError
from orchestrator.providers.base import ImageRef, ProviderAdapter, ProviderFamily, ProviderRequest
from orchestrator.providers.extraction import extract_image

logger = logging.getLogger(__name__)

OPENAI_IMAGES_URL = "https://api.openai.com/v1/images/generations"
DEFAULT_MODEL = "dall-e-3"

SIZE_BY_ASPECT_RATIO = {
    "1:1": "1024x1024",
    "16:9": "1792x1024",
    "21:9": "1792x1024",
    "3:2": "1792x1024",
    "4:3": "1792x1024",
    "9:16": "1024x1792",
    "9:21": "1024x1792",
    "2:3": "1024x1792",
    "3:4": "1024x1792",
}


class OpenAIAdapter(ProviderAdapter):
    """DALL-E text-to-image. Reference images are not supported by this endpoint and are ignored."""
    family = ProviderFamily.OPENAI
    label = "OpenAI"

    async def generate(self, request: ProviderRequest) -> ImageRef:
        if request.is_image_to_image:
            logger.warning("OpenAI: ignoring %d reference image(s)", len(request.reference_images))

        headers = {"Authorization": f"Bearer {request.credentials.api_key}"}
        organization = request.credentials.params.get("organization_id")
        if organization:
            headers["OpenAI-Organization"] = organization

        body = {
            "model": request.credentials.model or DEFAULT_MODEL,
            "prompt": request.prompt,
            "n": 1,
            "size": SIZE_BY_ASPECT_RATIO.get(request.aspect_ratio, "1024x1024"),
            "quality": "standard" if request.quality == "SD" else "hd",
            "response_format": "b64_json",
        }

        response = await self._send(
            "POST",
            request.credentials.endpoint or OPENAI_IMAGES_URL,
            json=body,
            headers=headers,
        )
        return extract_image(self._json(response, self.label), self.label)

    def _raise_for_error_body(self, response: httpx.Response, message: str) -> None:
        try:
            body = response.json()
        except ValueError:
            return
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("code") == "content_policy_violation":
            raise ContentBlockedError()
