import logging

import fal_client

from orchestrator.errors import ContentBlockedError, ProviderCallError
from orchestrator.providers.base import ImageRef, ProviderAdapter, ProviderFamily, ProviderRequest
from orchestrator.providers.extraction import extract_image
from orchestrator.providers.polling import PollOutcome, poll_until_done, POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MODEL = "fal-ai/flux/dev"
DEFAULT_EDIT_MODEL = "fal-ai/flux-pro/kontext"

# Parameter sets for each endpoint type
KONTEXT_PARAMS = {
    "guidance_scale", "num_images", "output_format",
    "safety_tolerance", "aspect_ratio", "enhance_prompt"
}

FLUX_PARAMS = {
    "image_size", "num_inference_steps", "guidance_scale", "num_images",
    "output_format", "enable_safety_checker", "negative_prompt"
}

IMAGE_SIZE_BY_ASPECT_RATIO = {
    "1:1": "square_hd",
    "4:3": "landscape_4_3",
    "3:2": "landscape_4_3",
    "16:9": "landscape_16_9",
    "21:9": "landscape_16_9",
    "3:4": "portrait_4_3",
    "2:3": "portrait_4_3",
    "9:16": "portrait_16_9",
    "9:21": "portrait_16_9",
}


def build_arguments(request: ProviderRequest, model_path: str) -> dict:
    """
    Builds the fal arguments for one endpoint.

    Kontext (editing) endpoints and plain FLUX endpoints accept different
    parameters; anything the endpoint doesn't know is dropped.
    """
    arguments = {"prompt": request.prompt}
    if request.is_image_to_image:
        arguments["image_url"] = request.reference_images[0]

    candidates = {
        "aspect_ratio": request.aspect_ratio,
        "image_size": IMAGE_SIZE_BY_ASPECT_RATIO.get(request.aspect_ratio, "square_hd"),
        "negative_prompt": request.negative_prompt or None,
        "num_images": 1,
        "num_inference_steps": 50 if request.quality in ("UHD", "4K", "8K") else 28,
        "output_format": "png",
        "enable_safety_checker": True,
    }
    candidates.update(request.credentials.params or {})

    allowed_params = KONTEXT_PARAMS if "kontext" in model_path else FLUX_PARAMS
    for key, value in candidates.items():
        if value is not None and key in allowed_params:
            arguments[key] = value
    return arguments


class FalAdapter(ProviderAdapter):
    """
    fal.ai queue API through fal_client.

    The job is submitted without blocking, its status polled with the shared
    state machine, and the result fetched once the queue reports Completed.
    """
    family = ProviderFamily.FAL
    label = "fal.ai"

    def __init__(self, *args, poll_interval: float = POLL_INTERVAL_SECONDS,
                 max_polls: int = POLL_MAX_ATTEMPTS, **kwargs):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def generate(self, request: ProviderRequest) -> ImageRef:
        default_model = DEFAULT_EDIT_MODEL if request.is_image_to_image else DEFAULT_TEXT_MODEL
        model_path = request.credentials.model or default_model
        arguments = build_arguments(request, model_path)

        client = fal_client.AsyncClient(key=request.credentials.api_key)
        try:
            handle = await client.submit(model_path, arguments=arguments)
        except Exception as e:
            raise ProviderCallError(f"fal.ai: Submit failed - {e}") from e

        logger.info("fal.ai: Polling request %s on %s", handle.request_id, model_path)

        async def check(attempt: int) -> PollOutcome:
            try:
                status = await handle.status()
            except Exception as e:
                logger.warning("fal.ai status check failed (attempt %d): %s", attempt + 1, e)
                return PollOutcome.pending(str(e))

            if isinstance(status, fal_client.Completed):
                error = getattr(status, "error", None)
                if error:
                    return PollOutcome.failed(str(error))
                try:
                    result = await handle.get()
                except Exception as e:
                    return PollOutcome.failed(str(e))
                if isinstance(result, dict) and result.get("has_nsfw_concepts") and any(result["has_nsfw_concepts"]):
                    raise ContentBlockedError()
                return PollOutcome.success(extract_image(result, self.label))
            return PollOutcome.pending(type(status).__name__)

        return await poll_until_done(check, self.label, interval=self.poll_interval,
                                     max_attempts=self.max_polls, sleep=self._sleep)
