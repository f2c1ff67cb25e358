"""
Replicate predictions API.

A prediction is created with "Prefer: wait" so fast models answer in the
submit call; otherwise the prediction is polled. Outputs are file URLs on
replicate.delivery which expire, so the file is streamed and drained into
bytes before it is handed on.
"""

import logging

import httpx

from orchestrator.errors import ImageExtractionError, ProviderCallError
from orchestrator.providers.base import ImageRef, ProviderAdapter, ProviderFamily, ProviderRequest, drain_stream
from orchestrator.providers.polling import (
    PollOutcome,
    PollState,
    poll_until_done,
    POLL_INTERVAL_SECONDS,
    POLL_MAX_ATTEMPTS,
)

logger = logging.getLogger(__name__)

REPLICATE_BASE_URL = "https://api.replicate.com/v1"
DEFAULT_MODEL = "stability-ai/sdxl:7762fd07cf82c948538e41f63f77d685e02b063e37e496e96eefd46c929f9bdc"
PREFER_WAIT_SECONDS = 30

DIMENSIONS_BY_ASPECT_RATIO = {
    "1:1": (768, 768),
    "16:9": (1024, 576),
    "9:16": (576, 1024),
    "4:3": (768, 576),
    "3:4": (576, 768),
    "3:2": (768, 512),
    "2:3": (512, 768),
    "21:9": (1344, 576),
    "9:21": (576, 1344),
}

PENDING_STATUSES = {"starting", "processing"}
FAILED_STATUSES = {"failed", "canceled"}


def first_output_url(output) -> str:
    """Replicate outputs are a URL, a list of URLs, or an object with a url field."""
    if isinstance(output, list):
        output = output[0] if output else None
    if isinstance(output, dict):
        output = output.get("url")
    if isinstance(output, str) and output.startswith(("http://", "https://", "data:")):
        return output
    raise ImageExtractionError("Replicate: No image URL in output")


class ReplicateAdapter(ProviderAdapter):
    family = ProviderFamily.REPLICATE
    label = "Replicate"

    def __init__(self, *args, poll_interval: float = POLL_INTERVAL_SECONDS,
                 max_polls: int = POLL_MAX_ATTEMPTS, **kwargs):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    def _build_input(self, request: ProviderRequest) -> dict:
        model_input = {"prompt": request.prompt or "A beautiful image"}
        if request.is_image_to_image:
            model_input["image"] = request.reference_images[0]
            model_input["prompt_strength"] = 1 - request.strength if request.strength is not None else 0.8
            model_input["num_inference_steps"] = 30
        else:
            width, height = DIMENSIONS_BY_ASPECT_RATIO.get(request.aspect_ratio, (768, 768))
            model_input.update({
                "width": width,
                "height": height,
                "num_outputs": 1,
                "guidance_scale": 7.5,
                "num_inference_steps": 50 if request.quality in ("UHD", "4K", "8K") else 25,
                "apply_watermark": False,
            })
        if request.negative_prompt:
            model_input["negative_prompt"] = request.negative_prompt
        model_input.update(request.credentials.params or {})
        return model_input

    def _prediction_target(self, request: ProviderRequest, base_url: str):
        """Pinned versions (owner/name:version) use /predictions; bare model names use the model route."""
        model = request.credentials.model or DEFAULT_MODEL
        if ":" in model:
            return f"{base_url}/predictions", {"version": model.split(":", 1)[1]}
        return f"{base_url}/models/{model}/predictions", {}

    async def generate(self, request: ProviderRequest) -> ImageRef:
        base_url = request.credentials.endpoint or REPLICATE_BASE_URL
        headers = {"Authorization": f"Bearer {request.credentials.api_key}"}
        url, body = self._prediction_target(request, base_url)
        body["input"] = self._build_input(request)

        response = await self._send(
            "POST", url, json=body,
            headers={**headers, "Prefer": f"wait={PREFER_WAIT_SECONDS}"},
        )
        prediction = self._json(response, self.label)
        outcome = self._classify(prediction)

        if outcome.state is PollState.SUCCESS:
            image = outcome.image
        elif outcome.state is PollState.FAILED:
            raise ProviderCallError(f"Replicate: Generation failed - {outcome.message}")
        else:
            prediction_url = (prediction.get("urls") or {}).get("get")
            if not prediction_url and prediction.get("id"):
                prediction_url = f"{base_url}/predictions/{prediction['id']}"
            if not prediction_url:
                raise ProviderCallError(f"Replicate: No prediction id in response - {str(prediction)[:200]}")

            async def check(attempt: int) -> PollOutcome:
                poll_response = await self._send("GET", prediction_url, headers=headers)
                return self._classify(self._json(poll_response, self.label))

            image = await poll_until_done(check, self.label, interval=self.poll_interval,
                                          max_attempts=self.max_polls, sleep=self._sleep)

        return await self._materialize(image, headers)

    def _classify(self, prediction: dict) -> PollOutcome:
        status = prediction.get("status")
        if status in PENDING_STATUSES:
            return PollOutcome.pending(status)
        if status in FAILED_STATUSES:
            return PollOutcome.failed(str(prediction.get("error") or status))
        if status == "succeeded":
            return PollOutcome.success(ImageRef(url=first_output_url(prediction.get("output"))))
        return PollOutcome.failed(f"unexpected status {status!r}")

    async def _materialize(self, image: ImageRef, headers: dict) -> ImageRef:
        """Streams the output file and drains it into bytes; the stream itself is never returned."""
        if image.url.startswith("data:"):
            return ImageRef.from_base64(image.url)

        try:
            if self._http_client is not None:
                image = await self._read_stream(self._http_client, image.url, headers)
            else:
                async with self._client() as client:
                    image = await self._read_stream(client, image.url, headers)
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Replicate: Failed to read output stream: {e}") from e

        if not image.data:
            raise ImageExtractionError("Replicate: Output stream was empty")
        logger.info("Replicate: drained %d bytes from output stream", len(image.data))
        return image

    @staticmethod
    async def _read_stream(client: httpx.AsyncClient, url: str, headers: dict) -> ImageRef:
        async with client.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            content_type = response.headers.get("content-type", "image/png").split(";")[0]
            return ImageRef(data=await drain_stream(response), content_type=content_type)
