"""
MiniMax image generation: submit, then poll.

Some MiniMax deployments answer the submit call with the finished image,
so the submit reply is checked for a result before a task id is polled.
"""

import logging

from orchestrator.errors import ContentBlockedError, ImageExtractionError, ProviderCallError
from orchestrator.providers.base import ImageRef, ProviderAdapter, ProviderFamily, ProviderRequest
from orchestrator.providers.extraction import extract_image
from orchestrator.providers.polling import PollOutcome, poll_until_done, POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

MINIMAX_BASE_URL = "https://api.minimax.io/v1"
DEFAULT_MODEL = "image-01"
SUPPORTED_ASPECT_RATIOS = {"1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "21:9"}
SENSITIVE_CONTENT_CODES = {1026, 1027}
CHARACTER_REFERENCE_STRENGTH = 0.8
FACE_PRESERVATION_PREFIX = "Preserve the exact 100% same person's face, from the reference image. "

SUCCESS_STATUSES = {"success", "succeeded", "finished"}
FAILED_STATUSES = {"failed", "fail", "error"}


def _status_code(payload: dict):
    base_resp = payload.get("base_resp")
    if isinstance(base_resp, dict):
        return base_resp.get("status_code")
    return None


def _raise_for_base_resp(payload: dict, label: str) -> None:
    code = _status_code(payload)
    if code in (None, 0):
        return
    message = payload["base_resp"].get("status_msg") or f"status_code {code}"
    if code in SENSITIVE_CONTENT_CODES:
        raise ContentBlockedError()
    raise ProviderCallError(f"{label}: {message}")


class MiniMaxAdapter(ProviderAdapter):
    family = ProviderFamily.MINIMAX
    label = "MiniMax"

    def __init__(self, *args, poll_interval: float = POLL_INTERVAL_SECONDS,
                 max_polls: int = POLL_MAX_ATTEMPTS, **kwargs):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def generate(self, request: ProviderRequest) -> ImageRef:
        base_url = request.credentials.endpoint or MINIMAX_BASE_URL
        headers = {"Authorization": f"Bearer {request.credentials.api_key}"}

        body = {
            "model": request.credentials.model or DEFAULT_MODEL,
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio if request.aspect_ratio in SUPPORTED_ASPECT_RATIOS else "1:1",
            "response_format": "url",
            "n": 1,
        }
        if request.is_image_to_image:
            # First reference is the character to keep; the rest are style references
            body["subject_reference"] = [{
                "type": "character",
                "image_file": request.reference_images[0],
                "strength": CHARACTER_REFERENCE_STRENGTH,
            }] + [{"type": "style", "image_file": image} for image in request.reference_images[1:]]
            body["prompt"] = FACE_PRESERVATION_PREFIX + request.prompt

        response = await self._send("POST", f"{base_url}/image_generation", json=body, headers=headers)
        submit_data = self._json(response, self.label)
        _raise_for_base_resp(submit_data, f"{self.label} Submit")

        immediate = submit_data.get("data")
        if isinstance(immediate, dict) and immediate.get("image_urls"):
            logger.info("MiniMax: Image generated immediately")
            return ImageRef(url=immediate["image_urls"][0])

        task_id = submit_data.get("task_id") or submit_data.get("id")
        if not task_id:
            try:
                return extract_image(submit_data, self.label)
            except ImageExtractionError:
                raise ProviderCallError(f"MiniMax: No task_id or image in response - {str(submit_data)[:200]}")

        logger.info("MiniMax: Polling for task %s", task_id)

        async def check(attempt: int) -> PollOutcome:
            try:
                poll_response = await self._send("GET", f"{base_url}/images/{task_id}", headers=headers)
            except ProviderCallError as e:
                logger.warning("MiniMax Poll failed (attempt %d): %s", attempt + 1, e)
                return PollOutcome.pending(str(e))
            return self._classify(self._json(poll_response, self.label))

        return await poll_until_done(check, self.label, interval=self.poll_interval,
                                     max_attempts=self.max_polls, sleep=self._sleep)

    def _classify(self, poll_data: dict) -> PollOutcome:
        status = str(poll_data.get("status") or "").lower()

        if status in FAILED_STATUSES:
            return PollOutcome.failed(poll_data.get("message") or "Unknown error")
        if _status_code(poll_data) not in (None, 0):
            if _status_code(poll_data) in SENSITIVE_CONTENT_CODES:
                raise ContentBlockedError()
            return PollOutcome.failed(poll_data["base_resp"].get("status_msg") or "Unknown error")

        if status in SUCCESS_STATUSES:
            try:
                return PollOutcome.success(extract_image(poll_data, self.label))
            except ImageExtractionError:
                raise ProviderCallError(f"MiniMax: Success but no image URL - {str(poll_data)[:200]}")

        return PollOutcome.pending(status)
