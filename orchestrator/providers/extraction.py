"""
Image extraction from heterogeneous backend responses.

Shapes are tried in a fixed order:
1. inline_data / inlineData parts (Gemini generateContent)
2. a generic "data" string long enough to be an image payload
3. element [0] of an array (payload itself, or data / images / image_urls / output)
4. a url / image / file / result string field
"""

from typing import Any, Optional

from orchestrator.errors import ContentBlockedError, ImageExtractionError
from orchestrator.providers.base import ImageRef

MIN_INLINE_PAYLOAD_CHARS = 1000
BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "SPII"}
ARRAY_FIELDS = ("data", "images", "image_urls", "output", "artifacts", "predictions")
STRING_FIELDS = ("url", "image", "file", "result")
CHECKED_SHAPES = "inline_data/inlineData, data(base64), array[0], url/image/file/result"


def raise_if_blocked(payload: Any) -> None:
    """Raises ContentBlockedError when the response is a safety refusal rather than an image."""
    if not isinstance(payload, dict):
        return

    feedback = payload.get("promptFeedback") or {}
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        raise ContentBlockedError()

    candidates = payload.get("candidates") or []
    if candidates and isinstance(candidates[0], dict):
        finish_reason = candidates[0].get("finishReason")
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise ContentBlockedError()


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def _candidate_parts(payload: dict) -> list:
    parts = []
    for candidate in payload.get("candidates") or []:
        if isinstance(candidate, dict):
            content = candidate.get("content") or {}
            parts.extend(content.get("parts") or [])
    parts.extend(payload.get("parts") or [])
    return [part for part in parts if isinstance(part, dict)]


def _from_inline_parts(parts: list) -> Optional[ImageRef]:
    for part in parts:
        inline = part.get("inline_data") or part.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            mime_type = inline.get("mime_type") or inline.get("mimeType") or "image/png"
            return ImageRef.from_base64(inline["data"], mime_type)
    return None


def _from_long_data(container: dict) -> Optional[ImageRef]:
    data = container.get("data")
    if isinstance(data, str) and len(data) >= MIN_INLINE_PAYLOAD_CHARS:
        return ImageRef.from_base64(data)
    return None


def _from_element(element: Any) -> Optional[ImageRef]:
    if _is_url(element):
        return ImageRef(url=element)
    if isinstance(element, str) and element.startswith("data:"):
        return ImageRef.from_base64(element)
    if isinstance(element, dict):
        for key in ("b64_json", "base64", "bytesBase64Encoded"):
            if isinstance(element.get(key), str) and element[key]:
                return ImageRef.from_base64(element[key], element.get("mimeType") or "image/png")
        for key in ("url", "imageUri", "image_url"):
            if _is_url(element.get(key)):
                return ImageRef(url=element[key])
    return None


def _from_first_element(payload: Any) -> Optional[ImageRef]:
    if isinstance(payload, list):
        return _from_element(payload[0]) if payload else None
    for key in ARRAY_FIELDS:
        value = payload.get(key)
        if isinstance(value, list) and value:
            found = _from_element(value[0])
            if found:
                return found
        if isinstance(value, dict):
            found = _from_first_element(value)
            if found:
                return found
    return None


def _from_string_field(container: dict) -> Optional[ImageRef]:
    for key in STRING_FIELDS:
        value = container.get(key)
        if _is_url(value):
            return ImageRef(url=value)
        if isinstance(value, str) and value.startswith("data:"):
            return ImageRef.from_base64(value)
    return None


def extract_image(payload: Any, label: str = "Provider") -> ImageRef:
    """
    Finds the generated image in a backend response.

    Raises:
        ContentBlockedError: If the response is a safety refusal
        ImageExtractionError: If none of the known shapes carries an image
    """
    if isinstance(payload, str):
        if _is_url(payload):
            return ImageRef(url=payload)
        if payload.startswith("data:"):
            return ImageRef.from_base64(payload)

    if isinstance(payload, dict):
        raise_if_blocked(payload)
        parts = _candidate_parts(payload)
        found = _from_inline_parts(parts)
        if found:
            return found
        for container in [payload, *parts]:
            found = _from_long_data(container)
            if found:
                return found

    if isinstance(payload, (dict, list)):
        found = _from_first_element(payload)
        if found:
            return found

    if isinstance(payload, dict):
        nested = payload.get("data")
        for container in (payload, nested if isinstance(nested, dict) else {}):
            found = _from_string_field(container)
            if found:
                return found

    raise ImageExtractionError(f"{label}: no image found in response (checked {CHECKED_SHAPES})")
