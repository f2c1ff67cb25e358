import base64

import pytest

from orchestrator.errors import ContentBlockedError, ImageExtractionError
from orchestrator.providers.extraction import extract_image

PNG = b"\x89PNG\r\n\x1a\n" + b"\x01" * 900
PNG_B64 = base64.b64encode(PNG).decode()


def test_gemini_inline_data_part():
    payload = {"candidates": [{"content": {"parts": [
        {"text": "Here is your image"},
        {"inlineData": {"mimeType": "image/jpeg", "data": PNG_B64}},
    ]}}]}

    image = extract_image(payload)

    assert image.data == PNG
    assert image.content_type == "image/jpeg"


def test_long_data_string():
    payload = {"data": PNG_B64}

    assert extract_image(payload).data == PNG


def test_first_array_element_url():
    payload = {"data": [{"url": "https://cdn.example.com/a.png"}, {"url": "https://cdn.example.com/b.png"}]}

    assert extract_image(payload).url == "https://cdn.example.com/a.png"


def test_openai_b64_json():
    payload = {"created": 1, "data": [{"b64_json": PNG_B64}]}

    assert extract_image(payload).data == PNG


def test_nested_image_urls():
    payload = {"data": {"image_urls": ["https://cdn.example.com/minimax.png"]}}

    assert extract_image(payload).url == "https://cdn.example.com/minimax.png"


def test_string_field():
    payload = {"status": "ok", "result": "https://cdn.example.com/result.png"}

    assert extract_image(payload).url == "https://cdn.example.com/result.png"


def test_inline_parts_checked_before_url_fields():
    payload = {
        "url": "https://cdn.example.com/ignored.png",
        "candidates": [{"content": {"parts": [{"inline_data": {"data": PNG_B64}}]}}],
    }

    assert extract_image(payload).data == PNG


def test_safety_finish_reason_is_content_blocked():
    """
    Verify a SAFETY finish reason raises ContentBlockedError, not an extraction error.
    Why: Content blocks are never failed over; misclassifying them would retry a refused prompt.
    """
    payload = {"candidates": [{"finishReason": "SAFETY", "content": {"parts": []}}]}

    with pytest.raises(ContentBlockedError):
        extract_image(payload, "Gemini T2I")


def test_prompt_feedback_block():
    with pytest.raises(ContentBlockedError):
        extract_image({"promptFeedback": {"blockReason": "OTHER"}})


def test_no_image_lists_checked_shapes():
    with pytest.raises(ImageExtractionError, match="inline_data"):
        extract_image({"candidates": [{"content": {"parts": [{"text": "no image today"}]}}]}, "Gemini T2I")


@pytest.mark.parametrize("payload", [
    {"data": "A" * 1001},
    {"data": [{"b64_json": "not base64!"}]},
    "data:image/png;base64,AAAAA",
])
def test_undecodable_base64_is_extraction_error(payload):
    """
    Verify a malformed base64 payload raises ImageExtractionError, not a raw decode error.
    Why: Only typed errors reach failover and the {error, errorKind} response mapping.
    """
    with pytest.raises(ImageExtractionError, match="Invalid base64"):
        extract_image(payload)


def test_wrapped_base64_lines_are_decoded():
    wrapped = "\n".join(PNG_B64[i:i + 76] for i in range(0, len(PNG_B64), 76))

    assert extract_image({"data": [{"b64_json": wrapped}]}).data == PNG
