"""Shared contract for every provider adapter."""

import asyncio
import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from orchestrator.errors import ImageExtractionError, ProviderCallError

logger = logging.getLogger(__name__)

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))
ERROR_TEXT_LIMIT = 200

Sleep = Callable[[float], Awaitable[None]]


class ProviderFamily(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    STABILITY = "stability"
    MINIMAX = "minimax"
    REPLICATE = "replicate"
    FAL = "fal"

    @classmethod
    def parse(cls, provider: str) -> "ProviderFamily":
        try:
            return cls((provider or "").strip().lower())
        except ValueError:
            raise ValueError(f"Unknown provider family: {provider!r}") from None


@dataclass
class Credentials:
    api_key: str
    model: Optional[str] = None
    endpoint: Optional[str] = None
    params: dict = field(default_factory=dict)


@dataclass
class ProviderRequest:
    """The uniform request every adapter translates into its wire protocol."""
    prompt: str
    credentials: Credentials
    negative_prompt: str = ""
    reference_images: list = field(default_factory=list)
    aspect_ratio: str = "1:1"
    quality: str = "HD"
    strength: float = 0.35

    @property
    def is_image_to_image(self) -> bool:
        return len(self.reference_images) > 0


@dataclass
class ImageRef:
    """A produced image: either a fetchable URL or raw bytes, never both."""
    url: Optional[str] = None
    data: Optional[bytes] = None
    content_type: str = "image/png"

    @classmethod
    def from_base64(cls, payload: str, content_type: str = "image/png") -> "ImageRef":
        if payload.startswith("data:"):
            header, _, payload = payload.partition(",")
            content_type = header[5:].split(";")[0] or content_type
        try:
            data = base64.b64decode("".join(payload.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ImageExtractionError(f"Invalid base64 image payload: {e}") from e
        if not data:
            raise ImageExtractionError("Invalid base64 image payload: empty")
        return cls(data=data, content_type=content_type)

    def describe(self) -> str:
        if self.url:
            return f"url({self.url[:80]})"
        return f"bytes({len(self.data or b'')}, {self.content_type})"


def describe_error_body(error_text: str) -> str:
    """
    Turns a backend error body into a human-readable message.

    Structured shapes are tried first ({"error": "..."}, {"error": {"message"}},
    {"error": {"status"}}, {"error": {"details": [{"message"}]}}, {"message"},
    {"base_resp": {"status_msg"}}); anything else falls back to the raw text
    truncated to ERROR_TEXT_LIMIT characters.
    """
    try:
        error_json = json.loads(error_text)
    except (TypeError, ValueError):
        return (error_text or "API Error")[:ERROR_TEXT_LIMIT]

    if not isinstance(error_json, dict):
        return error_text[:ERROR_TEXT_LIMIT]

    error = error_json.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        if error.get("message"):
            return str(error["message"])
        if error.get("status"):
            return str(error["status"])
        details = error.get("details")
        if isinstance(details, list) and details and isinstance(details[0], dict) and details[0].get("message"):
            return str(details[0]["message"])
        return json.dumps(error)[:ERROR_TEXT_LIMIT]
    if error_json.get("message"):
        return str(error_json["message"])
    base_resp = error_json.get("base_resp")
    if isinstance(base_resp, dict) and base_resp.get("status_msg"):
        return str(base_resp["status_msg"])
    return error_text[:ERROR_TEXT_LIMIT]


async def drain_stream(response: httpx.Response) -> bytes:
    """Reads a streamed response body completely into memory."""
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
    return bytes(buffer)


class ProviderAdapter:
    """
    Base class for one provider family.

    Subclasses implement generate(); the helpers here give every adapter the
    same timeout, error classification and HTTP client handling.
    """
    family: ProviderFamily
    label = "Provider"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, sleep: Sleep = asyncio.sleep):
        self._http_client = http_client
        self._sleep = sleep

    async def generate(self, request: ProviderRequest) -> ImageRef:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS, follow_redirects=True)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Sends one request and turns transport errors and non-2xx replies into ProviderCallError."""
        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, **kwargs)
            else:
                async with self._client() as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderCallError(f"{self.label}: request timed out ({e.__class__.__name__})") from e
        except httpx.HTTPError as e:
            raise ProviderCallError(f"{self.label}: {e.__class__.__name__}: {e}") from e

        if response.is_error:
            message = describe_error_body(response.text)
            logger.error("%s returned HTTP %s: %s", self.label, response.status_code, message)
            self._raise_for_error_body(response, message)
            raise ProviderCallError(f"{self.label}: HTTP {response.status_code} - {message}")
        return response

    def _raise_for_error_body(self, response: httpx.Response, message: str) -> None:
        """Hook for adapters that recognise safety refusals inside error bodies."""

    @staticmethod
    def _json(response: httpx.Response, label: str) -> dict:
        """Parses a reply body that must be a JSON object."""
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderCallError(f"{label}: response was not JSON ({response.text[:ERROR_TEXT_LIMIT]})") from e
        if not isinstance(data, dict):
            raise ProviderCallError(f"{label}: expected a JSON object, got {type(data).__name__} "
                                    f"({response.text[:ERROR_TEXT_LIMIT]})")
        return data
