import re

MAX_ERROR_DETAIL_CHARS = 300

# Bearer tokens and ?key= query params can leak into backend error text
_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE),
    re.compile(r"([?&](?:api_)?key=)[^&\s\"']+", re.IGNORECASE),
]


def sanitize_detail(message: str, limit: int = MAX_ERROR_DETAIL_CHARS) -> str:
    """Redact credentials from a backend message and truncate it for the caller."""
    cleaned = message or ""
    for pattern in _SECRET_PATTERNS:
        cleaned = pattern.sub(r"\1[redacted]", cleaned)
    if len(cleaned) > limit:
        cleaned = cleaned[:limit] + "..."
    return cleaned


class OrchestratorError(Exception):
    """Base class for every error the generation pipeline surfaces."""
    error_kind = "internal"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {"error": sanitize_detail(self.message), "errorKind": self.error_kind}


class ValidationError(OrchestratorError):
    error_kind = "validation"
    http_status = 400


class NoActiveBackendError(OrchestratorError):
    error_kind = "no_active_backend"
    http_status = 503


class InsufficientBalanceError(OrchestratorError):
    error_kind = "insufficient_balance"
    http_status = 402

    def __init__(self, message: str, required_points: int = 0, available_points: int = 0):
        super().__init__(message)
        self.required_points = required_points
        self.available_points = available_points


class ProviderCallError(OrchestratorError):
    """Network or HTTP failure talking to a backend."""
    error_kind = "provider_call"
    http_status = 502


class ImageExtractionError(OrchestratorError):
    """Backend answered successfully but no image payload could be found."""
    error_kind = "image_extraction"
    http_status = 502


class ContentBlockedError(OrchestratorError):
    """Backend refused the request on safety grounds. Never failed over."""
    error_kind = "content_blocked"
    http_status = 422

    USER_MESSAGE = "Content was blocked by safety filters. Please try a different prompt."

    def __init__(self, message: str = USER_MESSAGE):
        super().__init__(message)


class GenerationTimeoutError(OrchestratorError, TimeoutError):
    """Poll budget exhausted before the backend finished."""
    error_kind = "timeout"
    http_status = 504


class AssetUploadError(OrchestratorError):
    error_kind = "asset_upload"
    http_status = 502


class SettlementStepError(OrchestratorError):
    """Post-generation bookkeeping failure. Logged, never returned to the caller."""
    error_kind = "settlement_step"

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


# Errors that the failover coordinator treats as infrastructure failures
FAILOVER_ELIGIBLE_ERRORS = (ProviderCallError, ImageExtractionError, GenerationTimeoutError)
