import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from orchestrator.errors import GenerationTimeoutError, ProviderCallError
from orchestrator.providers.base import ImageRef, Sleep

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "1"))
POLL_MAX_ATTEMPTS = int(os.getenv("POLL_MAX_ATTEMPTS", "60"))


class PollState(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class PollOutcome:
    state: PollState
    image: Optional[ImageRef] = None
    message: str = ""

    @classmethod
    def pending(cls, message: str = "") -> "PollOutcome":
        return cls(PollState.PENDING, message=message)

    @classmethod
    def success(cls, image: ImageRef) -> "PollOutcome":
        return cls(PollState.SUCCESS, image=image)

    @classmethod
    def failed(cls, message: str) -> "PollOutcome":
        return cls(PollState.FAILED, message=message)


async def poll_until_done(
    check: Callable[[int], Awaitable[PollOutcome]],
    label: str,
    interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int = POLL_MAX_ATTEMPTS,
    sleep: Sleep = asyncio.sleep,
) -> ImageRef:
    """
    Runs a submit-and-poll task to completion.

    Each attempt waits `interval` seconds then calls check(attempt), which
    classifies the backend's status reply. The machine moves
    PENDING -> SUCCESS | FAILED, and to TIMED_OUT once max_attempts checks
    have come back pending.

    Args:
        check: Coroutine classifying one poll reply
        label: Provider name used in messages
        interval: Seconds between polls
        max_attempts: Poll budget; caps total wall-clock time
        sleep: Injectable sleep, asyncio.sleep in production

    Returns:
        ImageRef: The image from the SUCCESS outcome

    Raises:
        ProviderCallError: On a FAILED outcome
        GenerationTimeoutError: When the budget runs out
    """
    state = PollState.PENDING
    for attempt in range(max_attempts):
        await sleep(interval)
        outcome = await check(attempt)
        state = outcome.state
        logger.debug("%s poll #%d: %s %s", label, attempt + 1, state.value, outcome.message)

        if state is PollState.SUCCESS:
            return outcome.image
        if state is PollState.FAILED:
            raise ProviderCallError(f"{label}: Generation failed - {outcome.message or 'Unknown error'}")

    state = PollState.TIMED_OUT
    logger.error("%s: %s after %d polls", label, state.value, max_attempts)
    raise GenerationTimeoutError(f"{label}: Timeout after {max_attempts} polls ({max_attempts * interval:.0f}s)")
