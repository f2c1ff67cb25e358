import pytest

from orchestrator.errors import GenerationTimeoutError, ProviderCallError
from orchestrator.providers.base import ImageRef
from orchestrator.providers.polling import PollOutcome, poll_until_done


def scripted(*outcomes):
    calls = []

    async def check(attempt):
        calls.append(attempt)
        return outcomes[attempt]
    return check, calls


@pytest.mark.asyncio
async def test_poll_returns_image_on_success(instant_sleep):
    image = ImageRef(url="https://cdn.example.com/out.png")
    check, calls = scripted(PollOutcome.pending("queued"), PollOutcome.pending("running"), PollOutcome.success(image))

    result = await poll_until_done(check, "MiniMax", interval=1, max_attempts=5, sleep=instant_sleep)

    assert result is image
    assert calls == [0, 1, 2]


@pytest.mark.asyncio
async def test_poll_failed_raises_provider_error(instant_sleep):
    check, _ = scripted(PollOutcome.pending(), PollOutcome.failed("out of credits"))

    with pytest.raises(ProviderCallError, match="MiniMax: Generation failed - out of credits"):
        await poll_until_done(check, "MiniMax", interval=1, max_attempts=5, sleep=instant_sleep)


@pytest.mark.asyncio
async def test_poll_times_out_after_budget():
    """
    Verify polling stops after max_attempts pending replies.
    Why: A stuck backend task must not hold the request open forever.
    """
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    check, calls = scripted(*[PollOutcome.pending()] * 3)

    with pytest.raises(GenerationTimeoutError) as exc_info:
        await poll_until_done(check, "MiniMax", interval=2, max_attempts=3, sleep=fake_sleep)

    assert isinstance(exc_info.value, TimeoutError)
    assert slept == [2, 2, 2]
    assert len(calls) == 3
