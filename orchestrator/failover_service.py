import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Optional

from orchestrator.backend_registry import BackendRegistry
from orchestrator.backend_router import ResolvedBackend, resolve_config
from orchestrator.errors import (
    FAILOVER_ELIGIBLE_ERRORS,
    ContentBlockedError,
    NoActiveBackendError,
    OrchestratorError,
    ProviderCallError,
)
from orchestrator.providers.base import ImageRef, ProviderFamily, ProviderRequest
from orchestrator.providers.registry import AdapterFactory

logger = logging.getLogger(__name__)

# Families that accept the same image-to-image request shape
FAILOVER_MAP = {
    ProviderFamily.STABILITY: ProviderFamily.MINIMAX,
    ProviderFamily.MINIMAX: ProviderFamily.STABILITY,
}


@dataclass
class FailoverResult:
    image: ImageRef
    backend: ResolvedBackend


class FailoverCoordinator:
    """One-shot retry of an image-to-image request against a compatible backend."""

    def __init__(self, registry: BackendRegistry, adapters: AdapterFactory):
        self.registry = registry
        self.adapters = adapters

    def alternate_family(self, failed: ResolvedBackend, request: ProviderRequest, error: Exception) -> Optional[ProviderFamily]:
        """The family to retry on, or None when this failure must not fail over."""
        if not request.is_image_to_image:
            return None
        if not isinstance(error, FAILOVER_ELIGIBLE_ERRORS):
            return None
        return FAILOVER_MAP.get(failed.family)

    async def attempt_failover(
        self,
        failed: ResolvedBackend,
        request: ProviderRequest,
        error: Exception,
    ) -> Optional[FailoverResult]:
        """
        Tries exactly one alternate backend.

        Returns:
            FailoverResult: The alternate's image and the backend that produced it
            None: Failover doesn't apply (text-to-image, content block, no
                  mapped family, or no enabled backend of that family)

        Raises:
            ProviderCallError: The alternate failed too; the message carries
                both the original and the alternate error
        """
        family = self.alternate_family(failed, request, error)
        if family is None:
            return None

        config = await asyncio.to_thread(
            self.registry.find_enabled_by_family, family, exclude_id=failed.id, scope=failed.config.scope
        )
        if config is None:
            logger.warning("%s failed but no enabled %s backend is configured for failover",
                           failed.family.value, family.value)
            return None
        try:
            alternate = resolve_config(config)
        except NoActiveBackendError as e:
            logger.warning("Failover backend %s unusable: %s", config.key, e)
            return None

        logger.warning("%s failed. Attempting failover to %s (%s)", failed.family.value, family.value, alternate.key)
        started = time.monotonic()
        try:
            image = await self.adapters.for_family(family).generate(
                dataclasses.replace(request, credentials=alternate.credentials)
            )
        except ContentBlockedError:
            await asyncio.to_thread(self.registry.record_call, alternate.id, False, 0)
            raise
        except OrchestratorError as failover_error:
            await asyncio.to_thread(self.registry.record_call, alternate.id, False, 0)
            logger.error("Failover failed: %s", failover_error)
            raise ProviderCallError(f"{error} | Failover: {failover_error}") from failover_error

        latency_ms = (time.monotonic() - started) * 1000
        await asyncio.to_thread(self.registry.record_call, alternate.id, True, latency_ms)
        logger.info("Failover success via %s", alternate.key)
        return FailoverResult(image=image, backend=alternate)
