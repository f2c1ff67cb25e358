import logging
from dataclasses import dataclass
from typing import Optional, Union

from orchestrator.backend_registry import BackendRegistry, DEFAULT_SCOPE, credentials_for
from orchestrator.errors import NoActiveBackendError
from orchestrator.models import BackendConfig
from orchestrator.providers.base import Credentials, ProviderFamily

logger = logging.getLogger(__name__)


@dataclass
class ResolvedBackend:
    config: BackendConfig
    family: ProviderFamily
    credentials: Credentials

    @property
    def id(self) -> int:
        return self.config.id

    @property
    def key(self) -> str:
        return self.config.key

    @property
    def cost_per_image(self) -> int:
        return self.config.cost_per_image if self.config.cost_per_image is not None else 1


def resolve_config(config: BackendConfig) -> ResolvedBackend:
    """Validates a registry row is usable and pairs it with its family and credentials."""
    if not config.api_key:
        raise NoActiveBackendError(f"API key not configured for {config.name}")
    try:
        family = ProviderFamily.parse(config.provider)
    except ValueError as e:
        raise NoActiveBackendError(str(e)) from e
    return ResolvedBackend(config=config, family=family, credentials=credentials_for(config))


class BackendRouter:
    """Chooses the backend for a request: the one the caller asked for, else the active one."""

    def __init__(self, registry: BackendRegistry, scope: str = DEFAULT_SCOPE):
        self.registry = registry
        self.scope = scope

    def resolve(self, requested_backend_id: Optional[Union[int, str]] = None) -> ResolvedBackend:
        config = None
        if requested_backend_id is not None:
            config = self.registry.get(requested_backend_id)
            if config is None or not config.enabled:
                logger.warning("Requested backend %r unavailable, falling back to active backend",
                               requested_backend_id)
                config = None

        if config is None:
            config = self.registry.get_active(self.scope)
        if config is None:
            raise NoActiveBackendError("No active backend configured. Activate a backend first.")

        return resolve_config(config)
