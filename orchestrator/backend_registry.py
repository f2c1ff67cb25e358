import logging
from typing import Optional, Union

from sqlalchemy import func, select, update

from orchestrator.database import SessionLocal
from orchestrator.errors import ValidationError
from orchestrator.lock_service import exclusive
from orchestrator.models import BackendConfig
from orchestrator.providers.base import Credentials, ProviderFamily

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "image"


class BackendNotFoundError(ValidationError):
    error_kind = "backend_not_found"
    http_status = 404


def credentials_for(backend: BackendConfig) -> Credentials:
    return Credentials(
        api_key=backend.api_key,
        model=backend.model,
        endpoint=backend.endpoint,
        params=dict(backend.params or {}),
    )


class BackendRegistry:
    """
    Configuration for every known generation backend.

    Activation is the one write that must stay consistent: set_active holds
    a named lock for the scope and flips every flag in a single transaction,
    so once it returns exactly one backend in that scope is active.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def add_backend(
        self,
        key: str,
        provider: Union[ProviderFamily, str],
        api_key: Optional[str],
        name: Optional[str] = None,
        model: Optional[str] = None,
        endpoint: Optional[str] = None,
        params: Optional[dict] = None,
        cost_per_image: int = 1,
        scope: str = DEFAULT_SCOPE,
        enabled: bool = True,
    ) -> BackendConfig:
        """Registers a backend. New backends start inactive; use set_active to switch."""
        family = ProviderFamily.parse(provider) if isinstance(provider, str) else provider
        with self.session_factory() as session:
            backend = BackendConfig(
                key=key,
                name=name or key,
                provider=family.value,
                api_key=api_key,
                model=model,
                endpoint=endpoint,
                params=params or {},
                cost_per_image=cost_per_image,
                scope=scope,
                enabled=enabled,
                active=False,
            )
            session.add(backend)
            session.commit()
            session.refresh(backend)
            return backend

    def get(self, backend_id: Union[int, str]) -> Optional[BackendConfig]:
        """Looks a backend up by numeric id or by key."""
        with self.session_factory() as session:
            if isinstance(backend_id, int) or str(backend_id).isdigit():
                backend = session.get(BackendConfig, int(backend_id))
                if backend is not None:
                    return backend
            return session.scalar(select(BackendConfig).where(BackendConfig.key == str(backend_id)))

    def get_active(self, scope: str = DEFAULT_SCOPE) -> Optional[BackendConfig]:
        with self.session_factory() as session:
            return session.scalar(
                select(BackendConfig)
                .where(BackendConfig.scope == scope, BackendConfig.active.is_(True))
                .order_by(BackendConfig.id)
            )

    def count_active(self, scope: str = DEFAULT_SCOPE) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count()).select_from(BackendConfig)
                .where(BackendConfig.scope == scope, BackendConfig.active.is_(True))
            )

    def find_enabled_by_family(
        self,
        family: ProviderFamily,
        exclude_id: Optional[int] = None,
        scope: str = DEFAULT_SCOPE,
    ) -> Optional[BackendConfig]:
        """First enabled backend of a family with credentials, active or not."""
        with self.session_factory() as session:
            query = (
                select(BackendConfig)
                .where(
                    BackendConfig.provider == family.value,
                    BackendConfig.scope == scope,
                    BackendConfig.enabled.is_(True),
                    BackendConfig.api_key.is_not(None),
                )
                .order_by(BackendConfig.active.desc(), BackendConfig.id)
            )
            if exclude_id is not None:
                query = query.where(BackendConfig.id != exclude_id)
            return session.scalars(query).first()

    def set_active(self, backend_id: Union[int, str]) -> BackendConfig:
        """
        Makes one backend the active one for its scope.

        Raises:
            BackendNotFoundError: Unknown id/key
            ValidationError: Backend is disabled
            LockUnavailableError: Another activation holds the scope lock
        """
        target = self.get(backend_id)
        if target is None:
            raise BackendNotFoundError(f"Backend {backend_id!r} not found")
        if not target.enabled:
            raise ValidationError(f"Backend {target.key!r} is disabled and cannot be activated")

        with exclusive(f"backend_activation:{target.scope}"):
            with self.session_factory() as session, session.begin():
                session.execute(
                    update(BackendConfig)
                    .where(BackendConfig.scope == target.scope, BackendConfig.id != target.id)
                    .values(active=False)
                )
                session.execute(
                    update(BackendConfig)
                    .where(BackendConfig.id == target.id)
                    .values(active=True)
                )

        logger.info("Backend %s (%s) is now active for scope %s", target.key, target.provider, target.scope)
        target.active = True
        return target

    def record_call(self, backend_id: int, success: bool, latency_ms: float) -> None:
        """
        Updates the rolling stats for one call.

        Best-effort telemetry: an unlocked read-modify-write, so concurrent
        calls can lose increments. Failures are logged and swallowed.
        """
        try:
            with self.session_factory() as session:
                backend = session.get(BackendConfig, backend_id)
                if backend is None:
                    return
                total_calls = (backend.total_calls or 0) + 1
                previous_successes = round((backend.success_rate or 0) / 100 * (total_calls - 1))
                backend.total_calls = total_calls
                backend.success_rate = (previous_successes + (1 if success else 0)) / total_calls * 100
                if success and latency_ms > 0:
                    backend.avg_latency_ms = ((backend.avg_latency_ms or 0) * (total_calls - 1) + latency_ms) / total_calls
                session.commit()
        except Exception as e:
            logger.error("Error updating backend stats for %s: %s", backend_id, e)
