"""
The generation pipeline: request in, hosted image and settled charge out.

normalize -> resolve backend -> load template -> quote -> guard prompts ->
adapter call (with one-shot failover) -> asset upload -> settle

Database work is synchronous SQLAlchemy, so each step that touches the
database runs in a worker thread through asyncio.to_thread.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Literal, Optional, Tuple, Union

import pydantic
from pydantic import BaseModel, Field, field_validator

from orchestrator.backend_registry import BackendRegistry
from orchestrator.backend_router import BackendRouter, ResolvedBackend
from orchestrator.database import SessionLocal
from orchestrator.errors import ContentBlockedError, OrchestratorError, ValidationError
from orchestrator.failover_service import FailoverCoordinator
from orchestrator.guard_service import GenerationType, GuardRuleEngine, SqlGuardRuleStore
from orchestrator.image_service import AssetStore, SupabaseAssetStore
from orchestrator.models import Template
from orchestrator.providers.base import ImageRef, ProviderRequest
from orchestrator.providers.registry import AdapterFactory
from orchestrator.settlement_service import SettledGeneration, SettlementService

logger = logging.getLogger(__name__)

MAX_REFERENCE_IMAGES = 14

AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "21:9", "9:21"]
Quality = Literal["SD", "HD", "UHD", "2K", "4K", "8K"]


class GenerationRequest(BaseModel):
    prompt: str = ""
    negative_prompt: str = ""
    reference_images: List[str] = Field(default_factory=list, max_length=MAX_REFERENCE_IMAGES)
    aspect_ratio: AspectRatio = "1:1"
    quality: Quality = "HD"
    backend_id: Optional[Union[int, str]] = None
    strength: float = Field(default=0.35, ge=0.0, le=1.0)
    template_id: Optional[int] = None

    @field_validator("reference_images")
    @classmethod
    def check_reference_images(cls, reference_images: List[str]) -> List[str]:
        for image in reference_images:
            if not image.startswith(("http://", "https://", "data:")):
                raise ValueError("reference images must be http(s) URLs or data: URIs")
        return reference_images

    @property
    def generation_type(self) -> GenerationType:
        if self.reference_images:
            return GenerationType.IMAGE_TO_IMAGE
        return GenerationType.TEXT_TO_IMAGE


def normalize(payload: Union[GenerationRequest, dict]) -> GenerationRequest:
    """Validates a raw request body, turning pydantic errors into ValidationError."""
    if isinstance(payload, GenerationRequest):
        return payload
    try:
        return GenerationRequest.model_validate(payload)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"Invalid generation request: {problems}") from e


def merge_negative_prompts(user_negative: str, guard_negative: str) -> str:
    return ", ".join(part for part in ((user_negative or "").strip(), guard_negative) if part)


class GenerationService:
    def __init__(
        self,
        registry: BackendRegistry,
        guard: GuardRuleEngine,
        settlement: SettlementService,
        asset_store: AssetStore,
        adapters: Optional[AdapterFactory] = None,
        session_factory=SessionLocal,
    ):
        self.registry = registry
        self.router = BackendRouter(registry)
        self.guard = guard
        self.settlement = settlement
        self.asset_store = asset_store
        self.adapters = adapters or AdapterFactory()
        self.failover = FailoverCoordinator(registry, self.adapters)
        self.session_factory = session_factory

    @classmethod
    def default(cls, session_factory=SessionLocal) -> "GenerationService":
        return cls(
            registry=BackendRegistry(session_factory),
            guard=GuardRuleEngine(SqlGuardRuleStore(session_factory)),
            settlement=SettlementService(session_factory),
            asset_store=SupabaseAssetStore(),
            session_factory=session_factory,
        )

    async def generate(self, user_id: int, payload: Union[GenerationRequest, dict]) -> dict:
        """
        Runs one generation end to end.

        Nothing is charged unless an image was produced and hosted. Settlement
        step failures don't fail the request; they come back in "warnings".

        Raises:
            OrchestratorError: Any pre-check, backend or upload failure
        """
        request = normalize(payload)
        backend = await asyncio.to_thread(self.router.resolve, request.backend_id)
        template = await asyncio.to_thread(self._load_template, request.template_id)
        if not request.prompt.strip() and template is None:
            raise ValidationError("A prompt is required")

        quote = await asyncio.to_thread(self.settlement.quote, user_id, backend.cost_per_image)

        prompts = await asyncio.to_thread(
            self.guard.build_execution_prompt,
            request.prompt,
            template.prompt if template is not None else None,
            request.generation_type.value,
        )
        provider_request = ProviderRequest(
            prompt=prompts.execution_prompt,
            credentials=backend.credentials,
            negative_prompt=merge_negative_prompts(request.negative_prompt, prompts.negative_prompt),
            reference_images=list(request.reference_images),
            aspect_ratio=request.aspect_ratio,
            quality=request.quality,
            strength=request.strength,
        )

        image, used_backend = await self._produce(backend, provider_request)
        image_url = await self.asset_store.upload(image)

        visible_prompt = template.title if template is not None else prompts.user_prompt
        result = await asyncio.to_thread(self.settlement.settle, quote, SettledGeneration(
            user_id=user_id,
            visible_prompt=visible_prompt,
            image_url=image_url,
            quality=request.quality,
            aspect_ratio=request.aspect_ratio,
            backend_key=used_backend.key,
            negative_prompt=request.negative_prompt,
            reference_images=request.reference_images,
            template_id=template.id if template is not None else None,
        ))

        warnings = result.degraded_steps()
        if warnings:
            logger.warning("Generation for user %s completed with degraded settlement: %s",
                           user_id, ", ".join(warnings))

        created_at = result.created_at or datetime.now(timezone.utc)
        return {
            "id": result.record_id,
            "imageUrl": image_url,
            "visiblePrompt": visible_prompt,
            "quality": request.quality,
            "aspectRatio": request.aspect_ratio,
            "pointsSpent": quote.cost,
            "status": "completed",
            "createdAt": created_at.isoformat(),
            "warnings": warnings,
        }

    async def _produce(self, backend: ResolvedBackend, request: ProviderRequest) -> Tuple[ImageRef, ResolvedBackend]:
        adapter = self.adapters.for_family(backend.family)
        logger.info("Generating with %s (%s), %d reference images",
                    backend.key, backend.family.value, len(request.reference_images))
        started = time.monotonic()
        try:
            image = await adapter.generate(request)
        except OrchestratorError as error:
            await asyncio.to_thread(self.registry.record_call, backend.id, False, 0)
            logger.error("%s generation failed: %s", backend.key, error)
            if isinstance(error, ContentBlockedError):
                raise
            failover = await self.failover.attempt_failover(backend, request, error)
            if failover is None:
                raise
            return failover.image, failover.backend

        latency_ms = (time.monotonic() - started) * 1000
        await asyncio.to_thread(self.registry.record_call, backend.id, True, latency_ms)
        return image, backend

    def _load_template(self, template_id: Optional[int]) -> Optional[Template]:
        if template_id is None:
            return None
        with self.session_factory() as session:
            template = session.get(Template, template_id)
        if template is None:
            raise ValidationError(f"Template {template_id} not found")
        return template
