import logging
from typing import List, Optional, Union

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orchestrator.backend_registry import BackendRegistry
from orchestrator.database import Base, SessionLocal, engine
from orchestrator.errors import OrchestratorError
from orchestrator.generation_service import GenerationService
from orchestrator.guard_service import SqlGuardRuleStore
from orchestrator.record_service import GenerationRecordService
from orchestrator import models  # noqa: F401  registers the tables on Base

# Load environment variables
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="image orchestrator")


class GenerateBody(BaseModel):
    """
    Request body for POST /generate.

    Only the shape is checked here; value rules (allowed ratios, reference
    limits, strength range) are enforced by the pipeline's own normalization
    so the same errors come back whether the service is called over HTTP or
    directly.
    """
    prompt: str = ""
    negative_prompt: str = ""
    reference_images: List[str] = Field(default_factory=list)
    aspect_ratio: str = "1:1"
    quality: str = "HD"
    backend_id: Optional[Union[int, str]] = None
    strength: float = 0.35
    template_id: Optional[int] = None


class ActivationResponse(BaseModel):
    id: int
    key: str
    provider: str
    scope: str
    active: bool


class GenerationCounters(BaseModel):
    id: int
    download_count: int
    share_count: int
    is_favorite: bool


# Dependency providers, overridden in tests
def get_session_factory():
    return SessionLocal


def get_generation_service(session_factory=Depends(get_session_factory)) -> GenerationService:
    return GenerationService.default(session_factory)


def get_registry(session_factory=Depends(get_session_factory)) -> BackendRegistry:
    return BackendRegistry(session_factory)


def get_guard_rule_store(session_factory=Depends(get_session_factory)) -> SqlGuardRuleStore:
    return SqlGuardRuleStore(session_factory)


def get_record_service(session_factory=Depends(get_session_factory)) -> GenerationRecordService:
    return GenerationRecordService(session_factory)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    if exc.http_status >= 500:
        logger.error("%s %s failed (%s): %s", request.method, request.url.path, exc.error_kind, exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.get("/health")
async def health():
    """API health check endpoint"""
    return {"message": "image orchestrator is running, go to /docs# for API documentation"}


@app.post("/generate")
async def generate_endpoint(
    body: GenerateBody,
    x_user_id: int = Header(...),
    service: GenerationService = Depends(get_generation_service),
):
    """Generates one image for the user named in the X-User-Id header"""
    return await service.generate(x_user_id, body.model_dump())


@app.post("/backends/{backend_id}/activate", response_model=ActivationResponse)
def activate_backend_endpoint(backend_id: str, registry: BackendRegistry = Depends(get_registry)):
    backend = registry.set_active(backend_id)
    return ActivationResponse(
        id=backend.id,
        key=backend.key,
        provider=backend.provider,
        scope=backend.scope,
        active=backend.active,
    )


@app.post("/guard-rules/seed")
def seed_guard_rules_endpoint(store: SqlGuardRuleStore = Depends(get_guard_rule_store)):
    return {"rules": store.seed_default_rules()}


def _counters(record) -> GenerationCounters:
    return GenerationCounters(
        id=record.id,
        download_count=record.download_count,
        share_count=record.share_count,
        is_favorite=record.is_favorite,
    )


@app.post("/generations/{record_id}/download", response_model=GenerationCounters)
def track_download_endpoint(
    record_id: int,
    x_user_id: int = Header(...),
    records: GenerationRecordService = Depends(get_record_service),
):
    return _counters(records.track_download(record_id, x_user_id))


@app.post("/generations/{record_id}/share", response_model=GenerationCounters)
def track_share_endpoint(
    record_id: int,
    x_user_id: int = Header(...),
    records: GenerationRecordService = Depends(get_record_service),
):
    return _counters(records.track_share(record_id, x_user_id))


@app.post("/generations/{record_id}/favorite", response_model=GenerationCounters)
def toggle_favorite_endpoint(
    record_id: int,
    x_user_id: int = Header(...),
    records: GenerationRecordService = Depends(get_record_service),
):
    return _counters(records.toggle_favorite(record_id, x_user_id))
