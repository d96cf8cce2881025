"""
HTTP surface for the generation pipeline.

Thin adapter over GenerationOrchestrator. Services are built lazily on first
use and injected through dependencies so tests can swap them out.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .schemas import (
    FailedListResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    HistoryEntryResponse,
    HistoryResponse,
    ProjectEnvelope,
    ProjectResponse,
    RankRequest,
    RetryAcceptedResponse,
    StatusResponse,
    SuccessResponse,
)
from ..agents.backend import check_backend_health, get_generation_backend
from ..agents.orchestrator import GenerationOrchestrator, GenerationPolicy
from ..core import config
from ..core.db import check_db_health, init_db
from ..core.errors import ForbiddenError, UpcycleError, UpstreamError
from ..core.history import PromptHistory
from ..core.prompt_cache import PromptCache
from ..core.records import ProjectStore, STATUS_FAILED, STATUS_GENERATING
from ..util.logging import logger
from ..vector.embeddings import get_embedding_provider
from ..vector.faiss_index import VectorIndex

_orchestrator: Optional[GenerationOrchestrator] = None
_history: Optional[PromptHistory] = None


def _ensure_storage():
    config.ensure_data_directories()
    init_db(config.DB_PATH)


def get_history() -> PromptHistory:
    """Lazy initialization of the prompt history store."""
    global _history
    if _history is None:
        _ensure_storage()
        _history = PromptHistory(config.DB_PATH)
    return _history


def get_orchestrator() -> GenerationOrchestrator:
    """Lazy initialization of the generation orchestrator and its services."""
    global _orchestrator
    if _orchestrator is None:
        _ensure_storage()
        for issue in config.validate_config():
            logger.warning(f"Configuration issue: {issue}")

        index = VectorIndex(config.VECTOR_INDEX_PATH, config.VECTOR_MAPPING_PATH, config.EMBED_DIM)
        index.initialize()
        _orchestrator = GenerationOrchestrator(
            store=ProjectStore(config.DB_PATH),
            cache=PromptCache(config.DB_PATH),
            index=index,
            embedder=get_embedding_provider(),
            backend=get_generation_backend(),
            history=get_history(),
            policy=GenerationPolicy.from_config(),
        )
    return _orchestrator


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity; issuing and verifying it is the gateway's job."""
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def require_user(user_id: Optional[str] = Depends(get_user_id)) -> str:
    if not user_id:
        raise ForbiddenError("X-User-Id header is required")
    return user_id


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    token = config.get_admin_token()
    if not token or x_admin_token != token:
        raise ForbiddenError("Admin privileges required")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _orchestrator is not None:
        await _orchestrator.shutdown()


# Initialize the FastAPI application
app = FastAPI(
    title="Upcycle Generation API",
    version=config.VERSION,
    description="Turns spare materials into DIY projects, reusing prior generations by embedding similarity",
    docs_url="/docs" if config.debug_enabled() else None,
    redoc_url="/redoc" if config.debug_enabled() else None,
    lifespan=lifespan,
)

# Add CORS middleware to allow frontend connections
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health_check_endpoint(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Check system health."""
    db_health = check_db_health(orchestrator.store.db_path)
    backend = await check_backend_health(orchestrator.backend)

    return HealthResponse(
        status="healthy" if db_health and backend.get("available") else "degraded",
        version=config.VERSION,
        db_health=db_health,
        index_size=orchestrator.index.size(),
        backend=backend,
    )


@app.post("/generate", response_model=GenerateResponse)
async def generate_endpoint(request: GenerateRequest,
                            user_id: Optional[str] = Depends(get_user_id),
                            orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """
    Resolve a materials prompt to projects.

    Returns cached or index-matched projects immediately; otherwise returns
    freshly named projects in the generating state while details are filled
    in the background.
    """
    result = await orchestrator.handle_prompt(request.materials, user_id=user_id)
    return GenerateResponse(
        projects=[ProjectResponse.from_record(record) for record in result.projects],
        cached=result.cached,
        source=result.source,
    )


# Fixed paths are declared before /generate/{project_id} to avoid path parameter conflicts
@app.get("/generate/history", response_model=HistoryResponse)
def history_endpoint(user_id: str = Depends(require_user), history: PromptHistory = Depends(get_history)):
    """Last five prompts of the calling user, most recent first."""
    entries = history.recent(user_id, limit=5)
    return HistoryResponse(prompts=[
        HistoryEntryResponse(id=entry.id, prompt=entry.prompt,
                             updated_at=datetime.fromtimestamp(entry.updated_at, tz=timezone.utc))
        for entry in entries
    ])


@app.delete("/generate/history/{entry_id}", response_model=SuccessResponse)
def delete_history_endpoint(entry_id: int, user_id: str = Depends(require_user),
                            history: PromptHistory = Depends(get_history)):
    history.delete(user_id, entry_id)
    return SuccessResponse(success=True)


@app.post("/generate/retry/{project_id}", dependencies=[Depends(require_admin)])
async def retry_endpoint(project_id: str, response: Response, wait: bool = False,
                         orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Re-run detail generation; with wait=true the call blocks until it finishes."""
    record = await orchestrator.retry_project(project_id, wait=wait)
    if wait:
        return ProjectEnvelope(project=ProjectResponse.from_record(record))

    response.status_code = 202
    return RetryAcceptedResponse(id=record.id, status=record.status)


@app.get("/generate/failed", response_model=FailedListResponse, dependencies=[Depends(require_admin)])
async def failed_projects_endpoint(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                                   orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    total, records = await orchestrator.list_failed(page, limit)
    return FailedListResponse(
        page=page,
        limit=limit,
        total=total,
        projects=[ProjectResponse.from_record(record) for record in records],
    )


@app.get("/generate/stream/{project_id}")
async def stream_endpoint(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Server-sent events for one project: status, progress, then complete or error."""

    async def event_source():
        async for event in orchestrator.stream_project(project_id):
            yield event.to_sse()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/generate/{project_id}", response_model=ProjectEnvelope)
async def get_generated_project_endpoint(project_id: str,
                                         orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    record = await orchestrator.get_project(project_id)
    if record.status == STATUS_FAILED:
        raise UpstreamError(record.status_message or "Project generation failed. Please try again.")

    message = None
    if record.status == STATUS_GENERATING:
        message = "Project is still being generated. Please check the status endpoint."
    return ProjectEnvelope(project=ProjectResponse.from_record(record), message=message)


@app.get("/generate/{project_id}/status", response_model=StatusResponse)
async def status_endpoint(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return StatusResponse(**await orchestrator.get_status(project_id))


@app.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project_endpoint(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return ProjectResponse.from_record(await orchestrator.get_project(project_id))


@app.post("/projects/{project_id}/rank", response_model=ProjectResponse)
async def rank_project_endpoint(project_id: str, request: RankRequest, user_id: str = Depends(require_user),
                                orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """Submit the caller's 1-5 vote; a repeat vote replaces the previous one."""
    record = await orchestrator.rate_project(project_id, user_id, request.value)
    return ProjectResponse.from_record(record)


@app.delete("/projects/{project_id}", response_model=SuccessResponse, dependencies=[Depends(require_admin)])
async def delete_project_endpoint(project_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_project(project_id)
    return SuccessResponse(success=True)


def _error_response(status_code: int, error: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "status_code": status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


@app.exception_handler(UpcycleError)
async def upcycle_exception_handler(request, exc: UpcycleError):
    """Map domain errors to structured error bodies."""
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log_operation("api.error", exc.kind, {"path": request.url.path, "message": exc.message}, level)
    return _error_response(exc.status_code, exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """Malformed bodies and out-of-range parameters are bad input, reported like any other."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    message = "; ".join(problems) or "Invalid request"

    logger.log_operation("api.error", "bad_input", {"path": request.url.path, "message": message}, logging.WARNING)
    return _error_response(400, {"kind": "bad_input", "message": message})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    error = {"kind": "internal", "message": "Internal server error"}
    if config.debug_enabled():
        error["debug"] = str(exc)
    return _error_response(500, error)
