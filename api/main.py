"""
Auto-Apply API - FastAPI Backend
Control surface for the rate-limited application submission pipeline:
queue workflows, inspect progress, pause/resume, and rate limit status.
"""

import hmac
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from adapters import EnvTokenProvider, HHClientFactory, SubmissionClientFactory
from api.config import AppConfig, config
from api.database import WorkItemStore
from api.dispatcher import DispatcherConfig, WorkflowDispatcher
from api.logging_config import logger
from api.models import WorkItemStatus
from api.rate_limiter import RateLimitConfig, RateLimiter
from api.submission_orchestrator import OrchestratorConfig, SubmissionOrchestrator
from monitoring.notifications import NotificationConfig, ProgressNotifier


# === Pipeline wiring ===

@dataclass
class Pipeline:
    store: WorkItemStore
    limiter: RateLimiter
    notifier: ProgressNotifier
    orchestrator: SubmissionOrchestrator
    dispatcher: WorkflowDispatcher


def build_pipeline(cfg: AppConfig = config, clients: Optional[SubmissionClientFactory] = None) -> Pipeline:
    """Assemble the pipeline components from configuration."""
    store = WorkItemStore(cfg.DATABASE_PATH, default_max_attempts=cfg.QUEUE_MAX_ATTEMPTS)
    limiter = RateLimiter(RateLimitConfig.from_app_config(cfg))
    notifier = ProgressNotifier(NotificationConfig(webhook_url=cfg.NOTIFY_WEBHOOK_URL))
    if clients is None:
        clients = HHClientFactory(
            EnvTokenProvider(cfg.HH_ACCESS_TOKEN or ""),
            base_url=cfg.HH_API_BASE_URL,
            timeout=cfg.HTTP_TIMEOUT_SECONDS,
            user_agent=cfg.HH_USER_AGENT,
        )
    orchestrator = SubmissionOrchestrator(
        clients,
        store,
        notifier,
        OrchestratorConfig.from_app_config(cfg),
    )
    dispatcher = WorkflowDispatcher(
        store,
        limiter,
        orchestrator,
        notifier,
        DispatcherConfig.from_app_config(cfg),
    )
    return Pipeline(store, limiter, notifier, orchestrator, dispatcher)


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting Auto-Apply API...")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline(config)
        app.state.pipeline = pipeline

    await pipeline.store.init_database()
    logger.info("Database initialized")

    pipeline.limiter.start()
    if pipeline.dispatcher.config.enabled:
        resumed = await pipeline.dispatcher.recover()
        logger.info(f"Dispatcher enabled, {len(resumed)} workflows resumed")
    else:
        logger.info("Dispatcher disabled")

    yield
    # Shutdown
    logger.info("Shutting down Auto-Apply API...")
    await pipeline.dispatcher.stop()
    await pipeline.limiter.stop()
    await pipeline.notifier.drain()


# Initialize FastAPI app
app = FastAPI(
    title="Auto-Apply API",
    description="Rate-limited job application submission pipeline",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

# CORS configuration - restricted to specific origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Core-Secret"],
)


# === Dependencies ===

def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


async def verify_core_secret(x_core_secret: Optional[str] = Header(None)):
    """Reject callers without the shared secret when one is configured."""
    expected = config.ORCHESTRATOR_SECRET
    if expected and not hmac.compare_digest(x_core_secret or "", expected):
        raise HTTPException(status_code=401, detail="Invalid core secret")


# === Request Models ===

class QueueJob(BaseModel):
    job_external_id: str = Field(..., min_length=1)
    cover_letter: Optional[str] = None
    cv_reference: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    status: Literal["pending", "customizing"] = "pending"


class QueueAddRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    workflow_id: Optional[str] = None
    cv_reference: Optional[str] = None
    jobs: List[QueueJob] = Field(..., min_length=1)
    priority: int = 0
    start: bool = True


class PayloadRequest(BaseModel):
    payload: Dict[str, Any]


# === API Endpoints ===

@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    pipeline = getattr(request.app.state, "pipeline", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "dispatcher_enabled": bool(pipeline and pipeline.dispatcher.config.enabled),
        "version": "1.0.0",
    }


# === Queue Endpoints ===

@app.post("/api/queue/add", dependencies=[Depends(verify_core_secret)])
async def queue_add(body: QueueAddRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """Create (or extend) a workflow with application intents."""
    store = pipeline.store
    workflow_id = body.workflow_id
    if workflow_id:
        workflow = await store.get_workflow(workflow_id)
        if workflow is None:
            workflow_id = await store.create_workflow(body.user_id, body.cv_reference, workflow_id=workflow_id)
        elif workflow["user_id"] != body.user_id:
            raise HTTPException(status_code=403, detail="Workflow belongs to another user")
    else:
        workflow_id = await store.create_workflow(body.user_id, body.cv_reference)

    added = await store.enqueue(
        workflow_id,
        [job.model_dump() for job in body.jobs],
        priority=body.priority,
    )
    logger.info(f"Queued {added}/{len(body.jobs)} jobs into workflow {workflow_id}")

    started = False
    if body.start and added:
        started = pipeline.dispatcher.start_workflow(workflow_id)

    progress = await store.progress(workflow_id)
    return {
        "workflow_id": workflow_id,
        "added": added,
        "skipped": len(body.jobs) - added,
        "started": started,
        "progress": progress.to_dict(),
    }


async def _require_workflow(pipeline: Pipeline, workflow_id: str) -> Dict[str, Any]:
    workflow = await pipeline.store.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


@app.post("/api/queue/workflows/{workflow_id}/start", dependencies=[Depends(verify_core_secret)])
async def start_workflow(workflow_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    workflow = await _require_workflow(pipeline, workflow_id)
    if workflow["status"] != "running":
        raise HTTPException(status_code=409, detail="Workflow is paused; resume it instead")
    started = pipeline.dispatcher.start_workflow(workflow_id)
    return {"workflow_id": workflow_id, "started": started, "running": pipeline.dispatcher.is_running(workflow_id)}


@app.get("/api/queue/workflows/{workflow_id}/progress", dependencies=[Depends(verify_core_secret)])
async def workflow_progress(workflow_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    workflow = await _require_workflow(pipeline, workflow_id)
    progress = await pipeline.store.progress(workflow_id)
    estimate = await pipeline.dispatcher.estimate_completion(workflow_id)
    return {
        "workflow_id": workflow_id,
        "user_id": workflow["user_id"],
        "status": workflow["status"],
        "progress": progress.to_dict(),
        "total": progress.total,
        "estimate": estimate,
    }


@app.get("/api/queue/workflows/{workflow_id}/items", dependencies=[Depends(verify_core_secret)])
async def workflow_items(workflow_id: str, limit: int = 500, pipeline: Pipeline = Depends(get_pipeline)):
    await _require_workflow(pipeline, workflow_id)
    items = await pipeline.store.list_items(workflow_id, limit=max(1, min(limit, 1000)))
    return {"workflow_id": workflow_id, "items": [item.to_dict() for item in items]}


@app.post("/api/queue/workflows/{workflow_id}/pause", dependencies=[Depends(verify_core_secret)])
async def pause_workflow(workflow_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    await _require_workflow(pipeline, workflow_id)
    held = await pipeline.dispatcher.pause_workflow(workflow_id)
    return {"workflow_id": workflow_id, "status": "paused", "held": held}


@app.post("/api/queue/workflows/{workflow_id}/resume", dependencies=[Depends(verify_core_secret)])
async def resume_workflow(workflow_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    await _require_workflow(pipeline, workflow_id)
    released = await pipeline.dispatcher.resume_workflow(workflow_id)
    return {"workflow_id": workflow_id, "status": "running", "released": released}


@app.post("/api/queue/items/{item_id}/customizing", dependencies=[Depends(verify_core_secret)])
async def mark_customizing(item_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """CV customization picked the item up; keep it out of dispatch until the payload arrives."""
    item = await pipeline.store.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Work item not found")
    if not await pipeline.store.mark_customizing(item_id):
        raise HTTPException(status_code=409, detail=f"Work item is {item.status.value}")
    return {"item_id": item_id, "status": WorkItemStatus.CUSTOMIZING.value}


@app.post("/api/queue/items/{item_id}/payload", dependencies=[Depends(verify_core_secret)])
async def attach_payload(item_id: str, body: PayloadRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """Hand-off from CV customization: store the payload and mark the item ready."""
    item = await pipeline.store.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Work item not found")
    if not await pipeline.store.attach_payload(item_id, body.payload):
        raise HTTPException(status_code=409, detail=f"Work item is {item.status.value}, payload not accepted")
    pipeline.dispatcher.notify_enqueued(item.workflow_id)
    return {"item_id": item_id, "status": WorkItemStatus.READY.value}


# === Rate Limit Endpoints ===

@app.get("/api/rate-limit/{user_id}", dependencies=[Depends(verify_core_secret)])
async def rate_limit_status(user_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    status = await pipeline.limiter.status(user_id)
    return {"user_id": user_id, **status.to_dict()}


@app.post("/api/rate-limit/{user_id}/reset", dependencies=[Depends(verify_core_secret)])
async def rate_limit_reset(user_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    await pipeline.limiter.reset(user_id)
    status = await pipeline.limiter.status(user_id)
    return {"user_id": user_id, **status.to_dict()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
