from fastapi import FastAPI, HTTPException, Query, Depends, Request, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
import structlog
from prometheus_fastapi_instrumentator import Instrumentator
from typing import Optional
from datetime import datetime, timezone
import uvicorn

from .config.settings import settings
from .errors import InvalidAddressError
from .models.analysis_models import RunOutcome, RunResult
from .models.api_models import (
    StartJobRequest, StartJobResponse, NotificationDetailsRequest, HealthResponse
)
from .services import (
    AssistantClient,
    BatchAnalyzer,
    BlobCache,
    Consolidator,
    NameResolver,
    NotificationStore,
    Notifier,
    PipelineCoordinator,
    StatusProjection,
    TransactionFetcher,
)
from .services.status_projection import NOT_FOUND, describe_job

# Configure logging
logger = structlog.get_logger()

# Initialize FastAPI app
app = FastAPI(
    title="Wrapped Analysis Pipeline",
    description="API for starting and polling wallet transaction analyses",
    version=settings.VERSION
)

# Initialize services
coordinator: Optional[PipelineCoordinator] = None
status_projection: Optional[StatusProjection] = None
name_resolver: Optional[NameResolver] = None
notification_store: Optional[NotificationStore] = None


def build_services():
    """Wire the pipeline from settings"""
    cache = BlobCache()
    assistant = AssistantClient()
    store = NotificationStore()
    pipeline = PipelineCoordinator(
        cache=cache,
        fetcher=TransactionFetcher(),
        batch_analyzer=BatchAnalyzer(assistant),
        consolidator=Consolidator(assistant),
        notifier=Notifier(store),
    )
    projection = StatusProjection(
        cache, pipeline.registry, pipeline.lock, pipeline.keys)
    return pipeline, projection, NameResolver(), store


@app.on_event("startup")
async def startup_event():
    global coordinator, status_projection, name_resolver, notification_store
    try:
        coordinator, status_projection, name_resolver, notification_store = build_services()
    except Exception as e:
        logger.error("failed_to_initialize_pipeline", error=str(e))
        raise
    await coordinator.start()


@app.on_event("shutdown")
async def shutdown_event():
    if coordinator:
        await coordinator.stop()
    if notification_store:
        await notification_store.close()

# Configure rate limiting
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# Add metrics
Instrumentator().instrument(app).expose(app)


async def verify_api_key(x_api_key: Optional[str] = Header(default=None)):
    if not settings.API_ROUTE_SECRET:
        logger.error("api_route_secret_not_configured")
        raise HTTPException(
            status_code=401, detail="Unauthorized - Invalid or missing API key")
    if x_api_key != settings.API_ROUTE_SECRET:
        raise HTTPException(
            status_code=401, detail="Unauthorized - Invalid or missing API key")

# Routes


@app.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="healthy", version=settings.VERSION)


def _start_job_response(run: RunResult) -> StartJobResponse:
    if run.outcome is RunOutcome.CACHED:
        return StartJobResponse(
            jobId=run.address,
            outcome=run.outcome.value,
            status="complete",
            result=run.result,
        )

    progress = describe_job(run.job) if run.job else None
    return StartJobResponse(
        jobId=run.address,
        outcome=run.outcome.value,
        status=run.job.stage.value if run.job else "fetching",
        progress=progress,
    )


@app.post("/api/start-job", response_model=StartJobResponse,
          response_model_exclude_none=True,
          dependencies=[Depends(verify_api_key)])
@limiter.limit(settings.RATE_LIMIT_START_JOB)
async def start_job(request: Request, job_request: StartJobRequest):
    """
    Start (or join) the analysis pipeline for an address or name
    """
    try:
        address = await name_resolver.resolve(job_request.address)

        logger.info("start_job_requested", address=address, fid=job_request.fid)

        run = await coordinator.run_analysis(address, fid=job_request.fid)
        return _start_job_response(run)

    except ValueError as e:
        logger.error("validation_error", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("start_job_error", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


async def _job_status(job_id: str):
    try:
        status = await status_projection.get_status(job_id)
    except InvalidAddressError as e:
        logger.error("validation_error", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("job_status_error", job_id=job_id, error=str(e))
        raise HTTPException(
            status_code=500, detail="Failed to get analysis status")

    if status["status"] == NOT_FOUND:
        return JSONResponse(status_code=404, content=status)
    return status


@app.get("/api/job-status/{job_id}")
@limiter.limit(settings.RATE_LIMIT_STATUS)
async def get_job_status(request: Request, job_id: str):
    """
    Poll the status of the analysis for an address (the job id)
    """
    return await _job_status(job_id)


@app.get("/api/job-status")
@limiter.limit(settings.RATE_LIMIT_STATUS)
async def get_job_status_by_query(
    request: Request,
    job_id: str = Query(alias="jobId", description="Address to look up")
):
    return await _job_status(job_id)


@app.get("/api/worker-health")
async def worker_health():
    timestamp = datetime.now(timezone.utc).isoformat()
    if coordinator is None:
        return JSONResponse(status_code=500, content={
            "status": "unhealthy",
            "error": "Pipeline is not initialized",
            "timestamp": timestamp,
        })
    return {
        "status": "healthy",
        "timestamp": timestamp,
        "metrics": {
            "pending": coordinator.pending,
            "active": coordinator.active,
        },
    }


@app.post("/api/notification-details", dependencies=[Depends(verify_api_key)])
async def save_notification_details(details: NotificationDetailsRequest):
    try:
        await notification_store.set(
            details.fid, {"url": details.url, "token": details.token})
    except Exception as e:
        logger.error("notification_details_error", fid=details.fid, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"success": True}


@app.delete("/api/notification-details/{fid}",
            dependencies=[Depends(verify_api_key)])
async def delete_notification_details(fid: int):
    try:
        await notification_store.delete(fid)
    except Exception as e:
        logger.error("notification_details_error", fid=fid, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"success": True}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
