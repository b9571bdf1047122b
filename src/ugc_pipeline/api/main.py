import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from ugc_pipeline.config import configure_logging, settings
from ugc_pipeline.db import init_db
from ugc_pipeline.generation import KieClient
from ugc_pipeline.jobs import JobStore, VideoJob
from ugc_pipeline.ledger import CreditLedger, InsufficientCredits
from ugc_pipeline.orchestrator import (
    DownloadExpired,
    DownloadNotReady,
    InvalidRequest,
    JobAccessDenied,
    JobNotFound,
    PipelineOrchestrator,
)
from ugc_pipeline.schemas import AdminGrantRequest, ConfirmVideoRequest, CreditBalanceResponse
from ugc_pipeline.states import InvalidTransition
from ugc_pipeline.storage import S3AssetStore

logger = logging.getLogger(__name__)

_orchestrator: PipelineOrchestrator | None = None


def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator(
            store=JobStore(),
            ledger=CreditLedger(),
            generation=KieClient(),
            assets=S3AssetStore(),
        )
    return _orchestrator


Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]


def get_ledger(orchestrator: Orchestrator) -> CreditLedger:
    return orchestrator.ledger


Ledger = Annotated[CreditLedger, Depends(get_ledger)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    orchestrator = get_orchestrator()
    resumed = orchestrator.resume_stale()
    if resumed:
        logger.info("Resumed %d stale job(s) at startup", len(resumed))
    sweeper = asyncio.create_task(orchestrator.run_sweeper(settings.sweep_interval_sec))
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await orchestrator.shutdown()


app = FastAPI(title="UGC Video Pipeline", version=settings.app_version, lifespan=lifespan)

_HTTP_ERRORS: dict[type[Exception], tuple[int, str]] = {
    InvalidRequest: (400, "Invalid request"),
    InsufficientCredits: (402, "Insufficient credits"),
    JobAccessDenied: (403, "You do not own this video"),
    JobNotFound: (404, "Video not found"),
    InvalidTransition: (409, "Video cannot change state from its current status"),
    DownloadNotReady: (409, "Video is not ready for download"),
    DownloadExpired: (410, "Download link has expired"),
}
_MAPPED = tuple(_HTTP_ERRORS)


def _http_error(exc: Exception) -> HTTPException:
    for cls, (code, default) in _HTTP_ERRORS.items():
        if isinstance(exc, cls):
            detail = default if isinstance(exc, (JobNotFound, JobAccessDenied, InvalidTransition)) else str(exc) or default
            return HTTPException(status_code=code, detail=detail)
    return HTTPException(status_code=500, detail="Internal server error")


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


def _job(job: VideoJob) -> dict:
    return job.model_dump(mode="json", exclude={"worker_id", "lease_expires_at"})


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@app.get("/health")
def health() -> dict:
    return envelope({"service": "ugc-video-pipeline"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "ugc-video-pipeline", "version": settings.app_version})


@app.post("/v1/videos")
async def confirm_video(payload: ConfirmVideoRequest, orchestrator: Orchestrator) -> dict:
    try:
        job = await asyncio.to_thread(
            orchestrator.confirm,
            payload.user_id,
            payload.script,
            payload.style,
            visual_summary=payload.visual_summary,
            reference_image_url=payload.reference_image_url,
        )
    except _MAPPED as exc:
        raise _http_error(exc) from exc
    orchestrator.launch(job.id)
    return envelope(_job(job))


@app.get("/v1/videos")
def list_videos(
    orchestrator: Orchestrator,
    user_id: str = Query(...),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> dict:
    jobs, total = orchestrator.list_jobs(user_id, page=page, limit=limit)
    return envelope({"videos": [_job(j) for j in jobs], "total": total, "page": page, "limit": limit})


@app.get("/v1/videos/{job_id}")
def get_video(job_id: str, orchestrator: Orchestrator, user_id: str = Query(...)) -> dict:
    try:
        job = orchestrator.get(user_id, job_id)
    except _MAPPED as exc:
        raise _http_error(exc) from exc
    return envelope(_job(job))


@app.get("/v1/videos/{job_id}/download")
def download_video(job_id: str, orchestrator: Orchestrator, user_id: str = Query(...)) -> dict:
    try:
        url = orchestrator.download_url(user_id, job_id)
    except _MAPPED as exc:
        raise _http_error(exc) from exc
    return envelope({"download_url": url})


@app.delete("/v1/videos/{job_id}")
async def cancel_video(job_id: str, orchestrator: Orchestrator, user_id: str = Query(...)) -> dict:
    try:
        job = await asyncio.to_thread(orchestrator.cancel, user_id, job_id)
    except _MAPPED as exc:
        raise _http_error(exc) from exc
    return envelope(_job(job))


@app.post("/v1/videos/{job_id}/retry")
async def retry_video(job_id: str, orchestrator: Orchestrator, user_id: str = Query(...)) -> dict:
    try:
        job = await asyncio.to_thread(orchestrator.retry, user_id, job_id)
    except InvalidRequest as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except _MAPPED as exc:
        raise _http_error(exc) from exc
    orchestrator.launch(job.id)
    return envelope(_job(job))


@app.get("/v1/credits/{user_id}")
def get_credits(user_id: str, ledger: Ledger) -> dict:
    balance = CreditBalanceResponse(user_id=user_id, credit_balance=ledger.balance(user_id)).model_dump()
    history, total = ledger.history(user_id, limit=20)
    return envelope(
        {
            "balance": balance,
            "recent_ledger": [t.model_dump(mode="json") for t in history],
            "total_transactions": total,
        }
    )


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(
    payload: AdminGrantRequest,
    ledger: Ledger,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    try:
        ledger.grant(payload.user_id, payload.credits, entry_type=payload.type, description=payload.note)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return envelope({"user_id": payload.user_id, "credit_balance": ledger.balance(payload.user_id)})
