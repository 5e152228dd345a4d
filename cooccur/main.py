import logging
import uuid
from datetime import date
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Security, UploadFile, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cooccur import config
from cooccur.db import SessionLocal, get_db, init_db as init_database
from cooccur.errors import MalformedInput
from cooccur.maintenance import prune_cache, run_maintenance
from cooccur.models import Job, JOB_COMPLETED
from cooccur.schemas import (
    CleanupResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    MaintenanceRequest,
    MaintenanceResponse,
    RequeueRequest,
    RequeueResponse,
    SettingsResponse,
    UploadResponse,
)
from cooccur.services.blobs import BlobNotFound, BlobStore
from cooccur.services.jobs import create_job, requeue_job
from cooccur.services.output import iter_master_csv
from cooccur.services.rows import read_header
from cooccur.upload_service import (
    output_filename,
    output_key,
    output_store,
    process_upload_job,
    upload_key,
    upload_store,
)

# Module logger
logger = logging.getLogger(__name__)
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)

# Initialize database on startup
init_database()

# Security scheme for Swagger UI
security = HTTPBearer()

app = FastAPI(title="Co-occurrence Aggregator API", version="0.1.0")

# Allow CORS for local dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"


def get_api_key(credentials: HTTPAuthorizationCredentials = Security(security)):
    if not config.APP_API_KEY:
        raise HTTPException(status_code=500, detail="Server misconfigured: APP_API_KEY not set.")
    if credentials.credentials != config.APP_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


def get_admin_token(authorization: Optional[str] = Header(None)):
    token = authorization[7:] if authorization and authorization.startswith("Bearer ") else ""
    if not config.ADMIN_TOKEN or token != config.ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return token


def get_session_factory():
    return SessionLocal


def get_uploads_store() -> BlobStore:
    return upload_store()


def get_outputs_store() -> BlobStore:
    return output_store()


def get_worker():
    """Callable run in the background for a queued job id."""
    return process_upload_job


def _csv_download(data: bytes, filename: str) -> Response:
    return Response(
        content=data,
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/health", response_model=HealthResponse)
def health(
    db: Session = Depends(get_db),
    outputs: BlobStore = Depends(get_outputs_store),
):
    out = HealthResponse(db=False, blobs=False)

    # DB check
    try:
        db.execute(text("select 1"))
        out.db = True
    except SQLAlchemyError as e:
        out.notes.append(f"DB error: {e}")

    # Blobs R/W check
    key = f"healthcheck-{uuid.uuid4().hex}.txt"
    try:
        outputs.put_text(key, "ok")
        out.blobs = outputs.get_text(key) == "ok"
        outputs.delete(key)
    except (OSError, BlobNotFound) as e:
        out.notes.append(f"Blobs error: {e}")

    return out


@app.get("/api/settings", response_model=SettingsResponse)
def get_settings():
    return SettingsResponse(
        openaiModel=config.OPENAI_MODEL,
        promptVersion=config.PROMPT_VERSION,
        llmEnabled=bool(config.OPENAI_API_KEY),
        llmMaxCallsPerJob=config.LLM_MAX_CALLS_PER_JOB,
        llmBatchSize=config.LLM_BATCH_SIZE,
        cacheTtlDays=config.CACHE_TTL_DAYS,
        adminApiKeySet=bool(config.APP_API_KEY),
    )


# --- Upload / jobs ---

@app.post("/api/uploads", response_model=UploadResponse)
async def upload_file(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    owner_id: str = Form("anonymous"),
    db: Session = Depends(get_db),
    uploads: BlobStore = Depends(get_uploads_store),
    worker=Depends(get_worker),
    api_key: str = Depends(get_api_key),
):
    """
    Upload a co-occurrence CSV and queue it for processing.
    The header is checked here so that obviously bad files never reach the worker.
    """
    filename = file.filename or "upload.csv"
    ext = Path(filename).suffix.lower()
    if ext != ".csv":
        raise HTTPException(status_code=400, detail=f"Unsupported file type: {ext}. Supported: .csv")

    data = await file.read()
    try:
        read_header(data.decode("utf-8-sig"))
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File is not valid UTF-8")
    except MalformedInput as e:
        raise HTTPException(status_code=400, detail=str(e))

    job_id = str(uuid.uuid4())
    key = upload_key(owner_id, job_id)
    try:
        uploads.put_bytes(key, data)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid owner_id: {owner_id}")
    except OSError as e:
        logger.error(f"Upload blob write failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Upload failed: {e}")

    job = create_job(db, owner_id=owner_id, upload_ref=key, original_name=filename, job_id=job_id)
    logger.info(f"Queued job {job.id} for {filename}")

    # Process in background
    background_tasks.add_task(worker, job.id)

    return UploadResponse(jobId=job.id, outputKey=output_key(owner_id, job.id))


@app.get("/api/jobs", response_model=JobListResponse)
def list_jobs(
    limit: int = 200,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    api_key: str = Depends(get_api_key),
):
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status)
    jobs = query.order_by(Job.created_at.desc()).limit(min(limit, 200)).all()
    return JobListResponse(jobs=[JobResponse.from_job(j) for j in jobs])


@app.get("/api/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    db: Session = Depends(get_db),
    api_key: str = Depends(get_api_key),
):
    job = db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@app.get("/api/downloads/{job_id}")
def download_output(
    job_id: str,
    db: Session = Depends(get_db),
    outputs: BlobStore = Depends(get_outputs_store),
    api_key: str = Depends(get_api_key),
):
    """Enriched CSV of a completed job."""
    job = db.get(Job, job_id)
    if not job or job.status != JOB_COMPLETED or not job.output_ref:
        raise HTTPException(status_code=404, detail="Output not available")
    try:
        data = outputs.get_bytes(job.output_ref)
    except BlobNotFound:
        raise HTTPException(status_code=404, detail="Output blob missing")
    return _csv_download(data, output_filename(job.original_name, "enriched"))


@app.get("/api/downloads/{job_id}/snapshot")
def download_snapshot(
    job_id: str,
    db: Session = Depends(get_db),
    outputs: BlobStore = Depends(get_outputs_store),
    api_key: str = Depends(get_api_key),
):
    """Master records touched by a completed job."""
    job = db.get(Job, job_id)
    if not job or job.status != JOB_COMPLETED or not job.snapshot_ref:
        raise HTTPException(status_code=404, detail="Snapshot not available")
    try:
        data = outputs.get_bytes(job.snapshot_ref)
    except BlobNotFound:
        raise HTTPException(status_code=404, detail="Snapshot blob missing")
    return _csv_download(data, output_filename(job.original_name, "snapshot"))


@app.get("/api/master/download")
def download_master(
    session_factory=Depends(get_session_factory),
    api_key: str = Depends(get_api_key),
):
    """Every master record as CSV, ascending by pair key."""
    def stream():
        db = session_factory()
        try:
            yield from iter_master_csv(db)
        finally:
            db.close()

    filename = f"master-records-{date.today().isoformat()}.csv"
    return StreamingResponse(
        stream(),
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- Admin endpoints ---

@app.post("/api/admin/requeue", response_model=RequeueResponse)
def requeue(
    request: RequeueRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    worker=Depends(get_worker),
    api_key: str = Depends(get_api_key),
):
    """Reset a job to queued and run the worker for it again."""
    if not requeue_job(db, request.job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    background_tasks.add_task(worker, request.job_id)
    return RequeueResponse(jobId=request.job_id)


@app.post("/api/admin/cleanup", response_model=CleanupResponse)
def cleanup(
    db: Session = Depends(get_db),
    token: str = Depends(get_admin_token),
):
    """Prune classifier cache entries older than CACHE_TTL_DAYS."""
    return CleanupResponse(pruned=prune_cache(db, config.CACHE_TTL_DAYS))


@app.post("/api/admin/maintenance", response_model=MaintenanceResponse)
def maintenance(
    request: MaintenanceRequest,
    db: Session = Depends(get_db),
    uploads: BlobStore = Depends(get_uploads_store),
    outputs: BlobStore = Depends(get_outputs_store),
    token: str = Depends(get_admin_token),
):
    try:
        deleted = run_maintenance(
            db,
            clear_jobs_flag=request.clear_jobs,
            job_mode="all" if request.job_mode == "all" else "queuedRunning",
            stores=[uploads, outputs] if request.clear_blobs else None,
        )
    except SQLAlchemyError as e:
        logger.error(f"Maintenance failed: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Maintenance failed: {e}")
    return MaintenanceResponse(deleted=deleted)
