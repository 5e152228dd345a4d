from typing import List, Optional, Dict
from pydantic import BaseModel, Field
from datetime import datetime


class JobResponse(BaseModel):
    """Job status (GET /api/jobs/{jobId})."""
    job_id: str = Field(..., alias="jobId")
    owner_id: str = Field(..., alias="ownerId")
    original_name: Optional[str] = Field(None, alias="originalName")
    status: str  # queued | running | completed | failed
    rows_total: int = Field(0, alias="rowsTotal")
    rows_processed: int = Field(0, alias="rowsProcessed")
    tokens_in: int = Field(0, alias="tokensIn")
    tokens_out: int = Field(0, alias="tokensOut")
    cost_cents: float = Field(0, alias="costCents")
    output_ref: Optional[str] = Field(None, alias="outputRef")
    snapshot_ref: Optional[str] = Field(None, alias="snapshotRef")
    error: Optional[str] = None
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    finished_at: Optional[datetime] = Field(None, alias="finishedAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            jobId=job.id,
            ownerId=job.owner_id,
            originalName=job.original_name,
            status=job.status,
            rowsTotal=job.rows_total or 0,
            rowsProcessed=job.rows_processed or 0,
            tokensIn=job.tokens_in or 0,
            tokensOut=job.tokens_out or 0,
            costCents=float(job.cost_cents or 0),
            outputRef=job.output_ref,
            snapshotRef=job.snapshot_ref,
            error=job.error,
            createdAt=job.created_at,
            startedAt=job.started_at,
            finishedAt=job.finished_at,
        )


class JobListResponse(BaseModel):
    """Response for GET /api/jobs."""
    ok: bool = True
    jobs: List[JobResponse]


class UploadResponse(BaseModel):
    """Response for POST /api/uploads."""
    ok: bool = True
    job_id: str = Field(..., alias="jobId")
    output_key: str = Field(..., alias="outputKey")

    class Config:
        populate_by_name = True


class RequeueRequest(BaseModel):
    job_id: str = Field(..., alias="jobId")

    class Config:
        populate_by_name = True


class RequeueResponse(BaseModel):
    ok: bool = True
    job_id: str = Field(..., alias="jobId")

    class Config:
        populate_by_name = True


class MaintenanceRequest(BaseModel):
    clear_jobs: bool = Field(False, alias="clearJobs")
    job_mode: str = Field("queuedRunning", alias="jobMode")  # queuedRunning | all
    clear_blobs: bool = Field(False, alias="clearBlobs")

    class Config:
        populate_by_name = True


class MaintenanceResponse(BaseModel):
    ok: bool = True
    deleted: Dict[str, int]


class CleanupResponse(BaseModel):
    ok: bool = True
    pruned: int


class HealthResponse(BaseModel):
    db: bool
    blobs: bool
    notes: List[str] = Field(default_factory=list)


class SettingsResponse(BaseModel):
    """Response for GET /api/settings."""
    openai_model: str = Field(..., alias="openaiModel")
    prompt_version: str = Field(..., alias="promptVersion")
    llm_enabled: bool = Field(..., alias="llmEnabled")
    llm_max_calls_per_job: int = Field(..., alias="llmMaxCallsPerJob")
    llm_batch_size: int = Field(..., alias="llmBatchSize")
    cache_ttl_days: int = Field(..., alias="cacheTtlDays")
    admin_api_key_set: bool = Field(..., alias="adminApiKeySet")

    class Config:
        populate_by_name = True
