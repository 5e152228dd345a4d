"""
Operator maintenance: cache pruning and bulk job/blob cleanup.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from cooccur.models import Job, LlmCacheEntry, JOB_QUEUED, JOB_RUNNING
from cooccur.services.blobs import BlobStore
from cooccur.utils.time import days_ago

logger = logging.getLogger(__name__)


def prune_cache(db: Session, older_than_days: int = 30) -> int:
    """Delete classifier cache entries older than the cutoff. Returns count."""
    cutoff = days_ago(older_than_days)
    result = db.execute(
        delete(LlmCacheEntry)
        .where(LlmCacheEntry.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Pruned {result.rowcount} cache rows older than {older_than_days} days")
    return result.rowcount


def clear_jobs(db: Session, mode: str = "queuedRunning") -> int:
    """
    Delete jobs. mode "queuedRunning" removes only unfinished jobs,
    "all" removes every job. Master records are untouched.
    """
    query = delete(Job)
    if mode != "all":
        query = query.where(Job.status.in_([JOB_QUEUED, JOB_RUNNING]))
    result = db.execute(query.execution_options(synchronize_session=False))
    db.commit()
    logger.info(f"Deleted {result.rowcount} jobs (mode={mode})")
    return result.rowcount


def run_maintenance(
    db: Session,
    clear_jobs_flag: bool = False,
    job_mode: str = "queuedRunning",
    stores: Optional[List[BlobStore]] = None,
) -> Dict[str, int]:
    deleted = {"jobs": 0}
    if clear_jobs_flag:
        deleted["jobs"] = clear_jobs(db, job_mode)
    for store in stores or []:
        deleted[store.name] = store.clear()
        logger.info(f"Cleared {deleted[store.name]} blobs from {store.name}")
    return deleted
