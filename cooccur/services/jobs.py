"""
Job lifecycle: queued -> running -> completed | failed, plus operator requeue.

Every transition is a conditional UPDATE so that concurrent invocations for
the same job agree on a single owner.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cooccur import config
from cooccur.errors import AlreadyClaimed
from cooccur.models import Job, JOB_QUEUED, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED
from cooccur.utils.time import utcnow

logger = logging.getLogger(__name__)


def create_job(db: Session, owner_id: str, upload_ref: str, original_name: Optional[str] = None, job_id: Optional[str] = None) -> Job:
    """Create a queued job. Used by the submission endpoint and the CLI."""
    job = Job(
        owner_id=owner_id,
        upload_ref=upload_ref,
        original_name=original_name,
        status=JOB_QUEUED,
    )
    if job_id:
        job.id = job_id
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def claim_job(db: Session, job_id: str) -> None:
    """
    Move a job from queued to running.

    Raises:
        AlreadyClaimed: the job is not queued (another invocation owns it,
            it already finished, or it does not exist)
    """
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JOB_QUEUED)
        .values(status=JOB_RUNNING, started_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        raise AlreadyClaimed(job_id)
    logger.info(f"Job {job_id} claimed")


def report_progress(
    session_factory,
    job_id: str,
    processed: int,
    total: int,
    tokens_in: int = 0,
    tokens_out: int = 0,
    cost_cents: Optional[Decimal] = None,
) -> bool:
    """
    Store progress counters. Best-effort: a store error is logged, not raised.
    """
    values = {
        "rows_processed": processed,
        "rows_total": total,
        "tokens_in": tokens_in,
        "tokens_out": tokens_out,
    }
    if cost_cents is not None:
        values["cost_cents"] = cost_cents
    db = session_factory()
    try:
        db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_RUNNING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not record progress for job {job_id}: {e}")
        return False
    finally:
        db.close()


def complete_job(
    db: Session,
    job_id: str,
    output_ref: str,
    snapshot_ref: Optional[str],
    rows_total: int,
    rows_processed: int,
) -> bool:
    """Move a running job to completed and record where its output went."""
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JOB_RUNNING)
        .values(
            status=JOB_COMPLETED,
            finished_at=utcnow(),
            output_ref=output_ref,
            snapshot_ref=snapshot_ref,
            rows_total=rows_total,
            rows_processed=rows_processed,
            error=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning(f"Job {job_id} was not running when completing")
        return False
    logger.info(f"Job {job_id} completed: {rows_processed}/{rows_total} rows")
    return True


def fail_job(session_factory, job_id: str, cause: str) -> bool:
    """
    Move a running job to failed with a bounded cause string.

    Unknown ids are a silent no-op. Never raises: this runs inside the
    worker's last error boundary.
    """
    message = (cause or "unknown error")[:config.JOB_ERROR_MAX_LEN]
    db = session_factory()
    try:
        result = db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_RUNNING)
            .values(status=JOB_FAILED, finished_at=utcnow(), error=message)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.info(f"Job {job_id} failed: {message}")
        return bool(result.rowcount)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not mark job {job_id} failed: {e}")
        return False
    finally:
        db.close()


def requeue_job(db: Session, job_id: str) -> bool:
    """
    Reset a job to queued, clearing everything a previous run wrote.

    Returns False if the job does not exist.
    """
    result = db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(
            status=JOB_QUEUED,
            error=None,
            started_at=None,
            finished_at=None,
            rows_total=0,
            rows_processed=0,
            tokens_in=0,
            tokens_out=0,
            cost_cents=0,
            output_ref=None,
            snapshot_ref=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(f"Job {job_id} requeued")
    return bool(result.rowcount)
