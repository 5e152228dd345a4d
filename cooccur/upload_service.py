"""
Background worker for uploaded co-occurrence files.
Claims a queued job, merges the upload into the master records, classifies
new pairs and writes the enriched CSV and the touched-pairs snapshot.
"""
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Dict, Optional

from cooccur import config
from cooccur.db import SessionLocal
from cooccur.errors import AlreadyClaimed
from cooccur.models import Job
from cooccur.services.aggregate import AggregateGateway
from cooccur.services.blobs import BlobStore, read_text_with_retry
from cooccur.services.classifier import ClassificationService, OpenAIClassifier, SqlClassificationCache
from cooccur.services.jobs import claim_job, complete_job, fail_job, report_progress
from cooccur.services.output import enrich_rows, snapshot_touched_pairs
from cooccur.services.rows import accumulate, parse_rows, read_header

logger = logging.getLogger(__name__)

# Progress is written every N merged pairs
PROGRESS_EVERY = 100


def upload_store() -> BlobStore:
    return BlobStore(config.BLOB_DIR, config.UPLOADS_STORE)


def output_store() -> BlobStore:
    return BlobStore(config.BLOB_DIR, config.OUTPUTS_STORE)


def upload_key(owner_id: str, job_id: str) -> str:
    return f"{owner_id}/{job_id}.csv"


def output_key(owner_id: str, job_id: str) -> str:
    return f"{owner_id}/{job_id}.out.csv"


def snapshot_key(owner_id: str, job_id: str) -> str:
    return f"{owner_id}/{job_id}.snapshot.csv"


def output_filename(original_name: Optional[str], suffix: str = "enriched") -> str:
    """Download name derived from the uploaded file, e.g. pairs.enriched.csv."""
    stem = Path(original_name or "upload.csv").stem or "upload"
    return f"{stem}.{suffix}.csv"


def estimate_cost_cents(tokens_in: int, tokens_out: int) -> Decimal:
    cents = (
        Decimal(tokens_in) / 1000 * Decimal(str(config.LLM_COST_IN_CENTS_PER_1K))
        + Decimal(tokens_out) / 1000 * Decimal(str(config.LLM_COST_OUT_CENTS_PER_1K))
    )
    return cents.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def build_classification_service(session_factory, sleep=time.sleep) -> ClassificationService:
    """Per-job classifier wired to the SQL cache and, if configured, OpenAI."""
    client = None
    if config.OPENAI_API_KEY:
        client = OpenAIClassifier(api_key=config.OPENAI_API_KEY, model=config.OPENAI_MODEL)
    else:
        logger.warning("OPENAI_API_KEY not set; only cached classifications will be used")
    return ClassificationService(
        cache=SqlClassificationCache(session_factory),
        client=client,
        model=config.OPENAI_MODEL,
        prompt_version=config.PROMPT_VERSION,
        max_calls=config.LLM_MAX_CALLS_PER_JOB,
        max_attempts=config.LLM_MAX_ATTEMPTS,
        concurrency=config.LLM_CONCURRENCY,
        sleep=sleep,
    )


def process_upload_job(
    job_id: str,
    session_factory=None,
    uploads: Optional[BlobStore] = None,
    outputs: Optional[BlobStore] = None,
    classifier: Optional[ClassificationService] = None,
    gateway: Optional[AggregateGateway] = None,
    batch_size: Optional[int] = None,
    sleep=time.sleep,
) -> Dict:
    """
    Process one upload job end to end.

    A second invocation for the same job (or one for a job that is not
    queued) returns status "skipped" without touching anything.

    Returns:
        {
            'status': 'completed' | 'failed' | 'skipped',
            'rows_total': int,
            'pairs': int,
            'classified': int,
            'error': Optional[str]
        }
    """
    session_factory = session_factory or SessionLocal
    summary = {'status': 'skipped', 'rows_total': 0, 'pairs': 0, 'classified': 0, 'error': None}

    db = session_factory()
    try:
        try:
            claim_job(db, job_id)
        except AlreadyClaimed:
            logger.info(f"Job {job_id} is not queued; nothing to do")
            return summary

        uploads = uploads or upload_store()
        outputs = outputs or output_store()
        gateway = gateway or AggregateGateway(session_factory, max_attempts=config.STORE_MAX_ATTEMPTS, sleep=sleep)
        classifier = classifier or build_classification_service(session_factory, sleep=sleep)
        batch_size = batch_size or config.LLM_BATCH_SIZE

        job = db.get(Job, job_id)
        owner_id = job.owner_id

        # Parse file
        logger.info(f"Job {job_id}: reading {job.upload_ref}")
        raw = read_text_with_retry(uploads, job.upload_ref, sleep=sleep)
        header = read_header(raw)
        rows = list(parse_rows(raw))
        rows_total = len(rows)
        summary['rows_total'] = rows_total
        report_progress(session_factory, job_id, 0, rows_total)
        logger.info(f"Job {job_id}: parsed {rows_total} rows")

        # Merge per-pair deltas, then recompute from the persisted totals
        deltas = accumulate(rows)
        summary['pairs'] = len(deltas)
        merged_rows = 0
        created = 0
        for i, key in enumerate(sorted(deltas), 1):
            delta = deltas[key]
            if gateway.merge_counts(key, delta.identity, delta.counts):
                created += 1
            gateway.recompute_stats(key)
            merged_rows += delta.rows
            if i % PROGRESS_EVERY == 0:
                report_progress(session_factory, job_id, merged_rows, rows_total)
        logger.info(f"Job {job_id}: merged {len(deltas)} pairs ({created} new)")

        # Classify pairs that have no classification yet
        pending = gateway.unclassified_pairs(deltas.keys())

        def on_batch(done: int) -> None:
            report_progress(
                session_factory, job_id, merged_rows, rows_total,
                tokens_in=classifier.tokens_in,
                tokens_out=classifier.tokens_out,
                cost_cents=estimate_cost_cents(classifier.tokens_in, classifier.tokens_out),
            )

        results = classifier.classify_batch(pending, batch_size=batch_size, on_batch=on_batch)
        for key in sorted(results):
            if gateway.apply_classification(key, results[key]):
                summary['classified'] += 1
        logger.info(
            f"Job {job_id}: classified {summary['classified']}/{len(pending)} pairs "
            f"({classifier.external_calls} calls, {classifier.cache_hits} cache hits)"
        )

        # Output CSVs
        classifications = gateway.classifications(deltas.keys())
        out_ref = output_key(owner_id, job_id)
        outputs.put_text(out_ref, enrich_rows(header, rows, classifications), bom=True)

        snap_ref = snapshot_key(owner_id, job_id)
        snap_db = session_factory()
        try:
            outputs.put_text(snap_ref, snapshot_touched_pairs(snap_db, deltas.keys()), bom=True)
        finally:
            snap_db.close()

        report_progress(
            session_factory, job_id, rows_total, rows_total,
            tokens_in=classifier.tokens_in,
            tokens_out=classifier.tokens_out,
            cost_cents=estimate_cost_cents(classifier.tokens_in, classifier.tokens_out),
        )
        complete_job(db, job_id, out_ref, snap_ref, rows_total, rows_total)
        summary['status'] = 'completed'
        return summary

    except Exception as e:
        logger.error(f"Upload job {job_id} failed: {e}", exc_info=True)
        summary['status'] = 'failed'
        summary['error'] = f"{type(e).__name__}: {e}"
        fail_job(session_factory, job_id, summary['error'])
        db.rollback()
        return summary
    finally:
        db.close()
