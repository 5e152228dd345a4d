"""
Command-line entry points for operators.

    python -m cooccur.cli init-db
    python -m cooccur.cli submit pairs.csv --owner alice [--run]
    python -m cooccur.cli run-job <job_id>
    python -m cooccur.cli requeue <job_id> [--run]
    python -m cooccur.cli prune-cache --days 30
    python -m cooccur.cli export-master master.csv
"""
import argparse
import json
import logging
import sys
import uuid
from pathlib import Path

from cooccur import config
from cooccur.db import SessionLocal, init_db
from cooccur.errors import MalformedInput
from cooccur.maintenance import prune_cache
from cooccur.services.jobs import create_job, requeue_job
from cooccur.services.output import iter_master_csv
from cooccur.services.rows import read_header
from cooccur.upload_service import process_upload_job, upload_key, upload_store

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Concept-pair co-occurrence aggregator")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    submit = sub.add_parser("submit", help="Store a CSV and queue a job for it")
    submit.add_argument("input_file", type=str)
    submit.add_argument("--owner", type=str, default="cli")
    submit.add_argument("--run", action="store_true", help="Process the job right away")

    run = sub.add_parser("run-job", help="Process a queued job")
    run.add_argument("job_id", type=str)

    requeue = sub.add_parser("requeue", help="Reset a job to queued")
    requeue.add_argument("job_id", type=str)
    requeue.add_argument("--run", action="store_true", help="Process the job right away")

    prune = sub.add_parser("prune-cache", help="Delete old classifier cache entries")
    prune.add_argument("--days", type=int, default=config.CACHE_TTL_DAYS)

    export = sub.add_parser("export-master", help="Write every master record to a CSV file")
    export.add_argument("output_file", type=str)

    return parser.parse_args(argv)


def submit_file(input_file: str, owner: str) -> str:
    path = Path(input_file)
    data = path.read_bytes()
    read_header(data.decode("utf-8-sig"))

    job_id = str(uuid.uuid4())
    key = upload_key(owner, job_id)
    upload_store().put_bytes(key, data)

    db = SessionLocal()
    try:
        create_job(db, owner_id=owner, upload_ref=key, original_name=path.name, job_id=job_id)
    finally:
        db.close()
    logger.info(f"Queued job {job_id} for {path.name}")
    return job_id


def run_job(job_id: str) -> int:
    summary = process_upload_job(job_id)
    print(json.dumps(summary, indent=2))
    return 1 if summary['status'] == 'failed' else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    init_db()

    if args.command == "init-db":
        logger.info(f"Database ready at {config.DATABASE_URL}")
        return 0

    if args.command == "submit":
        try:
            job_id = submit_file(args.input_file, args.owner)
        except MalformedInput as e:
            logger.error(f"Rejected {args.input_file}: {e}")
            return 2
        except ValueError as e:
            logger.error(f"Rejected owner {args.owner}: {e}")
            return 2
        print(job_id)
        return run_job(job_id) if args.run else 0

    if args.command == "run-job":
        return run_job(args.job_id)

    if args.command == "requeue":
        db = SessionLocal()
        try:
            found = requeue_job(db, args.job_id)
        finally:
            db.close()
        if not found:
            logger.error(f"Job {args.job_id} not found")
            return 1
        return run_job(args.job_id) if args.run else 0

    if args.command == "prune-cache":
        db = SessionLocal()
        try:
            prune_cache(db, args.days)
        finally:
            db.close()
        return 0

    if args.command == "export-master":
        db = SessionLocal()
        try:
            with open(args.output_file, "w", newline="", encoding="utf-8") as f:
                for chunk in iter_master_csv(db):
                    f.write(chunk)
        finally:
            db.close()
        logger.info(f"Wrote master records to {args.output_file}")
        return 0

    return 1


if __name__ == '__main__':
    sys.exit(main())
