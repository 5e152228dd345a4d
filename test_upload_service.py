"""
End-to-end tests of the upload worker with a temporary database, temporary
blob stores and a scripted classifier.
"""
import csv
import io
import threading
from decimal import Decimal

from cooccur import config
from cooccur.models import Job, LlmCacheEntry, MasterRecord, JOB_COMPLETED, JOB_FAILED
from cooccur.services.classifier import ClassificationService, SqlClassificationCache
from cooccur.services.jobs import create_job, requeue_job
from cooccur.upload_service import (
    estimate_cost_cents,
    output_filename,
    process_upload_job,
    upload_key,
)
from conftest import HEADER, FakeClassifier, make_csv

PAIR_1 = "44054006|SNOMED__6809|RxNorm"
PAIR_2 = "44054006|SNOMED__Insulin"


def _submit(db, uploads, raw, owner="alice", name="pairs.csv"):
    job = create_job(db, owner_id=owner, upload_ref="pending", original_name=name)
    job.upload_ref = upload_key(owner, job.id)
    db.commit()
    uploads.put_text(job.upload_ref, raw)
    return job.id


def _classifier(session_factory, client=None, cache=None, **kwargs):
    return ClassificationService(
        cache=cache or SqlClassificationCache(session_factory),
        client=client if client is not None else FakeClassifier(),
        model="gpt-4o-mini",
        prompt_version="v1.0",
        sleep=lambda seconds: None,
        **kwargs
    )


def _run(job_id, session_factory, uploads, outputs, classifier):
    return process_upload_job(
        job_id,
        session_factory=session_factory,
        uploads=uploads,
        outputs=outputs,
        classifier=classifier,
        sleep=lambda seconds: None,
    )


def _reload(db, job_id):
    db.expire_all()
    return db.get(Job, job_id)


def _csv_rows(text):
    return list(csv.reader(io.StringIO(text)))


TWO_PAIRS = make_csv(
    {"cooc_obs": 10, "nA": 100, "nB": 50, "total_persons": 1000, "a_before_b": 6, "b_before_a": 4},
    {"code_b": "", "concept_b": "Insulin", "cooc_obs": 2, "nA": 100, "nB": 30, "total_persons": 1000},
    {"cooc_obs": 5, "nA": 20, "nB": 10, "total_persons": 1000},
)


# === Happy path ===

def test_process_upload_end_to_end(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, TWO_PAIRS)
    client = FakeClassifier()

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory, client))

    assert summary['status'] == 'completed'
    assert summary['rows_total'] == 3
    assert summary['pairs'] == 2
    assert summary['classified'] == 2
    assert client.calls == 2

    job = _reload(test_session, job_id)
    assert job.status == JOB_COMPLETED
    assert job.rows_total == 3
    assert job.rows_processed == 3
    assert job.tokens_in == 200
    assert job.tokens_out == 40
    assert job.output_ref == f"alice/{job_id}.out.csv"
    assert job.error is None

    record = test_session.get(MasterRecord, PAIR_1)
    assert (record.cooc_obs, record.n_a, record.n_b, record.total_persons) == (15, 120, 60, 2000)
    assert record.lift == Decimal("4.1667")
    assert record.source_count == 1
    assert record.relationship_code == "TREATS"


def test_enriched_output(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, TWO_PAIRS)
    _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))

    job = _reload(test_session, job_id)
    raw = outputs.get_bytes(job.output_ref)
    assert raw.startswith(b"\xef\xbb\xbf")

    rows = _csv_rows(outputs.get_text(job.output_ref))
    assert rows[0] == HEADER.split(",") + ["relationship_code", "relationship_type", "rationale"]
    assert len(rows) == 4
    # Input cells are passed through unchanged, in input order
    assert rows[1][8] == "10"
    assert rows[2][5] == ""
    assert rows[3][8] == "5"
    assert rows[1][-3:] == ["TREATS", "treats", "First-line therapy."]


def test_snapshot_output(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, TWO_PAIRS)
    _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))

    job = _reload(test_session, job_id)
    rows = _csv_rows(outputs.get_text(job.snapshot_ref))
    assert rows[0][0] == "pair_key"
    assert [r[0] for r in rows[1:]] == sorted([PAIR_1, PAIR_2])


def test_cost_estimate(monkeypatch, test_session, session_factory, uploads, outputs):
    monkeypatch.setattr(config, "LLM_COST_IN_CENTS_PER_1K", 1.0)
    monkeypatch.setattr(config, "LLM_COST_OUT_CENTS_PER_1K", 2.0)
    assert estimate_cost_cents(200, 40) == Decimal("0.2800")

    job_id = _submit(test_session, uploads, TWO_PAIRS)
    _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))

    assert _reload(test_session, job_id).cost_cents == Decimal("0.2800")


def test_output_filename():
    assert output_filename("pairs.csv", "enriched") == "pairs.enriched.csv"
    assert output_filename(None, "snapshot") == "upload.snapshot.csv"


# === Idempotency ===

def test_second_invocation_is_skipped(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, TWO_PAIRS)
    _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))

    assert summary['status'] == 'skipped'
    # Counts were merged once
    assert test_session.get(MasterRecord, PAIR_1).cooc_obs == 15


def test_concurrent_invocations_merge_once(test_session, session_factory, uploads, outputs):
    """Two workers started together on one job: one runs it, the other skips."""
    job_id = _submit(test_session, uploads, TWO_PAIRS)
    barrier = threading.Barrier(2)
    statuses = []

    def worker():
        classifier = _classifier(session_factory)
        barrier.wait()
        statuses.append(_run(job_id, session_factory, uploads, outputs, classifier)["status"])

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(statuses) == ["completed", "skipped"]
    assert _reload(test_session, job_id).status == JOB_COMPLETED
    record = test_session.get(MasterRecord, PAIR_1)
    assert record.cooc_obs == 15
    assert record.source_count == 1


def test_second_upload_merges_and_reuses_classification(test_session, session_factory, uploads, outputs):
    client = FakeClassifier()
    first = _submit(test_session, uploads, TWO_PAIRS)
    _run(first, session_factory, uploads, outputs, _classifier(session_factory, client))

    second = _submit(test_session, uploads, make_csv({"cooc_obs": 1, "nA": 1, "nB": 1, "total_persons": 10}))
    summary = _run(second, session_factory, uploads, outputs, _classifier(session_factory, client))

    assert summary['status'] == 'completed'
    assert summary['classified'] == 0
    assert client.calls == 2

    test_session.expire_all()
    record = test_session.get(MasterRecord, PAIR_1)
    assert record.cooc_obs == 16
    assert record.source_count == 2

    rows = _csv_rows(outputs.get_text(_reload(test_session, second).output_ref))
    assert rows[1][-3] == "TREATS"


def test_requeued_job_runs_again(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, "concept_a\n")
    assert _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))['status'] == 'failed'

    uploads.put_text(upload_key("alice", job_id), TWO_PAIRS)
    requeue_job(test_session, job_id)

    assert _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))['status'] == 'completed'
    assert _reload(test_session, job_id).error is None


def test_oversized_count_is_treated_as_zero(test_session, session_factory, uploads, outputs):
    raw = make_csv(
        {"cooc_obs": 10, "nA": 100, "nB": 50, "total_persons": 1000},
        {"code_b": "", "concept_b": "Insulin", "cooc_obs": "99999999999999999999", "nA": 100, "nB": 30, "total_persons": 1000},
    )
    job_id = _submit(test_session, uploads, raw)

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory))

    assert summary['status'] == 'completed'
    assert test_session.get(MasterRecord, PAIR_1).cooc_obs == 10
    insulin = test_session.get(MasterRecord, PAIR_2)
    assert insulin.cooc_obs == 0
    assert insulin.n_b == 30


# === Failures ===

def test_missing_column_fails_job(test_session, session_factory, uploads, outputs):
    """A header without nB fails the job before any row is processed."""
    raw = make_csv({"cooc_obs": 10}).replace(",nB,", ",", 1)
    job_id = _submit(test_session, uploads, raw)
    client = FakeClassifier()

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory, client))

    assert summary['status'] == 'failed'
    job = _reload(test_session, job_id)
    assert job.status == JOB_FAILED
    assert job.error.startswith("MalformedInput: Missing required column: nB")
    assert job.rows_processed == 0
    assert job.finished_at is not None
    assert test_session.query(MasterRecord).count() == 0
    assert client.calls == 0


def test_transient_failures_then_success(test_session, session_factory, uploads, outputs):
    """Two timeouts then an answer: the job completes with one cache entry."""
    job_id = _submit(test_session, uploads, make_csv({"cooc_obs": 3, "nA": 10, "nB": 10, "total_persons": 100}))
    client = FakeClassifier(failures=2)

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory, client, max_attempts=3))

    assert summary['status'] == 'completed'
    assert client.calls == 3
    assert test_session.query(LlmCacheEntry).count() == 1
    assert test_session.get(MasterRecord, PAIR_1).relationship_code == "TREATS"


def test_retries_exhausted_fails_job(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, make_csv({"cooc_obs": 3}))
    client = FakeClassifier(failures=10)

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory, client, max_attempts=3))

    assert summary['status'] == 'failed'
    job = _reload(test_session, job_id)
    assert job.status == JOB_FAILED
    assert job.error.startswith("ClassificationTransientFailure")
    assert test_session.query(LlmCacheEntry).count() == 0


def test_missing_upload_blob_fails_job(test_session, session_factory, uploads, outputs):
    job = create_job(test_session, owner_id="alice", upload_ref="alice/missing.csv")

    summary = _run(job.id, session_factory, uploads, outputs, _classifier(session_factory))

    assert summary['status'] == 'failed'
    assert _reload(test_session, job.id).error.startswith("BlobNotFound")


def test_budget_leaves_pairs_unclassified(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, TWO_PAIRS)
    client = FakeClassifier()

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory, client, max_calls=1))

    assert summary['status'] == 'completed'
    assert summary['classified'] == 1
    test_session.expire_all()
    unclassified = test_session.query(MasterRecord).filter(MasterRecord.llm_date.is_(None)).all()
    assert [r.pair_key for r in unclassified] == [PAIR_2]

    rows = _csv_rows(outputs.get_text(_reload(test_session, job_id).output_ref))
    blank = [r for r in rows[1:] if r[-3:] == ["", "", ""]]
    assert len(blank) == 1


def test_unparseable_answer_completes_job(test_session, session_factory, uploads, outputs):
    job_id = _submit(test_session, uploads, make_csv({"cooc_obs": 3}))
    client = FakeClassifier(content="no json here")

    summary = _run(job_id, session_factory, uploads, outputs, _classifier(session_factory, client))

    assert summary['status'] == 'completed'
    record = test_session.get(MasterRecord, PAIR_1)
    assert record.status == "unparseable"
    assert record.relationship_type == "unparseable"
