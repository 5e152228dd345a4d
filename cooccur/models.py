"""
SQLAlchemy ORM models for the co-occurrence aggregator.
Implements three tables: jobs, master_records and llm_cache.
"""
import uuid

from sqlalchemy import Column, Integer, BigInteger, Text, String, DateTime, Numeric, Index
from sqlalchemy.sql import func
from cooccur.db import Base


JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

RECORD_PENDING = "pending"
RECORD_CLASSIFIED = "classified"
RECORD_UNPARSEABLE = "unparseable"

# Count columns merged by increment; derived columns are overwritten
COUNT_FIELDS = (
    "cooc_obs",
    "n_a",
    "n_b",
    "total_persons",
    "cooc_event_count",
    "a_before_b",
    "b_before_a",
)


def _new_job_id() -> str:
    return str(uuid.uuid4())


class Job(Base):
    """
    One processing run over one uploaded file.
    status: queued | running | completed | failed
    """
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=_new_job_id)
    owner_id = Column(Text, nullable=False)
    upload_ref = Column(Text, nullable=False)  # blob key of the raw CSV
    original_name = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=JOB_QUEUED)
    rows_total = Column(Integer, nullable=False, default=0)
    rows_processed = Column(Integer, nullable=False, default=0)
    tokens_in = Column(Integer, nullable=False, default=0)
    tokens_out = Column(Integer, nullable=False, default=0)
    cost_cents = Column(Numeric(12, 4), nullable=False, default=0)
    output_ref = Column(Text, nullable=True)  # enriched CSV blob key
    snapshot_ref = Column(Text, nullable=True)  # touched-pairs CSV blob key
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_created_at", "created_at"),
    )


class MasterRecord(Base):
    """
    Aggregate for one concept pair, merged across every upload.
    PK: pair_key (see services.rows.canonical_pair_key)
    """
    __tablename__ = "master_records"

    pair_key = Column(Text, primary_key=True, nullable=False)

    concept_a = Column(Text, nullable=False, default="")
    code_a = Column(String(64), nullable=False, default="")
    system_a = Column(String(32), nullable=False, default="")
    type_a = Column(String(64), nullable=False, default="")
    concept_b = Column(Text, nullable=False, default="")
    code_b = Column(String(64), nullable=False, default="")
    system_b = Column(String(32), nullable=False, default="")
    type_b = Column(String(64), nullable=False, default="")

    cooc_obs = Column(BigInteger, nullable=False, default=0)
    n_a = Column(BigInteger, nullable=False, default=0)
    n_b = Column(BigInteger, nullable=False, default=0)
    total_persons = Column(BigInteger, nullable=False, default=0)
    cooc_event_count = Column(BigInteger, nullable=False, default=0)
    a_before_b = Column(BigInteger, nullable=False, default=0)
    b_before_a = Column(BigInteger, nullable=False, default=0)

    expected_obs = Column(Numeric(18, 2), nullable=False, default=0)
    lift = Column(Numeric(18, 4), nullable=False, default=0)
    lift_lower_95 = Column(Numeric(18, 4), nullable=False, default=0)
    lift_upper_95 = Column(Numeric(18, 4), nullable=False, default=0)
    z_score = Column(Numeric(18, 4), nullable=False, default=0)
    ab_h = Column(Numeric(18, 2), nullable=False, default=0)
    a_only_h = Column(Numeric(18, 2), nullable=False, default=0)
    b_only_h = Column(Numeric(18, 2), nullable=False, default=0)
    neither_h = Column(Numeric(18, 2), nullable=False, default=0)
    odds_ratio = Column(Numeric(18, 4), nullable=False, default=0)
    or_lower_95 = Column(Numeric(18, 4), nullable=False, default=0)
    or_upper_95 = Column(Numeric(18, 4), nullable=False, default=0)
    directionality_ratio = Column(Numeric(18, 4), nullable=False, default=0)
    dir_lower_95 = Column(Numeric(18, 4), nullable=False, default=0)
    dir_upper_95 = Column(Numeric(18, 4), nullable=False, default=0)
    confidence_a_to_b = Column(Numeric(18, 4), nullable=False, default=0)
    confidence_b_to_a = Column(Numeric(18, 4), nullable=False, default=0)

    relationship_code = Column(String(32), nullable=True)
    relationship_type = Column(String(64), nullable=True)
    rationale = Column(Text, nullable=True)
    llm_date = Column(DateTime(timezone=True), nullable=True)
    llm_name = Column(Text, nullable=True)  # model id, e.g. gpt-4o-mini
    llm_version = Column(Text, nullable=True)  # prompt version, e.g. v1.0

    source_count = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=RECORD_PENDING)  # pending | classified | unparseable
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_master_status", "status"),
    )


class LlmCacheEntry(Base):
    """
    Raw classifier output keyed by sha256(model + "::" + prompt).
    """
    __tablename__ = "llm_cache"

    prompt_key = Column(String(64), primary_key=True, nullable=False)
    model = Column(Text, nullable=False)
    result = Column(Text, nullable=False)
    tokens_in = Column(Integer, nullable=False, default=0)
    tokens_out = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_llm_cache_created_at", "created_at"),
    )
