"""
CSV artifacts produced by a job, plus the full master export.
"""
import csv
import io
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from cooccur.models import MasterRecord
from cooccur.services.rows import UploadRow, canonical_pair_key

ENRICHMENT_COLUMNS = ["relationship_code", "relationship_type", "rationale"]

MASTER_COLUMNS = [
    "pair_key",
    "concept_a", "code_a", "system_a", "type_a",
    "concept_b", "code_b", "system_b", "type_b",
    "cooc_obs", "n_a", "n_b", "total_persons", "cooc_event_count", "a_before_b", "b_before_a",
    "expected_obs", "lift", "lift_lower_95", "lift_upper_95", "z_score",
    "ab_h", "a_only_h", "b_only_h", "neither_h",
    "odds_ratio", "or_lower_95", "or_upper_95",
    "directionality_ratio", "dir_lower_95", "dir_upper_95",
    "confidence_a_to_b", "confidence_b_to_a",
    "relationship_code", "relationship_type", "rationale",
    "source_count", "llm_date", "llm_name", "llm_version",
    "status", "created_at", "updated_at",
]


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _to_csv(header: Sequence[str], rows: Iterable[Sequence]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return buffer.getvalue()


def enrich_rows(
    header: List[str],
    rows: Iterable[UploadRow],
    classifications_by_pair: Dict[str, Tuple[str, str, str]],
) -> str:
    """
    Every input row, unchanged, followed by the pair's classification.

    Unclassified pairs get empty classification cells.
    """
    empty = ("", "", "")

    def enriched():
        for row in rows:
            yield list(row.values) + list(classifications_by_pair.get(canonical_pair_key(row), empty))

    return _to_csv(list(header) + ENRICHMENT_COLUMNS, enriched())


def record_values(record: MasterRecord) -> List:
    return [getattr(record, column) for column in MASTER_COLUMNS]


def snapshot_touched_pairs(db: Session, pair_keys: Iterable[str]) -> str:
    """Current master records for the given pairs, ascending by pair key."""
    keys = sorted(set(pair_keys))
    records = []
    for start in range(0, len(keys), 500):
        batch = keys[start:start + 500]
        records.extend(
            db.execute(select(MasterRecord).where(MasterRecord.pair_key.in_(batch))).scalars().all()
        )
    records.sort(key=lambda r: r.pair_key)
    return _to_csv(MASTER_COLUMNS, (record_values(r) for r in records))


def iter_master_csv(db: Session, batch_size: int = 1000) -> Iterator[str]:
    """
    Stream every master record as CSV text, ascending by pair key.

    Uses a keyset cursor on pair_key so memory stays bounded.
    """
    yield _to_csv(MASTER_COLUMNS, [])
    cursor = None
    while True:
        query = select(MasterRecord).order_by(MasterRecord.pair_key).limit(batch_size)
        if cursor is not None:
            query = query.where(MasterRecord.pair_key > cursor)
        records = db.execute(query).scalars().all()
        if not records:
            break
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        for record in records:
            writer.writerow([_cell(v) for v in record_values(record)])
        yield buffer.getvalue()
        cursor = records[-1].pair_key
        db.expunge_all()
        if len(records) < batch_size:
            break
