"""
Master record gateway.

Counts are merged with SQL increments, then statistics are recomputed from
the persisted totals in a separate step. Classification is written once per
pair.
"""
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from cooccur.errors import StoreUnavailable
from cooccur.models import MasterRecord, COUNT_FIELDS, RECORD_PENDING
from cooccur.services.classifier import ClassificationResult, PairContext
from cooccur.services.rows import MAX_COUNT
from cooccur.services.stats import compute_stats
from cooccur.utils.time import utcnow

logger = logging.getLogger(__name__)

# Column widths for identity fields
_IDENTITY_LIMITS = {
    "concept_a": None, "concept_b": None,
    "code_a": 64, "code_b": 64,
    "system_a": 32, "system_b": 32,
    "type_a": 64, "type_b": 64,
}


def _chunked(values, size):
    batch = []
    for value in values:
        batch.append(value)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _identity_columns(identity: Dict[str, str]) -> Dict[str, str]:
    out = {}
    for column, limit in _IDENTITY_LIMITS.items():
        value = (identity.get(column) or "").strip()
        out[column] = value[:limit] if limit else value
    return out


def _saturating_add(column, amount: int):
    # Compared before adding so the database never computes an overflowing sum
    return case((column > MAX_COUNT - amount, MAX_COUNT), else_=column + amount)


class AggregateGateway:
    """Reads and writes master records through short-lived sessions."""

    def __init__(
        self,
        session_factory,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def _run(self, operation: Callable, description: str):
        """Run operation(db) in its own session, retrying operational errors."""
        for attempt in range(self.max_attempts):
            db = self.session_factory()
            try:
                return operation(db)
            except OperationalError as e:
                db.rollback()
                if attempt == self.max_attempts - 1:
                    raise StoreUnavailable(f"{description} failed after {self.max_attempts} attempts: {e.orig}") from e
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(f"{description} failed (attempt {attempt + 1}/{self.max_attempts}), retrying in {delay}s: {e.orig}")
                self.sleep(delay)
            finally:
                db.close()

    # --- counts ---

    def _increment(self, db, pair_key: str, delta: Dict[str, int]) -> bool:
        values = {column: _saturating_add(getattr(MasterRecord, column), int(delta.get(column, 0))) for column in COUNT_FIELDS}
        values["source_count"] = MasterRecord.source_count + 1
        values["updated_at"] = utcnow()
        result = db.execute(
            update(MasterRecord)
            .where(MasterRecord.pair_key == pair_key)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def merge_counts(self, pair_key: str, identity: Dict[str, str], delta: Dict[str, int]) -> bool:
        """
        Add one upload's totals to a pair's master record.

        Creates the record (source_count=1, placeholder stats) on first
        sighting. Returns True when a new record was created.
        """
        def operation(db):
            if self._increment(db, pair_key, delta):
                db.commit()
                return False
            record = MasterRecord(
                pair_key=pair_key,
                source_count=1,
                status=RECORD_PENDING,
                **_identity_columns(identity),
                **{column: int(delta.get(column, 0)) for column in COUNT_FIELDS},
            )
            db.add(record)
            try:
                db.commit()
                return True
            except IntegrityError:
                # Another upload created it between our update and insert
                db.rollback()
                if not self._increment(db, pair_key, delta):
                    raise
                db.commit()
                return False

        created = self._run(operation, f"Merge of {pair_key}")
        logger.debug(f"{'Created' if created else 'Merged'} {pair_key}: {delta}")
        return created

    def recompute_stats(self, pair_key: str) -> Dict:
        """Recompute derived fields from the persisted counts and store them."""
        def operation(db):
            record = db.execute(
                select(MasterRecord).where(MasterRecord.pair_key == pair_key).with_for_update()
            ).scalar_one_or_none()
            if record is None:
                raise KeyError(pair_key)
            stats = compute_stats(
                record.cooc_obs,
                record.n_a,
                record.n_b,
                record.total_persons,
                record.a_before_b,
                record.b_before_a,
            )
            for column, value in stats.items():
                setattr(record, column, value)
            db.commit()
            return stats

        return self._run(operation, f"Recompute of {pair_key}")

    # --- classification ---

    def apply_classification(self, pair_key: str, result: ClassificationResult) -> bool:
        """
        Store a classification if the pair has none yet.

        Returns False when the pair was already classified.
        """
        def operation(db):
            outcome = db.execute(
                update(MasterRecord)
                .where(MasterRecord.pair_key == pair_key, MasterRecord.llm_date.is_(None))
                .values(
                    relationship_code=result.code,
                    relationship_type=result.label,
                    rationale=result.rationale,
                    llm_date=utcnow(),
                    llm_name=result.model,
                    llm_version=result.prompt_version,
                    status=result.status,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return outcome.rowcount > 0

        return self._run(operation, f"Classification of {pair_key}")

    def unclassified_pairs(self, pair_keys: Iterable[str]) -> List[PairContext]:
        """Classifier input for the given pairs that still lack a classification."""
        def operation(db):
            pairs = []
            for batch in _chunked(sorted(pair_keys), 500):
                records = db.execute(
                    select(MasterRecord)
                    .where(MasterRecord.pair_key.in_(batch), MasterRecord.llm_date.is_(None))
                    .order_by(MasterRecord.pair_key)
                ).scalars().all()
                for record in records:
                    pairs.append(PairContext(
                        pair_key=record.pair_key,
                        concept_a=record.concept_a, code_a=record.code_a,
                        system_a=record.system_a, type_a=record.type_a,
                        concept_b=record.concept_b, code_b=record.code_b,
                        system_b=record.system_b, type_b=record.type_b,
                        lift=record.lift,
                    ))
            return pairs

        return self._run(operation, "Lookup of unclassified pairs")

    def classifications(self, pair_keys: Iterable[str]) -> Dict[str, Tuple[str, str, str]]:
        """(code, label, rationale) per classified pair; unclassified pairs are absent."""
        def operation(db):
            out = {}
            for batch in _chunked(sorted(pair_keys), 500):
                rows = db.execute(
                    select(
                        MasterRecord.pair_key,
                        MasterRecord.relationship_code,
                        MasterRecord.relationship_type,
                        MasterRecord.rationale,
                    ).where(MasterRecord.pair_key.in_(batch), MasterRecord.llm_date.is_not(None))
                ).all()
                for key, code, label, rationale in rows:
                    out[key] = (code or "", label or "", rationale or "")
            return out

        return self._run(operation, "Lookup of classifications")

    def get(self, pair_key: str) -> Optional[MasterRecord]:
        def operation(db):
            record = db.get(MasterRecord, pair_key)
            if record is not None:
                db.expunge(record)
            return record

        return self._run(operation, f"Read of {pair_key}")
