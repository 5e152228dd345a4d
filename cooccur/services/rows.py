"""
Upload parsing and per-upload aggregation.

Parses the uploaded CSV into typed rows, derives the pair key for each row
and sums count columns per pair. The sums are deltas for this upload only;
merging them into the master records happens in services.aggregate.
"""
import csv
import io
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List

from cooccur.errors import MalformedInput

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = [
    "concept_a", "code_a", "system_a",
    "concept_b", "code_b", "system_b",
    "cooc_obs", "nA", "nB", "total_persons",
    "a_before_b", "b_before_a",
]

# CSV header -> MasterRecord count column
COUNT_COLUMNS = {
    "cooc_obs": "cooc_obs",
    "nA": "n_a",
    "nB": "n_b",
    "total_persons": "total_persons",
    "cooc_event_count": "cooc_event_count",
    "a_before_b": "a_before_b",
    "b_before_a": "b_before_a",
}

IDENTITY_COLUMNS = [
    "concept_a", "code_a", "system_a", "type_a",
    "concept_b", "code_b", "system_b", "type_b",
]

PAIR_SEPARATOR = "__"

# Largest value a BigInteger count column holds
MAX_COUNT = 2 ** 63 - 1


@dataclass
class UploadRow:
    """One data row of an upload, typed once the header has been checked."""
    line: int
    identity: Dict[str, str]
    counts: Dict[str, int]
    values: List[str] = field(default_factory=list)  # original cells, header order

    @property
    def pair_key(self) -> str:
        return canonical_pair_key(self)


@dataclass
class PairDelta:
    """Per-upload totals for one pair."""
    pair_key: str
    identity: Dict[str, str]
    counts: Dict[str, int]
    rows: int = 0


def to_count(value) -> int:
    """Coerce a CSV cell to a non-negative int; anything unusable becomes 0."""
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        return 0
    try:
        number = int(text)
    except ValueError:
        try:
            as_float = float(text)
        except ValueError:
            return 0
        if not math.isfinite(as_float):
            return 0
        number = int(as_float)
    if number <= 0 or number > MAX_COUNT:
        return 0
    return number


def side_key(concept: str, code: str, system: str) -> str:
    """`code|system` when a code is present, otherwise the concept name."""
    code = (code or "").strip()
    if code:
        return f"{code}|{(system or '').strip()}"
    return (concept or "").strip()


def canonical_pair_key(row: UploadRow) -> str:
    """
    Order-sensitive key for a row's concept pair.

    (A, B) and (B, A) produce different keys.
    """
    ident = row.identity
    key_a = side_key(ident.get("concept_a", ""), ident.get("code_a", ""), ident.get("system_a", ""))
    key_b = side_key(ident.get("concept_b", ""), ident.get("code_b", ""), ident.get("system_b", ""))
    return f"{key_a}{PAIR_SEPARATOR}{key_b}"


def _reader(raw_text: str):
    # Strip UTF-8 BOM
    if raw_text and raw_text[0] == "\ufeff":
        raw_text = raw_text[1:]
    return csv.reader(io.StringIO(raw_text or "", newline=""))


def _is_blank(cells: List[str]) -> bool:
    return not any(c and c.strip() for c in cells)


def _next_header(reader) -> List[str]:
    for cells in reader:
        if not _is_blank(cells):
            return [c.strip() for c in cells]
    return []


def validate_header(header: List[str]) -> None:
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise MalformedInput(
            f"Missing required column: {', '.join(missing)}",
            missing_columns=missing,
        )


def read_header(raw_text: str) -> List[str]:
    """Return the validated header row of an upload."""
    header = _next_header(_reader(raw_text))
    validate_header(header)
    return header


def _iter_rows(reader, header: List[str]) -> Iterator[UploadRow]:
    index = {}
    for i, name in enumerate(header):
        index.setdefault(name, i)

    for cells in reader:
        if _is_blank(cells):
            continue
        if len(cells) < len(header):
            cells = cells + [""] * (len(header) - len(cells))
        elif len(cells) > len(header):
            logger.debug(f"Line {reader.line_num}: dropping {len(cells) - len(header)} extra cells")
            cells = cells[:len(header)]

        def cell(name: str) -> str:
            i = index.get(name)
            return cells[i] if i is not None else ""

        yield UploadRow(
            line=reader.line_num,
            identity={name: cell(name).strip() for name in IDENTITY_COLUMNS},
            counts={column: to_count(cell(name)) for name, column in COUNT_COLUMNS.items()},
            values=list(cells),
        )


def parse_rows(raw_text: str) -> Iterator[UploadRow]:
    """
    Parse an uploaded CSV.

    The header is checked before this returns, so a missing required column
    raises MalformedInput before any row is produced. Rows are yielded lazily.
    """
    reader = _reader(raw_text)
    header = _next_header(reader)
    validate_header(header)
    return _iter_rows(reader, header)


def accumulate(rows: Iterable[UploadRow]) -> Dict[str, PairDelta]:
    """
    Sum count columns per pair key for one upload.

    Identity columns come from the first row seen for each pair.
    """
    totals: Dict[str, PairDelta] = {}
    for row in rows:
        key = canonical_pair_key(row)
        delta = totals.get(key)
        if delta is None:
            delta = PairDelta(
                pair_key=key,
                identity=dict(row.identity),
                counts={column: 0 for column in COUNT_COLUMNS.values()},
            )
            totals[key] = delta
        for column, value in row.counts.items():
            delta.counts[column] = min(delta.counts[column] + value, MAX_COUNT)
        delta.rows += 1
    return totals
