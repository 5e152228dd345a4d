"""
Upload parsing and per-upload aggregation tests.
"""
import pytest

from cooccur.errors import MalformedInput
from cooccur.services.rows import (
    MAX_COUNT,
    REQUIRED_COLUMNS,
    accumulate,
    canonical_pair_key,
    parse_rows,
    read_header,
    side_key,
    to_count,
)
from conftest import HEADER, make_csv


# === Header ===

def test_read_header_ok():
    header = read_header(make_csv())
    assert header == HEADER.split(",")


def test_missing_nb_column():
    """A header without nB is rejected before any row is produced."""
    raw = "concept_a,code_a,system_a,concept_b,code_b,system_b,cooc_obs,nA,total_persons,a_before_b,b_before_a\nX,1,S,Y,2,S,1,1,1,0,0\n"
    with pytest.raises(MalformedInput) as exc_info:
        parse_rows(raw)
    assert exc_info.value.missing_columns == ["nB"]
    assert "nB" in str(exc_info.value)


def test_empty_file():
    with pytest.raises(MalformedInput) as exc_info:
        read_header("")
    assert exc_info.value.missing_columns == REQUIRED_COLUMNS


def test_bom_and_leading_blank_lines():
    raw = "\ufeff\n\n" + make_csv({"cooc_obs": 3})
    rows = list(parse_rows(raw))
    assert len(rows) == 1
    assert rows[0].counts["cooc_obs"] == 3


def test_header_cells_trimmed():
    raw = make_csv().replace("concept_a,", " concept_a ,", 1)
    assert read_header(raw)[0] == "concept_a"


# === Rows ===

def test_quoted_fields():
    """Commas, doubled quotes and newlines inside quoted cells."""
    raw = (
        HEADER + "\n"
        '"Diabetes, type 2",44054006,SNOMED,Condition,"Metformin ""ER""",6809,RxNorm,Drug,'
        "10,100,50,1000,12,6,4\n"
        '"Hypertension\nessential",38341003,SNOMED,Condition,Lisinopril,29046,RxNorm,Drug,'
        "2,20,10,1000,2,1,1\n"
    )
    rows = list(parse_rows(raw))
    assert len(rows) == 2
    assert rows[0].identity["concept_a"] == "Diabetes, type 2"
    assert rows[0].identity["concept_b"] == 'Metformin "ER"'
    assert rows[0].counts == {
        "cooc_obs": 10, "n_a": 100, "n_b": 50, "total_persons": 1000,
        "cooc_event_count": 12, "a_before_b": 6, "b_before_a": 4,
    }
    assert rows[1].identity["concept_a"] == "Hypertension\nessential"


def test_short_and_long_rows():
    raw = HEADER + "\nX,1,S,T,Y,2,S,T,5\nX,1,S,T,Y,2,S,T,1,1,1,1,1,1,1,extra,extra\n"
    rows = list(parse_rows(raw))
    assert rows[0].counts["cooc_obs"] == 5
    assert rows[0].counts["n_a"] == 0
    assert len(rows[0].values) == len(HEADER.split(","))
    assert len(rows[1].values) == len(HEADER.split(","))


def test_blank_rows_skipped():
    raw = make_csv({"cooc_obs": 1}, {"cooc_obs": 2}).replace("\n", "\n,,,\n", 1)
    assert [r.counts["cooc_obs"] for r in parse_rows(raw)] == [1, 2]


def test_optional_columns_absent():
    raw = (
        "concept_a,code_a,system_a,concept_b,code_b,system_b,cooc_obs,nA,nB,total_persons,a_before_b,b_before_a\n"
        "X,1,S,Y,2,S,4,10,20,100,3,1\n"
    )
    row = next(parse_rows(raw))
    assert row.identity["type_a"] == ""
    assert row.counts["cooc_event_count"] == 0
    assert row.counts["b_before_a"] == 1


@pytest.mark.parametrize("cell,expected", [
    ("12", 12),
    (" 7 ", 7),
    ("3.9", 3),
    ("1e3", 1000),
    ("", 0),
    ("n/a", 0),
    ("-5", 0),
    ("inf", 0),
    ("nan", 0),
    ("99999999999999999999", 0),
    ("1e30", 0),
    (str(2 ** 63 - 1), 2 ** 63 - 1),
    (None, 0),
])
def test_to_count(cell, expected):
    assert to_count(cell) == expected


# === Pair keys ===

def test_side_key():
    assert side_key("Metformin", "6809", "RxNorm") == "6809|RxNorm"
    assert side_key("Metformin", "", "RxNorm") == "Metformin"
    assert side_key(" Metformin ", None, None) == "Metformin"


def test_pair_key_is_order_sensitive():
    forward = next(parse_rows(make_csv({})))
    backward = next(parse_rows(make_csv({
        "concept_a": "Metformin", "code_a": "6809", "system_a": "RxNorm",
        "concept_b": "Type 2 diabetes", "code_b": "44054006", "system_b": "SNOMED",
    })))
    assert canonical_pair_key(forward) == "44054006|SNOMED__6809|RxNorm"
    assert canonical_pair_key(backward) == "6809|RxNorm__44054006|SNOMED"
    assert forward.pair_key == canonical_pair_key(forward)


# === Accumulate ===

def test_accumulate_sums_per_pair():
    raw = make_csv(
        {"cooc_obs": 10, "nA": 100, "nB": 50, "total_persons": 1000},
        {"cooc_obs": 5, "nA": 20, "nB": 10, "total_persons": 1000},
        {"code_b": "", "concept_b": "Insulin", "cooc_obs": 1},
    )
    totals = accumulate(parse_rows(raw))

    assert set(totals) == {"44054006|SNOMED__6809|RxNorm", "44054006|SNOMED__Insulin"}
    merged = totals["44054006|SNOMED__6809|RxNorm"]
    assert merged.rows == 2
    assert merged.counts["cooc_obs"] == 15
    assert merged.counts["n_a"] == 120
    assert merged.counts["n_b"] == 60
    assert merged.counts["total_persons"] == 2000
    assert merged.identity["concept_b"] == "Metformin"
    assert totals["44054006|SNOMED__Insulin"].rows == 1


def test_accumulate_order_independent():
    a = {"cooc_obs": 3, "nA": 7}
    b = {"cooc_obs": 4, "nA": 9}
    forward = accumulate(parse_rows(make_csv(a, b)))
    backward = accumulate(parse_rows(make_csv(b, a)))
    key = "44054006|SNOMED__6809|RxNorm"
    assert forward[key].counts == backward[key].counts


def test_accumulate_saturates_at_column_limit():
    big = 2 ** 62
    totals = accumulate(parse_rows(make_csv({"cooc_obs": big}, {"cooc_obs": big})))
    assert totals["44054006|SNOMED__6809|RxNorm"].counts["cooc_obs"] == MAX_COUNT
