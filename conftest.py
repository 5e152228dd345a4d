"""
Shared pytest fixtures: a throwaway SQLite database, blob stores under
tmp_path and in-memory stand-ins for the classifier cache and the model.
"""
import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cooccur.db import Base
from cooccur import models  # noqa: F401  registers tables
from cooccur.errors import ClassificationTransientFailure
from cooccur.services.blobs import BlobStore
from cooccur.services.classifier import CachedResult, Completion


HEADER = (
    "concept_a,code_a,system_a,type_a,concept_b,code_b,system_b,type_b,"
    "cooc_obs,nA,nB,total_persons,cooc_event_count,a_before_b,b_before_a"
)


def make_csv(*rows) -> str:
    """CSV text with the standard header; each row is a dict of overrides."""
    defaults = {
        "concept_a": "Type 2 diabetes", "code_a": "44054006", "system_a": "SNOMED", "type_a": "Condition",
        "concept_b": "Metformin", "code_b": "6809", "system_b": "RxNorm", "type_b": "Drug",
        "cooc_obs": 0, "nA": 0, "nB": 0, "total_persons": 0,
        "cooc_event_count": 0, "a_before_b": 0, "b_before_a": 0,
    }
    lines = [HEADER]
    columns = HEADER.split(",")
    for overrides in rows:
        values = dict(defaults, **overrides)
        lines.append(",".join(str(values[c]) for c in columns))
    return "\n".join(lines) + "\n"


class InMemoryClassificationCache:
    """Dict-backed stand-in for SqlClassificationCache."""

    def __init__(self):
        self.entries = {}
        self.puts = 0

    def get(self, key):
        return self.entries.get(key)

    def put(self, key, model, result, tokens_in, tokens_out):
        self.puts += 1
        self.entries[key] = CachedResult(result=result, tokens_in=tokens_in, tokens_out=tokens_out)


class FakeClassifier:
    """
    Scripted model client. `failures` transient errors are raised before
    each successful answer is returned.
    """

    def __init__(self, content='{"relationship_code": "TREATS", "relationship_type": "treats", "rationale": "First-line therapy."}',
                 failures=0, tokens_in=100, tokens_out=20):
        self.content = content
        self.failures = failures
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.calls = 0
        self.prompts = []

    def complete(self, prompt):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ClassificationTransientFailure("simulated timeout")
        self.prompts.append(prompt)
        return Completion(content=self.content, tokens_in=self.tokens_in, tokens_out=self.tokens_out)


@pytest.fixture
def test_engine(tmp_path):
    """Create a test database engine."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def uploads(tmp_path):
    return BlobStore(tmp_path / "blobs", "uploads")


@pytest.fixture
def outputs(tmp_path):
    return BlobStore(tmp_path / "blobs", "outputs")


@pytest.fixture
def memory_cache():
    return InMemoryClassificationCache()


@pytest.fixture
def no_sleep():
    delays = []
    return delays.append
