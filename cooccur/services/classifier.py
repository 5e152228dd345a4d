"""LLM relationship classification with a content-addressed cache.

Each pair is rendered into a deterministic prompt; the prompt and model id
are hashed into a cache key. A cache hit costs nothing; a miss calls the
model (with retry) and stores the raw answer and its token usage.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import openai
from openai import OpenAI
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from sqlalchemy.exc import IntegrityError

from cooccur.errors import ClassificationTransientFailure, ClassificationUnparseable
from cooccur.models import LlmCacheEntry, RECORD_CLASSIFIED, RECORD_UNPARSEABLE
from cooccur.utils.hash import compute_prompt_key

logger = logging.getLogger(__name__)

CODE_MAX_LEN = 32
LABEL_MAX_LEN = 64
RATIONALE_MAX_LEN = 500

UNPARSEABLE_LABEL = "unparseable"

SYSTEM_MESSAGE = "You are a concise clinical reviewer. Return strict JSON only."

RELATIONSHIP_CODES = [
    "TREATS", "CAUSES", "COMPLICATION_OF", "RISK_FACTOR_FOR",
    "SYMPTOM_OF", "DIAGNOSTIC_FOR", "ASSOCIATED", "NONE",
]

# openai errors worth another attempt
_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@dataclass
class PairContext:
    """What the classifier gets to see about one pair."""
    pair_key: str
    concept_a: str = ""
    code_a: str = ""
    system_a: str = ""
    type_a: str = ""
    concept_b: str = ""
    code_b: str = ""
    system_b: str = ""
    type_b: str = ""
    lift: Optional[Decimal] = None


@dataclass
class Completion:
    content: str
    tokens_in: int = 0
    tokens_out: int = 0


@dataclass
class CachedResult:
    result: str
    tokens_in: int = 0
    tokens_out: int = 0


@dataclass
class ClassificationResult:
    pair_key: str
    code: str
    label: str
    rationale: str
    status: str  # classified | unparseable
    model: str
    prompt_version: str
    tokens_in: int = 0
    tokens_out: int = 0
    cached: bool = False


class ClassificationPayload(BaseModel):
    """Shape of the JSON the model is asked to return."""
    relationship_code: Optional[str] = Field(
        None, validation_alias=AliasChoices("relationship_code", "relationshipCode", "REL_TYPE")
    )
    relationship_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("relationship_type", "relationshipType", "REL_TYPE_T")
    )
    rationale: Optional[str] = Field(
        None, validation_alias=AliasChoices("rationale", "rational", "RATIONALE")
    )

    @field_validator("relationship_code", "relationship_type", "rationale", mode="before")
    @classmethod
    def _stringify(cls, value):
        if value is None:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


def _fmt(value: str) -> str:
    return value.strip() if value and value.strip() else "?"


def prompt_for(pair: PairContext) -> str:
    """
    Render the classification prompt for a pair.

    Identical input always renders the identical string; the cache key
    depends on it.
    """
    lines = [
        "Given two clinical concepts that co-occur in patient records, "
        "classify the relationship of Concept A to Concept B.",
        "",
        f"Concept A: {_fmt(pair.concept_a)} (type: {_fmt(pair.type_a)}; code: {_fmt(pair.code_a)}; system: {_fmt(pair.system_a)})",
        f"Concept B: {_fmt(pair.concept_b)} (type: {_fmt(pair.type_b)}; code: {_fmt(pair.code_b)}; system: {_fmt(pair.system_b)})",
    ]
    if pair.lift is not None and pair.lift > 0:
        lines.append(f"Evidence: lift = {Decimal(pair.lift):.4f} (observed / expected co-occurrence)")
    lines += [
        "",
        "Return strict JSON with keys:",
        f'  "relationship_code": one of {", ".join(RELATIONSHIP_CODES)}',
        f'  "relationship_type": short human-readable label (<= {LABEL_MAX_LEN} chars)',
        f'  "rationale": concise justification (<= 255 chars)',
    ]
    return "\n".join(lines)


def _strip_code_fence(content: str) -> str:
    # Handle markdown code blocks if present
    if not content.startswith("```"):
        return content
    json_lines = []
    for line in content.split("\n"):
        if line.strip().startswith("```"):
            continue
        json_lines.append(line)
    return "\n".join(json_lines)


def parse_classification(content: str) -> ClassificationPayload:
    """
    Parse the model's answer.

    Raises:
        ClassificationUnparseable: not a JSON object, or no code/label in it
    """
    text = _strip_code_fence((content or "").strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationUnparseable(f"Response is not JSON: {e}")
    if not isinstance(data, dict):
        raise ClassificationUnparseable(f"Expected a JSON object, got {type(data).__name__}")
    try:
        payload = ClassificationPayload.model_validate(data)
    except ValidationError as e:
        raise ClassificationUnparseable(f"Unexpected response shape: {e.error_count()} errors")
    if not (payload.relationship_code or payload.relationship_type):
        raise ClassificationUnparseable("Response has neither relationship_code nor relationship_type")
    return payload


class SqlClassificationCache:
    """Cache of raw model answers in the llm_cache table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[CachedResult]:
        db = self.session_factory()
        try:
            entry = db.get(LlmCacheEntry, key)
            if entry is None:
                return None
            return CachedResult(result=entry.result, tokens_in=entry.tokens_in or 0, tokens_out=entry.tokens_out or 0)
        finally:
            db.close()

    def put(self, key: str, model: str, result: str, tokens_in: int, tokens_out: int) -> None:
        db = self.session_factory()
        try:
            db.merge(LlmCacheEntry(
                prompt_key=key,
                model=model,
                result=result,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
            ))
            db.commit()
        except IntegrityError:
            # Another job stored the same prompt first; answers are deterministic
            db.rollback()
            logger.debug(f"Cache entry {key[:12]} written concurrently")
        finally:
            db.close()


class OpenAIClassifier:
    """Thin wrapper over the chat completions API."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client=None):
        self.model = model
        # Retries are counted by ClassificationService, not the SDK
        self.client = client or OpenAI(api_key=api_key, max_retries=0)

    def complete(self, prompt: str) -> Completion:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_MESSAGE},
                    {"role": "user", "content": prompt},
                ],
                temperature=0,
                response_format={"type": "json_object"},
            )
        except _TRANSIENT_ERRORS as e:
            raise ClassificationTransientFailure(f"OpenAI API error: {e}") from e

        content = (response.choices[0].message.content or "") if response.choices else ""
        usage = response.usage
        return Completion(
            content=content,
            tokens_in=(usage.prompt_tokens or 0) if usage else 0,
            tokens_out=(usage.completion_tokens or 0) if usage else 0,
        )


class ClassificationService:
    """
    Classifies pairs for one job.

    Holds the per-job call budget and token totals, so create one per job.
    """

    def __init__(
        self,
        cache,
        client=None,
        model: str = "gpt-4o-mini",
        prompt_version: str = "v1.0",
        max_calls: int = 50,
        max_attempts: int = 3,
        concurrency: int = 1,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache
        self.client = client
        self.model = model
        self.prompt_version = prompt_version
        self.max_calls = max_calls
        self.max_attempts = max(1, max_attempts)
        self.concurrency = max(1, concurrency)
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

        self.external_calls = 0
        self.cache_hits = 0
        self.tokens_in = 0
        self.tokens_out = 0
        self._lock = threading.Lock()

    def _reserve_call(self) -> bool:
        with self._lock:
            if self.client is None or self.external_calls >= self.max_calls:
                return False
            self.external_calls += 1
            return True

    def _record_usage(self, tokens_in: int, tokens_out: int) -> None:
        with self._lock:
            self.tokens_in += tokens_in
            self.tokens_out += tokens_out

    def _complete_with_retry(self, prompt: str) -> Completion:
        for attempt in range(self.max_attempts):
            try:
                return self.client.complete(prompt)
            except ClassificationTransientFailure as e:
                if attempt == self.max_attempts - 1:
                    raise ClassificationTransientFailure(
                        f"Classifier failed after {self.max_attempts} attempts: {e}"
                    ) from e
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(f"Classifier call failed (attempt {attempt + 1}/{self.max_attempts}), retrying in {delay}s: {e}")
                self.sleep(delay)  # Exponential backoff

    def _interpret(self, pair: PairContext, content: str, tokens_in: int, tokens_out: int, cached: bool) -> ClassificationResult:
        try:
            payload = parse_classification(content)
        except ClassificationUnparseable as e:
            logger.warning(f"Unparseable classification for {pair.pair_key}: {e}")
            return ClassificationResult(
                pair_key=pair.pair_key,
                code="",
                label=UNPARSEABLE_LABEL,
                rationale=f"Unparseable classifier response: {e}"[:RATIONALE_MAX_LEN],
                status=RECORD_UNPARSEABLE,
                model=self.model,
                prompt_version=self.prompt_version,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cached=cached,
            )
        return ClassificationResult(
            pair_key=pair.pair_key,
            code=(payload.relationship_code or "").strip()[:CODE_MAX_LEN],
            label=(payload.relationship_type or "").strip()[:LABEL_MAX_LEN],
            rationale=(payload.rationale or "").strip()[:RATIONALE_MAX_LEN],
            status=RECORD_CLASSIFIED,
            model=self.model,
            prompt_version=self.prompt_version,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cached=cached,
        )

    def classify(self, pair: PairContext) -> Optional[ClassificationResult]:
        """
        Classify one pair, from cache when possible.

        Returns None when the pair needs a model call but the job's call
        budget is spent (or no model is configured).
        """
        prompt = prompt_for(pair)
        key = compute_prompt_key(self.model, prompt)

        cached = self.cache.get(key)
        if cached is not None:
            with self._lock:
                self.cache_hits += 1
            logger.debug(f"Cache hit for {pair.pair_key}")
            return self._interpret(pair, cached.result, cached.tokens_in, cached.tokens_out, cached=True)

        if not self._reserve_call():
            logger.info(f"Skipping classification of {pair.pair_key}: call budget exhausted")
            return None

        completion = self._complete_with_retry(prompt)
        self._record_usage(completion.tokens_in, completion.tokens_out)
        self.cache.put(key, self.model, completion.content, completion.tokens_in, completion.tokens_out)
        return self._interpret(pair, completion.content, completion.tokens_in, completion.tokens_out, cached=False)

    def classify_batch(
        self,
        pairs: List[PairContext],
        batch_size: int = 10,
        on_batch: Optional[Callable[[int], None]] = None,
    ) -> Dict[str, ClassificationResult]:
        """
        Classify pairs in fixed-size batches, one batch after another.

        Up to `concurrency` calls of a batch are in flight at once. Pairs
        left over once the budget is spent are absent from the result.

        Raises:
            ClassificationTransientFailure: retries exhausted for some pair
        """
        results: Dict[str, ClassificationResult] = {}
        batch_size = max(1, batch_size)
        done = 0
        for start in range(0, len(pairs), batch_size):
            batch = pairs[start:start + batch_size]
            if self.concurrency > 1 and len(batch) > 1:
                with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                    outcomes = list(executor.map(self.classify, batch))
            else:
                outcomes = [self.classify(pair) for pair in batch]
            for outcome in outcomes:
                if outcome is not None:
                    results[outcome.pair_key] = outcome
            done += len(batch)
            logger.info(f"Classified batch {start // batch_size + 1}: {done}/{len(pairs)} pairs, {self.external_calls} calls, {self.cache_hits} cache hits")
            if on_batch:
                on_batch(done)
        return results
