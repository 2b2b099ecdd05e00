from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

MODELS_DIR = PROJECT_ROOT / "models"  # for HF cache if you want to mount it


# ---------------------------
# Model names (pinned)
# ---------------------------

# Cross-encoder reranker; the first entry can be overridden from the env
BGE_RERANKER_MODEL = os.getenv("LITRANK_RERANKER_MODEL", "BAAI/bge-reranker-base")
MINILM_RERANKER_MODEL = "cross-encoder/ms-marco-MiniLM-L-6-v2"

RERANKER_CANDIDATES: List[str] = [BGE_RERANKER_MODEL, MINILM_RERANKER_MODEL]

# bge-reranker emits probabilities; the ms-marco cross-encoders emit raw logits
RERANKER_OUTPUTS_LOGITS: Dict[str, bool] = {
    "BAAI/bge-reranker-base": False,
    MINILM_RERANKER_MODEL: True,
}

HF_ENV_VARS = {
    "TRANSFORMERS_CACHE": str(MODELS_DIR),
    # HF_HUB_OFFLINE to be optionally set to "1" by the runtime after first pull
}


# ---------------------------
# Text processing
# ---------------------------

MAX_INPUT_CHARS = 20_000  # input size cap
MIN_TERM_LENGTH = 3       # query terms shorter than this never reach BM25

# Small, deterministic synonym map applied to queries and documents alike
SYNONYM_MAP: Dict[str, str] = {
    "ml": "machine learning",
    "ai": "artificial intelligence",
    "nlp": "natural language processing",
    "dl": "deep learning",
    "rl": "reinforcement learning",
    "llm": "large language model",
    "llms": "large language models",
}

STOPWORDS = frozenset(
    """
    a an and are as at be by for from has have in into is it its of on or
    that the their this to was were will with within without how what when
    where which who why does do can using use based via
    """.split()
)


# ---------------------------
# Lexical (BM25) settings
# ---------------------------

BM25_K1 = 1.2
BM25_B = 0.75
# query-retrieved batches contain the query terms almost everywhere, which
# would push their idf to ~0; the floor keeps one occurrence worth something
BM25_IDF_FLOOR = 0.5

TITLE_FIELD_WEIGHT = 4.0
ABSTRACT_FIELD_WEIGHT = 2.0
TITLE_COVERAGE_BONUS = 2.0   # scaled by the fraction of query terms in the title
TITLE_PHRASE_BONUS = 3.0     # whole query appears verbatim in the title

DEFAULT_LEXICAL_RECALL_THRESHOLD = 1.0

# Recall filter is bypassed when the score distribution is degenerate
DEGENERATE_ZERO_RATE = 0.80
DEGENERATE_BELOW_RATE = 0.95


# ---------------------------
# Neural rerank settings & env toggles
# ---------------------------

DEFAULT_NEURAL_BATCH_SIZE = 32
NEURAL_BATCH_SIZE = int(
    os.getenv("LITRANK_NEURAL_BATCH_SIZE", str(DEFAULT_NEURAL_BATCH_SIZE))
)
NEURAL_CONCURRENCY = 4
NEURAL_SCORE_THRESHOLD = 0.45
MAX_NEURAL_CANDIDATES = 1500

# wall-clock budget for the whole neural stage; unfinished batches fall back
# to the lexical proxy
DEFAULT_NEURAL_TIMEOUT_S = 30.0
NEURAL_TIMEOUT_S = float(
    os.getenv("LITRANK_NEURAL_TIMEOUT_S", str(DEFAULT_NEURAL_TIMEOUT_S))
)

# cross-encoder input budget, in characters, for "query [SEP] text"
NEURAL_TEXT_LIMIT = 512
NEURAL_SEPARATOR = " [SEP] "

NEURAL_DEPENDENCY_KEY = "neural-inference"

# (lower bound, label) checked top-down
NEURAL_EXPLANATIONS = [
    (0.90, "Highly relevant"),
    (0.75, "Relevant"),
    (0.65, "Somewhat relevant"),
    (0.0, "Low relevance"),
]


# ---------------------------
# Quality scoring
# ---------------------------

QUALITY_WEIGHTS_WITH_VENUE: Dict[str, float] = {
    "citation": 0.30,
    "venue": 0.50,
    "recency": 0.20,
}
QUALITY_WEIGHTS_WITHOUT_VENUE: Dict[str, float] = {
    "citation": 0.60,
    "recency": 0.40,
}

CITATION_RATE_SATURATION = 50.0   # citations/year that maps to a full 100
RECENCY_HALF_LIFE_YEARS = 4.0
UNKNOWN_YEAR_RECENCY = 50.0
VENUE_H_INDEX_SATURATION = 300.0
VENUE_IMPACT_FACTOR_SATURATION = 50.0

FAIRNESS_TOLERANCE = 5.0

MIN_QUALITY_SCORE = 25.0
# peer-reviewed indexes whose records are kept under the quality cut,
# lifted to a floor score (sparse metadata is not low quality)
PRESERVED_SOURCES = ["pubmed", "pmc"]
PRESERVED_SOURCE_QUALITY_FLOOR = 40.0


# ---------------------------
# Final ranking & diversity
# ---------------------------

RELEVANCE_WEIGHT = 0.6
QUALITY_WEIGHT = 0.4
MAX_CONSECUTIVE_PER_SOURCE = 2
RESULT_LIMIT = 20

# a source taking more than this share of the results is flagged
SOURCE_DOMINANCE_SHARE = 0.6


# ---------------------------
# Resilience & cache
# ---------------------------

CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_SUCCESS_THRESHOLD = 2
CIRCUIT_OPEN_TIMEOUT_S = 60.0
CIRCUIT_FAILURE_WINDOW_S = 60.0
CIRCUIT_HALF_OPEN_MAX_CALLS = 1

RETRY_MAX_ATTEMPTS = 3
RETRY_BACKOFF_MIN_S = 0.5
RETRY_BACKOFF_MAX_S = 8.0

RATE_LIMIT_CAPACITY = 50
RATE_LIMIT_REFILL_PER_S = 20.0
RATE_LIMIT_MAX_WAIT_S = 10.0

DEFAULT_CACHE_TTL_S = 24 * 60 * 60
CACHE_TTL_S = int(os.getenv("LITRANK_CACHE_TTL_SECONDS", str(DEFAULT_CACHE_TTL_S)))
CACHE_CAPACITY = 10_000


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class QualityWeights(BaseModel):
    """
    Override for the quality blend. Weights are renormalised to sum to 1,
    with the venue share folded into the others when a candidate has no
    venue data.
    """

    citation: float = Field(default=0.30, ge=0.0)
    venue: float = Field(default=0.50, ge=0.0)
    recency: float = Field(default=0.20, ge=0.0)

    @model_validator(mode="after")
    def _check_non_zero(self) -> "QualityWeights":
        if self.citation + self.recency <= 0:
            raise ValueError("citation and recency weights cannot both be zero")
        return self


class ResilienceSettings(BaseModel):
    failure_threshold: int = Field(default=CIRCUIT_FAILURE_THRESHOLD, ge=1)
    success_threshold: int = Field(default=CIRCUIT_SUCCESS_THRESHOLD, ge=1)
    open_timeout_s: float = Field(default=CIRCUIT_OPEN_TIMEOUT_S, gt=0)
    failure_window_s: float = Field(default=CIRCUIT_FAILURE_WINDOW_S, gt=0)
    half_open_max_calls: int = Field(default=CIRCUIT_HALF_OPEN_MAX_CALLS, ge=1)
    max_attempts: int = Field(default=RETRY_MAX_ATTEMPTS, ge=1)
    backoff_min_s: float = Field(default=RETRY_BACKOFF_MIN_S, ge=0)
    backoff_max_s: float = Field(default=RETRY_BACKOFF_MAX_S, ge=0)
    rate_capacity: int = Field(default=RATE_LIMIT_CAPACITY, ge=1)
    rate_refill_per_s: float = Field(default=RATE_LIMIT_REFILL_PER_S, gt=0)
    rate_max_wait_s: float = Field(default=RATE_LIMIT_MAX_WAIT_S, ge=0)


class PipelineConfig(BaseModel):
    """
    Per-run tuning knobs. Every field has a default so PipelineConfig()
    is a working configuration.
    """

    lexical_recall_threshold: float = Field(default=DEFAULT_LEXICAL_RECALL_THRESHOLD, ge=0)
    neural_batch_size: int = Field(default=NEURAL_BATCH_SIZE, ge=1)
    neural_concurrency: int = Field(default=NEURAL_CONCURRENCY, ge=1)
    neural_score_threshold: float = Field(default=NEURAL_SCORE_THRESHOLD, ge=0, le=1)
    max_neural_candidates: int = Field(default=MAX_NEURAL_CANDIDATES, ge=1)
    neural_timeout_s: float = Field(default=NEURAL_TIMEOUT_S, gt=0)
    allowed_domains: Optional[List[str]] = None
    quality_weights: Optional[QualityWeights] = None
    min_quality_score: float = Field(default=MIN_QUALITY_SCORE, ge=0, le=100)
    preserved_sources: List[str] = Field(default_factory=lambda: list(PRESERVED_SOURCES))
    relevance_weight: float = Field(default=RELEVANCE_WEIGHT, ge=0)
    quality_weight: float = Field(default=QUALITY_WEIGHT, ge=0)
    max_consecutive_per_source: int = Field(default=MAX_CONSECUTIVE_PER_SOURCE, ge=1)
    result_limit: int = Field(default=RESULT_LIMIT, ge=1)
    cache_ttl_seconds: int = Field(default=CACHE_TTL_S, ge=1)


# ---------------------------
# API request / response models
# ---------------------------

class CandidateModel(BaseModel):
    title: str = Field(..., min_length=1)
    abstract: Optional[str] = None
    id: Optional[str] = None
    doi: Optional[str] = None
    venue: Optional[str] = None
    year: Optional[int] = None
    citation_count: Optional[int] = Field(default=None, ge=0)
    source: str = "unknown"
    url: Optional[str] = None
    venue_impact_factor: Optional[float] = Field(default=None, ge=0)
    venue_h_index: Optional[float] = Field(default=None, ge=0)


class RankRequest(BaseModel):
    query: str = Field(..., min_length=1)
    candidates: List[CandidateModel]
    config: Optional[PipelineConfig] = None


class RankedResultModel(BaseModel):
    position: int
    title: str
    identity: str
    source: str
    url: Optional[str] = None
    year: Optional[int] = None
    venue: Optional[str] = None
    domain: Optional[str] = None
    lexical_score: float
    neural_score: Optional[float] = None
    quality_score: float
    final_rank: float
    explanation: Optional[str] = None


class RankResponse(BaseModel):
    """
    Response body for POST /rank.
    """

    results: List[RankedResultModel]
    report: Dict


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str


class CircuitStatusResponse(BaseModel):
    key: str
    state: str
    failure_count: int
    success_count: int
    next_retry_time: Optional[float] = None
