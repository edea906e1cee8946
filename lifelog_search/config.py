"""Tunable configuration for the search engine.

All ranking constants are heuristic defaults rather than derived values, so
each one is a field here. ``SearchConfig.from_env`` reads overrides from
``LIFELOG_SEARCH_<FIELD>`` environment variables.
"""
import logging
import os
from typing import Any, List

from pydantic import BaseModel, Field

# Configure logging
logger = logging.getLogger(__name__)

ENV_PREFIX = "LIFELOG_SEARCH_"


class SearchConfig(BaseModel):
    """Configuration shared by every component of one orchestrator."""

    # BM25 keyword scoring
    bm25_k1: float = 1.2
    bm25_b: float = 0.75
    bm25_avg_doc_length: float = 500.0

    # Reciprocal rank fusion
    rrf_k: int = 60
    hybrid_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    hybrid_index_batch_size: int = 100

    # Lexical pattern index
    phrase_weight: float = 3.0
    title_boost: float = 2.0
    proximity_window: int = 50
    location_phrase_boost: float = 10.0
    location_token_boost: float = 5.0
    cooccurrence_multiplier: float = 2.0
    score_damping: float = 0.5
    length_norm_chars: float = 1000.0
    default_max_results: int = 50
    default_score_threshold: float = 0.1
    context_length: int = 100
    location_pattern: str = r"\b(\w+)(?:'s)?\s+(house|home|place)\b"
    group_terms: List[str] = Field(default_factory=lambda: ["kids", "children"])
    time_of_day_terms: List[str] = Field(default_factory=lambda: ["morning", "afternoon", "evening"])

    # Parallel strategy executor
    consensus_boost: float = 1.15
    hot_document_boost: float = 1.10
    confirmed_hot_document_boost: float = 1.20
    temporal_decay_per_day: float = 0.05
    temporal_decay_floor: float = 0.7
    hot_document_count: int = 5
    strategy_timeout_ms: float = 5000.0
    phase_yield_ms: float = 10.0
    max_context_keywords: int = 3

    # Result cache and strategy learning
    cache_max_size: int = 1000
    cache_ttl_ms: float = 300000.0
    cache_learning_enabled: bool = True
    cache_cleanup_interval_s: float = 60.0
    pattern_similarity_threshold: float = 0.7
    min_pattern_frequency: int = 3
    max_patterns: int = 500
    satisfactory_latency_ms: float = 1000.0
    performance_history_size: int = 10

    # Query router
    classification_cache_size: int = 1000

    # Orchestrator
    default_limit: int = 20
    max_query_variations: int = 5
    expansion_consensus_boost: float = 0.2
    reasoning_candidate_count: int = 50
    vector_batch_size: int = 50
    enable_parallel: bool = True
    enable_decomposition: bool = True

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides: Any) -> "SearchConfig":
        """Build a config from environment variables.

        Args:
            prefix: Environment variable prefix
            **overrides: Explicit values that win over the environment

        Returns:
            Validated SearchConfig
        """
        values = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            if field.annotation == List[str]:
                values[name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                values[name] = raw
        if values:
            logger.debug(f"Config overrides from environment: {sorted(values)}")
        values.update(overrides)
        return cls(**values)
