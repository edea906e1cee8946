"""Result cache with strategy learning.

The cache memoizes unified search results per query (and per the options that
shape the result) for ``cache_ttl_ms`` since last access, evicting the least
recently used tenth of the entries when it grows past ``cache_max_size``.

Alongside the entries it learns, per normalized query pattern, which strategy
produced satisfactory outcomes (non-empty results within
``satisfactory_latency_ms``). ``get_suggested_strategy`` turns that history
into a hint for "auto" strategy selection. A suggestion is a hint, never a
cache hit, and cache hits never feed the learning.
"""
import asyncio
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from lifelog_search.config import SearchConfig
from lifelog_search.models import (
    CacheEntry,
    QueryClassification,
    QueryPattern,
    QueryType,
    SearchOptions,
    SearchStrategy,
    StrategyStats,
    UnifiedSearchResult,
)

# Configure logging
logger = logging.getLogger(__name__)

# Fraction of entries evicted when the cache overflows
EVICTION_FRACTION = 0.1
# Patterns seen fewer times than this are pruned first
PRUNE_MIN_FREQUENCY = 2
TOP_PATTERN_COUNT = 10

QUOTED_PATTERN = re.compile(r'"[^"]*"')
DATE_PATTERN = re.compile(r"\b\d{4}-\d{2}-\d{2}\b|\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b")
NUMBER_PATTERN = re.compile(r"\b\d+\b")


def normalize_pattern(query: str, query_type: QueryType) -> str:
    """Reduce a query to its shape: literals become placeholders."""
    text = " ".join(query.lower().split())
    text = QUOTED_PATTERN.sub("QUOTED", text)
    text = DATE_PATTERN.sub("DATE", text)
    text = NUMBER_PATTERN.sub("NUM", text)
    return f"{query_type.value}:{text}"


def pattern_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the word sets of two patterns."""
    first_words = set(first.split(":", 1)[-1].split())
    second_words = set(second.split(":", 1)[-1].split())
    if not first_words or not second_words:
        return 0.0
    return len(first_words & second_words) / len(first_words | second_words)


def cache_key(query: str, options: Optional[SearchOptions] = None) -> str:
    key = " ".join(query.lower().split())
    if options is None:
        return key
    threshold = "" if options.score_threshold is None else options.score_threshold
    return (
        f"{key}|{options.strategy.value}|{options.limit}|{threshold}"
        f"|{int(options.enable_parallel)}{int(options.enable_query_expansion)}{int(options.enable_decomposition)}"
    )


class ResultCache:
    """Thread-safe query result cache that learns strategy preferences."""

    def __init__(self, config: Optional[SearchConfig] = None, clock: Optional[Callable[[], float]] = None):
        """Initialize the cache.

        Args:
            config: Search configuration (size, TTL, learning thresholds)
            clock: Callable returning the current time in milliseconds
        """
        self.config = config or SearchConfig()
        self._clock = clock or (lambda: time.time() * 1000)
        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._patterns: Dict[str, QueryPattern] = {}
        self._history: Dict[str, List[float]] = {}
        self._hits = 0
        self._misses = 0

        self._cleanup_task: Optional[asyncio.Task] = None
        self.is_running = False

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def get(self, query: str, options: Optional[SearchOptions] = None) -> Optional[CacheEntry]:
        """Look up a cached result.

        Returns:
            A copy of the entry, or None on a miss or an expired entry
        """
        key = cache_key(query, options)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if now - entry.last_accessed_ms > self.config.cache_ttl_ms:
                del self._entries[key]
                self._misses += 1
                logger.debug(f"Cache entry expired for '{query}'")
                return None

            entry.hit_count += 1
            entry.last_accessed_ms = now
            self._entries.move_to_end(key)
            self._hits += 1
            logger.debug(f"Cache hit for '{query}' (hits={entry.hit_count})")
            return entry.model_copy(deep=True)

    def set(
        self,
        query: str,
        classification: QueryClassification,
        result: UnifiedSearchResult,
        latency_ms: float,
        options: Optional[SearchOptions] = None,
        learn: bool = True
    ) -> None:
        """Store a result and, unless told not to, learn from how it was produced."""
        key = cache_key(query, options)
        now = self._clock()
        with self._lock:
            history = self._history.setdefault(key, [])
            history.append(latency_ms)
            del history[:-self.config.performance_history_size]

            self._entries[key] = CacheEntry(
                query=query,
                query_type=classification.type,
                strategy_used=result.strategy,
                results=result.model_copy(deep=True),
                timestamp_ms=now,
                last_accessed_ms=now,
                avg_response_time_ms=sum(history) / len(history),
                confidence=classification.confidence,
            )
            self._entries.move_to_end(key)

            if len(self._entries) > self.config.cache_max_size:
                self._evict()

            if learn and self._should_learn(result):
                self._learn(query, classification, result, latency_ms)

    def _should_learn(self, result: UnifiedSearchResult) -> bool:
        if not self.config.cache_learning_enabled:
            return False
        if result.performance.cache_hit:
            return False
        return result.strategy != SearchStrategy.DECOMPOSED

    def _evict(self) -> None:
        count = max(1, int(len(self._entries) * EVICTION_FRACTION))
        # sorted() is stable, so equal access times keep dict order
        oldest = sorted(self._entries.items(), key=lambda item: item[1].last_accessed_ms)[:count]
        for key, _ in oldest:
            del self._entries[key]
            self._history.pop(key, None)
        logger.debug(f"Evicted {len(oldest)} cache entries")

    def cleanup_expired(self) -> int:
        """Drop every entry past its TTL; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if now - entry.last_accessed_ms > self.config.cache_ttl_ms
            ]
            for key in expired:
                del self._entries[key]
                self._history.pop(key, None)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def clear(self, include_patterns: bool = False) -> None:
        with self._lock:
            self._entries.clear()
            self._history.clear()
            self._hits = 0
            self._misses = 0
            if include_patterns:
                self._patterns.clear()
        logger.info("Result cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Strategy learning
    # ------------------------------------------------------------------

    def _learn(
        self,
        query: str,
        classification: QueryClassification,
        result: UnifiedSearchResult,
        latency_ms: float
    ) -> None:
        key = normalize_pattern(query, classification.type)
        strategy = result.strategy
        success = bool(result.results) and latency_ms <= self.config.satisfactory_latency_ms

        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = QueryPattern(pattern=key, type=classification.type, preferred_strategy=strategy)
            self._patterns[key] = pattern

        stats = pattern.strategy_stats.setdefault(strategy.value, StrategyStats())
        stats.samples += 1
        stats.successes += int(success)
        stats.total_latency_ms += latency_ms

        pattern.frequency += 1
        pattern.avg_response_time_ms += (latency_ms - pattern.avg_response_time_ms) / pattern.frequency
        total_successes = sum(s.successes for s in pattern.strategy_stats.values())
        pattern.success_rate = total_successes / pattern.frequency
        pattern.preferred_strategy = SearchStrategy(self._best_strategy(pattern.strategy_stats))

        if len(self._patterns) > self.config.max_patterns:
            self._prune_patterns()

    @staticmethod
    def _best_strategy(strategy_stats: Dict[str, StrategyStats]) -> str:
        # min() keeps the first of equal candidates
        return min(
            strategy_stats,
            key=lambda name: (-strategy_stats[name].success_rate, strategy_stats[name].avg_latency_ms),
        )

    def _prune_patterns(self) -> None:
        before = len(self._patterns)
        self._patterns = {
            key: pattern for key, pattern in self._patterns.items()
            if pattern.frequency >= PRUNE_MIN_FREQUENCY
        }
        if len(self._patterns) > self.config.max_patterns:
            ranked = sorted(self._patterns.items(), key=lambda item: item[1].frequency, reverse=True)
            self._patterns = dict(ranked[:self.config.max_patterns])
        logger.debug(f"Pruned query patterns from {before} to {len(self._patterns)}")

    def get_suggested_strategy(self, query: str, classification: QueryClassification) -> Optional[SearchStrategy]:
        """Strategy that historically worked for queries shaped like this one.

        Only patterns of the same query type with word similarity above
        ``pattern_similarity_threshold`` and more than
        ``min_pattern_frequency`` observations qualify.
        """
        if not self.config.cache_learning_enabled:
            return None

        key = normalize_pattern(query, classification.type)
        with self._lock:
            best: Optional[QueryPattern] = None
            best_rank = None
            for pattern in self._patterns.values():
                if pattern.type != classification.type:
                    continue
                if pattern.frequency <= self.config.min_pattern_frequency:
                    continue
                similarity = 1.0 if pattern.pattern == key else pattern_similarity(key, pattern.pattern)
                if similarity <= self.config.pattern_similarity_threshold:
                    continue
                rank = (similarity, pattern.frequency)
                if best_rank is None or rank > best_rank:
                    best, best_rank = pattern, rank

        if best is None:
            return None
        logger.debug(f"Learned strategy {best.preferred_strategy.value} suggested for '{query}'")
        return best.preferred_strategy

    def export_patterns(self) -> List[Dict[str, Any]]:
        with self._lock:
            patterns = sorted(self._patterns.values(), key=lambda p: p.frequency, reverse=True)
            return [pattern.model_dump(mode="json") for pattern in patterns]

    def import_patterns(self, patterns: Iterable[Union[Dict[str, Any], QueryPattern]]) -> int:
        """Merge learned patterns; an imported pattern wins only when seen more often."""
        imported = 0
        with self._lock:
            for raw in patterns:
                pattern = raw if isinstance(raw, QueryPattern) else QueryPattern.model_validate(raw)
                existing = self._patterns.get(pattern.pattern)
                if existing is None or pattern.frequency > existing.frequency:
                    self._patterns[pattern.pattern] = pattern.model_copy(deep=True)
                    imported += 1
            if len(self._patterns) > self.config.max_patterns:
                self._prune_patterns()
        logger.info(f"Imported {imported} query patterns")
        return imported

    # ------------------------------------------------------------------
    # Stats and lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            entries = list(self._entries.values())
            top = sorted(self._patterns.values(), key=lambda p: p.frequency, reverse=True)[:TOP_PATTERN_COUNT]
            return {
                "cache_size": len(entries),
                "pattern_count": len(self._patterns),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "avg_response_time": (
                    sum(e.avg_response_time_ms for e in entries) / len(entries) if entries else 0.0
                ),
                "top_patterns": [
                    {
                        "pattern": p.pattern,
                        "frequency": p.frequency,
                        "preferred_strategy": p.preferred_strategy.value,
                        "success_rate": p.success_rate,
                    }
                    for p in top
                ],
            }

    def start(self) -> None:
        """Start the periodic cleanup loop on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self.is_running = True
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self):
        """Background task to periodically clean up expired entries."""
        while self.is_running:
            self.cleanup_expired()
            await asyncio.sleep(self.config.cache_cleanup_interval_s)

    def stop(self) -> None:
        self.is_running = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        logger.info("Result cache stopped")
