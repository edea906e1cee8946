"""Parallel execution of search strategies with shared discovery context.

Strategies run in two phases. Phase 1 ("discovery") runs the lexical and
date-range strategies concurrently; once both settle the executor yields
briefly, then phase 2 ("enhancement") runs vector-semantic search and the
context-aware filter concurrently. Phase 2 reads what phase 1 published to the
shared ``SearchContext``: the vector query is enriched with discovered
keywords, and the filter re-examines documents flagged hot.

Every strategy is isolated. A failure or per-call timeout is logged, recorded
in ``failed_strategies`` and contributes nothing; it never aborts siblings.

Merging keys results by document id, keeps the best raw score, records every
finding strategy in ``matching_sources`` and then applies, in this order, the
consensus boost, the hot-document multiplier and the temporal-decay
multiplier.
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from lifelog_search.config import SearchConfig
from lifelog_search.models import (
    ContextInsights,
    ExecutorPerformance,
    ParallelSearchResult,
    PreprocessedQuery,
    QueryClassification,
    ResultMetadata,
    SearchOptions,
    SearchResult,
)
from lifelog_search.pattern_index import PatternIndex, tokenize
from lifelog_search.search_context import SearchContext
from lifelog_search.service_interfaces import StrategyExecutionError, VectorIndexInterface

# Configure logging
logger = logging.getLogger(__name__)

LEXICAL = "lexical"
DATE_RANGE = "date-range"
VECTOR_SEMANTIC = "vector-semantic"
CONTEXT_FILTER = "context-filter"

# Merge order, which is also the tie-break order of the final ranking
STRATEGY_ORDER = [LEXICAL, DATE_RANGE, VECTOR_SEMANTIC, CONTEXT_FILTER]

# Weight of keyword overlap vs. date proximity in the context filter
CONTEXT_KEYWORD_WEIGHT = 0.7
CONTEXT_DATE_WEIGHT = 0.3

# Score for in-range documents when the residual query matched nothing
DATE_ONLY_SCORE = 0.5

NUMERIC_PATTERN = re.compile(r"^\d+$")


@dataclass
class StrategySpec:
    name: str
    phase: int
    run: Callable[[], Awaitable[List[SearchResult]]]


@dataclass
class StrategyOutcome:
    name: str
    results: List[SearchResult] = field(default_factory=list)
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _content_keywords(keywords: Sequence[str]) -> List[str]:
    """Drop numeric fragments left behind by ISO date normalization."""
    return [keyword for keyword in keywords if not NUMERIC_PATTERN.match(keyword)]


def vector_hits_to_results(
    hits: Sequence[Dict[str, Any]],
    pattern_index: PatternIndex,
    context_length: int
) -> List[SearchResult]:
    """Turn vector index hits into results backed by indexed documents."""
    results = []
    for hit in hits:
        content = hit.get("content")
        results.append(SearchResult(
            id=hit["id"],
            score=float(hit.get("score", 0.0)),
            document=pattern_index.get_document(hit["id"]),
            highlights=[content[:context_length]] if content else [],
            metadata=ResultMetadata(vector_score=hit.get("score"), extra=dict(hit.get("metadata") or {})),
        ))
    return results


def merge_strategy_results(
    strategy_results: Sequence[Tuple[str, List[SearchResult]]],
    context: ContextInsights,
    config: Optional[SearchConfig] = None,
    limit: Optional[int] = None
) -> List[SearchResult]:
    """Merge per-strategy result lists into one ranked, deduplicated list.

    Args:
        strategy_results: (strategy name, results) pairs in merge order
        context: Settled search context (hot documents, discovered dates)
        config: Search configuration holding the boost constants
        limit: Optional cap on the returned results

    Returns:
        Results sorted by descending adjusted score, ties in merge order
    """
    config = config or SearchConfig()
    merged: Dict[str, SearchResult] = {}

    for name, results in strategy_results:
        for result in results:
            existing = merged.get(result.id)
            if existing is None:
                copy = result.model_copy(deep=True)
                copy.metadata.source = name
                copy.metadata.matching_sources = [name]
                merged[result.id] = copy
                continue

            existing.score = max(existing.score, result.score)
            if name not in existing.metadata.matching_sources:
                existing.metadata.matching_sources.append(name)
            for highlight in result.highlights:
                if highlight not in existing.highlights:
                    existing.highlights.append(highlight)
            if existing.document is None:
                existing.document = result.document
            _fill_missing_metadata(existing.metadata, result.metadata)

    hot_ids = set(context.hot_document_ids)
    discovered = np.array([d.toordinal() for d in context.discovered_dates], dtype=float)

    for result in merged.values():
        metadata = result.metadata
        consensus = config.consensus_boost ** (len(metadata.matching_sources) - 1)

        hot_multiplier = 1.0
        if result.id in hot_ids:
            metadata.is_hot_document = True
            if CONTEXT_FILTER in metadata.matching_sources:
                hot_multiplier = config.confirmed_hot_document_boost
            else:
                hot_multiplier = config.hot_document_boost

        decay = 1.0
        if discovered.size and result.document is not None:
            days = float(np.min(np.abs(discovered - result.document.created_date.toordinal())))
            decay = max(config.temporal_decay_floor, 1 - config.temporal_decay_per_day * days)

        result.score = result.score * consensus
        result.score = result.score * hot_multiplier
        result.score = result.score * decay
        metadata.consensus_score = consensus
        metadata.temporal_decay = decay

    ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)
    return ranked[:limit] if limit else ranked


def _fill_missing_metadata(target: ResultMetadata, source: ResultMetadata) -> None:
    for name in ("keyword_score", "vector_score", "date_match", "match_count"):
        if getattr(target, name) is None and getattr(source, name) is not None:
            setattr(target, name, getattr(source, name))
    for match_type in source.match_types:
        if match_type not in target.match_types:
            target.match_types.append(match_type)
    for key, value in source.extra.items():
        target.extra.setdefault(key, value)


class ParallelSearchExecutor:
    """Runs the discovery and enhancement strategy phases for one query."""

    def __init__(
        self,
        pattern_index: PatternIndex,
        vector_index: Optional[VectorIndexInterface] = None,
        config: Optional[SearchConfig] = None
    ):
        """Initialize the executor.

        Args:
            pattern_index: Lexical index shared with the orchestrator
            vector_index: Vector index collaborator; None disables vector search
            config: Search configuration
        """
        self.pattern_index = pattern_index
        self.vector_index = vector_index
        self.config = config or SearchConfig()

    async def execute_parallel_search(
        self,
        query: str,
        preprocessed: PreprocessedQuery,
        options: Optional[SearchOptions] = None,
        classification: Optional[QueryClassification] = None
    ) -> ParallelSearchResult:
        """Execute every applicable strategy and merge their results.

        Args:
            query: Query text as given by the caller
            preprocessed: Preprocessed form of the query
            options: Search options (limit, threshold, overall timeout)
            classification: Optional classification supplying extra dates

        Returns:
            ParallelSearchResult with merged results, timings, failures and
            the settled context
        """
        options = options or SearchOptions(limit=self.config.default_limit)
        start_time = time.perf_counter()
        context = SearchContext()
        strategies = self.select_strategies(query, preprocessed, options, context, classification)
        outcomes: Dict[str, StrategyOutcome] = {}

        logger.info(f"Executing {len(strategies)} search strategies: {[s.name for s in strategies]}")

        try:
            if options.timeout_ms:
                await asyncio.wait_for(self._run_phases(strategies, outcomes), timeout=options.timeout_ms / 1000)
            else:
                await self._run_phases(strategies, outcomes)
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.warning(f"Parallel search timed out after {elapsed_ms:.0f}ms; returning partial results")
            for spec in strategies:
                if spec.name not in outcomes:
                    outcomes[spec.name] = StrategyOutcome(spec.name, elapsed_ms=elapsed_ms, error="overall timeout")

        successful = [
            (name, outcomes[name].results)
            for name in STRATEGY_ORDER
            if name in outcomes and not outcomes[name].failed
        ]
        insights = context.snapshot()
        results = merge_strategy_results(successful, insights, self.config, options.limit)

        performance = ExecutorPerformance(
            total_time_ms=(time.perf_counter() - start_time) * 1000,
            strategy_timings={name: outcomes[name].elapsed_ms for name in STRATEGY_ORDER if name in outcomes},
            failed_strategies=[name for name in STRATEGY_ORDER if name in outcomes and outcomes[name].failed],
        )
        logger.info(
            f"Parallel search completed in {performance.total_time_ms:.1f}ms: "
            f"{len(results)} results, failed={performance.failed_strategies}"
        )

        return ParallelSearchResult(
            query=query,
            results=results,
            performance=performance,
            context_insights=insights,
        )

    def select_strategies(
        self,
        query: str,
        preprocessed: PreprocessedQuery,
        options: SearchOptions,
        context: SearchContext,
        classification: Optional[QueryClassification] = None
    ) -> List[StrategySpec]:
        """Strategies applicable to this query, in merge order."""
        strategies = [StrategySpec(LEXICAL, 1, lambda: self._lexical_strategy(query, preprocessed, options, context))]

        date_ranges = self._date_ranges(preprocessed, classification)
        if date_ranges:
            strategies.append(StrategySpec(
                DATE_RANGE, 1, lambda: self._date_strategy(date_ranges, preprocessed, options, context)
            ))

        if self.vector_index is not None:
            strategies.append(StrategySpec(
                VECTOR_SEMANTIC, 2, lambda: self._vector_strategy(query, options, context)
            ))

        strategies.append(StrategySpec(
            CONTEXT_FILTER, 2, lambda: self._context_filter_strategy(preprocessed, options, context)
        ))
        return strategies

    async def _run_phases(self, strategies: List[StrategySpec], outcomes: Dict[str, StrategyOutcome]) -> None:
        discovery = [spec for spec in strategies if spec.phase == 1]
        enhancement = [spec for spec in strategies if spec.phase == 2]

        await asyncio.gather(*(self._run_strategy(spec, outcomes) for spec in discovery))
        # Let phase 1 context merges settle before phase 2 reads them
        await asyncio.sleep(self.config.phase_yield_ms / 1000)
        await asyncio.gather(*(self._run_strategy(spec, outcomes) for spec in enhancement))

    async def _run_strategy(self, spec: StrategySpec, outcomes: Dict[str, StrategyOutcome]) -> None:
        start_time = time.perf_counter()
        try:
            results = await asyncio.wait_for(spec.run(), timeout=self.config.strategy_timeout_ms / 1000)
            outcomes[spec.name] = StrategyOutcome(
                spec.name, list(results or []), (time.perf_counter() - start_time) * 1000
            )
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.warning(f"Search strategy {spec.name} timed out after {elapsed_ms:.0f}ms")
            outcomes[spec.name] = StrategyOutcome(spec.name, elapsed_ms=elapsed_ms, error="timeout")
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.warning(f"Search strategy {spec.name} failed after {elapsed_ms:.0f}ms: {str(e)}")
            outcomes[spec.name] = StrategyOutcome(spec.name, elapsed_ms=elapsed_ms, error=str(e) or type(e).__name__)

    def _date_ranges(
        self,
        preprocessed: PreprocessedQuery,
        classification: Optional[QueryClassification]
    ) -> List[Tuple[date, date]]:
        ranges = [(d, d) for d in preprocessed.temporal_info.dates]
        ranges.extend((r.start, r.end) for r in preprocessed.temporal_info.date_ranges)
        if not ranges and classification is not None:
            entities = classification.extracted_entities
            ranges = [(d, d) for d in entities.dates]
            ranges.extend((r.start, r.end) for r in entities.date_ranges)
        return list(dict.fromkeys(ranges))

    def _limit_and_threshold(self, options: SearchOptions) -> Tuple[int, float]:
        threshold = options.score_threshold
        if threshold is None:
            threshold = self.config.default_score_threshold
        return options.limit, threshold

    # ------------------------------------------------------------------
    # Phase 1: discovery
    # ------------------------------------------------------------------

    async def _lexical_strategy(
        self,
        query: str,
        preprocessed: PreprocessedQuery,
        options: SearchOptions,
        context: SearchContext
    ) -> List[SearchResult]:
        limit, threshold = self._limit_and_threshold(options)
        results = await asyncio.to_thread(
            self.pattern_index.search, query, max_results=limit, score_threshold=threshold
        )

        top = results[:self.config.hot_document_count]
        keywords = _content_keywords(preprocessed.keywords)
        found_keywords = [
            keyword for keyword in keywords
            if any(r.document and keyword in f"{r.document.title} {r.document.content}".lower() for r in top)
        ]
        context.update(
            LEXICAL,
            hot_document_ids=[r.id for r in top],
            discovered_dates=[r.document.created_date for r in top if r.document],
            relevant_keywords=found_keywords,
            confidence=top[0].score if top else 0.0,
        )
        return results

    async def _date_strategy(
        self,
        date_ranges: List[Tuple[date, date]],
        preprocessed: PreprocessedQuery,
        options: SearchOptions,
        context: SearchContext
    ) -> List[SearchResult]:
        limit, threshold = self._limit_and_threshold(options)
        residual = " ".join(_content_keywords(preprocessed.keywords))

        found: Dict[str, SearchResult] = {}
        for start, end in date_ranges:
            results = []
            if residual:
                results = await asyncio.to_thread(
                    self.pattern_index.search_by_date_range, start, end, residual,
                    max_results=limit, score_threshold=threshold,
                )
            if not results:
                results = await asyncio.to_thread(
                    self.pattern_index.search_by_date_range, start, end, max_results=limit
                )
                if residual:
                    for result in results:
                        result.score = DATE_ONLY_SCORE
            for result in results:
                if result.id not in found or result.score > found[result.id].score:
                    found[result.id] = result

        ranked = sorted(found.values(), key=lambda r: r.score, reverse=True)[:limit]
        for result in ranked:
            day = result.document.created_date
            result.highlights.insert(0, f"Date match: {day.isoformat()}")
            result.metadata.date_match = day

        context.update(
            DATE_RANGE,
            hot_document_ids=[r.id for r in ranked[:self.config.hot_document_count]],
            discovered_dates=[r.document.created_date for r in ranked],
            confidence=1.0 if ranked else 0.0,
        )
        return ranked

    # ------------------------------------------------------------------
    # Phase 2: enhancement
    # ------------------------------------------------------------------

    async def _vector_strategy(self, query: str, options: SearchOptions, context: SearchContext) -> List[SearchResult]:
        if self.vector_index is None:
            raise StrategyExecutionError("vector index is not configured")

        limit, _ = self._limit_and_threshold(options)
        query_tokens = set(tokenize(query))
        extra = [kw for kw in sorted(context.relevant_keywords) if kw not in query_tokens]
        extra = extra[:self.config.max_context_keywords]
        enhanced_query = f"{query} {' '.join(extra)}" if extra else query
        if extra:
            logger.debug(f"Vector query enhanced with context keywords: {extra}")

        raw_results = await self.vector_index.search_by_text(
            enhanced_query, top_k=limit, score_threshold=options.score_threshold
        )

        results = vector_hits_to_results(raw_results, self.pattern_index, self.config.context_length)

        top = results[:self.config.hot_document_count]
        context.update(
            VECTOR_SEMANTIC,
            hot_document_ids=[r.id for r in top],
            discovered_dates=[r.document.created_date for r in top if r.document],
            confidence=top[0].score if top else 0.0,
        )
        return results

    async def _context_filter_strategy(
        self,
        preprocessed: PreprocessedQuery,
        options: SearchOptions,
        context: SearchContext
    ) -> List[SearchResult]:
        snapshot = context.snapshot()
        keywords = sorted(set(snapshot.relevant_keywords) | set(_content_keywords(preprocessed.keywords)))
        discovered = set(snapshot.discovered_dates)

        def examine() -> List[SearchResult]:
            examined = []
            for document_id in snapshot.hot_document_ids:
                document = self.pattern_index.get_document(document_id)
                if document is None:
                    continue
                text = f"{document.title} {document.content}".lower()
                matched = [keyword for keyword in keywords if keyword in text]
                date_hit = document.created_date in discovered

                if keywords:
                    score = CONTEXT_KEYWORD_WEIGHT * len(matched) / len(keywords)
                    score += CONTEXT_DATE_WEIGHT if date_hit else 0.0
                else:
                    score = CONTEXT_DATE_WEIGHT if date_hit else 0.0
                if score <= 0:
                    continue

                highlights = [f"Context match: {', '.join(matched)}"] if matched else []
                examined.append(SearchResult(
                    id=document_id,
                    score=score,
                    document=document,
                    highlights=highlights,
                    metadata=ResultMetadata(match_count=len(matched)),
                ))
            examined.sort(key=lambda r: r.score, reverse=True)
            return examined[:options.limit]

        results = await asyncio.to_thread(examine)
        context.update(
            CONTEXT_FILTER,
            confidence=float(np.mean([r.score for r in results])) if results else 0.0,
        )
        return results
