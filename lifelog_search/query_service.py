"""Search Service implementation.

This service is the entry point for lifelog searches. It owns one instance of
every search component (preprocessor, router, pattern index, hybrid ranker,
parallel executor, result cache, decomposer) and wires them together:

    cache lookup -> decomposition -> preprocess -> classify -> pick strategy
    -> execute (direct, parallel, or expanded over query variations) -> cache

Collaborator failures degrade the strategy set instead of failing the call;
only an unreachable document store propagates out of ``search``.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import Field

from lifelog_search.cache_service import ResultCache
from lifelog_search.config import SearchConfig
from lifelog_search.hybrid_ranker import HybridRanker
from lifelog_search.models import (
    DecomposedQuery,
    Document,
    PreprocessedQuery,
    QueryClassification,
    QueryType,
    ResultMetadata,
    SearchOptions,
    SearchPerformance,
    SearchResult,
    SearchStrategy,
    SubQueryResult,
    SubQueryType,
    UnifiedSearchResult,
)
from lifelog_search.parallel_executor import ParallelSearchExecutor, vector_hits_to_results
from lifelog_search.pattern_index import PatternIndex
from lifelog_search.query_decomposer import QueryDecomposer
from lifelog_search.query_preprocessor import QueryPreprocessor
from lifelog_search.query_router import QueryRouter
from lifelog_search.service_interfaces import (
    DocumentStoreInterface,
    DocumentStoreUnavailableError,
    ReasoningCollaboratorInterface,
    ServiceInterface,
    ServiceRequest,
    ServiceResponse,
    VectorIndexInterface,
)

# Configure logging
logger = logging.getLogger(__name__)


class SearchRequest(ServiceRequest):
    """Search request model."""
    query: str
    options: SearchOptions = Field(default_factory=SearchOptions)


class SearchResponse(ServiceResponse):
    """Search response model."""
    result: Optional[UnifiedSearchResult] = None


def _document_payload(document: Document) -> Dict[str, Any]:
    return {
        "id": document.id,
        "content": f"{document.title}\n{document.content}",
        "metadata": {
            "title": document.title,
            "created_at": document.created_at.isoformat(),
            "duration_seconds": document.duration_seconds,
            "headings": list(document.headings),
        },
    }


class SearchService(ServiceInterface):
    """Multi-strategy lifelog search orchestrator."""

    def __init__(
        self,
        document_store: DocumentStoreInterface,
        vector_index: Optional[VectorIndexInterface] = None,
        reasoning: Optional[ReasoningCollaboratorInterface] = None,
        config: Optional[SearchConfig] = None,
        now: Optional[Callable[[], datetime]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """Initialize the search service.

        Args:
            document_store: Source of lifelog documents
            vector_index: Optional vector index; None disables vector strategies
            reasoning: Optional reasoning collaborator for complex queries
            config: Search configuration
            now: Reference "now" for temporal resolution
            clock: Millisecond clock for cache freshness
        """
        self.config = config or SearchConfig()
        self.document_store = document_store
        self.vector_index = vector_index
        self.reasoning = reasoning
        self.now = now or datetime.now

        self.preprocessor = QueryPreprocessor(now=self.now)
        self.router = QueryRouter(self.config, now=self.now)
        self.pattern_index = PatternIndex(self.config)
        self.hybrid_ranker = HybridRanker(vector_index, self.config)
        self.executor = ParallelSearchExecutor(self.pattern_index, vector_index, self.config)
        self.cache = ResultCache(self.config, clock=clock)
        self.decomposer = QueryDecomposer()

        self.initialized = False
        self.vector_index_failed = False
        self.is_running = True
        logger.info(f"Search Service initialized (vector index: {'enabled' if vector_index else 'disabled'})")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self.vector_index is not None:
            try:
                await self.vector_index.initialize()
            except Exception as e:
                logger.warning(f"Vector index initialization failed, disabling vector strategies: {str(e)}")
                self._disable_vector_index()

        await self.build_index()
        self.cache.start()
        self.initialized = True

    def _disable_vector_index(self) -> None:
        self.vector_index = None
        self.vector_index_failed = True
        self.hybrid_ranker.vector_index = None
        self.executor.vector_index = None

    async def build_index(self) -> int:
        """Load every document and (re)build the search indexes.

        Returns:
            Number of documents indexed

        Raises:
            DocumentStoreUnavailableError: If the document store cannot be read
        """
        start_time = time.perf_counter()
        try:
            documents = await self.document_store.load_all()
        except DocumentStoreUnavailableError:
            raise
        except Exception as e:
            raise DocumentStoreUnavailableError(f"Failed to load documents: {str(e)}") from e

        await asyncio.to_thread(self.pattern_index.build_index, documents)
        await self.hybrid_ranker.initialize(documents)

        if self.vector_index is not None and documents:
            batch_size = self.config.vector_batch_size
            for i in range(0, len(documents), batch_size):
                batch = documents[i:i + batch_size]
                try:
                    await self.vector_index.add_documents([_document_payload(d) for d in batch])
                    logger.info(f"Vector index upsert: {min(i + batch_size, len(documents))}/{len(documents)}")
                except Exception as e:
                    logger.warning(f"Vector index upsert failed for batch starting at {i}: {str(e)}")

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(f"Search indexes built for {len(documents)} documents in {elapsed_ms:.1f}ms")
        return len(documents)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> UnifiedSearchResult:
        """Search lifelogs.

        Args:
            query: Natural-language query
            options: Search options; defaults use the auto strategy

        Returns:
            UnifiedSearchResult, possibly with empty results but always well formed

        Raises:
            DocumentStoreUnavailableError: If the indexes cannot be built
        """
        options = options or SearchOptions(limit=self.config.default_limit)
        start_time = time.perf_counter()
        if not self.initialized:
            await self.initialize()

        if options.enable_cache:
            cached = self.cache.get(query, options)
            if cached is not None:
                result = cached.results
                result.performance = SearchPerformance(
                    total_time_ms=(time.perf_counter() - start_time) * 1000,
                    search_time_ms=0.0,
                    strategy_used=cached.strategy_used.value,
                    cache_hit=True,
                )
                logger.debug(f"Serving '{query}' from cache")
                return result

        if options.enable_decomposition and self.config.enable_decomposition:
            decomposed = self.decomposer.decompose(query)
            if decomposed.is_decomposed:
                result = await self.search_decomposed(decomposed, options)
                total_ms = (time.perf_counter() - start_time) * 1000
                result.performance.total_time_ms = total_ms
                if options.enable_cache:
                    classification = self.router.classify_query(self.preprocessor.normalize_temporal_expressions(query))
                    self.cache.set(query, classification, result, total_ms, options, learn=False)
                return result

        preprocessed = self.preprocessor.preprocess(query)
        classification = self.router.classify_query(preprocessed.normalized)
        strategy = await self._select_strategy(query, classification, options)
        logger.debug(
            f"Query '{query}' classified as {classification.type.value} "
            f"(confidence={classification.confidence}), strategy={strategy.value}"
        )

        search_start = time.perf_counter()
        if (
            strategy != SearchStrategy.PARALLEL
            and options.enable_query_expansion
            and len(preprocessed.expanded_queries) > 1
        ):
            result = await self._execute_with_expansion(strategy, query, preprocessed, classification, options)
        else:
            result = await self._execute_strategy(strategy, query, preprocessed, classification, options)

        end_time = time.perf_counter()
        total_ms = (end_time - start_time) * 1000
        result.performance = SearchPerformance(
            total_time_ms=total_ms,
            search_time_ms=(end_time - search_start) * 1000,
            strategy_used=result.strategy.value,
            cache_hit=False,
        )

        if options.enable_cache:
            self.cache.set(query, classification, result, total_ms, options, learn=options.enable_learning)
        self.router.update_performance_metrics(classification.type, total_ms)

        logger.info(
            f"Search '{query}' via {result.strategy.value}: {len(result.results)} results in {total_ms:.1f}ms"
        )
        return result

    async def _select_strategy(
        self,
        query: str,
        classification: QueryClassification,
        options: SearchOptions
    ) -> SearchStrategy:
        """Resolve the strategy to run.

        Auto mode prefers a learned suggestion, then parallel execution when
        enabled, then the classifier's static suggestion. Unavailable
        collaborators downgrade claude to hybrid and vector to fast.
        """
        strategy = options.strategy
        if strategy in (SearchStrategy.AUTO, SearchStrategy.DECOMPOSED):
            learned = None
            if options.enable_learning:
                learned = self.cache.get_suggested_strategy(query, classification)
            if learned is not None and learned not in (SearchStrategy.AUTO, SearchStrategy.DECOMPOSED):
                strategy = learned
            elif options.enable_parallel and self.config.enable_parallel:
                strategy = SearchStrategy.PARALLEL
            else:
                strategy = classification.suggested_strategy

        if strategy == SearchStrategy.CLAUDE and not await self._reasoning_available():
            logger.info("Reasoning collaborator unavailable, falling back to hybrid search")
            strategy = SearchStrategy.HYBRID
        if strategy == SearchStrategy.VECTOR and self.vector_index is None:
            strategy = SearchStrategy.FAST
        return strategy

    async def _reasoning_available(self) -> bool:
        if self.reasoning is None:
            return False
        try:
            return await self.reasoning.is_available()
        except Exception as e:
            logger.warning(f"Reasoning availability probe failed: {str(e)}")
            return False

    async def _execute_strategy(
        self,
        strategy: SearchStrategy,
        query: str,
        preprocessed: PreprocessedQuery,
        classification: QueryClassification,
        options: SearchOptions
    ) -> UnifiedSearchResult:
        if strategy == SearchStrategy.PARALLEL:
            parallel = await self.executor.execute_parallel_search(query, preprocessed, options, classification)
            return UnifiedSearchResult(
                query=query,
                strategy=SearchStrategy.PARALLEL,
                results=parallel.results,
                strategy_timings=parallel.performance.strategy_timings,
                failed_strategies=parallel.performance.failed_strategies,
                context_insights=parallel.context_insights,
            )

        if strategy == SearchStrategy.CLAUDE:
            return await self._claude_search(query, preprocessed, classification, options)

        if strategy == SearchStrategy.VECTOR:
            results = await self._vector_search(query, classification, options)
        elif strategy == SearchStrategy.HYBRID:
            results = await self._hybrid_search(query, options)
        else:
            strategy = SearchStrategy.FAST
            results = await self._fast_search(query, classification, options)

        return UnifiedSearchResult(query=query, strategy=strategy, results=results)

    async def _fast_search(
        self,
        query: str,
        classification: QueryClassification,
        options: SearchOptions
    ) -> List[SearchResult]:
        entities = classification.extracted_entities
        if classification.type == QueryType.DATE_BASED and (entities.dates or entities.date_ranges):
            ranges = [(d, d) for d in entities.dates] + [(r.start, r.end) for r in entities.date_ranges]
            found: Dict[str, SearchResult] = {}
            for start, end in ranges:
                for result in await asyncio.to_thread(
                    self.pattern_index.search_by_date_range, start, end, max_results=options.limit
                ):
                    found.setdefault(result.id, result)
            return list(found.values())[:options.limit]

        return await asyncio.to_thread(
            self.pattern_index.search,
            query,
            max_results=options.limit,
            score_threshold=options.score_threshold,
        )

    async def _vector_search(
        self,
        query: str,
        classification: QueryClassification,
        options: SearchOptions
    ) -> List[SearchResult]:
        if self.vector_index is None:
            return await self._fast_search(query, classification, options)
        try:
            hits = await self.vector_index.search_by_text(
                query, top_k=options.limit, score_threshold=options.score_threshold
            )
        except Exception as e:
            logger.warning(f"Vector search failed, falling back to fast search: {str(e)}")
            return await self._fast_search(query, classification, options)
        return vector_hits_to_results(hits, self.pattern_index, self.config.context_length)

    async def _hybrid_search(self, query: str, options: SearchOptions) -> List[SearchResult]:
        if self.vector_index is None:
            return await self._lexical_search(query, options)
        try:
            fused = await self.hybrid_ranker.search(
                query,
                top_k=options.limit,
                hybrid_weight=options.hybrid_weight,
                score_threshold=options.score_threshold,
            )
        except Exception as e:
            logger.warning(f"Hybrid search failed, falling back to lexical search: {str(e)}")
            return await self._lexical_search(query, options)

        return [
            SearchResult(
                id=item.id,
                score=item.score,
                document=self.pattern_index.get_document(item.id),
                highlights=[item.content[:self.config.context_length]] if item.content else [],
                metadata=ResultMetadata(
                    source=item.source,
                    keyword_score=item.keyword_score,
                    vector_score=item.vector_score,
                    extra=dict(item.metadata or {}),
                ),
            )
            for item in fused
        ]

    async def _lexical_search(self, query: str, options: SearchOptions) -> List[SearchResult]:
        return await asyncio.to_thread(
            self.pattern_index.search,
            query,
            max_results=options.limit,
            score_threshold=options.score_threshold,
        )

    async def _claude_search(
        self,
        query: str,
        preprocessed: PreprocessedQuery,
        classification: QueryClassification,
        options: SearchOptions
    ) -> UnifiedSearchResult:
        candidate_options = options.model_copy(update={"limit": self.config.reasoning_candidate_count})
        candidates = await self._fast_search(query, classification, candidate_options)
        documents = [result.document for result in candidates if result.document is not None]

        try:
            response = await self.reasoning.execute_complex_search(query, documents, {"limit": options.limit})
        except Exception as e:
            logger.warning(f"Reasoning search failed, falling back to hybrid search: {str(e)}")
            return await self._execute_strategy(SearchStrategy.HYBRID, query, preprocessed, classification, options)

        ranked = list(response.get("results") or [])[:options.limit]
        results = [
            SearchResult(
                id=document.id,
                score=1 - index / len(ranked),
                document=document,
                metadata=ResultMetadata(source=SearchStrategy.CLAUDE.value),
            )
            for index, document in enumerate(ranked)
        ]
        return UnifiedSearchResult(
            query=query,
            strategy=SearchStrategy.CLAUDE,
            results=results,
            insights=response.get("insights"),
            action_items=response.get("action_items"),
            summary=response.get("summary"),
        )

    async def _execute_with_expansion(
        self,
        strategy: SearchStrategy,
        query: str,
        preprocessed: PreprocessedQuery,
        classification: QueryClassification,
        options: SearchOptions
    ) -> UnifiedSearchResult:
        """Run the strategy over query variations and merge by consensus."""
        variations = preprocessed.expanded_queries[:self.config.max_query_variations]
        logger.debug(f"Expanding '{query}' into {len(variations)} variations")

        outcomes = await asyncio.gather(
            *(
                self._execute_strategy(strategy, variation, self.preprocessor.preprocess(variation), classification, options)
                for variation in variations
            ),
            return_exceptions=True,
        )

        merged: Dict[str, SearchResult] = {}
        found_by: Dict[str, List[str]] = {}
        first_success: Optional[UnifiedSearchResult] = None
        for variation, outcome in zip(variations, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Query variation '{variation}' failed: {str(outcome)}")
                continue
            first_success = first_success or outcome
            for result in outcome.results:
                existing = merged.get(result.id)
                if existing is None:
                    merged[result.id] = result.model_copy(deep=True)
                    found_by[result.id] = [variation]
                else:
                    existing.score = max(existing.score, result.score)
                    if variation not in found_by[result.id]:
                        found_by[result.id].append(variation)

        for document_id, result in merged.items():
            count = len(found_by[document_id])
            result.score = result.score * (1 + self.config.expansion_consensus_boost * (count - 1))
            result.metadata.consensus_count = count
            result.metadata.query_variations = found_by[document_id]

        ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)[:options.limit]
        base = first_success or UnifiedSearchResult(query=query, strategy=strategy)
        return base.model_copy(update={"query": query, "results": ranked})

    async def search_decomposed(self, decomposed: DecomposedQuery, options: SearchOptions) -> UnifiedSearchResult:
        """Run each sub-query through ``search`` in execution order and merge."""
        nested = options.model_copy(update={"enable_decomposition": False})
        by_id = {sub_query.id: sub_query for sub_query in decomposed.sub_queries}
        found: Dict[str, Set[str]] = {}
        sub_results: List[SubQueryResult] = []
        merged: Dict[str, SearchResult] = {}

        for sub_query_id in decomposed.execution_order:
            sub_query = by_id[sub_query_id]
            result = await self.search(sub_query.text, nested)
            results = [r.model_copy(deep=True) for r in result.results]

            if sub_query.type == SubQueryType.FILTER and sub_query.dependencies:
                allowed = set().union(*(found.get(dependency, set()) for dependency in sub_query.dependencies))
                results = [r for r in results if r.id in allowed]

            for r in results:
                r.metadata.sub_query_id = sub_query.id
                existing = merged.get(r.id)
                if existing is None:
                    merged[r.id] = r.model_copy(deep=True)
                elif r.score > existing.score:
                    existing.score = r.score

            found[sub_query.id] = {r.id for r in results}
            sub_results.append(SubQueryResult(sub_query=sub_query, strategy=result.strategy.value, results=results))

        ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)[:options.limit]
        logger.info(f"Decomposed search ran {len(sub_results)} sub-queries, {len(ranked)} merged results")
        return UnifiedSearchResult(
            query=decomposed.original,
            strategy=SearchStrategy.DECOMPOSED,
            results=ranked,
            performance=SearchPerformance(strategy_used=SearchStrategy.DECOMPOSED.value),
            sub_query_results=sub_results,
            requires_contextual_summary=decomposed.requires_contextual_summary,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_performance_stats(self) -> Dict[str, Any]:
        return {
            "router": self.router.get_performance_report(),
            "cache": self.cache.stats(),
            "pattern_index": self.pattern_index.stats(),
            "hybrid_ranker": self.hybrid_ranker.stats(),
            "vector_index_enabled": self.vector_index is not None,
        }

    def clear_caches(self) -> None:
        """Clear the result cache, lexical index and classification cache.

        The next search rebuilds the indexes.
        """
        self.cache.clear()
        self.pattern_index.clear()
        self.router.clear_cache()
        self.initialized = False
        logger.info("Search caches cleared")

    async def stop(self) -> None:
        self.cache.stop()
        if self.vector_index is not None:
            try:
                await self.vector_index.close()
            except Exception as e:
                logger.warning(f"Error closing vector index: {str(e)}")
        logger.info("Search Service stopped")

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        if self.reasoning is None:
            reasoning_status = "not configured"
        else:
            reasoning_status = "available" if await self._reasoning_available() else "unavailable"

        status = "healthy"
        if not self.initialized:
            status = "initializing"
        elif self.vector_index_failed:
            status = "degraded"

        return {
            "status": status,
            "version": "1.0.0",
            "indexed_documents": self.pattern_index.document_count,
            "vector_index": "enabled" if self.vector_index is not None else "disabled",
            "reasoning": reasoning_status,
            "cache_size": len(self.cache),
        }

    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        if not isinstance(request, SearchRequest):
            return ServiceResponse(
                request_id=request.request_id,
                status="error",
                message="Invalid request type"
            )

        try:
            result = await self.search(request.query, request.options)
            return SearchResponse(
                request_id=request.request_id,
                status="success",
                result=result
            )
        except Exception as e:
            logger.error(f"Error processing search request {request.request_id}: {str(e)}")
            return SearchResponse(
                request_id=request.request_id,
                status="error",
                message=f"Error processing search: {str(e)}"
            )

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Search Service")
        self.is_running = False
        await self.stop()


# FastAPI specific code
def create_fastapi_app():
    """Create a FastAPI app for the Search Service."""
    from fastapi import FastAPI, HTTPException
    import os

    from lifelog_search.document_store import JsonDocumentStore
    from lifelog_search.reasoning_client import HttpReasoningClient

    app = FastAPI(title="Lifelog Search Service", version="1.0.0")

    # Initialize service with environment variables or defaults
    reasoning_url = os.getenv("LIFELOG_REASONING_URL")
    reasoning = HttpReasoningClient(reasoning_url) if reasoning_url else None
    service = SearchService(
        document_store=JsonDocumentStore(os.getenv("LIFELOG_DATA_DIR", "data/lifelogs")),
        reasoning=reasoning,
        config=SearchConfig.from_env(),
    )

    @app.on_event("startup")
    async def startup_event():
        await service.initialize()

    @app.on_event("shutdown")
    async def shutdown_event():
        await service.shutdown()
        if reasoning is not None:
            await reasoning.close()

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return await service.health_check()

    @app.post("/search")
    async def search(request: SearchRequest):
        """Process a search request."""
        response = await service.process_request(request)
        if response.status == "error":
            raise HTTPException(status_code=400, detail=response.message)
        return response

    @app.get("/stats")
    async def stats():
        """Performance statistics endpoint."""
        return service.get_performance_stats()

    return app
