"""Data models shared by every component of the search engine.

Documents arrive from the document store and are never modified by the search
core. Everything else here is derived per query: classifications, preprocessed
queries, decompositions, per-strategy results and the unified result handed
back to callers.
"""
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueryType(str, Enum):
    """Query classes recognised by the router, in tie-break order."""
    SIMPLE_KEYWORD = "simple_keyword"
    DATE_BASED = "date_based"
    SEMANTIC = "semantic"
    COMPLEX_ANALYTICAL = "complex_analytical"
    ACTION_ITEM = "action_item"
    SUMMARY = "summary"


class SearchStrategy(str, Enum):
    """Retrieval strategies the orchestrator can execute."""
    AUTO = "auto"
    FAST = "fast"
    VECTOR = "vector"
    HYBRID = "hybrid"
    CLAUDE = "claude"
    PARALLEL = "parallel"
    DECOMPOSED = "decomposed"


class QueryIntent(str, Enum):
    SEARCH = "search"
    QUESTION = "question"
    COMMAND = "command"
    TEMPORAL_QUERY = "temporal_query"
    PERSON_QUERY = "person_query"
    ANALYTICAL = "analytical"


class SubQueryType(str, Enum):
    SEARCH = "search"
    FILTER = "filter"
    SUMMARIZE = "summarize"
    COMPARE = "compare"
    ANALYZE = "analyze"
    EXTRACT = "extract"


class Document(BaseModel):
    """A timestamped transcript-like lifelog record."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    title: str = ""
    content: str = ""
    created_at: datetime = Field(alias="createdAt")
    duration_seconds: float = Field(default=0.0, alias="durationSeconds")
    headings: List[str] = Field(default_factory=list)

    @property
    def created_date(self) -> date:
        return self.created_at.date()


class MatchSpan(BaseModel):
    """A located match inside a document's ``title + " " + content`` text."""
    type: str
    context: str
    position: int


class ResultMetadata(BaseModel):
    """Fixed set of optional fields any strategy may attach to a result.

    ``source`` is the strategy that first produced the result and
    ``matching_sources`` every strategy that found it, in merge order.
    Collaborator-provided metadata that has no dedicated field lands in
    ``extra``.
    """
    source: Optional[str] = None
    matching_sources: List[str] = Field(default_factory=list)
    match_count: Optional[int] = None
    match_types: List[str] = Field(default_factory=list)
    is_hot_document: bool = False
    consensus_score: Optional[float] = None
    temporal_decay: Optional[float] = None
    keyword_score: Optional[float] = None
    vector_score: Optional[float] = None
    consensus_count: Optional[int] = None
    query_variations: List[str] = Field(default_factory=list)
    date_match: Optional[date] = None
    sub_query_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class SearchResult(BaseModel):
    id: str
    score: float
    document: Optional[Document] = None
    highlights: List[str] = Field(default_factory=list)
    matches: List[MatchSpan] = Field(default_factory=list)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)


class DateRange(BaseModel):
    start: date
    end: date


class ExtractedEntities(BaseModel):
    keywords: List[str] = Field(default_factory=list)
    dates: List[date] = Field(default_factory=list)
    date_ranges: List[DateRange] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)


class QueryClassification(BaseModel):
    type: QueryType
    confidence: float
    extracted_entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    suggested_strategy: SearchStrategy
    estimated_response_time_ms: float


class TemporalInfo(BaseModel):
    dates: List[date] = Field(default_factory=list)
    date_ranges: List[DateRange] = Field(default_factory=list)
    relative_time: Optional[str] = None

    @property
    def has_references(self) -> bool:
        return bool(self.dates or self.date_ranges)


class NamedEntities(BaseModel):
    people: List[str] = Field(default_factory=list)
    places: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)


class PreprocessedQuery(BaseModel):
    original: str
    normalized: str
    expanded_queries: List[str] = Field(default_factory=list)
    temporal_info: TemporalInfo = Field(default_factory=TemporalInfo)
    entities: NamedEntities = Field(default_factory=NamedEntities)
    intent: QueryIntent = QueryIntent.SEARCH
    keywords: List[str] = Field(default_factory=list)


class SubQueryContext(BaseModel):
    references_previous: bool = False
    temporal: Optional[str] = None
    entities: List[str] = Field(default_factory=list)


class SubQuery(BaseModel):
    id: str
    text: str
    type: SubQueryType = SubQueryType.SEARCH
    intent: QueryIntent = QueryIntent.SEARCH
    dependencies: List[str] = Field(default_factory=list)
    context: SubQueryContext = Field(default_factory=SubQueryContext)


class DecomposedQuery(BaseModel):
    original: str
    sub_queries: List[SubQuery]
    execution_order: List[str]
    requires_contextual_summary: bool = False
    complexity: float = 1.0
    estimated_execution_time_ms: float = 0.0

    @property
    def is_decomposed(self) -> bool:
        return len(self.sub_queries) > 1


class SearchOptions(BaseModel):
    """Caller options for a single search call."""
    strategy: SearchStrategy = SearchStrategy.AUTO
    limit: int = 20
    score_threshold: Optional[float] = None
    hybrid_weight: Optional[float] = None
    enable_cache: bool = True
    enable_learning: bool = True
    enable_parallel: bool = True
    enable_query_expansion: bool = True
    enable_decomposition: bool = True
    timeout_ms: Optional[float] = None


class SearchPerformance(BaseModel):
    total_time_ms: float = 0.0
    search_time_ms: float = 0.0
    strategy_used: str = ""
    cache_hit: bool = False


class ContextInsights(BaseModel):
    """Frozen view of a SearchContext once a parallel search has settled."""
    hot_document_ids: List[str] = Field(default_factory=list)
    discovered_dates: List[date] = Field(default_factory=list)
    relevant_keywords: List[str] = Field(default_factory=list)
    strategy_confidence: Dict[str, float] = Field(default_factory=dict)


class ExecutorPerformance(BaseModel):
    total_time_ms: float = 0.0
    strategy_timings: Dict[str, float] = Field(default_factory=dict)
    failed_strategies: List[str] = Field(default_factory=list)


class ParallelSearchResult(BaseModel):
    query: str
    results: List[SearchResult] = Field(default_factory=list)
    performance: ExecutorPerformance = Field(default_factory=ExecutorPerformance)
    context_insights: ContextInsights = Field(default_factory=ContextInsights)


class SubQueryResult(BaseModel):
    sub_query: SubQuery
    strategy: str
    results: List[SearchResult] = Field(default_factory=list)


class UnifiedSearchResult(BaseModel):
    query: str
    strategy: SearchStrategy
    results: List[SearchResult] = Field(default_factory=list)
    performance: SearchPerformance = Field(default_factory=SearchPerformance)
    strategy_timings: Optional[Dict[str, float]] = None
    failed_strategies: Optional[List[str]] = None
    context_insights: Optional[ContextInsights] = None
    insights: Optional[str] = None
    action_items: Optional[List[str]] = None
    summary: Optional[str] = None
    sub_query_results: Optional[List[SubQueryResult]] = None
    requires_contextual_summary: Optional[bool] = None


class CacheEntry(BaseModel):
    query: str
    query_type: QueryType
    strategy_used: SearchStrategy
    results: UnifiedSearchResult
    timestamp_ms: float
    last_accessed_ms: float
    hit_count: int = 0
    avg_response_time_ms: float = 0.0
    confidence: float = 0.0


class StrategyStats(BaseModel):
    samples: int = 0
    successes: int = 0
    total_latency_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.samples if self.samples else 0.0

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.samples if self.samples else 0.0


class QueryPattern(BaseModel):
    """Learned outcome history for one normalised query shape."""
    pattern: str
    type: QueryType
    frequency: int = 0
    avg_response_time_ms: float = 0.0
    success_rate: float = 0.0
    preferred_strategy: SearchStrategy
    strategy_stats: Dict[str, StrategyStats] = Field(default_factory=dict)
