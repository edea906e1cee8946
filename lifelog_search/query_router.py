"""Query classification and strategy routing.

Each query type owns an ordered list of patterns; a query scores one point per
matching pattern and the best-scoring type wins, ties going to the type
declared first. Structured entities (keywords, dates, ranges, actions,
topics) are extracted alongside, and a fixed table maps the winning type to a
suggested retrieval strategy.
"""
import logging
import re
import time
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from lifelog_search.config import SearchConfig
from lifelog_search.models import (
    DateRange,
    ExtractedEntities,
    QueryClassification,
    QueryType,
    SearchStrategy,
)
from lifelog_search.query_preprocessor import ISO_RANGE_PATTERN, month_bounds, parse_iso_date, start_of_week

# Configure logging
logger = logging.getLogger(__name__)

# Declaration order is the tie-break order
TYPE_PATTERNS: "OrderedDict[QueryType, List[re.Pattern]]" = OrderedDict([
    (QueryType.SIMPLE_KEYWORD, [
        re.compile(r"^[\w\s]{1,20}$", re.IGNORECASE),
        re.compile(r"^(find|search|show|get)\s+[\w\s]+$", re.IGNORECASE),
        re.compile(r'^"[^"]{1,50}"$', re.IGNORECASE),
    ]),
    (QueryType.DATE_BASED, [
        re.compile(r"\b(today|yesterday|tomorrow)\b", re.IGNORECASE),
        re.compile(r"\b(this|last|next)\s+(week|month|year)\b", re.IGNORECASE),
        re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.IGNORECASE),
        re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
        re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
        re.compile(
            r"\b(january|february|march|april|may|june|july|august|september|october|november|december)\b",
            re.IGNORECASE,
        ),
    ]),
    (QueryType.SEMANTIC, []),
    (QueryType.ACTION_ITEM, [
        re.compile(r"\b(action items?|todo|task|reminder|follow up)\b", re.IGNORECASE),
        re.compile(r"\b(need to|must|should|have to|got to)\b", re.IGNORECASE),
        re.compile(r"\b(deadline|due date|by when)\b", re.IGNORECASE),
        re.compile(r"\bremind me\b", re.IGNORECASE),
    ]),
    (QueryType.SUMMARY, [
        re.compile(r"\b(summar|overview|recap|brief|highlight|key point)", re.IGNORECASE),
        re.compile(r"\b(what happened|what was discussed|main topic)\b", re.IGNORECASE),
        re.compile(r"\b(meeting notes|conversation about)\b", re.IGNORECASE),
    ]),
    (QueryType.COMPLEX_ANALYTICAL, [
        re.compile(r"\b(analy[sz]e|compare|contrast|evaluate|assess)\b", re.IGNORECASE),
        re.compile(r"\b(trend|pattern|insight|correlation)", re.IGNORECASE),
        re.compile(r"\b(how many|how often|frequency|statistics)\b", re.IGNORECASE),
        re.compile(r"\b(relationship between|impact of|effect on)\b", re.IGNORECASE),
    ]),
])

STRATEGY_TABLE: Dict[QueryType, SearchStrategy] = {
    QueryType.SIMPLE_KEYWORD: SearchStrategy.FAST,
    QueryType.DATE_BASED: SearchStrategy.FAST,
    QueryType.SEMANTIC: SearchStrategy.VECTOR,
    QueryType.ACTION_ITEM: SearchStrategy.HYBRID,
    QueryType.SUMMARY: SearchStrategy.HYBRID,
    QueryType.COMPLEX_ANALYTICAL: SearchStrategy.CLAUDE,
}

# Keyword lookups with more terms than this go hybrid
MAX_FAST_KEYWORDS = 3

# Word count above which a query is always complex
COMPLEX_WORD_COUNT = 15

# Initial response-time estimates (ms) before any query has been measured
INITIAL_RESPONSE_TIMES: Dict[QueryType, float] = {
    QueryType.SIMPLE_KEYWORD: 50,
    QueryType.DATE_BASED: 100,
    QueryType.SEMANTIC: 200,
    QueryType.ACTION_ITEM: 150,
    QueryType.SUMMARY: 300,
    QueryType.COMPLEX_ANALYTICAL: 2000,
}

CONFIDENCE_ENTITY_BOOST = 0.2

KEYWORD_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "up", "about", "into", "through", "during", "before",
    "after", "above", "below", "between", "under", "again", "further", "then",
    "once", "is", "are", "was", "were", "been", "be", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "may", "might",
    "must", "shall", "can", "need", "ought",
}

ISO_DATE_PATTERN = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
US_DATE_PATTERN = re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b")

ACTION_EXTRACTION_PATTERNS = [
    re.compile(r"(?:need to|must|should|have to|got to)\s+(\w+(?:\s+\w+){0,3})", re.IGNORECASE),
    re.compile(r"(?:remind me to|remember to)\s+(\w+(?:\s+\w+){0,3})", re.IGNORECASE),
    re.compile(r"(?:action item:|todo:|task:)\s*([^,.;]+)", re.IGNORECASE),
]

QUOTED_PATTERN = re.compile(r'"([^"]+)"')
CAPITALIZED_PHRASE_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*")


def _entities_for_boost(query_type: QueryType, entities: ExtractedEntities) -> bool:
    """Whether the winning type found the entities that confirm it."""
    if query_type == QueryType.DATE_BASED:
        return bool(entities.dates or entities.date_ranges)
    if query_type == QueryType.ACTION_ITEM:
        return bool(entities.actions)
    if query_type in (QueryType.SUMMARY, QueryType.COMPLEX_ANALYTICAL):
        return bool(entities.topics)
    return False


class QueryRouter:
    """Classifies queries and suggests a retrieval strategy."""

    def __init__(self, config: Optional[SearchConfig] = None, now: Optional[Callable[[], datetime]] = None):
        """Initialize the router.

        Args:
            config: Search configuration (classification cache size)
            now: Callable returning the reference "now" for relative dates
        """
        self.config = config or SearchConfig()
        self.now = now or datetime.now
        self.query_history: "OrderedDict[str, QueryClassification]" = OrderedDict()
        self.performance_metrics: Dict[QueryType, Dict[str, float]] = {
            query_type: {"avg_time": INITIAL_RESPONSE_TIMES[query_type], "count": 0}
            for query_type in QueryType
        }

    def classify_query(self, query: str) -> QueryClassification:
        start_time = time.perf_counter()

        cached = self.query_history.get(query)
        if cached is not None:
            logger.debug(f"Query classification cache hit: {query}")
            return cached

        classification = self._perform_classification(query)

        self.query_history[query] = classification
        if len(self.query_history) > self.config.classification_cache_size:
            self.query_history.popitem(last=False)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            f"Query classified: '{query}' -> {classification.type.value} "
            f"({classification.suggested_strategy.value}) in {elapsed_ms:.2f}ms"
        )
        return classification

    def score_query(self, query: str) -> Dict[QueryType, int]:
        return {
            query_type: sum(1 for pattern in patterns if pattern.search(query))
            for query_type, patterns in TYPE_PATTERNS.items()
        }

    def _perform_classification(self, query: str) -> QueryClassification:
        scores = self.score_query(query)
        entities = self.extract_entities(query)

        query_type = QueryType.SIMPLE_KEYWORD
        max_score = 0
        for candidate, score in scores.items():
            if score > max_score:
                max_score = score
                query_type = candidate

        if len(query.split()) > COMPLEX_WORD_COUNT or " AND " in query or " OR " in query:
            query_type = QueryType.COMPLEX_ANALYTICAL

        strategy = STRATEGY_TABLE[query_type]
        if query_type == QueryType.SIMPLE_KEYWORD and len(entities.keywords) > MAX_FAST_KEYWORDS:
            strategy = SearchStrategy.HYBRID

        return QueryClassification(
            type=query_type,
            confidence=self._calculate_confidence(query_type, scores, entities),
            extracted_entities=entities,
            suggested_strategy=strategy,
            estimated_response_time_ms=self.performance_metrics[query_type]["avg_time"] or 100,
        )

    def _calculate_confidence(
        self,
        query_type: QueryType,
        scores: Dict[QueryType, int],
        entities: ExtractedEntities
    ) -> float:
        total = sum(scores.values())
        if total == 0:
            return 0.5

        confidence = scores.get(query_type, 0) / total
        if _entities_for_boost(query_type, entities):
            confidence = min(confidence + CONFIDENCE_ENTITY_BOOST, 1.0)

        return round(confidence, 2)

    def extract_entities(self, query: str) -> ExtractedEntities:
        return ExtractedEntities(
            keywords=self.extract_keywords(query),
            dates=self.extract_dates(query),
            date_ranges=self.extract_time_ranges(query),
            actions=self.extract_actions(query),
            topics=self.extract_topics(query),
        )

    def extract_keywords(self, query: str) -> List[str]:
        words = re.sub(r"[^\w\s]", " ", query.lower()).split()
        return list(dict.fromkeys(w for w in words if len(w) > 2 and w not in KEYWORD_STOP_WORDS))

    def extract_dates(self, query: str) -> List[date]:
        today = self.now().date()
        dates: List[date] = []

        if re.search(r"\btoday\b", query, re.IGNORECASE):
            dates.append(today)
        if re.search(r"\byesterday\b", query, re.IGNORECASE):
            dates.append(today - timedelta(days=1))
        if re.search(r"\btomorrow\b", query, re.IGNORECASE):
            dates.append(today + timedelta(days=1))

        # Both ends of a "start to end" range belong to the range, not to dates
        range_spans = [match.span() for match in ISO_RANGE_PATTERN.finditer(query)]
        for match in ISO_DATE_PATTERN.finditer(query):
            if any(lo <= match.start() < hi for lo, hi in range_spans):
                continue
            try:
                dates.append(date.fromisoformat(match.group(0)))
            except ValueError:
                logger.debug(f"Ignoring invalid ISO date in query: {match.group(0)}")

        for match in US_DATE_PATTERN.findall(query):
            try:
                dates.append(date_parser.parse(match, dayfirst=False).date())
            except (ValueError, OverflowError):
                logger.debug(f"Ignoring invalid US date in query: {match}")

        return list(dict.fromkeys(dates))

    def extract_time_ranges(self, query: str) -> List[DateRange]:
        today = self.now().date()
        ranges: List[DateRange] = []

        if re.search(r"\bthis week\b", query, re.IGNORECASE):
            start = start_of_week(today)
            ranges.append(DateRange(start=start, end=start + timedelta(days=6)))
        if re.search(r"\blast week\b", query, re.IGNORECASE):
            start = start_of_week(today) - timedelta(days=7)
            ranges.append(DateRange(start=start, end=start + timedelta(days=6)))
        if re.search(r"\bthis month\b", query, re.IGNORECASE):
            start, end = month_bounds(today)
            ranges.append(DateRange(start=start, end=end))
        if re.search(r"\blast month\b", query, re.IGNORECASE):
            start, end = month_bounds(today - relativedelta(months=1))
            ranges.append(DateRange(start=start, end=end))

        # Ranges already resolved by temporal normalization
        for match in ISO_RANGE_PATTERN.finditer(query):
            start, end = parse_iso_date(match.group(1)), parse_iso_date(match.group(2))
            if start and end:
                ranges.append(DateRange(start=start, end=end))

        return list({(r.start, r.end): r for r in ranges}.values())

    def extract_actions(self, query: str) -> List[str]:
        return [
            match.group(1).strip()
            for pattern in ACTION_EXTRACTION_PATTERNS
            for match in pattern.finditer(query)
            if match.group(1)
        ]

    def extract_topics(self, query: str) -> List[str]:
        topics = QUOTED_PATTERN.findall(query)
        topics.extend(CAPITALIZED_PHRASE_PATTERN.findall(query))
        return list(dict.fromkeys(topics))

    def update_performance_metrics(self, query_type: QueryType, response_time_ms: float) -> None:
        """Fold a measured response time into the rolling average for a type.

        Only feeds ``estimated_response_time_ms``; ranking never reads it.
        """
        metrics = self.performance_metrics[query_type]
        count = metrics["count"] + 1
        # The seeded estimate counts as zero samples
        previous = metrics["avg_time"] * metrics["count"]
        metrics["avg_time"] = round((previous + response_time_ms) / count)
        metrics["count"] = count
        logger.debug(f"Updated performance metrics for {query_type.value}: avg={metrics['avg_time']}ms, count={count}")

    def get_performance_report(self) -> Dict[str, Dict[str, float]]:
        return {query_type.value: dict(metrics) for query_type, metrics in self.performance_metrics.items()}

    def clear_cache(self) -> None:
        self.query_history.clear()
        logger.info("Query router cache cleared")
