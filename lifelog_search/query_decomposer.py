"""Dependency-aware decomposition of multi-part queries.

A query long enough and carrying a multi-part signal is split into
sub-queries, each typed by keyword heuristics and linked to its predecessor
when it refers back to it. The execution order is a topological order of
those links; an unresolvable graph degrades to the original order rather than
failing.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from lifelog_search.models import (
    DecomposedQuery,
    QueryIntent,
    SubQuery,
    SubQueryContext,
    SubQueryType,
)
from lifelog_search.query_preprocessor import is_common_word

# Configure logging
logger = logging.getLogger(__name__)

MIN_COMPLEX_LENGTH = 50
MIN_PART_LENGTH = 10
TOPIC_CHANGE_THRESHOLD = 0.3
MAX_COMPLEXITY = 10.0
SIMPLE_EXECUTION_TIME_MS = 1000.0

MULTI_PART_PATTERNS = [
    # Conjunctions
    re.compile(r"\band\s+(?:also\s+)?(?:can you|could you|please|i'd like|show me|tell me|what)", re.IGNORECASE),
    re.compile(r"\b(?:additionally|furthermore|moreover|also),?\s+", re.IGNORECASE),
    re.compile(r"\b(?:plus|as well as|along with)\s+", re.IGNORECASE),
    # Sequencing
    re.compile(r"\b(?:then|after that|subsequently|following that)\s+", re.IGNORECASE),
    re.compile(r"\b(?:first|second|third|finally|lastly)\s+", re.IGNORECASE),
    # Conditionals
    re.compile(r"\bif\s+.+?,\s*(?:then\s+)?(?:what|how|when|where)", re.IGNORECASE),
    re.compile(r"\b(?:based on|given|considering)\s+.+?,\s*(?:what|how)", re.IGNORECASE),
    # Question chains
    re.compile(r"\?.*?\?"),
    re.compile(r"\?.*?\band\s+(?:what|how|when|where|who|why)", re.IGNORECASE),
]

RELATIONSHIP_PATTERNS = {
    "causal": re.compile(r"\b(?:because|since|as|therefore|so|thus|hence)\b", re.IGNORECASE),
    "comparative": re.compile(r"\b(?:compare|versus|vs|differ|similar|like|unlike)\b", re.IGNORECASE),
    "temporal": re.compile(r"\b(?:before|after|during|while|when|then)\b", re.IGNORECASE),
    "conditional": re.compile(r"\b(?:if|unless|provided|assuming|given)\b", re.IGNORECASE),
}

CONJUNCTION_SPLIT = re.compile(r"\b(?:and|then|also|additionally|furthermore)\b", re.IGNORECASE)
PUNCTUATION_SPLIT = re.compile(r"[.;,]")
SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]+")

# Checked in order; first match wins
SUB_QUERY_TYPE_KEYWORDS: List[Tuple[SubQueryType, Tuple[str, ...]]] = [
    (SubQueryType.COMPARE, ("compare", "versus")),
    (SubQueryType.SUMMARIZE, ("summarize", "recap")),
    (SubQueryType.ANALYZE, ("analyze", "insights")),
    (SubQueryType.EXTRACT, ("extract", "action items", "next steps")),
]

FILTER_PATTERNS = [
    re.compile(r"\b(?:only|just|specifically|especially)\s+(?:the|those|ones)\b", re.IGNORECASE),
    re.compile(r"\b(?:filter|narrow|limit|restrict)\s+(?:to|by)\b", re.IGNORECASE),
    re.compile(r"\b(?:from|within|among)\s+(?:these|those|the)\s+results\b", re.IGNORECASE),
]

SUB_QUERY_INTENTS = [
    (QueryIntent.QUESTION, re.compile(r"^(what|where|when|who|why|how|did|does|is|are|was|were)\b", re.IGNORECASE)),
    (QueryIntent.ANALYTICAL, re.compile(r"\b(analyze|summary|insights|patterns|trends)\b", re.IGNORECASE)),
    (QueryIntent.PERSON_QUERY, re.compile(r"\b(with|about|from|to)\s+[A-Z][a-z]+\b")),
    (QueryIntent.TEMPORAL_QUERY, re.compile(r"\b(today|yesterday|tomorrow|week|month|ago)\b", re.IGNORECASE)),
]

REFERENCE_PATTERNS = [
    re.compile(r"\b(?:that|those|these|this|it|them|their|its)\b", re.IGNORECASE),
    re.compile(r"\b(?:the same|similar|related|associated)\b", re.IGNORECASE),
    re.compile(r"\b(?:from|in|within)\s+(?:the|those|these)\s+(?:results|findings|documents)\b", re.IGNORECASE),
    re.compile(r"\b(?:based on|according to|from)\s+(?:what|the)\b", re.IGNORECASE),
]
CONDITIONAL_PATTERN = re.compile(r"\bif\s+.+?\s+then\b", re.IGNORECASE)

GLOBAL_TEMPORAL_PATTERN = re.compile(
    r"\b(today|yesterday|tomorrow|last\s+week|this\s+week|next\s+week|last\s+month)\b", re.IGNORECASE
)
ENTITY_PATTERN = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\b")

EXECUTION_TIME_MS = {
    SubQueryType.SEARCH: 500,
    SubQueryType.FILTER: 200,
    SubQueryType.SUMMARIZE: 1000,
    SubQueryType.COMPARE: 1500,
    SubQueryType.ANALYZE: 2000,
    SubQueryType.EXTRACT: 800,
}
ANALYTICAL_TYPES = {SubQueryType.ANALYZE, SubQueryType.COMPARE, SubQueryType.SUMMARIZE}

TOPIC_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "from", "about", "as", "is", "was", "are", "were", "been", "be", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "may", "might", "must", "can",
    "this", "that", "these", "those", "i", "you", "we", "they", "he", "she", "it", "me",
    "him", "her",
}


def references_previous(text: str) -> bool:
    return any(pattern.search(text) for pattern in REFERENCE_PATTERNS)


def topic_words(text: str) -> List[str]:
    return [
        word for word in text.lower().split()
        if len(word) > 3 and word not in TOPIC_STOP_WORDS and word.isalpha()
    ]


def topic_similarity(first: List[str], second: List[str]) -> float:
    first_set, second_set = set(first), set(second)
    union = first_set | second_set
    return len(first_set & second_set) / len(union) if union else 0.0


def execution_order(sub_queries: List[SubQuery]) -> List[str]:
    """Topological order of sub-queries, ties kept in original order.

    Sub-queries whose dependencies never resolve (cycles, unknown ids) are
    appended in original order.
    """
    order: List[str] = []
    done = set()
    for _ in range(len(sub_queries) * 2):
        if len(order) == len(sub_queries):
            break
        for sub_query in sub_queries:
            if sub_query.id in done:
                continue
            if all(dependency in done for dependency in sub_query.dependencies):
                order.append(sub_query.id)
                done.add(sub_query.id)

    leftovers = [sub_query.id for sub_query in sub_queries if sub_query.id not in done]
    if leftovers:
        logger.warning(f"Unresolved sub-query dependencies, appending in original order: {leftovers}")
        order.extend(leftovers)
    return order


def dependency_depth(sub_queries: List[SubQuery]) -> int:
    """Length of the longest dependency chain (0 when nothing depends on anything)."""
    by_id = {sub_query.id: sub_query for sub_query in sub_queries}
    depths: Dict[str, int] = {}

    def depth(sub_query_id: str, visiting: frozenset) -> int:
        if sub_query_id in depths:
            return depths[sub_query_id]
        sub_query = by_id.get(sub_query_id)
        if sub_query is None or sub_query_id in visiting:
            return 0
        result = max(
            (1 + depth(dependency, visiting | {sub_query_id}) for dependency in sub_query.dependencies),
            default=0,
        )
        depths[sub_query_id] = result
        return result

    return max((depth(sub_query.id, frozenset()) for sub_query in sub_queries), default=0)


class QueryDecomposer:
    """Splits complex multi-part queries into ordered sub-queries."""

    def decompose(self, query: str) -> DecomposedQuery:
        if not self.is_complex_query(query):
            return self._simple_decomposition(query)

        parts = self.split_query(query)
        if len(parts) < 2:
            return self._simple_decomposition(query)

        sub_queries = self._create_sub_queries(parts, query)
        order = execution_order(sub_queries)

        analytical_count = sum(1 for sub_query in sub_queries if sub_query.type in ANALYTICAL_TYPES)
        requires_summary = (
            analytical_count >= 2
            or dependency_depth(sub_queries) >= 2
            or len(sub_queries) >= 4
        )

        decomposed = DecomposedQuery(
            original=query,
            sub_queries=sub_queries,
            execution_order=order,
            requires_contextual_summary=requires_summary,
            complexity=self._complexity(sub_queries),
            estimated_execution_time_ms=float(sum(EXECUTION_TIME_MS[s.type] for s in sub_queries)),
        )
        logger.debug(
            f"Decomposed query into {len(sub_queries)} parts "
            f"(complexity={decomposed.complexity}, summary={requires_summary})"
        )
        return decomposed

    def is_complex_query(self, query: str) -> bool:
        if len(query) < MIN_COMPLEX_LENGTH:
            return False
        if any(pattern.search(query) for pattern in MULTI_PART_PATTERNS):
            return True
        if query.count("?") >= 2:
            return True
        categories = sum(1 for pattern in RELATIONSHIP_PATTERNS.values() if pattern.search(query))
        return categories >= 2

    def split_query(self, query: str) -> List[str]:
        """Split on question marks, conjunctions, punctuation, then topic changes.

        Each splitter is tried in turn until one yields more than one part.
        """
        if "?" in query:
            questions = [f"{part.strip()}?" for part in query.split("?") if part.strip()]
            if len(questions) > 1:
                return questions

        conjunction_parts = [
            part.strip() for part in CONJUNCTION_SPLIT.split(query)
            if len(part.strip()) > MIN_PART_LENGTH
        ]
        if len(conjunction_parts) > 1:
            return conjunction_parts

        punctuation_parts = [
            part.strip() for part in PUNCTUATION_SPLIT.split(query)
            if len(part.strip()) > MIN_PART_LENGTH
        ]
        if len(punctuation_parts) > 1:
            return punctuation_parts

        return self._split_by_topic_change(query)

    def _split_by_topic_change(self, query: str) -> List[str]:
        sentences = SENTENCE_PATTERN.findall(query) or [query]
        parts: List[str] = []
        current = ""
        last_topic: Optional[List[str]] = None

        for sentence in sentences:
            topic = topic_words(sentence)
            if last_topic and current and topic_similarity(last_topic, topic) < TOPIC_CHANGE_THRESHOLD:
                parts.append(current.strip())
                current = sentence
            else:
                current = f"{current} {sentence}"
            last_topic = topic

        if current.strip():
            parts.append(current.strip())
        return parts if len(parts) > 1 else [query]

    def _create_sub_queries(self, parts: List[str], query: str) -> List[SubQuery]:
        temporal, entities = self._global_context(query)
        sub_queries = []
        for index, part in enumerate(parts):
            sub_queries.append(SubQuery(
                id=f"q{index + 1}",
                text=part,
                type=self._sub_query_type(part, index),
                intent=self._intent(part),
                dependencies=self._dependencies(part, index),
                context=SubQueryContext(
                    references_previous=references_previous(part),
                    temporal=temporal,
                    entities=entities,
                ),
            ))
        return sub_queries

    def _sub_query_type(self, part: str, index: int) -> SubQueryType:
        lowered = part.lower()
        for sub_query_type, keywords in SUB_QUERY_TYPE_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return sub_query_type
        if index > 0 and any(pattern.search(part) for pattern in FILTER_PATTERNS):
            return SubQueryType.FILTER
        return SubQueryType.SEARCH

    def _intent(self, part: str) -> QueryIntent:
        for intent, pattern in SUB_QUERY_INTENTS:
            if pattern.search(part):
                return intent
        return QueryIntent.SEARCH

    def _dependencies(self, part: str, index: int) -> List[str]:
        if index == 0:
            return []
        if references_previous(part) or CONDITIONAL_PATTERN.search(part):
            return [f"q{index}"]
        return []

    def _global_context(self, query: str) -> Tuple[Optional[str], List[str]]:
        temporal_match = GLOBAL_TEMPORAL_PATTERN.search(query)
        entities = [
            match.group(1) for match in ENTITY_PATTERN.finditer(query)
            if not is_common_word(match.group(1))
        ]
        return (temporal_match.group(1) if temporal_match else None), list(dict.fromkeys(entities))

    def _complexity(self, sub_queries: List[SubQuery]) -> float:
        complexity = float(len(sub_queries))
        complexity += sum(len(sub_query.dependencies) * 0.5 for sub_query in sub_queries)
        complexity += sum(1 for s in sub_queries if s.type in (SubQueryType.ANALYZE, SubQueryType.COMPARE))
        return min(complexity, MAX_COMPLEXITY)

    def _simple_decomposition(self, query: str) -> DecomposedQuery:
        return DecomposedQuery(
            original=query,
            sub_queries=[SubQuery(id="q1", text=query)],
            execution_order=["q1"],
            requires_contextual_summary=False,
            complexity=1.0,
            estimated_execution_time_ms=SIMPLE_EXECUTION_TIME_MS,
        )
