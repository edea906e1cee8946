"""Query preprocessing for lifelog search.

Turns a raw query into a ``PreprocessedQuery``: relative temporal expressions
are rewritten to absolute ISO dates, synonym variants are generated for query
expansion, and intent, entities and keywords are extracted. The only input
besides the query is the reference "now", which is injectable so results are
reproducible.
"""
import logging
import re
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

from lifelog_search.models import (
    DateRange,
    NamedEntities,
    PreprocessedQuery,
    QueryIntent,
    TemporalInfo,
)

# Configure logging
logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SYNONYM_MAP: Dict[str, List[str]] = {
    # Meetings
    "meeting": ["meeting", "discussion", "conversation", "chat", "talk", "call", "conference"],
    "discuss": ["discuss", "talk about", "mentioned", "conversation about", "chat about"],
    # Actions
    "decide": ["decide", "decided", "decision", "chose", "selected", "determined"],
    "plan": ["plan", "planning", "planned", "schedule", "scheduled", "organize"],
    "review": ["review", "reviewed", "examine", "check", "look at", "analyze"],
    # People
    "team": ["team", "group", "colleagues", "coworkers", "staff"],
    "client": ["client", "customer", "user", "patron"],
    # Documents
    "document": ["document", "file", "report", "paper", "doc"],
    "proposal": ["proposal", "proposition", "suggestion", "plan", "pitch"],
    "budget": ["budget", "financial plan", "expenses", "costs", "spending"],
    # Time pressure
    "urgent": ["urgent", "important", "critical", "asap", "priority", "immediate"],
    "deadline": ["deadline", "due date", "due", "by when", "timeline"],
}

# Synonyms per slot and slots per variant when combining replacements
MAX_SYNONYMS_PER_SLOT = 3

STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "about", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "find", "show", "get",
}

COMMON_CAPITALIZED_WORDS = {
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December", "The", "This", "That",
}

# Intent cascade, first match wins
INTENT_PATTERNS: List[Tuple[QueryIntent, List[re.Pattern]]] = [
    (QueryIntent.QUESTION, [
        re.compile(r"^(what|where|when|who|why|how|did|does|is|are|was|were)\b", re.IGNORECASE),
    ]),
    (QueryIntent.COMMAND, [
        re.compile(r"^(find|show|list|get|search|look for|display)\b", re.IGNORECASE),
    ]),
    (QueryIntent.TEMPORAL_QUERY, [
        re.compile(r"\b(today|yesterday|tomorrow|this week|last week|ago|recent)\b", re.IGNORECASE),
    ]),
    (QueryIntent.PERSON_QUERY, [
        re.compile(r"\b(with|about|from|to)\s+[A-Z][a-z]+\b"),
        re.compile(r"\b[A-Z][a-z]+('s|s')?\s+(meeting|call|discussion|email)\b"),
    ]),
    (QueryIntent.ANALYTICAL, [
        re.compile(r"\b(analyze|summary|insights|patterns|trends|statistics)\b", re.IGNORECASE),
    ]),
]

PEOPLE_PATTERNS = [
    re.compile(r"\b(?:with|from|to|about)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\b"),
    re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)'s\b"),
    re.compile(r"\b([A-Z][a-z]+)\s+and\s+([A-Z][a-z]+)\b"),
]

PLACE_PATTERNS = [
    re.compile(r"\b(?:at|in)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\b"),
]

TOPIC_PATTERNS = [
    re.compile(r"\b(project|proposal|budget|report|presentation|document|plan|strategy|review)\b", re.IGNORECASE),
    re.compile(r"\b(\w+\s+(?:project|proposal|meeting|discussion|review))\b", re.IGNORECASE),
]

ACTION_PATTERNS = [
    re.compile(r"\b(decide|decided|plan|planned|review|reviewed|discuss|discussed|schedule|scheduled)\b", re.IGNORECASE),
    re.compile(r"\b(action item|follow up|todo|task|reminder)\b", re.IGNORECASE),
]

ISO_DATE_PATTERN = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
ISO_RANGE_PATTERN = re.compile(r"\b(\d{4}-\d{2}-\d{2})\s+to\s+(\d{4}-\d{2}-\d{2})\b")


def start_of_week(day: date) -> date:
    """Sunday on or before ``day``."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_bounds(day: date) -> Tuple[date, date]:
    first = day.replace(day=1)
    return first, first + relativedelta(months=1) - timedelta(days=1)


def parse_iso_date(text: str) -> Optional[date]:
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


TemporalValue = Union[date, DateRange]


def _build_temporal_patterns() -> List[Tuple[re.Pattern, Callable[[re.Match, date], TemporalValue]]]:
    """Ordered (pattern, handler) table; handlers resolve a match against today."""

    def week_of(day: date) -> DateRange:
        start = start_of_week(day)
        return DateRange(start=start, end=start + timedelta(days=6))

    def month_of(day: date) -> DateRange:
        start, end = month_bounds(day)
        return DateRange(start=start, end=end)

    return [
        (re.compile(r"\b(today|todays?)\b", re.IGNORECASE),
         lambda m, today: today),
        (re.compile(r"\b(yesterday|yesterdays?)\b", re.IGNORECASE),
         lambda m, today: today - timedelta(days=1)),
        (re.compile(r"\b(tomorrow|tomorrows?)\b", re.IGNORECASE),
         lambda m, today: today + timedelta(days=1)),
        (re.compile(r"\bthis week\b", re.IGNORECASE),
         lambda m, today: week_of(today)),
        (re.compile(r"\blast week\b", re.IGNORECASE),
         lambda m, today: week_of(today - timedelta(weeks=1))),
        (re.compile(r"\bthis month\b", re.IGNORECASE),
         lambda m, today: month_of(today)),
        (re.compile(r"\blast month\b", re.IGNORECASE),
         lambda m, today: month_of(today - relativedelta(months=1))),
        (re.compile(r"\b(\d+) days? ago\b", re.IGNORECASE),
         lambda m, today: today - timedelta(days=int(m.group(1)))),
        (re.compile(r"\blast (\d+) days?\b", re.IGNORECASE),
         lambda m, today: DateRange(start=today - timedelta(days=int(m.group(1))), end=today)),
    ]


TEMPORAL_PATTERNS = _build_temporal_patterns()


class QueryPreprocessor:
    """Pure query preprocessor parameterised by a reference clock."""

    def __init__(self, now: Optional[Clock] = None, synonym_map: Optional[Dict[str, List[str]]] = None):
        """Initialize the preprocessor.

        Args:
            now: Callable returning the reference "now"; defaults to datetime.now
            synonym_map: Domain synonym groups keyed by their head word
        """
        self.now = now or datetime.now
        self.synonym_map = synonym_map or SYNONYM_MAP

    def preprocess(self, query: str) -> PreprocessedQuery:
        normalized, dates, ranges = self._resolve_temporal(query)
        preprocessed = PreprocessedQuery(
            original=query,
            normalized=normalized,
            expanded_queries=self.expand_query_with_synonyms(query),
            temporal_info=self.extract_temporal_info(query, dates, ranges),
            entities=self.extract_named_entities(query),
            intent=self.detect_query_intent(query),
            keywords=self.extract_keywords(normalized),
        )
        logger.debug(
            f"Preprocessed query '{query}': normalized='{normalized}', "
            f"variants={len(preprocessed.expanded_queries)}, intent={preprocessed.intent.value}"
        )
        return preprocessed

    def normalize_temporal_expressions(self, query: str) -> str:
        """Replace relative temporal phrases with ISO dates or 'start to end' ranges."""
        return self._resolve_temporal(query)[0]

    def _resolve_temporal(self, query: str) -> Tuple[str, List[date], List[DateRange]]:
        today = self.now().date()
        dates: List[date] = []
        ranges: List[DateRange] = []
        normalized = query

        for pattern, handler in TEMPORAL_PATTERNS:
            def substitute(match: re.Match) -> str:
                value = handler(match, today)
                if isinstance(value, DateRange):
                    ranges.append(value)
                    return f"{value.start.isoformat()} to {value.end.isoformat()}"
                dates.append(value)
                return value.isoformat()

            normalized = pattern.sub(substitute, normalized)

        return normalized, dates, ranges

    def _synonyms_for(self, word: str) -> List[str]:
        for key, synonyms in self.synonym_map.items():
            if key == word or word in synonyms:
                return synonyms
        return []

    def expand_query_with_synonyms(self, query: str) -> List[str]:
        """Generate query variants, single substitutions first, then pairs."""
        words = query.lower().split()
        expanded = {query: None}

        for i, word in enumerate(words):
            for key, synonyms in self.synonym_map.items():
                if key != word and word not in synonyms:
                    continue
                for synonym in synonyms:
                    if synonym != word:
                        variant = list(words)
                        variant[i] = synonym
                        expanded.setdefault(" ".join(variant), None)

        positions = [i for i, word in enumerate(words) if self._synonyms_for(word)]
        for a in range(len(positions) - 1):
            for b in range(a + 1, len(positions)):
                pos1, pos2 = positions[a], positions[b]
                word1, word2 = words[pos1], words[pos2]
                for syn1 in self._synonyms_for(word1)[:MAX_SYNONYMS_PER_SLOT]:
                    for syn2 in self._synonyms_for(word2)[:MAX_SYNONYMS_PER_SLOT]:
                        if syn1 == word1 and syn2 == word2:
                            continue
                        variant = list(words)
                        variant[pos1] = syn1
                        variant[pos2] = syn2
                        expanded.setdefault(" ".join(variant), None)

        return list(expanded)

    def detect_query_intent(self, query: str) -> QueryIntent:
        for intent, patterns in INTENT_PATTERNS:
            if any(pattern.search(query) for pattern in patterns):
                return intent
        return QueryIntent.SEARCH

    def extract_named_entities(self, query: str) -> NamedEntities:
        people: List[str] = []
        for pattern in PEOPLE_PATTERNS:
            for match in pattern.finditer(query):
                for group in match.groups():
                    if group and not is_common_word(group):
                        people.append(group)

        places = [
            match.group(1)
            for pattern in PLACE_PATTERNS
            for match in pattern.finditer(query)
            if not is_common_word(match.group(1))
        ]
        topics = [
            match.group(1).lower()
            for pattern in TOPIC_PATTERNS
            for match in pattern.finditer(query)
        ]
        actions = [
            match.group(1).lower()
            for pattern in ACTION_PATTERNS
            for match in pattern.finditer(query)
        ]

        return NamedEntities(
            people=_dedupe(people),
            places=_dedupe(places),
            topics=_dedupe(topics),
            actions=_dedupe(actions),
        )

    def extract_keywords(self, text: str) -> List[str]:
        words = re.sub(r"[^\w\s]", " ", text.lower()).split()
        return _dedupe(w for w in words if len(w) > 2 and w not in STOP_WORDS)

    def extract_temporal_info(
        self,
        query: str,
        resolved_dates: Optional[List[date]] = None,
        resolved_ranges: Optional[List[DateRange]] = None
    ) -> TemporalInfo:
        """Collect explicit and resolved temporal references.

        Args:
            query: Original query text
            resolved_dates: Dates produced by temporal normalization
            resolved_ranges: Ranges produced by temporal normalization

        Returns:
            TemporalInfo with deduplicated dates and ranges and the first
            relative phrase found, if any
        """
        dates = list(resolved_dates or [])
        ranges = list(resolved_ranges or [])

        range_spans = []
        for match in ISO_RANGE_PATTERN.finditer(query):
            start, end = parse_iso_date(match.group(1)), parse_iso_date(match.group(2))
            if start and end:
                ranges.append(DateRange(start=start, end=end))
                range_spans.append(match.span())

        for match in ISO_DATE_PATTERN.finditer(query):
            if any(lo <= match.start() < hi for lo, hi in range_spans):
                continue
            parsed = parse_iso_date(match.group(1))
            if parsed:
                dates.append(parsed)

        relative_time = None
        for pattern, _ in TEMPORAL_PATTERNS:
            match = pattern.search(query)
            if match:
                relative_time = match.group(0)
                break

        unique_ranges = {(r.start, r.end): r for r in ranges}
        return TemporalInfo(
            dates=_dedupe(dates),
            date_ranges=list(unique_ranges.values()),
            relative_time=relative_time,
        )


def is_common_word(word: str) -> bool:
    return word in COMMON_CAPITALIZED_WORDS


def _dedupe(items) -> list:
    return list(dict.fromkeys(items))
