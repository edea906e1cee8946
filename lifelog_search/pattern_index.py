"""In-memory lexical pattern index over lifelog documents.

The index maps normalized tokens to the ids of documents containing them and
keeps the documents themselves for scoring. Queries are scored with a
phrase-aware heuristic: extracted phrases weigh ``phrase_weight`` times a
single token occurrence, title hits are doubled, nearby distinct tokens earn a
proximity bonus, and the total is length-normalized and damped into [0, 1].

Rebuilding swaps in a completely new index object, so concurrent readers see
either the old or the new index and never a partially built one.
"""
import logging
import math
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np

from lifelog_search.config import SearchConfig
from lifelog_search.models import Document, MatchSpan, ResultMetadata, SearchResult

# Configure logging
logger = logging.getLogger(__name__)

# Multi-word patterns pulled out of queries before tokenizing, in order
PHRASE_PATTERNS = [
    # Meal or meeting plus a relative day
    re.compile(r"\b(lunch|dinner|breakfast|meeting|call|appointment)\s+(today|yesterday|tomorrow)\b", re.IGNORECASE),
    # Numbered sequences like "version 2"
    re.compile(r"\b\w+\s+\d+\b", re.IGNORECASE),
    # Proper noun pairs
    re.compile(r"\b[A-Z][a-z]+\s+[A-Z][a-z]+\b"),
]
QUOTED_PATTERN = re.compile(r'"([^"]+)"')
WHERE_QUESTION_PATTERN = re.compile(r"where\s+.*(go|went|going)", re.IGNORECASE)


def tokenize(text: str, lowercase: bool = True) -> List[str]:
    processed = text.lower() if lowercase else text
    return re.sub(r"[^\w\s]", " ", processed).split()


def extract_phrases(query: str) -> Tuple[List[str], str]:
    """Pull phrases out of a query.

    Args:
        query: Raw query text

    Returns:
        Tuple of (phrases, remaining query). Phrases keep their original
        case; scoring lowercases them unless the search is case sensitive.
    """
    phrases: List[str] = []
    working = query

    for pattern in PHRASE_PATTERNS:
        for match in [m.group(0) for m in pattern.finditer(working)]:
            if " " in match and len(match) > 3:
                phrases.append(match)
                working = working.replace(match, "", 1).strip()

    for match in QUOTED_PATTERN.finditer(working):
        phrases.append(match.group(1))
    working = QUOTED_PATTERN.sub("", working).strip()

    return phrases, working


def _full_text(document: Document) -> str:
    return f"{document.title} {document.content}"


def _day(value) -> date:
    return value.date() if isinstance(value, datetime) else value


@dataclass(frozen=True)
class _IndexSnapshot:
    """Immutable index state; replaced wholesale on rebuild."""
    tokens: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    documents: Dict[str, Document] = field(default_factory=dict)
    last_updated: datetime = datetime.min


class PatternIndex:
    """Fast lexical search with phrase, proximity and title scoring."""

    def __init__(self, config: Optional[SearchConfig] = None):
        """Initialize an empty index.

        Args:
            config: Search configuration holding the scoring constants
        """
        self.config = config or SearchConfig()
        self._location_pattern = re.compile(self.config.location_pattern, re.IGNORECASE)
        self._snapshot = _IndexSnapshot()

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    def build_index(self, documents: Iterable[Document]) -> None:
        start_time = time.perf_counter()
        token_ids: Dict[str, set] = defaultdict(set)
        document_map: Dict[str, Document] = {}

        for document in documents:
            document_map[document.id] = document
            for token in tokenize(f"{document.content} {document.title}"):
                token_ids[token].add(document.id)
            for heading in document.headings:
                for token in tokenize(heading):
                    token_ids[token].add(document.id)

        self._snapshot = _IndexSnapshot(
            tokens={token: frozenset(ids) for token, ids in token_ids.items()},
            documents=document_map,
            last_updated=datetime.now(),
        )

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Pattern index built: {len(document_map)} documents, "
            f"{len(token_ids)} unique words in {elapsed_ms:.1f}ms"
        )

    def clear(self) -> None:
        self._snapshot = _IndexSnapshot()
        logger.info("Pattern index cleared")

    def get_document(self, document_id: str) -> Optional[Document]:
        return self._snapshot.documents.get(document_id)

    @property
    def document_count(self) -> int:
        return len(self._snapshot.documents)

    def stats(self) -> Dict[str, object]:
        snapshot = self._snapshot
        memory_estimate = 0
        for word, ids in snapshot.tokens.items():
            memory_estimate += len(word) * 2 + len(ids) * 36
        for document in snapshot.documents.values():
            memory_estimate += len(document.model_dump_json()) * 2

        return {
            "indexed_documents": len(snapshot.documents),
            "unique_words": len(snapshot.tokens),
            "last_updated": snapshot.last_updated,
            "memory_size_estimate": memory_estimate,
        }

    # ------------------------------------------------------------------
    # Searches
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        max_results: Optional[int] = None,
        score_threshold: Optional[float] = None,
        case_sensitive: bool = False,
        whole_word: bool = False,
        context_length: Optional[int] = None
    ) -> List[SearchResult]:
        """Phrase-aware keyword search.

        Args:
            query: Query text
            max_results: Maximum results returned
            score_threshold: Minimum score kept
            case_sensitive: Match case exactly
            whole_word: Only count token hits bounded by non-word characters
            context_length: Characters of context captured around each match

        Returns:
            Results sorted by descending score
        """
        start_time = time.perf_counter()
        snapshot = self._snapshot
        max_results = max_results or self.config.default_max_results
        if score_threshold is None:
            score_threshold = self.config.default_score_threshold
        context_length = context_length or self.config.context_length

        phrases, remaining = extract_phrases(query)
        query_tokens = tokenize(remaining, lowercase=not case_sensitive)

        candidate_ids = set()
        lookup_tokens = list(query_tokens)
        for phrase in phrases:
            lookup_tokens.extend(tokenize(phrase))
        for token in lookup_tokens:
            candidate_ids.update(snapshot.tokens.get(token.lower(), ()))

        results = []
        for document_id in candidate_ids:
            document = snapshot.documents.get(document_id)
            if document is None:
                continue
            result = self._score_with_phrases(document, query_tokens, phrases, case_sensitive, whole_word, context_length)
            if result.score >= score_threshold:
                results.append(result)

        # Candidate sets are unordered; id keeps ties deterministic
        results.sort(key=lambda r: (-r.score, r.id))
        results = results[:max_results]

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            f"Pattern search '{query}': phrases={phrases}, candidates={len(candidate_ids)}, "
            f"results={len(results)} in {elapsed_ms:.1f}ms"
        )
        return results

    def search_by_date_range(
        self,
        start,
        end,
        query: Optional[str] = None,
        max_results: Optional[int] = None,
        score_threshold: Optional[float] = None,
        case_sensitive: bool = False,
        whole_word: bool = False,
        context_length: Optional[int] = None
    ) -> List[SearchResult]:
        """Documents created on a calendar day within [start, end].

        Without a query every document in range scores 1.0; with one,
        documents are token-scored and filtered by ``score_threshold``.
        """
        snapshot = self._snapshot
        start_day, end_day = _day(start), _day(end)
        max_results = max_results or self.config.default_max_results
        if score_threshold is None:
            score_threshold = self.config.default_score_threshold
        context_length = context_length or self.config.context_length
        query_tokens = tokenize(query, lowercase=not case_sensitive) if query else []

        results = []
        for document in snapshot.documents.values():
            if not start_day <= document.created_date <= end_day:
                continue
            if query_tokens:
                result = self._score_tokens(document, query_tokens, case_sensitive, whole_word, context_length)
                if result.score >= score_threshold:
                    results.append(result)
            else:
                results.append(SearchResult(
                    id=document.id,
                    score=1.0,
                    document=document,
                    metadata=ResultMetadata(match_count=0),
                ))

        results.sort(key=lambda r: -r.score)
        return results[:max_results]

    def search_phrase(
        self,
        phrase: str,
        max_results: Optional[int] = None,
        case_sensitive: bool = False,
        context_length: Optional[int] = None
    ) -> List[SearchResult]:
        start_time = time.perf_counter()
        max_results = max_results or self.config.default_max_results
        context_length = context_length or self.config.context_length
        needle = phrase if case_sensitive else phrase.lower()

        results = []
        for document in self._snapshot.documents.values():
            full_text = _full_text(document)
            if not case_sensitive:
                full_text = full_text.lower()
            matches = [
                MatchSpan(type="exact", context=context, position=position)
                for position, context in _find_all(full_text, needle, context_length)
            ]
            if matches:
                results.append(self._make_result(
                    document,
                    len(matches) / (len(full_text) / self.config.length_norm_chars),
                    matches,
                ))

        results.sort(key=lambda r: -r.score)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Phrase search '{phrase}': {len(results)} results in {elapsed_ms:.1f}ms")
        return results[:max_results]

    def search_regex(
        self,
        pattern: str,
        max_results: Optional[int] = None,
        context_length: Optional[int] = None
    ) -> List[SearchResult]:
        """Case-insensitive regular expression search.

        An invalid pattern is logged and yields no results.
        """
        max_results = max_results or self.config.default_max_results
        context_length = context_length or self.config.context_length
        half = context_length // 2

        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"Invalid regex pattern '{pattern}': {str(e)}")
            return []

        results = []
        for document in self._snapshot.documents.values():
            full_text = _full_text(document)
            matches = [
                MatchSpan(
                    type="exact",
                    context=full_text[max(0, m.start() - half):min(len(full_text), m.end() + half)],
                    position=m.start(),
                )
                for m in regex.finditer(full_text)
            ]
            if matches:
                results.append(self._make_result(document, float(len(matches)), matches))

        results.sort(key=lambda r: -r.score)
        logger.debug(f"Regex search '{pattern}': {len(results)} results")
        return results[:max_results]

    def get_suggestions(self, partial: str, limit: int = 10) -> List[str]:
        prefix = partial.lower()
        return sorted(word for word in self._snapshot.tokens if word.startswith(prefix))[:limit]

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _score_with_phrases(
        self,
        document: Document,
        query_tokens: List[str],
        phrases: List[str],
        case_sensitive: bool,
        whole_word: bool,
        context_length: int
    ) -> SearchResult:
        cfg = self.config
        title = document.title if case_sensitive else document.title.lower()
        full_text = _full_text(document)
        if not case_sensitive:
            full_text = full_text.lower()

        query_lower = " ".join(query_tokens).lower()
        is_where_question = bool(WHERE_QUESTION_PATTERN.search(query_lower))
        location = self._location_pattern.search(full_text)
        location_words = (location.group(1).lower(), location.group(2).lower()) if location else ()

        total = 0.0
        matches: List[MatchSpan] = []

        for phrase in phrases:
            needle = phrase if case_sensitive else phrase.lower()
            phrase_score = 0.0
            for position, context in _find_all(full_text, needle, context_length):
                phrase_score += cfg.phrase_weight
                if is_where_question and location and location_words[0] in needle.lower():
                    phrase_score += cfg.location_phrase_boost
                matches.append(MatchSpan(type="exact", context=context, position=position))
            if needle in title:
                phrase_score *= cfg.title_boost
            total += phrase_score

        token_positions: Dict[str, List[int]] = {}
        for token in query_tokens:
            needle = token if case_sensitive else token.lower()
            positions = [
                position for position, _ in _find_all(full_text, needle, 0)
                if not whole_word or _is_whole_word(full_text, position, len(needle))
            ]
            if positions:
                token_positions[needle] = positions

        half = context_length // 2
        for token, positions in token_positions.items():
            token_score = float(len(positions))
            if is_where_question and location and token in location_words:
                token_score *= cfg.location_token_boost
            if token.lower() in title.lower():
                token_score *= cfg.title_boost
            for position in positions:
                matches.append(MatchSpan(
                    type="exact" if whole_word else "partial",
                    context=full_text[max(0, position - half):min(len(full_text), position + len(token) + half)],
                    position=position,
                ))
            total += token_score

        total += proximity_score(token_positions, cfg.proximity_window)

        has_group = any(term in query_lower for term in cfg.group_terms)
        has_time_of_day = any(term in query_lower for term in cfg.time_of_day_terms)
        if has_group and has_time_of_day and location:
            total *= cfg.cooccurrence_multiplier

        effective_length = len(query_tokens) + len(phrases) * cfg.phrase_weight
        return self._make_result(document, self._normalize(total, effective_length, len(full_text)), matches)

    def _score_tokens(
        self,
        document: Document,
        query_tokens: List[str],
        case_sensitive: bool,
        whole_word: bool,
        context_length: int
    ) -> SearchResult:
        title = document.title if case_sensitive else document.title.lower()
        full_text = _full_text(document)
        if not case_sensitive:
            full_text = full_text.lower()

        total = 0.0
        matches: List[MatchSpan] = []
        for token in query_tokens:
            needle = token if case_sensitive else token.lower()
            token_score = 0.0
            for position, context in _find_all(full_text, needle, context_length):
                if whole_word and not _is_whole_word(full_text, position, len(needle)):
                    continue
                token_score += 1
                matches.append(MatchSpan(type="exact" if whole_word else "partial", context=context, position=position))
            if needle in title:
                token_score *= self.config.title_boost
            total += token_score

        return self._make_result(document, self._normalize(total, len(query_tokens), len(full_text)), matches)

    def _normalize(self, total: float, effective_length: float, text_length: int) -> float:
        if effective_length <= 0 or total <= 0:
            return 0.0
        length_penalty = math.sqrt(text_length / self.config.length_norm_chars)
        normalized = total / (effective_length * max(length_penalty, 1.0))
        return min(normalized * self.config.score_damping, 1.0)

    def _make_result(self, document: Document, score: float, matches: List[MatchSpan]) -> SearchResult:
        return SearchResult(
            id=document.id,
            score=score,
            document=document,
            highlights=[m.context for m in matches],
            matches=matches,
            metadata=ResultMetadata(
                match_count=len(matches),
                match_types=list(dict.fromkeys(m.type for m in matches)),
            ),
        )


def proximity_score(token_positions: Dict[str, List[int]], max_distance: int) -> float:
    """Sum of linear-decay bonuses for distinct token pairs within ``max_distance``."""
    score = 0.0
    tokens = list(token_positions)
    for i in range(len(tokens)):
        first = np.asarray(token_positions[tokens[i]])
        for j in range(i + 1, len(tokens)):
            second = np.asarray(token_positions[tokens[j]])
            distances = np.abs(np.subtract.outer(first, second))
            close = distances[(distances > 0) & (distances <= max_distance)]
            score += float(np.sum((max_distance - close) / max_distance))
    return score


def _find_all(text: str, needle: str, context_length: int) -> List[Tuple[int, str]]:
    """Non-overlapping occurrences of ``needle`` with surrounding context."""
    found = []
    if not needle:
        return found
    half = context_length // 2
    index = text.find(needle)
    while index != -1:
        context = text[max(0, index - half):min(len(text), index + len(needle) + half)]
        found.append((index, context))
        index = text.find(needle, index + len(needle))
    return found


def _is_whole_word(text: str, position: int, length: int) -> bool:
    before = text[position - 1] if position > 0 else " "
    after = text[position + length] if position + length < len(text) else " "
    return not re.match(r"\w", before) and not re.match(r"\w", after)
