"""Shared discovery state for strategies running within one search.

Strategies executing concurrently publish what they found (hot documents,
dates, keywords, their own confidence) so later strategies can build on it.
The context only grows: sets are unioned and a confidence entry only ever
rises, and a strategy can only write its own confidence entry. There is no
removal API, so the order in which strategies write never changes the final
contents.
"""
import threading
from datetime import date
from typing import Dict, FrozenSet, Iterable, Optional

from lifelog_search.models import ContextInsights


class SearchContext:
    """Merge-only, lock-guarded discovery state for a single search call."""

    def __init__(self):
        self._lock = threading.Lock()
        self._hot_document_ids = set()
        self._discovered_dates = set()
        self._relevant_keywords = set()
        self._strategy_confidence: Dict[str, float] = {}

    def update(
        self,
        strategy: str,
        hot_document_ids: Iterable[str] = (),
        discovered_dates: Iterable[date] = (),
        relevant_keywords: Iterable[str] = (),
        confidence: Optional[float] = None
    ) -> None:
        """Merge one strategy's discoveries into the context."""
        hot = set(hot_document_ids)
        dates = set(discovered_dates)
        keywords = {keyword.lower() for keyword in relevant_keywords}
        with self._lock:
            self._hot_document_ids |= hot
            self._discovered_dates |= dates
            self._relevant_keywords |= keywords
            if confidence is not None:
                current = self._strategy_confidence.get(strategy)
                if current is None or confidence > current:
                    self._strategy_confidence[strategy] = confidence

    @property
    def hot_document_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._hot_document_ids)

    @property
    def discovered_dates(self) -> FrozenSet[date]:
        with self._lock:
            return frozenset(self._discovered_dates)

    @property
    def relevant_keywords(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._relevant_keywords)

    @property
    def strategy_confidence(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._strategy_confidence)

    def snapshot(self) -> ContextInsights:
        """Consistent, sorted copy of the whole context."""
        with self._lock:
            return ContextInsights(
                hot_document_ids=sorted(self._hot_document_ids),
                discovered_dates=sorted(self._discovered_dates),
                relevant_keywords=sorted(self._relevant_keywords),
                strategy_confidence=dict(sorted(self._strategy_confidence.items())),
            )
