"""Tests for the shared, merge-only search context."""

from __future__ import annotations

import itertools
import threading
from datetime import date

from lifelog_search.search_context import SearchContext

UPDATES = [
    ("lexical", {"hot_document_ids": ["a", "b"], "relevant_keywords": ["Budget"], "confidence": 0.4}),
    ("date-range", {"hot_document_ids": ["b"], "discovered_dates": [date(2024, 3, 15)], "confidence": 1.0}),
    ("lexical", {"hot_document_ids": ["c"], "confidence": 0.2}),
]


def test_updates_union_and_lowercase_keywords():
    context = SearchContext()
    for strategy, update in UPDATES:
        context.update(strategy, **update)

    assert context.hot_document_ids == frozenset({"a", "b", "c"})
    assert context.discovered_dates == frozenset({date(2024, 3, 15)})
    assert context.relevant_keywords == frozenset({"budget"})


def test_confidence_only_rises():
    context = SearchContext()
    for strategy, update in UPDATES:
        context.update(strategy, **update)

    assert context.strategy_confidence == {"lexical": 0.4, "date-range": 1.0}


def test_final_state_is_independent_of_update_order():
    snapshots = []
    for order in itertools.permutations(UPDATES):
        context = SearchContext()
        for strategy, update in order:
            context.update(strategy, **update)
        snapshots.append(context.snapshot())

    assert all(snapshot == snapshots[0] for snapshot in snapshots)


def test_snapshot_is_sorted_and_detached():
    context = SearchContext()
    context.update("lexical", hot_document_ids=["z", "a"])

    snapshot = context.snapshot()
    context.update("lexical", hot_document_ids=["m"])

    assert snapshot.hot_document_ids == ["a", "z"]
    assert context.snapshot().hot_document_ids == ["a", "m", "z"]


def test_concurrent_writers_lose_nothing():
    context = SearchContext()

    def writer(prefix: str):
        for i in range(200):
            context.update(prefix, hot_document_ids=[f"{prefix}-{i}"], confidence=i / 200)

    threads = [threading.Thread(target=writer, args=(f"s{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(context.hot_document_ids) == 800
    assert context.strategy_confidence == {f"s{n}": 199 / 200 for n in range(4)}
