"""Tests for the two-phase parallel executor and result merging."""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from conftest import NOW, FakeVectorIndex, make_document
from lifelog_search.config import SearchConfig
from lifelog_search.models import (
    ContextInsights,
    DateRange,
    ExtractedEntities,
    QueryClassification,
    QueryType,
    SearchOptions,
    SearchResult,
    SearchStrategy,
)
from lifelog_search.parallel_executor import (
    CONTEXT_FILTER,
    DATE_RANGE,
    LEXICAL,
    VECTOR_SEMANTIC,
    ParallelSearchExecutor,
    merge_strategy_results,
    vector_hits_to_results,
)
from lifelog_search.pattern_index import PatternIndex
from lifelog_search.query_preprocessor import QueryPreprocessor
from lifelog_search.search_context import SearchContext


@pytest.fixture
def preprocessor():
    return QueryPreprocessor(now=lambda: NOW)


@pytest.fixture
def pattern_index(corpus):
    index = PatternIndex()
    index.build_index(corpus)
    return index


@pytest.fixture
def vector_index(corpus):
    vector = FakeVectorIndex()
    asyncio.run(vector.add_documents([{"id": d.id, "content": d.content} for d in corpus]))
    return vector


def _run(executor, preprocessor, query, **options):
    return asyncio.run(executor.execute_parallel_search(
        query, preprocessor.preprocess(query), SearchOptions(**options)
    ))


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def test_consensus_boost_for_documents_found_twice():
    merged = merge_strategy_results(
        [
            (LEXICAL, [SearchResult(id="D123", score=0.6)]),
            (VECTOR_SEMANTIC, [SearchResult(id="D123", score=0.8)]),
        ],
        ContextInsights(),
    )

    assert len(merged) == 1
    result = merged[0]
    assert result.metadata.matching_sources == [LEXICAL, VECTOR_SEMANTIC]
    assert result.metadata.source == LEXICAL
    assert result.score == pytest.approx(0.8 * 1.15)
    assert result.metadata.consensus_score == pytest.approx(1.15)
    assert result.metadata.temporal_decay == 1.0


def test_merge_unions_highlights_and_fills_metadata():
    first = SearchResult(id="a", score=0.5, highlights=["x"])
    second = SearchResult(id="a", score=0.2, highlights=["x", "y"])
    second.metadata.vector_score = 0.2

    merged = merge_strategy_results([(LEXICAL, [first]), (VECTOR_SEMANTIC, [second])], ContextInsights())

    assert merged[0].highlights == ["x", "y"]
    assert merged[0].metadata.vector_score == 0.2


def test_hot_documents_are_boosted_more_when_confirmed():
    context = ContextInsights(hot_document_ids=["a", "b"])
    merged = merge_strategy_results(
        [
            (LEXICAL, [SearchResult(id="a", score=0.5), SearchResult(id="b", score=0.5)]),
            (CONTEXT_FILTER, [SearchResult(id="b", score=0.1)]),
        ],
        context,
    )
    by_id = {r.id: r for r in merged}

    assert by_id["a"].score == pytest.approx(0.5 * 1.10)
    assert by_id["b"].score == pytest.approx(0.5 * 1.15 * 1.20)
    assert by_id["a"].metadata.is_hot_document


def test_temporal_decay_has_a_floor():
    context = ContextInsights(discovered_dates=[date(2024, 3, 15)])
    near = SearchResult(id="near", score=1.0, document=make_document("near", "x", days_ago=3))
    far = SearchResult(id="far", score=1.0, document=make_document("far", "x", days_ago=30))

    merged = merge_strategy_results([(LEXICAL, [near, far])], context)
    by_id = {r.id: r for r in merged}

    assert by_id["near"].metadata.temporal_decay == pytest.approx(0.85)
    assert by_id["far"].metadata.temporal_decay == pytest.approx(0.7)


def test_merge_is_deterministic_and_leaves_inputs_alone():
    inputs = [
        (LEXICAL, [SearchResult(id="a", score=0.5), SearchResult(id="b", score=0.5)]),
        (VECTOR_SEMANTIC, [SearchResult(id="c", score=0.5)]),
    ]

    first = merge_strategy_results(inputs, ContextInsights())
    second = merge_strategy_results(inputs, ContextInsights())

    assert first == second
    # ties keep merge order
    assert [r.id for r in first] == ["a", "b", "c"]
    assert inputs[0][1][0].metadata.source is None


def test_merge_limit():
    results = [SearchResult(id=str(i), score=i / 10) for i in range(5)]
    assert [r.id for r in merge_strategy_results([(LEXICAL, results)], ContextInsights(), limit=2)] == ["4", "3"]


def test_vector_hits_are_backed_by_indexed_documents(pattern_index):
    results = vector_hits_to_results(
        [{"id": "lunch-today", "score": 0.7, "content": "abcdef", "metadata": {"speaker": "me"}}],
        pattern_index,
        context_length=3,
    )

    assert results[0].document.title == "Lunch"
    assert results[0].highlights == ["abc"]
    assert results[0].metadata.extra == {"speaker": "me"}


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------


def test_strategy_selection(pattern_index, vector_index, preprocessor):
    executor = ParallelSearchExecutor(pattern_index, vector_index)
    specs = executor.select_strategies(
        "budget", preprocessor.preprocess("budget"), SearchOptions(), SearchContext()
    )
    assert [(s.name, s.phase) for s in specs] == [(LEXICAL, 1), (VECTOR_SEMANTIC, 2), (CONTEXT_FILTER, 2)]

    dated = executor.select_strategies(
        "budget today", preprocessor.preprocess("budget today"), SearchOptions(), SearchContext()
    )
    assert DATE_RANGE in [s.name for s in dated]


def test_classification_dates_enable_the_date_strategy(pattern_index, preprocessor):
    executor = ParallelSearchExecutor(pattern_index)
    classification = QueryClassification(
        type=QueryType.DATE_BASED,
        confidence=1.0,
        extracted_entities=ExtractedEntities(
            date_ranges=[DateRange(start=date(2024, 3, 1), end=date(2024, 3, 2))]
        ),
        suggested_strategy=SearchStrategy.FAST,
        estimated_response_time_ms=100,
    )
    specs = executor.select_strategies(
        "budget", preprocessor.preprocess("budget"), SearchOptions(), SearchContext(), classification
    )
    assert [s.name for s in specs] == [LEXICAL, DATE_RANGE, CONTEXT_FILTER]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def test_today_query_returns_only_todays_document(preprocessor):
    index = PatternIndex()
    index.build_index([
        make_document("now", "Walked the dog in the park."),
        make_document("before", "Walked the dog in the rain.", days_ago=1),
    ])
    executor = ParallelSearchExecutor(index)

    result = _run(executor, preprocessor, "today")

    assert [r.id for r in result.results] == ["now"]
    assert DATE_RANGE in result.results[0].metadata.matching_sources
    assert "Date match: 2024-03-15" in result.results[0].highlights
    assert result.results[0].metadata.date_match == date(2024, 3, 15)
    assert result.context_insights.discovered_dates == [date(2024, 3, 15)]


def test_lexical_and_vector_agree(pattern_index, vector_index, preprocessor):
    executor = ParallelSearchExecutor(pattern_index, vector_index)
    result = _run(executor, preprocessor, "engineers")

    top = result.results[0]
    assert top.id == "planning-old"
    assert {LEXICAL, VECTOR_SEMANTIC, CONTEXT_FILTER} <= set(top.metadata.matching_sources)
    assert top.metadata.is_hot_document
    assert result.performance.failed_strategies == []
    assert set(result.performance.strategy_timings) == {LEXICAL, VECTOR_SEMANTIC, CONTEXT_FILTER}


def test_failing_strategy_is_isolated(pattern_index, preprocessor):
    vector = FakeVectorIndex(fail_search=True)
    executor = ParallelSearchExecutor(pattern_index, vector)

    result = _run(executor, preprocessor, "budget")

    assert result.performance.failed_strategies == [VECTOR_SEMANTIC]
    assert {r.id for r in result.results} == {"lunch-today", "standup-yesterday"}


def test_missing_vector_index_is_excluded_not_failed(pattern_index, preprocessor):
    executor = ParallelSearchExecutor(pattern_index, None)
    result = _run(executor, preprocessor, "budget")

    assert result.performance.failed_strategies == []
    assert VECTOR_SEMANTIC not in result.performance.strategy_timings
    assert result.results


def test_slow_strategy_times_out(pattern_index, preprocessor):
    vector = FakeVectorIndex(delay=2.0)
    executor = ParallelSearchExecutor(pattern_index, vector, SearchConfig(strategy_timeout_ms=50))

    result = _run(executor, preprocessor, "budget")

    assert result.performance.failed_strategies == [VECTOR_SEMANTIC]
    assert result.results


def test_overall_timeout_returns_partial_results(pattern_index, preprocessor):
    vector = FakeVectorIndex(delay=2.0)
    executor = ParallelSearchExecutor(pattern_index, vector)

    result = _run(executor, preprocessor, "budget", timeout_ms=300)

    assert VECTOR_SEMANTIC in result.performance.failed_strategies
    assert LEXICAL not in result.performance.failed_strategies
    assert {r.id for r in result.results} >= {"lunch-today", "standup-yesterday"}


def test_vector_query_is_enriched_with_context_keywords(pattern_index, vector_index):
    executor = ParallelSearchExecutor(pattern_index, vector_index)
    context = SearchContext()
    context.update(LEXICAL, relevant_keywords=["sarah", "lunch", "budget"])

    asyncio.run(executor._vector_strategy("lunch", SearchOptions(), context))

    assert vector_index.search_calls == ["lunch budget sarah"]


def test_context_filter_scores_hot_documents(pattern_index, preprocessor):
    executor = ParallelSearchExecutor(pattern_index)
    context = SearchContext()
    context.update(
        LEXICAL,
        hot_document_ids=["lunch-today", "planning-old"],
        discovered_dates=[date(2024, 3, 15)],
    )

    results = asyncio.run(executor._context_filter_strategy(
        preprocessor.preprocess("budget"), SearchOptions(), context
    ))

    assert [r.id for r in results] == ["lunch-today"]
    assert results[0].score == pytest.approx(1.0)
    assert results[0].highlights == ["Context match: budget"]
    assert context.strategy_confidence[CONTEXT_FILTER] == pytest.approx(1.0)
