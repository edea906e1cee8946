"""Tests for multi-part query decomposition."""

from __future__ import annotations

import logging

import pytest

from lifelog_search.models import QueryIntent, SubQuery, SubQueryType
from lifelog_search.query_decomposer import (
    QueryDecomposer,
    dependency_depth,
    execution_order,
    references_previous,
    topic_similarity,
    topic_words,
)


@pytest.fixture
def decomposer():
    return QueryDecomposer()


# ---------------------------------------------------------------------------
# Decomposition
# ---------------------------------------------------------------------------


def test_question_chain_with_back_reference(decomposer):
    query = "What did Sarah say about the budget? and also show me the action items from that?"

    decomposed = decomposer.decompose(query)

    assert decomposed.is_decomposed
    first, second = decomposed.sub_queries
    assert first.text == "What did Sarah say about the budget?"
    assert first.intent == QueryIntent.QUESTION
    assert second.type == SubQueryType.EXTRACT
    assert second.dependencies == ["q1"]
    assert second.context.references_previous
    assert decomposed.execution_order.index("q2") > decomposed.execution_order.index("q1")
    assert "Sarah" in first.context.entities
    assert decomposed.complexity == 2.5
    assert decomposed.estimated_execution_time_ms == 1300
    assert not decomposed.requires_contextual_summary


def test_conjunction_split_with_analytical_parts(decomposer):
    query = "Summarize the quarterly planning meetings and then compare them with the hiring discussions from March"

    decomposed = decomposer.decompose(query)

    assert [s.type for s in decomposed.sub_queries] == [SubQueryType.SUMMARIZE, SubQueryType.COMPARE]
    assert decomposed.sub_queries[1].dependencies == ["q1"]
    assert decomposed.requires_contextual_summary
    assert decomposed.complexity == 3.5


def test_filter_sub_query(decomposer):
    query = "Find all meetings with the design team last month, then narrow to the ones about hiring budgets"

    decomposed = decomposer.decompose(query)

    assert decomposed.sub_queries[1].type == SubQueryType.FILTER
    assert decomposed.sub_queries[0].context.temporal == "last month"


@pytest.mark.parametrize(
    "query",
    [
        "budget",
        "lunch today and also show me the receipts",  # multi-part but short
        "what did the marketing team decide about the spring campaign budget",
    ],
)
def test_simple_queries_are_not_decomposed(decomposer, query):
    decomposed = decomposer.decompose(query)

    assert not decomposed.is_decomposed
    assert decomposed.execution_order == ["q1"]
    assert decomposed.sub_queries[0].text == query
    assert decomposed.complexity == 1.0
    assert decomposed.estimated_execution_time_ms == 1000


def test_two_question_marks_make_a_query_complex(decomposer):
    assert decomposer.is_complex_query("Where did we have lunch on Monday? Who paid for the food on Tuesday?")


# ---------------------------------------------------------------------------
# Ordering helpers
# ---------------------------------------------------------------------------


def _sub(sub_query_id, *dependencies):
    return SubQuery(id=sub_query_id, text=sub_query_id, dependencies=list(dependencies))


def test_execution_order_is_topological():
    sub_queries = [_sub("q1", "q2"), _sub("q2"), _sub("q3", "q1")]

    order = execution_order(sub_queries)

    assert order == ["q2", "q1", "q3"]
    for sub_query in sub_queries:
        for dependency in sub_query.dependencies:
            assert order.index(dependency) < order.index(sub_query.id)


def test_cycles_fall_back_to_original_order(caplog):
    with caplog.at_level(logging.WARNING):
        order = execution_order([_sub("q1", "q2"), _sub("q2", "q1"), _sub("q3")])

    assert order == ["q3", "q1", "q2"]
    assert "Unresolved sub-query dependencies" in caplog.text


def test_dependency_depth():
    assert dependency_depth([_sub("q1"), _sub("q2")]) == 0
    assert dependency_depth([_sub("q1"), _sub("q2", "q1"), _sub("q3", "q2")]) == 2
    assert dependency_depth([_sub("q1", "q2"), _sub("q2", "q1")]) >= 1


def test_reference_and_topic_helpers():
    assert references_previous("show me the action items from that")
    assert not references_previous("lunch with Sarah")
    assert topic_words("The budget review with finance") == ["budget", "review", "finance"]
    assert topic_similarity(["budget", "review"], ["budget", "hiring"]) == pytest.approx(1 / 3)
    assert topic_similarity([], []) == 0.0
